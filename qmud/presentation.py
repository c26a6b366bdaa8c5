"""Presentation sink — where narrated text, images and status go.

The core never renders anything itself. It emits entries to a sink; the
HTTP layer wraps each command in ``OutputLog.capture()`` so a request only
returns the entries emitted while handling it, even when requests overlap.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Literal, Protocol

from pydantic import BaseModel

OutputKind = Literal[
    "narration",
    "librarian-voice",
    "room-name",
    "system-message",
    "image",
]


class PresentationSink(Protocol):
    def emit(self, text: str, kind: OutputKind = "narration") -> None: ...

    def update_status(self, channel: str, status: str, text: str) -> None: ...


class OutputEntry(BaseModel):
    kind: OutputKind
    text: str


_capture: ContextVar[list[OutputEntry] | None] = ContextVar("qmud_output_capture", default=None)


class OutputLog:
    """In-memory sink. Keeps entries until drained, and the last status per channel.

    Inside ``capture()`` entries go to the caller's own buffer instead of the
    shared log. The buffer follows the current asyncio task, so two requests
    awaiting the same reader never see each other's output.
    """

    def __init__(self) -> None:
        self.entries: list[OutputEntry] = []
        self.status: dict[str, dict[str, str]] = {}

    def emit(self, text: str, kind: OutputKind = "narration") -> None:
        buffer = _capture.get()
        target = self.entries if buffer is None else buffer
        target.append(OutputEntry(kind=kind, text=text))

    def update_status(self, channel: str, status: str, text: str) -> None:
        self.status[channel] = {"status": status, "text": text}

    @contextmanager
    def capture(self) -> Iterator[list[OutputEntry]]:
        buffer: list[OutputEntry] = []
        token = _capture.set(buffer)
        try:
            yield buffer
        finally:
            _capture.reset(token)

    def drain(self) -> list[OutputEntry]:
        entries, self.entries = self.entries, []
        return entries

    def texts(self) -> list[str]:
        return [e.text for e in self.entries]
