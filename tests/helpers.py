"""Shared test doubles: a scripted LLM, a virtual clock, and page builders."""

import asyncio
import json


class StubLLM:
    """Returns canned responses in order and records every prompt.

    A response that is an Exception instance is raised instead of returned.
    """

    def __init__(self, responses=(), images=()):
        self.responses = list(responses)
        self.images = list(images)
        self.calls: list[tuple[str, str]] = []
        self.image_calls: list[str] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def illustrate(self, prompt: str) -> str | None:
        self.image_calls.append(prompt)
        return self.images.pop(0) if self.images else None


class BlockingLLM(StubLLM):
    """Like StubLLM, but each text call waits until `release` is set."""

    def __init__(self, responses=()):
        super().__init__(responses)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, stage: str, prompt: str) -> str:
        self.started.set()
        await self.release.wait()
        return await super().__call__(stage, prompt)


class FakeClock:
    """Virtual time for the scheduler: sleeping advances `now` instantly."""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += max(0.0, delay)
        await asyncio.sleep(0)


class RecordingPublisher:
    def __init__(self, fail: bool = False):
        self.events: list[tuple[str, dict]] = []
        self.fail = fail

    async def publish(self, topic: str, event: dict) -> None:
        self.events.append((topic, event))
        if self.fail:
            raise RuntimeError("relay down")

    def types(self) -> list[str]:
        return [e["event_type"] for _, e in self.events]


def page_json(page_id, title="A Page", prose="Dust turns in the lamplight.", choices=None, **extra):
    page = {"page_id": page_id, "title": title, "prose": prose, "choices": choices or []}
    page.update(extra)
    return json.dumps(page)


FORK_PAGE = page_json(
    "p1",
    title="The Fork",
    prose="Two corridors of shelving split before you.",
    choices=[{"id": "a1", "label": "Go left"}, {"id": "a2", "label": "Go right"}],
)
