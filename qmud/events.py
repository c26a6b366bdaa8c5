"""Event publishing to an Aterna pub/sub relay.

Publishing is fire-and-forget from the narrative's point of view: the book
reader and the effects applier schedule publishes with `fire_and_forget()`
and never wait for, or see failures from, the relay.

Wire format of one publish (POST {base}{publish_path}):

    {"topic": "qmud.books.codex_paths.events",
     "message": {
        "header": {"id", "trace_id", "sender", "timestamp", "version", "retries"},
        "content": {"data": {"event_id", "event_type", "ts", "payload", "seq", ...}}}}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

_background: set[asyncio.Task] = set()


class EventPublisher(Protocol):
    async def publish(self, topic: str, event: dict[str, Any]) -> None: ...


class Topics:
    @staticmethod
    def player_state(player_id: str) -> str:
        return f"qmud.players.{player_id}.state"

    @staticmethod
    def book_events(book_id: str) -> str:
        return f"qmud.books.{book_id}.events"

    @staticmethod
    def book_state(book_id: str) -> str:
        return f"qmud.books.{book_id}.state"

    @staticmethod
    def audit_daily(day: str) -> str:
        return f"qmud.audit.daily.{day}"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def fire_and_forget(coro: Coroutine) -> None:
    """Schedule `coro` on the running loop; log and drop any failure.

    Without a running loop the coroutine is closed unscheduled.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        return
    task = loop.create_task(coro)
    _background.add(task)
    task.add_done_callback(_finish)


def _finish(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Event publish failed: %s", exc)


class AternaPublisher:
    """HTTP publisher for the Aterna relay.

    Args:
        base:          Relay base URL. Empty disables publishing.
        token:         Sent verbatim as the Authorization header when set.
        publish_path:  Defaults to "/api/publish".
        sender:        Header sender name.
        mirror_audit:  Also publish every event to the daily audit topic.
    """

    def __init__(
        self,
        base: str,
        token: str = "",
        publish_path: str = "/api/publish",
        sender: str = "qmud-client",
        version: str = "1.0",
        mirror_audit: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self._base = base.rstrip("/")
        self._token = token
        self._publish_path = publish_path
        self._sender = sender
        self._version = version
        self._mirror_audit = mirror_audit
        self._timeout = timeout
        self._seq = 0

    @property
    def enabled(self) -> bool:
        return bool(self._base)

    def build_message(self, data: dict[str, Any], trace_id: str | None = None) -> dict[str, Any]:
        return {
            "header": {
                "id": str(uuid.uuid4()),
                "trace_id": trace_id or str(uuid.uuid4()),
                "sender": self._sender,
                "timestamp": _iso_now(),
                "version": self._version,
                "retries": 0,
            },
            "content": {"data": data},
        }

    async def _post(self, topic: str, data: dict[str, Any], trace_id: str | None) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = self._token
        body = {"topic": topic, "message": self.build_message(data, trace_id)}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(f"{self._base}{self._publish_path}", json=body, headers=headers)
        if resp.status_code >= 400:
            logger.warning("Aterna publish to %s returned HTTP %d", topic, resp.status_code)

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        data = {
            "event_id": str(uuid.uuid4()),
            "event_type": event.get("event_type"),
            "ts": _iso_now(),
            "payload": event.get("payload"),
            "seq": self._seq,
        }
        for key in ("room_id", "player", "target"):
            if key in event:
                data[key] = event[key]
        self._seq += 1

        trace_id = str(uuid.uuid4())
        await self._post(topic, data, trace_id)
        if self._mirror_audit:
            day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            await self._post(Topics.audit_daily(day), {**data, "topic": topic}, trace_id)
