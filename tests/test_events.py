"""Tests for qmud.events — topics, fire-and-forget and the Aterna publisher."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx

from qmud.events import AternaPublisher, Topics, fire_and_forget


def test_topics() -> None:
    assert Topics.player_state("p") == "qmud.players.p.state"
    assert Topics.book_events("codex_paths") == "qmud.books.codex_paths.events"
    assert Topics.book_state("codex_paths") == "qmud.books.codex_paths.state"
    assert Topics.audit_daily("2026-01-02") == "qmud.audit.daily.2026-01-02"


class TestFireAndForget:
    async def test_runs_in_background(self) -> None:
        done = asyncio.Event()

        async def work():
            done.set()

        fire_and_forget(work())
        await asyncio.wait_for(done.wait(), 1)

    async def test_failure_is_logged_not_raised(self, caplog) -> None:
        async def boom():
            raise RuntimeError("relay down")

        fire_and_forget(boom())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert "relay down" in caplog.text

    def test_without_loop_the_coroutine_is_closed(self) -> None:
        ran = []

        async def work():
            ran.append(1)

        fire_and_forget(work())
        assert ran == []


def _ok() -> httpx.Response:
    return httpx.Response(200, json={"ok": True})


class TestAternaPublisher:
    async def test_disabled_without_base(self) -> None:
        publisher = AternaPublisher("")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_ok())) as mock_post:
            await publisher.publish("t", {"event_type": "x"})
        assert not publisher.enabled
        mock_post.assert_not_called()

    async def test_envelope(self) -> None:
        publisher = AternaPublisher("http://relay.test/", token="tok")
        event = {"event_type": "book_page", "payload": {"page_id": "p1"}, "player": "p", "junk": 1}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_ok())) as mock_post:
            await publisher.publish("qmud.books.codex_paths.events", event)

        assert mock_post.call_args.args[0] == "http://relay.test/api/publish"
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "tok"
        body = mock_post.call_args.kwargs["json"]
        assert body["topic"] == "qmud.books.codex_paths.events"
        header = body["message"]["header"]
        assert header["sender"] == "qmud-client"
        assert header["version"] == "1.0"
        assert header["retries"] == 0
        data = body["message"]["content"]["data"]
        assert data["event_type"] == "book_page"
        assert data["payload"] == {"page_id": "p1"}
        assert data["player"] == "p"
        assert data["seq"] == 0
        assert "junk" not in data
        json.dumps(body)

    async def test_seq_increments(self) -> None:
        publisher = AternaPublisher("http://relay.test")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_ok())) as mock_post:
            await publisher.publish("t", {"event_type": "a"})
            await publisher.publish("t", {"event_type": "b"})
        seqs = [c.kwargs["json"]["message"]["content"]["data"]["seq"] for c in mock_post.call_args_list]
        assert seqs == [0, 1]

    async def test_audit_mirror_shares_trace_id(self) -> None:
        publisher = AternaPublisher("http://relay.test", mirror_audit=True)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_ok())) as mock_post:
            await publisher.publish("qmud.books.b.events", {"event_type": "a"})

        assert mock_post.call_count == 2
        first, second = (c.kwargs["json"] for c in mock_post.call_args_list)
        assert second["topic"].startswith("qmud.audit.daily.")
        assert second["message"]["content"]["data"]["topic"] == "qmud.books.b.events"
        assert first["message"]["header"]["trace_id"] == second["message"]["header"]["trace_id"]

    async def test_http_error_status_is_logged(self, caplog) -> None:
        publisher = AternaPublisher("http://relay.test")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=httpx.Response(503))):
            await publisher.publish("t", {"event_type": "a"})
        assert "HTTP 503" in caplog.text
