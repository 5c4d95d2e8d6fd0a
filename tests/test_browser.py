"""Tests for the WebSocket browser driver."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from extdebug.browser import (
    SESSION_HEADER,
    BrowserCommandError,
    BrowserUnavailableError,
    NodeHandle,
    TabClosedError,
    WebSocketDriver,
)
from extdebug.config import ServerConfig
from extdebug.errors import EntityNotFound
from extdebug.events import PageEventKind
from extdebug.locators import LocatorKind


class FakeResponse:
    def __init__(self, headers):
        self.headers = headers


class FakeWebSocket:
    """Simulates a websockets connection for testing.

    Scripted replies without an "id" answer the most recent command.
    """

    def __init__(self, responses=None, response_headers=None, fail_send=False):
        self.sent = []
        self._responses = list(responses or [])
        self.closed = False
        self.fail_send = fail_send
        self.response = FakeResponse(response_headers or {})

    async def send(self, data):
        if self.fail_send:
            raise ConnectionError("connection reset")
        self.sent.append(data)

    async def recv(self):
        if not self._responses:
            raise asyncio.TimeoutError("No more responses")
        resp = self._responses.pop(0)
        if isinstance(resp, dict):
            if "id" not in resp and "event" not in resp and self.sent:
                resp = {"id": json.loads(self.sent[-1])["id"], **resp}
            return json.dumps(resp)
        return resp

    async def ping(self):
        if self.closed:
            raise ConnectionError("closed")

    async def close(self):
        self.closed = True


@pytest.fixture
def ws_driver():
    return WebSocketDriver(ServerConfig(command_timeout=1.0, event_poll_interval=0.01))


def sent_messages(ws):
    return [json.loads(raw) for raw in ws.sent]


# ── browser_command ─────────────────────────────────────────────


class TestBrowserCommand:
    @pytest.mark.asyncio
    async def test_sends_correct_format(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[{"result": {"ok": True}}])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            result = await ws_driver.browser_command("ping", {"foo": "bar"})

        msg = sent_messages(fake_ws)[0]
        assert msg["method"] == "ping"
        assert msg["params"] == {"foo": "bar"}
        assert "id" in msg
        assert result == {"ok": True}

    @pytest.mark.asyncio
    async def test_default_empty_params(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[{"result": {}}])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            await ws_driver.browser_command("list_tabs")
        assert sent_messages(fake_ws)[0]["params"] == {}

    @pytest.mark.asyncio
    async def test_raises_on_error_response(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[{"error": {"message": "Element is not editable"}}])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            with pytest.raises(BrowserCommandError, match="not editable"):
                await ws_driver.browser_command("node_action", {"node_id": "n1"})
        assert len(fake_ws.sent) == 1

    @pytest.mark.asyncio
    async def test_tab_not_found(self, ws_driver):
        fake_ws = FakeWebSocket(
            responses=[{"error": {"message": "Tab not found", "code": "tab_not_found"}}]
        )
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            with pytest.raises(TabClosedError) as excinfo:
                await ws_driver.browser_command("walk_dom", {"tab_id": "tab-7"})
        assert excinfo.value.tab_id == "tab-7"

    @pytest.mark.asyncio
    async def test_extension_not_found(self, ws_driver):
        fake_ws = FakeWebSocket(
            responses=[{"error": {"message": "nope", "code": "extension_not_found"}}]
        )
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            with pytest.raises(EntityNotFound) as excinfo:
                await ws_driver.extension_status("abc")
        assert excinfo.value.entity == "extension"
        assert excinfo.value.identifier == "abc"

    @pytest.mark.asyncio
    async def test_retries_once_on_connection_error(self, ws_driver):
        broken = FakeWebSocket(fail_send=True)
        healthy = FakeWebSocket(responses=[{"result": {"tabs": []}}])
        get_ws = AsyncMock(side_effect=[broken, healthy])
        with patch.object(ws_driver, "get_ws", get_ws):
            assert await ws_driver.list_tabs() == []
        assert get_ws.await_count == 2

    @pytest.mark.asyncio
    async def test_unavailable_after_second_failure(self, ws_driver):
        get_ws = AsyncMock(side_effect=[FakeWebSocket(fail_send=True),
                                        FakeWebSocket(fail_send=True)])
        with patch.object(ws_driver, "get_ws", get_ws):
            with pytest.raises(BrowserUnavailableError, match="unreachable"):
                await ws_driver.browser_command("list_tabs")

    @pytest.mark.asyncio
    async def test_silent_browser_is_unavailable(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            with pytest.raises(BrowserUnavailableError):
                await ws_driver.browser_command("ping")

    @pytest.mark.asyncio
    async def test_skips_replies_to_other_commands(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[
            {"id": "abandoned", "result": {"stale": True}},
            {"result": {"fresh": True}},
        ])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            assert await ws_driver.browser_command("ping") == {"fresh": True}

    @pytest.mark.asyncio
    async def test_event_frames_are_published(self, ws_driver):
        seen = []
        ws_driver.events.add_listener(seen.append)
        fake_ws = FakeWebSocket(responses=[
            {"event": {"type": "navigation_started", "tab_id": "tab-1", "url": "https://a/"}},
            {"result": {}},
        ])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            await ws_driver.browser_command("ping")
        assert [e.kind for e in seen] == [PageEventKind.NAVIGATION_STARTED]
        assert seen[0].url == "https://a/"

    @pytest.mark.asyncio
    async def test_unknown_event_frames_do_not_resend(self, ws_driver):
        seen = []
        ws_driver.events.add_listener(seen.append)
        fake_ws = FakeWebSocket(responses=[
            {"event": {"type": "dialog_opened", "tab_id": "tab-1"}},
            {"event": "not an object"},
            {"event": {"tab_id": "tab-1"}},
            {"result": {"ok": True}},
        ])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)) as get_ws:
            result = await ws_driver.perform(NodeHandle("tab-1", "5", "button"), "click")
        assert result == {"ok": True}
        assert len(fake_ws.sent) == 1
        assert get_ws.await_count == 1
        assert seen == []


# ── PageDriver methods ──────────────────────────────────────────


class TestDriverMethods:
    @pytest.mark.asyncio
    async def test_query_maps_locator_kind(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[
            {"result": {"nodes": [{"node_id": 12, "tag": "button"}]}},
        ])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            handles = await ws_driver.query("tab-1", LocatorKind.ARIA_LABEL, "Close")
        assert handles == [NodeHandle("tab-1", "12", "button")]
        assert sent_messages(fake_ws)[0]["params"] == {
            "tab_id": "tab-1", "by": "aria", "value": "Close",
        }

    @pytest.mark.asyncio
    async def test_perform_fill_sends_value(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[{"result": {"ok": True}}])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            await ws_driver.perform(NodeHandle("tab-1", "5", "input"), "fill", "hi")
        msg = sent_messages(fake_ws)[0]
        assert msg["method"] == "node_action"
        assert msg["params"]["value"] == "hi"

    @pytest.mark.asyncio
    async def test_evaluate_error(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[{"result": {"error": "ReferenceError: x"}}])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            with pytest.raises(BrowserCommandError, match="ReferenceError"):
                await ws_driver.evaluate("tab-1", "x")

    @pytest.mark.asyncio
    async def test_lists_accept_wrapped_or_bare(self, ws_driver):
        fake_ws = FakeWebSocket(responses=[
            {"result": [{"level": "error"}]},
            {"result": {"logs": [{"level": "warning"}]}},
        ])
        with patch.object(ws_driver, "get_ws", AsyncMock(return_value=fake_ws)):
            assert await ws_driver.console_messages("tab-1") == [{"level": "error"}]
            assert await ws_driver.extension_logs("ext1", ("warning",)) == [
                {"level": "warning"}
            ]
        assert sent_messages(fake_ws)[1]["params"]["levels"] == ["warning"]


# ── Event pump ──────────────────────────────────────────────────


class TestEventPump:
    @pytest.mark.asyncio
    async def test_pump_runs_only_while_subscribed(self, ws_driver):
        command = AsyncMock(return_value={"events": [{"type": "mutation"}]})
        with patch.object(ws_driver, "browser_command", command):
            async with ws_driver.events.subscribe("tab-1") as events:
                event = await events.get(1.0)
                task = ws_driver._pumps["tab-1"]
            assert event.kind is PageEventKind.MUTATION
            assert event.tab_id == "tab-1"
            assert "tab-1" not in ws_driver._pumps
            await asyncio.sleep(0.01)
            assert task.cancelled()
        command.assert_awaited_with("drain_page_events", {"tab_id": "tab-1"})

    @pytest.mark.asyncio
    async def test_pump_stops_when_tab_closes(self, ws_driver):
        command = AsyncMock(side_effect=TabClosedError("tab-1"))
        with patch.object(ws_driver, "browser_command", command):
            async with ws_driver.events.subscribe("tab-1"):
                await asyncio.sleep(0.05)
                assert "tab-1" not in ws_driver._pumps
        assert command.await_count == 1

    @pytest.mark.asyncio
    async def test_pump_survives_command_errors(self, ws_driver):
        command = AsyncMock(side_effect=[
            BrowserCommandError("busy"),
            {"events": [{"type": "navigation_completed", "url": "https://b/"}]},
            {"events": []},
            {"events": []},
            {"events": []},
        ] + [{"events": []}] * 50)
        with patch.object(ws_driver, "browser_command", command):
            async with ws_driver.events.subscribe("tab-1") as events:
                event = await events.get(1.0)
        assert event.kind is PageEventKind.NAVIGATION_COMPLETED

    @pytest.mark.asyncio
    async def test_pump_skips_unknown_events(self, ws_driver):
        command = AsyncMock(side_effect=[
            {"events": [{"type": "console"}, {"url": "https://a/"}, "junk"]},
            {"events": [{"type": "navigation_started", "url": "https://b/"}]},
        ] + [{"events": []}] * 50)
        with patch.object(ws_driver, "browser_command", command):
            async with ws_driver.events.subscribe("tab-1") as events:
                event = await events.get(1.0)
                assert not ws_driver._pumps["tab-1"].done()
        assert event.kind is PageEventKind.NAVIGATION_STARTED
        assert event.url == "https://b/"

    @pytest.mark.asyncio
    async def test_finished_pump_is_replaced(self, ws_driver):
        async def finished():
            return None

        dead = asyncio.create_task(finished())
        await dead
        ws_driver._pumps["tab-1"] = dead
        command = AsyncMock(return_value={"events": []})
        with patch.object(ws_driver, "browser_command", command):
            ws_driver.events.retain("tab-1")
            replacement = ws_driver._pumps["tab-1"]
            assert replacement is not dead
            await asyncio.sleep(0.02)
            assert not replacement.done()
            ws_driver.events.release("tab-1")
        assert "tab-1" not in ws_driver._pumps

    @pytest.mark.asyncio
    async def test_close_cancels_pumps(self, ws_driver):
        command = AsyncMock(return_value={"events": []})
        with patch.object(ws_driver, "browser_command", command):
            ws_driver.events.retain("tab-1")
            task = ws_driver._pumps["tab-1"]
            await ws_driver.close()
        assert task.cancelled()
        assert ws_driver._pumps == {}


# ── get_ws ──────────────────────────────────────────────────────


class TestGetWs:
    @pytest.mark.asyncio
    async def test_new_session_url(self, ws_driver):
        fake_ws = FakeWebSocket(response_headers={SESSION_HEADER: "abc-1234"})
        with patch("websockets.connect", new_callable=AsyncMock,
                   return_value=fake_ws) as mock_connect:
            ws = await ws_driver.get_ws()
        assert ws is fake_ws
        mock_connect.assert_called_once_with(
            "ws://localhost:9876/new",
            max_size=10 * 1024 * 1024,
            ping_interval=30,
            ping_timeout=120,
        )
        assert ws_driver._session_id == "abc-1234"

    @pytest.mark.asyncio
    async def test_join_configured_session(self):
        driver = WebSocketDriver(ServerConfig(session_id="existing-session"))
        fake_ws = FakeWebSocket()
        with patch("websockets.connect", new_callable=AsyncMock,
                   return_value=fake_ws) as mock_connect:
            await driver.get_ws()
        assert mock_connect.call_args.args[0] == "ws://localhost:9876/session/existing-session"

    @pytest.mark.asyncio
    async def test_reuses_existing_connection(self, ws_driver):
        fake_ws = FakeWebSocket()
        ws_driver._ws_connection = fake_ws
        with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
            assert await ws_driver.get_ws() is fake_ws
        mock_connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnects_to_saved_session(self, ws_driver):
        dead_ws = FakeWebSocket()
        dead_ws.closed = True
        ws_driver._ws_connection = dead_ws
        ws_driver._session_id = "saved"
        new_ws = FakeWebSocket()
        with patch("websockets.connect", new_callable=AsyncMock,
                   return_value=new_ws) as mock_connect:
            ws = await ws_driver.get_ws()
        assert ws is new_ws
        assert mock_connect.call_args.args[0] == "ws://localhost:9876/session/saved"
        assert ws_driver._session_id == "saved"

    @pytest.mark.asyncio
    async def test_expired_session_falls_back_to_new(self, ws_driver):
        ws_driver._session_id = "expired"
        new_ws = FakeWebSocket(response_headers={SESSION_HEADER: "fresh"})
        with patch("websockets.connect", new_callable=AsyncMock,
                   side_effect=[ConnectionRefusedError("gone"), new_ws]) as mock_connect:
            ws = await ws_driver.get_ws()
        assert ws is new_ws
        assert mock_connect.call_args.args[0] == "ws://localhost:9876/new"
        assert ws_driver._session_id == "fresh"
