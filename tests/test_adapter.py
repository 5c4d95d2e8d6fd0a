"""Tests for the tool execution adapter and the default tool set."""

import logging
import re

import pytest

from extdebug.adapter import ToolExecutionAdapter, ToolSpec
from extdebug.context import ContextBlock
from extdebug.errors import CollaboratorFailure, InvalidArguments
from extdebug.session import DebugSession
from extdebug.suggestions import Priority
from extdebug.tools import DEFAULT_TOOLS, NoArgs, build_adapter
from tests.fakes import FakeDriver, FakePage, three_buttons


@pytest.fixture
def adapter():
    return build_adapter()


def settle_ms(body):
    match = re.search(r"Page settled in (\d+)ms \((\d+) DOM changes", body)
    assert match, body
    return int(match.group(1)), int(match.group(2))


class TestRegistry:
    def test_default_tools_registered(self, adapter):
        assert adapter.names == sorted(spec.name for spec in DEFAULT_TOOLS)
        assert "click" in adapter

    def test_duplicate_registration_rejected(self, adapter):
        with pytest.raises(ValueError):
            adapter.register(adapter.get("click"))

    def test_interactions_settle(self, adapter):
        for name in ("click", "fill", "type", "fill_form", "hover", "navigate"):
            assert adapter.get(name).state_changing
        assert not adapter.get("wait_for").state_changing


# ── Validation ──────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_tool(self, adapter, session):
        with pytest.raises(InvalidArguments, match="Unknown tool"):
            await adapter.execute(session, "drag_and_drop", {})

    @pytest.mark.asyncio
    async def test_missing_target_rejected_before_resolution(self, adapter, session, driver):
        with pytest.raises(InvalidArguments) as excinfo:
            await adapter.execute(session, "click", {})
        assert "take_snapshot" in excinfo.value.suggestion
        assert driver.walks == 0
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_ambiguous_target_rejected(self, adapter, session, driver):
        with pytest.raises(InvalidArguments, match="Ambiguous"):
            await adapter.execute(session, "click", {"uid": "a_1", "text": "Save"})
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_fill_requires_value(self, adapter, session):
        with pytest.raises(InvalidArguments, match="value"):
            await adapter.execute(session, "fill", {"selector": "#save"})

    @pytest.mark.asyncio
    async def test_type_requires_value(self, adapter, session):
        with pytest.raises(InvalidArguments, match="value"):
            await adapter.execute(session, "type", {"selector": "#save", "value": ""})

    @pytest.mark.asyncio
    async def test_fill_form_field_errors(self, adapter, session, driver):
        with pytest.raises(InvalidArguments, match="fields"):
            await adapter.execute(session, "fill_form", {"fields": []})
        with pytest.raises(InvalidArguments) as excinfo:
            await adapter.execute(session, "fill_form", {"fields": [
                {"selector": "#save", "value": "a"},
                {"selector": "#save", "text": "Save", "value": "b"},
            ]})
        assert excinfo.value.details == {"field": 1}
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_relative_url_rejected(self, adapter, session):
        with pytest.raises(InvalidArguments, match="absolute"):
            await adapter.execute(session, "navigate", {"url": "example.com"})

    @pytest.mark.asyncio
    async def test_bad_log_level(self, adapter, session):
        with pytest.raises(InvalidArguments, match="verbose"):
            await adapter.execute(session, "get_console_logs", {"level": "verbose"})

    @pytest.mark.asyncio
    async def test_snapshot_depth_bounds(self, adapter, session):
        with pytest.raises(InvalidArguments):
            await adapter.execute(session, "take_snapshot", {"max_depth": 0})
        with pytest.raises(InvalidArguments):
            await adapter.execute(session, "take_snapshot", {"max_depth": 51})

    @pytest.mark.asyncio
    async def test_all_readiness_checks_disabled(self, adapter, session):
        with pytest.raises(InvalidArguments):
            await adapter.execute(session, "wait_for_extension_ready", {
                "extension_id": "ext1", "check_storage": False, "check_runtime": False,
            })


# ── Interactions ────────────────────────────────────────────────


class TestInteractions:
    @pytest.mark.asyncio
    async def test_snapshot_click_rerender_then_stale(self, adapter, session, driver):
        response = await adapter.execute(session, "take_snapshot", {})
        first = session.store_for("tab-1").active
        reset_uid = first.elements[3].uid
        assert f"[{reset_uid}] <button>" in response.body

        def rerender(handle, action, value):
            for i in range(1, 6):
                driver.later(0.03 * i, driver.mutate)

        driver.on_action = rerender
        response = await adapter.execute(session, "click", {"uid": reset_uid})
        assert not response.is_error
        assert driver.actions == [("click", "b2", None)]
        assert response.body.startswith(f"Clicked <button> by uid='{reset_uid}'")
        elapsed, mutations = settle_ms(response.body)
        assert elapsed >= 150
        assert mutations == 5

        driver.on_action = None
        await adapter.execute(session, "take_snapshot", {})
        response = await adapter.execute(session, "click", {"uid": reset_uid})
        assert response.is_error
        assert response.body.startswith("Error (stale_uid)")
        assert response.suggestions[0].priority is Priority.CRITICAL
        assert response.suggestions[0].target_tool == "take_snapshot"
        assert len(driver.actions) == 1

    @pytest.mark.asyncio
    async def test_click_by_text(self, adapter, session, driver):
        response = await adapter.execute(session, "click", {"text": "Cancel"})
        assert driver.actions == [("click", "b3", None)]
        assert ContextBlock.PAGE_SNAPSHOT in response.context.present()

    @pytest.mark.asyncio
    async def test_no_match_is_a_response_not_an_exception(self, adapter, session, driver):
        response = await adapter.execute(session, "click", {"aria_label": "Delete"})
        assert response.is_error
        assert response.body.startswith("Error (no_match)")
        assert [s.target_tool for s in response.suggestions] == ["take_snapshot", "wait_for"]
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_fill(self, adapter, session, driver):
        await adapter.execute(session, "fill", {"selector": "#save", "value": "hello"})
        assert driver.actions == [("fill", "b1", "hello")]

    @pytest.mark.asyncio
    async def test_type(self, adapter, session, driver):
        response = await adapter.execute(
            session, "type", {"selector": "#save", "value": "abc", "clear": True}
        )
        assert driver.actions == [("clear", "b1", None), ("type", "b1", "abc")]
        assert response.body.startswith("Typed into <button> by selector='#save'")
        settle_ms(response.body)

    @pytest.mark.asyncio
    async def test_type_uses_text_as_locator(self, adapter, session, driver):
        await adapter.execute(session, "type", {"text": "Cancel", "value": "Save"})
        assert driver.actions == [("type", "b3", "Save")]

    @pytest.mark.asyncio
    async def test_fill_form(self, adapter, session, driver):
        await adapter.execute(session, "take_snapshot", {})
        uid = session.store_for("tab-1").active.elements[3].uid
        response = await adapter.execute(session, "fill_form", {"fields": [
            {"uid": uid, "value": "one"},
            {"selector": "#save", "value": "two"},
            {"aria_label": "Missing", "value": "three"},
        ]})
        assert not response.is_error
        assert driver.actions == [("fill", "b2", "one"), ("fill", "b1", "two")]
        assert response.body.startswith("Filled 2 of 3 fields")
        assert "aria_label='Missing': no_match" in response.body
        assert "Page settled in" in response.body
        assert response.suggestions[0].target_tool == "take_snapshot"
        assert response.suggestions[0].priority is Priority.HIGH

    @pytest.mark.asyncio
    async def test_fill_form_nothing_filled(self, adapter, session, driver):
        await adapter.execute(session, "take_snapshot", {})
        stale = session.store_for("tab-1").active.elements[1].uid
        await adapter.execute(session, "take_snapshot", {})
        response = await adapter.execute(session, "fill_form", {"fields": [
            {"uid": stale, "value": "x"},
            {"selector": "#nope", "value": "y"},
        ]})
        assert response.is_error
        assert response.body.startswith("Error (stale_uid)")
        assert response.suggestions[0].priority is Priority.CRITICAL
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_detached_node_is_tool_failure(self, adapter, session, driver):
        handle_page = driver.pages["tab-1"]

        async def detach_then_query(tab_id, kind, value):
            handles = await FakeDriver.query(driver, tab_id, kind, value)
            handle_page.nodes[0].children.clear()
            return handles

        driver.query = detach_then_query
        response = await adapter.execute(session, "hover", {"selector": "#save"})
        assert response.body.startswith("Error (tool_failed)")
        assert response.suggestions[0].target_tool == "get_console_logs"

    @pytest.mark.asyncio
    async def test_navigate_settles_after_navigation(self, adapter, session, driver):
        await session.store_for("tab-1").take_snapshot()
        response = await adapter.execute(session, "navigate", {"url": "https://example.com/next"})
        assert "after navigation" in response.body
        assert session.store_for("tab-1").active is None
        assert response.context.current_page["url"] == "https://example.com/next"
        assert response.suggestions[0].target_tool == "take_snapshot"

    @pytest.mark.asyncio
    async def test_page_evaluate_settles(self, adapter, session, driver):
        driver.pages["tab-1"].eval_results["document.title"] = "Example"
        response = await adapter.execute(session, "evaluate", {"expression": "document.title"})
        assert response.body.startswith("Example")
        settle_ms(response.body)

    @pytest.mark.asyncio
    async def test_extension_evaluate_does_not_settle(self, adapter, session, driver):
        driver.add_extension("ext1", apis={"runtime"})
        response = await adapter.execute(
            session, "evaluate", {"expression": "!!chrome.runtime.id", "extension_id": "ext1"}
        )
        assert response.body == "True"
        assert session.extension_id == "ext1"
        assert response.context.extension_status["id"] == "ext1"


# ── Failures ────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_closed_tab_is_collaborator_failure(self, adapter, session, driver):
        driver.close_tab("tab-1")
        with pytest.raises(CollaboratorFailure) as excinfo:
            await adapter.execute(session, "click", {"selector": "#save"})
        assert "list_tabs" in excinfo.value.suggestion
        assert excinfo.value.details == {"tab_id": "tab-1"}
        assert session._tab_id is None

    @pytest.mark.asyncio
    async def test_next_call_pins_new_active_tab(self, adapter, session, driver):
        driver.add_page(FakePage("tab-2", three_buttons()))
        driver.close_tab("tab-1")
        driver.active_tab = "tab-2"
        with pytest.raises(CollaboratorFailure):
            await adapter.execute(session, "click", {"selector": "#save"})
        await adapter.execute(session, "click", {"selector": "#save"})
        assert session.tab_id == "tab-2"

    @pytest.mark.asyncio
    async def test_unknown_tab(self, adapter, session):
        response = await adapter.execute(session, "switch_tab", {"tab_id": "tab-9"})
        assert response.is_error
        assert response.body.startswith("Error (entity_not_found)")
        assert response.suggestions[0].target_tool == "list_tabs"
        assert session.tab_id == "tab-1"

    @pytest.mark.asyncio
    async def test_unknown_extension(self, adapter, session):
        response = await adapter.execute(
            session, "get_extension_logs", {"extension_id": "missing"}
        )
        assert response.suggestions[0].target_tool == "list_extensions"
        assert session.extension_id is None

    @pytest.mark.asyncio
    async def test_unknown_request(self, adapter, session):
        response = await adapter.execute(session, "get_network_request", {"request_id": "r9"})
        assert response.suggestions[0].target_tool == "list_network_requests"

    @pytest.mark.asyncio
    async def test_handler_crash_is_tool_failed(self, session):
        async def crash(session, args, node):
            raise ZeroDivisionError("division by zero")

        adapter = ToolExecutionAdapter()
        adapter.register(ToolSpec("crash", crash, NoArgs.parse))
        response = await adapter.execute(session, "crash", {})
        assert response.is_error
        assert response.body == "Error (tool_failed): crash failed: division by zero"


    @pytest.mark.asyncio
    async def test_malformed_dom_during_implicit_snapshot(self, adapter, session, driver):
        async def broken_walk(tab_id, **options):
            return [{"tag": "div", "depth": None}]

        driver.walk_dom = broken_walk
        response = await adapter.execute(session, "click", {"uid": "deadbeef_1"})
        assert response.is_error
        assert response.body.startswith("Error (tool_failed)")
        assert driver.actions == []

    @pytest.mark.asyncio
    async def test_typed_values_not_logged(self, adapter, session, caplog):
        with caplog.at_level(logging.INFO, logger="extdebug"):
            await adapter.execute(session, "fill", {"selector": "#save", "value": "hunter2"})
            await adapter.execute(session, "fill_form", {"fields": [
                {"selector": "#save", "value": "hunter2"},
            ]})
        assert "tool=fill" in caplog.text
        assert "hunter2" not in caplog.text
    @pytest.mark.asyncio
    async def test_no_active_tab(self, adapter, config):
        session = DebugSession(FakeDriver(), config)
        with pytest.raises(CollaboratorFailure, match="no active tab"):
            await adapter.execute(session, "list_tabs", {})


# ── Sessions ────────────────────────────────────────────────────


class TestSessions:
    @pytest.mark.asyncio
    async def test_tab_scope_resolved_lazily(self, adapter, driver, config):
        session = DebugSession(driver, config)
        with pytest.raises(RuntimeError):
            session.tab_id
        await adapter.execute(session, "list_tabs", {})
        assert session.tab_id == "tab-1"

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_uids(self, adapter, driver, config):
        first = DebugSession(driver, config)
        second = DebugSession(driver, config)
        await adapter.execute(first, "take_snapshot", {})
        uid = first.store_for("tab-1").active.elements[2].uid

        response = await adapter.execute(second, "click", {"uid": uid})
        assert response.body.startswith("Error (unknown_uid)")
        assert driver.actions == []

        response = await adapter.execute(first, "click", {"uid": uid})
        assert not response.is_error

    @pytest.mark.asyncio
    async def test_switch_tab_scopes_snapshots(self, adapter, session, driver):
        driver.add_page(FakePage("tab-2", [], url="https://other.example/"))
        await adapter.execute(session, "take_snapshot", {})
        response = await adapter.execute(session, "switch_tab", {"tab_id": "tab-2"})
        assert response.context.current_page["url"] == "https://other.example/"
        response = await adapter.execute(session, "take_snapshot", {})
        assert response.suggestions[0].example_arguments == {"include_hidden": True}


# ── Diagnostics ─────────────────────────────────────────────────


class TestDiagnosticWalk:
    @pytest.mark.asyncio
    async def test_follow_top_suggestions_to_root_cause(self, adapter, session, driver):
        driver.add_extension("ext1", apis={"runtime"}, logs=[
            {"level": "error", "message": "Uncaught TypeError: storage is undefined"},
            {"level": "info", "message": "background started"},
        ])

        response = await adapter.execute(
            session, "wait_for_extension_ready", {"extension_id": "ext1", "timeout_ms": 200}
        )
        assert "NOT ready" in response.body
        assert response.context.extension_status["id"] == "ext1"
        step = response.suggestions[0]
        assert step.priority is Priority.CRITICAL
        assert step.target_tool == "get_extension_logs"

        response = await adapter.execute(session, step.target_tool, step.example_arguments)
        assert "storage is undefined" in response.body
        assert "background started" not in response.body
        step = response.suggestions[0]
        assert step.priority is Priority.CRITICAL
        assert step.target_tool == "get_console_logs"

        driver.pages["tab-1"].console.append({"level": "error", "message": "Failed to save"})
        response = await adapter.execute(session, step.target_tool, step.example_arguments)
        assert "Failed to save" in response.body
