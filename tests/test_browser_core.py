"""Tests for the shared browser runtime and execution slots (DrissionPage mocked)."""
import json
from unittest.mock import MagicMock, PropertyMock, call, patch

import pytest

import browser_core
from browser_core import (
    STEALTH_INIT_SCRIPT, BrowserConnectionError, BrowserConstants, BrowserCore, ExecutionSlot,
)


@pytest.fixture
def chromium():
    with patch("browser_core.ChromiumPage") as page_cls:
        yield page_cls


def test_browser_is_lazy(chromium):
    core = BrowserCore(port=9333)

    assert core.is_running is False
    assert core.health_check()["status"] == "stopped"
    chromium.assert_not_called()


def test_ensure_launches_once(chromium):
    core = BrowserCore(port=9333)

    first = core.ensure()
    second = core.ensure()

    assert first is second
    chromium.assert_called_once()
    assert core.health_check()["status"] == "running"


def test_disconnected_browser_is_relaunched(chromium):
    dead = MagicMock()
    type(dead).latest_tab = PropertyMock(side_effect=RuntimeError("gone"))
    alive = MagicMock()
    chromium.side_effect = [dead, alive]

    core = BrowserCore(port=9333)
    assert core.ensure() is dead
    assert core.ensure() is alive
    assert chromium.call_count == 2


def test_launch_failure_raises(chromium):
    chromium.side_effect = RuntimeError("no chrome binary")

    with pytest.raises(BrowserConnectionError):
        BrowserCore(port=9333).ensure()


def isolated_tab(context_id):
    tab = MagicMock()

    def run_cdp(cmd, **kwargs):
        if cmd == 'Target.getTargetInfo':
            return {'targetInfo': {'targetId': 'T-' + context_id, 'browserContextId': context_id}}
        return {}

    tab.run_cdp.side_effect = run_cdp
    return tab


def test_slot_opens_fresh_tab_and_always_closes(chromium):
    tab = isolated_tab("CTX-1")
    chromium.return_value.new_tab.return_value = tab
    core = BrowserCore(port=9333)

    with pytest.raises(ValueError):
        with core.open_slot("https://example.com/", isolated=True) as slot:
            assert slot.source is tab
            assert slot.context_id == "CTX-1"
            raise ValueError("boom")

    tab.run_cdp.assert_any_call('Page.addScriptToEvaluateOnNewDocument', source=STEALTH_INIT_SCRIPT)
    tab.get.assert_called_once()
    tab.close.assert_called_once()
    assert core.slots_opened == 1


def test_isolated_contexts_are_disposed_after_each_slot(chromium):
    page = chromium.return_value
    tabs = [isolated_tab(f"CTX-{i}") for i in range(3)]
    page.new_tab.side_effect = tabs
    events = []
    for tab in tabs:
        tab.close.side_effect = lambda: events.append("close")
    page.browser._run_cdp.side_effect = lambda cmd, **kwargs: events.append(cmd)
    core = BrowserCore(port=9333)

    for _ in range(3):
        with core.open_slot("https://www.perplexity.ai/", isolated=True):
            pass

    assert page.new_tab.call_args_list == [call(new_context=True)] * 3
    assert page.browser._run_cdp.call_args_list == [
        call('Target.disposeBrowserContext', browserContextId=f"CTX-{i}") for i in range(3)
    ]
    assert events == ["close", "Target.disposeBrowserContext"] * 3


def test_context_disposed_when_navigation_fails(chromium):
    page = chromium.return_value
    tab = isolated_tab("CTX-9")
    tab.get.side_effect = TimeoutError("navigation")
    page.new_tab.return_value = tab

    with pytest.raises(TimeoutError):
        with BrowserCore(port=9333).open_slot("https://www.perplexity.ai/", isolated=True):
            pass

    tab.close.assert_called_once()
    page.browser._run_cdp.assert_called_once_with('Target.disposeBrowserContext', browserContextId="CTX-9")


def test_default_context_slot_is_not_disposed(chromium):
    page = chromium.return_value
    tab = MagicMock()
    page.new_tab.return_value = tab

    with BrowserCore(port=9333).open_slot("https://gemini.google.com/app", isolated=False) as slot:
        assert slot.context_id is None

    page.new_tab.assert_called_once_with(new_context=False)
    tab.close.assert_called_once()
    page.browser._run_cdp.assert_not_called()
    assert all(c.args[0] != 'Target.getTargetInfo' for c in tab.run_cdp.call_args_list)


def test_isolation_defaults_to_constant(chromium, monkeypatch):
    page = chromium.return_value
    page.new_tab.return_value = MagicMock()
    monkeypatch.setattr(BrowserConstants, "_config", dict(BrowserConstants.get_defaults(), BROWSER_ISOLATED_CONTEXT=False))

    with BrowserCore(port=9333).open_slot("https://example.com/"):
        pass

    page.new_tab.assert_called_once_with(new_context=False)


def test_dispose_failure_is_only_logged():
    source = MagicMock()
    dispose = MagicMock(side_effect=RuntimeError("context already gone"))
    slot = ExecutionSlot(source=source, url="https://example.com/", context_id="CTX", dispose_context=dispose)

    slot.release()
    slot.release()

    source.close.assert_called_once()
    dispose.assert_called_once_with("CTX")
    assert slot.released is True


def test_slot_released_when_navigation_fails(chromium):
    tab = MagicMock()
    tab.get.side_effect = TimeoutError("navigation")
    chromium.return_value.new_tab.return_value = tab

    with pytest.raises(TimeoutError):
        with BrowserCore(port=9333).open_slot("https://example.com/"):
            pass

    tab.close.assert_called_once()


def test_slot_release_is_idempotent():
    source = MagicMock()
    slot = ExecutionSlot(source=source, url="https://example.com/")

    slot.release()
    slot.release()

    source.close.assert_called_once()
    assert slot.released is True


def test_close_quits_and_invalidates(chromium):
    core = BrowserCore(port=9333)
    page = core.ensure()

    core.close()

    page.quit.assert_called_once()
    assert core.is_running is False


def test_constants_file_overrides_defaults(tmp_path, monkeypatch):
    config = tmp_path / "browser_config.json"
    config.write_text(json.dumps({"STREAM_POLL_INTERVAL": 0.25}), encoding="utf-8")
    monkeypatch.setattr(BrowserConstants, "_config_file", config)

    BrowserConstants.reload()
    try:
        assert BrowserConstants.get('STREAM_POLL_INTERVAL') == 0.25
        assert BrowserConstants.get('STREAM_WARMUP') == 5.0
    finally:
        monkeypatch.undo()
        BrowserConstants.reload()


def test_get_browser_is_a_singleton(monkeypatch):
    monkeypatch.setattr(browser_core, "_browser_instance", None)

    assert browser_core.get_browser() is browser_core.get_browser()
