from __future__ import annotations

from typing import Any

import pytest

PAGE = {"id": "tab1", "type": "page", "url": "https://x.com/compose/post", "title": "X", "webSocketDebuggerUrl": "ws://page/tab1"}


class DummyConn:
    """Scripted CdpConnection: ``replies`` maps a CDP method to a result dict or an exception."""

    sent: list[tuple[str, dict]] = []
    batches: list[list[dict]] = []
    replies: dict[str, Any] = {}

    def __init__(self, ws_url: str, timeout: float = 5.0) -> None:
        self.ws_url = ws_url
        self.closed = False

    def send(self, method: str, params: dict | None = None, *, timeout: float | None = None) -> dict:
        DummyConn.sent.append((method, params or {}))
        reply = DummyConn.replies.get(method, {})
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(params or {})
        return reply

    def send_many(self, commands: list[dict], *, stop_on_error: bool = True) -> list[dict]:
        DummyConn.batches.append(commands)
        return [{} for _ in commands]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def browser(monkeypatch: pytest.MonkeyPatch, relay_config):
    from relay_servers.compose_relay import browser as browser_mod

    DummyConn.sent = []
    DummyConn.batches = []
    DummyConn.replies = {}
    targets = [dict(PAGE)]

    def fake_get_json(url: str, timeout: float = 2.0):  # noqa: ARG001
        if url.endswith("/json/list"):
            return list(targets)
        return {"Browser": "Chrome/130", "webSocketDebuggerUrl": "ws://browser"}

    monkeypatch.setattr(browser_mod, "CdpConnection", DummyConn)
    monkeypatch.setattr(browser_mod, "http_get_json", fake_get_json)
    host = browser_mod.CdpBrowser(relay_config)
    host.targets = targets  # type: ignore[attr-defined]
    return host


def _evaluate_value(value: Any) -> dict:
    return {"result": {"type": "object", "value": value}}


def test_call_agent_returns_reply(browser) -> None:
    DummyConn.replies["Runtime.evaluate"] = _evaluate_value({"acknowledged": True})
    assert browser.call_agent("tab1", {"type": "readiness-ping"}, timeout=1.5) == {"acknowledged": True}
    method, params = DummyConn.sent[-1]
    assert method == "Runtime.evaluate"
    assert params["awaitPromise"] is True
    assert "readiness-ping" in params["expression"]


def test_call_agent_without_agent_is_no_responder(browser) -> None:
    from relay_servers.compose_relay.errors import NoResponderError

    DummyConn.replies["Runtime.evaluate"] = _evaluate_value({"__noAgent": True})
    with pytest.raises(NoResponderError):
        browser.call_agent("tab1", {"type": "attach-state"}, timeout=1.5)


def test_call_agent_maps_transport_errors(browser) -> None:
    from relay_servers.compose_relay.errors import ChannelTimeoutError, DestinationGoneError, NoResponderError
    from relay_servers.compose_relay.http_client import HttpClientError

    DummyConn.replies["Runtime.evaluate"] = HttpClientError("CDP response timed out")
    with pytest.raises(ChannelTimeoutError):
        browser.call_agent("tab1", {"type": "attach-step"}, timeout=2.0)

    DummyConn.replies["Runtime.evaluate"] = HttpClientError("Cannot find context with specified id")
    with pytest.raises(NoResponderError):
        browser.call_agent("tab1", {"type": "attach-step"}, timeout=2.0)

    DummyConn.replies["Runtime.evaluate"] = HttpClientError("No target with given id found")
    with pytest.raises(DestinationGoneError):
        browser.call_agent("tab1", {"type": "attach-step"}, timeout=2.0)


def test_missing_target_is_gone(browser) -> None:
    from relay_servers.compose_relay.errors import DestinationGoneError

    browser.targets.clear()
    assert browser.get_tab("tab1") is None
    with pytest.raises(DestinationGoneError):
        browser.call_agent("tab1", {"type": "readiness-ping"}, timeout=1.5)


def test_get_tab_reports_ready_state(browser) -> None:
    DummyConn.replies["Runtime.evaluate"] = _evaluate_value("loading")
    tab = browser.get_tab("tab1")
    assert tab is not None
    assert tab.status == "loading"
    assert tab.url == PAGE["url"]


def test_set_file_input_assigns_files(browser) -> None:
    DummyConn.replies["Runtime.evaluate"] = {"result": {"type": "object", "subtype": "node", "objectId": "obj-1"}}
    DummyConn.replies["DOM.requestNode"] = {"nodeId": 42}

    assert browser.set_file_input("tab1", ["/tmp/a.png"]) is True
    methods = [m for m, _ in DummyConn.sent]
    assert methods.index("DOM.requestNode") < methods.index("DOM.setFileInputFiles")
    assert "Runtime.releaseObject" in methods
    assert ("DOM.setFileInputFiles", {"nodeId": 42, "files": ["/tmp/a.png"]}) in DummyConn.sent


def test_set_file_input_without_input(browser) -> None:
    DummyConn.replies["Runtime.evaluate"] = {"result": {"type": "object", "subtype": "null"}}
    assert browser.set_file_input("tab1", ["/tmp/a.png"]) is False
    assert all(m != "DOM.setFileInputFiles" for m, _ in DummyConn.sent)


def test_file_drop_is_paced(browser) -> None:
    browser.dispatch_file_drop("tab1", 10.0, 20.0, ["/tmp/a.png"], pacing_s=0.08)
    (batch,) = DummyConn.batches
    assert [c["params"]["type"] for c in batch] == ["dragEnter", "dragOver", "drop"]
    assert [c["delayMs"] for c in batch] == [80, 80, 0]
    for cmd in batch:
        assert cmd["method"] == "Input.dispatchDragEvent"
        assert cmd["params"]["data"]["files"] == ["/tmp/a.png"]
        assert (cmd["params"]["x"], cmd["params"]["y"]) == (10.0, 20.0)


def test_install_script_registers_bootstrap_once(browser) -> None:
    DummyConn.replies["Page.addScriptToEvaluateOnNewDocument"] = {"identifier": "1"}
    DummyConn.replies["Runtime.evaluate"] = _evaluate_value({"ok": True, "version": "3"})

    assert browser.install_script("tab1", "/* agent */") == {"ok": True, "version": "3"}
    browser.install_script("tab1", "/* agent */")
    registrations = [m for m, _ in DummyConn.sent if m == "Page.addScriptToEvaluateOnNewDocument"]
    assert len(registrations) == 1


def test_install_script_surfaces_page_exceptions(browser) -> None:
    from relay_servers.compose_relay.errors import AttachmentError

    DummyConn.replies["Runtime.evaluate"] = {
        "result": {},
        "exceptionDetails": {"exception": {"description": "EvalError: Refused to evaluate\n  at x"}},
    }
    with pytest.raises(AttachmentError) as info:
        browser.install_script("tab1", "/* agent */")
    assert info.value.reason == "EvalError: Refused to evaluate"


def test_open_tab_uses_browser_socket(browser) -> None:
    DummyConn.replies["Target.createTarget"] = {"targetId": "tab2"}
    assert browser.open_tab("https://x.com/compose/post") == "tab2"
    assert ("Target.activateTarget", {"targetId": "tab2"}) in DummyConn.sent


def test_binding_subscription_filters_by_name() -> None:
    from relay_servers.compose_relay.browser import CdpBindingSubscription

    class EventConn:
        def __init__(self) -> None:
            self.events = [
                {"name": "__other", "payload": "{}"},
                {"name": "__watch", "payload": '{"mutations": 3}'},
            ]
            self.sent: list[str] = []

        def wait_for_event(self, name: str, timeout: float = 10.0):  # noqa: ARG002
            return self.events.pop(0) if self.events else None

        def send(self, method: str, params=None, *, timeout=None):  # noqa: ANN001, ARG002
            self.sent.append(method)
            return {}

        def close(self) -> None:
            pass

    conn = EventConn()
    sub = CdpBindingSubscription(conn, "__watch")  # type: ignore[arg-type]
    assert sub.next(0.1) == {"mutations": 3}
    assert sub.next(0.1) is None
    sub.close()
    assert conn.sent == ["Runtime.removeBinding"]
    assert sub.next(0.1) is None


def test_target_closed_subscription_uses_browser_socket(browser) -> None:
    sub = browser.subscribe_target_closed()
    assert DummyConn.sent == [("Target.setDiscoverTargets", {"discover": True})]
    assert sub._conn.ws_url == "ws://browser"

    events = [{"targetId": "tab1"}, {}]
    sub._conn.wait_for_event = lambda name, timeout=10.0: events.pop(0) if events else None  # noqa: ARG005

    assert sub.next(0.1) == {"targetId": "tab1"}
    assert sub.next(0.1) is None
    sub.close()
    assert sub._conn.closed is True
    assert DummyConn.sent[-1] == ("Target.setDiscoverTargets", {"discover": False})
    assert sub.next(0.1) is None
