"""CDP-backed context host: tabs, agent installation, and DOM-level file delivery.

Everything the workflow needs from a browser goes through the ``ContextHost``
protocol so tests can drive the whole pipeline with an in-Python fake.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

from .agent_script import FILE_INPUT_EXPRESSION, agent_call_expression
from .cdp import CdpConnection
from .config import RelayConfig
from .errors import AttachmentError, ChannelError, ChannelTimeoutError, DestinationGoneError, NoResponderError
from .http_client import HttpClientError, http_get_json
from .redaction import redact_url

_LOGGER = logging.getLogger("relay.compose.browser")

_GONE_MARKERS = ("no target with given id", "target closed", "no tab with id", "inspected target navigated or closed")


@dataclass(frozen=True)
class TabInfo:
    id: str
    url: str
    status: str = "unknown"
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "url": redact_url(self.url), "status": self.status, "title": self.title}


class BindingSubscription(Protocol):
    def next(self, timeout: float) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


class ContextHost(Protocol):
    def open_tab(self, url: str, *, active: bool = True) -> str: ...

    def close_tab(self, tab_id: str) -> bool: ...

    def get_tab(self, tab_id: str) -> TabInfo | None: ...

    def install_script(self, tab_id: str, source: str) -> dict[str, Any]: ...

    def call_agent(self, tab_id: str, message: dict[str, Any], *, timeout: float) -> dict[str, Any]: ...

    def set_file_input(self, tab_id: str, paths: list[str]) -> bool: ...

    def intercept_file_chooser(self, tab_id: str, enabled: bool) -> None: ...

    def dispatch_file_drop(self, tab_id: str, x: float, y: float, paths: list[str], *, pacing_s: float = 0.08) -> None: ...

    def subscribe_binding(self, tab_id: str, name: str) -> BindingSubscription: ...

    def subscribe_target_closed(self) -> BindingSubscription: ...


class CdpBindingSubscription:
    """Dedicated page connection that yields ``Runtime.bindingCalled`` payloads for one binding."""

    def __init__(self, conn: CdpConnection, name: str) -> None:
        self._conn = conn
        self.name = name
        self._closed = False

    def next(self, timeout: float) -> dict[str, Any] | None:
        if self._closed:
            return None
        while True:
            try:
                params = self._conn.wait_for_event("Runtime.bindingCalled", timeout=timeout)
            except HttpClientError as exc:
                _LOGGER.debug("binding %s connection ended: %s", self.name, exc)
                self._closed = True
                return None
            if params is None:
                return None
            if params.get("name") != self.name:
                continue
            raw = params.get("payload")
            try:
                data = json.loads(raw) if isinstance(raw, str) else {}
            except json.JSONDecodeError:
                data = {"raw": raw}
            return data if isinstance(data, dict) else {"value": data}

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            self._conn.send("Runtime.removeBinding", {"name": self.name}, timeout=1.0)
        self._conn.close()


class CdpTargetClosedSubscription:
    """Browser-level connection that yields the ids of page targets as they are destroyed."""

    def __init__(self, conn: CdpConnection) -> None:
        self._conn = conn
        self._closed = False

    def next(self, timeout: float) -> dict[str, Any] | None:
        if self._closed:
            return None
        try:
            params = self._conn.wait_for_event("Target.targetDestroyed", timeout=timeout)
        except HttpClientError as exc:
            _LOGGER.debug("target lifecycle connection ended: %s", exc)
            self._closed = True
            return None
        if params is None or not params.get("targetId"):
            return None
        return {"targetId": str(params["targetId"])}

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            self._conn.send("Target.setDiscoverTargets", {"discover": False}, timeout=1.0)
        self._conn.close()


class CdpBrowser:
    """ContextHost over a Chromium remote-debugging endpoint."""

    def __init__(self, config: RelayConfig) -> None:
        self.config = config
        self._base = f"http://127.0.0.1:{config.cdp_port}"
        self._conns: dict[str, CdpConnection] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._bootstrap: dict[str, str] = {}

    # ── discovery ───────────────────────────────────────────────────────────

    def version(self) -> dict[str, Any]:
        data = http_get_json(f"{self._base}/json/version", timeout=self.config.cdp_timeout)
        return data if isinstance(data, dict) else {}

    def _get_targets(self) -> list[dict[str, Any]]:
        try:
            data = http_get_json(f"{self._base}/json/list", timeout=self.config.cdp_timeout)
        except HttpClientError:
            return []
        return [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []

    def _get_browser_ws(self) -> str:
        ws_url = self.version().get("webSocketDebuggerUrl")
        if not ws_url:
            raise HttpClientError("CDP browser WebSocket URL not found")
        return str(ws_url)

    def _target(self, tab_id: str) -> dict[str, Any] | None:
        for t in self._get_targets():
            if t.get("id") == tab_id and t.get("type") == "page":
                return t
        return None

    def list_tabs(self) -> list[TabInfo]:
        return [
            TabInfo(id=str(t.get("id")), url=str(t.get("url") or ""), title=str(t.get("title") or ""))
            for t in self._get_targets()
            if t.get("type") == "page"
        ]

    # ── per-tab connections ─────────────────────────────────────────────────

    def _lock_for(self, tab_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(tab_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[tab_id] = lock
            return lock

    def _page_ws_url(self, tab_id: str, *, action: str) -> str:
        target = self._target(tab_id)
        if target is None:
            raise DestinationGoneError(tab_id, action=action)
        ws_url = target.get("webSocketDebuggerUrl")
        if not ws_url:
            # Another client (DevTools window) holds the target.
            raise ChannelError(
                "Page WebSocket is not available (target attached elsewhere)",
                component="browser",
                action=action,
                suggestion="Close DevTools for the destination tab and retry",
                details={"tabId": tab_id},
            )
        return str(ws_url)

    def _conn(self, tab_id: str, *, action: str) -> CdpConnection:
        conn = self._conns.get(tab_id)
        if conn is not None:
            return conn
        conn = CdpConnection(self._page_ws_url(tab_id, action=action), timeout=self.config.cdp_timeout)
        with suppress(HttpClientError):
            conn.send("Runtime.enable")
        self._conns[tab_id] = conn
        return conn

    def _drop_conn(self, tab_id: str) -> None:
        conn = self._conns.pop(tab_id, None)
        if conn is not None:
            conn.close()

    def _send(
        self,
        tab_id: str,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        action: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send on the tab's cached connection, mapping transport failures to the error taxonomy."""
        with self._lock_for(tab_id):
            conn = self._conn(tab_id, action=action)
            try:
                return conn.send(method, params, timeout=timeout)
            except HttpClientError as exc:
                msg = str(exc)
                low = msg.lower()
                if any(m in low for m in _GONE_MARKERS):
                    self._drop_conn(tab_id)
                    raise DestinationGoneError(tab_id, action=action, details={"cdp": msg}) from exc
                if "connection closed" in low:
                    self._drop_conn(tab_id)
                    if self._target(tab_id) is None:
                        raise DestinationGoneError(tab_id, action=action, details={"cdp": msg}) from exc
                    raise ChannelError(
                        f"channel closed: {msg}",
                        component="browser",
                        action=action,
                        suggestion="The page may have crashed or reloaded; retry",
                        details={"tabId": tab_id},
                    ) from exc
                raise

    # ── ContextHost ─────────────────────────────────────────────────────────

    def open_tab(self, url: str, *, active: bool = True) -> str:
        conn = CdpConnection(self._get_browser_ws(), timeout=self.config.cdp_timeout)
        try:
            result = conn.send("Target.createTarget", {"url": url, "background": not active})
            tab_id = result.get("targetId")
            if not tab_id:
                raise HttpClientError("Failed to create browser tab")
            if active:
                with suppress(HttpClientError):
                    conn.send("Target.activateTarget", {"targetId": tab_id})
        finally:
            conn.close()
        _LOGGER.info("opened tab %s -> %s", tab_id, redact_url(url))
        return str(tab_id)

    def close_tab(self, tab_id: str) -> bool:
        with self._lock_for(tab_id):
            self._drop_conn(tab_id)
            self._bootstrap.pop(tab_id, None)
        try:
            conn = CdpConnection(self._get_browser_ws(), timeout=3.0)
        except HttpClientError as exc:
            _LOGGER.warning("close_tab %s: browser unreachable: %s", tab_id, exc)
            return False
        try:
            conn.send("Target.closeTarget", {"targetId": tab_id})
            return True
        except HttpClientError as exc:
            _LOGGER.info("close_tab %s failed: %s", tab_id, exc)
            return False
        finally:
            conn.close()

    def get_tab(self, tab_id: str) -> TabInfo | None:
        target = self._target(tab_id)
        if target is None:
            return None
        status = "unknown"
        try:
            res = self._send(
                tab_id,
                "Runtime.evaluate",
                {"expression": "document.readyState", "returnByValue": True},
                action="status",
                timeout=1.0,
            )
            value = (res.get("result") or {}).get("value")
            if isinstance(value, str) and value:
                status = value
        except DestinationGoneError:
            return None
        except (ChannelError, HttpClientError) as exc:
            _LOGGER.debug("readyState probe for %s failed: %s", tab_id, exc)
        return TabInfo(
            id=tab_id,
            url=str(target.get("url") or ""),
            status=status,
            title=str(target.get("title") or ""),
        )

    def install_script(self, tab_id: str, source: str) -> dict[str, Any]:
        if tab_id not in self._bootstrap:
            # Survive reloads of the compose surface.
            try:
                self._send(tab_id, "Page.enable", action="install")
                res = self._send(tab_id, "Page.addScriptToEvaluateOnNewDocument", {"source": source}, action="install")
                identifier = res.get("identifier")
                if isinstance(identifier, str) and identifier:
                    self._bootstrap[tab_id] = identifier
            except HttpClientError as exc:
                _LOGGER.debug("bootstrap registration for %s failed: %s", tab_id, exc)
        res = self._send(
            tab_id,
            "Runtime.evaluate",
            {"expression": source, "returnByValue": True, "awaitPromise": True},
            action="install",
        )
        if res.get("exceptionDetails"):
            raise AttachmentError(
                _exception_text(res),
                component="browser",
                action="install",
                suggestion="The page may block script evaluation (CSP); use the manual fallback",
                details={"tabId": tab_id},
            )
        value = (res.get("result") or {}).get("value")
        return value if isinstance(value, dict) else {"ok": True}

    def call_agent(self, tab_id: str, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        msg_type = str(message.get("type") or "")
        expr = agent_call_expression(json.dumps(message))
        try:
            res = self._send(
                tab_id,
                "Runtime.evaluate",
                {"expression": expr, "returnByValue": True, "awaitPromise": True},
                action=msg_type or "call",
                timeout=timeout,
            )
        except HttpClientError as exc:
            low = str(exc).lower()
            if "timed out" in low:
                # The evaluation may still be running in the page; the next command would read its reply.
                with self._lock_for(tab_id):
                    self._drop_conn(tab_id)
                raise ChannelTimeoutError(tab_id, msg_type, timeout) from exc
            if "cannot find context" in low or "execution context was destroyed" in low:
                raise NoResponderError(tab_id) from exc
            raise ChannelError(str(exc), component="browser", action=msg_type, details={"tabId": tab_id}) from exc

        if res.get("exceptionDetails"):
            raise ChannelError(
                f"agent raised: {_exception_text(res)}",
                component="browser",
                action=msg_type,
                details={"tabId": tab_id},
            )
        value = (res.get("result") or {}).get("value")
        if not isinstance(value, dict):
            return {"ok": False, "error": "agent returned no object"}
        if value.get("__noAgent"):
            raise NoResponderError(tab_id)
        return value

    def set_file_input(self, tab_id: str, paths: list[str]) -> bool:
        res = self._send(
            tab_id,
            "Runtime.evaluate",
            {"expression": FILE_INPUT_EXPRESSION, "returnByValue": False, "awaitPromise": True},
            action="set_file_input",
        )
        obj = res.get("result") if isinstance(res, dict) else None
        if not isinstance(obj, dict) or obj.get("subtype") == "null" or obj.get("type") == "undefined":
            return False
        object_id = obj.get("objectId")
        if not isinstance(object_id, str) or not object_id:
            return False

        with suppress(HttpClientError):
            self._send(tab_id, "DOM.getDocument", {"depth": 0}, action="set_file_input")
        try:
            node = self._send(tab_id, "DOM.requestNode", {"objectId": object_id}, action="set_file_input")
        finally:
            with suppress(Exception):
                self._send(tab_id, "Runtime.releaseObject", {"objectId": object_id}, action="set_file_input")
        node_id = node.get("nodeId", 0) if isinstance(node, dict) else 0
        if not node_id:
            return False
        self._send(tab_id, "DOM.setFileInputFiles", {"nodeId": node_id, "files": list(paths)}, action="set_file_input")
        return True

    def intercept_file_chooser(self, tab_id: str, enabled: bool) -> None:
        with suppress(HttpClientError):
            self._send(tab_id, "Page.enable", action="intercept")
        self._send(tab_id, "Page.setInterceptFileChooserDialog", {"enabled": bool(enabled)}, action="intercept")

    def dispatch_file_drop(self, tab_id: str, x: float, y: float, paths: list[str], *, pacing_s: float = 0.08) -> None:
        drag_data = {"items": [], "files": list(paths), "dragOperationsMask": 1}
        delay_ms = max(0, int(pacing_s * 1000))
        commands = [
            {
                "method": "Input.dispatchDragEvent",
                "params": {"type": kind, "x": float(x), "y": float(y), "data": drag_data, "modifiers": 0},
                "delayMs": delay_ms if kind != "drop" else 0,
            }
            for kind in ("dragEnter", "dragOver", "drop")
        ]
        with self._lock_for(tab_id):
            conn = self._conn(tab_id, action="drop")
            try:
                conn.send_many(commands)
            except HttpClientError as exc:
                if any(m in str(exc).lower() for m in _GONE_MARKERS):
                    raise DestinationGoneError(tab_id, action="drop") from exc
                raise

    def subscribe_binding(self, tab_id: str, name: str) -> CdpBindingSubscription:
        conn = CdpConnection(self._page_ws_url(tab_id, action="watch"), timeout=self.config.cdp_timeout)
        try:
            conn.send("Runtime.enable")
            conn.send("Runtime.addBinding", {"name": name})
        except HttpClientError:
            conn.close()
            raise
        return CdpBindingSubscription(conn, name)

    def subscribe_target_closed(self) -> CdpTargetClosedSubscription:
        conn = CdpConnection(self._get_browser_ws(), timeout=self.config.cdp_timeout)
        try:
            conn.send("Target.setDiscoverTargets", {"discover": True})
        except HttpClientError:
            conn.close()
            raise
        return CdpTargetClosedSubscription(conn)

    def close(self) -> None:
        with self._registry_lock:
            tab_ids = list(self._conns)
        for tab_id in tab_ids:
            with suppress(Exception):
                self._drop_conn(tab_id)


def _exception_text(res: dict[str, Any]) -> str:
    details = res.get("exceptionDetails") or {}
    exc = details.get("exception") if isinstance(details, dict) else None
    if isinstance(exc, dict) and exc.get("description"):
        return str(exc["description"]).splitlines()[0]
    return str(details.get("text") or "evaluation failed") if isinstance(details, dict) else "evaluation failed"


__all__ = [
    "BindingSubscription",
    "CdpBindingSubscription",
    "CdpBrowser",
    "CdpTargetClosedSubscription",
    "ContextHost",
    "TabInfo",
]
