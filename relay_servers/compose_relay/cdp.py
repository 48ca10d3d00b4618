"""Low-level CDP WebSocket connection (websocket-client)."""

from __future__ import annotations

import json
import socket
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .http_client import HttpClientError

MAX_BUFFERED_EVENTS = 500
MAX_PACING_S = 5.0


def _is_event(message: dict[str, Any]) -> bool:
    return isinstance(message.get("method"), str) and "id" not in message


class CdpConnection:
    """One WebSocket to one CDP target (browser or page).

    Commands are strictly request/response on a single socket. Events that show
    up while a response is pending are buffered so a later ``wait_for_event``
    still sees them.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0):
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except (OSError, websocket.WebSocketException) as exc:
            raise HttpClientError(f"CDP connect failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = float(timeout)
        self._ids = 0
        self._events: deque[dict[str, Any]] = deque(maxlen=MAX_BUFFERED_EVENTS)

    # ── commands ────────────────────────────────────────────────────────────

    def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send one command and return its ``result`` (CDP errors raise HttpClientError)."""
        self._ids += 1
        cmd_id = self._ids
        frame: dict[str, Any] = {"id": cmd_id, "method": method}
        if params:
            frame["params"] = params
        try:
            self.ws.settimeout(min(2.0, max(0.5, self.timeout)))
            self.ws.send(json.dumps(frame))
        except Exception as exc:  # noqa: BLE001
            raise HttpClientError(str(exc)) from exc

        reply = self._pump(lambda m: m.get("id") == cmd_id, self.timeout if timeout is None else float(timeout))
        if reply is None:
            raise HttpClientError(f"CDP response timed out ({method})")
        if "error" in reply:
            err = reply["error"]
            raise HttpClientError(str(err.get("message") if isinstance(err, dict) else err))
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    def send_many(self, commands: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Send ``{method, params, delayMs}`` commands in order, sleeping ``delayMs`` after each."""
        results: list[dict[str, Any]] = []
        for cmd in commands:
            method = cmd.get("method")
            if not isinstance(method, str) or not method:
                raise HttpClientError("send_many: command without a method")
            params = cmd.get("params")
            results.append(self.send(method, params if isinstance(params, dict) else None))
            pause = float(cmd.get("delayMs") or 0) / 1000.0
            if pause > 0:
                time.sleep(min(pause, MAX_PACING_S))
        return results

    # ── events ──────────────────────────────────────────────────────────────

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Params of the next ``event_name`` event, or None on timeout."""
        for i, event in enumerate(self._events):
            if event.get("method") == event_name:
                del self._events[i]
                return _params(event)
        event = self._pump(lambda m: m.get("method") == event_name and "id" not in m, timeout)
        return _params(event) if event is not None else None

    # ── plumbing ────────────────────────────────────────────────────────────

    def _pump(self, match: Callable[[dict[str, Any]], bool], timeout: float) -> dict[str, Any] | None:
        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            message = self._recv(remaining)
            if message is None:
                continue
            if match(message):
                return message
            if _is_event(message):
                self._events.append(message)

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except (TimeoutError, websocket.WebSocketTimeoutException):
            return None
        except Exception as exc:  # noqa: BLE001
            if "timed out" in str(exc).lower():
                return None
            raise HttpClientError(f"CDP connection closed: {exc}") from exc
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return message if isinstance(message, dict) else None

    def abort(self) -> None:
        """Shut the raw socket down; websocket-client's close() can block on a wedged page."""
        sock = getattr(self.ws, "sock", None)
        if sock is None:
            return
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        with suppress(OSError):
            sock.close()

    def close(self) -> None:
        self.abort()


def _params(event: dict[str, Any]) -> dict[str, Any]:
    params = event.get("params")
    return params if isinstance(params, dict) else {}


__all__ = ["CdpConnection"]
