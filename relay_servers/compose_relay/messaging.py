"""Request/response channel to the in-page automation agent.

Every request gets its own ``Future`` and an explicit timeout; a reply that
never arrives surfaces as ``ChannelTimeoutError`` instead of blocking.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from .agent_script import AGENT_SCRIPT_SOURCE
from .browser import ContextHost
from .errors import ChannelTimeoutError
from .redaction import redact_message

_LOGGER = logging.getLogger("relay.compose.messaging")

READINESS_PING = "readiness-ping"
ATTACH_PAYLOAD = "attach-payload"
ATTACH_STEP = "attach-step"
ATTACH_RELEASE = "attach-release"
ATTACH_STATE = "attach-state"
FALLBACK_SHOW = "fallback-show"
FALLBACK_HIDE = "fallback-hide"
FALLBACK_STATE = "fallback-state"
FALLBACK_WATCH = "fallback-watch"
ARTIFACT_READY = "artifact-ready"


class AgentChannel:
    def __init__(self, host: ContextHost, *, max_workers: int = 4, grace: float = 0.5) -> None:
        self.host = host
        self.grace = max(0.0, float(grace))
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="relay-channel")
        self._lock = threading.Lock()
        self._closed = False

    def request(self, tab_id: str, message: dict[str, Any], *, timeout: float) -> Future:
        """Dispatch one message; the returned future resolves to the agent's reply dict."""
        with self._lock:
            if self._closed:
                fut: Future = Future()
                fut.set_exception(ChannelTimeoutError(tab_id, str(message.get("type")), 0.0))
                return fut
            _LOGGER.debug("-> %s %s", tab_id, redact_message(message))
            return self._executor.submit(self.host.call_agent, tab_id, dict(message), timeout=timeout)

    def call(self, tab_id: str, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        fut = self.request(tab_id, message, timeout=timeout)
        try:
            reply = fut.result(timeout=max(0.1, float(timeout)) + self.grace)
        except FutureTimeoutError as exc:
            fut.cancel()
            raise ChannelTimeoutError(tab_id, str(message.get("type")), float(timeout)) from exc
        _LOGGER.debug("<- %s %s", tab_id, redact_message(reply) if isinstance(reply, dict) else reply)
        return reply if isinstance(reply, dict) else {"ok": False, "error": "non-object reply"}

    def install_agent(self, tab_id: str) -> dict[str, Any]:
        """Out-of-band agent (re)installation; the script itself is idempotent."""
        result = self.host.install_script(tab_id, AGENT_SCRIPT_SOURCE)
        _LOGGER.info("agent install on %s: %s", tab_id, result)
        return result

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "ARTIFACT_READY",
    "ATTACH_PAYLOAD",
    "ATTACH_RELEASE",
    "ATTACH_STATE",
    "ATTACH_STEP",
    "AgentChannel",
    "FALLBACK_HIDE",
    "FALLBACK_SHOW",
    "FALLBACK_STATE",
    "FALLBACK_WATCH",
    "READINESS_PING",
]
