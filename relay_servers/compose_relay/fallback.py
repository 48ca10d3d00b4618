"""Manual fallback overlay and the auto-retry watcher that rides along with it."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any

from .browser import BindingSubscription, ContextHost
from .errors import ChannelError, DestinationGoneError, NoResponderError, RelayError
from .http_client import HttpClientError
from .messaging import ATTACH_STATE, FALLBACK_HIDE, FALLBACK_SHOW, FALLBACK_WATCH, AgentChannel
from .payload import ArtifactPayload

_LOGGER = logging.getLogger("relay.compose.fallback")

OVERLAY_CALL_TIMEOUT = 3.0
STATE_CALL_TIMEOUT = 1.5


class AutoRetryWatcher:
    """Debounced structural-change listener with a hard expiry window.

    Signals come from an in-page MutationObserver calling a CDP binding. After
    ``debounce_s`` of quiet the watcher reads the agent's attachment state and
    calls ``on_retry`` only while a payload is pending, not completed and not
    already being attached. ``on_retry`` returning True ends the watch.
    """

    def __init__(
        self,
        host: ContextHost,
        channel: AgentChannel,
        tab_id: str,
        on_retry: Callable[[], bool],
        *,
        window_s: float = 15.0,
        debounce_s: float = 0.4,
        poll_s: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.channel = channel
        self.tab_id = tab_id
        self.on_retry = on_retry
        self.window_s = max(0.1, float(window_s))
        self.debounce_s = max(0.0, float(debounce_s))
        self.poll_s = max(0.01, float(poll_s))
        self._clock = clock
        self.binding = f"__composeRelayWatch_{uuid.uuid4().hex[:8]}"

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._sub: BindingSubscription | None = None
        self.signals = 0
        self.retries = 0
        self.outcome: str | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def arm(self) -> bool:
        """Subscribe to the binding and start the in-page observer. False if the page refused."""
        try:
            self._sub = self.host.subscribe_binding(self.tab_id, self.binding)
            reply = self.channel.call(
                self.tab_id,
                {
                    "type": FALLBACK_WATCH,
                    "binding": self.binding,
                    "windowMs": int(self.window_s * 1000),
                    "throttleMs": 250,
                },
                timeout=STATE_CALL_TIMEOUT,
            )
        except (RelayError, HttpClientError) as exc:
            _LOGGER.info("auto-retry watch on %s unavailable: %s", self.tab_id, exc)
            self._release_subscription()
            return False
        if not reply.get("ok"):
            _LOGGER.info("auto-retry watch on %s refused: %s", self.tab_id, reply.get("error"))
            self._release_subscription()
            return False
        return True

    def start(self) -> bool:
        if self._thread is not None and self._thread.is_alive():
            return True
        if not self.arm():
            return False
        self._stop.clear()
        t = threading.Thread(target=self.run, name=f"relay-auto-retry-{self.tab_id[:8]}", daemon=True)
        self._thread = t
        t.start()
        return True

    def stop(self, *, join: bool = True) -> None:
        self._stop.set()
        t = self._thread
        if join and t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)

    def wait(self, timeout: float | None = None) -> str | None:
        """Join the watch thread (at most its window plus a margin) and return the outcome."""
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self.window_s + 5.0 if timeout is None else max(0.0, float(timeout)))
        return self.outcome

    def _release_subscription(self) -> None:
        sub = self._sub
        self._sub = None
        if sub is not None:
            with suppress(Exception):
                sub.close()

    def _check_and_retry(self) -> bool:
        """One debounced evaluation. Returns True when the watch should end."""
        try:
            state = self.channel.call(self.tab_id, {"type": ATTACH_STATE}, timeout=STATE_CALL_TIMEOUT)
        except DestinationGoneError:
            self.outcome = "destination-gone"
            return True
        except ChannelError as exc:
            _LOGGER.debug("auto-retry state read on %s failed: %s", self.tab_id, exc.reason)
            return False

        if state.get("completed"):
            self.outcome = "completed"
            return True
        if not state.get("hasPendingData") or state.get("inProgress"):
            return False

        self.retries += 1
        _LOGGER.info("auto-retry #%s on %s after structural change", self.retries, self.tab_id)
        try:
            done = bool(self.on_retry())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("auto-retry on %s raised: %s", self.tab_id, exc)
            return False
        if done:
            self.outcome = "delivered"
        return done

    def run(self) -> None:
        deadline = self._clock() + self.window_s
        last_signal: float | None = None
        try:
            while not self._stop.is_set():
                now = self._clock()
                if now >= deadline:
                    self.outcome = self.outcome or "expired"
                    break
                sub = self._sub
                event = sub.next(timeout=min(self.poll_s, deadline - now)) if sub is not None else None
                if event is not None:
                    self.signals += 1
                    last_signal = self._clock()
                    continue
                if last_signal is not None and self._clock() - last_signal >= self.debounce_s:
                    last_signal = None
                    if self._check_and_retry():
                        break
        finally:
            if self._stop.is_set() and self.outcome is None:
                self.outcome = "stopped"
            self._release_subscription()
            with suppress(RelayError, HttpClientError):
                self.channel.call(self.tab_id, {"type": FALLBACK_WATCH, "stop": True}, timeout=STATE_CALL_TIMEOUT)
            _LOGGER.debug("auto-retry watch on %s ended: %s", self.tab_id, self.outcome)


class ManualFallbackNotifier:
    def __init__(
        self,
        host: ContextHost,
        channel: AgentChannel,
        *,
        artifact_dir: str,
        overlay_ttl_ms: int = 20_000,
        auto_retry_window_ms: int = 15_000,
        debounce_s: float = 0.4,
        clock: Callable[[], float] = time.monotonic,
        start_watchers: bool = True,
    ) -> None:
        self.host = host
        self.channel = channel
        self.artifact_dir = artifact_dir
        self.overlay_ttl_ms = int(overlay_ttl_ms)
        self.auto_retry_window_ms = int(auto_retry_window_ms)
        self.debounce_s = debounce_s
        self._clock = clock
        self.start_watchers = start_watchers
        self._lock = threading.Lock()
        self._shown_at: dict[str, float] = {}
        self._watchers: dict[str, AutoRetryWatcher] = {}
        self.saved: dict[str, Path] = {}

    def _save_artifact(self, tab_id: str, payload: ArtifactPayload, reason: Any) -> Path | None:
        try:
            path = payload.materialize(self.artifact_dir)
        except OSError as exc:
            _LOGGER.error("manual fallback for %s failed: overlay unavailable (%s) and artifact not saved: %s", tab_id, reason, exc)
            return None
        self.saved[tab_id] = path
        _LOGGER.warning(
            "manual fallback: could not show overlay in %s (%s); artifact saved to %s, attach it by hand",
            tab_id,
            reason,
            path,
        )
        return path

    def _show_call(self, tab_id: str, payload: ArtifactPayload) -> dict[str, Any]:
        return self.channel.call(
            tab_id,
            {
                "type": FALLBACK_SHOW,
                "payloadRef": payload.data_url,
                "filename": payload.filename,
                "ttlMs": self.overlay_ttl_ms,
            },
            timeout=OVERLAY_CALL_TIMEOUT,
        )

    def show(self, tab_id: str, payload: ArtifactPayload, *, on_retry: Callable[[], bool] | None = None) -> bool:
        """Show the overlay (replacing any existing one). False means the artifact went to disk instead."""
        try:
            try:
                reply = self._show_call(tab_id, payload)
            except NoResponderError:
                self.channel.install_agent(tab_id)
                reply = self._show_call(tab_id, payload)
        except (RelayError, HttpClientError) as exc:
            self._save_artifact(tab_id, payload, exc)
            return False

        if not reply.get("ok"):
            self._save_artifact(tab_id, payload, reply.get("error") or "overlay refused")
            return False

        with self._lock:
            self._shown_at[tab_id] = self._clock()
        _LOGGER.info("manual fallback overlay shown in %s (%s)", tab_id, payload.describe())

        if on_retry is not None and self.start_watchers:
            self.watch(tab_id, on_retry)
        return True

    def watch(self, tab_id: str, on_retry: Callable[[], bool]) -> AutoRetryWatcher:
        self.stop_watch(tab_id)
        watcher = AutoRetryWatcher(
            self.host,
            self.channel,
            tab_id,
            on_retry,
            window_s=self.auto_retry_window_ms / 1000.0,
            debounce_s=self.debounce_s,
            clock=self._clock,
        )
        with self._lock:
            self._watchers[tab_id] = watcher
        watcher.start()
        return watcher

    def watcher(self, tab_id: str) -> AutoRetryWatcher | None:
        with self._lock:
            return self._watchers.get(tab_id)

    def stop_watch(self, tab_id: str) -> None:
        with self._lock:
            watcher = self._watchers.pop(tab_id, None)
        if watcher is not None:
            watcher.stop()

    def is_active(self, tab_id: str) -> bool:
        with self._lock:
            shown = self._shown_at.get(tab_id)
        if shown is None:
            return False
        if (self._clock() - shown) * 1000 >= self.overlay_ttl_ms:
            with self._lock:
                self._shown_at.pop(tab_id, None)
            return False
        return True

    def dismiss(self, tab_id: str) -> bool:
        self.stop_watch(tab_id)
        with self._lock:
            was_active = self._shown_at.pop(tab_id, None) is not None
        try:
            reply = self.channel.call(tab_id, {"type": FALLBACK_HIDE}, timeout=OVERLAY_CALL_TIMEOUT)
        except (RelayError, HttpClientError) as exc:
            _LOGGER.debug("overlay dismiss on %s failed: %s", tab_id, exc)
            return False
        return bool(reply.get("removed")) or was_active

    def forget(self, tab_id: str) -> None:
        self.stop_watch(tab_id)
        with self._lock:
            self._shown_at.pop(tab_id, None)

    def close(self) -> None:
        with self._lock:
            tab_ids = list(self._watchers)
        for tab_id in tab_ids:
            self.stop_watch(tab_id)


__all__ = ["AutoRetryWatcher", "ManualFallbackNotifier"]
