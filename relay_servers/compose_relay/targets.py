"""Destination tabs and producing contexts for a share."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from .browser import BindingSubscription, ContextHost
from .errors import DestinationGoneError, RelayError, ShareStartError
from .http_client import HttpClientError
from .payload import PayloadDescriptor
from .producers import ProducerPool
from .redaction import redact_url
from .settings import SettingsStore, pending_request_key
from .state import SharePhase, ShareStateStore

_LOGGER = logging.getLogger("relay.compose.targets")


class DestinationStatus(str, Enum):
    VALID = "valid"
    NEEDS_RETRY = "needs-retry"
    URL_INVALID = "url-invalid"
    GONE = "gone"

    @property
    def fatal(self) -> bool:
        return self is DestinationStatus.GONE

    @property
    def retryable(self) -> bool:
        return self in {DestinationStatus.NEEDS_RETRY, DestinationStatus.URL_INVALID}


class TargetContextManager:
    def __init__(
        self,
        host: ContextHost,
        state: ShareStateStore,
        settings: SettingsStore,
        producers: ProducerPool,
        *,
        is_destination_url: Callable[[str], bool],
    ) -> None:
        self.host = host
        self.state = state
        self.settings = settings
        self.producers = producers
        self.is_destination_url = is_destination_url

    def create_destination_context(self, target_url: str, request: dict[str, Any]) -> str:
        if not target_url:
            raise ShareStartError("target URL is required", component="targets", action="open")
        if not isinstance(request, dict) or not request:
            raise ShareStartError("share request is required", component="targets", action="open")
        if not self.is_destination_url(target_url):
            raise ShareStartError(
                f"invalid url for a compose surface: {redact_url(target_url)}",
                component="targets",
                action="open",
                suggestion="Use an https URL on an allowlisted destination host (RELAY_DESTINATION_HOSTS)",
            )

        try:
            destination_id = self.host.open_tab(target_url, active=True)
        except HttpClientError as exc:
            raise ShareStartError(
                f"could not open destination tab: {exc}",
                component="targets",
                action="open",
                suggestion="Check that the browser is running with remote debugging enabled",
            ) from exc

        self.state.create(destination_id, PayloadDescriptor(request=dict(request), target_url=target_url))
        _LOGGER.info("destination %s opened for %s", destination_id, redact_url(target_url))
        return destination_id

    def create_producing_context(self, descriptor: PayloadDescriptor, destination_id: str) -> str:
        if self.state.get(destination_id) is None:
            raise ShareStartError(
                f"no share record for destination {destination_id}",
                component="targets",
                action="produce",
            )
        self.settings.set(pending_request_key(destination_id), dict(descriptor.request))

        # Attach the id before the worker exists so a fast artifact-ready always finds its record.
        producer_id = self.producers.reserve(destination_id)
        self.state.update(destination_id, source_context_id=producer_id, phase=SharePhase.PRODUCING_LAUNCHED)
        try:
            self.producers.launch(producer_id)
        except RuntimeError as exc:
            self.state.update(destination_id, source_context_id=None, phase=SharePhase.CREATED)
            self.producers.cleanup(producer_id)
            raise ShareStartError(
                f"could not launch producer: {exc}",
                component="targets",
                action="produce",
            ) from exc
        _LOGGER.info("%s launched for destination %s", producer_id, destination_id)
        return producer_id

    def validate_destination(self, destination_id: str) -> DestinationStatus:
        try:
            tab = self.host.get_tab(destination_id)
        except DestinationGoneError:
            tab = None
        if tab is None:
            _LOGGER.warning("destination %s no longer exists", destination_id)
            return DestinationStatus.GONE
        if tab.status == "loading":
            _LOGGER.info("destination %s still loading", destination_id)
            return DestinationStatus.NEEDS_RETRY
        if not self.is_destination_url(tab.url):
            _LOGGER.warning("destination %s URL not valid for attachment: %s", destination_id, redact_url(tab.url))
            return DestinationStatus.URL_INVALID
        return DestinationStatus.VALID

    def cleanup_producing_context(self, producer_id: str | None) -> None:
        if not producer_id:
            return
        try:
            if self.producers.cleanup(producer_id):
                _LOGGER.info("cleaned up %s", producer_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("failed to clean up %s: %s", producer_id, exc)

    def close_destination_context(self, destination_id: str, *, close_tab: bool = True) -> None:
        record = self.state.remove(destination_id)
        if record is not None:
            self.cleanup_producing_context(record.source_context_id)
        if close_tab:
            try:
                self.host.close_tab(destination_id)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("failed to close destination %s: %s", destination_id, exc)


class DestinationCloseMonitor:
    """Background listener for browser-side tab closure.

    Reads ``Target.targetDestroyed`` from a dedicated browser connection and
    hands each id to ``on_closed``. Filtering to ids that own a share is the
    callback's job.
    """

    def __init__(self, host: ContextHost, on_closed: Callable[[str], None], *, poll_s: float = 0.5) -> None:
        self.host = host
        self.on_closed = on_closed
        self.poll_s = max(0.01, float(poll_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._sub: BindingSubscription | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.active:
            return True
        try:
            self._sub = self.host.subscribe_target_closed()
        except (RelayError, HttpClientError) as exc:
            _LOGGER.warning("tab-closure monitor unavailable: %s", exc)
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="relay-target-monitor", daemon=True)
        self._thread.start()
        return True

    def run(self) -> None:
        sub = self._sub
        try:
            while sub is not None and not self._stop.is_set():
                event = sub.next(timeout=self.poll_s)
                target_id = (event or {}).get("targetId")
                if not target_id:
                    continue
                try:
                    self.on_closed(str(target_id))
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.warning("closure handling for %s failed: %s", target_id, exc)
        finally:
            self._sub = None
            if sub is not None:
                sub.close()

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        self._thread = None


__all__ = ["DestinationCloseMonitor", "DestinationStatus", "TargetContextManager"]
