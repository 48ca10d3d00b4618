"""Share workflow: destination tab -> producer -> artifact -> retried delivery -> fallback.

Per share (keyed by destination tab id)::

    created -> producing-launched -> delivering -> delivered | fallback-shown -> closed

A record is marked ``sent`` exactly once, on delivery *or* on fallback, so a
second ``artifact-ready`` for the same destination is a no-op.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .attachment import AttachmentStrategyChain, DeliveryReport
from .browser import CdpBrowser, ContextHost
from .config import RelayConfig
from .errors import FatalDeliveryError, MalformedPayloadError, RelayError, ShareStartError
from .fallback import ManualFallbackNotifier
from .messaging import ARTIFACT_READY, AgentChannel
from .payload import ArtifactPayload
from .producers import ArtifactRenderer, ProducerPool
from .readiness import ReadinessProbe
from .retry import AttemptResult, RetryPolicy
from .settings import JsonSettingsStore, SettingsStore
from .state import SharePhase, ShareRecord, ShareStateStore
from .targets import DestinationCloseMonitor, DestinationStatus, TargetContextManager

_LOGGER = logging.getLogger("relay.compose.workflow")

RECOVERY_WAIT_UNRESPONSIVE_S = 1.0
RECOVERY_WAIT_RESPONSIVE_S = 0.5


@dataclass(frozen=True)
class ShareHandle:
    destination_id: str
    producing_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"destinationContextId": self.destination_id, "producingContextId": self.producing_id}


class WorkflowOrchestrator:
    def __init__(
        self,
        *,
        targets: TargetContextManager,
        probe: ReadinessProbe,
        chain: AttachmentStrategyChain,
        notifier: ManualFallbackNotifier,
        retry: RetryPolicy,
        state: ShareStateStore,
        channel: AgentChannel | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.targets = targets
        self.probe = probe
        self.chain = chain
        self.notifier = notifier
        self.retry = retry
        self.state = state
        self.channel = channel
        self._sleep = sleep
        self._dest_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.monitor: DestinationCloseMonitor | None = None

    # ── share lifecycle ─────────────────────────────────────────────────────

    def start_share(self, request: dict[str, Any], target_url: str) -> ShareHandle:
        destination_id = self.targets.create_destination_context(target_url, request)
        record = self.state.get(destination_id)
        if record is None:
            raise ShareStartError(f"share record for {destination_id} vanished", component="workflow", action="start")
        try:
            producing_id = self.targets.create_producing_context(record.payload_descriptor, destination_id)
        except Exception as exc:
            self.state.remove(destination_id)
            if isinstance(exc, ShareStartError):
                raise
            raise ShareStartError(f"producing context failed: {exc}", component="workflow", action="start") from exc
        _LOGGER.info("share started: destination=%s producer=%s", destination_id, producing_id)
        return ShareHandle(destination_id=destination_id, producing_id=producing_id)

    def handle_artifact_ready(self, message: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(message, dict) or message.get("type") != ARTIFACT_READY:
            return {"ok": False, "error": "unexpected message"}
        producing_id = str(message.get("producingContextId") or "")
        record = self.state.find_by_source(producing_id)
        if record is None:
            _LOGGER.warning("artifact from %s has no matching share; cleaning up orphan", producing_id or "<unknown>")
            self.targets.cleanup_producing_context(producing_id)
            return {"ok": False, "orphaned": True}

        destination_id = record.destination_context_id
        if record.sent:
            _LOGGER.info("artifact from %s ignored: share %s already sent", producing_id, destination_id)
            return {"ok": True, "destinationContextId": destination_id, "phase": record.phase.value, "duplicate": True}
        try:
            artifact = ArtifactPayload.from_data_url(message.get("payloadRef"))
        except MalformedPayloadError as exc:
            _LOGGER.error("artifact from %s rejected: %s", producing_id, exc.reason)
            self.state.update(destination_id, last_error=exc.reason)
            return {"ok": False, "error": exc.reason, "destinationContextId": destination_id}

        self.state.update(destination_id, payload_descriptor=record.payload_descriptor.with_payload(artifact.data_url))
        delivered = self.send_with_retry(destination_id, artifact, producing_id)
        current = self.state.get(destination_id)
        return {
            "ok": delivered,
            "destinationContextId": destination_id,
            "phase": current.phase.value if current is not None else SharePhase.CLOSED.value,
        }

    def _lock_for(self, destination_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._dest_locks.get(destination_id)
            if lock is None:
                lock = threading.Lock()
                self._dest_locks[destination_id] = lock
            return lock

    def send_with_retry(
        self,
        destination_id: str,
        payload: ArtifactPayload | str,
        producing_id: str | None = None,
    ) -> bool:
        """Deliver with retries. True when attached (or handed to the in-chain fallback)."""
        with self._lock_for(destination_id):
            record = self.state.get(destination_id)
            if record is None:
                _LOGGER.warning("no share record for %s; dropping artifact", destination_id)
                return False
            if record.sent:
                _LOGGER.info("artifact for %s already sent; skipping duplicate", destination_id)
                return True

            try:
                artifact = payload if isinstance(payload, ArtifactPayload) else ArtifactPayload.from_data_url(payload)
            except MalformedPayloadError as exc:
                _LOGGER.error("refusing malformed payload for %s: %s", destination_id, exc.reason)
                return False

            producing_id = producing_id or record.source_context_id
            self.state.set_phase(destination_id, SharePhase.DELIVERING)
            ctx = self.retry.create_retry_context("send_artifact", destination=destination_id, producer=producing_id)

            try:
                report = self.retry.execute_with_retry(lambda attempt: self._attempt(destination_id, artifact, attempt), ctx)
            except Exception as exc:  # noqa: BLE001
                self._handle_failure(destination_id, artifact, producing_id, exc)
                return False

            if not isinstance(report, DeliveryReport):
                report = DeliveryReport(completed=True)
            phase = SharePhase.FALLBACK_SHOWN if report.fallback_shown else SharePhase.DELIVERED
            self.state.mark_sent(destination_id, phase=phase, strategy=report.strategy)
            self.targets.cleanup_producing_context(producing_id)
            _LOGGER.info(
                "share %s complete: %s (strategy=%s, attempts=%s, %sms)",
                destination_id,
                phase.value,
                report.strategy,
                ctx.attempt + 1,
                ctx.elapsed_ms(),
            )
            return True

    def _attempt(self, destination_id: str, artifact: ArtifactPayload, attempt: int) -> Any:
        status = self.targets.validate_destination(destination_id)
        if status is DestinationStatus.GONE:
            return AttemptResult.fatal(f"Destination tab was closed (no tab with id {destination_id})")
        if status is DestinationStatus.NEEDS_RETRY:
            return AttemptResult.retry("destination still loading")
        if status is DestinationStatus.URL_INVALID:
            return AttemptResult.retry("destination URL is not a compose surface yet")

        if not self.probe.ensure_ready(destination_id, self.retry.max_ping_attempts):
            _LOGGER.warning(
                "agent on %s not ready after %s pings; attempting attachment anyway",
                destination_id,
                self.retry.max_ping_attempts,
            )

        try:
            report = self.chain.deliver_with_report(destination_id, artifact, attempt)
        except FatalDeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001
            if self.retry.is_fatal_error(exc):
                raise
            if self.retry.is_connection_error(exc):
                recovered = self._recover(destination_id, artifact, attempt)
                if recovered is not None and recovered.completed:
                    return recovered
            return AttemptResult.retry(str(exc))

        if report.completed:
            return report
        return AttemptResult.retry("attachment busy" if report.busy else "attachment failed")

    def _recover(self, destination_id: str, artifact: ArtifactPayload, attempt: int) -> DeliveryReport | None:
        """Ping without reinstalling, wait, then one more attach."""
        responsive = self.probe.ping(destination_id)
        self._sleep(RECOVERY_WAIT_RESPONSIVE_S if responsive else RECOVERY_WAIT_UNRESPONSIVE_S)
        _LOGGER.info("retrying attachment on %s after connection error (responsive=%s)", destination_id, responsive)
        try:
            return self.chain.deliver_with_report(destination_id, artifact, attempt)
        except FatalDeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("recovery attach on %s failed: %s", destination_id, exc)
            return None

    def _handle_failure(
        self,
        destination_id: str,
        artifact: ArtifactPayload,
        producing_id: str | None,
        exc: BaseException,
    ) -> None:
        reason = exc.reason if isinstance(exc, RelayError) else str(exc)
        fatal = self.retry.is_fatal_error(exc)
        _LOGGER.warning(
            "delivery to %s %s: %s; falling back to manual attachment",
            destination_id,
            "hit a fatal error" if fatal else "exhausted retries",
            reason,
        )

        def _retry() -> bool:
            return self.chain.deliver(destination_id, artifact, self.retry.max_attempts, show_fallback=False)

        on_retry = None if fatal else _retry
        self.notifier.show(destination_id, artifact, on_retry=on_retry)
        self.targets.cleanup_producing_context(producing_id)
        self.state.update(destination_id, last_error=reason)
        self.state.mark_sent(destination_id, phase=SharePhase.FALLBACK_SHOWN)
        if self.targets.validate_destination(destination_id) is DestinationStatus.GONE:
            self.on_destination_closed(destination_id)

    def record_late_delivery(self, destination_id: str, strategy: str) -> None:
        """An auto-retry after the manual fallback attached the artifact after all."""
        if not self.state.mark_sent(destination_id, phase=SharePhase.DELIVERED, strategy=strategy):
            self.state.update(destination_id, phase=SharePhase.DELIVERED, strategy=strategy)
        _LOGGER.info("share %s delivered by auto-retry via %s", destination_id, strategy)

    # ── teardown / introspection ────────────────────────────────────────────

    def close_share(self, destination_id: str, *, close_tab: bool = False) -> None:
        self.notifier.forget(destination_id)
        self.targets.close_destination_context(destination_id, close_tab=close_tab)
        with self._locks_guard:
            self._dest_locks.pop(destination_id, None)
        _LOGGER.info("share %s closed", destination_id)

    def on_destination_closed(self, destination_id: str) -> None:
        _LOGGER.info("destination %s closed externally", destination_id)
        self.close_share(destination_id, close_tab=False)

    def _on_target_destroyed(self, target_id: str) -> None:
        if self.state.get(target_id) is not None:
            self.on_destination_closed(target_id)

    def start_close_monitor(self) -> bool:
        """Drop share records when their destination tab is closed in the browser."""
        if self.monitor is None:
            self.monitor = DestinationCloseMonitor(self.targets.host, self._on_target_destroyed)
        return self.monitor.start()

    def clear_workflow_state(self) -> int:
        self.notifier.close()
        for record in self.state.records():
            self.targets.cleanup_producing_context(record.source_context_id)
        return self.state.clear_all()

    def stats(self) -> dict[str, Any]:
        return {
            **self.state.stats(),
            "activeProducers": self.targets.producers.active(),
            "retryConfig": self.retry.config(),
            "estimatedMaxRetryTimeMs": self.retry.estimated_total_retry_time_ms(),
        }

    def wait_for_completion(self, destination_id: str, timeout: float) -> ShareRecord | None:
        return self.state.wait_until(destination_id, lambda r: r.sent, timeout)

    def wait_for_auto_retry(self, destination_id: str, timeout: float | None = None) -> str | None:
        """Block while the auto-retry watcher behind a fallback overlay is running; returns its outcome."""
        watcher = self.notifier.watcher(destination_id)
        if watcher is None:
            return None
        return watcher.wait(timeout)

    def close(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        self.notifier.close()
        self.targets.producers.close()
        if self.channel is not None:
            self.channel.close()


def create_default_orchestrator(
    config: RelayConfig,
    host: ContextHost | None = None,
    *,
    settings: SettingsStore | None = None,
    renderer: ArtifactRenderer | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    start_watchers: bool = True,
) -> WorkflowOrchestrator:
    host = host or CdpBrowser(config)
    settings = settings if settings is not None else JsonSettingsStore(config.settings_path)
    channel = AgentChannel(host)
    retry = RetryPolicy.from_config(config, sleep=sleep)
    probe = ReadinessProbe(channel, ping_timeout=config.ping_timeout, max_attempts=config.max_ping_attempts, sleep=sleep)
    notifier = ManualFallbackNotifier(
        host,
        channel,
        artifact_dir=config.artifact_dir,
        overlay_ttl_ms=config.overlay_ttl_ms,
        auto_retry_window_ms=config.auto_retry_window_ms,
        clock=clock,
        start_watchers=start_watchers,
    )
    chain = AttachmentStrategyChain(host, channel, notifier, artifact_dir=config.artifact_dir, sleep=sleep)
    state = ShareStateStore()
    producers = ProducerPool(settings, renderer)
    targets = TargetContextManager(host, state, settings, producers, is_destination_url=config.is_destination_url)
    orchestrator = WorkflowOrchestrator(
        targets=targets,
        probe=probe,
        chain=chain,
        notifier=notifier,
        retry=retry,
        state=state,
        channel=channel,
        sleep=sleep,
    )
    producers.sink = orchestrator.handle_artifact_ready
    chain.on_late_delivery = orchestrator.record_late_delivery
    if start_watchers:
        orchestrator.start_close_monitor()
    return orchestrator


__all__ = ["ShareHandle", "WorkflowOrchestrator", "create_default_orchestrator"]
