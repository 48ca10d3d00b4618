"""Ordered attachment chain with a terminal manual fallback.

The in-page ``AttachmentState`` makes delivery idempotent per tab: a call while
another attach is in progress fails without side effects, and once a strategy
has reported success every later call succeeds without running anything.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from .browser import ContextHost
from .errors import AttachmentError, ChannelError, DestinationGoneError, MalformedPayloadError
from .fallback import ManualFallbackNotifier
from .http_client import HttpClientError
from .messaging import ATTACH_PAYLOAD, ATTACH_RELEASE, AgentChannel
from .payload import ArtifactPayload
from .strategies import AttachmentStrategy, StrategyContext, StrategyOutcome, default_strategies

_LOGGER = logging.getLogger("relay.compose.attachment")


def step_timeout(attempt: int) -> float:
    """Per-message response timeout, widened as attempts go on."""
    if attempt <= 0:
        return 2.0
    if attempt <= 2:
        return 4.0
    return 6.0


@dataclass(frozen=True)
class DeliveryReport:
    completed: bool
    strategy: str | None = None
    fallback_shown: bool = False
    already_completed: bool = False
    busy: bool = False
    outcomes: tuple[StrategyOutcome, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "strategy": self.strategy,
            "fallbackShown": self.fallback_shown,
            "alreadyCompleted": self.already_completed,
            "busy": self.busy,
            "tried": [o.strategy for o in self.outcomes],
        }


def coerce_payload(payload: ArtifactPayload | str) -> ArtifactPayload:
    if isinstance(payload, ArtifactPayload):
        return payload
    return ArtifactPayload.from_data_url(payload)


class AttachmentStrategyChain:
    def __init__(
        self,
        host: ContextHost,
        channel: AgentChannel,
        notifier: ManualFallbackNotifier,
        *,
        artifact_dir: str,
        strategies: Sequence[AttachmentStrategy] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.channel = channel
        self.notifier = notifier
        self.artifact_dir = artifact_dir
        self.strategies: list[AttachmentStrategy] = list(strategies) if strategies is not None else default_strategies()
        self._sleep = sleep
        # Called with (tab_id, strategy) when an attach succeeds while the manual overlay is up.
        self.on_late_delivery: Callable[[str, str], None] | None = None

    def deliver(self, tab_id: str, payload: ArtifactPayload | str, attempt: int = 0, *, show_fallback: bool = True) -> bool:
        return self.deliver_with_report(tab_id, payload, attempt, show_fallback=show_fallback).completed

    def _arm(self, tab_id: str, artifact: ArtifactPayload, timeout: float) -> dict[str, Any]:
        reply = self.channel.call(
            tab_id,
            {"type": ATTACH_PAYLOAD, "payloadRef": artifact.data_url, "filename": artifact.filename},
            timeout=timeout,
        )
        if reply.get("ok") or reply.get("busy"):
            return reply
        error = str(reply.get("error") or "attach-payload rejected")
        if "malformed" in error.lower():
            raise MalformedPayloadError(error)
        raise AttachmentError(error, component="attachment", action="arm", details={"tabId": tab_id})

    def _release(self, tab_id: str, *, completed: bool, strategy: str | None, timeout: float) -> None:
        try:
            self.channel.call(
                tab_id,
                {"type": ATTACH_RELEASE, "completed": completed, "strategy": strategy},
                timeout=timeout,
            )
        except (ChannelError, DestinationGoneError, HttpClientError) as exc:
            _LOGGER.debug("attach-release on %s failed: %s", tab_id, exc)

    def _run_strategy(self, strategy: AttachmentStrategy, ctx: StrategyContext) -> StrategyOutcome:
        try:
            return strategy.apply(ctx)
        except (ChannelError, DestinationGoneError):
            raise
        except Exception as exc:  # noqa: BLE001
            return StrategyOutcome(ok=False, strategy=strategy.name, error=str(exc))

    def deliver_with_report(
        self,
        tab_id: str,
        payload: ArtifactPayload | str,
        attempt: int = 0,
        *,
        show_fallback: bool = True,
    ) -> DeliveryReport:
        artifact = coerce_payload(payload)
        timeout = step_timeout(attempt)

        gate = self._arm(tab_id, artifact, timeout)
        if gate.get("alreadyCompleted"):
            _LOGGER.info("attachment on %s already completed; nothing to do", tab_id)
            return DeliveryReport(completed=True, already_completed=True)
        if gate.get("busy"):
            _LOGGER.info("attachment on %s already in progress; skipping", tab_id)
            return DeliveryReport(completed=False, busy=True)

        ctx = StrategyContext(
            tab_id=tab_id,
            payload=artifact,
            host=self.host,
            channel=self.channel,
            artifact_dir=self.artifact_dir,
            step_timeout=timeout,
            sleep=self._sleep,
        )
        outcomes: list[StrategyOutcome] = []
        winner: str | None = None
        try:
            for strategy in self.strategies:
                outcome = self._run_strategy(strategy, ctx)
                outcomes.append(outcome)
                if outcome.ok:
                    winner = strategy.name
                    break
                _LOGGER.info("strategy %s on %s failed: %s", strategy.name, tab_id, outcome.error)
        finally:
            self._release(tab_id, completed=winner is not None, strategy=winner, timeout=timeout)

        if winner is not None:
            _LOGGER.info("attached artifact to %s via %s", tab_id, winner)
            if self.notifier.is_active(tab_id):
                if self.on_late_delivery is not None:
                    self.on_late_delivery(tab_id, winner)
                with suppress(Exception):
                    self.notifier.dismiss(tab_id)
            return DeliveryReport(completed=True, strategy=winner, outcomes=tuple(outcomes))

        if not show_fallback:
            return DeliveryReport(completed=False, outcomes=tuple(outcomes))

        _LOGGER.warning("all %s attachment strategies failed on %s; showing manual fallback", len(outcomes), tab_id)

        def _retry() -> bool:
            return self.deliver(tab_id, artifact, attempt + 1, show_fallback=False)

        self.notifier.show(tab_id, artifact, on_retry=_retry)
        return DeliveryReport(completed=True, fallback_shown=True, outcomes=tuple(outcomes))


__all__ = ["AttachmentStrategyChain", "DeliveryReport", "coerce_payload", "step_timeout"]
