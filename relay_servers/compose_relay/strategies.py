"""DOM-level attachment strategies.

Each strategy is one way of getting a file into the compose surface. Dispatch
counts as success: the destination's own acceptance cannot be observed.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .browser import ContextHost
from .errors import ChannelError, DestinationGoneError
from .http_client import HttpClientError
from .messaging import ATTACH_STEP, AgentChannel
from .payload import ArtifactPayload

_LOGGER = logging.getLogger("relay.compose.strategies")

DROP_TARGETS: tuple[str, ...] = (
    '[data-testid="attachments"]',
    '[data-testid="toolBar"]',
    '[data-testid="tweetTextarea_0"]',
    '[role="main"]',
    ":document",
)

PASTE_TARGETS: tuple[str, ...] = ("composer", "textbox", "active", "body")

DROP_PACING_S = 0.08


@dataclass
class StrategyContext:
    tab_id: str
    payload: ArtifactPayload
    host: ContextHost
    channel: AgentChannel
    artifact_dir: str
    step_timeout: float = 2.0
    sleep: Callable[[float], None] = time.sleep
    _file_path: str | None = field(default=None, repr=False)

    def file_path(self) -> str:
        """Materialize the payload once per delivery; CDP file APIs take paths."""
        if self._file_path is None:
            self._file_path = str(self.payload.materialize(Path(self.artifact_dir)))
        return self._file_path

    def step(self, step: str, **params: Any) -> dict[str, Any]:
        return self.channel.call(self.tab_id, {"type": ATTACH_STEP, "step": step, **params}, timeout=self.step_timeout)


@dataclass(frozen=True)
class StrategyOutcome:
    ok: bool
    strategy: str
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class AttachmentStrategy(ABC):
    """Base class for attachment strategies."""

    name: str

    @abstractmethod
    def apply(self, ctx: StrategyContext) -> StrategyOutcome:
        """Attempt one attachment. Fatal/channel errors propagate; anything else is a failed outcome."""

    def ok(self, **detail: Any) -> StrategyOutcome:
        return StrategyOutcome(ok=True, strategy=self.name, detail=detail)

    def fail(self, error: str, **detail: Any) -> StrategyOutcome:
        return StrategyOutcome(ok=False, strategy=self.name, error=error, detail=detail)


class DirectInputStrategy(AttachmentStrategy):
    name = "direct-input"

    def apply(self, ctx: StrategyContext) -> StrategyOutcome:
        intercepting = False
        try:
            try:
                ctx.host.intercept_file_chooser(ctx.tab_id, True)
                intercepting = True
            except HttpClientError as exc:
                _LOGGER.debug("file chooser interception unavailable on %s: %s", ctx.tab_id, exc)

            revealed = ctx.step("reveal-input")
            try:
                assigned = ctx.host.set_file_input(ctx.tab_id, [ctx.file_path()])
            except HttpClientError as exc:
                return self.fail(f"setFileInputFiles failed: {exc}", revealed=revealed.get("clicked"))
            if not assigned:
                return self.fail("file input not found", revealed=revealed.get("clicked"))

            notified = ctx.step("notify-input")
            if not notified.get("ok"):
                return self.fail(str(notified.get("error") or "notify failed"))
            return self.ok(files=notified.get("files"))
        finally:
            if intercepting:
                with suppress(HttpClientError, ChannelError):
                    ctx.host.intercept_file_chooser(ctx.tab_id, False)


class DragDropStrategy(AttachmentStrategy):
    name = "drag-drop"

    def __init__(self, targets: tuple[str, ...] = DROP_TARGETS, *, pacing_s: float = DROP_PACING_S) -> None:
        self.targets = targets
        self.pacing_s = pacing_s

    def apply(self, ctx: StrategyContext) -> StrategyOutcome:
        path = ctx.file_path()
        misses: list[str] = []
        for selector in self.targets:
            loc = ctx.step("locate", selector=selector)
            if not loc.get("ok") or loc.get("x") is None or loc.get("y") is None:
                misses.append(selector)
                continue
            try:
                ctx.host.dispatch_file_drop(ctx.tab_id, float(loc["x"]), float(loc["y"]), [path], pacing_s=self.pacing_s)
            except DestinationGoneError:
                raise
            except HttpClientError as exc:
                _LOGGER.debug("drop on %s failed: %s", selector, exc)
                misses.append(selector)
                continue
            return self.ok(target=selector, tried=len(misses) + 1)
        return self.fail("no drop target accepted the file", tried=misses)


class PasteStrategy(AttachmentStrategy):
    name = "paste"

    def __init__(self, targets: tuple[str, ...] = PASTE_TARGETS) -> None:
        self.targets = targets

    def apply(self, ctx: StrategyContext) -> StrategyOutcome:
        errors: list[str] = []
        for target in self.targets:
            reply = ctx.step("paste", target=target)
            if reply.get("ok"):
                return self.ok(target=target)
            errors.append(str(reply.get("error") or target))
        return self.fail("; ".join(errors) or "no paste target")


class HiddenInputStrategy(AttachmentStrategy):
    name = "hidden-input"

    def apply(self, ctx: StrategyContext) -> StrategyOutcome:
        reply = ctx.step("hidden-input")
        if reply.get("ok"):
            return self.ok(propagated=bool(reply.get("propagated")))
        return self.fail(str(reply.get("error") or "hidden input failed"))


def default_strategies() -> list[AttachmentStrategy]:
    return [DirectInputStrategy(), DragDropStrategy(), PasteStrategy(), HiddenInputStrategy()]


__all__ = [
    "AttachmentStrategy",
    "DROP_PACING_S",
    "DROP_TARGETS",
    "DirectInputStrategy",
    "DragDropStrategy",
    "HiddenInputStrategy",
    "PASTE_TARGETS",
    "PasteStrategy",
    "StrategyContext",
    "StrategyOutcome",
    "default_strategies",
]
