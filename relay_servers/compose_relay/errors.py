"""Error taxonomy for the share workflow.

Fatal errors are never retried (destination gone, malformed payload, permission
problems). Channel errors are connection-class and retryable. Everything is a
``RelayError`` so callers can surface a structured, actionable message.
"""

from __future__ import annotations

from typing import Any


class RelayError(RuntimeError):
    """Structured error with context for the orchestrator and the CLI."""

    def __init__(
        self,
        reason: str,
        *,
        component: str = "relay",
        action: str = "run",
        suggestion: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(reason)
        self.component = component
        self.action = action
        self.reason = reason
        self.suggestion = suggestion
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.component}] {self.action} failed: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": type(self).__name__,
            "component": self.component,
            "action": self.action,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "details": self.details,
        }


class FatalDeliveryError(RelayError):
    """Never retried; routes the workflow straight to the manual fallback."""


class DestinationGoneError(FatalDeliveryError):
    def __init__(self, tab_id: str, *, action: str = "lookup", details: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Destination tab was closed (no tab with id {tab_id})",
            component="targets",
            action=action,
            suggestion="Start a new share; the compose tab no longer exists",
            details={"tabId": tab_id, **(details or {})},
        )
        self.tab_id = tab_id


class MalformedPayloadError(FatalDeliveryError):
    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Malformed payload: {reason}",
            component="payload",
            action="validate",
            suggestion="Provide a data:image/(png|jpeg|webp|gif);base64,... reference",
            details=details,
        )


class ChannelError(RelayError):
    """Connection-class failure talking to the automation agent (retryable)."""


class NoResponderError(ChannelError):
    def __init__(self, tab_id: str) -> None:
        super().__init__(
            "Could not establish connection: receiving end does not exist",
            component="channel",
            action="request",
            suggestion="Install the automation agent into the destination tab and retry",
            details={"tabId": tab_id},
        )


class ChannelTimeoutError(ChannelError):
    def __init__(self, tab_id: str, message_type: str, timeout: float) -> None:
        super().__init__(
            f"Agent did not respond: {message_type} timed out after {timeout:.1f}s",
            component="channel",
            action="request",
            suggestion="The destination may still be loading; retry shortly",
            details={"tabId": tab_id, "type": message_type, "timeout": timeout},
        )


class AttachmentError(RelayError):
    """The agent refused or failed an attachment step."""


class RetryExhaustedError(RelayError):
    def __init__(self, operation: str, attempts: int, last_error: str | None) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error or 'unknown error'}",
            component="retry",
            action=operation,
            suggestion="Complete the action manually from the fallback overlay",
            details={"attempts": attempts, "lastError": last_error},
        )
        self.attempts = attempts
        self.last_error = last_error


class DuplicateShareError(RelayError):
    def __init__(self, destination_id: str) -> None:
        super().__init__(
            f"A pending share already exists for destination {destination_id}",
            component="state",
            action="create",
            suggestion="Finish or remove the existing share first",
            details={"destinationContextId": destination_id},
        )


class ShareStartError(RelayError):
    """Opening the destination or launching the producer failed."""


__all__ = [
    "AttachmentError",
    "ChannelError",
    "ChannelTimeoutError",
    "DestinationGoneError",
    "DuplicateShareError",
    "FatalDeliveryError",
    "MalformedPayloadError",
    "NoResponderError",
    "RelayError",
    "RetryExhaustedError",
    "ShareStartError",
]
