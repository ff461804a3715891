from __future__ import annotations

from typing import Any


class AlertError(Exception):
    """Base class for alert engine errors."""


class AlertValidationError(AlertError):
    """Malformed ingestion input. Rejected, never retried."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AlertNotFound(AlertError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidTransition(AlertError):
    """Illegal lifecycle change, surfaced to the caller."""

    def __init__(
        self,
        alert_id: str,
        state: Any,
        attempted: Any,
        reason: str | None = None,
    ) -> None:
        state_value = getattr(state, "value", state)
        attempted_value = getattr(attempted, "value", attempted)
        message = f"cannot apply {attempted_value} to alert {alert_id} in state {state_value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.alert_id = alert_id
        self.state = state
        self.attempted = attempted


class ConcurrentModification(AlertError):
    """Another writer appended to the alert history first."""

    def __init__(self, alert_id: str, expected_version: int) -> None:
        super().__init__(
            f"alert {alert_id} changed concurrently (expected version {expected_version})"
        )
        self.alert_id = alert_id
        self.expected_version = expected_version


class ChannelError(AlertError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientChannelFailure(ChannelError):
    """Timeout, transport error or 5xx-equivalent. Retried with backoff."""


class PermanentChannelRejection(ChannelError):
    """The provider refused the destination. Never retried."""


class ExhaustedDispatch(AlertError):
    """Every channel with recipients ran out of attempts for an alert."""

    def __init__(self, alert_id: str, channels: list[str]) -> None:
        super().__init__(
            f"all delivery channels exhausted for alert {alert_id}: {', '.join(channels)}"
        )
        self.alert_id = alert_id
        self.channels = channels
