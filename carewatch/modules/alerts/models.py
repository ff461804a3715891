"""
Alert domain types.

The alert record is a projection: the authoritative data is the ordered list of
``AlertTransition`` entries, and ``replay`` folds them back into an ``Alert``.
``apply_transition`` is the state machine; anything it refuses raises
``InvalidTransition``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from carewatch.modules.alerts.exceptions import InvalidTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_alert_id() -> str:
    return uuid4().hex


class SourceType(str, Enum):
    SENSOR_INACTIVITY = "sensor_inactivity"
    SENSOR_WEBHOOK = "sensor_webhook"
    MANUAL = "manual"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


DEFAULT_SEVERITY: dict[SourceType, Severity] = {
    SourceType.SENSOR_INACTIVITY: Severity.CRITICAL,
    SourceType.SENSOR_WEBHOOK: Severity.WARNING,
    SourceType.MANUAL: Severity.WARNING,
}


class AlertState(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertState.RESOLVED, AlertState.FALSE_ALARM)


class ResolutionKind(str, Enum):
    CONFIRMED = "confirmed"
    FALSE_ALARM = "false_alarm"


class TransitionKind(str, Enum):
    CREATED = "created"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self) -> bool:
        return self in (TransitionKind.RESOLVED, TransitionKind.FALSE_ALARM)


class Channel(str, Enum):
    EMAIL = "email"
    BOT_MESSAGING = "bot_messaging"
    BUSINESS_MESSAGING = "business_messaging"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (
            DeliveryStatus.SENT,
            DeliveryStatus.EXHAUSTED,
            DeliveryStatus.CANCELLED,
        )


class Alert(BaseModel):
    """Current-state projection of an alert."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_alert_id)
    patient_id: str
    relationship_id: str | None = None
    source_type: SourceType
    source_event_key: str
    severity: Severity
    state: AlertState = AlertState.OPEN
    message: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime
    created_at: datetime
    clock_skew_flagged: bool = False

    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_kind: ResolutionKind | None = None
    resolution_note: str | None = None
    escalated_at: datetime | None = None

    # Sequence number of the last transition folded into this projection
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_escalated(self) -> bool:
        return self.escalated_at is not None


class AlertTransition(BaseModel):
    """One immutable entry of an alert's history."""

    model_config = ConfigDict(frozen=True)

    alert_id: str
    sequence: int = Field(ge=1)
    kind: TransitionKind
    occurred_at: datetime
    principal: str | None = None
    note: str | None = None
    resolution_kind: ResolutionKind | None = None
    # Initial alert fields, only present on the ``created`` entry
    data: dict[str, Any] | None = None


def apply_transition(alert: Alert | None, transition: AlertTransition) -> Alert:
    """Fold a single transition into the projection, enforcing legality."""
    if transition.kind is TransitionKind.CREATED:
        if alert is not None:
            raise InvalidTransition(transition.alert_id, alert.state, transition.kind)
        created = Alert.model_validate(transition.data or {})
        return created.model_copy(update={"version": transition.sequence})

    if alert is None:
        raise InvalidTransition(transition.alert_id, None, transition.kind)
    if transition.sequence != alert.version + 1:
        raise InvalidTransition(
            alert.id,
            alert.state,
            transition.kind,
            reason=f"expected sequence {alert.version + 1}, got {transition.sequence}",
        )
    if alert.is_terminal:
        raise InvalidTransition(alert.id, alert.state, transition.kind)

    update: dict[str, Any] = {"version": transition.sequence}
    kind = transition.kind

    if kind is TransitionKind.ACKNOWLEDGED:
        if alert.state is not AlertState.OPEN:
            raise InvalidTransition(alert.id, alert.state, kind)
        update.update(
            state=AlertState.ACKNOWLEDGED,
            acknowledged_at=transition.occurred_at,
            acknowledged_by=transition.principal,
        )
    elif kind is TransitionKind.ESCALATED:
        if alert.state is not AlertState.OPEN or alert.is_escalated:
            raise InvalidTransition(alert.id, alert.state, kind)
        update["escalated_at"] = transition.occurred_at
    elif kind.is_terminal:
        # Resolution needs a prior (or same-batch) acknowledgement
        if alert.state is not AlertState.ACKNOWLEDGED:
            raise InvalidTransition(alert.id, alert.state, kind)
        resolution = (
            ResolutionKind.CONFIRMED
            if kind is TransitionKind.RESOLVED
            else ResolutionKind.FALSE_ALARM
        )
        update.update(
            state=(
                AlertState.RESOLVED
                if kind is TransitionKind.RESOLVED
                else AlertState.FALSE_ALARM
            ),
            resolved_at=transition.occurred_at,
            resolved_by=transition.principal,
            resolution_kind=resolution,
            resolution_note=transition.note,
        )
    else:  # pragma: no cover - enum is exhaustive
        raise InvalidTransition(alert.id, alert.state, kind)

    return alert.model_copy(update=update)


def replay(transitions: Iterable[AlertTransition]) -> Alert:
    """Rebuild the projection from a full history."""
    alert: Alert | None = None
    for transition in sorted(transitions, key=lambda item: item.sequence):
        alert = apply_transition(alert, transition)
    if alert is None:
        raise ValueError("cannot replay an empty alert history")
    return alert


class DeliveryAttempt(BaseModel):
    """Delivery bookkeeping for one (alert, channel, destination) pair."""

    model_config = ConfigDict(frozen=True)

    alert_id: str
    channel: Channel
    destination: str
    attempt_number: int = Field(default=1, ge=1)
    status: DeliveryStatus = DeliveryStatus.PENDING
    escalation: bool = False
    last_error: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    sent_at: datetime | None = None

    @property
    def key(self) -> tuple[str, Channel, str]:
        return (self.alert_id, self.channel, self.destination)
