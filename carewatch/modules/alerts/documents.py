from datetime import datetime, timezone
from typing import Any, List

from beanie import Document, Insert, Replace, Save, Update, before_event
from pydantic import Field
from pymongo import IndexModel

from carewatch.modules.alerts.models import (
    AlertState,
    Channel,
    DeliveryStatus,
    ResolutionKind,
    Severity,
    SourceType,
    TransitionKind,
)


class AlertDocument(Document):
    """Stored projection of an alert. Rewritten on every transition."""

    id: str  # type: ignore[assignment]
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
    version: int = 0

    class Settings:
        name = "alerts"
        indexes = [
            IndexModel([("patient_id", 1), ("source_event_key", 1), ("created_at", -1)]),
            IndexModel([("state", 1), ("escalated_at", 1), ("created_at", 1)]),
        ]


class AlertTransitionDocument(Document):
    """Append-only alert history entry."""

    alert_id: str
    sequence: int
    kind: TransitionKind
    occurred_at: datetime
    principal: str | None = None
    note: str | None = None
    resolution_kind: ResolutionKind | None = None
    data: dict[str, Any] | None = None

    class Settings:
        name = "alert_transitions"
        indexes = [
            IndexModel([("alert_id", 1), ("sequence", 1)], unique=True),
        ]


class DeliveryAttemptDocument(Document):
    alert_id: str
    channel: Channel
    destination: str
    attempt_number: int = 1
    status: DeliveryStatus = DeliveryStatus.PENDING
    escalation: bool = False
    last_error: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: datetime | None = None

    class Settings:
        name = "delivery_attempts"
        indexes = [
            IndexModel([("alert_id", 1), ("channel", 1), ("destination", 1)], unique=True),
            IndexModel([("status", 1), ("next_retry_at", 1)]),
            IndexModel([("status", 1), ("updated_at", 1)]),
        ]


class CareRelationshipDocument(Document):
    """Caregiver link owned by the host platform. Read only here."""

    patient_id: str
    caregiver_id: str
    relationship_type: str = "family_member"
    status: str = "active"
    can_receive_alerts: bool = True
    escalation_only: bool = False
    contacts: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "care_relationships"
        indexes = [
            IndexModel([("patient_id", 1), ("status", 1)]),
        ]

    @before_event(Insert, Replace, Save, Update)
    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


DOCUMENT_MODELS: List[type[Document]] = [
    AlertDocument,
    AlertTransitionDocument,
    DeliveryAttemptDocument,
    CareRelationshipDocument,
]
