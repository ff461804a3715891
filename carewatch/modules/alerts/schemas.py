from datetime import datetime
from typing import Any

from pydantic import Field

from carewatch.modules.alerts.dispatcher import DispatchReport
from carewatch.modules.alerts.models import (
    Alert,
    AlertState,
    AlertTransition,
    DeliveryAttempt,
    DeliveryStatus,
    ResolutionKind,
    Severity,
    SourceType,
    TransitionKind,
)
from carewatch.shared.schemas import CamelModel


class IngestResponse(CamelModel):
    alert_id: str | None = None
    deduplicated_alert_id: str | None = None


class AcknowledgeRequest(CamelModel):
    note: str | None = Field(None, description="Optional note from the acknowledging caregiver")


class ResolveRequest(CamelModel):
    kind: ResolutionKind = Field(
        ResolutionKind.CONFIRMED, description="confirmed or false_alarm"
    )
    note: str | None = Field(None, description="Resolution notes")


class AlertResponse(CamelModel):
    id: str
    patient_id: str
    relationship_id: str | None = None
    source_type: SourceType
    source_event_key: str
    severity: Severity
    state: AlertState
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
    version: int

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertResponse":
        return cls.model_validate(alert.model_dump())


class TransitionResponse(CamelModel):
    sequence: int
    kind: TransitionKind
    occurred_at: datetime
    principal: str | None = None
    note: str | None = None
    resolution_kind: ResolutionKind | None = None

    @classmethod
    def from_transition(cls, transition: AlertTransition) -> "TransitionResponse":
        return cls.model_validate(transition.model_dump(exclude={"alert_id", "data"}))


class DeliveryAttemptResponse(CamelModel):
    channel: str
    destination: str
    attempt_number: int
    status: DeliveryStatus
    escalation: bool = False
    last_error: str | None = None
    next_retry_at: datetime | None = None
    sent_at: datetime | None = None
    updated_at: datetime

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> "DeliveryAttemptResponse":
        return cls.model_validate(
            {**attempt.model_dump(exclude={"alert_id"}), "channel": attempt.channel.value}
        )


class DestinationReportResponse(CamelModel):
    destination: str
    status: DeliveryStatus
    attempt_number: int
    last_error: str | None = None
    next_retry_at: datetime | None = None


class ChannelReportResponse(CamelModel):
    status: str
    destinations: list[DestinationReportResponse] = Field(default_factory=list)


class DispatchReportResponse(CamelModel):
    alert_id: str
    escalation: bool = False
    channels: dict[str, ChannelReportResponse] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: DispatchReport) -> "DispatchReportResponse":
        return cls(
            alert_id=report.alert_id,
            escalation=report.escalation,
            channels={
                channel.value: ChannelReportResponse(
                    status=item.status.value,
                    destinations=[
                        DestinationReportResponse(
                            destination=row.destination,
                            status=row.status,
                            attempt_number=row.attempt_number,
                            last_error=row.last_error,
                            next_retry_at=row.next_retry_at,
                        )
                        for row in item.destinations
                    ],
                )
                for channel, item in report.channels.items()
            },
        )


class AlertDetailResponse(AlertResponse):
    history: list[TransitionResponse] = Field(default_factory=list)
    deliveries: list[DeliveryAttemptResponse] = Field(default_factory=list)
    delivery_summary: dict[str, str] = Field(default_factory=dict)
