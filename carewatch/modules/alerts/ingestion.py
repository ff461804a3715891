from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

import structlog
from pydantic import Field, ValidationError, field_validator

from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.dispatcher import AlertDispatcher
from carewatch.modules.alerts.exceptions import AlertValidationError
from carewatch.modules.alerts.lifecycle import AlertLifecycleManager
from carewatch.modules.alerts.models import (
    DEFAULT_SEVERITY,
    Severity,
    SourceType,
    ensure_utc,
    utc_now,
)
from carewatch.modules.alerts.recipients import RecipientDirectory
from carewatch.modules.alerts.store import AlertStore
from carewatch.shared.locks import KeyedLock
from carewatch.shared.schemas import CamelModel

logger = structlog.get_logger(__name__)


class InboundEvent(CamelModel):
    """Raw sensor, inactivity or manual signal."""

    patient_id: str = Field(min_length=1)
    source_type: SourceType
    occurred_at: datetime
    source_event_key: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: Severity | None = None
    message: str | None = None

    @field_validator("patient_id", "source_event_key", mode="before")
    @classmethod
    def strip_identifiers(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


@dataclass(frozen=True)
class IngestResult:
    alert_id: str
    deduplicated: bool = False

    @property
    def deduplicated_alert_id(self) -> str | None:
        return self.alert_id if self.deduplicated else None


class IngestionGateway:
    """Validate, deduplicate and hand new alerts to the lifecycle and dispatcher."""

    def __init__(
        self,
        store: AlertStore,
        lifecycle: AlertLifecycleManager,
        dispatcher: AlertDispatcher,
        directory: RecipientDirectory,
        policy: AlertPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._directory = directory
        self._policy = policy
        self._clock = clock
        self._locks = KeyedLock()

    @staticmethod
    def validate(event: InboundEvent | Mapping[str, Any]) -> InboundEvent:
        if isinstance(event, InboundEvent):
            return event
        try:
            return InboundEvent.model_validate(event)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            raise AlertValidationError(
                f"invalid alert event: {fields}",
                errors=exc.errors(include_url=False, include_context=False, include_input=False),
            ) from exc

    async def ingest(self, event: InboundEvent | Mapping[str, Any]) -> IngestResult:
        inbound = self.validate(event)
        log = logger.bind(
            patient_id=inbound.patient_id,
            source_event_key=inbound.source_event_key,
            source_type=inbound.source_type.value,
        )

        async with self._locks.hold((inbound.patient_id, inbound.source_event_key)):
            now = self._clock()
            existing = await self._store.find_recent_alert(
                inbound.patient_id,
                inbound.source_event_key,
                since=now - self._policy.dedup_window,
            )
            if existing is not None:
                log.info("alert_event_deduplicated", alert_id=existing.id)
                return IngestResult(alert_id=existing.id, deduplicated=True)

            skewed = inbound.occurred_at - now > self._policy.clock_skew_tolerance
            if skewed:
                log.warning(
                    "alert_event_clock_skew",
                    occurred_at=inbound.occurred_at.isoformat(),
                    received_at=now.isoformat(),
                )
                severity = Severity.WARNING
            else:
                severity = inbound.severity or DEFAULT_SEVERITY[inbound.source_type]

            alert = await self._lifecycle.create(
                patient_id=inbound.patient_id,
                source_type=inbound.source_type,
                source_event_key=inbound.source_event_key,
                severity=severity,
                occurred_at=inbound.occurred_at,
                relationship_id=await self._directory.primary_relationship_id(inbound.patient_id),
                message=inbound.message,
                payload=inbound.payload,
                clock_skew_flagged=skewed,
            )

        self._dispatcher.dispatch_in_background(alert.id)
        return IngestResult(alert_id=alert.id)
