"""
Persistence for alerts, their history and delivery attempts.

Every write that other writers can race on is conditional: history appends
are guarded by the (alert_id, sequence) key and attempt updates by an
expected status. ``MongoAlertStore`` gets that from unique indexes and
``find_one(...).update(...)``. ``InMemoryAlertStore`` gets it from never
awaiting between its check and its write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

import structlog
from beanie import UpdateResponse
from beanie.operators import In, Set
from pymongo.errors import BulkWriteError, DuplicateKeyError

from carewatch.modules.alerts.documents import (
    AlertDocument,
    AlertTransitionDocument,
    DeliveryAttemptDocument,
)
from carewatch.modules.alerts.exceptions import ConcurrentModification
from carewatch.modules.alerts.models import (
    Alert,
    AlertState,
    AlertTransition,
    Channel,
    DeliveryAttempt,
    DeliveryStatus,
    replay,
)

logger = structlog.get_logger(__name__)

AttemptKey = tuple[str, Channel, str]


class AlertStore(ABC):
    # Alerts and history

    @abstractmethod
    async def create_alert(self, alert: Alert, transition: AlertTransition) -> None:
        """Persist a new alert together with its ``created`` transition."""

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None: ...

    @abstractmethod
    async def find_recent_alert(
        self, patient_id: str, source_event_key: str, since: datetime
    ) -> Alert | None:
        """Newest alert for the dedup key created at or after ``since``."""

    @abstractmethod
    async def append_transitions(
        self, alert: Alert, transitions: list[AlertTransition], expected_version: int
    ) -> None:
        """Append history entries and store the new projection.

        Raises ``ConcurrentModification`` when the stored history has moved
        past ``expected_version``. Either all entries land or none do.
        """

    @abstractmethod
    async def list_transitions(self, alert_id: str) -> list[AlertTransition]: ...

    @abstractmethod
    async def list_escalation_candidates(self, created_before: datetime) -> list[Alert]:
        """Open, never-escalated alerts created at or before the cutoff."""

    # Delivery attempts

    @abstractmethod
    async def insert_attempt(self, attempt: DeliveryAttempt) -> bool:
        """Insert a fresh attempt. ``False`` when the pair already has one."""

    @abstractmethod
    async def get_attempt(
        self, alert_id: str, channel: Channel, destination: str
    ) -> DeliveryAttempt | None: ...

    @abstractmethod
    async def update_attempt(
        self,
        key: AttemptKey,
        expected_statuses: Iterable[DeliveryStatus],
        changes: dict[str, Any],
        expected_attempt_number: int | None = None,
    ) -> DeliveryAttempt | None:
        """Compare-and-set on an attempt. ``None`` when the guard did not match."""

    @abstractmethod
    async def list_attempts(self, alert_id: str) -> list[DeliveryAttempt]: ...

    @abstractmethod
    async def list_due_attempts(self, now: datetime, limit: int = 100) -> list[DeliveryAttempt]:
        """``failed`` attempts whose retry time has come, oldest first."""

    @abstractmethod
    async def list_stale_attempts(self, updated_before: datetime) -> list[DeliveryAttempt]:
        """``pending`` attempts nobody has touched since the cutoff."""


class InMemoryAlertStore(AlertStore):
    """Process-local store for tests and runs without MongoDB."""

    def __init__(self) -> None:
        self._alerts: dict[str, Alert] = {}
        self._transitions: dict[str, list[AlertTransition]] = {}
        self._attempts: dict[AttemptKey, DeliveryAttempt] = {}

    async def create_alert(self, alert: Alert, transition: AlertTransition) -> None:
        if alert.id in self._alerts:
            raise ConcurrentModification(alert.id, 0)
        self._alerts[alert.id] = alert
        self._transitions[alert.id] = [transition]

    async def get_alert(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    async def find_recent_alert(
        self, patient_id: str, source_event_key: str, since: datetime
    ) -> Alert | None:
        matches = [
            alert
            for alert in self._alerts.values()
            if alert.patient_id == patient_id
            and alert.source_event_key == source_event_key
            and alert.created_at >= since
        ]
        if not matches:
            return None
        return max(matches, key=lambda alert: alert.created_at)

    async def append_transitions(
        self, alert: Alert, transitions: list[AlertTransition], expected_version: int
    ) -> None:
        history = self._transitions.get(alert.id)
        if history is None or history[-1].sequence != expected_version:
            raise ConcurrentModification(alert.id, expected_version)
        history.extend(transitions)
        self._alerts[alert.id] = alert

    async def list_transitions(self, alert_id: str) -> list[AlertTransition]:
        return list(self._transitions.get(alert_id, []))

    async def list_escalation_candidates(self, created_before: datetime) -> list[Alert]:
        candidates = [
            alert
            for alert in self._alerts.values()
            if alert.state is AlertState.OPEN
            and alert.escalated_at is None
            and alert.created_at <= created_before
        ]
        return sorted(candidates, key=lambda alert: alert.created_at)

    async def insert_attempt(self, attempt: DeliveryAttempt) -> bool:
        if attempt.key in self._attempts:
            return False
        self._attempts[attempt.key] = attempt
        return True

    async def get_attempt(
        self, alert_id: str, channel: Channel, destination: str
    ) -> DeliveryAttempt | None:
        return self._attempts.get((alert_id, channel, destination))

    async def update_attempt(
        self,
        key: AttemptKey,
        expected_statuses: Iterable[DeliveryStatus],
        changes: dict[str, Any],
        expected_attempt_number: int | None = None,
    ) -> DeliveryAttempt | None:
        current = self._attempts.get(key)
        if current is None or current.status not in set(expected_statuses):
            return None
        if expected_attempt_number is not None and current.attempt_number != expected_attempt_number:
            return None
        updated = current.model_copy(update=changes)
        self._attempts[key] = updated
        return updated

    async def list_attempts(self, alert_id: str) -> list[DeliveryAttempt]:
        return [attempt for key, attempt in self._attempts.items() if key[0] == alert_id]

    async def list_due_attempts(self, now: datetime, limit: int = 100) -> list[DeliveryAttempt]:
        due = [
            attempt
            for attempt in self._attempts.values()
            if attempt.status is DeliveryStatus.FAILED
            and attempt.next_retry_at is not None
            and attempt.next_retry_at <= now
        ]
        due.sort(key=lambda attempt: attempt.next_retry_at)  # type: ignore[arg-type, return-value]
        return due[:limit]

    async def list_stale_attempts(self, updated_before: datetime) -> list[DeliveryAttempt]:
        return [
            attempt
            for attempt in self._attempts.values()
            if attempt.status is DeliveryStatus.PENDING and attempt.updated_at <= updated_before
        ]


def _to_bson(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in data.items()}


def _alert_from_document(document: AlertDocument) -> Alert:
    return Alert.model_validate(document.model_dump(exclude={"revision_id"}))


def _transition_from_document(document: AlertTransitionDocument) -> AlertTransition:
    return AlertTransition.model_validate(document.model_dump(exclude={"id", "revision_id"}))


def _attempt_from_document(document: DeliveryAttemptDocument) -> DeliveryAttempt:
    return DeliveryAttempt.model_validate(document.model_dump(exclude={"id", "revision_id"}))


class MongoAlertStore(AlertStore):
    """Beanie-backed store. Requires ``init_beanie`` with ``DOCUMENT_MODELS``."""

    async def create_alert(self, alert: Alert, transition: AlertTransition) -> None:
        try:
            await AlertTransitionDocument(**transition.model_dump()).insert()
        except DuplicateKeyError:
            raise ConcurrentModification(alert.id, 0) from None
        await AlertDocument(**alert.model_dump()).insert()

    async def get_alert(self, alert_id: str) -> Alert | None:
        document = await AlertDocument.get(alert_id)
        return _alert_from_document(document) if document else None

    async def find_recent_alert(
        self, patient_id: str, source_event_key: str, since: datetime
    ) -> Alert | None:
        document = (
            await AlertDocument.find(
                AlertDocument.patient_id == patient_id,
                AlertDocument.source_event_key == source_event_key,
                AlertDocument.created_at >= since,
            )
            .sort(-AlertDocument.created_at)
            .first_or_none()
        )
        return _alert_from_document(document) if document else None

    async def append_transitions(
        self, alert: Alert, transitions: list[AlertTransition], expected_version: int
    ) -> None:
        documents = [AlertTransitionDocument(**item.model_dump()) for item in transitions]
        try:
            # Ordered insert stops at the first duplicate sequence
            await AlertTransitionDocument.insert_many(documents)
        except (DuplicateKeyError, BulkWriteError):
            logger.warning(
                "alert_history_conflict",
                alert_id=alert.id,
                expected_version=expected_version,
            )
            # The projection may lag a history written before a crash
            await self._repair_projection(alert.id)
            raise ConcurrentModification(alert.id, expected_version) from None

        updated = await AlertDocument.find_one(
            AlertDocument.id == alert.id,
            AlertDocument.version == expected_version,
        ).update(
            Set(_to_bson(alert.model_dump(exclude={"id"}))),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if updated is None:
            logger.warning(
                "alert_projection_update_missed",
                alert_id=alert.id,
                expected_version=expected_version,
            )
            await self._repair_projection(alert.id)

    async def _repair_projection(self, alert_id: str) -> Alert | None:
        """Rewrite the stored alert from its history. Only ever moves the version forward."""
        history = await self.list_transitions(alert_id)
        if not history:
            return None
        alert = replay(history)
        repaired = await AlertDocument.find_one(
            AlertDocument.id == alert_id,
            AlertDocument.version < alert.version,
        ).update(
            Set(_to_bson(alert.model_dump(exclude={"id"}))),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if repaired is not None:
            logger.warning("alert_projection_repaired", alert_id=alert_id, version=alert.version)
        return alert

    async def list_transitions(self, alert_id: str) -> list[AlertTransition]:
        documents = (
            await AlertTransitionDocument.find(AlertTransitionDocument.alert_id == alert_id)
            .sort(+AlertTransitionDocument.sequence)
            .to_list()
        )
        return [_transition_from_document(document) for document in documents]

    async def list_escalation_candidates(self, created_before: datetime) -> list[Alert]:
        documents = (
            await AlertDocument.find(
                AlertDocument.state == AlertState.OPEN,
                {"escalated_at": None},
                AlertDocument.created_at <= created_before,
            )
            .sort(+AlertDocument.created_at)
            .to_list()
        )
        return [_alert_from_document(document) for document in documents]

    async def insert_attempt(self, attempt: DeliveryAttempt) -> bool:
        try:
            await DeliveryAttemptDocument(**attempt.model_dump()).insert()
        except DuplicateKeyError:
            return False
        return True

    async def get_attempt(
        self, alert_id: str, channel: Channel, destination: str
    ) -> DeliveryAttempt | None:
        document = await DeliveryAttemptDocument.find_one(
            DeliveryAttemptDocument.alert_id == alert_id,
            DeliveryAttemptDocument.channel == channel,
            DeliveryAttemptDocument.destination == destination,
        )
        return _attempt_from_document(document) if document else None

    async def update_attempt(
        self,
        key: AttemptKey,
        expected_statuses: Iterable[DeliveryStatus],
        changes: dict[str, Any],
        expected_attempt_number: int | None = None,
    ) -> DeliveryAttempt | None:
        alert_id, channel, destination = key
        criteria: list[Any] = [
            DeliveryAttemptDocument.alert_id == alert_id,
            DeliveryAttemptDocument.channel == channel,
            DeliveryAttemptDocument.destination == destination,
            In(DeliveryAttemptDocument.status, [status.value for status in expected_statuses]),
        ]
        if expected_attempt_number is not None:
            criteria.append(DeliveryAttemptDocument.attempt_number == expected_attempt_number)

        document = await DeliveryAttemptDocument.find_one(*criteria).update(
            Set(_to_bson(changes)),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        return _attempt_from_document(document) if document else None

    async def list_attempts(self, alert_id: str) -> list[DeliveryAttempt]:
        documents = await DeliveryAttemptDocument.find(
            DeliveryAttemptDocument.alert_id == alert_id
        ).to_list()
        return [_attempt_from_document(document) for document in documents]

    async def list_due_attempts(self, now: datetime, limit: int = 100) -> list[DeliveryAttempt]:
        documents = (
            await DeliveryAttemptDocument.find(
                DeliveryAttemptDocument.status == DeliveryStatus.FAILED,
                DeliveryAttemptDocument.next_retry_at <= now,
            )
            .sort(+DeliveryAttemptDocument.next_retry_at)
            .limit(limit)
            .to_list()
        )
        return [_attempt_from_document(document) for document in documents]

    async def list_stale_attempts(self, updated_before: datetime) -> list[DeliveryAttempt]:
        documents = await DeliveryAttemptDocument.find(
            DeliveryAttemptDocument.status == DeliveryStatus.PENDING,
            DeliveryAttemptDocument.updated_at <= updated_before,
        ).to_list()
        return [_attempt_from_document(document) for document in documents]
