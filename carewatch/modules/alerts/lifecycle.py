"""
Alert state machine.

Every change is an appended ``AlertTransition``; the stored alert is the fold
of its history. Transitions on one alert are serialized with a per-alert lock,
and the store rejects an append whose sequence number is already taken.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.exceptions import (
    AlertNotFound,
    ConcurrentModification,
    InvalidTransition,
)
from carewatch.modules.alerts.models import (
    Alert,
    AlertState,
    AlertTransition,
    ResolutionKind,
    Severity,
    SourceType,
    TransitionKind,
    apply_transition,
    utc_now,
)
from carewatch.modules.alerts.store import AlertStore
from carewatch.shared.locks import KeyedLock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    alert: Alert
    transition: AlertTransition

    @property
    def kind(self) -> TransitionKind:
        return self.transition.kind


LifecycleListener = Callable[[LifecycleEvent], Awaitable[None]]


class AlertLifecycleManager:
    def __init__(
        self,
        store: AlertStore,
        policy: AlertPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock
        self._locks = KeyedLock()
        self._listeners: list[LifecycleListener] = []

    def subscribe(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    async def get(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    async def history(self, alert_id: str) -> list[AlertTransition]:
        transitions = await self._store.list_transitions(alert_id)
        if not transitions:
            raise AlertNotFound(alert_id)
        return transitions

    async def create(
        self,
        *,
        patient_id: str,
        source_type: SourceType,
        source_event_key: str,
        severity: Severity,
        occurred_at: datetime,
        relationship_id: str | None = None,
        message: str | None = None,
        payload: dict[str, Any] | None = None,
        clock_skew_flagged: bool = False,
    ) -> Alert:
        now = self._clock()
        draft = Alert(
            patient_id=patient_id,
            relationship_id=relationship_id,
            source_type=source_type,
            source_event_key=source_event_key,
            severity=severity,
            message=message,
            payload=payload or {},
            occurred_at=occurred_at,
            created_at=now,
            clock_skew_flagged=clock_skew_flagged,
        )
        transition = AlertTransition(
            alert_id=draft.id,
            sequence=1,
            kind=TransitionKind.CREATED,
            occurred_at=now,
            data=draft.model_dump(mode="json", exclude={"version"}),
        )
        alert = apply_transition(None, transition)
        await self._store.create_alert(alert, transition)

        logger.info(
            "alert_created",
            alert_id=alert.id,
            patient_id=patient_id,
            source_type=source_type.value,
            severity=severity.value,
            clock_skew_flagged=clock_skew_flagged,
        )
        await self._emit(LifecycleEvent(alert=alert, transition=transition))
        return alert

    async def acknowledge(
        self, alert_id: str, principal: str, note: str | None = None
    ) -> Alert:
        async with self._locks.hold(alert_id):
            alert = await self.get(alert_id)
            if alert.state is AlertState.ACKNOWLEDGED:
                logger.info("alert_already_acknowledged", alert_id=alert_id, principal=principal)
                return alert
            if alert.is_terminal:
                raise InvalidTransition(alert_id, alert.state, TransitionKind.ACKNOWLEDGED)
            return await self._commit(
                alert,
                [self._transition(alert, 1, TransitionKind.ACKNOWLEDGED, principal, note)],
            )

    async def resolve(
        self,
        alert_id: str,
        kind: ResolutionKind,
        principal: str,
        note: str | None = None,
    ) -> Alert:
        """Close an alert. An open alert is acknowledged in the same write."""
        terminal = (
            TransitionKind.RESOLVED
            if kind is ResolutionKind.CONFIRMED
            else TransitionKind.FALSE_ALARM
        )
        async with self._locks.hold(alert_id):
            alert = await self.get(alert_id)
            if alert.is_terminal:
                raise InvalidTransition(alert_id, alert.state, terminal)

            transitions: list[AlertTransition] = []
            if alert.state is AlertState.OPEN:
                transitions.append(
                    self._transition(alert, 1, TransitionKind.ACKNOWLEDGED, principal, None)
                )
            transitions.append(
                self._transition(
                    alert,
                    len(transitions) + 1,
                    terminal,
                    principal,
                    note,
                    resolution_kind=kind,
                    at=transitions[0].occurred_at if transitions else None,
                )
            )
            return await self._commit(alert, transitions)

    async def mark_false_alarm(
        self, alert_id: str, principal: str, note: str | None = None
    ) -> Alert:
        return await self.resolve(alert_id, ResolutionKind.FALSE_ALARM, principal, note)

    async def escalate(self, alert_id: str, now: datetime | None = None) -> Alert | None:
        """Escalate an open alert once its acknowledgement timeout has passed.

        Returns ``None`` when the alert is not eligible (acknowledged, closed,
        already escalated or not overdue yet).
        """
        now = now or self._clock()
        async with self._locks.hold(alert_id):
            alert = await self.get(alert_id)
            if alert.state is not AlertState.OPEN or alert.is_escalated:
                return None
            if alert.created_at + self._policy.escalation_timeout > now:
                return None
            return await self._commit(
                alert,
                [self._transition(alert, 1, TransitionKind.ESCALATED, None, None, at=now)],
            )

    async def escalate_overdue(self, now: datetime | None = None) -> list[Alert]:
        now = now or self._clock()
        candidates = await self._store.list_escalation_candidates(
            now - self._policy.escalation_timeout
        )
        escalated: list[Alert] = []
        for candidate in candidates:
            try:
                alert = await self.escalate(candidate.id, now)
            except ConcurrentModification:
                logger.info("alert_escalation_raced", alert_id=candidate.id)
                continue
            if alert is not None:
                escalated.append(alert)
        return escalated

    def _transition(
        self,
        alert: Alert,
        offset: int,
        kind: TransitionKind,
        principal: str | None,
        note: str | None,
        resolution_kind: ResolutionKind | None = None,
        at: datetime | None = None,
    ) -> AlertTransition:
        return AlertTransition(
            alert_id=alert.id,
            sequence=alert.version + offset,
            kind=kind,
            occurred_at=at or self._clock(),
            principal=principal,
            note=note,
            resolution_kind=resolution_kind,
        )

    async def _commit(self, alert: Alert, transitions: list[AlertTransition]) -> Alert:
        updated = alert
        for transition in transitions:
            updated = apply_transition(updated, transition)
        await self._store.append_transitions(updated, transitions, expected_version=alert.version)

        for transition in transitions:
            logger.info(
                "alert_transition",
                alert_id=alert.id,
                kind=transition.kind.value,
                sequence=transition.sequence,
                principal=transition.principal,
                state=updated.state.value,
            )
            await self._emit(LifecycleEvent(alert=updated, transition=transition))
        return updated

    async def _emit(self, event: LifecycleEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "alert_listener_failed",
                    alert_id=event.alert.id,
                    kind=event.kind.value,
                )
