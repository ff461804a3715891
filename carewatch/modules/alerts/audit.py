"""
Audit trail for alert transitions, dispatch reports and operational failures.

Writes are fire-and-forget: the trail schedules them on the engine's
background task set so an audit sink can never slow down or fail a lifecycle
call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import sentry_sdk
import structlog

from carewatch.modules.alerts.exceptions import AlertError
from carewatch.modules.alerts.models import Alert, AlertTransition
from carewatch.shared.tasks import BackgroundTaskSet

if TYPE_CHECKING:
    from carewatch.modules.alerts.dispatcher import DispatchReport
    from carewatch.modules.alerts.lifecycle import LifecycleEvent


class AuditLog(ABC):
    @abstractmethod
    async def record_transition(self, alert: Alert, transition: AlertTransition) -> None: ...

    @abstractmethod
    async def record_dispatch(self, report: DispatchReport) -> None: ...

    @abstractmethod
    async def record_operational_failure(self, error: AlertError, **context: Any) -> None: ...


class StructlogAuditLog(AuditLog):
    """Audit events as structured log lines; operational failures also go to Sentry."""

    def __init__(self) -> None:
        self._log = structlog.get_logger("carewatch.audit")

    async def record_transition(self, alert: Alert, transition: AlertTransition) -> None:
        self._log.info(
            "audit_alert_transition",
            alert_id=alert.id,
            patient_id=alert.patient_id,
            kind=transition.kind.value,
            sequence=transition.sequence,
            principal=transition.principal,
            state=alert.state.value,
        )

    async def record_dispatch(self, report: DispatchReport) -> None:
        self._log.info(
            "audit_alert_dispatch",
            alert_id=report.alert_id,
            escalation=report.escalation,
            channels=report.summary(),
        )

    async def record_operational_failure(self, error: AlertError, **context: Any) -> None:
        self._log.error(
            "audit_operational_failure",
            error_type=type(error).__name__,
            error=str(error),
            **context,
        )
        sentry_sdk.capture_exception(error, extras=context)


class AuditTrail:
    """Fire-and-forget front for an ``AuditLog``."""

    def __init__(self, sink: AuditLog, tasks: BackgroundTaskSet) -> None:
        self.sink = sink
        self._tasks = tasks

    def transition(self, alert: Alert, transition: AlertTransition) -> None:
        self._tasks.spawn(
            self.sink.record_transition(alert, transition),
            name=f"audit-transition-{alert.id}-{transition.sequence}",
        )

    def dispatch(self, report: DispatchReport) -> None:
        self._tasks.spawn(self.sink.record_dispatch(report), name=f"audit-dispatch-{report.alert_id}")

    def operational_failure(self, error: AlertError, **context: Any) -> None:
        self._tasks.spawn(
            self.sink.record_operational_failure(error, **context),
            name="audit-operational-failure",
        )

    async def on_lifecycle_event(self, event: LifecycleEvent) -> None:
        self.transition(event.alert, event.transition)
