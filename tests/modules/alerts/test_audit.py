from unittest.mock import MagicMock

import pytest

from carewatch.modules.alerts import audit as audit_module
from carewatch.modules.alerts.audit import AuditTrail, StructlogAuditLog
from carewatch.modules.alerts.exceptions import ExhaustedDispatch
from carewatch.modules.alerts.models import ResolutionKind, Severity, SourceType, TransitionKind
from carewatch.shared.tasks import BackgroundTaskSet


@pytest.mark.asyncio
async def test_every_transition_reaches_the_audit_log(engine, audit_log, clock) -> None:
    alert = await engine.lifecycle.create(
        patient_id="patient-1",
        source_type=SourceType.MANUAL,
        source_event_key="manual-1",
        severity=Severity.WARNING,
        occurred_at=clock.now,
    )
    await engine.lifecycle.resolve(alert.id, ResolutionKind.CONFIRMED, "caregiver-ana")
    await engine.tasks.drain()

    assert [(alert_id, item.kind) for alert_id, item in audit_log.transitions] == [
        (alert.id, TransitionKind.CREATED),
        (alert.id, TransitionKind.ACKNOWLEDGED),
        (alert.id, TransitionKind.RESOLVED),
    ]


@pytest.mark.asyncio
async def test_operational_failure_is_sent_to_sentry(monkeypatch: pytest.MonkeyPatch) -> None:
    capture = MagicMock()
    monkeypatch.setattr(audit_module.sentry_sdk, "capture_exception", capture)
    tasks = BackgroundTaskSet()
    trail = AuditTrail(StructlogAuditLog(), tasks)
    error = ExhaustedDispatch("alert-1", ["email"])

    trail.operational_failure(error, alert_id="alert-1")
    await tasks.drain()

    capture.assert_called_once_with(error, extras={"alert_id": "alert-1"})


@pytest.mark.asyncio
async def test_failing_sink_does_not_reach_caller() -> None:
    class _BrokenSink(StructlogAuditLog):
        async def record_dispatch(self, report) -> None:
            raise RuntimeError("audit store down")

    tasks = BackgroundTaskSet()
    trail = AuditTrail(_BrokenSink(), tasks)

    trail.dispatch(MagicMock(alert_id="alert-1"))
    await tasks.drain()

    assert len(tasks) == 0
