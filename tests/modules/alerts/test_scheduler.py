import asyncio

import pytest

from carewatch.modules.alerts.channels.base import DeliveryOutcome
from carewatch.modules.alerts.models import Channel, DeliveryStatus, Severity, SourceType
from carewatch.modules.alerts.scheduler import AlertScheduler
from tests.modules.alerts.helpers import PATIENT_ID, SECONDARY_CHAT


async def _open_alert(engine, clock):
    return await engine.lifecycle.create(
        patient_id=PATIENT_ID,
        source_type=SourceType.SENSOR_INACTIVITY,
        source_event_key="evt-1",
        severity=Severity.CRITICAL,
        occurred_at=clock.now,
    )


@pytest.mark.asyncio
async def test_tick_escalates_overdue_alert_and_notifies_secondary(
    engine, channels, policy, clock
) -> None:
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(policy.escalation_timeout_seconds)
    tick = await engine.scheduler.run_once()
    await engine.tasks.drain()

    assert tick.escalated == 1
    assert (await engine.lifecycle.get(alert.id)).is_escalated
    assert SECONDARY_CHAT in channels[Channel.BOT_MESSAGING].destinations()

    second = await engine.scheduler.run_once()
    assert second.escalated == 0


@pytest.mark.asyncio
async def test_tick_runs_due_retries(engine, channels, clock) -> None:
    channels[Channel.EMAIL].script(DeliveryOutcome.TRANSIENT_FAILURE)
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(30)
    tick = await engine.scheduler.run_once()

    assert tick.retried == 1
    report = await engine.dispatcher.report(alert.id)
    assert report.summary()["email"] == "sent"


@pytest.mark.asyncio
async def test_acknowledged_alert_is_not_escalated(engine, policy, clock) -> None:
    alert = await _open_alert(engine, clock)
    await engine.lifecycle.acknowledge(alert.id, "caregiver-ana")

    clock.advance(policy.escalation_timeout_seconds * 2)
    tick = await engine.scheduler.run_once()

    assert tick.escalated == 0
    assert (await engine.lifecycle.get(alert.id)).escalated_at is None


@pytest.mark.asyncio
async def test_start_recovers_stale_attempts_then_stop(engine, channels, policy, clock) -> None:
    alert = await _open_alert(engine, clock)
    await engine.tracker.record_attempt(alert.id, Channel.EMAIL, "ana@example.com")
    clock.advance(policy.stale_attempt_seconds + 1)
    scheduler = AlertScheduler(engine.lifecycle, engine.dispatcher, interval_seconds=0.01, clock=clock)

    scheduler.start()
    assert scheduler.running
    for _ in range(200):
        if channels[Channel.EMAIL].calls:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert not scheduler.running
    attempts = await engine.tracker.attempts_for(alert.id)
    assert [(item.attempt_number, item.status) for item in attempts] == [(2, DeliveryStatus.SENT)]
