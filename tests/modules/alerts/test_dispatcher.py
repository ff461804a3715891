import asyncio

import pytest

from carewatch.modules.alerts.channels.base import DeliveryOutcome
from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.dispatcher import ChannelStatus, aggregate_channel_status
from carewatch.modules.alerts.exceptions import ExhaustedDispatch
from carewatch.modules.alerts.models import (
    AlertState,
    Channel,
    DeliveryStatus,
    ResolutionKind,
    Severity,
    SourceType,
)
from carewatch.modules.alerts.service import build_engine
from tests.modules.alerts.helpers import (
    PATIENT_ID,
    PRIMARY_CHAT,
    PRIMARY_EMAIL,
    SECONDARY_EMAIL,
)


async def _open_alert(engine, clock, patient_id: str = PATIENT_ID, key: str = "evt-1"):
    return await engine.lifecycle.create(
        patient_id=patient_id,
        source_type=SourceType.SENSOR_INACTIVITY,
        source_event_key=key,
        severity=Severity.CRITICAL,
        occurred_at=clock.now,
    )


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([], ChannelStatus.NO_RECIPIENTS),
        ([DeliveryStatus.EXHAUSTED, DeliveryStatus.SENT], ChannelStatus.SENT),
        ([DeliveryStatus.EXHAUSTED, DeliveryStatus.PENDING], ChannelStatus.PENDING),
        ([DeliveryStatus.FAILED, DeliveryStatus.EXHAUSTED], ChannelStatus.FAILED),
        ([DeliveryStatus.EXHAUSTED, DeliveryStatus.EXHAUSTED], ChannelStatus.EXHAUSTED),
        ([DeliveryStatus.EXHAUSTED, DeliveryStatus.CANCELLED], ChannelStatus.CANCELLED),
    ],
)
def test_aggregate_channel_status(statuses, expected) -> None:
    assert aggregate_channel_status(statuses) is expected


@pytest.mark.asyncio
async def test_mixed_outcomes_are_tracked_per_channel(engine, channels, clock) -> None:
    channels[Channel.BOT_MESSAGING].script(DeliveryOutcome.TRANSIENT_FAILURE)
    channels[Channel.BUSINESS_MESSAGING].script(DeliveryOutcome.REJECTED)
    alert = await _open_alert(engine, clock)

    report = await engine.dispatcher.dispatch(alert.id)

    assert report.summary() == {
        "email": "sent",
        "bot_messaging": "failed",
        "business_messaging": "exhausted",
    }
    bot = report.channels[Channel.BOT_MESSAGING].destinations[0]
    assert bot.destination == PRIMARY_CHAT
    assert bot.last_error is not None

    clock.advance(29)
    assert await engine.dispatcher.run_due_retries() == 0
    clock.advance(1)
    assert await engine.dispatcher.run_due_retries() == 1

    report = await engine.dispatcher.report(alert.id)
    assert report.status_of(Channel.BOT_MESSAGING) is ChannelStatus.SENT
    assert report.channels[Channel.BOT_MESSAGING].destinations[0].attempt_number == 2
    assert len(channels[Channel.EMAIL].calls) == 1
    assert len(channels[Channel.BUSINESS_MESSAGING].calls) == 1


@pytest.mark.asyncio
async def test_exhausting_every_channel_reports_once_and_keeps_alert_open(
    engine, channels, audit_log, clock
) -> None:
    for channel in channels.values():
        channel.default = DeliveryOutcome.TRANSIENT_FAILURE
    alert = await _open_alert(engine, clock)

    await engine.dispatcher.dispatch(alert.id)
    clock.advance(30)
    assert await engine.dispatcher.run_due_retries() == 3
    clock.advance(60)
    assert await engine.dispatcher.run_due_retries() == 3
    clock.advance(3600)
    assert await engine.dispatcher.run_due_retries() == 0
    await engine.tasks.drain()

    report = await engine.dispatcher.report(alert.id)
    assert report.all_exhausted
    assert len(audit_log.failures) == 1
    error, context = audit_log.failures[0]
    assert isinstance(error, ExhaustedDispatch)
    assert error.channels == ["bot_messaging", "business_messaging", "email"]
    assert context["alert_id"] == alert.id
    assert (await engine.lifecycle.get(alert.id)).state is AlertState.OPEN


@pytest.mark.asyncio
async def test_slow_channel_times_out_without_blocking_others(
    store, directory, channels, audit_log, clock
) -> None:
    engine = build_engine(
        store=store,
        directory=directory,
        channels=list(channels.values()),
        policy=AlertPolicy(delivery_timeout_seconds=0.05),
        audit_log=audit_log,
        clock=clock,
    )
    channels[Channel.EMAIL].delay = 5.0
    alert = await _open_alert(engine, clock)

    report = await asyncio.wait_for(engine.dispatcher.dispatch(alert.id), timeout=2)
    await engine.tasks.drain()

    assert report.status_of(Channel.EMAIL) is ChannelStatus.FAILED
    assert "timed out" in report.channels[Channel.EMAIL].destinations[0].last_error
    assert report.status_of(Channel.BOT_MESSAGING) is ChannelStatus.SENT
    assert report.status_of(Channel.BUSINESS_MESSAGING) is ChannelStatus.SENT


@pytest.mark.asyncio
async def test_patient_without_recipients_reports_no_recipients(engine, channels, clock) -> None:
    alert = await _open_alert(engine, clock, patient_id="patient-without-carers")

    report = await engine.dispatcher.dispatch(alert.id)

    assert not report.has_recipients
    assert set(report.summary().values()) == {"no_recipients"}
    assert all(not channel.calls for channel in channels.values())


@pytest.mark.asyncio
async def test_escalation_reaches_secondary_contacts_only_once(engine, channels, policy, clock) -> None:
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(policy.escalation_timeout_seconds)
    escalated = await engine.lifecycle.escalate(alert.id)
    await engine.tasks.drain()

    assert escalated is not None
    assert channels[Channel.EMAIL].destinations() == [PRIMARY_EMAIL, SECONDARY_EMAIL]
    _, message = channels[Channel.EMAIL].calls[-1]
    assert message.subject.startswith("URGENT")


@pytest.mark.asyncio
async def test_closing_alert_cancels_scheduled_retries(engine, channels, clock) -> None:
    channels[Channel.BOT_MESSAGING].script(DeliveryOutcome.TRANSIENT_FAILURE)
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    await engine.lifecycle.resolve(alert.id, ResolutionKind.FALSE_ALARM, "caregiver-ana")
    clock.advance(30)

    assert await engine.dispatcher.run_due_retries() == 0
    report = await engine.dispatcher.report(alert.id)
    assert report.status_of(Channel.BOT_MESSAGING) is ChannelStatus.CANCELLED
    assert len(channels[Channel.BOT_MESSAGING].calls) == 1


@pytest.mark.asyncio
async def test_in_flight_attempt_completes_after_alert_is_resolved(engine, channels, clock) -> None:
    gate = asyncio.Event()
    channels[Channel.EMAIL].gate = gate
    alert = await _open_alert(engine, clock)

    dispatching = asyncio.create_task(engine.dispatcher.dispatch(alert.id))
    while not channels[Channel.EMAIL].calls:
        await asyncio.sleep(0)
    await engine.lifecycle.resolve(alert.id, ResolutionKind.CONFIRMED, "caregiver-ana")
    gate.set()
    report = await dispatching

    assert report.status_of(Channel.EMAIL) is ChannelStatus.SENT


@pytest.mark.asyncio
async def test_dispatching_closed_alert_sends_nothing(engine, channels, clock) -> None:
    alert = await _open_alert(engine, clock)
    await engine.lifecycle.resolve(alert.id, ResolutionKind.CONFIRMED, "caregiver-ana")

    await engine.dispatcher.dispatch(alert.id)

    assert all(not channel.calls for channel in channels.values())


@pytest.mark.asyncio
async def test_resend_retries_failed_pairs_and_skips_sent_ones(engine, channels, clock) -> None:
    channels[Channel.BOT_MESSAGING].script(DeliveryOutcome.TRANSIENT_FAILURE)
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    report = await engine.dispatcher.resend(alert.id)

    assert report.status_of(Channel.BOT_MESSAGING) is ChannelStatus.SENT
    assert len(channels[Channel.BOT_MESSAGING].calls) == 2
    assert len(channels[Channel.EMAIL].calls) == 1


@pytest.mark.asyncio
async def test_acknowledgement_before_escalation_round_skips_secondary_contacts(
    engine, channels, policy, clock
) -> None:
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(policy.escalation_timeout_seconds)
    await engine.lifecycle.escalate(alert.id)
    await engine.lifecycle.acknowledge(alert.id, "caregiver-ana")
    await engine.tasks.drain()

    assert channels[Channel.EMAIL].destinations() == [PRIMARY_EMAIL]
    assert SECONDARY_EMAIL not in channels[Channel.EMAIL].destinations()


@pytest.mark.asyncio
async def test_acknowledgement_cancels_escalation_retries_only(
    engine, store, channels, policy, clock
) -> None:
    channels[Channel.EMAIL].script(DeliveryOutcome.TRANSIENT_FAILURE, destination=SECONDARY_EMAIL)
    channels[Channel.BOT_MESSAGING].script(
        DeliveryOutcome.TRANSIENT_FAILURE, DeliveryOutcome.TRANSIENT_FAILURE, destination=PRIMARY_CHAT
    )
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(policy.escalation_timeout_seconds)
    await engine.lifecycle.escalate(alert.id)
    await engine.tasks.drain()
    await engine.lifecycle.acknowledge(alert.id, "caregiver-ana")
    clock.advance(60)

    # The initial round still retries; the escalation round does not
    assert await engine.dispatcher.run_due_retries() == 1
    secondary = await store.get_attempt(alert.id, Channel.EMAIL, SECONDARY_EMAIL)
    assert secondary.status is DeliveryStatus.CANCELLED
    primary_bot = await store.get_attempt(alert.id, Channel.BOT_MESSAGING, PRIMARY_CHAT)
    assert primary_bot.status is DeliveryStatus.SENT
    assert channels[Channel.EMAIL].destinations().count(SECONDARY_EMAIL) == 1


@pytest.mark.asyncio
async def test_closing_alert_forgets_exhaustion_report(engine, channels, clock) -> None:
    for channel in channels.values():
        channel.default = DeliveryOutcome.REJECTED
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)
    assert alert.id in engine.dispatcher._exhaustion_reported

    await engine.lifecycle.resolve(alert.id, ResolutionKind.CONFIRMED, "caregiver-ana")

    assert alert.id not in engine.dispatcher._exhaustion_reported


@pytest.mark.asyncio
async def test_retry_outcome_is_written_to_audit_log(engine, channels, audit_log, clock) -> None:
    channels[Channel.BOT_MESSAGING].script(DeliveryOutcome.TRANSIENT_FAILURE)
    alert = await _open_alert(engine, clock)
    await engine.dispatcher.dispatch(alert.id)

    clock.advance(30)
    assert await engine.dispatcher.run_due_retries() == 1
    await engine.tasks.drain()

    assert len(audit_log.dispatches) == 2
    assert audit_log.dispatches[0].status_of(Channel.BOT_MESSAGING) is ChannelStatus.FAILED
    assert audit_log.dispatches[-1].status_of(Channel.BOT_MESSAGING) is ChannelStatus.SENT
