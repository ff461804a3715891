"""
Concurrent multi-channel fan-out for alerts.

Each (channel, destination) pair is delivered by its own task, so a slow or
failing provider never holds up another. Attempts are bounded by the policy
timeout and recorded through the ``DeliveryTracker``. Retries are persisted
as ``next_retry_at`` and picked up by ``run_due_retries``. Channel errors
end up in the report and never propagate to callers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog

from carewatch.modules.alerts.audit import AuditTrail
from carewatch.modules.alerts.channels.base import (
    ChannelAdapter,
    ChannelResult,
    DeliveryOutcome,
)
from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.exceptions import AlertNotFound, ExhaustedDispatch
from carewatch.modules.alerts.lifecycle import LifecycleEvent
from carewatch.modules.alerts.messages import RenderedMessage, render_alert_message
from carewatch.modules.alerts.models import (
    Alert,
    AlertState,
    Channel,
    DeliveryAttempt,
    DeliveryStatus,
    TransitionKind,
    utc_now,
)
from carewatch.modules.alerts.recipients import RecipientDirectory
from carewatch.modules.alerts.store import AlertStore
from carewatch.modules.alerts.tracker import DeliveryTracker
from carewatch.shared.tasks import BackgroundTaskSet

logger = structlog.get_logger(__name__)


class ChannelStatus(str, Enum):
    SENT = "sent"
    PENDING = "pending"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    NO_RECIPIENTS = "no_recipients"


@dataclass(frozen=True)
class DestinationReport:
    destination: str
    status: DeliveryStatus
    attempt_number: int
    last_error: str | None = None
    next_retry_at: datetime | None = None


@dataclass
class ChannelReport:
    channel: Channel
    status: ChannelStatus
    destinations: list[DestinationReport] = field(default_factory=list)


def aggregate_channel_status(statuses: list[DeliveryStatus]) -> ChannelStatus:
    """Collapse per-destination statuses into one channel status.

    Delivery to any destination counts as ``sent``. Otherwise open work
    (``pending`` or ``failed`` with retries left) wins over final states.
    """
    if not statuses:
        return ChannelStatus.NO_RECIPIENTS
    if DeliveryStatus.SENT in statuses:
        return ChannelStatus.SENT
    if DeliveryStatus.PENDING in statuses:
        return ChannelStatus.PENDING
    if DeliveryStatus.FAILED in statuses:
        return ChannelStatus.FAILED
    if all(status is DeliveryStatus.EXHAUSTED for status in statuses):
        return ChannelStatus.EXHAUSTED
    return ChannelStatus.CANCELLED


@dataclass
class DispatchReport:
    alert_id: str
    escalation: bool = False
    channels: dict[Channel, ChannelReport] = field(default_factory=dict)

    @classmethod
    def from_attempts(
        cls,
        alert_id: str,
        attempts: list[DeliveryAttempt],
        channels: list[Channel],
        escalation: bool = False,
    ) -> DispatchReport:
        report = cls(alert_id=alert_id, escalation=escalation)
        known = list(dict.fromkeys([*channels, *(attempt.channel for attempt in attempts)]))
        for channel in known:
            rows = sorted(
                (attempt for attempt in attempts if attempt.channel is channel),
                key=lambda attempt: attempt.destination,
            )
            report.channels[channel] = ChannelReport(
                channel=channel,
                status=aggregate_channel_status([row.status for row in rows]),
                destinations=[
                    DestinationReport(
                        destination=row.destination,
                        status=row.status,
                        attempt_number=row.attempt_number,
                        last_error=row.last_error,
                        next_retry_at=row.next_retry_at,
                    )
                    for row in rows
                ],
            )
        return report

    def summary(self) -> dict[str, str]:
        return {channel.value: item.status.value for channel, item in self.channels.items()}

    def status_of(self, channel: Channel) -> ChannelStatus:
        item = self.channels.get(channel)
        return item.status if item else ChannelStatus.NO_RECIPIENTS

    @property
    def has_recipients(self) -> bool:
        return any(item.status is not ChannelStatus.NO_RECIPIENTS for item in self.channels.values())

    @property
    def all_exhausted(self) -> bool:
        """Every channel that had recipients ran out of attempts."""
        reached = [item for item in self.channels.values() if item.status is not ChannelStatus.NO_RECIPIENTS]
        return bool(reached) and all(item.status is ChannelStatus.EXHAUSTED for item in reached)


class AlertDispatcher:
    def __init__(
        self,
        store: AlertStore,
        tracker: DeliveryTracker,
        directory: RecipientDirectory,
        channels: list[ChannelAdapter],
        policy: AlertPolicy,
        audit: AuditTrail,
        tasks: BackgroundTaskSet,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._directory = directory
        self._channels: dict[Channel, ChannelAdapter] = {adapter.channel: adapter for adapter in channels}
        self._policy = policy
        self._audit = audit
        self._tasks = tasks
        self._clock = clock
        self._exhaustion_reported: set[str] = set()

    @property
    def channels(self) -> list[ChannelAdapter]:
        return list(self._channels.values())

    async def dispatch(self, alert_id: str, escalation: bool = False) -> DispatchReport:
        """Fan an alert out to every configured channel and its recipients."""
        return await self._fan_out(alert_id, escalation=escalation, force=False)

    async def resend(self, alert_id: str) -> DispatchReport:
        """Manual re-dispatch. Failed pairs are retried now; sent ones are skipped."""
        alert = await self._get_alert(alert_id)
        return await self._fan_out(alert_id, escalation=alert.is_escalated, force=True)

    def dispatch_in_background(self, alert_id: str, escalation: bool = False) -> asyncio.Task:
        return self._tasks.spawn(
            self.dispatch(alert_id, escalation=escalation),
            name=f"dispatch-{alert_id}{'-escalation' if escalation else ''}",
        )

    async def report(self, alert_id: str, escalation: bool = False) -> DispatchReport:
        attempts = await self._tracker.attempts_for(alert_id)
        return DispatchReport.from_attempts(
            alert_id, attempts, list(self._channels), escalation=escalation
        )

    async def run_due_retries(self, now: datetime | None = None, limit: int = 100) -> int:
        """Execute retries whose backoff has elapsed. Returns how many ran."""
        now = now or self._clock()
        due = await self._tracker.due_for_retry(now, limit=limit)
        if not due:
            return 0

        alerts: dict[str, Alert | None] = {}
        for attempt in due:
            if attempt.alert_id not in alerts:
                alerts[attempt.alert_id] = await self._store.get_alert(attempt.alert_id)

        jobs = []
        retried: dict[str, Alert] = {}
        for attempt in due:
            alert = alerts[attempt.alert_id]
            if alert is None:
                logger.warning("delivery_retry_orphaned", alert_id=attempt.alert_id)
                continue
            if alert.is_terminal:
                await self._tracker.cancel_pending_retries(alert.id, now=now)
                continue
            if attempt.escalation and alert.state is not AlertState.OPEN:
                await self._tracker.cancel_pending_retries(alert.id, now=now, escalation_only=True)
                continue
            message = render_alert_message(alert, escalation=attempt.escalation)
            retried[alert.id] = alert
            jobs.append(
                self._deliver_pair(
                    alert, attempt.channel, attempt.destination, message,
                    escalation=attempt.escalation, force=False, now=now,
                )
            )

        results = await asyncio.gather(*jobs)
        for alert_id, alert in retried.items():
            report = await self.report(alert_id, escalation=alert.is_escalated)
            self._audit.dispatch(report)
            await self._check_exhausted(alert_id, report)
        executed = sum(1 for ran in results if ran)
        logger.info("delivery_retries_ran", due=len(due), executed=executed)
        return executed

    async def recover_stale_attempts(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        return await self._tracker.requeue_stale(now - self._policy.stale_attempt_after, now=now)

    async def on_lifecycle_event(self, event: LifecycleEvent) -> None:
        if event.kind is TransitionKind.ESCALATED:
            self.dispatch_in_background(event.alert.id, escalation=True)
        elif event.kind is TransitionKind.ACKNOWLEDGED:
            await self._tracker.cancel_pending_retries(event.alert.id, escalation_only=True)
        elif event.kind.is_terminal:
            self._exhaustion_reported.discard(event.alert.id)
            await self._tracker.cancel_pending_retries(event.alert.id)

    async def close(self) -> None:
        for adapter in self._channels.values():
            await adapter.close()

    async def _get_alert(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    async def _fan_out(self, alert_id: str, *, escalation: bool, force: bool) -> DispatchReport:
        alert = await self._get_alert(alert_id)
        log = logger.bind(alert_id=alert_id, escalation=escalation)
        if alert.is_terminal:
            log.info("dispatch_skipped_closed_alert", state=alert.state.value)
            return await self.report(alert_id, escalation=escalation)
        # An acknowledgement that lands before the escalation round runs answers it
        if escalation and alert.state is not AlertState.OPEN:
            log.info("dispatch_escalation_skipped", state=alert.state.value)
            return await self.report(alert_id, escalation=escalation)

        message = render_alert_message(alert, escalation=escalation)
        jobs = []
        for channel, adapter in self._channels.items():
            recipients = await self._directory.recipients_for(
                alert.patient_id, channel, escalation=escalation
            )
            for recipient in recipients:
                jobs.append(
                    self._deliver_pair(
                        alert, channel, recipient.destination, message,
                        escalation=escalation, force=force,
                    )
                )

        if not jobs:
            log.warning("dispatch_no_recipients", channels=[channel.value for channel in self._channels])
        else:
            await asyncio.gather(*jobs)

        report = await self.report(alert_id, escalation=escalation)
        log.info("dispatch_completed", channels=report.summary())
        self._audit.dispatch(report)
        await self._check_exhausted(alert_id, report)
        return report

    async def _deliver_pair(
        self,
        alert: Alert,
        channel: Channel,
        destination: str,
        message: RenderedMessage,
        *,
        escalation: bool,
        force: bool,
        now: datetime | None = None,
    ) -> bool:
        attempt = await self._tracker.record_attempt(
            alert.id, channel, destination, escalation=escalation, force=force, now=now or self._clock()
        )
        if attempt is None:
            return False
        await self._execute(attempt, message)
        return True

    async def _execute(self, attempt: DeliveryAttempt, message: RenderedMessage) -> None:
        log = logger.bind(
            alert_id=attempt.alert_id,
            channel=attempt.channel.value,
            destination=attempt.destination,
            attempt_number=attempt.attempt_number,
        )
        adapter = self._channels.get(attempt.channel)
        if adapter is None:
            result = ChannelResult(DeliveryOutcome.REJECTED, error="channel is not configured")
        else:
            result = await self._send_bounded(adapter, attempt.destination, message, log)

        if result.ok:
            await self._tracker.mark_sent(attempt, now=self._clock())
            return

        alert = await self._store.get_alert(attempt.alert_id)
        updated = await self._tracker.mark_failed(
            attempt,
            result.error,
            permanent=result.outcome is DeliveryOutcome.REJECTED,
            retry_allowed=alert is not None and not alert.is_terminal,
            now=self._clock(),
        )
        if updated is not None:
            log.warning(
                "delivery_attempt_failed",
                status=updated.status.value,
                next_retry_at=updated.next_retry_at.isoformat() if updated.next_retry_at else None,
                error=result.error,
            )

    async def _send_bounded(
        self,
        adapter: ChannelAdapter,
        destination: str,
        message: RenderedMessage,
        log: structlog.stdlib.BoundLogger,
    ) -> ChannelResult:
        timeout = self._policy.delivery_timeout_seconds
        try:
            return await asyncio.wait_for(adapter.send(destination, message), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("delivery_attempt_timeout", timeout=timeout)
            return ChannelResult(DeliveryOutcome.TRANSIENT_FAILURE, error=f"timed out after {timeout}s")
        except Exception as exc:  # noqa: BLE001
            log.exception("delivery_adapter_error")
            return ChannelResult(DeliveryOutcome.TRANSIENT_FAILURE, error=f"adapter error: {exc}")

    async def _check_exhausted(self, alert_id: str, report: DispatchReport | None = None) -> None:
        if alert_id in self._exhaustion_reported:
            return
        report = report or await self.report(alert_id)
        if not report.all_exhausted:
            return
        self._exhaustion_reported.add(alert_id)
        exhausted = [name for name, status in report.summary().items() if status == ChannelStatus.EXHAUSTED.value]
        error = ExhaustedDispatch(alert_id, sorted(exhausted))
        logger.error("dispatch_exhausted", alert_id=alert_id, channels=report.summary())
        self._audit.operational_failure(error, alert_id=alert_id, channels=report.summary())
