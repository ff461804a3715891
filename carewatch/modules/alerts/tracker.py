"""
Delivery bookkeeping per (alert, channel, destination).

All writes for one pair go through a keyed lock and a conditional store update,
so a pair never has two attempts in flight and never gets a second ``sent``.
Unrelated pairs never wait on each other.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from carewatch.modules.alerts.config import AlertPolicy
from carewatch.modules.alerts.models import (
    Channel,
    DeliveryAttempt,
    DeliveryStatus,
    utc_now,
)
from carewatch.modules.alerts.store import AlertStore
from carewatch.shared.locks import KeyedLock

logger = structlog.get_logger(__name__)


class DeliveryTracker:
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

    async def record_attempt(
        self,
        alert_id: str,
        channel: Channel,
        destination: str,
        *,
        escalation: bool = False,
        force: bool = False,
        now: datetime | None = None,
    ) -> DeliveryAttempt | None:
        """Claim the next attempt for a pair, or ``None`` if there is nothing to do.

        A pair is claimable when it has no attempt yet, or when its last
        attempt failed and the retry is due. ``force`` ignores the retry time
        for manual resends. Sent, in-flight, exhausted and cancelled pairs are
        never claimed.
        """
        now = now or self._clock()
        key = (alert_id, channel, destination)
        async with self._locks.hold(key):
            existing = await self._store.get_attempt(alert_id, channel, destination)
            if existing is None:
                attempt = DeliveryAttempt(
                    alert_id=alert_id,
                    channel=channel,
                    destination=destination,
                    escalation=escalation,
                    created_at=now,
                    updated_at=now,
                )
                if await self._store.insert_attempt(attempt):
                    return attempt
                logger.info("delivery_attempt_claimed_elsewhere", alert_id=alert_id, channel=channel.value)
                return None

            if existing.status is not DeliveryStatus.FAILED:
                return None
            if not force and existing.next_retry_at is not None and existing.next_retry_at > now:
                return None

            return await self._store.update_attempt(
                key,
                expected_statuses=[DeliveryStatus.FAILED],
                expected_attempt_number=existing.attempt_number,
                changes={
                    "status": DeliveryStatus.PENDING,
                    "attempt_number": existing.attempt_number + 1,
                    "next_retry_at": None,
                    "updated_at": now,
                },
            )

    async def mark_sent(
        self, attempt: DeliveryAttempt, now: datetime | None = None
    ) -> DeliveryAttempt | None:
        now = now or self._clock()
        async with self._locks.hold(attempt.key):
            updated = await self._store.update_attempt(
                attempt.key,
                expected_statuses=[DeliveryStatus.PENDING],
                expected_attempt_number=attempt.attempt_number,
                changes={
                    "status": DeliveryStatus.SENT,
                    "sent_at": now,
                    "updated_at": now,
                    "last_error": None,
                    "next_retry_at": None,
                },
            )
        if updated is None:
            logger.warning(
                "delivery_mark_sent_skipped",
                alert_id=attempt.alert_id,
                channel=attempt.channel.value,
                attempt_number=attempt.attempt_number,
            )
        return updated

    async def mark_failed(
        self,
        attempt: DeliveryAttempt,
        error: str | None,
        *,
        permanent: bool = False,
        retry_allowed: bool = True,
        now: datetime | None = None,
    ) -> DeliveryAttempt | None:
        """Record a failed attempt and decide what happens next.

        Permanent rejections and a spent attempt budget end the pair as
        ``exhausted``. A closed alert ends it as ``cancelled``. Anything else
        becomes ``failed`` with the next retry time from the backoff policy.
        """
        now = now or self._clock()
        changes: dict[str, object] = {"last_error": error, "updated_at": now}
        if permanent or attempt.attempt_number >= self._policy.max_attempts:
            changes.update(status=DeliveryStatus.EXHAUSTED, next_retry_at=None)
        elif not retry_allowed:
            changes.update(status=DeliveryStatus.CANCELLED, next_retry_at=None)
        else:
            changes.update(
                status=DeliveryStatus.FAILED,
                next_retry_at=now + self._policy.retry_delay(attempt.attempt_number),
            )

        async with self._locks.hold(attempt.key):
            return await self._store.update_attempt(
                attempt.key,
                expected_statuses=[DeliveryStatus.PENDING],
                expected_attempt_number=attempt.attempt_number,
                changes=changes,
            )

    async def is_already_sent(
        self, alert_id: str, channel: Channel, destination: str | None = None
    ) -> bool:
        if destination is not None:
            attempt = await self._store.get_attempt(alert_id, channel, destination)
            return attempt is not None and attempt.status is DeliveryStatus.SENT
        return any(
            attempt.channel is channel and attempt.status is DeliveryStatus.SENT
            for attempt in await self._store.list_attempts(alert_id)
        )

    async def due_for_retry(self, now: datetime | None = None, limit: int = 100) -> list[DeliveryAttempt]:
        return await self._store.list_due_attempts(now or self._clock(), limit=limit)

    async def attempts_for(self, alert_id: str) -> list[DeliveryAttempt]:
        return await self._store.list_attempts(alert_id)

    async def cancel_pending_retries(
        self,
        alert_id: str,
        now: datetime | None = None,
        *,
        escalation_only: bool = False,
    ) -> int:
        """Cancel retries that have not started. In-flight attempts are left alone.

        ``escalation_only`` limits this to the escalation round, which an
        acknowledgement makes moot while the initial round keeps retrying.
        """
        now = now or self._clock()
        cancelled = 0
        for attempt in await self._store.list_attempts(alert_id):
            if attempt.status is not DeliveryStatus.FAILED:
                continue
            if escalation_only and not attempt.escalation:
                continue
            async with self._locks.hold(attempt.key):
                updated = await self._store.update_attempt(
                    attempt.key,
                    expected_statuses=[DeliveryStatus.FAILED],
                    changes={
                        "status": DeliveryStatus.CANCELLED,
                        "next_retry_at": None,
                        "updated_at": now,
                    },
                )
            if updated is not None:
                cancelled += 1
        if cancelled:
            logger.info(
                "delivery_retries_cancelled",
                alert_id=alert_id,
                count=cancelled,
                escalation_only=escalation_only,
            )
        return cancelled

    async def requeue_stale(self, before: datetime, now: datetime | None = None) -> int:
        """Turn attempts orphaned in ``pending`` (crash mid-send) into due retries."""
        now = now or self._clock()
        requeued = 0
        for attempt in await self._store.list_stale_attempts(before):
            if self._locks.locked(attempt.key):
                continue
            updated = await self.mark_failed(attempt, "attempt interrupted before its outcome was recorded", now=now)
            if updated is None:
                continue
            if updated.status is DeliveryStatus.FAILED:
                # Retry straight away instead of waiting out the backoff
                async with self._locks.hold(attempt.key):
                    await self._store.update_attempt(
                        attempt.key,
                        expected_statuses=[DeliveryStatus.FAILED],
                        expected_attempt_number=attempt.attempt_number,
                        changes={"next_retry_at": now},
                    )
            requeued += 1
        if requeued:
            logger.warning("delivery_stale_attempts_requeued", count=requeued)
        return requeued
