from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import structlog

from carewatch.core.config import Settings, settings
from carewatch.modules.alerts.audit import AuditLog, AuditTrail, StructlogAuditLog
from carewatch.modules.alerts.channels import ChannelAdapter, build_channels
from carewatch.modules.alerts.config import AlertPolicy, load_policy, policy_from_settings
from carewatch.modules.alerts.dispatcher import AlertDispatcher
from carewatch.modules.alerts.ingestion import IngestionGateway
from carewatch.modules.alerts.lifecycle import AlertLifecycleManager
from carewatch.modules.alerts.models import utc_now
from carewatch.modules.alerts.recipients import (
    MongoRecipientDirectory,
    RecipientDirectory,
    StaticRecipientDirectory,
    load_relationships,
)
from carewatch.modules.alerts.scheduler import AlertScheduler
from carewatch.modules.alerts.store import AlertStore, InMemoryAlertStore, MongoAlertStore
from carewatch.modules.alerts.tracker import DeliveryTracker
from carewatch.shared.tasks import BackgroundTaskSet

log = structlog.get_logger()


@dataclass
class AlertEngine:
    """Wired alert components sharing one store, policy and task set."""

    policy: AlertPolicy
    store: AlertStore
    directory: RecipientDirectory
    tracker: DeliveryTracker
    lifecycle: AlertLifecycleManager
    dispatcher: AlertDispatcher
    ingestion: IngestionGateway
    scheduler: AlertScheduler
    audit: AuditTrail
    tasks: BackgroundTaskSet

    async def start(self, run_scheduler: bool = True) -> None:
        if run_scheduler:
            self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.tasks.drain()
        await self.dispatcher.close()


def build_engine(
    *,
    store: AlertStore | None = None,
    directory: RecipientDirectory | None = None,
    channels: list[ChannelAdapter] | None = None,
    policy: AlertPolicy | None = None,
    audit_log: AuditLog | None = None,
    clock: Callable[[], datetime] = utc_now,
    config: Settings = settings,
) -> AlertEngine:
    use_mongo = bool(config.MONGODB_URL)
    if policy is None:
        policy_path = Path(config.ALERT_POLICY_FILE) if config.ALERT_POLICY_FILE else None
        policy = load_policy(policy_path, defaults=policy_from_settings(config))
    if store is None:
        store = MongoAlertStore() if use_mongo else InMemoryAlertStore()
    if directory is None:
        if use_mongo:
            directory = MongoRecipientDirectory()
        else:
            seed = Path(config.CARE_RELATIONSHIPS_FILE) if config.CARE_RELATIONSHIPS_FILE else None
            directory = StaticRecipientDirectory(load_relationships(seed))
    if channels is None:
        channels = build_channels(config)

    tasks = BackgroundTaskSet()
    audit = AuditTrail(audit_log or StructlogAuditLog(), tasks)
    tracker = DeliveryTracker(store, policy, clock=clock)
    lifecycle = AlertLifecycleManager(store, policy, clock=clock)
    dispatcher = AlertDispatcher(
        store=store,
        tracker=tracker,
        directory=directory,
        channels=channels,
        policy=policy,
        audit=audit,
        tasks=tasks,
        clock=clock,
    )
    lifecycle.subscribe(audit.on_lifecycle_event)
    lifecycle.subscribe(dispatcher.on_lifecycle_event)

    ingestion = IngestionGateway(
        store=store,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        directory=directory,
        policy=policy,
        clock=clock,
    )
    scheduler = AlertScheduler(
        lifecycle,
        dispatcher,
        interval_seconds=config.SCHEDULER_INTERVAL_SECONDS,
        clock=clock,
    )

    log.info(
        "alert engine built",
        store=type(store).__name__,
        channels=[adapter.name for adapter in channels],
    )
    return AlertEngine(
        policy=policy,
        store=store,
        directory=directory,
        tracker=tracker,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        ingestion=ingestion,
        scheduler=scheduler,
        audit=audit,
        tasks=tasks,
    )


_engine: AlertEngine | None = None


def get_engine() -> AlertEngine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
