import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from carewatch.modules.alerts.audit import AuditLog
from carewatch.modules.alerts.channels.base import ChannelAdapter, DeliveryOutcome
from carewatch.modules.alerts.exceptions import (
    AlertError,
    PermanentChannelRejection,
    TransientChannelFailure,
)
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Alert, AlertTransition, Channel

PATIENT_ID = "patient-1"
PRIMARY_EMAIL = "ana@example.com"
PRIMARY_CHAT = "1001"
PRIMARY_PHONE = "+55 (11) 99999-0000"
SECONDARY_EMAIL = "bruno@example.com"
SECONDARY_CHAT = "2002"
SECONDARY_PHONE = "+55 11 98888-0000"


class FakeClock:
    """Controllable replacement for ``utc_now``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class ScriptedChannel(ChannelAdapter):
    """Adapter that replays scripted outcomes instead of calling a provider."""

    def __init__(
        self,
        channel: Channel,
        default: DeliveryOutcome = DeliveryOutcome.SENT,
        delay: float = 0.0,
    ) -> None:
        super().__init__()
        self.channel = channel
        self.default = default
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, RenderedMessage]] = []
        self._scripts: dict[str | None, list[DeliveryOutcome]] = {}

    def script(self, *outcomes: DeliveryOutcome, destination: str | None = None) -> None:
        self._scripts.setdefault(destination, []).extend(outcomes)

    def destinations(self) -> list[str]:
        return [destination for destination, _ in self.calls]

    def _next_outcome(self, destination: str) -> DeliveryOutcome:
        for key in (destination, None):
            queue = self._scripts.get(key)
            if queue:
                return queue.pop(0)
        return self.default

    async def _deliver(self, destination: str, message: RenderedMessage) -> str | None:
        self.calls.append((destination, message))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self._next_outcome(destination)
        if outcome is DeliveryOutcome.TRANSIENT_FAILURE:
            raise TransientChannelFailure("provider unavailable", status_code=503)
        if outcome is DeliveryOutcome.REJECTED:
            raise PermanentChannelRejection("invalid destination", status_code=400)
        return f"{self.channel.value}-{len(self.calls)}"


class MemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self.transitions: list[tuple[str, AlertTransition]] = []
        self.dispatches: list[Any] = []
        self.failures: list[tuple[AlertError, dict[str, Any]]] = []

    async def record_transition(self, alert: Alert, transition: AlertTransition) -> None:
        self.transitions.append((alert.id, transition))

    async def record_dispatch(self, report: Any) -> None:
        self.dispatches.append(report)

    async def record_operational_failure(self, error: AlertError, **context: Any) -> None:
        self.failures.append((error, context))


def make_event(clock: FakeClock, **overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "patientId": PATIENT_ID,
        "sourceType": "sensor_inactivity",
        "occurredAt": clock.now.isoformat(),
        "sourceEventKey": "motion-hallway-0800",
        "payload": {"location": "hallway"},
    }
    event.update(overrides)
    return event


