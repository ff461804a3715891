import json
from datetime import timedelta
from pathlib import Path

import structlog
from pydantic import Field

from carewatch.core.config import Settings, settings
from carewatch.shared.schemas import CamelModel

log = structlog.get_logger()


class AlertPolicy(CamelModel):
    """Timing policy for dedup, escalation and delivery retries."""

    dedup_window_seconds: int = Field(default=300, ge=0)
    clock_skew_tolerance_seconds: int = Field(default=120, ge=0)
    escalation_timeout_seconds: int = Field(default=600, ge=0)
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_base_seconds: int = Field(default=30, ge=0)
    retry_factor: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    stale_attempt_seconds: int = Field(default=120, ge=0)

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(seconds=self.dedup_window_seconds)

    @property
    def clock_skew_tolerance(self) -> timedelta:
        return timedelta(seconds=self.clock_skew_tolerance_seconds)

    @property
    def escalation_timeout(self) -> timedelta:
        return timedelta(seconds=self.escalation_timeout_seconds)

    @property
    def stale_attempt_after(self) -> timedelta:
        return timedelta(seconds=self.stale_attempt_seconds)

    def retry_delay(self, attempt_number: int) -> timedelta:
        """Delay before the attempt that follows ``attempt_number``."""
        exponent = max(attempt_number - 1, 0)
        return timedelta(seconds=self.retry_base_seconds * self.retry_factor**exponent)


def policy_from_settings(source: Settings = settings) -> AlertPolicy:
    return AlertPolicy(
        dedup_window_seconds=source.ALERT_DEDUP_WINDOW_SECONDS,
        clock_skew_tolerance_seconds=source.ALERT_CLOCK_SKEW_TOLERANCE_SECONDS,
        escalation_timeout_seconds=source.ALERT_ESCALATION_TIMEOUT_SECONDS,
        delivery_timeout_seconds=source.DELIVERY_TIMEOUT_SECONDS,
        retry_base_seconds=source.DELIVERY_RETRY_BASE_SECONDS,
        retry_factor=source.DELIVERY_RETRY_FACTOR,
        max_attempts=source.DELIVERY_MAX_ATTEMPTS,
        stale_attempt_seconds=source.DELIVERY_STALE_AFTER_SECONDS,
    )


def load_policy(path: Path | None, defaults: AlertPolicy | None = None) -> AlertPolicy:
    """Overlay a JSON policy file on top of the settings-derived defaults."""
    base = defaults or policy_from_settings()
    if path is None:
        return base
    try:
        payload = json.loads(path.read_text())
        merged = {**base.model_dump(), **AlertPolicy.model_validate(payload).model_dump(exclude_unset=True)}
        return AlertPolicy.model_validate(merged)
    except FileNotFoundError:
        log.info("alert policy file not found, using defaults", path=str(path))
        return base
    except Exception as exc:
        log.warning("alert policy load failed, using defaults", path=str(path), error=str(exc))
        return base
