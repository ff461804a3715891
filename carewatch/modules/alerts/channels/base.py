"""
Common behaviour for notification channel adapters.

An adapter performs exactly one delivery call per ``send``. Retries, backoff
and the per-attempt timeout are the dispatcher's job. Adapters signal failures
by raising ``TransientChannelFailure`` or ``PermanentChannelRejection`` from
``_deliver``. ``send`` turns those into a ``ChannelResult`` so callers never
see exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog

from carewatch.modules.alerts.exceptions import (
    PermanentChannelRejection,
    TransientChannelFailure,
)
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Channel

logger = structlog.get_logger()

# Statuses that may succeed when repeated later
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class ChannelResult:
    outcome: DeliveryOutcome
    error: str | None = None
    provider_message_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is DeliveryOutcome.SENT


def raise_for_delivery_status(response: httpx.Response) -> None:
    """Map a provider response onto the channel failure taxonomy."""
    code = response.status_code
    if 200 <= code < 300:
        return
    detail = f"HTTP {code}: {response.text[:200]}"
    if code >= 500 or code in RETRYABLE_STATUS_CODES:
        raise TransientChannelFailure(detail, status_code=code)
    raise PermanentChannelRejection(detail, status_code=code)


def json_body(response: httpx.Response) -> dict:
    """Provider response body as a dict. Non-JSON bodies read as empty."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ChannelAdapter(ABC):
    """Base class for email, bot messaging and business messaging adapters."""

    channel: Channel

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self.channel.value

    async def _get_client(self) -> httpx.AsyncClient:
        """Return (and lazily create) the pooled ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @abstractmethod
    async def _deliver(self, destination: str, message: RenderedMessage) -> str | None:
        """Perform the provider call. Returns the provider message id if any."""

    async def send(self, destination: str, message: RenderedMessage) -> ChannelResult:
        log = logger.bind(channel=self.name, destination=destination)
        try:
            provider_id = await self._deliver(destination, message)
        except PermanentChannelRejection as exc:
            log.warning("channel_delivery_rejected", error=str(exc), status_code=exc.status_code)
            return ChannelResult(DeliveryOutcome.REJECTED, error=str(exc))
        except TransientChannelFailure as exc:
            log.warning("channel_delivery_failed", error=str(exc), status_code=exc.status_code)
            return ChannelResult(DeliveryOutcome.TRANSIENT_FAILURE, error=str(exc))
        except httpx.TimeoutException as exc:
            log.warning("channel_delivery_timeout", error=str(exc) or "timeout")
            return ChannelResult(DeliveryOutcome.TRANSIENT_FAILURE, error=f"timeout: {exc}")
        except httpx.HTTPError as exc:
            log.warning("channel_transport_error", error=str(exc))
            return ChannelResult(DeliveryOutcome.TRANSIENT_FAILURE, error=f"transport: {exc}")

        log.info("channel_delivered", provider_message_id=provider_id)
        return ChannelResult(DeliveryOutcome.SENT, provider_message_id=provider_id)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
