import structlog

from carewatch.core.config import Settings
from carewatch.modules.alerts.channels.base import (
    ChannelAdapter,
    ChannelResult,
    DeliveryOutcome,
)
from carewatch.modules.alerts.channels.bot import BotMessagingChannel
from carewatch.modules.alerts.channels.business import BusinessMessagingChannel
from carewatch.modules.alerts.channels.email import EmailChannel

log = structlog.get_logger()

__all__ = [
    "BotMessagingChannel",
    "BusinessMessagingChannel",
    "ChannelAdapter",
    "ChannelResult",
    "DeliveryOutcome",
    "EmailChannel",
    "build_channels",
]


def build_channels(settings: Settings) -> list[ChannelAdapter]:
    """Instantiate the adapters whose credentials are configured."""
    timeout = settings.DELIVERY_TIMEOUT_SECONDS
    channels: list[ChannelAdapter] = []

    if settings.RESEND_API_KEY:
        channels.append(
            EmailChannel(
                api_key=settings.RESEND_API_KEY,
                sender=settings.EMAIL_FROM,
                api_url=settings.RESEND_API_URL,
                timeout=timeout,
            )
        )
    else:
        log.info("channel not configured", channel="email", missing="RESEND_API_KEY")

    if settings.TELEGRAM_BOT_TOKEN:
        channels.append(
            BotMessagingChannel(
                bot_token=settings.TELEGRAM_BOT_TOKEN,
                api_url=settings.TELEGRAM_API_URL,
                timeout=timeout,
            )
        )
    else:
        log.info("channel not configured", channel="bot_messaging", missing="TELEGRAM_BOT_TOKEN")

    if settings.EVOLUTION_BASE_URL and settings.EVOLUTION_API_KEY and settings.EVOLUTION_INSTANCE_NAME:
        channels.append(
            BusinessMessagingChannel(
                base_url=settings.EVOLUTION_BASE_URL,
                api_key=settings.EVOLUTION_API_KEY,
                instance_name=settings.EVOLUTION_INSTANCE_NAME,
                timeout=timeout,
            )
        )
    else:
        log.info(
            "channel not configured",
            channel="business_messaging",
            missing="EVOLUTION_BASE_URL/EVOLUTION_API_KEY/EVOLUTION_INSTANCE_NAME",
        )

    return channels
