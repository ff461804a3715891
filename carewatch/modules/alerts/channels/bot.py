from __future__ import annotations

from html import escape

from carewatch.modules.alerts.channels.base import (
    ChannelAdapter,
    json_body,
    raise_for_delivery_status,
)
from carewatch.modules.alerts.exceptions import PermanentChannelRejection
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Channel


class BotMessagingChannel(ChannelAdapter):
    """Chat-bot delivery through the Telegram Bot API. Destinations are chat ids."""

    channel = Channel.BOT_MESSAGING

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://api.telegram.org",
        *,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(timeout=timeout)
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/bot{self.bot_token}/sendMessage"

    async def _deliver(self, destination: str, message: RenderedMessage) -> str | None:
        client = await self._get_client()
        response = await client.post(
            self.endpoint,
            json={
                "chat_id": destination,
                "text": f"<b>{escape(message.subject)}</b>\n\n{escape(message.text)}",
                "parse_mode": "HTML",
            },
        )
        raise_for_delivery_status(response)
        body = json_body(response)
        if not body.get("ok", False):
            raise PermanentChannelRejection(
                f"bot API refused message: {body.get('description', 'unknown error')}"
            )
        message_id = (body.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None
