from __future__ import annotations

from carewatch.modules.alerts.channels.base import (
    ChannelAdapter,
    json_body,
    raise_for_delivery_status,
)
from carewatch.modules.alerts.exceptions import PermanentChannelRejection
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Channel


class EmailChannel(ChannelAdapter):
    """Email delivery through the Resend HTTP API."""

    channel = Channel.EMAIL

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        *,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url

    async def _deliver(self, destination: str, message: RenderedMessage) -> str | None:
        if "@" not in destination:
            raise PermanentChannelRejection(f"invalid email address: {destination!r}")

        client = await self._get_client()
        response = await client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.sender,
                "to": [destination],
                "subject": message.subject,
                "html": message.html,
                "text": message.text,
            },
        )
        raise_for_delivery_status(response)
        return json_body(response).get("id")
