from __future__ import annotations

import re
from urllib.parse import quote

from carewatch.modules.alerts.channels.base import (
    ChannelAdapter,
    json_body,
    raise_for_delivery_status,
)
from carewatch.modules.alerts.exceptions import PermanentChannelRejection
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Channel

_NON_DIGITS = re.compile(r"\D")
WHATSAPP_JID_SUFFIX = "@s.whatsapp.net"


def to_whatsapp_jid(phone: str) -> str:
    """Normalise an international phone number to a WhatsApp JID."""
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        raise PermanentChannelRejection(f"invalid phone number: {phone!r}")
    return f"{digits}{WHATSAPP_JID_SUFFIX}"


class BusinessMessagingChannel(ChannelAdapter):
    """WhatsApp delivery through an Evolution API instance."""

    channel = Channel.BUSINESS_MESSAGING

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance_name: str,
        *,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/message/sendText/{quote(self.instance_name, safe='')}"

    async def _deliver(self, destination: str, message: RenderedMessage) -> str | None:
        jid = to_whatsapp_jid(destination)
        client = await self._get_client()
        response = await client.post(
            self.endpoint,
            headers={"apikey": self.api_key},
            json={"number": jid, "text": f"*{message.subject}*\n\n{message.text}"},
        )
        raise_for_delivery_status(response)
        key = json_body(response).get("key") or {}
        return key.get("id")
