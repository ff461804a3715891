from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from carewatch.core.config import Settings
from carewatch.modules.alerts.channels import (
    BotMessagingChannel,
    BusinessMessagingChannel,
    DeliveryOutcome,
    EmailChannel,
    build_channels,
)
from carewatch.modules.alerts.channels.business import to_whatsapp_jid
from carewatch.modules.alerts.exceptions import PermanentChannelRejection
from carewatch.modules.alerts.messages import RenderedMessage
from carewatch.modules.alerts.models import Channel

MESSAGE = RenderedMessage(
    subject="[Critical] Prolonged inactivity detected",
    text="Patient: patient-1 <hallway>",
    html="<p>Patient: patient-1</p>",
)


def _fake_client(monkeypatch: pytest.MonkeyPatch, adapter, *, response=None, error=None) -> AsyncMock:
    post = AsyncMock(return_value=response, side_effect=error)
    monkeypatch.setattr(adapter, "_get_client", AsyncMock(return_value=SimpleNamespace(post=post)))
    return post


@pytest.mark.asyncio
async def test_email_posts_to_provider_and_returns_message_id(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = EmailChannel(api_key="re_test", sender="alerts@carewatch.test")
    post = _fake_client(monkeypatch, adapter, response=httpx.Response(200, json={"id": "email-42"}))

    result = await adapter.send("ana@example.com", MESSAGE)

    assert result.ok
    assert result.provider_message_id == "email-42"
    args, kwargs = post.call_args
    assert args[0] == "https://api.resend.com/emails"
    assert kwargs["headers"] == {"Authorization": "Bearer re_test"}
    assert kwargs["json"]["to"] == ["ana@example.com"]
    assert kwargs["json"]["subject"] == MESSAGE.subject


@pytest.mark.asyncio
async def test_email_without_at_sign_is_rejected_before_calling_provider(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    adapter = EmailChannel(api_key="re_test", sender="alerts@carewatch.test")
    post = _fake_client(monkeypatch, adapter, response=httpx.Response(200, json={}))

    result = await adapter.send("not-an-address", MESSAGE)

    assert result.outcome is DeliveryOutcome.REJECTED
    post.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,outcome",
    [
        (201, DeliveryOutcome.SENT),
        (400, DeliveryOutcome.REJECTED),
        (404, DeliveryOutcome.REJECTED),
        (408, DeliveryOutcome.TRANSIENT_FAILURE),
        (429, DeliveryOutcome.TRANSIENT_FAILURE),
        (500, DeliveryOutcome.TRANSIENT_FAILURE),
        (503, DeliveryOutcome.TRANSIENT_FAILURE),
    ],
)
async def test_provider_status_codes_map_to_outcomes(
    monkeypatch: pytest.MonkeyPatch, status_code: int, outcome: DeliveryOutcome
) -> None:
    adapter = EmailChannel(api_key="re_test", sender="alerts@carewatch.test")
    _fake_client(monkeypatch, adapter, response=httpx.Response(status_code, text="provider says no"))

    result = await adapter.send("ana@example.com", MESSAGE)

    assert result.outcome is outcome
    if outcome is not DeliveryOutcome.SENT:
        assert f"HTTP {status_code}" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [httpx.ReadTimeout("read timed out"), httpx.ConnectError("connection refused")],
)
async def test_transport_errors_are_transient(monkeypatch: pytest.MonkeyPatch, error) -> None:
    adapter = BotMessagingChannel(bot_token="123:abc")
    _fake_client(monkeypatch, adapter, error=error)

    result = await adapter.send("1001", MESSAGE)

    assert result.outcome is DeliveryOutcome.TRANSIENT_FAILURE


@pytest.mark.asyncio
async def test_bot_message_escapes_html_and_targets_chat(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = BotMessagingChannel(bot_token="123:abc", api_url="https://bots.example/")
    post = _fake_client(
        monkeypatch,
        adapter,
        response=httpx.Response(200, json={"ok": True, "result": {"message_id": 77}}),
    )

    result = await adapter.send("1001", MESSAGE)

    assert result.provider_message_id == "77"
    args, kwargs = post.call_args
    assert args[0] == "https://bots.example/bot123:abc/sendMessage"
    assert kwargs["json"]["chat_id"] == "1001"
    assert kwargs["json"]["parse_mode"] == "HTML"
    assert "&lt;hallway&gt;" in kwargs["json"]["text"]


@pytest.mark.asyncio
async def test_bot_api_refusal_in_body_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = BotMessagingChannel(bot_token="123:abc")
    _fake_client(
        monkeypatch,
        adapter,
        response=httpx.Response(200, json={"ok": False, "description": "chat not found"}),
    )

    result = await adapter.send("9999", MESSAGE)

    assert result.outcome is DeliveryOutcome.REJECTED
    assert "chat not found" in result.error


@pytest.mark.asyncio
async def test_business_message_uses_jid_and_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = BusinessMessagingChannel(
        base_url="https://evolution.example/", api_key="evo-key", instance_name="care watch"
    )
    post = _fake_client(
        monkeypatch, adapter, response=httpx.Response(201, json={"key": {"id": "wa-1"}})
    )

    result = await adapter.send("+55 (11) 99999-0000", MESSAGE)

    assert result.provider_message_id == "wa-1"
    args, kwargs = post.call_args
    assert args[0] == "https://evolution.example/message/sendText/care%20watch"
    assert kwargs["headers"] == {"apikey": "evo-key"}
    assert kwargs["json"]["number"] == "5511999990000@s.whatsapp.net"


def test_whatsapp_jid_requires_digits() -> None:
    assert to_whatsapp_jid("+1 555-0100") == "15550100@s.whatsapp.net"
    with pytest.raises(PermanentChannelRejection):
        to_whatsapp_jid("call me")


def test_build_channels_registers_only_configured_adapters() -> None:
    configured = Settings(
        _env_file=None,
        RESEND_API_KEY="re_test",
        TELEGRAM_BOT_TOKEN=None,
        EVOLUTION_BASE_URL="https://evolution.example",
        EVOLUTION_API_KEY="evo-key",
        EVOLUTION_INSTANCE_NAME="carewatch",
    )

    channels = build_channels(configured)

    assert [adapter.channel for adapter in channels] == [Channel.EMAIL, Channel.BUSINESS_MESSAGING]


def test_build_channels_without_credentials_is_empty() -> None:
    bare = Settings(
        _env_file=None,
        RESEND_API_KEY=None,
        TELEGRAM_BOT_TOKEN=None,
        EVOLUTION_BASE_URL=None,
        EVOLUTION_API_KEY=None,
        EVOLUTION_INSTANCE_NAME=None,
    )

    assert build_channels(bare) == []
