"""Unit tests for discount notifications."""

import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import respx

from discount_engine.business.errors import ExternalServiceError
from discount_engine.business.models import ClientInfo, NotificationChannel
from discount_engine.services.calculator import build_breakdown
from discount_engine.services.notifications import (
    ResendEmailTransport,
    RespondIoWhatsAppTransport,
    build_notification_dispatcher,
    format_discount_message,
)
from factories.data_factories import make_rule


RESEND_URL = "http://resend.test/emails"
RESPOND_URL = "http://respond.test/v2/contact/message"


@pytest.mark.unit
class TestMessageFormatting:

    def test_percentage_message(self):
        rule = make_rule("referral", discount_value="10", name="Referral Discount")
        breakdown = build_breakdown(Decimal("5000"), rule)

        message = format_discount_message(rule, breakdown, "GBP")

        assert "10% discount (Referral Discount)" in message
        assert "new total is £4500.00" in message
        assert "saved £500.00" in message

    def test_fixed_amount_message(self):
        rule = make_rule("custom", discount_type="fixed_amount", discount_value="25", name="Welcome")
        breakdown = build_breakdown(Decimal("100"), rule)

        message = format_discount_message(rule, breakdown, "USD")

        assert "$25.00 discount (Welcome)" in message
        assert "new total is $75.00" in message

    def test_unknown_currency_uses_code(self):
        rule = make_rule(discount_value="50")
        breakdown = build_breakdown(Decimal("10"), rule)

        assert "5.00 CHF" in format_discount_message(rule, breakdown, "CHF")


@pytest.mark.unit
class TestTransports:

    @respx.mock
    @pytest.mark.asyncio
    async def test_resend_email_payload(self):
        route = respx.post(RESEND_URL).mock(return_value=httpx.Response(200, json={"id": "em_1"}))
        transport = ResendEmailTransport(RESEND_URL, "re_key", "Shop <noreply@shop.test>")

        await transport.send("jane@example.com", "Jane", "Subject", "Hello <world>")

        request = route.calls.last.request
        payload = json.loads(request.content)
        assert request.headers["Authorization"] == "Bearer re_key"
        assert payload["to"] == ["jane@example.com"]
        assert payload["from"] == "Shop <noreply@shop.test>"
        assert "Congratulations Jane!" in payload["html"]
        assert "Hello &lt;world&gt;" in payload["html"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_respond_io_payload(self):
        route = respx.post(RESPOND_URL).mock(return_value=httpx.Response(200, json={}))
        transport = RespondIoWhatsAppTransport(RESPOND_URL, "rio_key", "chan-1")

        await transport.send("+447700900123", "Jane", "Subject", "Hello")

        payload = json.loads(route.calls.last.request.content)
        assert payload == {
            "message": {"type": "text", "text": "Hello"},
            "channelId": "chan-1",
            "contact": {"phoneNumber": "+447700900123"},
        }

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        respx.post(RESEND_URL).mock(return_value=httpx.Response(429))
        transport = ResendEmailTransport(RESEND_URL, "re_key", "noreply@shop.test")

        with pytest.raises(ExternalServiceError) as exc_info:
            await transport.send("jane@example.com", "Jane", "Subject", "Hello")

        assert exc_info.value.retryable


@pytest.mark.unit
class TestDispatcher:

    @pytest.mark.asyncio
    async def test_both_channels_delivered(self, dispatcher, email_transport, whatsapp_transport):
        client = ClientInfo(name="Jane", email="jane@example.com", phone="+447700900123")

        report = await dispatcher.dispatch(client, NotificationChannel.BOTH, "msg")

        assert report.sent
        assert report.delivered == ["email", "whatsapp"]
        email_transport.send_mock.assert_awaited_once()
        whatsapp_transport.send_mock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_channel_without_contact_skipped(self, dispatcher, whatsapp_transport):
        client = ClientInfo(name="Jane", email="jane@example.com")

        report = await dispatcher.dispatch(client, NotificationChannel.BOTH, "msg")

        assert report.sent
        assert report.skipped == ["whatsapp"]
        whatsapp_transport.send_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_attempted_is_not_sent(self, dispatcher):
        client = ClientInfo(name="Jane", phone="+447700900123")

        report = await dispatcher.dispatch(client, NotificationChannel.EMAIL, "msg")

        assert not report.sent
        assert report.attempted == []

    @pytest.mark.asyncio
    async def test_partial_failure_is_not_sent(self, dispatcher, whatsapp_transport):
        whatsapp_transport.send_mock.side_effect = ExternalServiceError(
            "rejected", service="respond_io", retryable=False
        )
        client = ClientInfo(name="Jane", email="jane@example.com", phone="+447700900123")

        report = await dispatcher.dispatch(client, NotificationChannel.BOTH, "msg")

        assert not report.sent
        assert report.delivered == ["email"]
        assert report.failed == {"whatsapp": "ExternalServiceError"}
        assert whatsapp_transport.send_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, dispatcher, email_transport):
        email_transport.send_mock.side_effect = [httpx.ConnectError("refused"), None]
        client = ClientInfo(name="Jane", email="jane@example.com")

        report = await dispatcher.dispatch(client, NotificationChannel.EMAIL, "msg")

        assert report.sent
        assert email_transport.send_mock.await_count == 2

    @pytest.mark.asyncio
    async def test_unconfigured_transport_fails(self, fast_retry_policy):
        settings = SimpleNamespace(
            SIDE_EFFECT_TIMEOUT_SECONDS=1.0,
            RESEND_API_KEY=None,
            RESPOND_IO_API_KEY=None,
        )
        dispatcher = build_notification_dispatcher(fast_retry_policy, settings)
        client = ClientInfo(name="Jane", email="jane@example.com")

        report = await dispatcher.dispatch(client, NotificationChannel.EMAIL, "msg")

        assert not report.sent
        assert report.failed == {"email": "transport not configured"}
