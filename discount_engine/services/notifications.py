# ==== NOTIFICATION DISPATCHER ==== #

"""
Client notification for applied discounts.

Email goes through the Resend API and WhatsApp through respond.io, both
over httpx. The dispatcher retries each channel independently and reports
per-channel results; it never raises into the apply workflow.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from html import escape
from typing import Dict, List, Mapping, Optional

import httpx

from discount_engine.business.errors import ExternalServiceError
from discount_engine.business.models import ClientInfo, DiscountRuleSnapshot, DiscountType, NotificationChannel
from discount_engine.observability.logging import get_logger
from discount_engine.resilience.retry_policies import RetryPolicy, run_best_effort
from discount_engine.services.calculator import DiscountBreakdown


logger = get_logger(__name__)

DISCOUNT_EMAIL_SUBJECT = "🎉 Discount Applied to Your Invoice!"

_CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€"}


# ==== MESSAGE FORMATTING ==== #


def format_money(amount: Decimal, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get((currency or "").upper())
    if symbol:
        return f"{symbol}{amount:.2f}"
    return f"{amount:.2f} {currency}"


def format_discount_message(
    rule: DiscountRuleSnapshot,
    breakdown: DiscountBreakdown,
    currency: str = "GBP"
) -> str:
    if rule.discount_type == DiscountType.PERCENTAGE.value:
        value = f"{Decimal(rule.discount_value).normalize():f}%"
    else:
        value = format_money(Decimal(rule.discount_value), currency)

    return (
        f"🎉 Great news! You qualify for a {value} discount ({rule.name})! "
        f"Your new total is {format_money(breakdown.final_amount, currency)} "
        f"(saved {format_money(breakdown.discount_amount, currency)})."
    )


def render_email_html(client_name: str, message: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #2563eb;">Congratulations {escape(client_name)}!</h2>'
        f'<p style="font-size: 16px; line-height: 1.5;">{escape(message)}</p>'
        '<p style="color: #6b7280;">Your updated invoice reflects this discount.</p>'
        '</div>'
    )


# ==== TRANSPORTS ==== #


class NotificationTransport(ABC):
    """Delivers one message to one address on one channel."""

    channel: NotificationChannel

    def __init__(self, api_url: str, api_key: str, timeout: float = 10.0):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    @abstractmethod
    async def send(self, address: str, client_name: str, subject: str, message: str) -> None:
        """Deliver the message; raise on failure."""

    def _check_response(self, service: str, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ExternalServiceError.from_status(service, response.status_code, response.text)


class ResendEmailTransport(NotificationTransport):
    channel = NotificationChannel.EMAIL

    def __init__(self, api_url: str, api_key: str, from_email: str, timeout: float = 10.0):
        super().__init__(api_url, api_key, timeout)
        self.from_email = from_email

    async def send(self, address: str, client_name: str, subject: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_email,
                    "to": [address],
                    "subject": subject,
                    "html": render_email_html(client_name, message),
                },
            )
        self._check_response("resend", response)


class RespondIoWhatsAppTransport(NotificationTransport):
    channel = NotificationChannel.WHATSAPP

    def __init__(self, api_url: str, api_key: str, channel_id: Optional[str], timeout: float = 10.0):
        super().__init__(api_url, api_key, timeout)
        self.channel_id = channel_id

    async def send(self, address: str, client_name: str, subject: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "message": {"type": "text", "text": message},
                    "channelId": self.channel_id,
                    "contact": {"phoneNumber": address},
                },
            )
        self._check_response("respond_io", response)


# ==== DISPATCHER ==== #


@dataclass
class DispatchReport:
    """Per-channel delivery results for one notification."""

    attempted: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def sent(self) -> bool:
        """True only when something was attempted and every attempt delivered."""
        return bool(self.attempted) and not self.failed


class NotificationDispatcher:
    """Sends a discount notification on the requested channel(s)."""

    def __init__(
        self,
        transports: Mapping[NotificationChannel, NotificationTransport],
        retry_policy: RetryPolicy
    ):
        self.transports = dict(transports)
        self.retry_policy = retry_policy

    async def dispatch(
        self,
        client_info: ClientInfo,
        channel: NotificationChannel,
        message: str,
        subject: str = DISCOUNT_EMAIL_SUBJECT
    ) -> DispatchReport:
        report = DispatchReport()

        for target in channel.expand():
            address = client_info.address_for(target)
            if not address:
                report.skipped.append(target.value)
                continue

            report.attempted.append(target.value)
            transport = self.transports.get(target)
            if transport is None:
                report.failed[target.value] = "transport not configured"
                logger.warning("Notification transport not configured", channel=target.value)
                continue

            result = await run_best_effort(
                lambda: transport.send(address, client_info.name, subject, message),
                self.retry_policy,
                operation_name=f"notify_{target.value}"
            )
            if result.ok:
                report.delivered.append(target.value)
            else:
                report.failed[target.value] = result.error_type or "unknown"

        return report


def build_notification_dispatcher(retry_policy: RetryPolicy, settings=None) -> NotificationDispatcher:
    """Dispatcher with the transports whose API keys are configured."""
    if settings is None:
        from discount_engine.settings import settings

    timeout = settings.SIDE_EFFECT_TIMEOUT_SECONDS
    transports: Dict[NotificationChannel, NotificationTransport] = {}

    if settings.RESEND_API_KEY:
        transports[NotificationChannel.EMAIL] = ResendEmailTransport(
            settings.RESEND_API_URL,
            settings.RESEND_API_KEY,
            settings.NOTIFICATION_FROM_EMAIL,
            timeout
        )
    if settings.RESPOND_IO_API_KEY:
        transports[NotificationChannel.WHATSAPP] = RespondIoWhatsAppTransport(
            settings.RESPOND_IO_API_URL,
            settings.RESPOND_IO_API_KEY,
            settings.RESPOND_IO_CHANNEL_ID,
            timeout
        )

    return NotificationDispatcher(transports, retry_policy)
