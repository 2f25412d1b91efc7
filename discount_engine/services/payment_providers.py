# ==== PAYMENT PROVIDER ADAPTERS ==== #

"""
Payment provider adapters that reflect an applied discount upstream.

Each adapter talks to one provider's REST API over httpx. Failures are
raised as ExternalServiceError (with a retryable flag derived from the
HTTP status) or as raw httpx transport errors; the retry layer decides
what is worth another attempt.

A retried sync must not discount the invoice twice. Stripe deduplicates
through the Idempotency-Key header; for QuickBooks and Xero the discount
line carries the application reference and is not added again when the
fetched invoice already holds it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from discount_engine.business.errors import ExternalServiceError
from discount_engine.business.models import ProviderSettingsSnapshot, ProviderType
from discount_engine.observability.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderSyncRequest:
    """What the provider needs to know about an applied discount."""

    application_id: str
    invoice_id: str
    external_invoice_id: Optional[str]
    currency: str
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    description: str

    @property
    def reference(self) -> str:
        """Stable per-application key, identical across retries."""
        return f"discount-{self.application_id}"

    @property
    def line_description(self) -> str:
        return f"{self.description} [{self.reference}]"


def _check_response(service: str, response: httpx.Response) -> None:
    if response.status_code >= 400:
        raise ExternalServiceError.from_status(service, response.status_code, response.text)


def _require_external_id(service: str, request: ProviderSyncRequest) -> str:
    if not request.external_invoice_id:
        raise ExternalServiceError(
            f"Invoice {request.invoice_id} has no {service} invoice id",
            service=service,
            retryable=False
        )
    return request.external_invoice_id


def _has_discount_line(lines: List[Dict[str, Any]], request: ProviderSyncRequest) -> bool:
    return any(request.reference in (line.get("Description") or "") for line in lines)


class PaymentProviderAdapter(ABC):
    """Reflects a discounted invoice amount in an external payment provider."""

    provider_type: ProviderType

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @abstractmethod
    async def reflect_discount(self, request: ProviderSyncRequest) -> None:
        """Push the discount to the provider; raise on failure."""


class StripeAdapter(PaymentProviderAdapter):
    """Adds a negative invoice item to the Stripe invoice."""

    provider_type = ProviderType.STRIPE

    def __init__(self, api_key: str, base_url: str, timeout: float = 10.0):
        super().__init__(base_url, timeout)
        self.api_key = api_key

    async def reflect_discount(self, request: ProviderSyncRequest) -> None:
        external_id = _require_external_id("stripe", request)
        cents = int((request.discount_amount * 100).to_integral_value(rounding=ROUND_HALF_UP))

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/invoiceitems",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Idempotency-Key": request.reference,
                },
                data={
                    "invoice": external_id,
                    "amount": str(-cents),
                    "currency": request.currency.lower(),
                    "description": request.description,
                },
            )
        _check_response("stripe", response)


class QuickBooksAdapter(PaymentProviderAdapter):
    """Appends a discount line to the QuickBooks invoice via sparse update."""

    provider_type = ProviderType.QUICKBOOKS

    def __init__(self, access_token: str, realm_id: str, base_url: str, timeout: float = 10.0):
        super().__init__(base_url, timeout)
        self.access_token = access_token
        self.realm_id = realm_id

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def reflect_discount(self, request: ProviderSyncRequest) -> None:
        external_id = _require_external_id("quickbooks", request)
        invoice_url = f"{self.base_url}/company/{self.realm_id}/invoice"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            current = await client.get(f"{invoice_url}/{external_id}", headers=self._headers())
            _check_response("quickbooks", current)
            invoice = current.json().get("Invoice", {})

            lines: List[Dict[str, Any]] = [
                line for line in invoice.get("Line", [])
                if line.get("DetailType") != "SubTotalLineDetail"
            ]
            if _has_discount_line(lines, request):
                logger.info(
                    "Discount line already present, skipping update",
                    provider="quickbooks",
                    invoice_id=request.invoice_id
                )
                return

            lines.append({
                "DetailType": "DiscountLineDetail",
                "Amount": float(request.discount_amount),
                "Description": request.line_description,
                "DiscountLineDetail": {"PercentBased": False},
            })

            response = await client.post(
                invoice_url,
                headers=self._headers(),
                json={
                    "Id": external_id,
                    "SyncToken": invoice.get("SyncToken", "0"),
                    "sparse": True,
                    "Line": lines,
                },
            )
        _check_response("quickbooks", response)


class XeroAdapter(PaymentProviderAdapter):
    """Appends a negative line item to the Xero invoice."""

    provider_type = ProviderType.XERO

    def __init__(self, access_token: str, tenant_id: str, base_url: str, timeout: float = 10.0):
        super().__init__(base_url, timeout)
        self.access_token = access_token
        self.tenant_id = tenant_id

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "xero-tenant-id": self.tenant_id,
            "Accept": "application/json",
        }

    async def reflect_discount(self, request: ProviderSyncRequest) -> None:
        external_id = _require_external_id("xero", request)
        invoice_url = f"{self.base_url}/Invoices/{external_id}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            current = await client.get(invoice_url, headers=self._headers())
            _check_response("xero", current)
            invoices = current.json().get("Invoices") or [{}]
            line_items = list(invoices[0].get("LineItems", []))
            if _has_discount_line(line_items, request):
                logger.info(
                    "Discount line already present, skipping update",
                    provider="xero",
                    invoice_id=request.invoice_id
                )
                return

            line_items.append({
                "Description": request.line_description,
                "Quantity": 1,
                "UnitAmount": float(-request.discount_amount),
            })

            response = await client.post(
                invoice_url,
                headers=self._headers(),
                json={"Invoices": [{"InvoiceID": external_id, "LineItems": line_items}]},
            )
        _check_response("xero", response)


# ==== ADAPTER RESOLUTION ==== #


def build_payment_adapter(
    provider_settings: Optional[ProviderSettingsSnapshot],
    settings=None
) -> Optional[PaymentProviderAdapter]:
    """
    Build the adapter for an owner's active provider configuration.

    Returns None when no provider is configured or its credentials are
    incomplete; the caller reports providerUpdated=false without retrying.
    """
    if provider_settings is None:
        return None

    if settings is None:
        from discount_engine.settings import settings

    credentials = provider_settings.credentials or {}
    timeout = settings.SIDE_EFFECT_TIMEOUT_SECONDS
    provider = provider_settings.provider_type

    if provider == ProviderType.STRIPE.value:
        api_key = credentials.get("api_key") or credentials.get("secret_key")
        if api_key:
            return StripeAdapter(api_key, settings.STRIPE_API_BASE_URL, timeout)

    elif provider == ProviderType.QUICKBOOKS.value:
        token, realm_id = credentials.get("access_token"), credentials.get("realm_id")
        if token and realm_id:
            return QuickBooksAdapter(token, realm_id, settings.QUICKBOOKS_API_BASE_URL, timeout)

    elif provider == ProviderType.XERO.value:
        token, tenant_id = credentials.get("access_token"), credentials.get("xero_tenant_id")
        if token and tenant_id:
            return XeroAdapter(token, tenant_id, settings.XERO_API_BASE_URL, timeout)

    logger.warning(
        "Payment provider not usable, skipping sync",
        owner=provider_settings.owner_id,
        provider=provider
    )
    return None
