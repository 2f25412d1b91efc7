"""Unit tests for payment provider adapters."""

import json
from dataclasses import replace
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import respx

from discount_engine.business.errors import ExternalServiceError
from discount_engine.business.models import ProviderSettingsSnapshot
from discount_engine.resilience.retry_policies import run_best_effort
from discount_engine.services.payment_providers import (
    ProviderSyncRequest,
    QuickBooksAdapter,
    StripeAdapter,
    XeroAdapter,
    build_payment_adapter,
)


STRIPE = "http://stripe.test/v1"
QUICKBOOKS = "http://qb.test/v3"
XERO = "http://xero.test/api.xro/2.0"

TEST_SETTINGS = SimpleNamespace(
    SIDE_EFFECT_TIMEOUT_SECONDS=1.0,
    STRIPE_API_BASE_URL=STRIPE,
    QUICKBOOKS_API_BASE_URL=QUICKBOOKS,
    XERO_API_BASE_URL=XERO,
)


@pytest.fixture
def sync_request():
    return ProviderSyncRequest(
        application_id="app-7",
        invoice_id="inv-1",
        external_invoice_id="ext-42",
        currency="GBP",
        original_amount=Decimal("5000.00"),
        discount_amount=Decimal("500.00"),
        final_amount=Decimal("4500.00"),
        description="Discount: Referral Discount",
    )


@pytest.mark.unit
class TestStripeAdapter:

    @respx.mock
    @pytest.mark.asyncio
    async def test_adds_negative_invoice_item(self, sync_request):
        route = respx.post(f"{STRIPE}/invoiceitems").mock(
            return_value=httpx.Response(200, json={"id": "ii_1"})
        )

        await StripeAdapter("sk_test", STRIPE).reflect_discount(sync_request)

        assert route.called
        sent = route.calls.last.request
        body = sent.content.decode()
        assert "amount=-50000" in body
        assert "invoice=ext-42" in body
        assert "currency=gbp" in body
        assert sent.headers["Authorization"] == "Bearer sk_test"
        assert sent.headers["Idempotency-Key"] == "discount-app-7"

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_after_timeout_reuses_idempotency_key(self, sync_request, fast_retry_policy):
        route = respx.post(f"{STRIPE}/invoiceitems").mock(side_effect=[
            httpx.ReadTimeout("response lost"),
            httpx.Response(200, json={"id": "ii_1"}),
        ])
        adapter = StripeAdapter("sk_test", STRIPE)

        result = await run_best_effort(
            lambda: adapter.reflect_discount(sync_request), fast_retry_policy, "stripe_sync"
        )

        assert result.ok
        assert result.attempts == 2
        keys = {call.request.headers["Idempotency-Key"] for call in route.calls}
        assert len(route.calls) == 2
        assert keys == {"discount-app-7"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, sync_request):
        respx.post(f"{STRIPE}/invoiceitems").mock(return_value=httpx.Response(503))

        with pytest.raises(ExternalServiceError) as exc_info:
            await StripeAdapter("sk_test", STRIPE).reflect_discount(sync_request)

        assert exc_info.value.retryable
        assert exc_info.value.upstream_status == 503

    @respx.mock
    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, sync_request):
        respx.post(f"{STRIPE}/invoiceitems").mock(
            return_value=httpx.Response(400, json={"error": {"message": "invoice finalized"}})
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await StripeAdapter("sk_test", STRIPE).reflect_discount(sync_request)

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_missing_external_invoice_id(self, sync_request):
        request = replace(sync_request, external_invoice_id=None)

        with pytest.raises(ExternalServiceError) as exc_info:
            await StripeAdapter("sk_test", STRIPE).reflect_discount(request)

        assert not exc_info.value.retryable


@pytest.mark.unit
class TestQuickBooksAdapter:

    @respx.mock
    @pytest.mark.asyncio
    async def test_sparse_update_appends_discount_line(self, sync_request):
        respx.get(f"{QUICKBOOKS}/company/realm-1/invoice/ext-42").mock(
            return_value=httpx.Response(200, json={
                "Invoice": {
                    "Id": "ext-42",
                    "SyncToken": "3",
                    "Line": [
                        {"DetailType": "SalesItemLineDetail", "Amount": 5000},
                        {"DetailType": "SubTotalLineDetail", "Amount": 5000},
                    ],
                }
            })
        )
        update = respx.post(f"{QUICKBOOKS}/company/realm-1/invoice").mock(
            return_value=httpx.Response(200, json={"Invoice": {"Id": "ext-42"}})
        )

        await QuickBooksAdapter("token", "realm-1", QUICKBOOKS).reflect_discount(sync_request)

        payload = json.loads(update.calls.last.request.content)
        assert payload["SyncToken"] == "3"
        assert payload["sparse"] is True
        assert [line["DetailType"] for line in payload["Line"]] == [
            "SalesItemLineDetail",
            "DiscountLineDetail",
        ]
        assert payload["Line"][-1]["Amount"] == 500.0
        assert payload["Line"][-1]["Description"] == "Discount: Referral Discount [discount-app-7]"

    @respx.mock
    @pytest.mark.asyncio
    async def test_existing_discount_line_not_added_again(self, sync_request):
        respx.get(f"{QUICKBOOKS}/company/realm-1/invoice/ext-42").mock(
            return_value=httpx.Response(200, json={
                "Invoice": {
                    "Id": "ext-42",
                    "SyncToken": "4",
                    "Line": [
                        {"DetailType": "SalesItemLineDetail", "Amount": 5000},
                        {
                            "DetailType": "DiscountLineDetail",
                            "Amount": 500,
                            "Description": "Discount: Referral Discount [discount-app-7]",
                        },
                    ],
                }
            })
        )
        update = respx.post(f"{QUICKBOOKS}/company/realm-1/invoice").mock(
            return_value=httpx.Response(200, json={"Invoice": {"Id": "ext-42"}})
        )

        await QuickBooksAdapter("token", "realm-1", QUICKBOOKS).reflect_discount(sync_request)

        assert not update.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_after_lost_update_adds_single_line(self, sync_request, fast_retry_policy):
        sales_line = {"DetailType": "SalesItemLineDetail", "Amount": 5000}
        discount_line = {
            "DetailType": "DiscountLineDetail",
            "Amount": 500,
            "Description": "Discount: Referral Discount [discount-app-7]",
        }
        fetch = respx.get(f"{QUICKBOOKS}/company/realm-1/invoice/ext-42").mock(side_effect=[
            httpx.Response(200, json={"Invoice": {"SyncToken": "3", "Line": [sales_line]}}),
            httpx.Response(200, json={"Invoice": {"SyncToken": "4", "Line": [sales_line, discount_line]}}),
        ])
        update = respx.post(f"{QUICKBOOKS}/company/realm-1/invoice").mock(
            side_effect=httpx.ReadTimeout("response lost")
        )
        adapter = QuickBooksAdapter("token", "realm-1", QUICKBOOKS)

        result = await run_best_effort(
            lambda: adapter.reflect_discount(sync_request), fast_retry_policy, "quickbooks_sync"
        )

        assert result.ok
        assert fetch.call_count == 2
        assert update.call_count == 1


@pytest.mark.unit
class TestXeroAdapter:

    @respx.mock
    @pytest.mark.asyncio
    async def test_appends_negative_line_item(self, sync_request):
        respx.get(f"{XERO}/Invoices/ext-42").mock(
            return_value=httpx.Response(200, json={
                "Invoices": [{"InvoiceID": "ext-42", "LineItems": [{"Description": "Work", "UnitAmount": 5000}]}]
            })
        )
        update = respx.post(f"{XERO}/Invoices/ext-42").mock(
            return_value=httpx.Response(200, json={"Invoices": []})
        )

        await XeroAdapter("token", "tenant-9", XERO).reflect_discount(sync_request)

        sent = update.calls.last.request
        payload = json.loads(sent.content)
        assert sent.headers["xero-tenant-id"] == "tenant-9"
        assert payload["Invoices"][0]["LineItems"][-1]["UnitAmount"] == -500.0

    @respx.mock
    @pytest.mark.asyncio
    async def test_existing_discount_line_not_added_again(self, sync_request):
        respx.get(f"{XERO}/Invoices/ext-42").mock(
            return_value=httpx.Response(200, json={
                "Invoices": [{"InvoiceID": "ext-42", "LineItems": [
                    {"Description": "Work", "UnitAmount": 5000},
                    {"Description": "Discount: Referral Discount [discount-app-7]", "UnitAmount": -500},
                ]}]
            })
        )
        update = respx.post(f"{XERO}/Invoices/ext-42").mock(
            return_value=httpx.Response(200, json={"Invoices": []})
        )

        await XeroAdapter("token", "tenant-9", XERO).reflect_discount(sync_request)

        assert not update.called


@pytest.mark.unit
class TestAdapterResolution:

    def test_no_settings_means_no_adapter(self):
        assert build_payment_adapter(None, TEST_SETTINGS) is None

    def test_stripe(self):
        row = ProviderSettingsSnapshot("owner-1", "stripe", {"api_key": "sk"})
        assert isinstance(build_payment_adapter(row, TEST_SETTINGS), StripeAdapter)

    def test_quickbooks_requires_realm(self):
        complete = ProviderSettingsSnapshot("owner-1", "quickbooks", {"access_token": "t", "realm_id": "r"})
        partial = ProviderSettingsSnapshot("owner-1", "quickbooks", {"access_token": "t"})
        assert isinstance(build_payment_adapter(complete, TEST_SETTINGS), QuickBooksAdapter)
        assert build_payment_adapter(partial, TEST_SETTINGS) is None

    def test_xero(self):
        row = ProviderSettingsSnapshot("owner-1", "xero", {"access_token": "t", "xero_tenant_id": "x"})
        assert isinstance(build_payment_adapter(row, TEST_SETTINGS), XeroAdapter)

    def test_unknown_provider(self):
        row = ProviderSettingsSnapshot("owner-1", "paypal", {"api_key": "k"})
        assert build_payment_adapter(row, TEST_SETTINGS) is None
