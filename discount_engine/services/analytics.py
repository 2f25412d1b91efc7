# ==== DISCOUNT ANALYTICS SINK ==== #

"""
Append-only analytics for applied discounts.

Writes the discount_applied event to the invoice analytics log, emits a
structured business event line and updates the Prometheus discount metrics.
"""

from typing import Any, Dict, Optional

from discount_engine.business.models import ApplicationRecord, DiscountRuleSnapshot
from discount_engine.observability.logging import log_business_event
from discount_engine.observability.metrics import discount_amount
from discount_engine.services.calculator import DiscountBreakdown
from discount_engine.storage.repository import DiscountRepository


DISCOUNT_APPLIED_EVENT = "discount_applied"


def build_discount_event_data(
    application: ApplicationRecord,
    rule: DiscountRuleSnapshot,
    breakdown: DiscountBreakdown
) -> Dict[str, Any]:
    """JSON-safe payload of a discount_applied event."""
    return {
        "application_id": application.id,
        "rule_id": rule.id,
        "rule_name": rule.name,
        "rule_type": rule.rule_type,
        "discount_type": rule.discount_type,
        "discount_value": float(rule.discount_value),
        "original_amount": float(breakdown.original_amount),
        "discount_amount": float(breakdown.discount_amount),
        "final_amount": float(breakdown.final_amount),
        "savings_percentage": float(breakdown.savings_percentage),
    }


class AnalyticsSink:
    """Records discount events for reporting."""

    def __init__(self, repository: DiscountRepository):
        self.repository = repository

    async def record_discount_applied(
        self,
        application: ApplicationRecord,
        rule: DiscountRuleSnapshot,
        breakdown: DiscountBreakdown,
        payment_provider: Optional[str] = None
    ) -> Dict[str, Any]:
        event_data = build_discount_event_data(application, rule, breakdown)

        await self.repository.record_analytics_event(
            owner_id=application.owner_id,
            invoice_id=application.invoice_id,
            event_type=DISCOUNT_APPLIED_EVENT,
            event_data=event_data,
            payment_provider=payment_provider
        )

        discount_amount.labels(rule_type=rule.rule_type).observe(float(breakdown.discount_amount))
        log_business_event(
            DISCOUNT_APPLIED_EVENT,
            application.owner_id,
            invoice_id=application.invoice_id,
            **event_data
        )
        return event_data
