# ==== ELIGIBILITY EVALUATOR ==== #

"""
Discount rule eligibility evaluation.

select_rule() is a pure function over already-loaded rules and customer
context. EligibilityEvaluator loads that context from the repository and
delegates to it.
"""

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from discount_engine.business.conditions import (
    RepeatClientConditions,
    ReferralConditions,
    SeasonalConditions,
    parse_conditions,
)
from discount_engine.business.errors import NotFoundError
from discount_engine.business.models import (
    DiscountRuleSnapshot,
    LeadProfile,
    PaymentHistory,
)
from discount_engine.observability.logging import get_logger
from discount_engine.observability.metrics import discount_evaluations_total
from discount_engine.observability.tracing import get_tracer
from discount_engine.storage.repository import DiscountRepository


tracer = get_tracer(__name__)
logger = get_logger(__name__)

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    """Naive datetimes coming back from the store are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ==== PURE SELECTION ==== #


@dataclass(frozen=True)
class EligibilityContext:
    """Everything a rule predicate may look at."""

    invoice_amount: Decimal
    now: dt.datetime
    lead: Optional[LeadProfile] = None
    history: PaymentHistory = field(default_factory=PaymentHistory)

    @property
    def has_referral(self) -> bool:
        return self.lead is not None and bool(self.lead.referral_code_id)


def rule_sort_key(rule: DiscountRuleSnapshot):
    """Highest discount first; older rules, then lower ids, win ties."""
    created = _as_utc(rule.created_at) if rule.created_at else _EPOCH
    return (-Decimal(rule.discount_value), created, rule.id)


def order_rules(rules: Iterable[DiscountRuleSnapshot]) -> List[DiscountRuleSnapshot]:
    return sorted(rules, key=rule_sort_key)


def within_window(rule: DiscountRuleSnapshot, now: dt.datetime) -> bool:
    """Inclusive validity window; a missing bound is open on that side."""
    moment = _as_utc(now)
    if rule.valid_from is not None and moment < _as_utc(rule.valid_from):
        return False
    if rule.valid_until is not None and moment > _as_utc(rule.valid_until):
        return False
    return True


def is_rule_eligible(rule: DiscountRuleSnapshot, context: EligibilityContext) -> bool:
    """
    Evaluate the rule's type-specific predicate and the advisory usage limit.

    Rules with an unknown type or malformed conditions are never eligible.
    """
    if not rule.is_active or not rule.has_capacity:
        return False

    try:
        conditions = parse_conditions(rule.rule_type, rule.conditions)
    except ValueError as e:
        logger.warning(
            "Skipping rule with invalid conditions",
            rule_id=rule.id,
            rule_type=rule.rule_type,
            error=str(e)
        )
        return False

    if not conditions.meets_min_amount(context.invoice_amount):
        return False

    if isinstance(conditions, ReferralConditions):
        return context.has_referral

    if isinstance(conditions, RepeatClientConditions):
        return context.history.total_paid_invoices >= conditions.min_previous_orders

    if isinstance(conditions, SeasonalConditions):
        return within_window(rule, context.now)

    # volume and custom only gate on min_amount
    return True


def select_rule(
    rules: Iterable[DiscountRuleSnapshot],
    context: EligibilityContext,
    excluded_rule_ids: Iterable[str] = ()
) -> Optional[DiscountRuleSnapshot]:
    """First eligible rule in deterministic priority order, or None."""
    excluded = set(excluded_rule_ids)
    for rule in order_rules(rules):
        if rule.id in excluded:
            continue
        if is_rule_eligible(rule, context):
            return rule
    return None


# ==== REPOSITORY-BACKED EVALUATOR ==== #


class EligibilityEvaluator:
    """
    Selects the discount rule for an invoice.

    An explicit rule bypasses the type predicates but must belong to the
    owner, be active and still have usage capacity; otherwise the result
    is None, never an error.
    """

    def __init__(
        self,
        repository: DiscountRepository,
        clock: Callable[[], dt.datetime] = _utcnow
    ):
        self.repository = repository
        self.clock = clock

    async def evaluate(
        self,
        owner_id: str,
        lead_id: Optional[str],
        invoice_amount: Decimal,
        explicit_rule_id: Optional[str] = None,
        excluded_rule_ids: Iterable[str] = ()
    ) -> Optional[DiscountRuleSnapshot]:
        """
        Args:
            owner_id: Owner whose rules are considered
            lead_id: Lead providing referral and payment history context
            invoice_amount: Current invoice amount
            explicit_rule_id: Rule requested by the caller, if any
            excluded_rule_ids: Rules that already lost a usage race

        Returns:
            The selected rule, or None when nothing is eligible

        Raises:
            NotFoundError: lead_id given but not found for this owner
        """
        excluded = set(excluded_rule_ids)

        with tracer.start_as_current_span("evaluate_discount_eligibility") as span:
            span.set_attribute("owner", owner_id)
            span.set_attribute("explicit_rule", bool(explicit_rule_id))

            if explicit_rule_id:
                rule = await self._evaluate_explicit(owner_id, explicit_rule_id, excluded)
                outcome = "matched" if rule else "explicit_rejected"
            else:
                context = await self._load_context(owner_id, lead_id, invoice_amount)
                rules = await self.repository.list_active_rules(owner_id)
                rule = select_rule(rules, context, excluded)
                outcome = "matched" if rule else "no_match"
                span.set_attribute("candidate_rules", len(rules))

            discount_evaluations_total.labels(outcome=outcome).inc()
            span.set_attribute("outcome", outcome)
            if rule is not None:
                span.set_attribute("rule_id", rule.id)

            logger.info(
                "Discount eligibility evaluated",
                owner=owner_id,
                lead_id=lead_id,
                outcome=outcome,
                rule_id=rule.id if rule else None
            )
            return rule

    async def _evaluate_explicit(
        self,
        owner_id: str,
        rule_id: str,
        excluded: set
    ) -> Optional[DiscountRuleSnapshot]:
        if rule_id in excluded:
            return None
        rule = await self.repository.get_rule(owner_id, rule_id)
        if rule is None or not rule.is_active or not rule.has_capacity:
            return None
        return rule

    async def _load_context(
        self,
        owner_id: str,
        lead_id: Optional[str],
        invoice_amount: Decimal
    ) -> EligibilityContext:
        lead = None
        history = PaymentHistory()

        if lead_id:
            lead = await self.repository.get_lead(owner_id, lead_id)
            if lead is None:
                raise NotFoundError(
                    f"Lead {lead_id} not found",
                    details={"lead_id": lead_id}
                )
            history = await self.repository.get_payment_history(owner_id, lead.customer_email)

        return EligibilityContext(
            invoice_amount=Decimal(invoice_amount),
            now=self.clock(),
            lead=lead,
            history=history,
        )
