# ==== DISCOUNT APPLICATION COORDINATOR ==== #

"""
Apply workflow for invoice discounts.

Steps 1-4 (idempotency gate, evaluation, calculation, core transaction)
are all-or-nothing and propagate their errors. Steps 5-7 (payment provider
sync, client notification, analytics) run concurrently after the commit,
each under the side-effect retry policy, and only ever report boolean
outcomes.
"""

import asyncio
import datetime as dt
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Tuple

from discount_engine.business.errors import AlreadyAppliedError, NotFoundError
from discount_engine.business.models import (
    ApplicationDraft,
    ApplicationRecord,
    ClientInfo,
    DiscountRuleSnapshot,
    InvoiceSnapshot,
    NotificationChannel,
    NotificationStatus,
    ProviderSettingsSnapshot,
    ProviderSyncStatus,
)
from discount_engine.observability.logging import get_logger
from discount_engine.observability.metrics import (
    discount_applications_total,
    discount_apply_duration_seconds,
    discount_side_effect_failures_total,
    discount_usage_conflicts_total,
)
from discount_engine.observability.tracing import get_tracer
from discount_engine.resilience.retry_policies import (
    RetryPolicy,
    StepResult,
    create_side_effect_retry_policy,
    run_best_effort,
)
from discount_engine.services.analytics import AnalyticsSink
from discount_engine.services.calculator import DiscountBreakdown, build_breakdown
from discount_engine.services.eligibility import EligibilityEvaluator
from discount_engine.services.notifications import (
    NotificationDispatcher,
    build_notification_dispatcher,
    format_discount_message,
)
from discount_engine.services.payment_providers import (
    PaymentProviderAdapter,
    ProviderSyncRequest,
    build_payment_adapter,
)
from discount_engine.storage.repository import DiscountRepository


tracer = get_tracer(__name__)
logger = get_logger(__name__)

NO_ELIGIBLE_RULE = "no eligible rule"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ==== COMMAND AND OUTCOME ==== #


@dataclass(frozen=True)
class ApplyDiscountCommand:
    invoice_id: str
    owner_id: str
    lead_id: Optional[str] = None
    rule_id: Optional[str] = None
    client_info: Optional[ClientInfo] = None
    notification_channel: NotificationChannel = NotificationChannel.EMAIL


@dataclass(frozen=True)
class RuleSummary:
    name: str
    type: str
    value: Decimal


@dataclass(frozen=True)
class ApplicationOutcome:
    """Result of one apply() call; applied=False carries the reason."""

    applied: bool
    reason: Optional[str] = None
    application_id: Optional[str] = None
    original_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    rule: Optional[RuleSummary] = None
    provider_updated: bool = False
    notification_sent: bool = False

    @property
    def savings(self) -> Optional[Decimal]:
        return self.discount_amount

    @classmethod
    def no_eligible_rule(cls) -> "ApplicationOutcome":
        return cls(applied=False, reason=NO_ELIGIBLE_RULE)


# ==== COORDINATOR ==== #


class DiscountApplicationCoordinator:
    """
    Orchestrates a single discount application end to end.

    Correctness under concurrency rests entirely on the repository: the
    unique invoice_id of an application and the conditional usage_count
    increment. The coordinator holds no locks and no shared state.
    """

    def __init__(
        self,
        repository: DiscountRepository,
        evaluator: Optional[EligibilityEvaluator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        analytics: Optional[AnalyticsSink] = None,
        provider_resolver: Callable[
            [Optional[ProviderSettingsSnapshot]], Optional[PaymentProviderAdapter]
        ] = build_payment_adapter,
        retry_policy: Optional[RetryPolicy] = None,
        max_reevaluations: int = 3
    ):
        self.repository = repository
        self.retry_policy = retry_policy or create_side_effect_retry_policy()
        self.evaluator = evaluator or EligibilityEvaluator(repository)
        self.dispatcher = dispatcher or build_notification_dispatcher(self.retry_policy)
        self.analytics = analytics or AnalyticsSink(repository)
        self.provider_resolver = provider_resolver
        self.max_reevaluations = max_reevaluations

    async def apply(self, command: ApplyDiscountCommand) -> ApplicationOutcome:
        """
        Apply the best eligible discount to an invoice exactly once.

        Raises:
            NotFoundError: invoice (or requested lead) missing for the owner
            AlreadyAppliedError: the invoice already carries a discount
            PersistenceError: the core transaction failed and was rolled back
        """
        started = time.perf_counter()
        outcome_label = "error"
        rule_type = "none"

        with tracer.start_as_current_span("apply_discount") as span:
            span.set_attribute("owner", command.owner_id)
            span.set_attribute("invoice_id", command.invoice_id)

            try:
                invoice = await self._idempotency_gate(command)

                committed = await self._commit_with_reevaluation(command, invoice)
                if committed is None:
                    outcome_label = "no_eligible_rule"
                    logger.info(
                        "No eligible discount rule",
                        owner=command.owner_id,
                        invoice_id=invoice.id
                    )
                    return ApplicationOutcome.no_eligible_rule()

                application, rule, breakdown = committed
                rule_type = rule.rule_type
                span.set_attribute("rule_id", rule.id)
                span.set_attribute("application_id", application.id)

                lookup = await self._resolve_provider(invoice.owner_id)
                provider_updated, notification_sent, _ = await asyncio.gather(
                    self._sync_provider(lookup, invoice, application, rule, breakdown),
                    self._notify(command, invoice, application, rule, breakdown),
                    self._record_analytics(application, rule, breakdown, lookup.value),
                )

                outcome_label = "applied"
                span.set_attribute("provider_updated", provider_updated)
                span.set_attribute("notification_sent", notification_sent)

                return ApplicationOutcome(
                    applied=True,
                    application_id=application.id,
                    original_amount=breakdown.original_amount,
                    discount_amount=breakdown.discount_amount,
                    final_amount=breakdown.final_amount,
                    rule=RuleSummary(
                        name=rule.name,
                        type=rule.rule_type,
                        value=Decimal(rule.discount_value)
                    ),
                    provider_updated=provider_updated,
                    notification_sent=notification_sent,
                )

            except AlreadyAppliedError:
                outcome_label = "already_applied"
                raise

            except NotFoundError:
                outcome_label = "not_found"
                raise

            finally:
                discount_applications_total.labels(
                    outcome=outcome_label,
                    rule_type=rule_type
                ).inc()
                discount_apply_duration_seconds.labels(
                    outcome=outcome_label
                ).observe(time.perf_counter() - started)
                span.set_attribute("outcome", outcome_label)

    # ==== CORE STEPS ==== #

    async def _idempotency_gate(self, command: ApplyDiscountCommand) -> InvoiceSnapshot:
        invoice = await self.repository.get_invoice(command.owner_id, command.invoice_id)
        if invoice is None:
            raise NotFoundError(
                f"Invoice {command.invoice_id} not found",
                details={"invoice_id": command.invoice_id}
            )

        existing = await self.repository.get_application_for_invoice(invoice.id)
        if existing is not None:
            raise AlreadyAppliedError(
                f"Discount already applied to invoice {invoice.id}",
                details={"invoice_id": invoice.id, "application_id": existing.id}
            )
        return invoice

    async def _commit_with_reevaluation(
        self,
        command: ApplyDiscountCommand,
        invoice: InvoiceSnapshot
    ) -> Optional[Tuple[ApplicationRecord, DiscountRuleSnapshot, DiscountBreakdown]]:
        """
        Evaluate, calculate and commit; on a lost usage race exclude the
        rule and evaluate again, up to max_reevaluations times.
        """
        lead_id = command.lead_id or invoice.lead_id
        excluded = set()

        for _ in range(self.max_reevaluations + 1):
            rule = await self.evaluator.evaluate(
                command.owner_id,
                lead_id,
                invoice.amount,
                explicit_rule_id=command.rule_id,
                excluded_rule_ids=excluded
            )
            if rule is None:
                return None

            breakdown = build_breakdown(invoice.amount, rule)
            draft = ApplicationDraft(
                owner_id=command.owner_id,
                invoice_id=invoice.id,
                rule_id=rule.id,
                original_amount=breakdown.original_amount,
                discount_amount=breakdown.discount_amount,
                final_amount=breakdown.final_amount,
                notification_channel=command.notification_channel,
            )

            with tracer.start_as_current_span("commit_discount_application") as span:
                span.set_attribute("rule_id", rule.id)
                result = await self.repository.commit_application(draft)
                span.set_attribute("status", result.status.value)

            if result.committed:
                logger.info(
                    "Discount application committed",
                    owner=command.owner_id,
                    invoice_id=invoice.id,
                    rule_id=rule.id,
                    application_id=result.application.id,
                    original_amount=str(breakdown.original_amount),
                    discount_amount=str(breakdown.discount_amount),
                    final_amount=str(breakdown.final_amount)
                )
                return result.application, rule, breakdown

            discount_usage_conflicts_total.labels(rule_type=rule.rule_type).inc()
            logger.warning(
                "Rule usage limit reached concurrently, re-evaluating",
                owner=command.owner_id,
                invoice_id=invoice.id,
                rule_id=rule.id
            )
            excluded.add(rule.id)

        logger.warning(
            "Re-evaluation limit reached",
            owner=command.owner_id,
            invoice_id=invoice.id,
            excluded_rules=sorted(excluded)
        )
        return None

    # ==== BEST-EFFORT STEPS ==== #

    def _record_failure(self, step: str, result: StepResult) -> None:
        discount_side_effect_failures_total.labels(
            step=step,
            error_type=result.error_type or "unknown"
        ).inc()

    async def _resolve_provider(self, owner_id: str) -> StepResult:
        """Load the owner's active provider settings and build its adapter once."""
        async def _lookup():
            settings_row = await self.repository.get_active_provider_settings(owner_id)
            return self.provider_resolver(settings_row)

        lookup = await run_best_effort(_lookup, self.retry_policy, "load_provider_settings")
        if not lookup.ok:
            self._record_failure("provider_sync", lookup)
        return lookup

    async def _sync_provider(
        self,
        lookup: StepResult,
        invoice: InvoiceSnapshot,
        application: ApplicationRecord,
        rule: DiscountRuleSnapshot,
        breakdown: DiscountBreakdown
    ) -> bool:
        with tracer.start_as_current_span("sync_payment_provider") as span:
            adapter = lookup.value
            if adapter is None:
                span.set_attribute("provider", "none")
                return False

            span.set_attribute("provider", adapter.provider_type.value)
            request = ProviderSyncRequest(
                application_id=application.id,
                invoice_id=invoice.id,
                external_invoice_id=invoice.external_invoice_id,
                currency=invoice.currency,
                original_amount=breakdown.original_amount,
                discount_amount=breakdown.discount_amount,
                final_amount=breakdown.final_amount,
                description=f"Discount: {rule.name}",
            )
            result = await run_best_effort(
                lambda: adapter.reflect_discount(request),
                self.retry_policy,
                operation_name=f"{adapter.provider_type.value}_sync"
            )

            if result.ok:
                status, synced_at = ProviderSyncStatus.SYNCED, _utcnow()
            else:
                self._record_failure("provider_sync", result)
                status, synced_at = ProviderSyncStatus.FAILED, None

            await self._persist_status(
                "update_provider_sync_status",
                lambda: self.repository.update_provider_sync_status(
                    application.id, status.value, synced_at
                )
            )
            span.set_attribute("synced", result.ok)
            return result.ok

    async def _notify(
        self,
        command: ApplyDiscountCommand,
        invoice: InvoiceSnapshot,
        application: ApplicationRecord,
        rule: DiscountRuleSnapshot,
        breakdown: DiscountBreakdown
    ) -> bool:
        client_info = command.client_info
        if client_info is None or not client_info.has_contact:
            return False

        with tracer.start_as_current_span("notify_client") as span:
            message = format_discount_message(rule, breakdown, invoice.currency)
            report = await self.dispatcher.dispatch(
                client_info,
                command.notification_channel,
                message
            )
            span.set_attribute("channels_attempted", len(report.attempted))

            if not report.attempted:
                return False

            if report.sent:
                status, notified_at = NotificationStatus.SENT, _utcnow()
            else:
                for channel, error_type in report.failed.items():
                    discount_side_effect_failures_total.labels(
                        step=f"notify_{channel}",
                        error_type=error_type
                    ).inc()
                status, notified_at = NotificationStatus.FAILED, None

            await self._persist_status(
                "update_notification_status",
                lambda: self.repository.update_notification_status(
                    application.id, status.value, notified_at
                )
            )
            span.set_attribute("sent", report.sent)
            return report.sent

    async def _record_analytics(
        self,
        application: ApplicationRecord,
        rule: DiscountRuleSnapshot,
        breakdown: DiscountBreakdown,
        adapter: Optional[PaymentProviderAdapter] = None
    ) -> bool:
        payment_provider = adapter.provider_type.value if adapter is not None else None
        with tracer.start_as_current_span("record_discount_analytics"):
            result = await run_best_effort(
                lambda: self.analytics.record_discount_applied(
                    application, rule, breakdown, payment_provider=payment_provider
                ),
                self.retry_policy,
                operation_name="record_analytics"
            )
            if not result.ok:
                self._record_failure("analytics", result)
            return result.ok

    async def _persist_status(self, operation_name: str, operation) -> None:
        result = await run_best_effort(operation, self.retry_policy, operation_name)
        if not result.ok:
            self._record_failure(operation_name, result)
