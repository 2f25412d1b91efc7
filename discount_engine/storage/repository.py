# ==== DISCOUNT REPOSITORY ==== #

"""
Persistence boundary for the discount workflow.

The coordinator only talks to DiscountRepository. The SQLAlchemy
implementation relies on two store-level primitives for correctness under
concurrency: the unique constraint on discount_applications.invoice_id and
a conditional usage_count increment executed inside the core transaction.
"""

import datetime as dt
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from discount_engine.business.errors import AlreadyAppliedError, PersistenceError
from discount_engine.business.models import (
    ApplicationDraft,
    ApplicationRecord,
    CommitResult,
    CommitStatus,
    DiscountRuleSnapshot,
    InvoiceSnapshot,
    LeadProfile,
    PaymentHistory,
    ProviderSettingsSnapshot,
)
from discount_engine.observability.logging import get_logger
from discount_engine.observability.metrics import db_connections_active
from discount_engine.storage.models import (
    DiscountApplication,
    DiscountRule,
    Invoice,
    InvoiceAnalyticsEvent,
    Lead,
    PaymentProviderSettings,
)


logger = get_logger(__name__)

PAID_STATUS = "paid"


class DiscountRepository(ABC):
    """Rule, invoice and application store used by the apply workflow."""

    @abstractmethod
    async def get_invoice(self, owner_id: str, invoice_id: str) -> Optional[InvoiceSnapshot]:
        """Invoice owned by owner_id, or None."""

    @abstractmethod
    async def get_application_for_invoice(self, invoice_id: str) -> Optional[ApplicationRecord]:
        """Existing discount application for the invoice, or None."""

    @abstractmethod
    async def get_rule(self, owner_id: str, rule_id: str) -> Optional[DiscountRuleSnapshot]:
        """Rule owned by owner_id regardless of its active flag, or None."""

    @abstractmethod
    async def list_active_rules(self, owner_id: str) -> List[DiscountRuleSnapshot]:
        """Active rules ordered by discount_value desc, created_at asc, id asc."""

    @abstractmethod
    async def get_lead(self, owner_id: str, lead_id: str) -> Optional[LeadProfile]:
        """Lead owned by owner_id, or None."""

    @abstractmethod
    async def get_payment_history(self, owner_id: str, customer_email: Optional[str]) -> PaymentHistory:
        """Count and sum of the owner's paid invoices for this email."""

    @abstractmethod
    async def commit_application(self, draft: ApplicationDraft) -> CommitResult:
        """
        Run the core transaction: insert application, discount invoice,
        conditionally increment rule usage. All or nothing.

        Raises:
            AlreadyAppliedError: the invoice already has an application
            PersistenceError: any other write failure
        """

    @abstractmethod
    async def update_notification_status(
        self,
        application_id: str,
        status: str,
        notified_at: Optional[dt.datetime] = None
    ) -> None:
        """Record the notification outcome on the application."""

    @abstractmethod
    async def update_provider_sync_status(
        self,
        application_id: str,
        status: str,
        synced_at: Optional[dt.datetime] = None
    ) -> None:
        """Record the payment provider sync outcome on the application."""

    @abstractmethod
    async def get_active_provider_settings(self, owner_id: str) -> Optional[ProviderSettingsSnapshot]:
        """Owner's active payment provider configuration, or None."""

    @abstractmethod
    async def record_analytics_event(
        self,
        owner_id: str,
        invoice_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        payment_provider: Optional[str] = None
    ) -> None:
        """Append an analytics event."""


# ==== SNAPSHOT CONVERSION ==== #

def _to_invoice(row: Invoice) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        id=row.id,
        owner_id=row.owner_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        status=row.status,
        lead_id=row.lead_id,
        invoice_number=row.invoice_number,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        external_invoice_id=row.external_invoice_id,
        due_date=row.due_date,
    )


def _to_rule(row: DiscountRule) -> DiscountRuleSnapshot:
    return DiscountRuleSnapshot(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        rule_type=row.rule_type,
        discount_type=row.discount_type,
        discount_value=Decimal(row.discount_value),
        conditions=row.conditions if row.conditions is not None else {},
        max_usage=row.max_usage,
        usage_count=row.usage_count,
        is_active=row.is_active,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        created_at=row.created_at,
    )


def _to_application(row: DiscountApplication) -> ApplicationRecord:
    return ApplicationRecord(
        id=row.id,
        owner_id=row.owner_id,
        invoice_id=row.invoice_id,
        discount_rule_id=row.discount_rule_id,
        original_amount=Decimal(row.original_amount),
        discount_amount=Decimal(row.discount_amount),
        final_amount=Decimal(row.final_amount),
        notification_channel=row.notification_channel,
        notification_status=row.notification_status,
        client_notified_at=row.client_notified_at,
        provider_sync_status=row.provider_sync_status,
        provider_synced_at=row.provider_synced_at,
        applied_at=row.applied_at,
    )


class _UsageLimitReached(Exception):
    """Raised inside the core transaction to force a rollback."""


# ==== SQLALCHEMY IMPLEMENTATION ==== #

class SqlAlchemyDiscountRepository(DiscountRepository):
    """DiscountRepository over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_invoice(self, owner_id: str, invoice_id: str) -> Optional[InvoiceSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(Invoice).where(Invoice.id == invoice_id, Invoice.owner_id == owner_id)
            )
            return _to_invoice(row) if row is not None else None

    async def get_application_for_invoice(self, invoice_id: str) -> Optional[ApplicationRecord]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(DiscountApplication).where(DiscountApplication.invoice_id == invoice_id)
            )
            return _to_application(row) if row is not None else None

    async def get_rule(self, owner_id: str, rule_id: str) -> Optional[DiscountRuleSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(DiscountRule).where(
                    DiscountRule.id == rule_id,
                    DiscountRule.owner_id == owner_id
                )
            )
            return _to_rule(row) if row is not None else None

    async def list_active_rules(self, owner_id: str) -> List[DiscountRuleSnapshot]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(DiscountRule)
                .where(DiscountRule.owner_id == owner_id, DiscountRule.is_active.is_(True))
                .order_by(
                    DiscountRule.discount_value.desc(),
                    DiscountRule.created_at.asc(),
                    DiscountRule.id.asc()
                )
            )
            return [_to_rule(row) for row in rows]

    async def get_lead(self, owner_id: str, lead_id: str) -> Optional[LeadProfile]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(Lead).where(Lead.id == lead_id, Lead.owner_id == owner_id)
            )
            if row is None:
                return None
            return LeadProfile(
                id=row.id,
                owner_id=row.owner_id,
                customer_email=row.customer_email,
                customer_name=row.customer_name,
                phone=row.phone,
                referral_code_id=row.referral_code_id,
            )

    async def get_payment_history(self, owner_id: str, customer_email: Optional[str]) -> PaymentHistory:
        if not customer_email:
            return PaymentHistory()

        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Invoice.id), func.coalesce(func.sum(Invoice.amount), 0))
                .where(
                    Invoice.owner_id == owner_id,
                    func.lower(Invoice.customer_email) == customer_email.lower(),
                    Invoice.status == PAID_STATUS
                )
            )
            count, total = result.one()
            return PaymentHistory(
                total_paid_invoices=int(count or 0),
                total_paid_amount=Decimal(str(total or 0)),
            )

    async def commit_application(self, draft: ApplicationDraft) -> CommitResult:
        try:
            async with self._session_factory() as session:
                db_connections_active.inc()
                try:
                    async with session.begin():
                        application = await self._insert_application(session, draft)
                        await self._discount_invoice(session, draft)
                        await self._increment_usage(session, draft)
                    return CommitResult(
                        status=CommitStatus.COMMITTED,
                        application=_to_application(application)
                    )
                finally:
                    db_connections_active.dec()

        except _UsageLimitReached:
            logger.info(
                "Usage limit reached at commit time, transaction rolled back",
                owner=draft.owner_id,
                invoice_id=draft.invoice_id,
                rule_id=draft.rule_id
            )
            return CommitResult(status=CommitStatus.USAGE_LIMIT_REACHED)

        except IntegrityError as e:
            # Unique invoice_id is the expected conflict; anything else is a write failure
            if await self.get_application_for_invoice(draft.invoice_id) is not None:
                raise AlreadyAppliedError(
                    f"Discount already applied to invoice {draft.invoice_id}",
                    details={"invoice_id": draft.invoice_id}
                ) from e
            raise PersistenceError(
                "Core discount transaction violated a constraint",
                details={"invoice_id": draft.invoice_id, "error": str(e.orig)}
            ) from e

        except SQLAlchemyError as e:
            logger.error(
                "Core discount transaction failed",
                owner=draft.owner_id,
                invoice_id=draft.invoice_id,
                error=str(e)
            )
            raise PersistenceError(
                "Core discount transaction failed",
                details={"invoice_id": draft.invoice_id}
            ) from e

    async def _insert_application(self, session: AsyncSession, draft: ApplicationDraft) -> DiscountApplication:
        application = DiscountApplication(
            owner_id=draft.owner_id,
            invoice_id=draft.invoice_id,
            discount_rule_id=draft.rule_id,
            original_amount=draft.original_amount,
            discount_amount=draft.discount_amount,
            final_amount=draft.final_amount,
            notification_channel=draft.notification_channel.value,
        )
        session.add(application)
        await session.flush()
        return application

    async def _discount_invoice(self, session: AsyncSession, draft: ApplicationDraft) -> None:
        result = await session.execute(
            update(Invoice)
            .where(Invoice.id == draft.invoice_id, Invoice.owner_id == draft.owner_id)
            .values(amount=draft.final_amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PersistenceError(
                f"Invoice {draft.invoice_id} could not be updated",
                details={"invoice_id": draft.invoice_id}
            )

    async def _increment_usage(self, session: AsyncSession, draft: ApplicationDraft) -> None:
        result = await session.execute(
            update(DiscountRule)
            .where(
                DiscountRule.id == draft.rule_id,
                DiscountRule.owner_id == draft.owner_id,
                DiscountRule.is_active.is_(True),
                or_(
                    DiscountRule.max_usage.is_(None),
                    DiscountRule.usage_count < DiscountRule.max_usage
                )
            )
            .values(usage_count=DiscountRule.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _UsageLimitReached()

    async def update_notification_status(
        self,
        application_id: str,
        status: str,
        notified_at: Optional[dt.datetime] = None
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(DiscountApplication)
                    .where(DiscountApplication.id == application_id)
                    .values(notification_status=status, client_notified_at=notified_at)
                    .execution_options(synchronize_session=False)
                )

    async def update_provider_sync_status(
        self,
        application_id: str,
        status: str,
        synced_at: Optional[dt.datetime] = None
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(DiscountApplication)
                    .where(DiscountApplication.id == application_id)
                    .values(provider_sync_status=status, provider_synced_at=synced_at)
                    .execution_options(synchronize_session=False)
                )

    async def get_active_provider_settings(self, owner_id: str) -> Optional[ProviderSettingsSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(PaymentProviderSettings)
                .where(
                    PaymentProviderSettings.owner_id == owner_id,
                    PaymentProviderSettings.is_active.is_(True)
                )
                .order_by(PaymentProviderSettings.created_at.asc())
                .limit(1)
            )
            if row is None:
                return None
            return ProviderSettingsSnapshot(
                owner_id=row.owner_id,
                provider_type=row.provider_type,
                credentials=dict(row.credentials or {}),
            )

    async def record_analytics_event(
        self,
        owner_id: str,
        invoice_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        payment_provider: Optional[str] = None
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(InvoiceAnalyticsEvent(
                    owner_id=owner_id,
                    invoice_id=invoice_id,
                    event_type=event_type,
                    event_data=event_data,
                    payment_provider=payment_provider,
                ))
