# ==== DISCOUNT DOMAIN TYPES ==== #

"""
Domain enumerations and immutable snapshots for the discount workflow.

Snapshots are plain frozen dataclasses detached from the ORM so the
evaluator and calculator stay pure and the coordinator can be exercised
against any repository implementation.
"""

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ==== ENUMERATION DEFINITIONS ==== #


class DiscountType(str, Enum):
    """How discount_value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class NotificationChannel(str, Enum):
    """Channels a client can be notified on."""

    EMAIL = "email"
    WHATSAPP = "whatsapp"
    BOTH = "both"

    def expand(self) -> List["NotificationChannel"]:
        """Concrete transports behind this channel selection."""
        if self is NotificationChannel.BOTH:
            return [NotificationChannel.EMAIL, NotificationChannel.WHATSAPP]
        return [self]


class NotificationStatus(str, Enum):
    NONE = "none"
    SENT = "sent"
    FAILED = "failed"


class ProviderSyncStatus(str, Enum):
    NONE = "none"
    SYNCED = "synced"
    FAILED = "failed"


class ProviderType(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    QUICKBOOKS = "quickbooks"
    XERO = "xero"


# ==== SNAPSHOTS ==== #


@dataclass(frozen=True)
class DiscountRuleSnapshot:
    """
    Read-only view of a discount rule as seen by the evaluator.

    rule_type and discount_type stay raw strings so unknown values coming
    from the store make the rule ineligible instead of failing the load.
    """

    id: str
    owner_id: str
    name: str
    rule_type: str
    discount_type: str
    discount_value: Decimal
    conditions: Dict[str, Any] = field(default_factory=dict)
    max_usage: Optional[int] = None
    usage_count: int = 0
    is_active: bool = True
    valid_from: Optional[dt.datetime] = None
    valid_until: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None

    @property
    def has_capacity(self) -> bool:
        """Advisory usage-limit check; the store enforces it authoritatively."""
        return self.max_usage is None or self.usage_count < self.max_usage


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    owner_id: str
    amount: Decimal
    currency: str = "GBP"
    status: str = "draft"
    lead_id: Optional[str] = None
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    external_invoice_id: Optional[str] = None
    due_date: Optional[dt.date] = None


@dataclass(frozen=True)
class LeadProfile:
    id: str
    owner_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    referral_code_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentHistory:
    """Paid invoices of the owner sharing a lead's email."""

    total_paid_invoices: int = 0
    total_paid_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class ClientInfo:
    """Contact details used for the discount notification."""

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_contact(self) -> bool:
        return bool(self.email or self.phone)

    def address_for(self, channel: NotificationChannel) -> Optional[str]:
        if channel is NotificationChannel.EMAIL:
            return self.email or None
        if channel is NotificationChannel.WHATSAPP:
            return self.phone or None
        return None


@dataclass(frozen=True)
class ProviderSettingsSnapshot:
    owner_id: str
    provider_type: str
    credentials: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplicationDraft:
    """Everything the core transaction needs to persist one application."""

    owner_id: str
    invoice_id: str
    rule_id: str
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    notification_channel: NotificationChannel = NotificationChannel.EMAIL


@dataclass(frozen=True)
class ApplicationRecord:
    """Persisted discount application: the per-invoice idempotency anchor."""

    id: str
    owner_id: str
    invoice_id: str
    discount_rule_id: str
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    notification_channel: str = NotificationChannel.EMAIL.value
    notification_status: str = NotificationStatus.NONE.value
    client_notified_at: Optional[dt.datetime] = None
    provider_sync_status: str = ProviderSyncStatus.NONE.value
    provider_synced_at: Optional[dt.datetime] = None
    applied_at: Optional[dt.datetime] = None


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    USAGE_LIMIT_REACHED = "usage_limit_reached"


@dataclass(frozen=True)
class CommitResult:
    """Result of the core transaction. A usage-limit loss is a value, not an error."""

    status: CommitStatus
    application: Optional[ApplicationRecord] = None

    @property
    def committed(self) -> bool:
        return self.status is CommitStatus.COMMITTED
