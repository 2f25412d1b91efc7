"""Pydantic schemas for the discount API."""

import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from discount_engine.business.models import (
    ApplicationRecord,
    ClientInfo,
    NotificationChannel,
)
from discount_engine.services.coordinator import ApplicationOutcome, ApplyDiscountCommand


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClientInfoPayload(_CamelModel):
    """Client contact details for the discount notification."""

    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip()
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    def to_client_info(self) -> ClientInfo:
        return ClientInfo(name=self.name, email=self.email, phone=self.phone or None)


class ApplyDiscountRequest(_CamelModel):
    """Request schema for applying a discount to an invoice."""

    invoice_id: str = Field(..., min_length=1, max_length=64)
    rule_id: Optional[str] = Field(None, max_length=64)
    lead_id: Optional[str] = Field(None, max_length=64)
    client_info: Optional[ClientInfoPayload] = None
    notification_channel: NotificationChannel = NotificationChannel.EMAIL

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "invoiceId": "3f0c2a54-5d6e-4a8f-9a51-2b6a0e3c1d10",
                "leadId": "a1b2c3d4-0000-4000-8000-000000000001",
                "clientInfo": {"name": "Jane Smith", "email": "jane@example.com"},
                "notificationChannel": "email"
            }
        }
    )

    def to_command(self, owner_id: str) -> ApplyDiscountCommand:
        return ApplyDiscountCommand(
            invoice_id=self.invoice_id,
            owner_id=owner_id,
            lead_id=self.lead_id or None,
            rule_id=self.rule_id or None,
            client_info=self.client_info.to_client_info() if self.client_info else None,
            notification_channel=self.notification_channel,
        )


class RuleSummaryResponse(_CamelModel):
    name: str
    type: str
    value: float


class DiscountResultData(_CamelModel):
    application_id: str
    original_amount: float
    discount_amount: float
    final_amount: float
    savings: float
    rule: RuleSummaryResponse
    provider_updated: bool
    notification_sent: bool


class ApplyDiscountResponse(_CamelModel):
    """Response schema for the apply endpoint."""

    success: bool
    message: str
    data: Optional[DiscountResultData] = None

    @classmethod
    def from_outcome(cls, outcome: ApplicationOutcome) -> "ApplyDiscountResponse":
        if not outcome.applied:
            return cls(success=False, message=outcome.reason or "Discount not applied")

        return cls(
            success=True,
            message="Discount applied successfully",
            data=DiscountResultData(
                application_id=outcome.application_id,
                original_amount=float(outcome.original_amount),
                discount_amount=float(outcome.discount_amount),
                final_amount=float(outcome.final_amount),
                savings=float(outcome.savings),
                rule=RuleSummaryResponse(
                    name=outcome.rule.name,
                    type=outcome.rule.type,
                    value=float(outcome.rule.value),
                ),
                provider_updated=outcome.provider_updated,
                notification_sent=outcome.notification_sent,
            ),
        )


class DiscountApplicationResponse(_CamelModel):
    """Stored discount application for an invoice."""

    id: str
    invoice_id: str
    discount_rule_id: str
    original_amount: float
    discount_amount: float
    final_amount: float
    notification_channel: str
    notification_status: str
    client_notified_at: Optional[dt.datetime] = None
    provider_sync_status: str
    provider_synced_at: Optional[dt.datetime] = None
    applied_at: Optional[dt.datetime] = None

    @classmethod
    def from_record(cls, record: ApplicationRecord) -> "DiscountApplicationResponse":
        return cls(
            id=record.id,
            invoice_id=record.invoice_id,
            discount_rule_id=record.discount_rule_id,
            original_amount=float(record.original_amount),
            discount_amount=float(record.discount_amount),
            final_amount=float(record.final_amount),
            notification_channel=record.notification_channel,
            notification_status=record.notification_status,
            client_notified_at=record.client_notified_at,
            provider_sync_status=record.provider_sync_status,
            provider_synced_at=record.provider_synced_at,
            applied_at=record.applied_at,
        )
