# ==== DISCOUNT ROUTES ==== #

"""
Discount application endpoints.

POST /apply runs the apply workflow for one invoice; GET
/applications/{invoice_id} reads the stored application back.
Domain errors propagate to the app-level exception handlers.
"""

from fastapi import APIRouter, Depends, Request

from discount_engine.business.errors import NotFoundError
from discount_engine.middleware.ownership import get_owner_id
from discount_engine.observability.logging import get_logger
from discount_engine.observability.tracing import get_tracer
from discount_engine.schemas.discount import (
    ApplyDiscountRequest,
    ApplyDiscountResponse,
    DiscountApplicationResponse,
)
from discount_engine.services.coordinator import DiscountApplicationCoordinator
from discount_engine.storage.repository import DiscountRepository


# ==== ROUTER INITIALIZATION ==== #


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)


def get_coordinator(request: Request) -> DiscountApplicationCoordinator:
    """Coordinator assembled at startup and kept on app state."""
    return request.app.state.coordinator


def get_repository(request: Request) -> DiscountRepository:
    return request.app.state.repository


# ==== ENDPOINTS ==== #


@router.post(
    "/apply",
    response_model=ApplyDiscountResponse,
    response_model_exclude_none=True
)
async def apply_discount(
    payload: ApplyDiscountRequest,
    request: Request,
    coordinator: DiscountApplicationCoordinator = Depends(get_coordinator)
) -> ApplyDiscountResponse:
    """
    Apply the best eligible discount to an invoice.

    Returns success=false with a message when no rule is eligible; that is
    a business outcome, not an error.
    """
    owner_id = get_owner_id(request)

    with tracer.start_as_current_span("api_apply_discount") as span:
        span.set_attribute("owner", owner_id)
        span.set_attribute("invoice_id", payload.invoice_id)

        outcome = await coordinator.apply(payload.to_command(owner_id))

        logger.info(
            "Apply discount request handled",
            owner=owner_id,
            invoice_id=payload.invoice_id,
            applied=outcome.applied,
            correlation_id=getattr(request.state, "correlation_id", None)
        )
        return ApplyDiscountResponse.from_outcome(outcome)


@router.get(
    "/applications/{invoice_id}",
    response_model=DiscountApplicationResponse
)
async def get_discount_application(
    invoice_id: str,
    request: Request,
    repository: DiscountRepository = Depends(get_repository)
) -> DiscountApplicationResponse:
    """Read the discount application recorded for an invoice."""
    owner_id = get_owner_id(request)

    record = await repository.get_application_for_invoice(invoice_id)
    if record is None or record.owner_id != owner_id:
        raise NotFoundError(
            f"No discount application for invoice {invoice_id}",
            details={"invoice_id": invoice_id}
        )
    return DiscountApplicationResponse.from_record(record)
