"""Loyalty points routes."""

from fastapi import APIRouter, Query, Request

from app.core.config import settings
from app.core.errors import NotFoundError
from app.core.rate_limit import limiter
from app.core.rbac import CurrentCustomer
from app.db.session import DbSession
from app.models.customer import Customer
from app.schemas.points import CustomerTypeResponse, PointsResponse, PointsTransactionResponse
from app.services.points_service import PointsLedger
from app.services.pricing_service import money

router = APIRouter()


@router.get("/points", response_model=PointsResponse)
@limiter.limit("60/minute")
def get_points(
    request: Request,
    db: DbSession,
    customer: CurrentCustomer,
    limit: int = Query(20, ge=1, le=100, description="Number of recent transactions"),
):
    """Balance, current tier, progress to the next tier and recent ledger entries."""
    row = db.get(Customer, customer.id)
    if row is None:
        raise NotFoundError("CUSTOMER_NOT_FOUND", "Customer not found", {"customer_id": customer.id})

    ledger = PointsLedger(db)
    next_tier = ledger.next_tier(row.points)
    return PointsResponse(
        points=row.points,
        points_value=money(row.points * settings.point_value),
        min_points_to_redeem=settings.min_points_to_redeem,
        tier=CustomerTypeResponse.model_validate(row.customer_type) if row.customer_type else None,
        next_tier=CustomerTypeResponse.model_validate(next_tier) if next_tier else None,
        points_to_next_tier=next_tier.points_required - row.points if next_tier else None,
        transactions=[PointsTransactionResponse.model_validate(t) for t in ledger.history(row.id, limit=limit)],
    )
