"""Loyalty points schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from app.models.customer import PointsTransactionType


class CustomerTypeResponse(BaseModel):
    id: int
    name: str
    points_required: int
    multiplier: Decimal
    color: Optional[str] = None

    model_config = {"from_attributes": True}


class PointsTransactionResponse(BaseModel):
    id: int
    type: PointsTransactionType
    points: int
    signed_points: int
    order_id: Optional[int] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PointsResponse(BaseModel):
    """Balance, tier and recent ledger entries of the caller."""

    points: int
    points_value: Decimal
    min_points_to_redeem: int
    tier: Optional[CustomerTypeResponse] = None
    next_tier: Optional[CustomerTypeResponse] = None
    points_to_next_tier: Optional[int] = None
    transactions: List[PointsTransactionResponse] = []
