"""Loyalty points ledger.

Every balance change appends one ``CustomerPointsTransaction`` and updates
``Customer.points`` in the same transaction, so the running balance always
equals the signed sum of the ledger. The customer's tier is recomputed
after each change.

By default the ledger only flushes and leaves the commit to the caller so
that it can take part in a larger unit of work (order conversion,
cancellation). Pass ``autocommit=True`` for standalone use.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DomainError, NotFoundError, ValidationFailed
from app.core.timeutil import as_utc, utcnow
from app.models.customer import (
    Customer,
    CustomerPointsTransaction,
    CustomerType,
    PointsTransactionType,
)
from app.services.audit_service import log_action

logger = logging.getLogger(__name__)


def round_with_threshold(value, threshold) -> int:
    """Floor *value*, rounding up only when the fraction reaches *threshold*.

    Fractions are compared at two decimals. A threshold <= 0 always floors,
    and values below one point never round up to one.
    """
    value = Decimal(str(value))
    threshold = Decimal(str(threshold))
    int_part = math.floor(value)
    if threshold <= 0:
        return int_part
    fraction = (value - int_part).quantize(Decimal("0.01"))
    if int_part >= 1 and fraction >= threshold:
        return int_part + 1
    return int_part


def calculate_points_to_earn(
    total,
    multiplier=Decimal("1"),
    quetzales_per_point=None,
    threshold=None,
) -> int:
    """Points earned for an order *total* under a tier *multiplier*."""
    quetzales_per_point = Decimal(str(quetzales_per_point or settings.quetzales_per_point))
    threshold = settings.points_rounding_threshold if threshold is None else threshold

    base_points = round_with_threshold(Decimal(str(total)) / quetzales_per_point, threshold)
    multiplier = Decimal(str(multiplier or 1))
    if multiplier > 1:
        return round_with_threshold(base_points * multiplier, threshold)
    return base_points


class PointsLedger:
    """Mutates customer point balances through the append-only ledger."""

    def __init__(self, db: Session, autocommit: bool = False):
        self.db = db
        self.autocommit = autocommit

    # ===== MUTATIONS =====

    def earn(
        self,
        customer_id: int,
        points: int,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Optional[CustomerPointsTransaction]:
        if points <= 0:
            return None
        expires_at = utcnow() + timedelta(days=30 * settings.points_expiration_months)
        return self._append(
            customer_id, PointsTransactionType.EARNED, points, points,
            order_id=order_id, description=description, expires_at=expires_at,
        )

    def redeem(
        self,
        customer_id: int,
        points: int,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> CustomerPointsTransaction:
        """Debit *points*. Rejected wholesale if the balance does not cover it."""
        if points <= 0:
            raise ValidationFailed("INVALID_POINTS", "Points to redeem must be positive", {"points": points})
        return self._append(
            customer_id, PointsTransactionType.REDEEMED, points, -points,
            order_id=order_id, description=description,
        )

    def adjust(
        self,
        customer_id: int,
        delta: int,
        reason: str,
        order_id: Optional[int] = None,
    ) -> Optional[CustomerPointsTransaction]:
        """Signed manual or compensating correction."""
        if delta == 0:
            return None
        return self._append(
            customer_id, PointsTransactionType.ADJUSTED, delta, delta,
            order_id=order_id, description=reason,
        )

    def expire(
        self,
        customer_id: int,
        points: int,
        description: Optional[str] = None,
    ) -> Optional[CustomerPointsTransaction]:
        """Remove expired points, never more than the current balance."""
        customer = self._lock_customer(customer_id)
        points = min(points, customer.points)
        if points <= 0:
            return None
        return self._append(
            customer_id, PointsTransactionType.EXPIRED, points, -points,
            description=description or "Points expired",
        )

    def expire_due(self, customer_id: int, now: Optional[datetime] = None) -> Optional[CustomerPointsTransaction]:
        """Write off earned points whose ``expires_at`` has passed and that were never spent."""
        lapsed = self.lapsed_points(customer_id, now)
        if lapsed <= 0:
            return None
        return self.expire(customer_id, lapsed, description="Earned points reached their expiry date")

    def expire_all_due(self, now: Optional[datetime] = None) -> list:
        """Sweep every customer holding earned rows past their expiry date."""
        now = now or utcnow()
        customer_ids = [
            row[0] for row in (
                self.db.query(CustomerPointsTransaction.customer_id)
                .filter(
                    CustomerPointsTransaction.type == PointsTransactionType.EARNED,
                    CustomerPointsTransaction.expires_at <= now,
                )
                .distinct()
                .order_by(CustomerPointsTransaction.customer_id)
                .all()
            )
        ]
        entries = []
        for customer_id in customer_ids:
            entry = self.expire_due(customer_id, now)
            if entry is not None:
                entries.append(entry)
        logger.info(f"Points expiry sweep: {len(entries)} of {len(customer_ids)} customers expired")
        return entries

    # ===== QUERIES =====

    def lapsed_points(self, customer_id: int, now: Optional[datetime] = None) -> int:
        """Unspent points from earned rows past their expiry date.

        Debits (redemptions, earlier expiries, negative adjustments) consume
        credits in expiry order, so they are charged against the soonest
        expiring points first. Credits without an expiry date are consumed last.
        """
        now = now or utcnow()
        rows = (
            self.db.query(CustomerPointsTransaction)
            .filter(CustomerPointsTransaction.customer_id == customer_id)
            .all()
        )
        due = sum(
            row.points for row in rows
            if row.type == PointsTransactionType.EARNED
            and row.expires_at is not None
            and as_utc(row.expires_at) <= now
        )
        debits = sum(-row.signed_points for row in rows if row.signed_points < 0)
        return max(due - debits, 0)

    def ledger_balance(self, customer_id: int) -> int:
        """Signed sum of the ledger, independent of the denormalized balance."""
        rows = (
            self.db.query(CustomerPointsTransaction.type, func.coalesce(func.sum(CustomerPointsTransaction.points), 0))
            .filter(CustomerPointsTransaction.customer_id == customer_id)
            .group_by(CustomerPointsTransaction.type)
            .all()
        )
        balance = 0
        for tx_type, total in rows:
            if tx_type in (PointsTransactionType.EARNED, PointsTransactionType.ADJUSTED):
                balance += int(total)
            else:
                balance -= int(total)
        return balance

    def history(self, customer_id: int, limit: int = 20) -> list:
        return (
            self.db.query(CustomerPointsTransaction)
            .filter(CustomerPointsTransaction.customer_id == customer_id)
            .order_by(CustomerPointsTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def tier_for_points(self, points: int) -> Optional[CustomerType]:
        """Highest active tier whose threshold is <= *points*."""
        return (
            self.db.query(CustomerType)
            .filter(CustomerType.is_active.is_(True), CustomerType.points_required <= points)
            .order_by(CustomerType.points_required.desc(), CustomerType.id.desc())
            .first()
        )

    def next_tier(self, points: int) -> Optional[CustomerType]:
        return (
            self.db.query(CustomerType)
            .filter(CustomerType.is_active.is_(True), CustomerType.points_required > points)
            .order_by(CustomerType.points_required.asc(), CustomerType.id.asc())
            .first()
        )

    def recompute_tier(self, customer: Customer) -> Optional[CustomerType]:
        """Point the customer at the tier their balance qualifies for. Idempotent."""
        tier = self.tier_for_points(customer.points)
        new_id = tier.id if tier else None
        if customer.customer_type_id != new_id:
            logger.info(f"Customer {customer.id} tier {customer.customer_type_id} -> {new_id}")
            customer.customer_type_id = new_id
            customer.customer_type = tier
        return tier

    # ===== INTERNALS =====

    def _lock_customer(self, customer_id: int) -> Customer:
        customer = (
            self.db.query(Customer)
            .filter(Customer.id == customer_id)
            .with_for_update()
            .first()
        )
        if customer is None:
            raise NotFoundError("CUSTOMER_NOT_FOUND", "Customer not found", {"customer_id": customer_id})
        return customer

    def _append(
        self,
        customer_id: int,
        tx_type: PointsTransactionType,
        points: int,
        signed_delta: int,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CustomerPointsTransaction:
        try:
            customer = self._lock_customer(customer_id)
            new_balance = customer.points + signed_delta
            if new_balance < 0:
                raise DomainError(
                    "INSUFFICIENT_POINTS",
                    f"Customer has {customer.points} points, cannot take {-signed_delta}",
                    {"available": customer.points, "requested": -signed_delta},
                )

            entry = CustomerPointsTransaction(
                type=tx_type,
                customer_id=customer.id,
                order_id=order_id,
                points=points,
                description=description,
                expires_at=expires_at,
            )
            self.db.add(entry)
            customer.points = new_balance
            customer.points_updated_at = utcnow()
            self.recompute_tier(customer)
            self.db.flush()

            if self.autocommit:
                self.db.commit()
        except Exception:
            if self.autocommit:
                self.db.rollback()
            raise

        log_action(
            f"points_{tx_type.value}", "customer", customer_id,
            details={"points": signed_delta, "balance": new_balance, "order_id": order_id},
        )
        return entry
