"""Restaurant and driver registry models."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, value_enum
from app.models.validators import non_negative, validate_dict


class Zone(str, Enum):
    """Pricing tier of a restaurant."""

    CAPITAL = "capital"
    INTERIOR = "interior"


class ServiceType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


WEEKDAY_KEYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class Restaurant(Base, TimestampMixin):
    """A branch that serves pickup and/or delivery orders."""

    __tablename__ = "restaurants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    zone: Mapped[Zone] = mapped_column(value_enum(Zone), default=Zone.CAPITAL, nullable=False)
    # Raw KML <coordinates> text (or a full KML document) of the delivery polygon
    geofence_kml: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    delivery_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pickup_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # {"monday": {"is_open": true, "open": "08:00", "close": "22:00"}, ...}
    schedule: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    minimum_order_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    estimated_pickup_time: Mapped[int] = mapped_column(Integer, default=30, nullable=False)  # minutes
    estimated_delivery_time: Mapped[int] = mapped_column(Integer, default=45, nullable=False)  # minutes

    drivers: Mapped[list["Driver"]] = relationship("Driver", back_populates="restaurant")

    @validates("minimum_order_amount", "estimated_pickup_time", "estimated_delivery_time")
    def _validate_non_negative(self, key, value):
        return non_negative(key, value)

    @validates("schedule")
    def _validate_schedule(self, key, value):
        return validate_dict(key, value)

    @property
    def has_geofence(self) -> bool:
        return bool(self.geofence_kml and self.geofence_kml.strip())

    def supports(self, service_type: ServiceType) -> bool:
        if service_type == ServiceType.DELIVERY:
            return self.delivery_active
        return self.pickup_active

    def schedule_for(self, local_dt: datetime) -> Optional[dict]:
        if not self.schedule:
            return None
        return self.schedule.get(WEEKDAY_KEYS[local_dt.weekday()])

    def can_accept_orders(self, service_type: ServiceType, local_dt: datetime) -> bool:
        """Whether an order of *service_type* placed at *local_dt* can be taken.

        A restaurant without a schedule is treated as always open. Pickup
        orders close ``estimated_pickup_time`` minutes before closing time;
        delivery orders are taken until closing time.
        """
        if not self.is_active or not self.supports(service_type):
            return False
        if not self.schedule:
            return True

        today = self.schedule_for(local_dt)
        if not today or not today.get("is_open"):
            return False

        current = local_dt.strftime("%H:%M")
        if current < today["open"]:
            return False

        last_order = today["close"]
        if service_type == ServiceType.PICKUP:
            close_dt = datetime.strptime(today["close"], "%H:%M")
            last_order = (close_dt - timedelta(minutes=self.estimated_pickup_time)).strftime("%H:%M")
        return current <= last_order


class Driver(Base, TimestampMixin):
    """Delivery driver. A driver works for exactly one restaurant."""

    __tablename__ = "drivers"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    restaurant: Mapped["Restaurant"] = relationship("Restaurant", back_populates="drivers")
