"""SQLAlchemy declarative base and common mixins."""

from datetime import datetime

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def value_enum(enum_cls) -> SQLEnum:
    """Column type storing a ``str`` enum by value (``"active"``, not ``"ACTIVE"``)."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
        validate_strings=True,
    )


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class VersionMixin:
    """Optimistic locking via a version counter.

    Writers that must not lose a race issue a conditional
    ``UPDATE ... WHERE version = :seen`` that also bumps the counter; a
    rowcount of zero means somebody else got there first.
    """

    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)
