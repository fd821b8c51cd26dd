"""SQLAlchemy models for users, plans, subscriptions and the token ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenledger.db.base import Base
from tokenledger.utils.datetime import utc_now

SUBSCRIPTION_STATUSES = (
    "active",
    "trialing",
    "canceled",
    "past_due",
    "unpaid",
    "incomplete",
    "incomplete_expired",
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    email: Mapped[str | None] = mapped_column(String(191))
    name: Mapped[str | None] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(
        Enum("user", "admin", name="user_role"), default="user", nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="user")
    token_allocations: Mapped[list["TokenAllocation"]] = relationship(back_populates="user")
    token_usage_logs: Mapped[list["TokenUsageLog"]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Unknown"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (UniqueConstraint("name", name="uq_subscription_plans_name"),)

    name: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    monthly_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0.0)
    annual_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0.0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    # None means unlimited.
    monthly_token_limit: Mapped[int | None] = mapped_column(Integer)
    features: Mapped[dict | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(back_populates="plan")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_status", "user_id", "status"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id"))
    status: Mapped[str] = mapped_column(
        Enum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        default="active",
        nullable=False,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    user: Mapped[User] = relationship(back_populates="subscriptions")
    plan: Mapped[SubscriptionPlan] = relationship(back_populates="subscriptions")


class TokenAllocation(Base):
    __tablename__ = "token_allocations"
    __table_args__ = (
        Index("ix_token_allocations_user_active", "user_id", "is_active"),
        Index("ix_token_allocations_reason", "reason"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    # Negative for admin subtractions.
    token_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_by: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    reason: Mapped[str | None] = mapped_column(String(255))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[User] = relationship(back_populates="token_allocations")


class TokenUsageLog(Base):
    __tablename__ = "token_usage_logs"
    __table_args__ = (
        Index("ix_token_usage_logs_user_type", "user_id", "request_type"),
        Index("ix_token_usage_logs_timestamp", "timestamp"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    model_id: Mapped[str | None] = mapped_column(String(64))
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False)
    cost: Mapped[float] = mapped_column(Numeric(10, 4, asdecimal=False), default=0.0)
    request_type: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[User] = relationship(back_populates="token_usage_logs")


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_logs"

    admin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(String(64), nullable=False)
    target_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


__all__ = [
    "SUBSCRIPTION_STATUSES",
    "User",
    "SubscriptionPlan",
    "Subscription",
    "TokenAllocation",
    "TokenUsageLog",
    "AdminAuditLog",
]
