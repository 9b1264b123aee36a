from sqlalchemy import String, ForeignKey, Integer, DateTime, Boolean, Index, JSON, Text, Numeric, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from backend.app.core.base import Base
from backend.app.core.timeutils import utcnow


class MerchantSubscription(Base):
    """One row per merchant. Only the auto-switch engine, the manual switch,
    payment verification and admin overrides write it; never deleted."""
    __tablename__ = 'merchant_subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default='TRIAL')  # NONE/TRIAL/DEPOSIT/MONTHLY
    status: Mapped[str] = mapped_column(String(16), nullable=False, default='ACTIVE')  # ACTIVE/SUSPENDED/CANCELLED
    trial_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    suspend_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    in_grace_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status != 'SUSPENDED' OR suspend_reason IS NOT NULL",
            name='suspended_has_reason',
        ),
        Index('ix_merchant_subscriptions_status', 'status'),
    )


class SubscriptionHistory(Base):
    """Append-only audit trail of subscription transitions."""
    __tablename__ = 'subscription_history'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(16), nullable=False)  # system/admin/owner
    old_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    old_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    balance_snapshot: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    event_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column('metadata', JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_subscription_history_merchant_created', 'merchant_id', 'created_at'),
    )


class SubscriptionPlan(Base):
    """Admin-configurable plan settings. A single row keyed 'default' is active."""
    __tablename__ = 'subscription_plans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_key: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, default='default')
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    trial_grace_days: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    monthly_grace_days: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    deposit_grace_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_request_expiry_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    # {"IDR": {"deposit_minimum": "100000", "order_fee": "250", "monthly_price": "100000"}, ...}
    pricing: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
