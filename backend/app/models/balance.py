from sqlalchemy import String, ForeignKey, Integer, DateTime, Numeric, Index, Text, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base
from backend.app.core.timeutils import utcnow


class MerchantBalance(Base):
    """Prepaid deposit balance, one row per merchant and currency."""
    __tablename__ = 'merchant_balances'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    last_topup_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('merchant_id', 'currency', name='uq_merchant_balances_merchant_currency'),
        CheckConstraint('balance >= 0', name='balance_non_negative'),
    )


class BalanceTransaction(Base):
    """Immutable ledger entry for every balance movement."""
    __tablename__ = 'balance_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # TOPUP/ORDER_FEE/ADJUSTMENT
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)  # signed
    balance_before: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_request_id: Mapped[Optional[int]] = mapped_column(ForeignKey('payment_requests.id'), nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey('orders.id'), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_balance_transactions_merchant_created', 'merchant_id', 'created_at'),
    )
