from sqlalchemy import String, ForeignKey, Integer, DateTime, Numeric, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base
from backend.app.core.timeutils import utcnow


class PaymentRequest(Base):
    """Merchant-initiated bank transfer claim: top-up or monthly renewal."""
    __tablename__ = 'payment_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)  # DEPOSIT_TOPUP/MONTHLY_SUBSCRIPTION
    status: Mapped[str] = mapped_column(String(16), nullable=False, default='PENDING')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    months_requested: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transfer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verified_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        # At most one open (PENDING/CONFIRMED) request per merchant
        Index(
            'uq_payment_requests_open_per_merchant',
            'merchant_id',
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
        Index('ix_payment_requests_status_expires', 'status', 'expires_at'),
    )
