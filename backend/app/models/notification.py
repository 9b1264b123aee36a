from sqlalchemy import String, ForeignKey, Integer, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, Any
from backend.app.core.base import Base
from backend.app.core.timeutils import utcnow


class NotificationOutbox(Base):
    """Persisted in-app notifications. `payload` is a tagged union keyed by `kind`."""
    __tablename__ = 'notification_outbox'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey('merchants.id'), nullable=False)
    kind: Mapped[str] = mapped_column(String(48), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_notification_outbox_merchant_created', 'merchant_id', 'created_at'),
    )
