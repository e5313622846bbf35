"""Processed payment-processor webhook events, for replay detection."""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.database import Base, JSONType, UTCDateTime, utcnow


class ProcessorEvent(Base):
    __tablename__ = "processor_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    handled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcome: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
