from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Index,
    CheckConstraint,
)
from sqlalchemy.sql import func

from agripay.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# intent statuses
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

OPEN_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


class PaymentIntent(Base):
    """One attempted M-Pesa charge. Rows are financial audit records and are never deleted."""

    __tablename__ = "payment_intents"
    id = Column(Integer, primary_key=True)
    # provider ids are unknown until the push has been acknowledged
    checkout_id = Column(String(128), nullable=True, unique=True)
    merchant_request_id = Column(String(128), nullable=True)
    phone = Column(String(16), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="KES")
    status = Column(String(20), nullable=False, default=PENDING, index=True)
    reference = Column(String(64), nullable=True)
    description = Column(String(255), nullable=True)
    receipt_number = Column(String(64), nullable=True)
    transaction_date = Column(String(32), nullable=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(512), nullable=True)
    raw_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    # sweeper bookkeeping for intents whose status query keeps failing
    reconcile_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payment_intents_status_created", "status", "created_at"),
        CheckConstraint("amount > 0", name="ck_payment_intents_amount_positive"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor = Column(String(64), nullable=False, index=True)
    action = Column(String(255), nullable=False)
    object_type = Column(String(128), nullable=True)
    object_id = Column(String(128), nullable=True, index=True)
    detail = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
