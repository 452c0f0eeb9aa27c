"""
SQLAlchemy ORM Models for Agentic Checkout

Session and order documents are stored as JSON blobs next to the indexed
scalar columns the state machine and the vault query on.
"""
from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    PrimaryKeyConstraint,
)
from sqlalchemy.orm import declarative_base

from ..timeutils import utcnow
from .types import UTCDateTime

Base = declarative_base()


class CheckoutSessionModel(Base):
    """
    ORM model for checkout_sessions table.

    session_data holds the rendered session document; request_items keeps
    the items exactly as the client sent them so updates can re-resolve
    items that failed catalog lookup.
    """
    __tablename__ = "checkout_sessions"

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, index=True)
    currency = Column(String, nullable=False)
    session_data = Column(Text, nullable=False)  # JSON blob
    request_items = Column(Text, nullable=False)  # JSON blob
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('not_ready_for_payment', 'ready_for_payment', 'completed', 'canceled')",
            name="checkout_status_check",
        ),
    )


class OrderModel(Base):
    """
    ORM model for orders table.

    The unique checkout_session_id makes a second order for one session
    impossible at the storage level.
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    checkout_session_id = Column(
        String, ForeignKey("checkout_sessions.id"), nullable=False, unique=True
    )
    permalink_url = Column(String, nullable=False)
    status = Column(String, nullable=False)
    charge_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    order_data = Column(Text, nullable=False)  # JSON blob
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class DelegatedTokenModel(Base):
    """
    ORM model for delegated_tokens table.

    Allowance columns are written once at issue time. Only used/used_at
    ever change, through a conditional UPDATE claim.
    """
    __tablename__ = "delegated_tokens"

    id = Column(String, primary_key=True)
    processor_token = Column(String, nullable=False)
    payment_method = Column(Text, nullable=False)  # JSON blob, display fields only
    allowance_reason = Column(String, nullable=False)
    max_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    checkout_session_id = Column(String, nullable=False, index=True)
    merchant_id = Column(String, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    billing_address = Column(Text)  # JSON blob
    risk_signals = Column(Text)  # JSON blob
    token_metadata = Column(Text)  # JSON blob
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("allowance_reason = 'one_time'", name="allowance_reason_check"),
        CheckConstraint("max_amount > 0", name="max_amount_check"),
    )


class IdempotencyRecordModel(Base):
    """
    ORM model for idempotency_records table.

    A row is inserted as 'pending' to reserve the key and filled with the
    response exactly once when the request finishes.
    """
    __tablename__ = "idempotency_records"

    operation = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    request_fingerprint = Column(String, nullable=False)
    state = Column(String, nullable=False, default="pending")
    response_status = Column(Integer)
    response_body = Column(Text)
    reserved_at = Column(UTCDateTime, nullable=False, default=utcnow)
    recorded_at = Column(UTCDateTime, index=True)

    __table_args__ = (
        PrimaryKeyConstraint("operation", "idempotency_key"),
        CheckConstraint("state IN ('pending', 'completed')", name="idempotency_state_check"),
    )
