"""
SQLAlchemy 2.0 database models for Pledge Hub.

Uniqueness rules that must hold under concurrent clients (one approved link
per brokerage account, one pending request per user, one live pledge per
user and session, one completed leg per side) are partial unique indexes,
declared for both PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MONEY = Numeric(18, 4)

_LIVE_PLEDGE = "status NOT IN ('executed', 'failed', 'cancelled')"


def new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Platform user. Brokerage link fields are set when access is approved."""

    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")  # user, admin
    has_pledge_access = Column(Boolean, nullable=False, default=False)
    linked_brokerage_account_id = Column(String(18), nullable=True)
    linked_broker = Column(String, nullable=True)
    pledge_access_granted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role}, has_pledge_access={self.has_pledge_access})>"


class PledgeAccessRequest(Base):
    """A user's request to link a brokerage account for pledging."""

    __tablename__ = "pledge_access_requests"
    __table_args__ = (
        Index(
            "uq_access_requests_approved_account",
            "brokerage_account_id",
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
        Index(
            "uq_access_requests_pending_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_access_requests_status", "status"),
        CheckConstraint("risk_score BETWEEN 0 AND 100", name="ck_access_requests_risk_score"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    brokerage_account_id = Column(String(18), nullable=False)
    broker = Column(String, nullable=False)
    trading_experience = Column(String, nullable=True)
    annual_income_range = Column(String, nullable=True)
    risk_score = Column(Integer, nullable=False)
    consent_given = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="pending")  # pending, approved, rejected
    submitted_at = Column(DateTime, nullable=False, default=_utcnow)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(32), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    user = relationship("User", backref="access_requests")

    def __repr__(self) -> str:
        return f"<PledgeAccessRequest(id={self.id}, user_id={self.user_id}, status={self.status})>"


class PledgeSession(Base):
    """Admin-defined, time-boxed window collecting pledges for one stock."""

    __tablename__ = "pledge_sessions"
    __table_args__ = (
        CheckConstraint(
            "min_qty IS NULL OR max_qty IS NULL OR min_qty <= max_qty",
            name="ck_pledge_sessions_qty_bounds",
        ),
        CheckConstraint("convenience_fee_amount >= 0", name="ck_pledge_sessions_fee"),
        Index("ix_pledge_sessions_status", "status"),
        Index("ix_pledge_sessions_stock_symbol", "stock_symbol"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    stock_symbol = Column(String, nullable=False)
    stock_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    session_mode = Column(String, nullable=False)  # buy_only, sell_only, buy_sell_cycle
    execution_rule = Column(String, nullable=False, default="manual")  # manual, session_end
    status = Column(String, nullable=False, default="active")
    session_start = Column(DateTime, nullable=False)
    session_end = Column(DateTime, nullable=False)
    min_qty = Column(Integer, nullable=True, default=1)
    max_qty = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    convenience_fee_type = Column(String, nullable=False, default="flat")  # flat, percentage
    convenience_fee_amount = Column(MONEY, nullable=False, default=0)
    commission_rate_override = Column(MONEY, nullable=True)
    allow_amo = Column(Boolean, nullable=False, default=False)
    stock_price = Column(MONEY, nullable=True)  # reference price for session-level execution
    last_executed_at = Column(DateTime, nullable=True)
    execution_notes = Column(Text, nullable=True)
    created_by = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    pledges = relationship("Pledge", back_populates="session")

    def __repr__(self) -> str:
        return f"<PledgeSession(id={self.id}, stock_symbol={self.stock_symbol}, status={self.status})>"


class Pledge(Base):
    """A user's commitment to buy or sell within a session."""

    __tablename__ = "pledges"
    __table_args__ = (
        Index(
            "uq_pledges_live_per_user_session",
            "user_id",
            "session_id",
            unique=True,
            postgresql_where=text(_LIVE_PLEDGE),
            sqlite_where=text(_LIVE_PLEDGE),
        ),
        Index("ix_pledges_session_status", "session_id", "status"),
        Index("ix_pledges_user_id", "user_id"),
        CheckConstraint("qty > 0", name="ck_pledges_qty_positive"),
        CheckConstraint("price_target > 0", name="ck_pledges_price_positive"),
        CheckConstraint("convenience_fee_amount >= 0", name="ck_pledges_fee"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    session_id = Column(String(32), ForeignKey("pledge_sessions.id"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    brokerage_account_id = Column(String(18), nullable=False)
    stock_symbol = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    price_target = Column(MONEY, nullable=False)
    side = Column(String, nullable=False)  # buy, sell
    consent_hash = Column(String(64), nullable=True)
    risk_acknowledgment = Column(JSON, nullable=True)
    digital_consent = Column(JSON, nullable=True)
    convenience_fee_amount = Column(MONEY, nullable=False, default=0)
    convenience_fee_paid = Column(Boolean, nullable=False, default=False)
    convenience_fee_payment_id = Column(String(32), nullable=True)
    auto_sell_config = Column(JSON, nullable=True)
    auto_sell_paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="draft")
    version = Column(Integer, nullable=False, default=1)
    client_correlation_id = Column(String(64), nullable=True, index=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    session = relationship("PledgeSession", back_populates="pledges")
    payments = relationship("PledgePayment", back_populates="pledge", order_by="PledgePayment.created_at")
    execution_records = relationship(
        "PledgeExecutionRecord", back_populates="pledge", order_by="PledgeExecutionRecord.created_at"
    )

    def __repr__(self) -> str:
        return f"<Pledge(id={self.id}, session_id={self.session_id}, side={self.side}, status={self.status})>"


class PledgePayment(Base):
    """One convenience-fee payment attempt. Retries add rows, never update them."""

    __tablename__ = "pledge_payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_pledge_payments_amount"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    pledge_id = Column(String(32), ForeignKey("pledges.id"), nullable=True, index=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String, nullable=False)  # completed, failed
    payment_ref = Column(String, nullable=True)
    payment_provider = Column(String, nullable=False)
    payment_method = Column(String, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    pledge = relationship("Pledge", back_populates="payments")

    def __repr__(self) -> str:
        return f"<PledgePayment(id={self.id}, pledge_id={self.pledge_id}, status={self.status})>"


class PledgeExecutionRecord(Base):
    """One executed (or failed) leg of a pledge."""

    __tablename__ = "pledge_execution_records"
    __table_args__ = (
        Index(
            "uq_execution_records_leg",
            "pledge_id",
            "side",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
        Index("ix_execution_records_user_id", "user_id"),
        Index("ix_execution_records_session_id", "session_id"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    pledge_id = Column(String(32), ForeignKey("pledges.id"), nullable=False)
    session_id = Column(String(32), ForeignKey("pledge_sessions.id"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    brokerage_account_id = Column(String(18), nullable=False)
    stock_symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    pledged_qty = Column(Integer, nullable=False)
    executed_qty = Column(Integer, nullable=False, default=0)
    executed_price = Column(MONEY, nullable=True)
    total_execution_value = Column(MONEY, nullable=False, default=0)
    platform_commission = Column(MONEY, nullable=False, default=0)
    commission_rate = Column(MONEY, nullable=True)
    broker_commission = Column(MONEY, nullable=False, default=0)
    realized_pl = Column(MONEY, nullable=True)
    net_amount = Column(MONEY, nullable=False, default=0)
    status = Column(String, nullable=False)  # pending, partial, completed, failed, cancelled
    broker_order_id = Column(String, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    settlement_date = Column(Date, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    pledge = relationship("Pledge", back_populates="execution_records")

    def __repr__(self) -> str:
        return f"<PledgeExecutionRecord(id={self.id}, pledge_id={self.pledge_id}, side={self.side}, status={self.status})>"


class PledgeAuditLog(Base):
    """Append-only audit trail. ``sequence`` is the creation order."""

    __tablename__ = "pledge_audit_logs"
    __table_args__ = (
        Index("ix_pledge_audit_logs_actor_id", "actor_id"),
        Index("ix_pledge_audit_logs_target_pledge_id", "target_pledge_id"),
        Index("ix_pledge_audit_logs_target_session_id", "target_session_id"),
        Index("ix_pledge_audit_logs_created_at", "created_at"),
    )

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), unique=True, nullable=False, default=new_id)
    actor_id = Column(String(32), nullable=True)  # null for system actions
    actor_role = Column(String, nullable=False)  # user, admin, system
    action = Column(String, nullable=False)
    target_type = Column(String, nullable=False)  # pledge, session, access_request, payment
    target_pledge_id = Column(String(32), nullable=True)
    target_session_id = Column(String(32), nullable=True)
    payload = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<PledgeAuditLog(sequence={self.sequence}, action={self.action}, success={self.success})>"
