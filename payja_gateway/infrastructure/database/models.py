"""SQLAlchemy ORM models for sessions, customers, loans and partners"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from payja_gateway.utils.date_utils import utcnow

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


class UssdSession(Base):
    """Position of one USSD dialogue plus replay and lock bookkeeping"""

    __tablename__ = "ussd_session"

    id = Column(String(32), primary_key=True, default=new_id)
    phone_number = Column(String(16), nullable=False, index=True)
    flow = Column(String(20), nullable=False)
    state = Column(String(40), nullable=False)
    fields = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="ACTIVE")
    started_at = Column(DateTime, nullable=False, default=utcnow)
    last_activity_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Optimistic concurrency and claim lease
    version = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime, nullable=True)

    # Replay detection
    last_input = Column(Text, nullable=True)
    last_request_id = Column(String(64), nullable=True)
    last_input_at = Column(DateTime, nullable=True)
    last_response = Column(Text, nullable=True)

    __table_args__ = (
        # One ACTIVE session per phone and flow
        Index(
            "uq_ussd_session_active",
            "phone_number",
            "flow",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class Customer(Base):
    __tablename__ = "customer"

    id = Column(String(32), primary_key=True, default=new_id)
    phone_number = Column(String(16), nullable=False, unique=True)
    nuit = Column(String(9), nullable=True, unique=True)
    name = Column(Text, nullable=True)
    national_id = Column(String(32), nullable=True)
    id_issue_date = Column(String(10), nullable=True)
    id_expiry_date = Column(String(10), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    profession = Column(Text, nullable=True)
    salary = Column(Float, nullable=True)
    salary_bank = Column(Text, nullable=True)
    bank_code = Column(String(32), nullable=True)
    credit_limit = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    loans = relationship("Loan", back_populates="customer", order_by="Loan.created_at.desc()")


class ScoringRecord(Base):
    """Immutable record of a scoring run"""

    __tablename__ = "scoring_result"

    id = Column(String(32), primary_key=True, default=new_id)
    customer_phone = Column(String(16), nullable=False, index=True)
    final_score = Column(Integer, nullable=True)
    risk_tier = Column(String(16), nullable=True)
    decision = Column(String(16), nullable=False)
    max_amount = Column(Float, nullable=False)
    allowed_terms = Column(JSON, nullable=False, default=list)
    factors = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Loan(Base):
    __tablename__ = "loan"

    id = Column(String(32), primary_key=True, default=new_id)
    customer_phone = Column(String(16), ForeignKey("customer.phone_number"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    term_months = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")
    max_amount = Column(Float, nullable=True)
    overdue = Column(Boolean, nullable=False, default=False)
    approved_at = Column(DateTime, nullable=True)
    rejected_reason = Column(Text, nullable=True)
    scoring_id = Column(String(32), ForeignKey("scoring_result.id"), nullable=True)
    disbursement_reference = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    customer = relationship("Customer", back_populates="loans")
    scoring = relationship("ScoringRecord")


class BankPartner(Base):
    """Partner bank or mobile money operator with health counters"""

    __tablename__ = "bank_partner"

    id = Column(String(32), primary_key=True, default=new_id)
    code = Column(String(32), nullable=False, unique=True)
    name = Column(Text, nullable=False)
    kind = Column(String(16), nullable=False, default="BANK")
    api_url = Column(Text, nullable=False)
    api_key = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=100)
    timeout_seconds = Column(Float, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    total_requests = Column(Integer, nullable=False, default=0)
    successful_requests = Column(Integer, nullable=False, default=0)
    failed_requests = Column(Integer, nullable=False, default=0)
    last_health_status = Column(String(16), nullable=True)
    last_health_check = Column(DateTime, nullable=True)


class VerificationCode(Base):
    __tablename__ = "verification_code"

    id = Column(String(32), primary_key=True, default=new_id)
    phone_number = Column(String(16), nullable=False, index=True)
    code = Column(String(6), nullable=False)
    issued_at = Column(DateTime, nullable=False, default=utcnow)
    consumed_at = Column(DateTime, nullable=True)


class OutboundNotification(Base):
    """SMS delivery queue with retry tracking"""

    __tablename__ = "outbound_notification"

    id = Column(String(32), primary_key=True, default=new_id)
    phone_number = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    kind = Column(String(32), nullable=False, default="info")
    status = Column(String(16), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
