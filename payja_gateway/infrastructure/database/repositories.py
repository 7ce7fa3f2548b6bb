"""Data access layer for USSD sessions, customers, loans and partners"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from payja_gateway.domain.flow import RegistrationFields
from payja_gateway.domain.models import (
    OPEN_LOAN_STATUSES,
    Customer,
    Decision,
    Flow,
    LoanRecord,
    LoanStatus,
    ScoringResult,
    SessionStatus,
)
from payja_gateway.infrastructure.database.models import (
    BankPartner,
    Loan,
    OutboundNotification,
    ScoringRecord,
    UssdSession,
    VerificationCode,
)
from payja_gateway.infrastructure.database.models import Customer as CustomerRow

RESUMABLE_SESSION_SCAN = 20


class SessionRepository:
    """
    Repository for USSD sessions.

    Claims and saves commit immediately: the version bump has to be visible to
    concurrent requests for the same session before the flow runs.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: str) -> Optional[UssdSession]:
        return self.db.get(UssdSession, session_id)

    def reload(self, session: UssdSession) -> UssdSession:
        self.db.refresh(session)
        return session

    def find_active(self, phone_number: str, flow: Flow) -> Optional[UssdSession]:
        return (
            self.db.query(UssdSession)
            .filter(
                UssdSession.phone_number == phone_number,
                UssdSession.flow == flow.value,
                UssdSession.status == SessionStatus.ACTIVE.value,
            )
            .first()
        )

    def create(
        self,
        phone_number: str,
        flow: Flow,
        state: str,
        fields: Mapping[str, Any],
        status: SessionStatus,
        response: str,
        now: datetime,
        ttl_seconds: float,
    ) -> UssdSession:
        """Insert a new session; IntegrityError means an ACTIVE one already exists"""
        session = UssdSession(
            phone_number=phone_number,
            flow=flow.value,
            state=state,
            fields=dict(fields),
            status=status.value,
            started_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            version=0,
            last_response=response,
        )
        self.db.add(session)
        self.db.commit()
        return session

    def claim(self, session: UssdSession, now: datetime, lease_seconds: float) -> Optional[int]:
        """
        Take the per-session lease.

        Returns the claimed version, or None when another request changed the
        row or still holds an unexpired lease.
        """
        expected = session.version
        result = self.db.execute(
            update(UssdSession)
            .where(
                UssdSession.id == session.id,
                UssdSession.version == expected,
                or_(UssdSession.locked_until.is_(None), UssdSession.locked_until <= now),
            )
            .values(version=expected + 1, locked_until=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None
        self.db.refresh(session)
        return expected + 1

    def stage(self, session: UssdSession, claimed_version: int, state: str) -> None:
        """Record the state a long-running step is in without releasing the lease"""
        self.db.execute(
            update(UssdSession)
            .where(UssdSession.id == session.id, UssdSession.version == claimed_version)
            .values(state=state)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def save(self, session: UssdSession, claimed_version: int, **values: Any) -> bool:
        """
        Write the outcome of a step and release the lease.

        Pending changes in the same unit of work (e.g. the customer created by
        a registration) commit together with the session; a lost claim rolls
        all of them back and returns False.
        """
        result = self.db.execute(
            update(UssdSession)
            .where(UssdSession.id == session.id, UssdSession.version == claimed_version)
            .values(version=claimed_version + 1, locked_until=None, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False
        self.db.commit()
        self.db.refresh(session)
        return True

    def expire(self, session: UssdSession) -> bool:
        """Mark a session EXPIRED unless another request changed it first"""
        result = self.db.execute(
            update(UssdSession)
            .where(UssdSession.id == session.id, UssdSession.version == session.version)
            .values(version=session.version + 1, status=SessionStatus.EXPIRED.value, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(session)
        return result.rowcount == 1

    def latest_registration_data(self, phone_number: str, exclude_id: str) -> Optional[Dict[str, Any]]:
        """Fields of the most recent earlier REGISTRATION session holding nuit and name"""
        sessions = (
            self.db.query(UssdSession)
            .filter(
                UssdSession.phone_number == phone_number,
                UssdSession.flow == Flow.REGISTRATION.value,
                UssdSession.id != exclude_id,
            )
            .order_by(UssdSession.started_at.desc())
            .limit(RESUMABLE_SESSION_SCAN)
            .all()
        )
        for session in sessions:
            data = session.fields or {}
            if data.get("nuit") and data.get("name"):
                return dict(data)
        return None


class CustomerRepository:
    """Repository for customers"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_phone(self, phone_number: str) -> Optional[CustomerRow]:
        return self.db.query(CustomerRow).filter(CustomerRow.phone_number == phone_number).first()

    def snapshot(self, phone_number: str) -> Optional[Customer]:
        """Domain view of the customer including the open-loan count"""
        row = self.get_by_phone(phone_number)
        if row is None:
            return None
        open_loans = (
            self.db.query(Loan)
            .filter(
                Loan.customer_phone == phone_number,
                Loan.status.in_([s.value for s in OPEN_LOAN_STATUSES]),
            )
            .count()
        )
        return Customer(
            phone_number=row.phone_number,
            name=row.name,
            nuit=row.nuit,
            national_id=row.national_id,
            verified=row.verified,
            profession=row.profession,
            salary=row.salary,
            salary_bank=row.salary_bank,
            bank_code=row.bank_code,
            credit_limit=row.credit_limit or 0.0,
            active_loan_count=open_loans,
        )

    def upsert_verified(
        self,
        phone_number: str,
        fields: RegistrationFields,
        bank_code: str,
        salary_bank: str,
        credit_limit: float,
    ) -> CustomerRow:
        """Create or update the customer at the end of a successful registration"""
        row = self.get_by_phone(phone_number)
        if row is None:
            row = CustomerRow(phone_number=phone_number)
            self.db.add(row)

        row.nuit = fields.nuit
        row.name = fields.name
        row.national_id = fields.national_id
        row.id_issue_date = fields.id_issue_date
        row.id_expiry_date = fields.id_expiry_date
        row.profession = fields.profession
        row.salary = fields.salary
        row.salary_bank = salary_bank
        row.bank_code = bank_code
        row.credit_limit = credit_limit
        row.verified = True
        self.db.flush()
        return row


class LoanRepository:
    """Repository for loans and their scoring records"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, phone_number: str, amount: float, term_months: int, now: datetime) -> Loan:
        loan = Loan(
            customer_phone=phone_number,
            amount=amount,
            term_months=term_months,
            status=LoanStatus.PENDING.value,
            created_at=now,
        )
        self.db.add(loan)
        self.db.commit()
        return loan

    def get(self, loan_id: str) -> Optional[Loan]:
        return self.db.get(Loan, loan_id)

    def set_status(self, loan_id: str, status: LoanStatus) -> None:
        loan = self.db.get(Loan, loan_id)
        loan.status = status.value
        self.db.commit()

    def history(self, phone_number: str) -> List[LoanRecord]:
        """All loans of a customer, newest first, as decision-engine records"""
        return [
            LoanRecord(
                loan_id=loan.id,
                amount=loan.amount,
                term_months=loan.term_months,
                status=LoanStatus(loan.status),
                created_at=loan.created_at,
                overdue=loan.overdue,
            )
            for loan in self.recent(phone_number, limit=None)
        ]

    def recent(self, phone_number: str, limit: Optional[int] = 20) -> List[Loan]:
        query = (
            self.db.query(Loan)
            .filter(Loan.customer_phone == phone_number)
            .order_by(Loan.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def apply_decision(self, loan_id: str, phone_number: str, result: ScoringResult, now: datetime) -> ScoringRecord:
        """
        Persist the scoring record and the resulting loan status in one
        transaction. MANUAL_REVIEW leaves the loan in ANALYZING.
        """
        try:
            record = ScoringRecord(
                customer_phone=phone_number,
                final_score=result.final_score,
                risk_tier=result.risk_tier.value if result.risk_tier else None,
                decision=result.decision.value,
                max_amount=result.max_amount,
                allowed_terms=list(result.allowed_terms),
                factors=result.factors.as_dict() if result.factors else None,
                reason=result.reason,
                created_at=now,
            )
            self.db.add(record)
            self.db.flush()

            loan = self.db.get(Loan, loan_id)
            loan.scoring_id = record.id
            loan.max_amount = result.max_amount
            if result.decision == Decision.APPROVED:
                loan.status = LoanStatus.APPROVED.value
                loan.approved_at = now
            elif result.decision == Decision.REJECTED:
                loan.status = LoanStatus.REJECTED.value
                loan.rejected_reason = result.reason
            else:
                loan.status = LoanStatus.ANALYZING.value

            self.db.commit()
            return record
        except Exception:
            self.db.rollback()
            raise

    def mark_disbursed(self, loan_id: str, reference: Optional[str]) -> None:
        loan = self.db.get(Loan, loan_id)
        loan.status = LoanStatus.DISBURSED.value
        loan.disbursement_reference = reference
        self.db.commit()

    def mark_failed(self, loan_id: str, reason: str) -> None:
        """Close a loan whose pipeline broke so it no longer counts as open"""
        self.db.rollback()
        loan = self.db.get(Loan, loan_id)
        loan.status = LoanStatus.REJECTED.value
        loan.rejected_reason = reason
        self.db.commit()


class PartnerRepository:
    """Repository for partner banks and operators"""

    def __init__(self, db: Session):
        self.db = db

    def list_all(self) -> List[BankPartner]:
        return self.db.query(BankPartner).order_by(BankPartner.priority, BankPartner.code).all()

    def active_banks(self) -> List[BankPartner]:
        """Active bank partners in sweep order"""
        return (
            self.db.query(BankPartner)
            .filter(BankPartner.active.is_(True), BankPartner.kind == "BANK")
            .order_by(BankPartner.priority, BankPartner.code)
            .all()
        )

    def get_by_code(self, code: str) -> Optional[BankPartner]:
        return self.db.query(BankPartner).filter(BankPartner.code == code).first()

    def record_attempt(self, code: str, success: bool) -> None:
        partner = self.get_by_code(code)
        if partner is None:
            return
        partner.total_requests = (partner.total_requests or 0) + 1
        if success:
            partner.successful_requests = (partner.successful_requests or 0) + 1
        else:
            partner.failed_requests = (partner.failed_requests or 0) + 1
        self.db.commit()

    def record_health(self, code: str, healthy: bool, now: datetime) -> None:
        partner = self.get_by_code(code)
        if partner is None:
            return
        partner.last_health_status = "UP" if healthy else "DOWN"
        partner.last_health_check = now
        self.db.commit()


class VerificationCodeRepository:
    def __init__(self, db: Session):
        self.db = db

    def issue(self, phone_number: str, code: str, now: datetime) -> VerificationCode:
        record = VerificationCode(phone_number=phone_number, code=code, issued_at=now)
        self.db.add(record)
        self.db.commit()
        return record

    def consume(self, phone_number: str, code: str, now: datetime, ttl_seconds: float) -> bool:
        """Mark a matching unexpired code as used; False when none matches"""
        record = (
            self.db.query(VerificationCode)
            .filter(
                VerificationCode.phone_number == phone_number,
                VerificationCode.code == code,
                VerificationCode.consumed_at.is_(None),
                VerificationCode.issued_at >= now - timedelta(seconds=ttl_seconds),
            )
            .order_by(VerificationCode.issued_at.desc())
            .first()
        )
        if record is None:
            return False
        record.consumed_at = now
        self.db.commit()
        return True


class NotificationRepository:
    """Repository for the outbound SMS queue"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, phone_number: str, message: str, kind: str) -> OutboundNotification:
        notification = OutboundNotification(phone_number=phone_number, message=message, kind=kind)
        self.db.add(notification)
        self.db.flush()
        return notification

    def get(self, notification_id: str) -> Optional[OutboundNotification]:
        return self.db.get(OutboundNotification, notification_id)

    def pending(self, max_attempts: int, limit: int = 50) -> List[OutboundNotification]:
        return (
            self.db.query(OutboundNotification)
            .filter(
                OutboundNotification.status == "pending",
                OutboundNotification.attempts < max_attempts,
            )
            .order_by(OutboundNotification.created_at)
            .limit(limit)
            .all()
        )

    def record_attempt(self, notification: OutboundNotification, delivered: bool, now: datetime, max_attempts: int) -> None:
        notification.attempts = (notification.attempts or 0) + 1
        notification.last_attempt_at = now
        if delivered:
            notification.status = "sent"
        elif notification.attempts >= max_attempts:
            notification.status = "failed"
        self.db.commit()
