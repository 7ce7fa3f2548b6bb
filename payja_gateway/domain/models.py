"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Flow(str, Enum):
    REGISTRATION = "REGISTRATION"
    LOAN_REQUEST = "LOAN_REQUEST"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"


class LoanStatus(str, Enum):
    PENDING = "PENDING"
    ANALYZING = "ANALYZING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISBURSED = "DISBURSED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"


# A customer may hold at most one loan in any of these
OPEN_LOAN_STATUSES = frozenset(
    {
        LoanStatus.PENDING,
        LoanStatus.ANALYZING,
        LoanStatus.APPROVED,
        LoanStatus.DISBURSED,
        LoanStatus.ACTIVE,
    }
)


class RiskTier(str, Enum):
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class PartnerKind(str, Enum):
    BANK = "BANK"
    MOBILE_MONEY = "MOBILE_MONEY"


PUBLIC_EMPLOYEE = "Funcionario Publico"


@dataclass
class Customer:
    """Customer snapshot as seen by the flows and the decision engine"""

    phone_number: str
    name: Optional[str] = None
    nuit: Optional[str] = None
    national_id: Optional[str] = None
    verified: bool = False
    profession: Optional[str] = None
    salary: Optional[float] = None
    salary_bank: Optional[str] = None
    bank_code: Optional[str] = None
    credit_limit: float = 0.0
    active_loan_count: int = 0

    @property
    def is_public_employee(self) -> bool:
        return self.profession == PUBLIC_EMPLOYEE


@dataclass
class LoanRecord:
    """A loan in the customer's history"""

    loan_id: str
    amount: float
    term_months: int
    status: LoanStatus
    created_at: datetime
    overdue: bool = False

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES


@dataclass(frozen=True)
class CandidateLoan:
    """Loan being decided"""

    amount: float
    term_months: Optional[int] = None
    loan_id: Optional[str] = None


@dataclass(frozen=True)
class ScoringFactors:
    """Independently computed score components"""

    base_score: float
    history_score: float
    amount_score: float
    frequency_score: float
    payment_history_score: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "baseScore": self.base_score,
            "historyScore": self.history_score,
            "amountScore": self.amount_score,
            "frequencyScore": self.frequency_score,
            "paymentHistoryScore": self.payment_history_score,
        }


@dataclass(frozen=True)
class DecisionOutcome:
    """Verdict for a requested amount"""

    decision: Decision
    max_amount: float
    allowed_terms: Tuple[int, ...] = ()
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.decision == Decision.APPROVED


@dataclass(frozen=True)
class ScoringResult:
    """Output of the scoring engine; never mutated once built"""

    factors: Optional[ScoringFactors]
    final_score: Optional[int]
    risk_tier: Optional[RiskTier]
    decision: Decision
    max_amount: float
    allowed_terms: Tuple[int, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class EligibilityIdentity:
    """Identity sent to partners during an eligibility check"""

    phone_number: str
    nuit: Optional[str] = None
    name: Optional[str] = None
    national_id: Optional[str] = None
    requested_amount: Optional[float] = None


@dataclass(frozen=True)
class EligibilityResult:
    partner_code: str
    partner_name: str
    eligible: bool
    max_amount: Optional[float] = None
    interest_rate: Optional[float] = None
    max_term: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class PartnerAttempt:
    """One partner call made during a sweep"""

    partner_code: str
    responded: bool
    eligible: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class SweepOutcome:
    winner: Optional[EligibilityResult]
    attempts: List[PartnerAttempt] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """True when no partner produced an answer at all"""
        return not any(a.responded for a in self.attempts)


@dataclass(frozen=True)
class DisbursementResult:
    partner_code: str
    success: bool
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    error: Optional[str] = None
    attempts: int = 1


@dataclass(frozen=True)
class BalanceResult:
    operator: str
    active: bool
    balance: float = 0.0
    account_name: Optional[str] = None


@dataclass
class Installment:
    """Single payment in a repayment plan"""

    due_date: date
    amount: float
