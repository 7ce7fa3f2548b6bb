"""
Building blocks shared by the USSD state machines.

A flow never performs I/O. `advance` maps (state, fields, input, context) to a
Transition; when the next step needs the outside world the transition carries
a command, the session controller executes it and hands the result back to
`resume`, which produces the transition that is finally stored.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Generic, Mapping, Optional, Tuple, TypeVar, Union

from payja_gateway.domain.models import (
    Customer,
    DisbursementResult,
    Flow,
    LoanRecord,
    ScoringResult,
    SessionStatus,
    SweepOutcome,
)

CONTINUE = "CON"
END = "END"

# Terminal state every flow falls into when a step raises
ERROR_STATE = "ERROR"

GENERIC_ERROR_MESSAGE = "Erro ao processar. Tente novamente mais tarde."
SESSION_EXPIRED_MESSAGE = "Sessao expirada. Disque novamente para recomecar."


@dataclass(frozen=True)
class RegistrationFields:
    nuit: Optional[str] = None
    name: Optional[str] = None
    national_id: Optional[str] = None
    id_issue_date: Optional[str] = None
    id_expiry_date: Optional[str] = None
    profession: Optional[str] = None
    salary: Optional[float] = None
    salary_bank: Optional[str] = None
    code_sent: Optional[bool] = None
    bank_code: Optional[str] = None
    credit_limit: Optional[float] = None

    @property
    def has_identity(self) -> bool:
        return bool(self.nuit and self.name)


@dataclass(frozen=True)
class LoanRequestFields:
    credit_limit: Optional[float] = None
    amount: Optional[float] = None
    term_months: Optional[int] = None
    loan_id: Optional[str] = None
    decision: Optional[str] = None
    max_amount: Optional[float] = None
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    disbursed: Optional[bool] = None


FieldsT = TypeVar("FieldsT", RegistrationFields, LoanRequestFields)


def load_fields(cls, data: Optional[Mapping[str, Any]]):
    """Build a typed field set from its stored JSON object, ignoring unknown keys"""
    known = {f.name for f in dataclass_fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in known})


def dump_fields(value) -> Dict[str, Any]:
    """Flat JSON object with only the keys that were ever set"""
    return {k: v for k, v in asdict(value).items() if v is not None}


def merge_fields(value: FieldsT, updates: Mapping[str, Any]) -> FieldsT:
    return replace(value, **updates) if updates else value


# Commands: work the controller performs on behalf of a flow


@dataclass(frozen=True)
class SendVerificationCode:
    phone_number: str


@dataclass(frozen=True)
class VerifyCode:
    phone_number: str
    code: str


@dataclass(frozen=True)
class FinalizeRegistration:
    phone_number: str
    fields: RegistrationFields


@dataclass(frozen=True)
class ProcessLoan:
    phone_number: str
    amount: float
    term_months: int


Command = Union[SendVerificationCode, VerifyCode, FinalizeRegistration, ProcessLoan]


@dataclass(frozen=True)
class RegistrationOutcome:
    """Result of FinalizeRegistration"""

    sweep: SweepOutcome
    registered: bool
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    credit_limit: float = 0.0


@dataclass(frozen=True)
class LoanOutcome:
    """Result of ProcessLoan"""

    loan_id: str
    scoring: ScoringResult
    disbursement: Optional[DisbursementResult] = None


@dataclass(frozen=True)
class FlowContext:
    """Read-only snapshot loaded by the controller before a transition"""

    phone_number: str
    now: datetime
    customer: Optional[Customer] = None
    recent_loans: Tuple[LoanRecord, ...] = ()
    resumable_fields: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Transition:
    next_state: str
    message: str
    updates: Mapping[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    command: Optional[Command] = None
    notifications: Tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.ACTIVE

    def render(self) -> str:
        prefix = END if self.is_terminal else CONTINUE
        return f"{prefix} {self.message}"


def render_terminal(message: str) -> str:
    return f"{END} {message}"


class UssdFlow(ABC, Generic[FieldsT]):
    """Common plumbing for a flow; subclasses define states and handlers"""

    flow: Flow
    fields_type: type

    def load(self, data: Optional[Mapping[str, Any]]) -> FieldsT:
        return load_fields(self.fields_type, data)

    def reprompt(self, state: str, fields: FieldsT, ctx: FlowContext, error: str) -> Transition:
        """Same state, error line above the prompt, nothing else changes"""
        return Transition(next_state=state, message=f"{error}\n\n{self.prompt(state, fields, ctx)}")

    @abstractmethod
    def start(self, ctx: FlowContext) -> Transition:
        ...

    @abstractmethod
    def prompt(self, state: str, fields: FieldsT, ctx: FlowContext) -> str:
        ...

    @abstractmethod
    def advance(self, state: str, fields: FieldsT, user_input: str, ctx: FlowContext) -> Transition:
        ...

    @abstractmethod
    def resume(self, state: str, fields: FieldsT, command: Command, result: Any, ctx: FlowContext) -> Transition:
        ...
