"""Pydantic schemas for API request/response validation"""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from payja_gateway.domain.models import Flow


class CamelModel(BaseModel):
    """USSD gateway payloads use camelCase keys"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartSessionRequest(CamelModel):
    """Request body for POST /session"""

    phone_number: str = Field(..., min_length=9, description="Caller MSISDN")
    flow: Flow = Field(Flow.REGISTRATION, description="REGISTRATION (*899#) or LOAN_REQUEST (*898#)")


class StartSessionResponse(CamelModel):
    session_id: str
    message: str


class ContinueSessionRequest(CamelModel):
    """Request body for POST /continue"""

    session_id: str = Field(..., min_length=1)
    user_input: str = Field(..., max_length=182, description="Raw keystrokes for this turn")
    request_id: Optional[str] = Field(None, max_length=64, description="Gateway retry key")


class ContinueSessionResponse(CamelModel):
    message: str


class LoanHistoryItem(BaseModel):
    """Single loan with its decision"""

    loan_id: str
    amount: float
    term_months: int
    status: str
    decision: Optional[str] = None
    final_score: Optional[int] = None
    risk_tier: Optional[str] = None
    max_amount: Optional[float] = None
    reason: Optional[str] = None
    created_at: str


class LoanHistoryResponse(BaseModel):
    """Response for GET /v1/loans/history"""

    phone_number: str
    loans: List[LoanHistoryItem]


class InstallmentSchema(BaseModel):
    """Single installment in a repayment plan"""

    due_date: date
    amount: float
    status: str = "scheduled"


class LoanPlanResponse(BaseModel):
    """Response for GET /v1/loans/{loan_id}/plan"""

    loan_id: str
    amount: float
    term_months: int
    interest_rate: float
    total: float
    installments: List[InstallmentSchema]


class PartnerSchema(BaseModel):
    code: str
    name: str
    kind: str
    priority: int
    active: bool
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: Optional[float] = None
    last_health_status: Optional[str] = None
    last_health_check: Optional[str] = None


class PartnerListResponse(BaseModel):
    partners: List[PartnerSchema]


class ConnectionTestResponse(BaseModel):
    code: str
    success: bool
    message: str


class WalletBalanceResponse(BaseModel):
    phone_number: str
    operator: str
    active: bool
    balance: float
    account_name: Optional[str] = None
