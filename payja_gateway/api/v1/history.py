"""GET /v1/loans/history and GET /v1/loans/{loan_id}/plan - loan lookups"""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from payja_gateway.api.v1.schemas import (
    InstallmentSchema,
    LoanHistoryItem,
    LoanHistoryResponse,
    LoanPlanResponse,
)
from payja_gateway.domain.exceptions import InputValidationError
from payja_gateway.domain.installments import (
    DAYS_PER_MONTH,
    generate_installment_plan,
    interest_rate_for,
    total_repayable,
)
from payja_gateway.domain.validators import normalize_phone
from payja_gateway.infrastructure.database.repositories import LoanRepository
from payja_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("/loans/history", response_model=LoanHistoryResponse)
def get_loan_history(
    phone_number: str = Query(..., description="Customer MSISDN"),
    db: Session = Depends(get_db),
):
    """
    Retrieve a customer's recent loans with the decision behind each.

    Returns:
        Up to 20 loans, newest first
    """
    try:
        phone = normalize_phone(phone_number)
    except InputValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    loans = LoanRepository(db).recent(phone, limit=20)

    items = [
        LoanHistoryItem(
            loan_id=loan.id,
            amount=loan.amount,
            term_months=loan.term_months,
            status=loan.status,
            decision=loan.scoring.decision if loan.scoring else None,
            final_score=loan.scoring.final_score if loan.scoring else None,
            risk_tier=loan.scoring.risk_tier if loan.scoring else None,
            max_amount=loan.max_amount,
            reason=loan.scoring.reason if loan.scoring else loan.rejected_reason,
            created_at=loan.created_at.isoformat(),
        )
        for loan in loans
    ]

    return LoanHistoryResponse(phone_number=phone, loans=items)


@router.get("/loans/{loan_id}/plan", response_model=LoanPlanResponse)
def get_loan_plan(loan_id: str, db: Session = Depends(get_db)):
    """
    Repayment schedule for a loan: equal monthly installments, the last one
    absorbing the rounding remainder.
    """
    loan = LoanRepository(db).get(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    # First installment is due one month after approval
    start = (loan.approved_at or loan.created_at).date() + timedelta(days=DAYS_PER_MONTH)
    installments = generate_installment_plan(loan.amount, loan.term_months, start_date=start)

    return LoanPlanResponse(
        loan_id=loan.id,
        amount=loan.amount,
        term_months=loan.term_months,
        interest_rate=interest_rate_for(loan.term_months),
        total=total_repayable(loan.amount, loan.term_months),
        installments=[InstallmentSchema(due_date=i.due_date, amount=i.amount) for i in installments],
    )
