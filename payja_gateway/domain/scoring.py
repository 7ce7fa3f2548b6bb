"""Credit scoring and decision engine - core business logic for loan approvals"""

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from payja_gateway.domain.exceptions import DecisionConflictError
from payja_gateway.domain.models import (
    CandidateLoan,
    Customer,
    Decision,
    DecisionOutcome,
    LoanRecord,
    LoanStatus,
    RiskTier,
    ScoringFactors,
    ScoringResult,
)
from payja_gateway.domain.validators import format_amount

MIN_SCORE = 300
MAX_SCORE = 850
AMOUNT_REFERENCE = 50_000
FREQUENCY_WINDOW_DAYS = 30
MANUAL_REVIEW_THRESHOLD = 550

# (minimum score, cap, allowed terms, approval message), highest band first
SCORE_BANDS: List[Tuple[int, float, Tuple[int, ...], str]] = [
    (750, 50_000, (3, 6, 12, 18, 24), "Cliente premium - aprovado sem restricoes"),
    (600, 30_000, (3, 6, 12), "Aprovado dentro dos limites standard"),
    (500, 10_000, (3, 6), "Aprovado com limite reduzido"),
]

PUBLIC_EMPLOYEE_TERMS = (3, 6, 12)


def _prior_loans(history: Sequence[LoanRecord], candidate: CandidateLoan) -> List[LoanRecord]:
    return [loan for loan in history if candidate.loan_id is None or loan.loan_id != candidate.loan_id]


def calculate_factors(
    history: Sequence[LoanRecord],
    candidate: CandidateLoan,
    now: datetime,
) -> ScoringFactors:
    """
    Compute each score component independently.

    - baseScore: 400 for a first loan, 500 once the customer has history
    - historyScore: 50 per completed loan, capped at 150
    - amountScore: shrinks linearly as the request approaches 50,000 MZN
    - frequencyScore: 0 when more than 2 loans started in the last 30 days
    - paymentHistoryScore: loses 50 per overdue or defaulted loan
    """
    prior = _prior_loans(history, candidate)

    base_score = 500 if prior else 400

    completed = sum(1 for loan in prior if loan.status == LoanStatus.COMPLETED)
    history_score = min(completed * 50, 150)

    amount_score = max(0.0, 100 - (candidate.amount / AMOUNT_REFERENCE) * 100)

    window_start = now - timedelta(days=FREQUENCY_WINDOW_DAYS)
    recent = sum(1 for loan in prior if loan.created_at >= window_start)
    frequency_score = 0 if recent > 2 else 100

    troubled = sum(1 for loan in prior if loan.overdue or loan.status == LoanStatus.DEFAULTED)
    payment_history_score = max(0, 100 - troubled * 50)

    return ScoringFactors(
        base_score=base_score,
        history_score=history_score,
        amount_score=amount_score,
        frequency_score=frequency_score,
        payment_history_score=payment_history_score,
    )


def calculate_final_score(factors: ScoringFactors) -> int:
    """Weighted sum clamped to [300, 850], rounded half up"""
    total = (
        factors.base_score
        + factors.history_score
        + factors.amount_score * 0.5
        + factors.frequency_score * 0.5
        + factors.payment_history_score * 0.8
    )
    clamped = max(MIN_SCORE, min(MAX_SCORE, total))
    return int(math.floor(clamped + 0.5))


def classify_risk(score: int) -> RiskTier:
    if score >= 750:
        return RiskTier.VERY_LOW
    if score >= 650:
        return RiskTier.LOW
    if score >= 550:
        return RiskTier.MEDIUM
    if score >= 450:
        return RiskTier.HIGH
    return RiskTier.VERY_HIGH


def decide(
    final_score: int,
    requested_amount: float,
    bank_limit: Optional[float] = None,
    term_months: Optional[int] = None,
) -> DecisionOutcome:
    """
    Map a score to a verdict for the requested amount.

    Score bands:
    - < 500:    reject, nothing offered
    - 500-599:  cap 10,000, terms 3/6
    - 600-749:  cap 30,000, terms 3/6/12
    - >= 750:   cap 50,000, terms 3-24

    A reported bank limit lowers the cap. Requests above the effective cap go
    to manual review when the score is at least 550, otherwise they are
    rejected.
    """
    band = next((b for b in SCORE_BANDS if final_score >= b[0]), None)
    if band is None:
        return DecisionOutcome(
            decision=Decision.REJECTED,
            max_amount=0,
            reason="Score de credito abaixo do minimo aceitavel",
        )

    _, cap, terms, message = band
    effective_cap = min(cap, bank_limit) if bank_limit is not None else cap

    if requested_amount > effective_cap:
        over_cap = f"Valor solicitado excede o limite aprovado ({format_amount(effective_cap)} MZN)"
        if final_score >= MANUAL_REVIEW_THRESHOLD:
            return DecisionOutcome(
                decision=Decision.MANUAL_REVIEW,
                max_amount=effective_cap,
                allowed_terms=terms,
                reason=over_cap + " - em revisao manual",
            )
        return DecisionOutcome(
            decision=Decision.REJECTED,
            max_amount=effective_cap,
            allowed_terms=terms,
            reason=over_cap,
        )

    if term_months is not None and term_months not in terms:
        allowed = "/".join(str(t) for t in terms)
        return DecisionOutcome(
            decision=Decision.REJECTED,
            max_amount=effective_cap,
            allowed_terms=terms,
            reason=f"Prazo de {term_months} meses nao permitido (permitidos: {allowed})",
        )

    return DecisionOutcome(
        decision=Decision.APPROVED,
        max_amount=effective_cap,
        allowed_terms=terms,
        reason=message,
    )


def score(
    customer: Customer,
    candidate: CandidateLoan,
    history: Sequence[LoanRecord],
    now: datetime,
    bank_limit: Optional[float] = None,
) -> ScoringResult:
    """Score a candidate loan; identical inputs always give identical results"""
    factors = calculate_factors(history, candidate, now)
    final_score = calculate_final_score(factors)
    outcome = decide(final_score, candidate.amount, bank_limit, candidate.term_months)
    return ScoringResult(
        factors=factors,
        final_score=final_score,
        risk_tier=classify_risk(final_score),
        decision=outcome.decision,
        max_amount=outcome.max_amount,
        allowed_terms=outcome.allowed_terms,
        reason=outcome.reason,
    )


def ensure_no_open_loan(history: Sequence[LoanRecord], candidate: CandidateLoan) -> None:
    """Raise when the customer already holds another unfinished loan"""
    open_loans = [loan for loan in _prior_loans(history, candidate) if loan.is_open]
    if open_loans:
        existing = open_loans[0]
        raise DecisionConflictError(
            f"Cliente possui emprestimo ativo ({format_amount(existing.amount)} MZN, {existing.status.value}). "
            "Quite sua divida antes de solicitar novo emprestimo."
        )


def evaluate_public_employee(
    customer: Customer,
    candidate: CandidateLoan,
    default_salary: float,
) -> ScoringResult:
    """Automatic approval up to twice the declared salary"""
    salary = customer.salary or default_salary
    max_amount = salary * 2

    if candidate.amount > max_amount:
        return ScoringResult(
            factors=None,
            final_score=None,
            risk_tier=None,
            decision=Decision.REJECTED,
            max_amount=max_amount,
            allowed_terms=PUBLIC_EMPLOYEE_TERMS,
            reason=(
                f"Valor solicitado ({format_amount(candidate.amount)} MZN) excede o limite aprovado "
                f"({format_amount(max_amount)} MZN - 2x salario)"
            ),
        )

    if candidate.term_months is not None and candidate.term_months not in PUBLIC_EMPLOYEE_TERMS:
        return ScoringResult(
            factors=None,
            final_score=None,
            risk_tier=None,
            decision=Decision.REJECTED,
            max_amount=max_amount,
            allowed_terms=PUBLIC_EMPLOYEE_TERMS,
            reason=f"Prazo de {candidate.term_months} meses nao permitido (permitidos: 3/6/12)",
        )

    return ScoringResult(
        factors=None,
        final_score=None,
        risk_tier=None,
        decision=Decision.APPROVED,
        max_amount=max_amount,
        allowed_terms=PUBLIC_EMPLOYEE_TERMS,
        reason="Funcionario Publico - Aprovacao Automatica",
    )


def make_credit_decision(
    customer: Customer,
    candidate: CandidateLoan,
    history: Sequence[LoanRecord],
    now: datetime,
    bank_limit: Optional[float] = None,
    default_salary: float = 15_000,
) -> ScoringResult:
    """
    Main entry point: guard against open loans, then apply the public
    employee override or the score bands.
    """
    try:
        ensure_no_open_loan(history, candidate)
    except DecisionConflictError as e:
        return ScoringResult(
            factors=None,
            final_score=None,
            risk_tier=None,
            decision=Decision.REJECTED,
            max_amount=0,
            reason=str(e),
        )

    if customer.is_public_employee:
        return evaluate_public_employee(customer, candidate, default_salary)

    return score(customer, candidate, history, now, bank_limit)
