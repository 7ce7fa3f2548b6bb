"""Repayment simulation for USSD loan offers"""

from datetime import date, timedelta
from typing import Dict, List, Tuple

from payja_gateway.domain.models import Installment

# Flat interest rate (%) charged over the whole term, by term in months
INTEREST_RATES: Dict[int, float] = {
    3: 15.0,
    6: 18.0,
    12: 20.0,
    18: 22.0,
    24: 25.0,
}

DAYS_PER_MONTH = 30


def interest_rate_for(term_months: int) -> float:
    return INTEREST_RATES.get(term_months, 15.0)


def total_repayable(amount: float, term_months: int) -> float:
    """Principal plus flat interest, rounded to centavos"""
    return round(amount * (1 + interest_rate_for(term_months) / 100), 2)


def generate_installment_plan(
    amount: float,
    term_months: int,
    start_date: date | None = None,
) -> List[Installment]:
    """
    Split the total repayable into equal monthly installments.

    The last installment absorbs the rounding remainder so the plan sums to
    the exact total.

    Example:
        1000 MZN over 3 months at 15% -> 1150.00 total
        115000 centavos / 3 = 38333 base, remainder 1
        -> [383.33, 383.33, 383.34]
    """
    if amount <= 0 or term_months <= 0:
        return []

    if start_date is None:
        start_date = date.today() + timedelta(days=DAYS_PER_MONTH)

    total_cents = int(round(total_repayable(amount, term_months) * 100))
    base_cents = total_cents // term_months
    remainder = total_cents % term_months

    installments = []
    for i in range(term_months):
        due_date = start_date + timedelta(days=i * DAYS_PER_MONTH)
        cents = base_cents + (remainder if i == term_months - 1 else 0)
        installments.append(Installment(due_date=due_date, amount=cents / 100))

    return installments


def simulate(amount: float, terms: Tuple[int, ...] = (3, 6, 12)) -> List[Tuple[int, float, float]]:
    """Return (term, monthly installment, total) for each term"""
    rows = []
    for term in terms:
        plan = generate_installment_plan(amount, term)
        if not plan:
            continue
        rows.append((term, plan[0].amount, total_repayable(amount, term)))
    return rows
