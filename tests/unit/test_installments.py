"""Unit tests for repayment simulation"""

from datetime import date, timedelta

import pytest

from payja_gateway.domain.installments import (
    generate_installment_plan,
    interest_rate_for,
    simulate,
    total_repayable,
)


def test_total_repayable_flat_interest():
    """Interest is charged once over the whole term"""
    assert total_repayable(1000, 3) == 1150.0
    assert total_repayable(1000, 12) == 1200.0
    assert total_repayable(10000, 24) == 12500.0


def test_interest_rate_unknown_term_defaults():
    assert interest_rate_for(7) == 15.0


def test_generate_installment_plan_equal_split():
    """Test plan with evenly divisible total"""
    installments = generate_installment_plan(3000, 6)  # 3540 total

    assert len(installments) == 6
    assert all(inst.amount == 590.0 for inst in installments)
    assert sum(inst.amount for inst in installments) == pytest.approx(3540.0)


def test_generate_installment_plan_rounding():
    """Test last installment absorbs remainder"""
    installments = generate_installment_plan(1000, 3)  # 1150.00 total

    assert [inst.amount for inst in installments] == [383.33, 383.33, 383.34]
    assert sum(inst.amount for inst in installments) == pytest.approx(1150.0)


def test_generate_installment_plan_dates():
    """Test monthly due dates (30 days apart)"""
    start = date(2025, 1, 15)
    installments = generate_installment_plan(5000, 3, start_date=start)

    assert installments[0].due_date == start
    assert installments[1].due_date == start + timedelta(days=30)
    assert installments[2].due_date == start + timedelta(days=60)


def test_generate_installment_plan_invalid_input():
    assert generate_installment_plan(0, 3) == []
    assert generate_installment_plan(1000, 0) == []


def test_simulate_default_terms():
    rows = simulate(10000)

    assert [term for term, _, _ in rows] == [3, 6, 12]
    term, monthly, total = rows[0]
    assert total == 11500.0
    assert monthly == 3833.33
