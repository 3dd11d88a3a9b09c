"""
Test suite for amortization module

Tests EMI calculation, schedule generation, due-date clamping and input
validation. Principal components must always sum exactly to principal.
"""

import pytest
from datetime import date
from decimal import Decimal

from loan_tracker.amortization import (
    add_months, calculate_emi, compute_schedule, monthly_rate, next_due_date
)
from loan_tracker.currency import Currency, Money, money_sum
from loan_tracker.errors import InvalidScheduleInput


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


class TestEmiCalculation:
    """Test the EMI formula"""

    def test_monthly_rate(self):
        assert monthly_rate(Decimal('12')) == Decimal('0.01')

    def test_standard_emi(self):
        """1,200,000 at 12% over 12 months"""
        emi = calculate_emi(inr(1200000), Decimal('12'), 12)
        assert emi == inr('106618.55')

    def test_zero_rate_emi(self):
        assert calculate_emi(inr(1200), Decimal('0'), 12) == inr(100)
        assert calculate_emi(inr(1000), Decimal('0'), 3) == inr('333.33')

    def test_invalid_inputs(self):
        with pytest.raises(InvalidScheduleInput, match="Principal must be positive"):
            calculate_emi(inr(0), Decimal('12'), 12)
        with pytest.raises(InvalidScheduleInput, match="Interest rate cannot be negative"):
            calculate_emi(inr(1000), Decimal('-1'), 12)
        with pytest.raises(InvalidScheduleInput, match="Tenure must be a positive"):
            calculate_emi(inr(1000), Decimal('12'), 0)

    def test_invalid_input_is_value_error(self):
        with pytest.raises(ValueError):
            calculate_emi(inr(-5), Decimal('12'), 12)


class TestComputeSchedule:
    """Test schedule generation"""

    def test_first_installment_split(self):
        schedule = compute_schedule(inr(1200000), Decimal('12'), 12, date(2024, 2, 10))

        first = schedule[0]
        assert first.installment_number == 1
        assert first.due_date == date(2024, 2, 10)
        assert first.emi_amount == inr('106618.55')
        assert first.interest_component == inr('12000.00')
        assert first.principal_component == inr('94618.55')
        assert first.outstanding_after == inr('1105381.45')

    def test_schedule_closes_exactly(self):
        principal = inr(1200000)
        schedule = compute_schedule(principal, Decimal('12'), 12, date(2024, 2, 10))

        assert len(schedule) == 12
        assert money_sum((e.principal_component for e in schedule), Currency.INR) == principal
        assert schedule[-1].outstanding_after.is_zero()
        assert schedule[-1].due_date == date(2025, 1, 10)

        for entry in schedule:
            assert entry.principal_component + entry.interest_component == entry.emi_amount

        # Only the last entry absorbs rounding drift
        assert all(e.emi_amount == inr('106618.55') for e in schedule[:-1])

    @pytest.mark.parametrize("principal,rate,tenure", [
        ('50000', '10.5', 24),
        ('999999.99', '7.25', 240),
        ('1234.56', '36', 7),
        ('100', '0', 6),
        ('750000', '9', 36),
    ])
    def test_principal_sums_for_varied_inputs(self, principal, rate, tenure):
        schedule = compute_schedule(inr(principal), Decimal(rate), tenure, date(2024, 1, 5))

        assert len(schedule) == tenure
        assert money_sum((e.principal_component for e in schedule), Currency.INR) == inr(principal)
        assert schedule[-1].outstanding_after.is_zero()
        assert all(not e.principal_component.is_negative() for e in schedule)

    def test_zero_rate_remainder_goes_to_last(self):
        schedule = compute_schedule(inr(1000), Decimal('0'), 3, date(2024, 1, 1))

        assert [e.emi_amount for e in schedule] == [inr('333.33'), inr('333.33'), inr('333.34')]
        assert all(e.interest_component.is_zero() for e in schedule)

    def test_due_day_clamping(self):
        """A due day of 31 clamps in short months and returns to 31 afterwards"""
        schedule = compute_schedule(inr(5000), Decimal('12'), 5, date(2024, 1, 31), due_day=31)

        assert [e.due_date for e in schedule] == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
            date(2024, 5, 31),
        ]

    def test_first_installment_number(self):
        schedule = compute_schedule(inr(6000), Decimal('8'), 6, date(2024, 7, 10),
                                    first_installment_number=6)
        assert [e.installment_number for e in schedule] == [6, 7, 8, 9, 10, 11]

    def test_declared_emi_ends_early(self):
        """A larger declared EMI pays the loan off before the tenure runs out"""
        schedule = compute_schedule(inr(1000), Decimal('12'), 12, date(2024, 1, 1), emi_amount=inr(500))

        assert len(schedule) == 3
        assert schedule[0].interest_component == inr('10.00')
        assert schedule[0].principal_component == inr('490.00')
        assert schedule[1].principal_component == inr('494.90')
        assert schedule[2].principal_component == inr('15.10')
        assert schedule[2].emi_amount == inr('15.25')
        assert money_sum((e.principal_component for e in schedule), Currency.INR) == inr(1000)

    def test_declared_emi_must_cover_interest(self):
        with pytest.raises(InvalidScheduleInput, match="does not cover"):
            compute_schedule(inr(100000), Decimal('12'), 12, date(2024, 1, 1), emi_amount=inr(1000))

    def test_declared_emi_must_be_positive(self):
        with pytest.raises(InvalidScheduleInput, match="EMI must be positive"):
            compute_schedule(inr(1000), Decimal('12'), 12, date(2024, 1, 1), emi_amount=inr(0))


class TestDueDates:
    """Test month arithmetic helpers"""

    def test_add_months_clamps(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_add_months_with_anchor(self):
        assert add_months(date(2024, 2, 29), 1, anchor_day=31) == date(2024, 3, 31)
        assert add_months(date(2024, 4, 30), 0, anchor_day=31) == date(2024, 4, 30)

    def test_next_due_date(self):
        assert next_due_date(date(2024, 7, 1), 10) == date(2024, 7, 10)
        assert next_due_date(date(2024, 7, 10), 10) == date(2024, 7, 10)
        assert next_due_date(date(2024, 7, 15), 10) == date(2024, 8, 10)
        assert next_due_date(date(2024, 12, 20), 5) == date(2025, 1, 5)
        assert next_due_date(date(2024, 2, 1), 31) == date(2024, 2, 29)
