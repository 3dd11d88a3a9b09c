"""
Amortization Module

Reducing-balance EMI calculation and installment schedule generation.
Pure functions: no storage, no clock.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional
import calendar

from .currency import Money
from .errors import InvalidScheduleInput


@dataclass(frozen=True)
class ScheduleEntry:
    """Single entry in an amortization schedule"""
    installment_number: int
    due_date: date
    emi_amount: Money
    principal_component: Money
    interest_component: Money
    outstanding_after: Money


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Convert a percent-per-annum rate to a monthly fraction (12 -> 0.01)"""
    return Decimal(str(annual_rate_percent)) / Decimal('12') / Decimal('100')


def add_months(start_date: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Add months to a date, clamping to the last day of shorter months.

    anchor_day keeps a due day of 31 from drifting to 30 after passing
    through a 30-day month.
    """
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = anchor_day or start_date.day
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def next_due_date(on_or_after: date, due_day: int) -> date:
    """First date on or after on_or_after that falls on due_day (clamped)"""
    candidate = add_months(on_or_after, 0, due_day)
    if candidate < on_or_after:
        candidate = add_months(on_or_after, 1, due_day)
    return candidate


def validate_schedule_input(principal: Money, annual_rate_percent: Decimal, tenure_months: int,
                            allow_zero_principal: bool = False) -> None:
    """Raise InvalidScheduleInput for parameters no schedule can be built from"""
    if principal.is_negative() or (principal.is_zero() and not allow_zero_principal):
        raise InvalidScheduleInput(f"Principal must be positive, got {principal.to_string()}")
    if Decimal(str(annual_rate_percent)) < 0:
        raise InvalidScheduleInput(f"Interest rate cannot be negative, got {annual_rate_percent}")
    if not isinstance(tenure_months, int) or tenure_months <= 0:
        raise InvalidScheduleInput(f"Tenure must be a positive number of months, got {tenure_months}")


def calculate_emi(principal: Money, annual_rate_percent: Decimal, tenure_months: int) -> Money:
    """
    Calculate the equated monthly installment.

    Standard formula: P * r * (1+r)^n / ((1+r)^n - 1), rounded half-up to
    the currency's minor unit. A zero rate falls back to P / n.
    """
    validate_schedule_input(principal, annual_rate_percent, tenure_months)

    r = monthly_rate(annual_rate_percent)
    if r == 0:
        return principal / Decimal(tenure_months)

    factor = (Decimal('1') + r) ** tenure_months
    return Money(principal.amount * r * factor / (factor - Decimal('1')), principal.currency)


def compute_schedule(
    principal: Money,
    annual_rate_percent: Decimal,
    tenure_months: int,
    start_date: date,
    due_day: Optional[int] = None,
    emi_amount: Optional[Money] = None,
    first_installment_number: int = 1
) -> List[ScheduleEntry]:
    """
    Generate a reducing-balance amortization schedule.

    Args:
        principal: Amount to amortize
        annual_rate_percent: Interest rate, percent per annum
        tenure_months: Number of monthly installments
        start_date: Due date of the first installment
        due_day: Day of month installments fall on (defaults to start_date.day)
        emi_amount: Declared EMI to use instead of the formula value
        first_installment_number: Number given to the first entry

    Returns:
        Ordered schedule entries. The final entry's principal is the exact
        remaining balance, so principal components always sum to principal.
    """
    validate_schedule_input(principal, annual_rate_percent, tenure_months)
    r = monthly_rate(annual_rate_percent)
    currency = principal.currency
    anchor_day = due_day or start_date.day

    if emi_amount is not None:
        if not emi_amount.is_positive():
            raise InvalidScheduleInput(f"EMI must be positive, got {emi_amount.to_string()}")
        first_interest = principal * r
        if emi_amount <= first_interest:
            raise InvalidScheduleInput(
                f"EMI {emi_amount.to_string()} does not cover first month's interest "
                f"{first_interest.to_string()}"
            )
        emi = emi_amount
    else:
        emi = calculate_emi(principal, annual_rate_percent, tenure_months)

    schedule = []
    outstanding = principal
    for offset in range(tenure_months):
        interest = outstanding * r
        principal_part = emi - interest

        is_last = offset == tenure_months - 1 or principal_part >= outstanding
        if is_last:
            # Final installment absorbs rounding drift
            principal_part = outstanding
        installment_emi = principal_part + interest if is_last else emi
        outstanding = outstanding - principal_part

        schedule.append(ScheduleEntry(
            installment_number=first_installment_number + offset,
            due_date=add_months(start_date, offset, anchor_day),
            emi_amount=installment_emi,
            principal_component=principal_part,
            interest_component=interest,
            outstanding_after=outstanding
        ))

        if outstanding.is_zero():
            break

    return schedule
