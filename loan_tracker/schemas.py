"""
Pydantic schemas for loan tracker requests
"""

from decimal import Decimal
from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from .config import get_config
from .currency import Money, Currency
from .loans import LoanCategory, PaymentType


def _currency(code: Optional[str]) -> Currency:
    return Currency[(code or get_config().default_currency).upper()]


class MoneyModel(BaseModel):
    amount: Decimal = Field(..., description="Decimal amount")
    currency: str = Field(..., description="Currency code (INR, USD, etc.)")

    def to_money(self) -> Money:
        return Money(self.amount, Currency[self.currency.upper()])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=money.amount, currency=money.currency.code)


class CreateLoanRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    category: LoanCategory = Field(..., description="home, personal, credit_card or item_emi")
    principal: Decimal = Field(..., ge=0, description="Original amount; 0 for legacy loans without it")
    interest_rate: Decimal = Field(..., ge=0, description="Percent per annum")
    tenure_months: int = Field(..., gt=0, description="Total tenure, or remaining tenure for existing loans")
    emi_day: int = Field(..., ge=1, le=31, description="Day of month the EMI falls due")
    start_date: date
    currency: Optional[str] = Field(None, description="Defaults to the configured currency")
    emi_amount: Optional[Decimal] = Field(None, gt=0, description="Declared EMI; computed when omitted")
    lender_name: Optional[str] = None
    account_number: Optional[str] = Field(None, description="Masked account number")
    account_id: Optional[str] = Field(None, description="Account EMIs are drawn from")

    # Onboarding a loan mid-life
    is_existing_loan: bool = False
    outstanding: Optional[Decimal] = Field(None, ge=0, description="Current outstanding for existing loans")
    next_emi_date: Optional[date] = None

    create_transaction: bool = False
    affect_balance: bool = False

    @field_validator('tenure_months')
    @classmethod
    def tenure_within_limit(cls, value: int) -> int:
        limit = get_config().max_tenure_months
        if value > limit:
            raise ValueError(f"tenure_months cannot exceed {limit}")
        return value

    @model_validator(mode='after')
    def check_onboarding(self) -> 'CreateLoanRequest':
        if self.is_existing_loan:
            if self.next_emi_date is None:
                raise ValueError("next_emi_date is required for an existing loan")
            if self.outstanding is None:
                raise ValueError("outstanding is required for an existing loan")
            if self.principal > 0 and self.outstanding > self.principal:
                raise ValueError("outstanding cannot exceed principal")
        elif self.principal <= 0:
            raise ValueError("principal must be positive for a new loan")
        return self

    @property
    def currency_enum(self) -> Currency:
        return _currency(self.currency)

    def money(self, amount: Decimal) -> Money:
        return Money(amount, self.currency_enum)


class TermChangeRequest(BaseModel):
    effective_from: date
    interest_rate: Decimal = Field(..., ge=0, description="New rate, percent per annum")
    tenure_months: int = Field(..., gt=0, description="Installments in the new run")
    emi_amount: Optional[Decimal] = Field(None, gt=0, description="Declared EMI; computed when omitted")
    reason: str = ""


class SettleInstallmentRequest(BaseModel):
    installment_id: str
    paid_date: date
    paid_amount: Decimal = Field(..., ge=0)
    account_id: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: Decimal = Field(..., ge=0)
    principal_paid: Decimal = Field(..., ge=0)
    interest_paid: Decimal = Field(Decimal('0'), ge=0)
    payment_type: PaymentType
    payment_date: Optional[date] = None
    installment_id: Optional[str] = None
    account_id: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode='after')
    def split_matches_amount(self) -> 'RecordPaymentRequest':
        if abs(self.principal_paid + self.interest_paid - self.amount) > get_config().tolerance:
            raise ValueError("principal_paid + interest_paid must equal amount")
        return self


class PrecloseRequest(BaseModel):
    closure_amount: Decimal = Field(..., ge=0)
    closure_date: date
    account_id: Optional[str] = None


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    effective_from: date
    additional_tenure_months: int = Field(0, ge=0)
    emi_amount: Optional[Decimal] = Field(None, gt=0)
    account_id: Optional[str] = None
