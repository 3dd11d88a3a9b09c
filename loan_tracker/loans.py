"""
Loan Module

Loan aggregate records: the loan itself, its term history, its scheduled
installments and its out-of-schedule payments.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, replace
from typing import Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord


class LoanCategory(Enum):
    """Kinds of personal loans"""
    HOME = "home"
    PERSONAL = "personal"
    CREDIT_CARD = "credit_card"
    ITEM_EMI = "item_emi"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"          # Outstanding reached zero or every installment paid
    DEFAULTED = "defaulted"    # Operator action, terminal


class InstallmentStatus(Enum):
    """Installment states. OVERDUE is derived from the due date on read."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentType(Enum):
    """Out-of-schedule payment kinds"""
    EMI = "emi"
    PREPAYMENT = "prepayment"
    PARTIAL = "partial"


@dataclass
class Loan(StorageRecord):
    """Loan with its current rate, tenure and EMI"""
    name: str
    category: LoanCategory
    principal: Money                    # Fixed at origination, zero for legacy loans
    outstanding: Money                  # Remaining principal owed
    interest_rate: Decimal              # Percent per annum, e.g. Decimal('12')
    tenure_months: int
    emi_amount: Money
    emi_day: int                        # Day of month EMIs fall due (1-31)
    start_date: date
    end_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    lender_name: Optional[str] = None
    account_number: Optional[str] = None  # Masked, display only
    account_id: Optional[str] = None      # Account the EMIs are drawn from
    is_existing_loan: bool = False
    create_transaction: bool = False
    affect_balance: bool = False

    @property
    def currency(self) -> Currency:
        return self.outstanding.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def has_principal(self) -> bool:
        """Legacy loans onboarded without the original amount carry a zero principal"""
        return self.principal.is_positive()

    @property
    def repayment_progress(self) -> Optional[int]:
        """Percent of principal repaid (0-100), or None for legacy loans"""
        if not self.has_principal:
            return None
        repaid = self.principal.amount - self.outstanding.amount
        return int(repaid * 100 / self.principal.amount)


@dataclass
class LoanTerm(StorageRecord):
    """
    A rate/tenure/EMI regime. The term with no effective_to is current.
    """
    loan_id: str
    generation: int                     # Installment run this term produced
    effective_from: date
    interest_rate: Decimal
    tenure_months: int                  # Remaining at term start
    emi_amount: Money
    outstanding_at_change: Money
    effective_to: Optional[date] = None
    reason: str = ""

    @property
    def is_current(self) -> bool:
        return self.effective_to is None


@dataclass
class LoanInstallment(StorageRecord):
    """One scheduled EMI, keyed by (loan_id, generation, installment_number)"""
    loan_id: str
    generation: int
    installment_number: int
    due_date: date
    emi_amount: Money
    principal_component: Money
    interest_component: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Money] = None
    superseded_by: Optional[int] = None  # Generation that replaced this one

    def __post_init__(self):
        total = self.principal_component + self.interest_component
        if not total.is_close_to(self.emi_amount, self.emi_amount.currency.minor_unit):
            raise ValueError(f"EMI {self.emi_amount.to_string()} does not equal "
                             f"principal {self.principal_component.to_string()} + "
                             f"interest {self.interest_component.to_string()}")

    @staticmethod
    def make_id(loan_id: str, generation: int, installment_number: int) -> str:
        return f"{loan_id}:{generation}:{installment_number}"

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    def as_of(self, today: date) -> 'LoanInstallment':
        """Copy with the overdue status derived for the given day"""
        if self.status == InstallmentStatus.PENDING and self.due_date < today:
            return replace(self, status=InstallmentStatus.OVERDUE)
        if self.status == InstallmentStatus.OVERDUE and self.due_date >= today:
            return replace(self, status=InstallmentStatus.PENDING)
        return self


@dataclass
class LoanPayment(StorageRecord):
    """Append-only record of a payment made against a loan"""
    loan_id: str
    payment_date: date
    amount: Money
    principal_paid: Money
    interest_paid: Money
    payment_type: PaymentType
    installment_id: Optional[str] = None
    account_id: Optional[str] = None
    notes: Optional[str] = None
