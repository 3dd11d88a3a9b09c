"""
Loan Record Store Module

Persists loans with their terms, installments and payments, and owns the
invariants that span them. Every change to a loan's outstanding balance goes
through apply_outstanding_delta.
"""

import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .currency import Money, Currency
from .errors import LoanNotFoundError, OutstandingBoundsViolation
from .loans import (
    Loan, LoanTerm, LoanInstallment, LoanPayment,
    LoanCategory, LoanStatus, InstallmentStatus, PaymentType
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


_LOAN_MONEY = ('principal', 'outstanding', 'emi_amount')
_LOAN_DATES = ('start_date', 'end_date')
_TERM_MONEY = ('emi_amount', 'outstanding_at_change')
_TERM_DATES = ('effective_from', 'effective_to')
_INSTALLMENT_MONEY = ('emi_amount', 'principal_component', 'interest_component', 'paid_amount')
_INSTALLMENT_DATES = ('due_date', 'paid_date')
_PAYMENT_MONEY = ('amount', 'principal_paid', 'interest_paid')
_PAYMENT_DATES = ('payment_date',)


def _record_to_dict(record: StorageRecord, money_fields: Iterable[str],
                    date_fields: Iterable[str]) -> Dict[str, Any]:
    """Flatten a record: Money as <field>_amount/<field>_currency, dates as ISO strings"""
    result = record.to_dict()
    for field in money_fields:
        amount = getattr(record, field)
        result.pop(field, None)
        result[f'{field}_amount'] = str(amount.amount) if amount is not None else None
        result[f'{field}_currency'] = amount.currency.code if amount is not None else None
    for field in date_fields:
        value = getattr(record, field)
        result[field] = value.isoformat() if value else None
    for key, value in list(result.items()):
        if isinstance(value, Enum):
            result[key] = value.value
    return result


def _restore_fields(data: Dict[str, Any], money_fields: Iterable[str],
                    date_fields: Iterable[str]) -> Dict[str, Any]:
    """Inverse of _record_to_dict for the shared field kinds"""
    data = dict(data)
    data['created_at'] = datetime.fromisoformat(data['created_at'])
    data['updated_at'] = datetime.fromisoformat(data['updated_at'])
    for field in money_fields:
        amount = data.pop(f'{field}_amount', None)
        currency = data.pop(f'{field}_currency', None)
        data[field] = Money(Decimal(amount), Currency[currency]) if amount is not None else None
    for field in date_fields:
        value = data.get(field)
        data[field] = date.fromisoformat(value) if value else None
    return data


class LoanRecordStore:
    """
    Loan aggregate storage with per-loan serialisation of mutations
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.clock = clock or date.today
        self.logger = get_logger("loan_tracker.store")

        self.loans_table = "loans"
        self.terms_table = "loan_terms"
        self.installments_table = "loan_installments"
        self.payments_table = "loan_payments"

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def today(self) -> date:
        return self.clock()

    def _lock_for(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def loan_transaction(self, loan_id: str):
        """
        Serialise mutations of one loan and make them atomic.

        Re-entrant: nested use on the same thread joins the outer transaction.
        Different loans never wait on each other's lock.
        """
        with self._lock_for(loan_id):
            with self.storage.atomic():
                yield

    # Loans

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.find_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status:
            rows = self.storage.find(self.loans_table, {'status': status.value})
        else:
            rows = self.storage.load_all(self.loans_table)
        loans = [self._loan_from_dict(row) for row in rows]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def delete_loan(self, loan_id: str) -> None:
        """Delete a loan and every term, installment and payment that belongs to it"""
        try:
            with self.loan_transaction(loan_id):
                self.get_loan(loan_id)
                for table in (self.installments_table, self.terms_table, self.payments_table):
                    for row in self.storage.find(table, {'loan_id': loan_id}):
                        self.storage.delete(table, row['id'])
                self.storage.delete(self.loans_table, loan_id)
        finally:
            with self._locks_guard:
                self._locks.pop(loan_id, None)

    def apply_outstanding_delta(self, loan_id: str, delta: Money, reason: str) -> Loan:
        """
        Change a loan's outstanding balance by delta.

        Raises:
            OutstandingBoundsViolation: if the result would be negative, or
                above principal for a loan that has one
        """
        with self.loan_transaction(loan_id):
            loan = self.get_loan(loan_id)
            new_outstanding = loan.outstanding + delta

            if new_outstanding.is_negative():
                raise OutstandingBoundsViolation(
                    f"Loan {loan_id}: outstanding {loan.outstanding.to_string()} "
                    f"cannot absorb {delta.to_string()} ({reason})"
                )
            if loan.has_principal and new_outstanding > loan.principal:
                raise OutstandingBoundsViolation(
                    f"Loan {loan_id}: outstanding {new_outstanding.to_string()} would exceed "
                    f"principal {loan.principal.to_string()} ({reason})"
                )

            loan.outstanding = new_outstanding
            if new_outstanding.is_zero() and loan.is_active:
                loan.status = LoanStatus.CLOSED
            self.save_loan(loan)

        log_action(
            self.logger, "info", f"Outstanding adjusted by {delta.to_string()}",
            action="apply_outstanding_delta", resource=f"loan:{loan_id}",
            extra={"reason": reason, "outstanding": new_outstanding.to_string(),
                   "status": loan.status.value}
        )
        return loan

    def adjust_principal(self, loan_id: str, delta: Money) -> Loan:
        """Raise principal and outstanding together (top-up). Bypasses the bounds check."""
        with self.loan_transaction(loan_id):
            loan = self.get_loan(loan_id)
            if not delta.is_positive():
                raise OutstandingBoundsViolation(
                    f"Loan {loan_id}: principal correction must be positive, got {delta.to_string()}"
                )
            # Legacy loans keep a zero principal; only outstanding grows
            if loan.has_principal:
                loan.principal = loan.principal + delta
            loan.outstanding = loan.outstanding + delta
            self.save_loan(loan)
        return loan

    # Terms

    def save_term(self, term: LoanTerm) -> None:
        term.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.terms_table, term.id, self._term_to_dict(term))

    def list_terms(self, loan_id: str) -> List[LoanTerm]:
        terms = [self._term_from_dict(row)
                 for row in self.storage.find(self.terms_table, {'loan_id': loan_id})]
        terms.sort(key=lambda t: (t.effective_from, t.generation))
        return terms

    def current_term(self, loan_id: str) -> Optional[LoanTerm]:
        """The term with no effective_to"""
        rows = self.storage.find(self.terms_table, {'loan_id': loan_id, 'effective_to': None})
        if not rows:
            return None
        return max((self._term_from_dict(row) for row in rows), key=lambda t: t.generation)

    # Installments

    def save_installment(self, installment: LoanInstallment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.installments_table, installment.id,
                          self._installment_to_dict(installment))

    def get_installment(self, installment_id: str) -> Optional[LoanInstallment]:
        """Load an installment with its status derived for today"""
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            return None
        return self._installment_from_dict(data).as_of(self.today())

    def list_installments(self, loan_id: str, include_superseded: bool = False) -> List[LoanInstallment]:
        """Installments ordered by due date, with overdue derived for today"""
        today = self.today()
        installments = []
        for row in self.storage.find(self.installments_table, {'loan_id': loan_id}):
            installment = self._installment_from_dict(row)
            if installment.is_superseded and not include_superseded:
                continue
            installments.append(installment.as_of(today))
        installments.sort(key=lambda i: (i.due_date, i.generation, i.installment_number))
        return installments

    def supersede_installments(self, installments: Iterable[LoanInstallment], generation: int) -> int:
        """Hide unpaid installments behind a newer generation; they are kept, never deleted"""
        count = 0
        for installment in installments:
            if installment.is_paid:
                continue
            installment.superseded_by = generation
            installment.status = InstallmentStatus.PENDING
            self.save_installment(installment)
            count += 1
        return count

    def wind_up(self, loan_id: str, closed_on: date) -> int:
        """
        Retire the schedule of a loan settled off-schedule: unpaid installments
        are superseded and the current term ends on closed_on.

        Returns:
            Number of installments superseded
        """
        with self.loan_transaction(loan_id):
            generation = self.latest_generation(loan_id) + 1
            unpaid = [i for i in self.list_installments(loan_id) if not i.is_paid]
            superseded = self.supersede_installments(unpaid, generation)

            term = self.current_term(loan_id)
            if term is not None:
                term.effective_to = max(closed_on, term.effective_from)
                self.save_term(term)
        return superseded

    def latest_generation(self, loan_id: str) -> int:
        generations = [row['generation']
                       for row in self.storage.find(self.installments_table, {'loan_id': loan_id})]
        terms = [row['generation'] for row in self.storage.find(self.terms_table, {'loan_id': loan_id})]
        return max(generations + terms, default=0)

    # Payments

    def add_payment(self, payment: LoanPayment) -> None:
        """Append a payment. Payments are never updated or deleted individually."""
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def list_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = [self._payment_from_dict(row)
                    for row in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    # Serialization

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = _record_to_dict(loan, _LOAN_MONEY, _LOAN_DATES)
        result['interest_rate'] = str(loan.interest_rate)
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        data = _restore_fields(data, _LOAN_MONEY, _LOAN_DATES)
        data['category'] = LoanCategory(data['category'])
        data['status'] = LoanStatus(data['status'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        return Loan(**data)

    def _term_to_dict(self, term: LoanTerm) -> Dict:
        result = _record_to_dict(term, _TERM_MONEY, _TERM_DATES)
        result['interest_rate'] = str(term.interest_rate)
        return result

    def _term_from_dict(self, data: Dict) -> LoanTerm:
        data = _restore_fields(data, _TERM_MONEY, _TERM_DATES)
        data['interest_rate'] = Decimal(data['interest_rate'])
        return LoanTerm(**data)

    def _installment_to_dict(self, installment: LoanInstallment) -> Dict:
        return _record_to_dict(installment, _INSTALLMENT_MONEY, _INSTALLMENT_DATES)

    def _installment_from_dict(self, data: Dict) -> LoanInstallment:
        data = _restore_fields(data, _INSTALLMENT_MONEY, _INSTALLMENT_DATES)
        data['status'] = InstallmentStatus(data['status'])
        return LoanInstallment(**data)

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        return _record_to_dict(payment, _PAYMENT_MONEY, _PAYMENT_DATES)

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        data = _restore_fields(data, _PAYMENT_MONEY, _PAYMENT_DATES)
        data['payment_type'] = PaymentType(data['payment_type'])
        return LoanPayment(**data)
