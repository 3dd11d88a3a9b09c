"""
Ad-hoc Payment Module

Records EMI, partial and prepayment events that are not tied to settling a
scheduled installment. Only prepayments move the outstanding balance; the
schedule is left alone (see TermReconciler.regenerate_schedule).
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import InstallmentNotFoundError, InvalidPaymentInput
from .loan_store import LoanRecordStore
from .loans import Loan, LoanPayment, LoanStatus, PaymentType
from .logging_config import get_logger, log_action


@dataclass
class RecordedPayment:
    """A stored payment and the loan state it left behind"""
    payment: LoanPayment
    loan: Loan
    closed: bool = False
    superseded: int = 0


class AdHocPaymentRecorder:
    """Append-only payment recording"""

    def __init__(self, store: LoanRecordStore, audit_trail: AuditTrail,
                 tolerance: Decimal = Decimal('0.01')):
        self.store = store
        self.audit_trail = audit_trail
        self.tolerance = tolerance
        self.logger = get_logger("loan_tracker.payments")

    def _validate(self, currency, amount: Money, principal_paid: Money, interest_paid: Money) -> None:
        for label, value in (("amount", amount), ("principal_paid", principal_paid),
                             ("interest_paid", interest_paid)):
            if value.currency != currency:
                raise InvalidPaymentInput(f"{label} must be in {currency.code}, got {value.currency.code}")
            if value.is_negative():
                raise InvalidPaymentInput(f"{label} cannot be negative, got {value.to_string()}")

        if not (principal_paid + interest_paid).is_close_to(amount, self.tolerance):
            raise InvalidPaymentInput(
                f"principal {principal_paid.to_string()} + interest {interest_paid.to_string()} "
                f"does not equal amount {amount.to_string()}"
            )

    def record_payment(
        self,
        loan_id: str,
        amount: Money,
        principal_paid: Money,
        interest_paid: Money,
        payment_type: PaymentType,
        payment_date: Optional[date] = None,
        notes: Optional[str] = None,
        installment_id: Optional[str] = None,
        account_id: Optional[str] = None
    ) -> LoanPayment:
        """
        Record a payment against a loan.

        A prepayment reduces outstanding by principal_paid; when that reaches
        zero the loan closes and its unpaid installments are retired.

        Raises:
            InvalidPaymentInput: amounts are negative, in the wrong currency,
                or principal_paid + interest_paid differs from amount
            InstallmentNotFoundError: installment_id is not one of this loan's
            OutstandingBoundsViolation: a prepayment exceeds the outstanding balance
        """
        with self.store.loan_transaction(loan_id):
            recorded = self.record_locked(
                loan_id, amount, principal_paid, interest_paid, payment_type,
                payment_date, notes, installment_id, account_id
            )
        self.record(recorded)
        return recorded.payment

    def record_locked(self, loan_id, amount, principal_paid, interest_paid, payment_type,
                      payment_date=None, notes=None, installment_id=None,
                      account_id=None) -> RecordedPayment:
        """Body of record_payment. The caller must hold the loan's transaction."""
        loan = self.store.get_loan(loan_id)
        self._validate(loan.currency, amount, principal_paid, interest_paid)

        if installment_id is not None:
            installment = self.store.get_installment(installment_id)
            if installment is None or installment.loan_id != loan_id:
                raise InstallmentNotFoundError(f"Installment {installment_id} not found on loan {loan_id}")

        now = datetime.now(timezone.utc)
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            payment_date=payment_date or self.store.today(),
            amount=amount,
            principal_paid=principal_paid,
            interest_paid=interest_paid,
            payment_type=payment_type,
            installment_id=installment_id,
            account_id=account_id,
            notes=notes
        )
        self.store.add_payment(payment)

        closed = False
        superseded = 0
        if payment_type == PaymentType.PREPAYMENT and principal_paid.is_positive():
            was_active = loan.is_active
            loan = self.store.apply_outstanding_delta(
                loan_id, -principal_paid, reason=f"{payment_type.value} {payment.id}"
            )
            if was_active and loan.status == LoanStatus.CLOSED:
                closed = True
                superseded = self.store.wind_up(loan_id, payment.payment_date)

        return RecordedPayment(payment=payment, loan=loan, closed=closed, superseded=superseded)

    def record(self, recorded: RecordedPayment) -> None:
        """Log and audit a committed payment"""
        payment, loan = recorded.payment, recorded.loan
        log_action(
            self.logger, "info", f"Payment recorded: {payment.payment_type.value}",
            action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "payment_id": payment.id,
                "amount": payment.amount.to_string(),
                "principal_paid": payment.principal_paid.to_string(),
                "outstanding": loan.outstanding.to_string(),
            }
        )
        self.audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED, "loan", loan.id,
            {
                "payment_id": payment.id,
                "payment_type": payment.payment_type,
                "payment_date": payment.payment_date,
                "amount": payment.amount,
                "principal_paid": payment.principal_paid,
                "interest_paid": payment.interest_paid,
                "outstanding": loan.outstanding,
            }
        )
        if recorded.closed:
            self.audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", loan.id,
                                       {"closed_by": "prepayment", "superseded": recorded.superseded})
