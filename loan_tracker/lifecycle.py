"""
Loan Lifecycle Module

Creates loans (new or onboarded mid-life), drives status transitions,
handles preclosure and top-ups, and aggregates a summary across loans.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional
import uuid

from .amortization import add_months, compute_schedule
from .audit import AuditTrail, AuditEventType
from .collaborators import EntryDirection, JournalEntry
from .currency import Money, Currency, money_sum
from .errors import CollaboratorUnavailable, InvalidLoanState, InvalidScheduleInput
from .loan_store import LoanRecordStore
from .loans import Loan, LoanInstallment, LoanPayment, LoanStatus, LoanTerm, PaymentType
from .logging_config import get_logger, log_action
from .payments import AdHocPaymentRecorder
from .schemas import CreateLoanRequest
from .settlement import InstallmentSettlementEngine
from .terms import TermChangeResult, TermReconciler, build_installments


@dataclass
class NextEmi:
    loan_id: str
    loan_name: str
    amount: Money
    due_date: date


@dataclass
class LoanSummary:
    """Aggregate view over all loans"""
    active_loans: int
    total_outstanding: Money
    emi_due_this_month: Money
    next_emi: Optional[NextEmi] = None


@dataclass
class ClosureResult:
    """Outcome of a preclosure"""
    loan: Loan
    payment: LoanPayment
    written_off: Money
    warnings: List[CollaboratorUnavailable] = field(default_factory=list)
    journal_entry: Optional[JournalEntry] = None


@dataclass
class TopUpResult:
    """Outcome of a top-up"""
    loan: Loan
    term_change: TermChangeResult
    warnings: List[CollaboratorUnavailable] = field(default_factory=list)
    journal_entry: Optional[JournalEntry] = None


class LoanLifecycleSupervisor:
    """
    Orchestrates loan creation, status transitions and cross-loan summaries
    """

    def __init__(
        self,
        store: LoanRecordStore,
        audit_trail: AuditTrail,
        reconciler: TermReconciler,
        settlement_engine: InstallmentSettlementEngine,
        payment_recorder: AdHocPaymentRecorder,
        currency: Currency = Currency.INR
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.reconciler = reconciler
        self.settlement_engine = settlement_engine
        self.payment_recorder = payment_recorder
        self.currency = currency
        self.logger = get_logger("loan_tracker.lifecycle")

    def create_loan(self, request: CreateLoanRequest) -> Loan:
        """
        Create a loan with its first term and initial installment run.

        New loans amortize principal from the EMI day in the month after
        start_date. Existing loans amortize the supplied outstanding over the
        remaining tenure starting at next_emi_date. Their first term runs from
        the onboarding day, or from next_emi_date when that is earlier.

        Raises:
            InvalidScheduleInput: the amounts cannot produce a schedule
        """
        principal = request.money(request.principal)
        if request.is_existing_loan:
            outstanding = request.money(request.outstanding)
            first_due = request.next_emi_date
            term_from = min(self.store.today(), request.next_emi_date)
        else:
            outstanding = principal
            first_due = add_months(request.start_date, 1, request.emi_day)
            term_from = request.start_date

        declared_emi = request.money(request.emi_amount) if request.emi_amount is not None else None
        schedule = compute_schedule(
            principal=outstanding,
            annual_rate_percent=request.interest_rate,
            tenure_months=request.tenure_months,
            start_date=first_due,
            due_day=request.emi_day,
            emi_amount=declared_emi
        )
        emi = declared_emi or schedule[0].emi_amount

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=request.name,
            category=request.category,
            principal=principal,
            outstanding=outstanding,
            interest_rate=request.interest_rate,
            tenure_months=request.tenure_months,
            emi_amount=emi,
            emi_day=request.emi_day,
            start_date=request.start_date,
            end_date=schedule[-1].due_date,
            lender_name=request.lender_name,
            account_number=request.account_number,
            account_id=request.account_id,
            is_existing_loan=request.is_existing_loan,
            create_transaction=request.create_transaction,
            affect_balance=request.affect_balance
        )
        term = LoanTerm(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            generation=1,
            effective_from=term_from,
            interest_rate=request.interest_rate,
            tenure_months=request.tenure_months,
            emi_amount=emi,
            outstanding_at_change=outstanding,
            reason="Onboarded existing loan" if request.is_existing_loan else "Loan created"
        )
        installments = build_installments(loan.id, 1, schedule)

        with self.store.loan_transaction(loan.id):
            self.store.save_loan(loan)
            self.store.save_term(term)
            for installment in installments:
                self.store.save_installment(installment)

        log_action(
            self.logger, "info", f"Loan created: {loan.name}",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "principal": principal.to_string(),
                "outstanding": outstanding.to_string(),
                "emi": emi.to_string(),
                "installments": len(installments),
                "existing": request.is_existing_loan,
            }
        )
        self.audit_trail.log_event(
            AuditEventType.LOAN_CREATED, "loan", loan.id,
            {
                "name": loan.name,
                "category": loan.category,
                "principal": principal,
                "outstanding": outstanding,
                "interest_rate": loan.interest_rate,
                "tenure_months": loan.tenure_months,
                "is_existing_loan": loan.is_existing_loan,
            }
        )
        self.audit_trail.log_event(
            AuditEventType.SCHEDULE_GENERATED, "loan", loan.id,
            {"generation": 1, "installments": len(installments), "first_due": first_due,
             "emi_amount": emi}
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        return self.store.get_loan(loan_id)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.store.list_loans(status)

    def delete_loan(self, loan_id: str) -> None:
        """Delete a loan with all of its terms, installments and payments"""
        self.store.delete_loan(loan_id)
        self.logger.info(f"Loan {loan_id} deleted")
        self.audit_trail.log_event(AuditEventType.LOAN_DELETED, "loan", loan_id, {})

    def list_installments(self, loan_id: str, include_superseded: bool = False) -> List[LoanInstallment]:
        self.store.get_loan(loan_id)
        return self.store.list_installments(loan_id, include_superseded)

    def list_terms(self, loan_id: str) -> List[LoanTerm]:
        self.store.get_loan(loan_id)
        return self.store.list_terms(loan_id)

    def list_payments(self, loan_id: str) -> List[LoanPayment]:
        self.store.get_loan(loan_id)
        return self.store.list_payments(loan_id)

    def mark_defaulted(self, loan_id: str, reason: str = "") -> Loan:
        """Move an active loan to defaulted. There is no way back."""
        with self.store.loan_transaction(loan_id):
            loan = self.store.get_loan(loan_id)
            if not loan.is_active:
                raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}; only active loans can default")
            loan.status = LoanStatus.DEFAULTED
            self.store.save_loan(loan)

        self.logger.warning(f"Loan {loan_id} marked defaulted: {reason}")
        self.audit_trail.log_event(AuditEventType.LOAN_DEFAULTED, "loan", loan_id,
                                   {"reason": reason, "outstanding": loan.outstanding})
        return loan

    def preclose_loan(
        self,
        loan_id: str,
        closure_amount: Money,
        closure_date: date,
        account_id: Optional[str] = None
    ) -> ClosureResult:
        """
        Close a loan early with a final settlement.

        The amount is recorded as a prepayment: principal up to the outstanding
        balance, any excess as interest. Outstanding left after that is written
        off so the loan closes.
        """
        with self.store.loan_transaction(loan_id):
            loan = self.store.get_loan(loan_id)
            if not loan.is_active:
                raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}; only active loans can be preclosed")

            principal_part = min(closure_amount, loan.outstanding)
            recorded = self.payment_recorder.record_locked(
                loan_id, closure_amount, principal_part, closure_amount - principal_part,
                PaymentType.PREPAYMENT, payment_date=closure_date, notes="Preclosure",
                account_id=account_id
            )

            written_off = recorded.loan.outstanding
            loan = recorded.loan
            if written_off.is_positive():
                loan = self.store.apply_outstanding_delta(loan_id, -written_off,
                                                          reason="written off at preclosure")
            self.store.wind_up(loan_id, closure_date)

        self.payment_recorder.record(recorded)
        if written_off.is_positive():
            self.audit_trail.log_event(
                AuditEventType.OUTSTANDING_ADJUSTED, "loan", loan_id,
                {"delta": -written_off, "reason": "written off at preclosure"}
            )
        log_action(
            self.logger, "info", f"Loan preclosed with {closure_amount.to_string()}",
            action="preclose_loan", resource=f"loan:{loan_id}",
            extra={"written_off": written_off.to_string()}
        )
        self.audit_trail.log_event(
            AuditEventType.LOAN_PRECLOSED, "loan", loan_id,
            {"closure_amount": closure_amount, "closure_date": closure_date,
             "written_off": written_off}
        )

        result = ClosureResult(loan=loan, payment=recorded.payment, written_off=written_off)
        result.journal_entry, result.warnings = self.settlement_engine.post_to_collaborators(
            loan, account_id, closure_amount, EntryDirection.DEBIT, closure_date,
            description=f"{loan.name} preclosure"
        )
        return result

    def top_up_loan(
        self,
        loan_id: str,
        amount: Money,
        effective_from: date,
        additional_tenure_months: int = 0,
        new_emi_amount: Optional[Money] = None,
        account_id: Optional[str] = None
    ) -> TopUpResult:
        """
        Borrow more on an existing loan.

        Principal and outstanding rise by amount, then the remaining unpaid
        installments plus additional_tenure_months are re-amortized at the
        current rate from effective_from.
        """
        with self.store.loan_transaction(loan_id):
            loan = self.store.get_loan(loan_id)
            if not loan.is_active:
                raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}; only active loans can be topped up")

            remaining = sum(
                1 for i in self.store.list_installments(loan_id)
                if not i.is_paid and i.due_date >= effective_from
            )
            tenure = remaining + additional_tenure_months
            if tenure <= 0:
                raise InvalidScheduleInput("Top-up needs remaining installments or additional tenure")

            self.store.adjust_principal(loan_id, amount)
            change = self.reconciler.apply_locked(
                loan_id, effective_from, loan.interest_rate, tenure, new_emi_amount,
                reason=f"Top-up of {amount.to_string()}"
            )

        self.reconciler.record(change)
        log_action(
            self.logger, "info", f"Loan topped up by {amount.to_string()}",
            action="top_up_loan", resource=f"loan:{loan_id}",
            extra={"tenure_months": tenure, "emi": change.term.emi_amount.to_string()}
        )
        self.audit_trail.log_event(
            AuditEventType.LOAN_TOPPED_UP, "loan", loan_id,
            {"amount": amount, "effective_from": effective_from, "tenure_months": tenure,
             "principal": change.loan.principal, "outstanding": change.loan.outstanding}
        )

        result = TopUpResult(loan=change.loan, term_change=change)
        result.journal_entry, result.warnings = self.settlement_engine.post_to_collaborators(
            change.loan, account_id, amount, EntryDirection.CREDIT, effective_from,
            description=f"{change.loan.name} top-up"
        )
        return result

    def get_loan_summary(self, as_of: Optional[date] = None) -> LoanSummary:
        """
        Summarise active loans as of a day (default today): count, total
        outstanding, unpaid EMI due in that calendar month, and the next EMI.

        Every active loan is counted and considered for the next EMI. Money
        totals only include loans in the summary currency.
        """
        as_of = as_of or self.store.today()
        active = self.store.list_loans(LoanStatus.ACTIVE)

        due_this_month = []
        next_emi = None
        for loan in active:
            for installment in self.store.list_installments(loan.id):
                if installment.is_paid:
                    continue
                due = installment.due_date
                if (due.year == as_of.year and due.month == as_of.month
                        and loan.currency == self.currency):
                    due_this_month.append(installment.emi_amount)
                if due >= as_of and (next_emi is None or due < next_emi.due_date):
                    next_emi = NextEmi(loan.id, loan.name, installment.emi_amount, due)

        return LoanSummary(
            active_loans=len(active),
            total_outstanding=money_sum(
                (loan.outstanding for loan in active if loan.currency == self.currency), self.currency
            ),
            emi_due_this_month=money_sum(due_this_month, self.currency),
            next_emi=next_emi
        )
