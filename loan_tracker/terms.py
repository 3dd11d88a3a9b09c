"""
Term Reconciler Module

Applies mid-tenure rate/tenure/EMI changes: closes the current term, opens a
new one and replaces the unpaid part of the schedule with a fresh run.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from .amortization import compute_schedule, next_due_date, validate_schedule_input
from .audit import AuditTrail, AuditEventType
from .currency import Money, money_sum
from .errors import InvalidLoanState, TermOverlapError
from .loan_store import LoanRecordStore
from .loans import Loan, LoanInstallment, LoanTerm
from .logging_config import get_logger, log_action


@dataclass
class TermChangeResult:
    """Outcome of a term change"""
    loan: Loan
    term: LoanTerm
    previous_term: LoanTerm
    installments: List[LoanInstallment]  # The new run
    superseded_count: int


def build_installments(loan_id: str, generation: int, schedule) -> List[LoanInstallment]:
    """Turn amortization entries into installment records for one generation"""
    now = datetime.now(timezone.utc)
    return [
        LoanInstallment(
            id=LoanInstallment.make_id(loan_id, generation, entry.installment_number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            generation=generation,
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            emi_amount=entry.emi_amount,
            principal_component=entry.principal_component,
            interest_component=entry.interest_component
        )
        for entry in schedule
    ]


class TermReconciler:
    """
    Keeps term history and the installment schedule consistent across
    rate, tenure and EMI revisions
    """

    def __init__(self, store: LoanRecordStore, audit_trail: AuditTrail):
        self.store = store
        self.audit_trail = audit_trail
        self.logger = get_logger("loan_tracker.terms")

    def apply_term_change(
        self,
        loan_id: str,
        effective_from: date,
        new_rate: Decimal,
        new_tenure_months: int,
        new_emi_amount: Optional[Money] = None,
        reason: str = ""
    ) -> TermChangeResult:
        """
        Apply a new term from effective_from onward.

        Args:
            loan_id: Loan to change
            effective_from: First day of the new term
            new_rate: Interest rate, percent per annum
            new_tenure_months: Installments in the new run
            new_emi_amount: Declared EMI; derived from the formula when omitted
            reason: Free-text reason kept on the term

        Returns:
            TermChangeResult with the new term and its installments

        Raises:
            TermOverlapError: effective_from is not after the current term's start
            InvalidScheduleInput: the new parameters cannot produce a schedule
            InvalidLoanState: the loan is not active
        """
        with self.store.loan_transaction(loan_id):
            result = self.apply_locked(loan_id, effective_from, new_rate, new_tenure_months,
                                       new_emi_amount, reason)
        self.record(result)
        return result

    def record(self, result: TermChangeResult) -> None:
        """Log and audit a committed term change"""
        term = result.term
        log_action(
            self.logger, "info", f"Term changed from {term.effective_from.isoformat()}",
            action="apply_term_change", resource=f"loan:{term.loan_id}",
            extra={
                "generation": term.generation,
                "rate": str(term.interest_rate),
                "tenure_months": term.tenure_months,
                "outstanding_at_change": term.outstanding_at_change.to_string(),
                "superseded": result.superseded_count,
            }
        )
        self.audit_trail.log_event(
            AuditEventType.TERM_CHANGED, "loan", term.loan_id,
            {
                "effective_from": term.effective_from,
                "interest_rate": term.interest_rate,
                "tenure_months": term.tenure_months,
                "emi_amount": term.emi_amount,
                "outstanding_at_change": term.outstanding_at_change,
                "generation": term.generation,
                "superseded": result.superseded_count,
                "installments": len(result.installments),
                "reason": term.reason,
            }
        )

    def apply_locked(self, loan_id, effective_from, new_rate, new_tenure_months,
                     new_emi_amount=None, reason="") -> TermChangeResult:
        """Body of a term change. The caller must hold the loan's transaction."""
        loan = self.store.get_loan(loan_id)
        if not loan.is_active:
            raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}; terms can only change on active loans")

        current = self.store.current_term(loan_id)
        if current is None:
            raise InvalidLoanState(f"Loan {loan_id} has no current term")
        if effective_from <= current.effective_from:
            raise TermOverlapError(
                f"Term change on {effective_from.isoformat()} does not follow current term "
                f"starting {current.effective_from.isoformat()}"
            )
        validate_schedule_input(loan.outstanding, new_rate, new_tenure_months, allow_zero_principal=True)

        installments = self.store.list_installments(loan_id)
        replaced = [i for i in installments if not i.is_paid and i.due_date >= effective_from]
        retained_unpaid = [i for i in installments if not i.is_paid and i.due_date < effective_from]
        replaced_ids = {i.id for i in replaced}
        kept = [i for i in installments if i.id not in replaced_ids]

        outstanding_at_change = loan.outstanding
        # Retained unpaid installments still carry their own principal
        base = outstanding_at_change - money_sum(
            (i.principal_component for i in retained_unpaid), loan.currency
        )

        generation = self.store.latest_generation(loan_id) + 1
        first_number = max((i.installment_number for i in kept), default=0) + 1

        if base.is_positive():
            schedule = compute_schedule(
                principal=base,
                annual_rate_percent=new_rate,
                tenure_months=new_tenure_months,
                start_date=next_due_date(effective_from, loan.emi_day),
                due_day=loan.emi_day,
                emi_amount=new_emi_amount,
                first_installment_number=first_number
            )
        else:
            schedule = []
        new_installments = build_installments(loan_id, generation, schedule)

        current.effective_to = effective_from - timedelta(days=1)
        self.store.save_term(current)

        superseded = self.store.supersede_installments(replaced, generation)
        for installment in new_installments:
            self.store.save_installment(installment)

        emi = schedule[0].emi_amount if schedule else (new_emi_amount or loan.emi_amount)
        now = datetime.now(timezone.utc)
        term = LoanTerm(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            generation=generation,
            effective_from=effective_from,
            interest_rate=Decimal(str(new_rate)),
            tenure_months=new_tenure_months,
            emi_amount=emi,
            outstanding_at_change=outstanding_at_change,
            reason=reason
        )
        self.store.save_term(term)

        due_dates = [i.due_date for i in kept + new_installments]
        loan.interest_rate = term.interest_rate
        loan.tenure_months = new_tenure_months
        loan.emi_amount = emi
        loan.end_date = max(due_dates) if due_dates else loan.end_date
        self.store.save_loan(loan)

        return TermChangeResult(
            loan=loan,
            term=term,
            previous_term=current,
            installments=new_installments,
            superseded_count=superseded
        )

    def regenerate_schedule(self, loan_id: str, effective_from: date,
                            reason: str = "Schedule regenerated") -> TermChangeResult:
        """
        Re-amortize the current outstanding at the current rate.

        Tenure is the number of unpaid installments due on or after
        effective_from, so a prepayment lowers the EMI and keeps the end date.
        """
        loan = self.store.get_loan(loan_id)
        remaining = [
            i for i in self.store.list_installments(loan_id)
            if not i.is_paid and i.due_date >= effective_from
        ]
        if not remaining:
            raise InvalidLoanState(f"Loan {loan_id} has no unpaid installments on or after "
                                   f"{effective_from.isoformat()}")
        return self.apply_term_change(
            loan_id, effective_from, loan.interest_rate, len(remaining), reason=reason
        )
