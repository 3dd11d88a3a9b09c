"""
Test suite for term changes

Tests mid-tenure rate/tenure revisions: term history, superseded
installments, re-amortization of the remaining balance and rejection of
overlapping terms.
"""

import pytest
from datetime import date
from decimal import Decimal

from loan_tracker.amortization import compute_schedule
from loan_tracker.audit import AuditEventType
from loan_tracker.currency import Currency, Money, money_sum
from loan_tracker.errors import (
    InvalidLoanState, InvalidScheduleInput, OutstandingBoundsViolation, TermOverlapError
)
from loan_tracker.loans import InstallmentStatus, LoanCategory, LoanStatus, PaymentType
from loan_tracker.schemas import (
    CreateLoanRequest, RecordPaymentRequest, SettleInstallmentRequest, TermChangeRequest
)
from loan_tracker.service import LoanService
from loan_tracker.storage import InMemoryStorage


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


class TermChangeTestCase:
    """Shared fixture: 120,000 at 10% over 12 months, EMIs on the 10th from Feb 2024"""

    def setup_method(self):
        self.today = date(2024, 1, 15)
        self.service = LoanService(storage=InMemoryStorage(), clock=lambda: self.today)
        self.loan = self.service.create_loan(CreateLoanRequest(
            name="Car loan",
            category=LoanCategory.PERSONAL,
            principal=Decimal('120000'),
            interest_rate=Decimal('10'),
            tenure_months=12,
            emi_day=10,
            start_date=date(2024, 1, 10),
        ))
        self.original = compute_schedule(inr(120000), Decimal('10'), 12, date(2024, 2, 10), due_day=10)

    def settle(self, installments):
        for installment in installments:
            self.service.settle_installment(self.loan.id, SettleInstallmentRequest(
                installment_id=installment.id,
                paid_date=installment.due_date,
                paid_amount=installment.emi_amount.amount,
            ))

    def settle_next(self, count):
        unpaid = [i for i in self.service.list_installments(self.loan.id) if not i.is_paid]
        self.settle(unpaid[:count])

    def settle_unpaid(self):
        self.settle([i for i in self.service.list_installments(self.loan.id) if not i.is_paid])

    def snapshot(self):
        return (
            self.service.get_loan(self.loan.id),
            [(i.id, i.status, i.superseded_by)
             for i in self.service.list_installments(self.loan.id, include_superseded=True)],
            [(t.id, t.effective_to) for t in self.service.list_terms(self.loan.id)],
            self.service.audit_trail.count_events(),
        )


class TestApplyTermChange(TermChangeTestCase):
    """Rate change after the fifth EMI"""

    def test_rate_cut_after_five_installments(self):
        self.settle_next(5)

        result = self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1),
            interest_rate=Decimal('8'),
            tenure_months=7,
            reason="Repo rate cut",
        ))

        # The balance at the change matches the original schedule after five EMIs
        assert result.term.outstanding_at_change == self.original[4].outstanding_after
        assert result.term.generation == 2
        assert result.term.is_current
        assert result.previous_term.effective_to == date(2024, 6, 30)
        assert result.superseded_count == 7

        assert [i.installment_number for i in result.installments] == list(range(6, 13))
        assert result.installments[0].due_date == date(2024, 7, 10)
        assert result.installments[-1].due_date == date(2025, 1, 10)
        assert money_sum((i.principal_component for i in result.installments),
                         Currency.INR) == result.term.outstanding_at_change

        # Lower rate, same remaining tenure, lower EMI
        assert result.term.emi_amount < self.original[5].emi_amount

        loan = self.service.get_loan(self.loan.id)
        assert loan.interest_rate == Decimal('8')
        assert loan.tenure_months == 7
        assert loan.emi_amount == result.term.emi_amount
        assert loan.end_date == date(2025, 1, 10)
        assert loan.outstanding == result.term.outstanding_at_change

    def test_schedule_visibility(self):
        self.settle_next(5)
        self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
        ))

        visible = self.service.list_installments(self.loan.id)
        assert len(visible) == 12
        assert [i.generation for i in visible] == [1] * 5 + [2] * 7
        assert all(i.is_paid for i in visible[:5])

        everything = self.service.list_installments(self.loan.id, include_superseded=True)
        assert len(everything) == 19
        hidden = [i for i in everything if i.is_superseded]
        assert len(hidden) == 7
        assert all(i.superseded_by == 2 and not i.is_paid for i in hidden)

    def test_term_history(self):
        self.settle_next(5)
        self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
        ))

        terms = self.service.list_terms(self.loan.id)
        assert [t.generation for t in terms] == [1, 2]
        assert terms[0].effective_from == date(2024, 1, 10)
        assert terms[0].effective_to == date(2024, 6, 30)
        assert terms[1].effective_from == date(2024, 7, 1)
        assert terms[1].effective_to is None
        assert self.service.store.current_term(self.loan.id).generation == 2

    def test_settling_new_run_closes_loan(self):
        self.settle_next(5)
        self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
        ))

        self.settle_unpaid()

        loan = self.service.get_loan(self.loan.id)
        assert loan.outstanding.is_zero()
        assert loan.status == LoanStatus.CLOSED

    def test_term_change_is_audited(self):
        self.settle_next(5)
        self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7,
            reason="Repo rate cut"
        ))

        events = self.service.audit_trail.get_events_by_type(AuditEventType.TERM_CHANGED)
        assert len(events) == 1
        assert events[0].metadata["interest_rate"] == "8"
        assert events[0].metadata["reason"] == "Repo rate cut"
        assert events[0].metadata["superseded"] == 7
        assert self.service.verify_audit_trail()['valid']

    def test_longer_tenure_extends_end_date(self):
        self.settle_next(2)
        result = self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 4, 1), interest_rate=Decimal('10'), tenure_months=20
        ))

        assert len(result.installments) == 20
        assert self.service.get_loan(self.loan.id).end_date == date(2025, 11, 10)


class TestRejectedTermChanges(TermChangeTestCase):
    """Rejected changes leave no trace"""

    def test_overlapping_term_rejected(self):
        before = self.snapshot()

        with pytest.raises(TermOverlapError):
            self.service.apply_term_change(self.loan.id, TermChangeRequest(
                effective_from=date(2024, 1, 10), interest_rate=Decimal('8'), tenure_months=12
            ))
        with pytest.raises(TermOverlapError):
            self.service.apply_term_change(self.loan.id, TermChangeRequest(
                effective_from=date(2023, 12, 1), interest_rate=Decimal('8'), tenure_months=12
            ))

        assert self.snapshot() == before

    def test_same_day_as_previous_change_rejected(self):
        self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
        ))

        with pytest.raises(TermOverlapError):
            self.service.apply_term_change(self.loan.id, TermChangeRequest(
                effective_from=date(2024, 7, 1), interest_rate=Decimal('9'), tenure_months=7
            ))

    def test_invalid_parameters_rejected(self):
        before = self.snapshot()

        with pytest.raises(InvalidScheduleInput):
            self.service.reconciler.apply_term_change(
                self.loan.id, date(2024, 7, 1), Decimal('8'), 0
            )
        with pytest.raises(InvalidScheduleInput):
            self.service.reconciler.apply_term_change(
                self.loan.id, date(2024, 7, 1), Decimal('-1'), 6
            )
        with pytest.raises(InvalidScheduleInput, match="does not cover"):
            self.service.reconciler.apply_term_change(
                self.loan.id, date(2024, 7, 1), Decimal('12'), 6, new_emi_amount=inr(10)
            )

        assert self.snapshot() == before

    def test_inactive_loan_rejected(self):
        self.service.mark_defaulted(self.loan.id, reason="missed payments")

        with pytest.raises(InvalidLoanState):
            self.service.apply_term_change(self.loan.id, TermChangeRequest(
                effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
            ))


class TestRepeatedTermChanges(TermChangeTestCase):
    """Several revisions over the life of a loan"""

    def test_two_changes_still_amortize_fully(self):
        self.settle_next(2)
        first = self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 4, 1), interest_rate=Decimal('11'), tenure_months=10
        ))
        self.settle_next(3)
        second = self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('9.5'), tenure_months=9
        ))

        assert first.term.generation == 2
        assert second.term.generation == 3
        assert [i.installment_number for i in second.installments] == list(range(6, 15))

        terms = self.service.list_terms(self.loan.id)
        assert [t.effective_to for t in terms] == [date(2024, 3, 31), date(2024, 6, 30), None]

        self.settle_unpaid()
        loan = self.service.get_loan(self.loan.id)
        assert loan.outstanding.is_zero()
        assert loan.status == LoanStatus.CLOSED

    def test_overdue_installment_before_change_is_kept(self):
        """Unpaid installments due before the change stay on the schedule"""
        self.today = date(2024, 8, 15)
        self.settle_next(4)
        installments = self.service.list_installments(self.loan.id)
        june = installments[4]
        assert june.status == InstallmentStatus.OVERDUE

        result = self.service.apply_term_change(self.loan.id, TermChangeRequest(
            effective_from=date(2024, 7, 1), interest_rate=Decimal('8'), tenure_months=7
        ))

        assert result.superseded_count == 7
        assert money_sum((i.principal_component for i in result.installments), Currency.INR) == (
            result.term.outstanding_at_change - june.principal_component
        )

        visible = self.service.list_installments(self.loan.id)
        assert june.id in [i.id for i in visible]
        assert [i.installment_number for i in visible] == list(range(1, 13))

        self.settle_unpaid()
        assert self.service.get_loan(self.loan.id).outstanding.is_zero()


class TestRegenerateSchedule(TermChangeTestCase):
    """Re-amortizing after a prepayment"""

    def test_prepayment_then_regenerate(self):
        self.settle_next(2)
        self.service.record_payment(self.loan.id, RecordPaymentRequest(
            amount=Decimal('20000'),
            principal_paid=Decimal('20000'),
            payment_type=PaymentType.PREPAYMENT,
            payment_date=date(2024, 3, 20),
        ))
        outstanding = self.service.get_loan(self.loan.id).outstanding

        result = self.service.regenerate_schedule(self.loan.id, date(2024, 4, 1))

        assert result.term.tenure_months == 10
        assert result.term.interest_rate == Decimal('10')
        assert result.term.emi_amount < self.original[2].emi_amount
        assert money_sum((i.principal_component for i in result.installments), Currency.INR) == outstanding
        assert self.service.get_loan(self.loan.id).end_date == date(2025, 1, 10)

    def test_prepayment_without_regenerate_blocks_late_installments(self):
        """The old schedule's principal no longer fits the reduced balance"""
        self.settle_next(2)
        self.service.record_payment(self.loan.id, RecordPaymentRequest(
            amount=Decimal('20000'),
            principal_paid=Decimal('20000'),
            payment_type=PaymentType.PREPAYMENT,
            payment_date=date(2024, 3, 20),
        ))

        blocked = None
        for installment in [i for i in self.service.list_installments(self.loan.id) if not i.is_paid]:
            before = self.service.get_loan(self.loan.id).outstanding
            try:
                self.settle([installment])
            except OutstandingBoundsViolation:
                blocked = installment
                break

        assert blocked is not None
        loan = self.service.get_loan(self.loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.outstanding == before
        assert loan.outstanding < blocked.principal_component
        refreshed = [i for i in self.service.list_installments(self.loan.id) if i.id == blocked.id]
        assert not refreshed[0].is_paid

        # Re-amortizing the residual lets the loan run to zero
        self.service.regenerate_schedule(self.loan.id, blocked.due_date)
        self.settle_unpaid()
        assert self.service.get_loan(self.loan.id).outstanding.is_zero()
        assert self.service.get_loan(self.loan.id).status == LoanStatus.CLOSED

    def test_regenerate_defaults_to_today(self):
        self.today = date(2024, 3, 1)
        self.settle_next(1)

        result = self.service.regenerate_schedule(self.loan.id)

        assert result.term.effective_from == date(2024, 3, 1)
        assert result.term.tenure_months == 11

    def test_regenerate_without_remaining_installments(self):
        with pytest.raises(InvalidLoanState):
            self.service.regenerate_schedule(self.loan.id, date(2025, 6, 1))
