"""
Loan Service

Facade wiring storage, audit trail and the loan components together, and the
operations callers (UI/API layers) use. Requests arrive as pydantic models.
"""

from datetime import date
from typing import Callable, List, Optional

from .audit import AuditTrail
from .collaborators import AccountLedger, TransactionJournal
from .config import LoanTrackerConfig, get_config
from .currency import Money
from .lifecycle import ClosureResult, LoanLifecycleSupervisor, LoanSummary, TopUpResult
from .loan_store import LoanRecordStore
from .loans import Loan, LoanInstallment, LoanPayment, LoanStatus, LoanTerm
from .logging_config import get_logger, setup_logging
from .payments import AdHocPaymentRecorder
from .schemas import (
    CreateLoanRequest, PrecloseRequest, RecordPaymentRequest,
    SettleInstallmentRequest, TermChangeRequest, TopUpRequest
)
from .settlement import InstallmentSettlementEngine, SettlementResult
from .storage import StorageInterface, create_storage
from .terms import TermChangeResult, TermReconciler


class LoanService:
    """Loan tracker with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        ledger: Optional[AccountLedger] = None,
        journal: Optional[TransactionJournal] = None,
        clock: Optional[Callable[[], date]] = None,
        config: Optional[LoanTrackerConfig] = None
    ):
        self.config = config or get_config()
        self.currency = self.config.currency
        self.storage = storage or create_storage(self.config.database_url)
        self.logger = get_logger("loan_tracker.service")

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.store = LoanRecordStore(self.storage, clock=clock)
        self.reconciler = TermReconciler(self.store, self.audit_trail)
        self.settlement_engine = InstallmentSettlementEngine(
            self.store, self.audit_trail, ledger=ledger, journal=journal
        )
        self.payment_recorder = AdHocPaymentRecorder(
            self.store, self.audit_trail, tolerance=self.config.tolerance
        )
        self.lifecycle = LoanLifecycleSupervisor(
            self.store, self.audit_trail, self.reconciler,
            self.settlement_engine, self.payment_recorder, currency=self.currency
        )

    def _money(self, loan_id: str, amount) -> Money:
        """Amounts on an existing loan are in that loan's currency"""
        return Money(amount, self.store.get_loan(loan_id).currency)

    # Loans

    def create_loan(self, request: CreateLoanRequest) -> Loan:
        if request.currency is None:
            request = request.model_copy(update={"currency": self.currency.code})
        return self.lifecycle.create_loan(request)

    def get_loan(self, loan_id: str) -> Loan:
        return self.lifecycle.get_loan(loan_id)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.lifecycle.list_loans(status)

    def delete_loan(self, loan_id: str) -> None:
        self.lifecycle.delete_loan(loan_id)

    def mark_defaulted(self, loan_id: str, reason: str = "") -> Loan:
        return self.lifecycle.mark_defaulted(loan_id, reason)

    def get_loan_summary(self, as_of: Optional[date] = None) -> LoanSummary:
        return self.lifecycle.get_loan_summary(as_of)

    # Schedule

    def list_installments(self, loan_id: str, include_superseded: bool = False) -> List[LoanInstallment]:
        return self.lifecycle.list_installments(loan_id, include_superseded)

    def settle_installment(self, loan_id: str, request: SettleInstallmentRequest) -> SettlementResult:
        return self.settlement_engine.settle_installment(
            loan_id,
            request.installment_id,
            request.paid_date,
            self._money(loan_id, request.paid_amount),
            account_id=request.account_id
        )

    # Terms

    def list_terms(self, loan_id: str) -> List[LoanTerm]:
        return self.lifecycle.list_terms(loan_id)

    def apply_term_change(self, loan_id: str, request: TermChangeRequest) -> TermChangeResult:
        emi = self._money(loan_id, request.emi_amount) if request.emi_amount is not None else None
        return self.reconciler.apply_term_change(
            loan_id,
            request.effective_from,
            request.interest_rate,
            request.tenure_months,
            new_emi_amount=emi,
            reason=request.reason
        )

    def regenerate_schedule(self, loan_id: str, effective_from: Optional[date] = None) -> TermChangeResult:
        return self.reconciler.regenerate_schedule(loan_id, effective_from or self.store.today())

    # Payments

    def list_payments(self, loan_id: str) -> List[LoanPayment]:
        return self.lifecycle.list_payments(loan_id)

    def record_payment(self, loan_id: str, request: RecordPaymentRequest) -> LoanPayment:
        return self.payment_recorder.record_payment(
            loan_id,
            self._money(loan_id, request.amount),
            self._money(loan_id, request.principal_paid),
            self._money(loan_id, request.interest_paid),
            request.payment_type,
            payment_date=request.payment_date,
            notes=request.notes,
            installment_id=request.installment_id,
            account_id=request.account_id
        )

    def preclose_loan(self, loan_id: str, request: PrecloseRequest) -> ClosureResult:
        return self.lifecycle.preclose_loan(
            loan_id,
            self._money(loan_id, request.closure_amount),
            request.closure_date,
            account_id=request.account_id
        )

    def top_up_loan(self, loan_id: str, request: TopUpRequest) -> TopUpResult:
        emi = self._money(loan_id, request.emi_amount) if request.emi_amount is not None else None
        return self.lifecycle.top_up_loan(
            loan_id,
            self._money(loan_id, request.amount),
            request.effective_from,
            additional_tenure_months=request.additional_tenure_months,
            new_emi_amount=emi,
            account_id=request.account_id
        )

    def verify_audit_trail(self) -> dict:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()


def create_service(**kwargs) -> LoanService:
    """Build a LoanService from the global configuration, with logging set up"""
    config = get_config()
    setup_logging(config.log_level, "loan_tracker", config.log_format)
    return LoanService(config=config, **kwargs)
