"""
Installment Settlement Module

Marks scheduled installments paid, reduces the loan's outstanding balance by
the installment's principal component and posts best-effort side effects to
the account ledger and transaction journal.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .collaborators import AccountLedger, TransactionJournal, JournalEntry, EntryDirection
from .currency import Money
from .errors import (
    AlreadySettledError, CollaboratorUnavailable, InstallmentNotFoundError,
    InvalidLoanState, InvalidPaymentInput
)
from .loan_store import LoanRecordStore
from .loans import Loan, LoanInstallment, LoanStatus, InstallmentStatus
from .logging_config import get_logger, log_action


@dataclass
class SettlementResult:
    """Settled installment plus any collaborator failures"""
    installment: LoanInstallment
    loan: Loan
    warnings: List[CollaboratorUnavailable] = field(default_factory=list)
    journal_entry: Optional[JournalEntry] = None

    @property
    def fully_applied(self) -> bool:
        return not self.warnings


class InstallmentSettlementEngine:
    """
    Settles installments against the record store
    """

    def __init__(
        self,
        store: LoanRecordStore,
        audit_trail: AuditTrail,
        ledger: Optional[AccountLedger] = None,
        journal: Optional[TransactionJournal] = None
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.journal = journal
        self.logger = get_logger("loan_tracker.settlement")

    def settle_installment(
        self,
        loan_id: str,
        installment_id: str,
        paid_date: date,
        paid_amount: Money,
        account_id: Optional[str] = None
    ) -> SettlementResult:
        """
        Settle one installment.

        The outstanding balance drops by the installment's scheduled principal
        component whatever paid_amount is. Ledger and journal failures are
        reported in the result's warnings and never undo the settlement.

        Raises:
            InstallmentNotFoundError: unknown, foreign or superseded installment
            AlreadySettledError: the installment is already paid
            InvalidLoanState: the loan is not active
            InvalidPaymentInput: paid_amount is negative or in another currency
            OutstandingBoundsViolation: the principal component exceeds outstanding,
                as after a prepayment without a regenerated schedule
        """
        with self.store.loan_transaction(loan_id):
            loan = self.store.get_loan(loan_id)
            installment = self.store.get_installment(installment_id)
            if installment is None or installment.loan_id != loan_id or installment.is_superseded:
                raise InstallmentNotFoundError(f"Installment {installment_id} not found on loan {loan_id}")
            if installment.is_paid:
                raise AlreadySettledError(
                    f"Installment {installment_id} was already paid on {installment.paid_date.isoformat()}"
                )
            if not loan.is_active:
                raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}; installments cannot be settled")
            if paid_amount.currency != loan.currency or paid_amount.is_negative():
                raise InvalidPaymentInput(f"Invalid paid amount {paid_amount.to_string()}")

            installment.status = InstallmentStatus.PAID
            installment.paid_date = paid_date
            installment.paid_amount = paid_amount
            self.store.save_installment(installment)

            loan = self.store.apply_outstanding_delta(
                loan_id, -installment.principal_component,
                reason=f"installment {installment.installment_number} settled"
            )

            if loan.is_active and all(i.is_paid for i in self.store.list_installments(loan_id)):
                loan.status = LoanStatus.CLOSED
                self.store.save_loan(loan)

        log_action(
            self.logger, "info", f"Installment {installment.installment_number} settled",
            action="settle_installment", resource=f"loan:{loan_id}",
            extra={
                "installment_id": installment_id,
                "paid_amount": paid_amount.to_string(),
                "principal_component": installment.principal_component.to_string(),
                "outstanding": loan.outstanding.to_string(),
            }
        )
        self.audit_trail.log_event(
            AuditEventType.INSTALLMENT_SETTLED, "loan", loan_id,
            {
                "installment_id": installment_id,
                "installment_number": installment.installment_number,
                "paid_date": paid_date,
                "paid_amount": paid_amount,
                "principal_component": installment.principal_component,
                "outstanding": loan.outstanding,
            }
        )
        if loan.status == LoanStatus.CLOSED:
            self.audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", loan_id,
                                       {"closed_by": "installment_settlement"})

        result = SettlementResult(installment=installment, loan=loan)
        result.journal_entry, result.warnings = self.post_to_collaborators(
            loan, account_id, paid_amount, EntryDirection.DEBIT, paid_date,
            description=f"{loan.name} EMI #{installment.installment_number}",
            installment_id=installment_id
        )
        return result

    def post_to_collaborators(
        self,
        loan: Loan,
        account_id: Optional[str],
        amount: Money,
        direction: EntryDirection,
        entry_date: date,
        description: str,
        installment_id: Optional[str] = None
    ):
        """
        Apply the loan's ledger and journal flags for a committed money movement.

        Returns:
            (journal entry or None, list of CollaboratorUnavailable warnings)
        """
        warnings = []
        entry = None
        target_account = account_id or loan.account_id

        if loan.affect_balance and target_account:
            delta = -amount if direction == EntryDirection.DEBIT else amount
            try:
                if self.ledger is None:
                    raise RuntimeError("no account ledger configured")
                self.ledger.adjust_balance(target_account, delta)
            except Exception as e:
                warnings.append(self._collaborator_failed("account_ledger", e, loan.id, installment_id))

        if loan.create_transaction:
            entry = JournalEntry(
                account_id=target_account,
                amount=amount,
                direction=direction,
                source_loan_id=loan.id,
                date=entry_date,
                description=description,
                installment_id=installment_id
            )
            try:
                if self.journal is None:
                    raise RuntimeError("no transaction journal configured")
                self.journal.append(entry)
            except Exception as e:
                warnings.append(self._collaborator_failed("transaction_journal", e, loan.id, installment_id))
                entry = None

        return entry, warnings

    def _collaborator_failed(self, collaborator: str, error: Exception, loan_id: str,
                             installment_id: Optional[str]) -> CollaboratorUnavailable:
        warning = CollaboratorUnavailable(collaborator, str(error))
        log_action(
            self.logger, "warning", str(warning),
            action="collaborator_call", resource=f"loan:{loan_id}",
            extra={"collaborator": collaborator, "installment_id": installment_id}
        )
        self.audit_trail.log_event(
            AuditEventType.COLLABORATOR_FAILURE, "loan", loan_id,
            {"collaborator": collaborator, "error": str(error), "installment_id": installment_id}
        )
        return warning
