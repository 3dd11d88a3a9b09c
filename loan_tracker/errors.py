"""Exception hierarchy for the loan tracker."""


class LoanTrackerError(Exception):
    """Base exception for all loan tracker errors."""


class LoanNotFoundError(LoanTrackerError):
    """Raised when a referenced loan does not exist."""


class InstallmentNotFoundError(LoanTrackerError):
    """Raised when an installment is missing or not part of the visible schedule."""


class InvalidScheduleInput(LoanTrackerError, ValueError):
    """Raised for amortization parameters that cannot produce a schedule."""


class InvalidPaymentInput(LoanTrackerError, ValueError):
    """Raised when a payment's amount split is inconsistent."""


class TermOverlapError(LoanTrackerError):
    """Raised when a term change does not start after the current term."""


class AlreadySettledError(LoanTrackerError):
    """Raised when settling an installment that is already paid."""


class OutstandingBoundsViolation(LoanTrackerError):
    """Raised when a delta would push outstanding outside [0, principal]."""


class InvalidLoanState(LoanTrackerError):
    """Raised when the loan's status does not allow the operation."""


class CollaboratorUnavailable(LoanTrackerError):
    """Raised (or reported) when the account ledger or transaction journal fails."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator} unavailable: {message}")
        self.collaborator = collaborator
