"""
External Collaborators Module

Interfaces for the account ledger and transaction journal the loan core
posts to, with in-memory (testing) and log-only implementations.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from .currency import Money


class EntryDirection(Enum):
    """Direction of a journal entry relative to the account"""
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class JournalEntry:
    """Immutable transaction record handed to the journal"""
    account_id: Optional[str]
    amount: Money
    direction: EntryDirection
    source_loan_id: str
    date: date
    description: str = ""
    installment_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class AccountLedger(ABC):
    """Account balance owner"""

    @abstractmethod
    def adjust_balance(self, account_id: str, delta: Money) -> None:
        """Add delta (negative to debit) to the account balance"""
        pass


class TransactionJournal(ABC):
    """Append-only transaction log"""

    @abstractmethod
    def append(self, entry: JournalEntry) -> None:
        """Append an immutable transaction record"""
        pass


class InMemoryAccountLedger(AccountLedger):
    """In-memory ledger for testing"""

    def __init__(self):
        self.balances: Dict[str, Money] = {}
        self.adjustments: List[tuple] = []  # (account_id, delta)
        self._lock = threading.RLock()

    def adjust_balance(self, account_id: str, delta: Money) -> None:
        with self._lock:
            current = self.balances.get(account_id, Money.zero(delta.currency))
            self.balances[account_id] = current + delta
            self.adjustments.append((account_id, delta))

    def get_balance(self, account_id: str) -> Optional[Money]:
        with self._lock:
            return self.balances.get(account_id)


class InMemoryTransactionJournal(TransactionJournal):
    """In-memory journal for testing"""

    def __init__(self):
        self.entries: List[JournalEntry] = []
        self._lock = threading.RLock()

    def append(self, entry: JournalEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def entries_for_loan(self, loan_id: str) -> List[JournalEntry]:
        with self._lock:
            return [e for e in self.entries if e.source_loan_id == loan_id]


class LogAccountLedger(AccountLedger):
    """Ledger that only logs adjustments (no balances kept)"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("loan_tracker.ledger")

    def adjust_balance(self, account_id: str, delta: Money) -> None:
        self.logger.info(f"Balance adjustment for {account_id}: {delta.to_string()}")


class LogTransactionJournal(TransactionJournal):
    """Journal that only logs entries"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("loan_tracker.journal")

    def append(self, entry: JournalEntry) -> None:
        self.logger.info(
            f"Journal {entry.direction.value} {entry.amount.to_string()} "
            f"account={entry.account_id} loan={entry.source_loan_id} date={entry.date.isoformat()}"
        )
