"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every committed loan state change is logged here.
"""

import hashlib
import json
import threading
import uuid
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .currency import Money
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_CREATED = "loan_created"
    LOAN_DELETED = "loan_deleted"
    LOAN_CLOSED = "loan_closed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_PRECLOSED = "loan_preclosed"
    LOAN_TOPPED_UP = "loan_topped_up"

    TERM_CHANGED = "term_changed"
    SCHEDULE_GENERATED = "schedule_generated"

    INSTALLMENT_SETTLED = "installment_settled"
    PAYMENT_RECORDED = "payment_recorded"
    OUTSTANDING_ADJUSTED = "outstanding_adjusted"

    COLLABORATOR_FAILURE = "collaborator_failure"


def _convert_value(value):
    if isinstance(value, Money):
        return str(value.amount)
    elif isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, installment, payment, ...
    entity_id: str
    sequence: int     # Position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash.
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._last_sequence = latest.get('sequence', 0)
        else:
            self._last_hash = None
            self._last_sequence = 0

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)

            # Re-load so another trail instance on the same storage cannot fork the chain
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=self._last_sequence + 1,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            return event

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Keep only the most recent N events
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all audit events of one type, oldest first"""
        return [e for e in self._all_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
