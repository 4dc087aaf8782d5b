"""
Audit Trail Module

Append-only record of every ledger mutation: installment decisions, deposit
confirmations, withdrawals and schedule corrections, each stamped with the
acting identity. Events form a SHA-256 chain, so editing or dropping a
stored event shows up in verify_integrity().
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface


class AuditEventType(Enum):
    """What happened to the audited entity"""
    # Loans
    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_COMPLETED = "loan_completed"

    # Installments
    INSTALLMENT_REPORTED = "installment_reported"
    INSTALLMENT_APPROVED = "installment_approved"
    INSTALLMENT_REJECTED = "installment_rejected"
    INSTALLMENT_INSERTED = "installment_inserted"
    INSTALLMENT_UPDATED = "installment_updated"
    INSTALLMENT_REMOVED = "installment_removed"
    INSTALLMENTS_MARKED_OVERDUE = "installments_marked_overdue"

    # Savings plans
    SAVINGS_PLAN_CREATED = "savings_plan_created"
    SAVINGS_PLAN_STATUS_CHANGED = "savings_plan_status_changed"

    # Deposits
    DEPOSIT_SUBMITTED = "deposit_submitted"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    DEPOSIT_REJECTED = "deposit_rejected"
    DEPOSIT_DELETED = "deposit_deleted"

    # Withdrawals
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_PROCESSED = "withdrawal_processed"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"


def _plain(value: Any) -> Any:
    """Reduce metadata to values json.dumps accepts"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


@dataclass
class AuditEvent:
    """One link of the audit chain"""
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str  # loan, installment, savings_plan, deposit, withdrawal
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )

    def calculate_hash(self) -> str:
        """SHA-256 over every stored field except current_hash itself"""
        content = self.to_dict()
        del content['current_hash']
        canonical = json.dumps(content, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Storage-backed audit chain.

    Each new event carries the hash of the event before it; the first event
    chains from the empty string.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash = self._tail_hash()

    def _events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: (e.created_at, e.metadata.get('_seq', 0)))
        return events

    def _tail_hash(self) -> str:
        events = self._events()
        return events[-1].current_hash if events else ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of entity affected (loan, deposit, ...)
            entity_id: Storage key of the affected entity
            metadata: Free-form details; Decimals and dates are stringified
            user_id: Identity uid that performed the action

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            # Another trail over the same storage may have appended since
            self._last_hash = self._tail_hash()

            details = dict(metadata or {})
            # Orders events that share a timestamp
            details['_seq'] = self.storage.count(self.table_name) + 1

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                user_id=user_id,
                metadata=details
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All audit events for one entity, oldest first"""
        return [
            e for e in self._events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event.

        Returns:
            ``valid`` plus ``total_events``, and the position of every event
            whose hash no longer matches (``hash_errors``) or whose
            ``previous_hash`` does not point at its predecessor
            (``chain_breaks``)
        """
        events = self._events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({'event_id': event.id, 'position': position})
            if event.previous_hash != expected_previous:
                chain_breaks.append({'event_id': event.id, 'position': position})
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
