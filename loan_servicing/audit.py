"""
Audit Trail Module

The audit sink port the core reports state transitions to, and the default
implementation: an append-only log where every event carries the SHA-256 of
its predecessor, so edits or deletions break the chain.
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Actions recorded by the loan servicing core"""
    CREATE_LOAN = "CREATE_LOAN"
    CANCEL_LOAN = "CANCEL_LOAN"
    MARK_OVERDUE = "MARK_OVERDUE"
    REGISTER_PAYMENT = "REGISTER_PAYMENT"
    REVERSE_PAYMENT = "REVERSE_PAYMENT"
    APPLY_LATE_FEE = "APPLY_LATE_FEE"


class AuditEntity(Enum):
    LOAN = "LOAN"
    PAYMENT = "PAYMENT"


def _json_safe(value):
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditSink(ABC):
    """Fire-and-forget receiver of audit records"""

    @abstractmethod
    def record(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        pass


@dataclass
class AuditEvent(StorageRecord):
    """One entry of the chain; ``sequence`` orders the chain"""
    sequence: int
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str
    metadata: Dict[str, Any]
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        result['entity_type'] = self.entity_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        fields = dict(data)
        for key in ('created_at', 'updated_at'):
            fields[key] = datetime.fromisoformat(fields[key])
        fields['action'] = AuditAction(fields['action'])
        fields['entity_type'] = AuditEntity(fields['entity_type'])
        return cls(**fields)

    def calculate_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field except the hash itself"""
        payload = self.to_dict()
        del payload['current_hash']
        del payload['updated_at']
        canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail(AuditSink):
    """Audit sink that appends chained events to a storage table"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        # Chaining must be serial even when the batch records from worker threads
        self._lock = threading.Lock()
        self._head: Optional[AuditEvent] = None
        events = self._ordered_events()
        if events:
            self._head = events[-1]

    def record(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an event after the current head of the chain.

        Args:
            actor_id: Operator who triggered the transition
            action: What happened
            entity_type: LOAN or PAYMENT
            entity_id: Id of the loan or payment
            metadata: Amounts, statuses and reasons for the event

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            head = self._head
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head.sequence + 1 if head else 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                metadata=metadata or {},
                previous_hash=head.current_hash if head else "",
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = event
            return event

    def _ordered_events(self, **filters) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, filters) if filters else self.storage.load_all(self.table_name)
        return sorted((AuditEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: AuditEntity, entity_id: str) -> List[AuditEvent]:
        """All audit events for one entity, oldest first"""
        return self._ordered_events(entity_type=entity_type.value, entity_id=entity_id)

    def verify_integrity(self) -> bool:
        """Recompute every hash and check every link from the first event on"""
        previous = ""
        for event in self._ordered_events():
            if event.previous_hash != previous or not event.verify_hash():
                return False
            previous = event.current_hash
        return True
