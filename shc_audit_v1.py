"""
SecureHealth Chain (SHC) - Audit Emitter
Version: 1.0.0

Append-only, ordered event stream. One event per accepted transition;
observers (off-chain mirror, metrics) subscribe to it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shc_enforcement_v1 import logger
from shc_ledger_v1 import Block

class AuditEventKind(Enum):
    PATIENT_REGISTERED = "PatientRegistered"
    PATIENT_UPDATED = "PatientUpdated"
    PROVIDER_ASSIGNED = "ProviderAssigned"
    PROVIDER_AUTHORIZED = "ProviderAuthorized"
    PAYMENT_PROCESSED = "PaymentProcessed"
    FUNDS_WITHDRAWN = "FundsWithdrawn"

@dataclass(frozen=True)
class AuditEvent:
    """Immutable log entry for one accepted transition."""
    sequence: int
    kind: AuditEventKind
    primary_key: str
    business_key: Optional[str]
    timestamp: int
    block_number: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'kind': self.kind.value,
            'primary_key': self.primary_key,
            'business_key': self.business_key,
            'timestamp': self.timestamp,
            'emitted_at': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'block_number': self.block_number,
            'data': dict(self.data)
        }

AuditObserver = Callable[[AuditEvent], None]

class AuditEmitter:
    """Produces the ordered audit log."""

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._observers: List[AuditObserver] = []

    def emit(
        self,
        kind: AuditEventKind,
        primary_key: str,
        business_key: Optional[str],
        block: Block,
        **data
    ) -> AuditEvent:
        event = AuditEvent(
            sequence=len(self._events) + 1,
            kind=kind,
            primary_key=primary_key,
            business_key=business_key,
            timestamp=block.timestamp,
            block_number=block.number,
            data=data
        )
        self._events.append(event)
        logger.info(f"[AUDIT] #{event.sequence} {kind.value} key={primary_key} business_key={business_key}")

        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                # observer failures never undo the transition
                logger.exception(f"[AUDIT] Observer {observer!r} failed on event #{event.sequence}")

        return event

    def subscribe(self, observer: AuditObserver, replay: bool = False) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        if replay:
            for event in self._events:
                observer(event)
        self._observers.append(observer)

        def _unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def events(self, kind: Optional[AuditEventKind] = None, since: int = 0) -> List[AuditEvent]:
        return [
            e for e in self._events
            if e.sequence > since and (kind is None or e.kind == kind)
        ]

    def __len__(self) -> int:
        return len(self._events)
