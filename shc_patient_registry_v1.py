"""
SecureHealth Chain (SHC) - Patient Registry
Version: 1.0.0

Record Store and Uniqueness Index for patient registrations, and the
gated transitions over them: register, update, authorize provider and
assign provider.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Union

from shc_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    DuplicatePrimaryKey,
    DuplicateBusinessKey,
    RecordNotFound,
    logger
)
from shc_invariants_v1 import (
    registration_invariants,
    update_invariants,
    assignment_invariants,
    provider_authorization_invariants
)
from shc_roles_v1 import Role, RoleDirectory, normalize_principal
from shc_ledger_v1 import LedgerClock
from shc_audit_v1 import AuditEmitter, AuditEventKind

Payload = Union[bytes, bytearray, str]

def as_payload(payload: Optional[Payload]) -> bytes:
    """Payloads are opaque; text is stored as its UTF-8 bytes."""
    if payload is None:
        return b""
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)

# ============================================
# DATA MODELS
# ============================================

@dataclass
class PatientRecord:
    """Patient registration, keyed by the owning principal."""
    primary_key: str
    business_key: str
    payload: bytes
    timestamp: int
    active: bool = True
    provider_ref: Optional[str] = None

    def view(self) -> Dict[str, Any]:
        """Public read model (payload is never returned)."""
        return {
            'primary_key': self.primary_key,
            'business_key': self.business_key,
            'timestamp': self.timestamp,
            'active': self.active,
            'provider_ref': self.provider_ref
        }

# ============================================
# STORAGE LAYER
# ============================================

class UniquenessIndex:
    """business key -> primary key, first writer wins."""

    def __init__(self):
        self._keys: Dict[str, str] = {}

    def reserve(self, business_key: str, primary_key: str):
        if business_key in self._keys:
            raise DuplicateBusinessKey("Member ID already exists")
        self._keys[business_key] = primary_key

    def lookup(self, business_key: str) -> Optional[str]:
        return self._keys.get(business_key)

    def release(self, business_key: str):
        """Rollback only."""
        self._keys.pop(business_key, None)

    def __contains__(self, business_key: str) -> bool:
        return business_key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._keys)

    def restore(self, snapshot: Dict[str, str]):
        self._keys = dict(snapshot)

class RecordStore:
    """In-memory patient record store keyed by principal."""

    def __init__(self):
        self._records: Dict[str, PatientRecord] = {}
        self.total_records = 0

    def exists(self, primary_key: str) -> bool:
        return primary_key in self._records

    def count(self, primary_key: str) -> int:
        return 1 if primary_key in self._records else 0

    def find(self, primary_key: Optional[str]) -> Optional[PatientRecord]:
        if primary_key is None:
            return None
        return self._records.get(primary_key)

    def get(self, primary_key: str) -> PatientRecord:
        record = self._records.get(primary_key)
        if record is None:
            raise RecordNotFound("Patient not registered")
        return record

    def create(self, primary_key: str, business_key: str, payload: bytes, timestamp: int) -> PatientRecord:
        if primary_key in self._records:
            raise DuplicatePrimaryKey("Patient already registered")

        record = PatientRecord(
            primary_key=primary_key,
            business_key=business_key,
            payload=payload,
            timestamp=timestamp
        )
        self._records[primary_key] = record
        self.total_records += 1

        logger.info(f"[STORAGE] Created patient record {primary_key}")
        return record

    def update(self, primary_key: str, payload: bytes) -> PatientRecord:
        record = self.get(primary_key)
        if not record.active:
            raise RecordNotFound("Patient not active")
        record.payload = payload
        return record

    def set_provider(self, primary_key: str, provider: str) -> PatientRecord:
        record = self.get(primary_key)
        record.provider_ref = provider
        return record

    def snapshot(self) -> Dict[str, Any]:
        return {
            'records': {k: replace(v) for k, v in self._records.items()},
            'total_records': self.total_records
        }

    def restore(self, snapshot: Dict[str, Any]):
        self._records = {k: replace(v) for k, v in snapshot['records'].items()}
        self.total_records = snapshot['total_records']

    def __len__(self) -> int:
        return len(self._records)

# ============================================
# PATIENT REGISTRY SERVICE
# ============================================

class PatientRegistryService:
    """Gated transitions over the patient Record Store."""

    def __init__(
        self,
        store: RecordStore,
        index: UniquenessIndex,
        roles: RoleDirectory,
        clock: LedgerClock,
        emitter: AuditEmitter,
        decision_ledger: DecisionLedger
    ):
        self.store = store
        self.index = index
        self.roles = roles
        self.clock = clock
        self.emitter = emitter

        self.register_enforcer = InvariantEnforcer("register", registration_invariants(), decision_ledger)
        self.update_enforcer = InvariantEnforcer("update", update_invariants(), decision_ledger)
        self.assign_enforcer = InvariantEnforcer("assign_provider", assignment_invariants(), decision_ledger)
        self.authorize_enforcer = InvariantEnforcer(
            "authorize_provider", provider_authorization_invariants(), decision_ledger
        )

        logger.info("[REGISTRY] Patient registry initialized")

    def _rollback_to(self):
        store_snapshot = self.store.snapshot()
        index_snapshot = self.index.snapshot()
        roles_snapshot = self.roles.snapshot()

        def _restore():
            self.store.restore(store_snapshot)
            self.index.restore(index_snapshot)
            self.roles.restore(roles_snapshot)

        return _restore

    # ---------- transitions ----------

    def register(self, caller: str, business_key: str, payload: Payload) -> Dict[str, Any]:
        """Register the caller as a patient under ``business_key`` (member ID)."""
        caller = normalize_principal(caller)
        payload_bytes = as_payload(payload)
        block = self.clock.next_block()

        def _register_action(**ctx) -> Dict[str, Any]:
            record = self.store.create(caller, business_key, payload_bytes, block.timestamp)
            self.index.reserve(business_key, caller)
            return {
                'record': record,
                'primary_key': caller,
                'business_key': business_key,
                'store': self.store,
                'index': self.index
            }

        try:
            result = self.register_enforcer.enforce_action(
                _register_action,
                rollback=self._rollback_to(),
                caller=caller,
                business_key=business_key,
                payload=payload_bytes,
                store=self.store,
                index=self.index
            )
        except InvariantViolation as e:
            logger.error(f"[REGISTRY] Registration rejected for {caller}: {e.reason}")
            raise

        record = result['record']
        self.emitter.emit(
            AuditEventKind.PATIENT_REGISTERED, caller, business_key, block,
            payload_size=len(payload_bytes)
        )
        logger.info(f"[REGISTRY] ✅ Patient {caller} registered with member ID {business_key}")

        return {
            'primary_key': record.primary_key,
            'business_key': record.business_key,
            'timestamp': record.timestamp,
            'block_number': block.number
        }

    def update(self, caller: str, payload: Payload) -> bool:
        """Replace the caller's own payload; member ID and timestamp are kept."""
        caller = normalize_principal(caller)
        payload_bytes = as_payload(payload)
        block = self.clock.next_block()

        def _update_action(**ctx) -> Dict[str, Any]:
            record = self.store.update(caller, payload_bytes)
            return {'record': record, 'primary_key': caller, 'store': self.store}

        try:
            result = self.update_enforcer.enforce_action(
                _update_action,
                rollback=self._rollback_to(),
                caller=caller,
                payload=payload_bytes,
                store=self.store
            )
        except InvariantViolation as e:
            logger.error(f"[REGISTRY] Update rejected for {caller}: {e.reason}")
            raise

        record = result['record']
        self.emitter.emit(
            AuditEventKind.PATIENT_UPDATED, caller, record.business_key, block,
            payload_size=len(payload_bytes)
        )
        return True

    def authorize_provider(self, caller: str, provider: str) -> bool:
        """Grant the provider role. Custodian only."""
        caller = normalize_principal(caller)
        provider = normalize_principal(provider)
        block = self.clock.next_block()

        def _authorize_action(**ctx) -> Dict[str, Any]:
            newly_granted = self.roles.grant_role(caller, provider, Role.PROVIDER)
            return {'provider': provider, 'newly_granted': newly_granted}

        try:
            result = self.authorize_enforcer.enforce_action(
                _authorize_action,
                rollback=self._rollback_to(),
                caller=caller,
                provider=provider,
                roles=self.roles
            )
        except InvariantViolation as e:
            logger.error(f"[REGISTRY] Provider authorization rejected: {e.reason}")
            raise

        self.emitter.emit(
            AuditEventKind.PROVIDER_AUTHORIZED, provider, None, block,
            authorized_by=caller, newly_granted=result['newly_granted']
        )
        return True

    def assign_provider(self, caller: str, patient: str, provider: str) -> bool:
        """Point a patient record at an authorized provider. Custodian only."""
        caller = normalize_principal(caller)
        patient = normalize_principal(patient)
        provider = normalize_principal(provider)
        block = self.clock.next_block()

        def _assign_action(**ctx) -> Dict[str, Any]:
            record = self.store.set_provider(patient, provider)
            return {'record': record, 'provider': provider}

        try:
            result = self.assign_enforcer.enforce_action(
                _assign_action,
                rollback=self._rollback_to(),
                caller=caller,
                patient=patient,
                provider=provider,
                roles=self.roles,
                store=self.store
            )
        except InvariantViolation as e:
            logger.error(f"[REGISTRY] Provider assignment rejected for {patient}: {e.reason}")
            raise

        record = result['record']
        self.emitter.emit(
            AuditEventKind.PROVIDER_ASSIGNED, patient, record.business_key, block,
            provider=provider
        )
        return True

    # ---------- queries ----------

    def get(self, primary_key: str) -> Dict[str, Any]:
        return self.store.get(normalize_principal(primary_key)).view()

    def is_business_key_registered(self, business_key: str) -> bool:
        return business_key in self.index

    def lookup_business_key(self, business_key: str) -> Optional[str]:
        return self.index.lookup(business_key)

    def total_records(self) -> int:
        return self.store.total_records
