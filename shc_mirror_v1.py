"""
SecureHealth Chain (SHC) - Patient Directory (off-chain mirror)
Version: 1.0.0

Keeps searchable patient profiles keyed by member ID. Enrollment registers
the patient on the chain; provider assignments and payload updates flow back
from the audit stream.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import json
import math
import threading

from shc_enforcement_v1 import InvariantViolation, logger
from shc_audit_v1 import AuditEvent, AuditEventKind
from shc_roles_v1 import normalize_principal

BLOOD_TYPES = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")
EMERGENCY_CONTACT_FIELDS = ("name", "phone", "relationship")
SEARCH_LIMIT = 20

class DirectoryError(Exception):
    """Rejected directory request."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

# ============================================
# DATA MODELS
# ============================================

@dataclass
class PatientProfile:
    member_id: str
    patient_name: str
    date_of_birth: date
    blood_type: str
    wallet_address: str
    block_number: int
    encrypted_data: str
    registered_at: datetime
    registration_status: str = "pending"
    last_updated: Optional[datetime] = None
    assigned_provider: Optional[str] = None
    emergency_contact: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        # encrypted_data stays in the directory
        return {
            'member_id': self.member_id,
            'patient_name': self.patient_name,
            'date_of_birth': self.date_of_birth.isoformat(),
            'blood_type': self.blood_type,
            'wallet_address': self.wallet_address,
            'block_number': self.block_number,
            'registration_status': self.registration_status,
            'registered_at': self.registered_at.isoformat(),
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
            'assigned_provider': self.assigned_provider,
            'emergency_contact': dict(self.emergency_contact)
        }

@dataclass
class DirectoryEvent:
    event_type: str
    member_id: Optional[str]
    data: Dict[str, Any]
    timestamp: datetime
    block_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type,
            'member_id': self.member_id,
            'data': dict(self.data),
            'timestamp': self.timestamp.isoformat(),
            'block_number': self.block_number
        }

def encode_patient_payload(patient_name: str, date_of_birth: date, blood_type: str, now: datetime) -> str:
    """0x-prefixed hex of the JSON profile, as submitted to the chain."""
    document = json.dumps({
        'patientName': patient_name,
        'dateOfBirth': date_of_birth.isoformat(),
        'bloodType': blood_type,
        'timestamp': now.isoformat()
    })
    return "0x" + document.encode("utf-8").hex()

def _parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    # full timestamps are accepted, trailing junk is not
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise DirectoryError("Invalid date of birth")

# ============================================
# PATIENT DIRECTORY
# ============================================

class PatientDirectory:
    """Secondary store mirroring the patient registry."""

    def __init__(self, chain, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.chain = chain
        self._clock = clock
        self._profiles: Dict[str, PatientProfile] = {}
        self._events: List[DirectoryEvent] = []
        self._lock = threading.RLock()
        self._unsubscribe = chain.subscribe(self.on_audit_event)

        logger.info("[DIRECTORY] Patient directory subscribed to audit stream")

    def close(self):
        self._unsubscribe()

    def _log_event(self, event_type: str, member_id: Optional[str], data: Dict[str, Any],
                   block_number: Optional[int] = None):
        with self._lock:
            self._events.append(DirectoryEvent(
                event_type=event_type,
                member_id=member_id,
                data=data,
                timestamp=self._clock(),
                block_number=block_number
            ))

    # ---------- audit stream ----------

    def on_audit_event(self, event: AuditEvent):
        """Apply a ledger event to the mirrored profiles."""
        if event.kind is AuditEventKind.PATIENT_REGISTERED:
            self._log_event(
                "blockchain:confirmed", event.business_key,
                {'wallet_address': event.primary_key}, event.block_number
            )
        elif event.kind is AuditEventKind.PROVIDER_ASSIGNED:
            with self._lock:
                profile = self._profiles.get(event.business_key)
                if profile is None:
                    logger.debug(f"[DIRECTORY] No profile for {event.business_key}, provider not mirrored")
                    return
                profile.assigned_provider = event.data.get('provider')
                profile.last_updated = self._clock()
            self._log_event(
                "provider:assigned", event.business_key,
                {'provider': event.data.get('provider')}, event.block_number
            )
        elif event.kind is AuditEventKind.PATIENT_UPDATED:
            with self._lock:
                profile = self._profiles.get(event.business_key)
                if profile is not None:
                    profile.last_updated = self._clock()

    # ---------- operations ----------

    def enroll(
        self,
        caller: str,
        member_id: str,
        patient_name: str,
        date_of_birth,
        blood_type: str
    ) -> Dict[str, Any]:
        """Validate a registration, submit it to the chain and store the profile."""
        if not member_id or not patient_name or not date_of_birth or not blood_type:
            raise DirectoryError("All fields are required")
        if blood_type not in BLOOD_TYPES:
            raise DirectoryError(f"Invalid blood type: {blood_type}")
        dob = _parse_date(date_of_birth)

        encrypted_data = encode_patient_payload(patient_name, dob, blood_type, self._clock())
        profile = PatientProfile(
            member_id=member_id,
            patient_name=patient_name,
            date_of_birth=dob,
            blood_type=blood_type,
            wallet_address=normalize_principal(caller),
            block_number=0,
            encrypted_data=encrypted_data,
            registered_at=self._clock()
        )

        # pending profile is in place before the ledger can emit events for it
        with self._lock:
            if member_id in self._profiles:
                raise DirectoryError("Member ID already registered")
            self._profiles[member_id] = profile

        self._log_event("validation:success", member_id, {'member_id': member_id, 'patient_name': patient_name})

        try:
            receipt = self.chain.register(caller, member_id, encrypted_data)
        except InvariantViolation as e:
            self._discard_pending(profile)
            self._log_event("registration:error", member_id, {'error': e.reason, 'kind': e.kind})
            raise
        except Exception:
            self._discard_pending(profile)
            raise

        with self._lock:
            profile.block_number = receipt['block_number']
            profile.registered_at = datetime.fromtimestamp(receipt['timestamp'], tz=timezone.utc)
            profile.registration_status = "confirmed"
            result = profile.to_dict()

        self._log_event(
            "registration:success", member_id,
            {'member_id': member_id, 'block_number': receipt['block_number']},
            receipt['block_number']
        )
        logger.info(f"[DIRECTORY] Enrolled {member_id} ({profile.wallet_address})")
        return result

    def _discard_pending(self, profile: PatientProfile):
        with self._lock:
            if self._profiles.get(profile.member_id) is profile:
                del self._profiles[profile.member_id]

    def list(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Newest first, paginated."""
        page = page if page and page > 0 else 1
        limit = limit if limit and limit > 0 else 10

        with self._lock:
            profiles = sorted(
                self._profiles.values(),
                key=lambda p: (p.registered_at, p.block_number),
                reverse=True
            )
        total = len(profiles)
        start = (page - 1) * limit

        return {
            'patients': [p.to_dict() for p in profiles[start:start + limit]],
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'total_pages': math.ceil(total / limit)
            }
        }

    def find(self, member_id: str) -> Dict[str, Any]:
        with self._lock:
            profile = self._profiles.get(member_id)
        if profile is None:
            raise DirectoryError("Patient not found", status_code=404)
        return profile.to_dict()

    def search(self, q: str) -> List[Dict[str, Any]]:
        """Case-insensitive match on member ID or name."""
        q = (q or "").strip()
        if len(q) < 2:
            raise DirectoryError("Search query must be at least 2 characters")

        needle = q.lower()
        with self._lock:
            matches = [
                p for p in self._profiles.values()
                if needle in p.member_id.lower() or needle in p.patient_name.lower()
            ]
        return [p.to_dict() for p in matches[:SEARCH_LIMIT]]

    def update_profile(self, member_id: str, emergency_contact: Optional[Dict[str, str]]) -> Dict[str, Any]:
        contact = {
            k: str(v) for k, v in (emergency_contact or {}).items()
            if k in EMERGENCY_CONTACT_FIELDS and v is not None
        }
        with self._lock:
            profile = self._profiles.get(member_id)
            if profile is None:
                raise DirectoryError("Patient not found", status_code=404)
            profile.emergency_contact = contact
            profile.last_updated = self._clock()
            result = profile.to_dict()

        self._log_event("patient:updated", member_id, {'updated_fields': ['emergency_contact'], 'updated_by': 'system'})
        return result

    def deactivate(self, member_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Soft delete; the ledger record stays active."""
        with self._lock:
            profile = self._profiles.get(member_id)
            if profile is None:
                raise DirectoryError("Patient not found", status_code=404)
            profile.registration_status = "inactive"
            profile.last_updated = self._clock()
            result = profile.to_dict()

        self._log_event("patient:deactivated", member_id, {'reason': reason or "User requested"})
        return result

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)

        with self._lock:
            profiles = list(self._profiles.values())

        distribution: Dict[str, int] = {}
        for profile in profiles:
            distribution[profile.blood_type] = distribution.get(profile.blood_type, 0) + 1

        registered_this_week = sum(1 for p in profiles if p.registered_at >= week_start)
        return {
            'total_patients': len(profiles),
            'registered_today': sum(1 for p in profiles if p.registered_at >= today_start),
            'registered_this_week': registered_this_week,
            'blood_type_distribution': distribution,
            'average_per_day': round(registered_this_week / 7, 1)
        }

    def history(self, kind: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Directory events, newest first."""
        limit = limit if limit and limit > 0 else 50
        with self._lock:
            events = [e for e in reversed(self._events) if kind is None or e.event_type == kind]
        return [e.to_dict() for e in events[:limit]]
