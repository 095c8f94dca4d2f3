"""
SecureHealth Chain (SHC) - Enforcement Layer
Version: 1.0.0

Every ledger transition runs through an InvariantEnforcer: pre-checks in
dependency order, the action, post-checks, and a snapshot rollback when
anything fails. Each check is signed and appended to the DecisionLedger.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type
from enum import Enum
import hmac
import logging
from abc import ABC, abstractmethod

from shc_config import SystemConfig

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_CONFIG = SystemConfig.from_env()

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    AUTHORIZATION = "authorization"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    REJECT = "reject"
    ROLLBACK = "rollback"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=getattr(logging, SYSTEM_CONFIG.log_level, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("SHC.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class InvariantViolation(Exception):
    """Raised when a transition is rejected. Carries the reason shown to the caller."""

    def __init__(self, reason: str, invariant_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.invariant_id = invariant_id

    @property
    def kind(self) -> str:
        return type(self).__name__

class EmptyField(InvariantViolation):
    """A required string or payload was empty."""

class DuplicatePrimaryKey(InvariantViolation):
    """A record already exists for this primary key."""

class DuplicateBusinessKey(InvariantViolation):
    """The business key is already reserved by another record."""

class RecordNotFound(InvariantViolation):
    """No (active) record for the given key."""

class Unauthorized(InvariantViolation):
    """Caller lacks the role the transition requires."""

class UnauthorizedTarget(InvariantViolation):
    """Target principal lacks the role the transition requires."""

class InsufficientPayment(InvariantViolation):
    """Attached value is zero or missing."""

class AlreadyPaid(InvariantViolation):
    """The item (or payment id) has already been paid."""

class SystemCompromised(Exception):
    """Raised when rollback fails - ledger state can no longer be trusted."""
    pass

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def sign_decision(secret: bytes, invariant_id: str, check_type: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{check_type}:{result}:{timestamp.isoformat()}"
    return hmac.new(secret, data.encode(), 'sha256').hexdigest()

@dataclass(frozen=True)
class EnforcementDecision:
    """Immutable record of one pre- or post-check."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    transition: str
    reason: Optional[str]
    signature: str

    def verify_signature(self, secret: bytes) -> bool:
        expected = sign_decision(secret, self.invariant_id, self.check_type, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'invariant_id': self.invariant_id,
            'check_type': self.check_type,
            'result': self.result,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat(),
            'transition': self.transition,
            'reason': self.reason
        }

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only ledger of all enforcement decisions."""

    def __init__(self, secret: Optional[bytes] = None):
        self.secret = secret or SYSTEM_CONFIG.system_secret
        self.entries: List[EnforcementDecision] = []

    def decide(
        self,
        invariant_id: str,
        check_type: str,
        result: bool,
        action: EnforcementResult,
        transition: str,
        reason: Optional[str] = None
    ) -> EnforcementDecision:
        """Build and sign a decision (not yet recorded)."""
        timestamp = datetime.now()
        return EnforcementDecision(
            invariant_id=invariant_id,
            check_type=check_type,
            result=result,
            action=action,
            timestamp=timestamp,
            transition=transition,
            reason=reason,
            signature=sign_decision(self.secret, invariant_id, check_type, result, timestamp)
        )

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature(self.secret):
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature(self.secret) for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all transition guards.

    ``pre_check`` receives the transition context as keyword arguments and
    ignores keys it does not need. ``post_check`` receives the dict returned
    by the action.
    """

    error_class: Type[InvariantViolation] = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        reason: str,
        type: InvariantType,
        criticality: Criticality = Criticality.CRITICAL,
        dependencies: Optional[List[str]] = None,
        owner: str = "ledger"
    ):
        self.id = id
        self.statement = statement
        self.reason = reason
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies or []
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        pass

    def post_check(self, result: Dict[str, Any]) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        return True

    def violation(self) -> InvariantViolation:
        return self.error_class(self.reason, self.id)

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Non-bypassable enforcement layer for one transition type."""

    def __init__(self, transition: str, invariants: List[Invariant], ledger: DecisionLedger):
        self.transition = transition
        self.invariants = self._topological_sort(invariants)
        self.ledger = ledger

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order, keeping declaration order otherwise."""
        sorted_invs = []
        remaining = [inv.id for inv in invariants]

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise ValueError(f"Circular dependency detected in {self.transition} invariants")

            # Take only the first ready invariant so declaration order decides ties
            first = ready[0]
            sorted_invs.append(first)
            remaining.remove(first.id)

        return sorted_invs

    def enforce_action(
        self,
        action: Callable[..., Dict[str, Any]],
        rollback: Optional[Callable[[], None]] = None,
        **context
    ) -> Dict[str, Any]:
        """Execute action with full invariant enforcement.

        Pre-checks stop at the first failure and raise that invariant's error;
        nothing has been mutated yet. Action errors and post-check failures
        call ``rollback`` before propagating.
        """
        for inv in self.invariants:
            passed = self._run_pre_check(inv, context)

            if not passed:
                logger.warning(f"PRE-CHECK FAILED [{self.transition}]: {inv.id} - {inv.reason}")
                raise inv.violation()

        try:
            result = action(**context)
        except InvariantViolation:
            self._rollback(rollback)
            raise
        except Exception as e:
            logger.error(f"ACTION FAILED [{self.transition}]: {e}")
            self._rollback(rollback)
            raise

        for inv in self.invariants:
            passed = self._run_post_check(inv, result)

            if not passed:
                logger.error(f"POST-CHECK FAILED [{self.transition}]: {inv.id}")
                self._rollback(rollback)
                raise inv.violation()

        logger.debug(f"All {len(self.invariants)} invariant checks PASSED for {self.transition}")
        return result

    def _run_pre_check(self, inv: Invariant, context: Dict[str, Any]) -> bool:
        result = bool(inv.pre_check(**context))
        action = EnforcementResult.PROCEED if result else EnforcementResult.REJECT
        self.ledger.record(self.ledger.decide(
            inv.id, "PRE", result, action, self.transition,
            reason=None if result else inv.reason
        ))
        return result

    def _run_post_check(self, inv: Invariant, result: Dict[str, Any]) -> bool:
        try:
            passed = bool(inv.post_check(result))
        except (KeyError, AttributeError) as e:
            logger.error(f"Post-check error: {inv.id}", exc_info=e)
            passed = False
        action = EnforcementResult.PROCEED if passed else EnforcementResult.ROLLBACK
        self.ledger.record(self.ledger.decide(
            inv.id, "POST", passed, action, self.transition,
            reason=None if passed else inv.reason
        ))
        return passed

    def _rollback(self, rollback: Optional[Callable[[], None]]):
        if rollback is None:
            return
        logger.warning(f"ROLLBACK INITIATED [{self.transition}]")
        try:
            rollback()
        except Exception as e:
            logger.critical(f"ROLLBACK FAILED [{self.transition}]: {e}")
            raise SystemCompromised(f"Rollback failed for {self.transition}") from e
        logger.info(f"ROLLBACK COMPLETE [{self.transition}]")
