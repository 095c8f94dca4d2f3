"""
SecureHealth Chain (SHC) - Transition Gate Invariants
Version: 1.0.0

Guards for every ledger transition. Each invariant reads what it needs from
the transition context and, when it fails, names the exact error raised to
the caller. Declaration order within a transition is the check order.
"""

from typing import Any, Dict, Optional

from shc_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    EmptyField,
    DuplicatePrimaryKey,
    DuplicateBusinessKey,
    RecordNotFound,
    Unauthorized,
    UnauthorizedTarget,
    InsufficientPayment,
    AlreadyPaid,
    logger
)
from shc_roles_v1 import Role, CUSTODIAN_ONLY, is_zero_principal

# ============================================
# CALLER INVARIANTS
# ============================================

class CallerPrincipalValid(Invariant):
    """Transitions must be submitted by a real principal."""

    error_class = Unauthorized

    def __init__(self):
        super().__init__(
            id="shc_100_caller_principal_valid",
            statement="It is FORBIDDEN for the zero or blank principal to own records or pay",
            reason="Invalid caller address",
            type=InvariantType.AUTHORIZATION,
            owner="role_directory"
        )

    def pre_check(self, caller: str = "", **kwargs) -> bool:
        valid = not is_zero_principal(caller)
        logger.info(f"PRE-CHECK {self.id}: caller={caller!r}, valid={valid}")
        return valid

# ============================================
# FIELD INVARIANTS
# ============================================

class RequiredField(Invariant):
    """A string field of the transition must be non-empty."""

    error_class = EmptyField

    def __init__(self, id: str, field: str, reason: str, owner: str):
        super().__init__(
            id=id,
            statement=f"It is FORBIDDEN to submit a transition with an empty {field}",
            reason=reason,
            type=InvariantType.DATA_INTEGRITY,
            owner=owner
        )
        self.field = field

    def pre_check(self, **kwargs) -> bool:
        value = kwargs.get(self.field)
        present = value is not None and bool(str(value).strip())
        logger.debug(f"PRE-CHECK {self.id}: {self.field} present={present}")
        return present

class RequiredPayload(Invariant):
    """The opaque payload must carry at least one byte."""

    error_class = EmptyField

    def __init__(self):
        super().__init__(
            id="shc_002_payload_not_empty",
            statement="It is FORBIDDEN to store or replace a patient payload with an empty blob",
            reason="Patient data cannot be empty",
            type=InvariantType.DATA_INTEGRITY,
            owner="patient_registry"
        )

    def pre_check(self, payload: Optional[bytes] = None, **kwargs) -> bool:
        present = payload is not None and len(payload) > 0
        logger.debug(f"PRE-CHECK {self.id}: payload_bytes={len(payload or b'')}, valid={present}")
        return present

# ============================================
# PATIENT REGISTRY INVARIANTS
# ============================================

class UniquePatientPrimaryKey(Invariant):
    """A principal owns at most one patient record."""

    error_class = DuplicatePrimaryKey

    def __init__(self):
        super().__init__(
            id="shc_003_unique_primary_key",
            statement="The system MUST always ensure a principal maps to at most one patient record",
            reason="Patient already registered",
            type=InvariantType.STATE,
            dependencies=["shc_001_member_id_not_empty", "shc_002_payload_not_empty"],
            owner="patient_registry"
        )

    def pre_check(self, caller: str, store, **kwargs) -> bool:
        exists = store.exists(caller)
        logger.info(f"PRE-CHECK {self.id}: principal={caller}, exists={exists}")
        return not exists

    def post_check(self, result: Dict[str, Any]) -> bool:
        count = result['store'].count(result['primary_key'])
        logger.debug(f"POST-CHECK {self.id}: count={count}")
        return count == 1

class UniqueMemberId(Invariant):
    """A member ID is reserved by at most one principal."""

    error_class = DuplicateBusinessKey

    def __init__(self):
        super().__init__(
            id="shc_004_unique_member_id",
            statement="The system MUST always ensure a member ID maps to at most one principal",
            reason="Member ID already exists",
            type=InvariantType.STATE,
            dependencies=["shc_003_unique_primary_key"],
            owner="patient_registry"
        )

    def pre_check(self, business_key: str, index, **kwargs) -> bool:
        owner = index.lookup(business_key)
        logger.info(f"PRE-CHECK {self.id}: member_id={business_key}, reserved_by={owner}")
        return owner is None

    def post_check(self, result: Dict[str, Any]) -> bool:
        owner = result['index'].lookup(result['business_key'])
        logger.debug(f"POST-CHECK {self.id}: reserved_by={owner}")
        return owner == result['primary_key']

class PatientExists(Invariant):
    """The target principal has a patient record."""

    error_class = RecordNotFound

    def __init__(self, key_field: str = "caller"):
        super().__init__(
            id=f"shc_005_patient_exists_{key_field}",
            statement="It is FORBIDDEN to transition a patient record that was never registered",
            reason="Patient not registered",
            type=InvariantType.TRANSITION,
            owner="patient_registry"
        )
        self.key_field = key_field

    def pre_check(self, store, **kwargs) -> bool:
        key = kwargs.get(self.key_field)
        exists = store.exists(key)
        logger.info(f"PRE-CHECK {self.id}: principal={key}, exists={exists}")
        return exists

class PatientActive(Invariant):
    """The target patient record is active."""

    error_class = RecordNotFound

    def __init__(self, key_field: str = "caller"):
        super().__init__(
            id=f"shc_006_patient_active_{key_field}",
            statement="It is FORBIDDEN to transition an inactive patient record",
            reason="Patient not active",
            type=InvariantType.TRANSITION,
            dependencies=[f"shc_005_patient_exists_{key_field}"],
            owner="patient_registry"
        )
        self.key_field = key_field

    def pre_check(self, store, **kwargs) -> bool:
        record = store.find(kwargs.get(self.key_field))
        active = record is not None and record.active
        logger.debug(f"PRE-CHECK {self.id}: active={active}")
        return active

# ============================================
# AUTHORIZATION INVARIANTS
# ============================================

class CallerIsCustodian(Invariant):
    """Only the root role may run this transition."""

    error_class = Unauthorized

    def __init__(self):
        super().__init__(
            id="shc_101_custodian_only",
            statement="It is FORBIDDEN for any principal but the custodian to grant roles, assign providers or withdraw",
            reason=CUSTODIAN_ONLY,
            type=InvariantType.AUTHORIZATION,
            owner="role_directory"
        )

    def pre_check(self, caller: str, roles, **kwargs) -> bool:
        authorized = roles.has_role(caller, Role.CUSTODIAN)
        logger.info(f"PRE-CHECK {self.id}: caller={caller}, authorized={authorized}")

        if not authorized:
            logger.warning(f"AUTHORIZATION VIOLATION: {caller} attempted a custodian-only transition")

        return authorized

class ProviderPrincipalValid(Invariant):
    """A provider grant must name a real principal."""

    error_class = UnauthorizedTarget

    def __init__(self):
        super().__init__(
            id="shc_102_provider_principal_valid",
            statement="It is FORBIDDEN to authorize the zero principal as a provider",
            reason="Invalid provider address",
            type=InvariantType.AUTHORIZATION,
            dependencies=["shc_101_custodian_only"],
            owner="role_directory"
        )

    def pre_check(self, provider: str, **kwargs) -> bool:
        return not is_zero_principal(provider)

class TargetIsAuthorizedProvider(Invariant):
    """Assigned providers must hold the provider role at assignment time."""

    error_class = UnauthorizedTarget

    def __init__(self):
        super().__init__(
            id="shc_103_authorized_provider",
            statement="It is FORBIDDEN to assign a provider that does not hold the provider role",
            reason="Not an authorized provider",
            type=InvariantType.AUTHORIZATION,
            dependencies=["shc_101_custodian_only"],
            owner="role_directory"
        )

    def pre_check(self, provider: str, roles, **kwargs) -> bool:
        authorized = roles.has_role(provider, Role.PROVIDER)
        logger.info(f"PRE-CHECK {self.id}: provider={provider}, authorized={authorized}")
        return authorized

    def post_check(self, result: Dict[str, Any]) -> bool:
        return result['record'].provider_ref == result['provider']

# ============================================
# PAYMENT INVARIANTS
# ============================================

class PositivePaymentValue(Invariant):
    """Attached value must be greater than zero."""

    error_class = InsufficientPayment

    def __init__(self):
        super().__init__(
            id="shc_201_positive_payment",
            statement="It is FORBIDDEN to process a payment with no attached value",
            reason="Payment amount must be greater than zero",
            type=InvariantType.FINANCIAL,
            owner="payment_registry"
        )

    def pre_check(self, amount: int = 0, **kwargs) -> bool:
        valid = amount is not None and amount > 0
        logger.info(f"PRE-CHECK {self.id}: amount={amount}, valid={valid}")
        return valid

class ItemNotAlreadyPaid(Invariant):
    """Every item is paid at most once."""

    error_class = AlreadyPaid

    def __init__(self):
        super().__init__(
            id="shc_202_item_paid_once",
            statement="The system MUST always ensure every item is paid exactly once",
            reason="Item already paid",
            type=InvariantType.STATE,
            dependencies=["shc_204_item_id_not_empty"],
            owner="payment_registry"
        )

    def pre_check(self, item_id: str, payments, **kwargs) -> bool:
        paid = payments.is_item_paid(item_id)
        logger.info(f"PRE-CHECK {self.id}: item={item_id}, already_paid={paid}")
        return not paid

    def post_check(self, result: Dict[str, Any]) -> bool:
        return result['payments'].paid_by(result['item_id']) == result['payment_id']

class UniquePaymentId(Invariant):
    """A payment id identifies at most one payment record."""

    error_class = DuplicatePrimaryKey

    def __init__(self):
        super().__init__(
            id="shc_203_unique_payment_id",
            statement="The system MUST always ensure payment ids are unique",
            reason="Payment ID already used",
            type=InvariantType.STATE,
            dependencies=["shc_202_item_paid_once"],
            owner="payment_registry"
        )

    def pre_check(self, payment_id: str, payments, **kwargs) -> bool:
        exists = payments.exists(payment_id)
        logger.info(f"PRE-CHECK {self.id}: payment={payment_id}, exists={exists}")
        return not exists

class EscrowReconciles(Invariant):
    """Escrow balance always equals processed minus withdrawn."""

    error_class = InsufficientPayment

    def __init__(self):
        super().__init__(
            id="shc_205_escrow_reconciles",
            statement="The system MUST always ensure balance == amount processed - amount withdrawn",
            reason="Escrow balance does not reconcile",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="payment_registry"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Dict[str, Any]) -> bool:
        payments = result['payments']
        reconciles = payments.balance == payments.amount_processed - payments.amount_withdrawn
        logger.debug(f"POST-CHECK {self.id}: balance={payments.balance}, reconciles={reconciles}")
        return reconciles

class PositiveEscrowBalance(Invariant):
    """Withdraw needs something to withdraw."""

    error_class = InsufficientPayment

    def __init__(self):
        super().__init__(
            id="shc_206_positive_balance",
            statement="It is FORBIDDEN to withdraw from an empty escrow",
            reason="No funds to withdraw",
            type=InvariantType.FINANCIAL,
            dependencies=["shc_101_custodian_only"],
            owner="payment_registry"
        )

    def pre_check(self, payments, **kwargs) -> bool:
        balance = payments.balance
        logger.info(f"PRE-CHECK {self.id}: balance={balance}")
        return balance > 0

# ============================================
# TRANSITION INVARIANT SETS
# ============================================

def registration_invariants():
    return [
        CallerPrincipalValid(),
        RequiredField("shc_001_member_id_not_empty", "business_key", "Member ID cannot be empty", "patient_registry"),
        RequiredPayload(),
        UniquePatientPrimaryKey(),
        UniqueMemberId()
    ]

def update_invariants():
    return [
        CallerPrincipalValid(),
        PatientExists("caller"),
        PatientActive("caller"),
        RequiredPayload()
    ]

def assignment_invariants():
    return [
        CallerIsCustodian(),
        PatientExists("patient"),
        PatientActive("patient"),
        TargetIsAuthorizedProvider()
    ]

def provider_authorization_invariants():
    return [
        CallerIsCustodian(),
        ProviderPrincipalValid()
    ]

def payment_invariants():
    return [
        CallerPrincipalValid(),
        PositivePaymentValue(),
        RequiredField("shc_207_payment_id_not_empty", "payment_id", "Payment ID cannot be empty", "payment_registry"),
        RequiredField("shc_204_item_id_not_empty", "item_id", "Item ID cannot be empty", "payment_registry"),
        ItemNotAlreadyPaid(),
        UniquePaymentId(),
        EscrowReconciles()
    ]

def withdrawal_invariants():
    return [
        CallerIsCustodian(),
        PositiveEscrowBalance(),
        EscrowReconciles()
    ]
