"""
SecureHealth Chain (SHC) - Test Suite
Version: 1.0.0

- Unit tests (invariants and storage in isolation)
- Transition tests (register, update, providers, payments, withdraw)
- Failure tests (rollback correctness, decision ledger)
- Sequencing tests (single writer, cancellation, races)
- Directory tests (off-chain mirror)
"""

import pytest
from dataclasses import replace
from datetime import datetime, timezone
import json
import threading

from shc_config import SystemConfig, ZERO_PRINCIPAL
from shc_enforcement_v1 import (
    Invariant,
    InvariantType,
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    EmptyField,
    DuplicatePrimaryKey,
    DuplicateBusinessKey,
    RecordNotFound,
    Unauthorized,
    UnauthorizedTarget,
    InsufficientPayment,
    AlreadyPaid,
    SystemCompromised
)
from shc_invariants_v1 import (
    CallerPrincipalValid,
    RequiredField,
    RequiredPayload,
    UniquePatientPrimaryKey,
    UniqueMemberId,
    PositivePaymentValue,
    ItemNotAlreadyPaid,
    registration_invariants,
    payment_invariants
)
from shc_ledger_v1 import LedgerClock, Sequencer
from shc_roles_v1 import Role, RoleDirectory
from shc_audit_v1 import AuditEventKind
from shc_patient_registry_v1 import RecordStore, UniquenessIndex
from shc_payment_registry_v1 import PaymentRecord, PaymentStorage
from shc_chain_v1 import SecureHealthChain
from shc_mirror_v1 import PatientDirectory, DirectoryError

CUSTODIAN = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
PATIENT_A = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
PATIENT_B = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
DOCTOR = "0x90f79bf6eb2c4f870365e785982e1f101e93b906"

GENESIS = 1760000000  # 2025-10-09T08:53:20Z

# ============================================
# HELPERS
# ============================================

class ManualClock:
    """Time source the tests move by hand."""

    def __init__(self, now: float = GENESIS):
        self.now = now

    def __call__(self) -> float:
        return self.now

def make_config() -> SystemConfig:
    return SystemConfig(system_secret=b"shc-test-secret", deployer=CUSTODIAN)

@pytest.fixture
def clock():
    return ManualClock()

@pytest.fixture
def chain(clock):
    chain = SecureHealthChain(make_config(), time_source=clock)
    yield chain
    chain.shutdown()

@pytest.fixture
def directory(chain):
    directory = PatientDirectory(
        chain,
        clock=lambda: datetime.fromtimestamp(chain.clock.now or GENESIS, tz=timezone.utc)
    )
    yield directory
    directory.close()

class FailingPostCheck(Invariant):
    """Passes pre-check, fails after the action ran."""

    error_class = InvariantViolation

    def __init__(self):
        super().__init__(
            id="test_post_fails",
            statement="Always fails after the action",
            reason="post-check rejected",
            type=InvariantType.STATE
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result) -> bool:
        return False

# ============================================
# UNIT TESTS - INVARIANTS
# ============================================

class TestCallerPrincipalValid:

    def test_pre_check_real_principal(self):
        assert CallerPrincipalValid().pre_check(caller=PATIENT_A) == True

    @pytest.mark.parametrize("caller", ["", "   ", ZERO_PRINCIPAL])
    def test_pre_check_zero_or_blank(self, caller):
        assert CallerPrincipalValid().pre_check(caller=caller) == False

    def test_violation_is_unauthorized(self):
        error = CallerPrincipalValid().violation()
        assert isinstance(error, Unauthorized)
        assert error.reason == "Invalid caller address"

class TestRequiredField:
    """Empty-field guards."""

    def test_pre_check_present(self):
        inv = RequiredField("t_001", "business_key", "Member ID cannot be empty", "patient_registry")
        assert inv.pre_check(business_key="MEM1") == True

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_pre_check_empty(self, value):
        inv = RequiredField("t_001", "business_key", "Member ID cannot be empty", "patient_registry")
        assert inv.pre_check(business_key=value) == False

    def test_violation_is_empty_field(self):
        inv = RequiredField("t_001", "business_key", "Member ID cannot be empty", "patient_registry")
        error = inv.violation()
        assert isinstance(error, EmptyField)
        assert error.reason == "Member ID cannot be empty"
        assert error.invariant_id == "t_001"

class TestRequiredPayload:

    def test_pre_check_non_empty(self):
        assert RequiredPayload().pre_check(payload=b"0xdata") == True

    def test_pre_check_empty(self):
        assert RequiredPayload().pre_check(payload=b"") == False
        assert RequiredPayload().pre_check() == False

class TestUniquePatientPrimaryKey:

    def test_pre_check_new_principal(self):
        store = RecordStore()
        assert UniquePatientPrimaryKey().pre_check(caller=PATIENT_A, store=store) == True

    def test_pre_check_existing_principal(self):
        store = RecordStore()
        store.create(PATIENT_A, "MEM1", b"x", GENESIS)
        assert UniquePatientPrimaryKey().pre_check(caller=PATIENT_A, store=store) == False

    def test_post_check_exactly_one(self):
        store = RecordStore()
        store.create(PATIENT_A, "MEM1", b"x", GENESIS)
        assert UniquePatientPrimaryKey().post_check({'store': store, 'primary_key': PATIENT_A}) == True

class TestUniqueMemberId:

    def test_pre_check_unused(self):
        assert UniqueMemberId().pre_check(business_key="MEM1", index=UniquenessIndex()) == True

    def test_pre_check_reserved(self):
        index = UniquenessIndex()
        index.reserve("MEM1", PATIENT_A)
        assert UniqueMemberId().pre_check(business_key="MEM1", index=index) == False

    def test_post_check_owner(self):
        index = UniquenessIndex()
        index.reserve("MEM1", PATIENT_A)
        result = {'index': index, 'business_key': "MEM1", 'primary_key': PATIENT_A}
        assert UniqueMemberId().post_check(result) == True

class TestPaymentInvariants:

    @pytest.mark.parametrize("amount", [0, -5, None])
    def test_non_positive_amount(self, amount):
        assert PositivePaymentValue().pre_check(amount=amount) == False

    def test_positive_amount(self):
        assert PositivePaymentValue().pre_check(amount=1) == True

    def test_item_paid_once(self):
        payments = PaymentStorage()
        inv = ItemNotAlreadyPaid()
        assert inv.pre_check(item_id="I1", payments=payments) == True

        payments.create(PaymentRecord("P1", "I1", "bill", "MEM1", PATIENT_A, 100, GENESIS))
        assert inv.pre_check(item_id="I1", payments=payments) == False
        assert inv.post_check({'payments': payments, 'item_id': "I1", 'payment_id': "P1"}) == True

# ============================================
# UNIT TESTS - STORAGE
# ============================================

class TestUniquenessIndex:

    def test_first_writer_wins(self):
        index = UniquenessIndex()
        index.reserve("MEM1", PATIENT_A)

        with pytest.raises(DuplicateBusinessKey):
            index.reserve("MEM1", PATIENT_B)
        assert index.lookup("MEM1") == PATIENT_A

    def test_release(self):
        index = UniquenessIndex()
        index.reserve("MEM1", PATIENT_A)
        index.release("MEM1")
        assert index.lookup("MEM1") is None

class TestRecordStore:

    def test_create_twice_rejected(self):
        store = RecordStore()
        store.create(PATIENT_A, "MEM1", b"x", GENESIS)

        with pytest.raises(DuplicatePrimaryKey):
            store.create(PATIENT_A, "MEM2", b"y", GENESIS)
        assert store.total_records == 1

    def test_get_missing(self):
        with pytest.raises(RecordNotFound) as e:
            RecordStore().get(PATIENT_A)
        assert e.value.reason == "Patient not registered"

    def test_update_inactive_rejected(self):
        store = RecordStore()
        store.create(PATIENT_A, "MEM1", b"x", GENESIS).active = False

        with pytest.raises(RecordNotFound):
            store.update(PATIENT_A, b"y")

    def test_snapshot_restore(self):
        store = RecordStore()
        store.create(PATIENT_A, "MEM1", b"x", GENESIS)
        snapshot = store.snapshot()

        store.update(PATIENT_A, b"changed")
        store.create(PATIENT_B, "MEM2", b"y", GENESIS)
        store.restore(snapshot)

        assert store.get(PATIENT_A).payload == b"x"
        assert not store.exists(PATIENT_B)
        assert store.total_records == 1

class TestRoleDirectory:

    def test_custodian_bootstrapped(self):
        roles = RoleDirectory(CUSTODIAN)
        assert roles.has_role(CUSTODIAN, Role.CUSTODIAN)
        assert roles.holders(Role.CUSTODIAN) == [CUSTODIAN]

    def test_grant_requires_custodian(self):
        roles = RoleDirectory(CUSTODIAN)
        with pytest.raises(Unauthorized) as e:
            roles.grant_role(PATIENT_A, DOCTOR, Role.PROVIDER)
        assert e.value.reason == "Only custodian can perform this action"

    def test_custodian_cannot_be_granted(self):
        roles = RoleDirectory(CUSTODIAN)
        with pytest.raises(Unauthorized):
            roles.grant_role(CUSTODIAN, PATIENT_A, Role.CUSTODIAN)
        assert roles.holders(Role.CUSTODIAN) == [CUSTODIAN]

    def test_grant_is_idempotent(self):
        roles = RoleDirectory(CUSTODIAN)
        assert roles.grant_role(CUSTODIAN, DOCTOR, Role.PROVIDER) == True
        assert roles.grant_role(CUSTODIAN, DOCTOR, Role.PROVIDER) == False
        assert roles.has_role(DOCTOR.upper().replace("0X", "0x"), Role.PROVIDER)

    def test_zero_custodian_rejected(self):
        with pytest.raises(ValueError):
            RoleDirectory(ZERO_PRINCIPAL)

# ============================================
# PATIENT REGISTRY TRANSITIONS
# ============================================

class TestPatientRegistration:

    def test_register_and_get(self, chain):
        """register(MEM1, 0xdata) -> active record, one patient."""
        receipt = chain.register(PATIENT_A, "MEM1", "0xdata")

        assert receipt['primary_key'] == PATIENT_A
        assert receipt['business_key'] == "MEM1"
        assert receipt['timestamp'] == GENESIS

        record = chain.get(PATIENT_A)
        assert record['active'] == True
        assert record['business_key'] == "MEM1"
        assert record['provider_ref'] is None
        assert chain.total_records() == 1

    def test_business_key_registered_after_not_before(self, chain):
        assert chain.is_business_key_registered("MEM1") == False
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        assert chain.is_business_key_registered("MEM1") == True
        assert chain.lookup_business_key("MEM1") == PATIENT_A

    def test_duplicate_primary_key(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")

        with pytest.raises(DuplicatePrimaryKey) as e:
            chain.register(PATIENT_A, "MEM2", b"0xdata")
        assert e.value.reason == "Patient already registered"
        assert chain.is_business_key_registered("MEM2") == False

    def test_duplicate_business_key(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")

        with pytest.raises(DuplicateBusinessKey) as e:
            chain.register(PATIENT_B, "MEM1", b"0xdata")
        assert e.value.reason == "Member ID already exists"
        assert chain.total_records() == 1

    @pytest.mark.parametrize("caller", ["   ", ZERO_PRINCIPAL])
    def test_zero_or_blank_caller(self, chain, caller):
        with pytest.raises(Unauthorized) as e:
            chain.register(caller, "MEM1", b"0xdata")
        assert e.value.reason == "Invalid caller address"
        assert chain.total_records() == 0
        assert chain.is_business_key_registered("MEM1") == False

    def test_empty_business_key(self, chain):
        with pytest.raises(EmptyField) as e:
            chain.register(PATIENT_A, "", b"0xdata")
        assert e.value.reason == "Member ID cannot be empty"

    def test_empty_payload(self, chain):
        with pytest.raises(EmptyField) as e:
            chain.register(PATIENT_A, "MEM1", "")
        assert e.value.reason == "Patient data cannot be empty"

    def test_empty_check_precedes_duplicate_check(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        with pytest.raises(EmptyField):
            chain.register(PATIENT_A, "MEM1", b"")

    def test_principal_case_insensitive(self, chain):
        chain.register(PATIENT_A.upper().replace("0X", "0x"), "MEM1", b"0xdata")
        assert chain.get(PATIENT_A)['business_key'] == "MEM1"

    def test_get_unregistered(self, chain):
        with pytest.raises(RecordNotFound):
            chain.get(PATIENT_B)

class TestPatientUpdate:

    def test_update_own_record(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        assert chain.update(PATIENT_A, b"0xnew") == True

        assert chain.store.get(PATIENT_A).payload == b"0xnew"
        record = chain.get(PATIENT_A)
        assert record['business_key'] == "MEM1"
        assert record['timestamp'] == GENESIS

    def test_update_keeps_timestamp(self, chain, clock):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        clock.now = GENESIS + 3600
        chain.update(PATIENT_A, b"0xnew")
        assert chain.get(PATIENT_A)['timestamp'] == GENESIS

    def test_update_unregistered(self, chain):
        with pytest.raises(RecordNotFound) as e:
            chain.update(PATIENT_B, b"0xnew")
        assert e.value.reason == "Patient not registered"

    def test_update_zero_caller(self, chain):
        with pytest.raises(Unauthorized):
            chain.update(ZERO_PRINCIPAL, b"0xnew")

    def test_update_empty_payload(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        with pytest.raises(EmptyField):
            chain.update(PATIENT_A, b"")
        assert chain.store.get(PATIENT_A).payload == b"0xdata"

class TestProviderAssignment:

    def test_assign_authorized_provider(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)

        assert chain.get(PATIENT_A)['provider_ref'] == DOCTOR
        assert chain.is_provider(DOCTOR)

    def test_assign_unauthorized_target(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")

        with pytest.raises(UnauthorizedTarget) as e:
            chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)
        assert e.value.reason == "Not an authorized provider"
        assert chain.get(PATIENT_A)['provider_ref'] is None

    def test_assign_requires_custodian(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        chain.authorize_provider(CUSTODIAN, DOCTOR)

        with pytest.raises(Unauthorized) as e:
            chain.assign_provider(PATIENT_B, PATIENT_A, DOCTOR)
        assert e.value.reason == "Only custodian can perform this action"

    def test_assign_unregistered_patient(self, chain):
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        with pytest.raises(RecordNotFound):
            chain.assign_provider(CUSTODIAN, PATIENT_B, DOCTOR)

    def test_reassign_provider(self, chain):
        other = "0x15d34aaf54267db7d7c367839aaf71a00a2c6a65"
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        chain.authorize_provider(CUSTODIAN, other)

        chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)
        chain.assign_provider(CUSTODIAN, PATIENT_A, other)
        assert chain.get(PATIENT_A)['provider_ref'] == other

    def test_authorize_requires_custodian(self, chain):
        with pytest.raises(Unauthorized):
            chain.authorize_provider(PATIENT_A, DOCTOR)
        assert not chain.is_provider(DOCTOR)

    def test_authorize_zero_principal(self, chain):
        with pytest.raises(UnauthorizedTarget):
            chain.authorize_provider(CUSTODIAN, ZERO_PRINCIPAL)

# ============================================
# PAYMENT REGISTRY TRANSITIONS
# ============================================

class TestPayments:

    def test_process_payment_updates_stats(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)

        assert chain.get_stats() == {'count_processed': 1, 'amount_processed': 100, 'balance': 100}
        payment = chain.get_payment("P1")
        assert payment['item_id'] == "I1"
        assert payment['item_type'] == "bill"
        assert payment['payer'] == PATIENT_A
        assert payment['amount'] == 100
        assert payment['completed'] == True
        assert chain.is_item_paid("I1")

    def test_zero_amount(self, chain):
        with pytest.raises(InsufficientPayment):
            chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 0)
        assert chain.get_stats()['count_processed'] == 0

    def test_item_paid_twice(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)

        with pytest.raises(AlreadyPaid) as e:
            chain.process_payment(PATIENT_B, "P2", "I1", "bill", "MEM2", 100)
        assert e.value.reason == "Item already paid"
        assert chain.get_stats() == {'count_processed': 1, 'amount_processed': 100, 'balance': 100}

    def test_payment_id_reused(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        with pytest.raises(DuplicatePrimaryKey):
            chain.process_payment(PATIENT_A, "P1", "I2", "bill", "MEM1", 50)

    @pytest.mark.parametrize("payment_id,item_id", [("", "I1"), ("P1", "")])
    def test_empty_ids(self, chain, payment_id, item_id):
        with pytest.raises(EmptyField):
            chain.process_payment(PATIENT_A, payment_id, item_id, "bill", "MEM1", 100)

    @pytest.mark.parametrize("caller", ["", ZERO_PRINCIPAL])
    def test_zero_or_blank_payer(self, chain, caller):
        with pytest.raises(Unauthorized) as e:
            chain.process_payment(caller, "P1", "I1", "bill", "MEM1", 100)
        assert e.value.reason == "Invalid caller address"
        assert chain.get_stats() == {'count_processed': 0, 'amount_processed': 0, 'balance': 0}
        assert chain.is_item_paid("I1") == False

    def test_unknown_payment(self, chain):
        with pytest.raises(RecordNotFound):
            chain.get_payment("missing")

class TestWithdraw:

    def test_withdraw_moves_balance(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        chain.process_payment(PATIENT_B, "P2", "I2", "medication", "MEM2", 40)

        receipt = chain.withdraw(CUSTODIAN)
        assert receipt == {'recipient': CUSTODIAN, 'amount': 140}
        assert chain.get_stats() == {'count_processed': 2, 'amount_processed': 140, 'balance': 0}

    def test_withdraw_requires_custodian(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        with pytest.raises(Unauthorized):
            chain.withdraw(PATIENT_A)
        assert chain.get_stats()['balance'] == 100

    def test_withdraw_empty_balance(self, chain):
        with pytest.raises(InsufficientPayment) as e:
            chain.withdraw(CUSTODIAN)
        assert e.value.reason == "No funds to withdraw"

# ============================================
# AUDIT EMITTER
# ============================================

class TestAuditTrail:

    def test_one_event_per_accepted_transition(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        chain.update(PATIENT_A, b"0xnew")
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        chain.withdraw(CUSTODIAN)

        kinds = [e.kind for e in chain.audit_events()]
        assert kinds == [
            AuditEventKind.PATIENT_REGISTERED,
            AuditEventKind.PATIENT_UPDATED,
            AuditEventKind.PROVIDER_AUTHORIZED,
            AuditEventKind.PROVIDER_ASSIGNED,
            AuditEventKind.PAYMENT_PROCESSED,
            AuditEventKind.FUNDS_WITHDRAWN
        ]

    def test_rejected_transition_emits_nothing(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        with pytest.raises(DuplicateBusinessKey):
            chain.register(PATIENT_B, "MEM1", b"0xdata")
        assert len(chain.audit_events()) == 1

    def test_event_fields(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        event = chain.audit_events(AuditEventKind.PATIENT_REGISTERED)[0]

        assert event.primary_key == PATIENT_A
        assert event.business_key == "MEM1"
        assert event.timestamp == GENESIS
        assert event.to_dict()['kind'] == "PatientRegistered"

    def test_sequence_and_time_ordering(self, chain, clock):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        clock.now = GENESIS - 100  # wall clock stepped back
        chain.register(PATIENT_B, "MEM2", b"0xdata")
        clock.now = GENESIS + 10
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 5)

        events = chain.audit_events()
        assert [e.sequence for e in events] == [1, 2, 3]
        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(timestamps)
        assert timestamps[1] == GENESIS

    def test_subscriber_receives_events(self, chain):
        received = []
        chain.subscribe(received.append)
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        assert [e.kind for e in received] == [AuditEventKind.PATIENT_REGISTERED]

    def test_failing_observer_does_not_undo_transition(self, chain):
        def broken(event):
            raise RuntimeError("mirror offline")

        chain.subscribe(broken)
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        assert chain.total_records() == 1
        assert len(chain.audit_events()) == 1

# ============================================
# FAILURE / ROLLBACK TESTS
# ============================================

class TestRollbackMechanisms:

    def test_post_check_failure_restores_state(self, chain):
        chain.registry.register_enforcer.invariants.append(FailingPostCheck())

        with pytest.raises(InvariantViolation) as e:
            chain.register(PATIENT_A, "MEM1", b"0xdata")

        assert e.value.reason == "post-check rejected"
        assert chain.total_records() == 0
        assert chain.is_business_key_registered("MEM1") == False
        assert len(chain.audit_events()) == 0

    def test_payment_rollback_restores_escrow(self, chain):
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        chain.payment_registry.payment_enforcer.invariants.append(FailingPostCheck())

        with pytest.raises(InvariantViolation):
            chain.process_payment(PATIENT_A, "P2", "I2", "bill", "MEM1", 50)

        assert chain.get_stats() == {'count_processed': 1, 'amount_processed': 100, 'balance': 100}
        assert chain.is_item_paid("I2") == False

    def test_failed_rollback_is_system_compromised(self):
        enforcer = InvariantEnforcer("test", [FailingPostCheck()], DecisionLedger(b"k"))

        def broken_rollback():
            raise RuntimeError("snapshot lost")

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(lambda **ctx: {}, rollback=broken_rollback)

    def test_action_error_rolls_back(self):
        store = RecordStore()
        enforcer = InvariantEnforcer("test", [], DecisionLedger(b"k"))
        snapshot = store.snapshot()

        def action(**ctx):
            store.create(PATIENT_A, "MEM1", b"x", GENESIS)
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            enforcer.enforce_action(action, rollback=lambda: store.restore(snapshot))
        assert not store.exists(PATIENT_A)

# ============================================
# DECISION LEDGER
# ============================================

class TestDecisionLedger:

    def test_checks_recorded_and_signed(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        ledger = chain.decision_ledger

        pre_checks = [e for e in ledger.entries if e.check_type == "PRE"]
        assert [e.invariant_id for e in pre_checks] == [inv.id for inv in registration_invariants()]
        assert ledger.verify_chain_integrity() == True

    def test_rejection_recorded(self, chain):
        with pytest.raises(EmptyField):
            chain.register(PATIENT_A, "", b"0xdata")

        failures = chain.decision_ledger.failures()
        assert len(failures) == 1
        assert failures[0].invariant_id == "shc_001_member_id_not_empty"
        assert failures[0].reason == "Member ID cannot be empty"

    def test_tampering_detected(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        ledger = chain.decision_ledger
        ledger.entries[0] = replace(ledger.entries[0], result=False)
        assert ledger.verify_chain_integrity() == False

    def test_payment_check_order(self):
        enforcer = InvariantEnforcer("process_payment", payment_invariants(), DecisionLedger(b"k"))
        assert [inv.id for inv in enforcer.invariants] == [
            "shc_100_caller_principal_valid",
            "shc_201_positive_payment",
            "shc_207_payment_id_not_empty",
            "shc_204_item_id_not_empty",
            "shc_202_item_paid_once",
            "shc_203_unique_payment_id",
            "shc_205_escrow_reconciles"
        ]

# ============================================
# SEQUENCING
# ============================================

class TestSequencer:

    def test_queued_submission_can_be_cancelled(self, chain):
        gate = threading.Event()
        blocker = chain.sequencer.submit(gate.wait, 5)
        pending = chain.submit("register", PATIENT_A, "MEM1", b"0xdata")

        assert pending.cancel() == True
        gate.set()
        blocker.result()

        assert chain.total_records() == 0
        assert chain.is_business_key_registered("MEM1") == False

    def test_sequenced_submission_cannot_be_cancelled(self, chain):
        future = chain.submit("register", PATIENT_A, "MEM1", b"0xdata")
        future.result()
        assert future.cancel() == False
        assert chain.total_records() == 1

    def test_race_for_business_key(self, chain):
        callers = [f"0x{i:040x}" for i in range(1, 11)]
        futures = [chain.submit("register", c, "MEM-RACE", b"0xdata") for c in callers]

        winners = [f for f in futures if f.exception() is None]
        losers = [f for f in futures if f.exception() is not None]

        assert len(winners) == 1
        assert all(isinstance(f.exception(), DuplicateBusinessKey) for f in losers)
        assert chain.lookup_business_key("MEM-RACE") == callers[0]

    def test_threads_serialized(self, chain):
        errors = []

        def register(i):
            try:
                chain.register(f"0x{i:040x}", f"MEM{i}", b"0xdata")
            except InvariantViolation as e:
                errors.append(e)

        threads = [threading.Thread(target=register, args=(i,)) for i in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert chain.total_records() == 20
        assert [e.sequence for e in chain.audit_events()] == list(range(1, 21))

    def test_unknown_transition(self, chain):
        with pytest.raises(ValueError):
            chain.submit("refund", "P1")

    def test_nested_call_runs_inline(self):
        sequencer = Sequencer("test-seq")
        try:
            assert sequencer.execute(lambda: sequencer.execute(lambda: 42)) == 42
        finally:
            sequencer.shutdown()

class TestLedgerClock:

    def test_non_decreasing(self):
        source = ManualClock(100)
        clock = LedgerClock(time_source=source)
        first = clock.next_block()
        source.now = 50
        second = clock.next_block()

        assert second.timestamp == first.timestamp == 100
        assert second.number == first.number + 1

    def test_genesis_floor(self):
        clock = LedgerClock(genesis_time=500, time_source=ManualClock(100))
        assert clock.next_block().timestamp == 500

# ============================================
# INTEGRATION TESTS
# ============================================

class TestEndToEndFlows:

    def test_complete_patient_and_billing_flow(self, chain):
        chain.register(PATIENT_A, "MEM1", b"0xdata")
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)
        chain.process_payment(PATIENT_A, "P1", "I1", "bill", "MEM1", 100)
        chain.withdraw(CUSTODIAN)

        health = chain.get_system_health()
        assert health['total_records'] == 1
        assert health['providers'] == 1
        assert health['payments_processed'] == 1
        assert health['escrow_balance'] == 0
        assert health['audit_events'] == 5
        assert health['failed_checks'] == 0
        assert health['escrow_reconciles'] == True
        assert health['ledger_integrity'] == True

# ============================================
# PATIENT DIRECTORY (OFF-CHAIN MIRROR)
# ============================================

class TestPatientDirectory:

    def enroll_alice(self, directory):
        return directory.enroll(PATIENT_A, "MEM1", "Alice Doe", "1990-05-17", "O+")

    def test_enroll_registers_on_chain(self, chain, directory):
        profile = self.enroll_alice(directory)

        assert profile['registration_status'] == "confirmed"
        assert profile['wallet_address'] == PATIENT_A
        assert 'encrypted_data' not in profile
        assert chain.lookup_business_key("MEM1") == PATIENT_A

        payload = chain.store.get(PATIENT_A).payload.decode()
        document = json.loads(bytes.fromhex(payload[2:]))
        assert document['patientName'] == "Alice Doe"
        assert document['bloodType'] == "O+"

    def test_enroll_validation(self, directory):
        with pytest.raises(DirectoryError) as e:
            directory.enroll(PATIENT_A, "MEM1", "", "1990-05-17", "O+")
        assert e.value.message == "All fields are required"

        with pytest.raises(DirectoryError):
            directory.enroll(PATIENT_A, "MEM1", "Alice Doe", "1990-05-17", "Q+")

        with pytest.raises(DirectoryError):
            directory.enroll(PATIENT_A, "MEM1", "Alice Doe", "not-a-date", "O+")

    def test_enroll_duplicate_member_id(self, directory):
        self.enroll_alice(directory)
        with pytest.raises(DirectoryError) as e:
            directory.enroll(PATIENT_B, "MEM1", "Bob Roe", "1985-01-02", "A-")
        assert e.value.message == "Member ID already registered"

    def test_enroll_chain_rejection_logged(self, chain, directory):
        chain.register(PATIENT_A, "MEM0", b"0xdata")

        with pytest.raises(DuplicatePrimaryKey):
            self.enroll_alice(directory)

        errors = directory.history("registration:error")
        assert errors[0]['data']['kind'] == "DuplicatePrimaryKey"
        with pytest.raises(DirectoryError):
            directory.find("MEM1")

    def test_provider_assignment_mirrored(self, chain, directory):
        self.enroll_alice(directory)
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        chain.assign_provider(CUSTODIAN, PATIENT_A, DOCTOR)

        assert directory.find("MEM1")['assigned_provider'] == DOCTOR
        assert directory.history("provider:assigned")[0]['member_id'] == "MEM1"

    def test_provider_assigned_during_enroll_is_mirrored(self, chain, directory):
        chain.authorize_provider(CUSTODIAN, DOCTOR)
        seen_status = []

        def assign_on_register(event):
            if event.kind is AuditEventKind.PATIENT_REGISTERED:
                seen_status.append(directory.find("MEM1")['registration_status'])
                chain.submit("assign_provider", CUSTODIAN, PATIENT_A, DOCTOR).result()

        chain.subscribe(assign_on_register)
        profile = self.enroll_alice(directory)

        assert seen_status == ["pending"]
        assert profile['registration_status'] == "confirmed"
        assert profile['assigned_provider'] == DOCTOR
        assert directory.find("MEM1")['assigned_provider'] == chain.get(PATIENT_A)['provider_ref'] == DOCTOR

    def test_date_of_birth_formats(self, directory):
        with pytest.raises(DirectoryError) as e:
            directory.enroll(PATIENT_A, "MEM1", "Alice Doe", "1990-01-01garbage", "O+")
        assert e.value.message == "Invalid date of birth"

        profile = directory.enroll(PATIENT_A, "MEM1", "Alice Doe", "1990-05-17T00:00:00Z", "O+")
        assert profile['date_of_birth'] == "1990-05-17"

    def test_list_pagination_newest_first(self, clock, directory):
        for i in range(1, 6):
            clock.now = GENESIS + i
            directory.enroll(f"0x{i:040x}", f"MEM{i}", f"Patient {i}", "1990-01-01", "A+")

        page = directory.list(page=1, limit=2)
        assert [p['member_id'] for p in page['patients']] == ["MEM5", "MEM4"]
        assert page['pagination'] == {'total': 5, 'page': 1, 'limit': 2, 'total_pages': 3}
        assert [p['member_id'] for p in directory.list(page=3, limit=2)['patients']] == ["MEM1"]

    def test_search(self, directory):
        self.enroll_alice(directory)
        directory.enroll(PATIENT_B, "MEM2", "Bob Roe", "1985-01-02", "A-")

        assert [p['member_id'] for p in directory.search("alice")] == ["MEM1"]
        assert len(directory.search("mem")) == 2
        with pytest.raises(DirectoryError):
            directory.search("a")

    def test_update_profile_and_deactivate(self, chain, directory):
        self.enroll_alice(directory)

        profile = directory.update_profile("MEM1", {'name': "Carol", 'phone': "555-0100", 'extra': "x"})
        assert profile['emergency_contact'] == {'name': "Carol", 'phone': "555-0100"}

        profile = directory.deactivate("MEM1", "moved away")
        assert profile['registration_status'] == "inactive"
        assert chain.get(PATIENT_A)['active'] == True
        assert directory.history("patient:deactivated")[0]['data'] == {'reason': "moved away"}

    def test_missing_profile(self, directory):
        with pytest.raises(DirectoryError) as e:
            directory.update_profile("NOPE", {})
        assert e.value.status_code == 404

    def test_stats(self, directory):
        self.enroll_alice(directory)
        directory.enroll(PATIENT_B, "MEM2", "Bob Roe", "1985-01-02", "O+")

        stats = directory.stats(now=datetime.fromtimestamp(GENESIS + 60, tz=timezone.utc))
        assert stats['total_patients'] == 2
        assert stats['registered_today'] == 2
        assert stats['registered_this_week'] == 2
        assert stats['blood_type_distribution'] == {'O+': 2}
        assert stats['average_per_day'] == 0.3
