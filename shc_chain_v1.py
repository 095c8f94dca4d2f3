"""
SecureHealth Chain (SHC) - Deployment Orchestrator
Version: 1.0.0

One deployment of the patient and payment registries. Every call, read or
write, is sequenced through the single-writer executor, so a read observes
every transition sequenced before it.
"""

from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional
import time

from shc_config import SystemConfig
from shc_enforcement_v1 import DecisionLedger, SYSTEM_CONFIG, logger
from shc_ledger_v1 import LedgerClock, Sequencer
from shc_roles_v1 import Role, RoleDirectory
from shc_audit_v1 import AuditEmitter, AuditEvent, AuditEventKind
from shc_patient_registry_v1 import PatientRegistryService, RecordStore, UniquenessIndex
from shc_payment_registry_v1 import PaymentRegistryService, PaymentStorage

class SecureHealthChain:
    """Patient + payment ledger behind one sequencer."""

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        time_source: Callable[[], float] = time.time
    ):
        self.config = config or SYSTEM_CONFIG

        self.sequencer = Sequencer()
        self.clock = LedgerClock(self.config.genesis_time, time_source)
        self.decision_ledger = DecisionLedger(self.config.system_secret)
        self.roles = RoleDirectory(self.config.deployer)
        self.emitter = AuditEmitter()

        self.store = RecordStore()
        self.index = UniquenessIndex()
        self.payments = PaymentStorage()

        self.registry = PatientRegistryService(
            self.store,
            self.index,
            self.roles,
            self.clock,
            self.emitter,
            self.decision_ledger
        )
        self.payment_registry = PaymentRegistryService(
            self.payments,
            self.roles,
            self.clock,
            self.emitter,
            self.decision_ledger
        )

        self._transitions: Dict[str, Callable[..., Any]] = {
            'register': self.registry.register,
            'update': self.registry.update,
            'assign_provider': self.registry.assign_provider,
            'authorize_provider': self.registry.authorize_provider,
            'process_payment': self.payment_registry.process_payment,
            'withdraw': self.payment_registry.withdraw
        }

        logger.info(f"[ORCHESTRATOR] SecureHealth Chain deployed, custodian {self.roles.custodian}")

    @property
    def custodian(self) -> str:
        return self.roles.custodian

    def submit(self, transition: str, *args, **kwargs) -> Future:
        """Queue a named transition; the Future can be cancelled until it is sequenced."""
        if transition not in self._transitions:
            raise ValueError(f"Unknown transition: {transition}")
        return self.sequencer.submit(self._transitions[transition], *args, **kwargs)

    # ---------- patient registry ----------

    def register(self, caller: str, business_key: str, payload) -> Dict[str, Any]:
        return self.sequencer.execute(self.registry.register, caller, business_key, payload)

    def get(self, primary_key: str) -> Dict[str, Any]:
        return self.sequencer.execute(self.registry.get, primary_key)

    def update(self, caller: str, payload) -> bool:
        return self.sequencer.execute(self.registry.update, caller, payload)

    def assign_provider(self, caller: str, primary_key: str, provider: str) -> bool:
        return self.sequencer.execute(self.registry.assign_provider, caller, primary_key, provider)

    def authorize_provider(self, caller: str, principal: str) -> bool:
        return self.sequencer.execute(self.registry.authorize_provider, caller, principal)

    def is_business_key_registered(self, business_key: str) -> bool:
        return self.sequencer.execute(self.registry.is_business_key_registered, business_key)

    def lookup_business_key(self, business_key: str) -> Optional[str]:
        return self.sequencer.execute(self.registry.lookup_business_key, business_key)

    def total_records(self) -> int:
        return self.sequencer.execute(self.registry.total_records)

    def is_provider(self, principal: str) -> bool:
        return self.sequencer.execute(self.roles.has_role, principal, Role.PROVIDER)

    # ---------- payment registry ----------

    def process_payment(
        self,
        caller: str,
        payment_id: str,
        item_id: str,
        item_type: str,
        member_id: str,
        amount: int
    ) -> Dict[str, Any]:
        return self.sequencer.execute(
            self.payment_registry.process_payment,
            caller, payment_id, item_id, item_type, member_id, amount
        )

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self.sequencer.execute(self.payment_registry.get_payment, payment_id)

    def is_item_paid(self, item_id: str) -> bool:
        return self.sequencer.execute(self.payment_registry.is_item_paid, item_id)

    def get_stats(self) -> Dict[str, int]:
        return self.sequencer.execute(self.payment_registry.get_stats)

    def withdraw(self, caller: str) -> Dict[str, Any]:
        return self.sequencer.execute(self.payment_registry.withdraw, caller)

    # ---------- audit ----------

    def audit_events(self, kind: Optional[AuditEventKind] = None, since: int = 0) -> List[AuditEvent]:
        return self.sequencer.execute(self.emitter.events, kind, since)

    def subscribe(self, observer: Callable[[AuditEvent], None], replay: bool = False) -> Callable[[], None]:
        return self.sequencer.execute(self.emitter.subscribe, observer, replay)

    def get_system_health(self) -> Dict[str, Any]:
        """Get complete system health report."""
        return self.sequencer.execute(self._system_health)

    def _system_health(self) -> Dict[str, Any]:
        total_checks = len(self.decision_ledger.entries)
        passed_checks = sum(1 for entry in self.decision_ledger.entries if entry.result)
        health_score = passed_checks / total_checks if total_checks > 0 else 1.0

        return {
            'total_records': self.store.total_records,
            'registered_member_ids': len(self.index),
            'providers': len(self.roles.holders(Role.PROVIDER)),
            'payments_processed': self.payments.count_processed,
            'escrow_balance': self.payments.balance,
            'block_number': self.clock.block_number,
            'audit_events': len(self.emitter),
            'total_invariant_checks': total_checks,
            'passed_checks': passed_checks,
            'failed_checks': total_checks - passed_checks,
            'health_score': health_score,
            'escrow_reconciles': (
                self.payments.balance ==
                self.payments.amount_processed - self.payments.amount_withdrawn
            ),
            'ledger_integrity': self.decision_ledger.verify_chain_integrity()
        }

    def shutdown(self, wait: bool = True):
        self.sequencer.shutdown(wait=wait)

# ============================================
# DEMONSTRATION
# ============================================

def demonstrate_secure_health_chain():
    """Walk one deployment through registration, assignment and payment."""
    from shc_enforcement_v1 import InvariantViolation

    print("\n" + "="*80)
    print("SECUREHEALTH CHAIN - SYSTEM DEMONSTRATION")
    print("="*80 + "\n")

    chain = SecureHealthChain()
    custodian = chain.custodian
    patient = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
    doctor = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"

    print("SCENARIO 1: Register a patient")
    receipt = chain.register(patient, "MEM1", b"0xdata")
    print(f"  Registered {receipt['primary_key']} as {receipt['business_key']} at {receipt['timestamp']}")
    print(f"  Total patients: {chain.total_records()}")

    print("\nSCENARIO 2: Duplicate member ID")
    try:
        chain.register(doctor, "MEM1", b"0xother")
    except InvariantViolation as e:
        print(f"  ❌ {e.kind}: {e.reason}")

    print("\nSCENARIO 3: Authorize and assign a provider")
    chain.authorize_provider(custodian, doctor)
    chain.assign_provider(custodian, patient, doctor)
    print(f"  Provider: {chain.get(patient)['provider_ref']}")

    print("\nSCENARIO 4: Pay a bill")
    chain.process_payment(patient, "P1", "I1", "bill", "MEM1", 100)
    print(f"  Stats: {chain.get_stats()}")
    try:
        chain.process_payment(patient, "P2", "I1", "bill", "MEM1", 100)
    except InvariantViolation as e:
        print(f"  ❌ {e.kind}: {e.reason}")

    print("\nAudit log:")
    for event in chain.audit_events():
        print(f"  #{event.sequence} {event.kind.value} {event.primary_key}")

    health = chain.get_system_health()
    print("\nSystem health:")
    print(f"  Total Checks: {health['total_invariant_checks']}")
    print(f"  Passed: {health['passed_checks']} ✅")
    print(f"  Failed: {health['failed_checks']} ❌")
    print(f"  Integrity: {'✅ VERIFIED' if health['ledger_integrity'] else '❌ COMPROMISED'}")

    chain.shutdown()

if __name__ == "__main__":
    demonstrate_secure_health_chain()
