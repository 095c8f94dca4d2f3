"""
SecureHealth Chain (SHC) - Payment Registry
Version: 1.0.0

Payments are keyed by payment id, each item is paid at most once, and the
attached value stays in escrow until the custodian withdraws it.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from shc_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    DuplicatePrimaryKey,
    AlreadyPaid,
    RecordNotFound,
    logger
)
from shc_invariants_v1 import payment_invariants, withdrawal_invariants
from shc_roles_v1 import RoleDirectory, normalize_principal
from shc_ledger_v1 import LedgerClock
from shc_audit_v1 import AuditEmitter, AuditEventKind

# ============================================
# DATA MODELS
# ============================================

@dataclass
class PaymentRecord:
    payment_id: str
    item_id: str
    item_type: str
    member_id: str
    payer: str
    amount: int  # smallest currency unit
    timestamp: int
    completed: bool = True

    def view(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'item_id': self.item_id,
            'item_type': self.item_type,
            'member_id': self.member_id,
            'payer': self.payer,
            'amount': self.amount,
            'timestamp': self.timestamp,
            'completed': self.completed
        }

@dataclass
class Withdrawal:
    recipient: str
    amount: int
    timestamp: int

# ============================================
# STORAGE LAYER
# ============================================

class PaymentStorage:
    """Payment records, paid items and escrow totals."""

    def __init__(self):
        self._payments: Dict[str, PaymentRecord] = {}
        self._paid_items: Dict[str, str] = {}  # item_id -> payment_id
        self.withdrawals: List[Withdrawal] = []
        self.count_processed = 0
        self.amount_processed = 0
        self.amount_withdrawn = 0
        self.balance = 0

    def exists(self, payment_id: str) -> bool:
        return payment_id in self._payments

    def is_item_paid(self, item_id: str) -> bool:
        return item_id in self._paid_items

    def paid_by(self, item_id: str) -> Optional[str]:
        return self._paid_items.get(item_id)

    def get(self, payment_id: str) -> PaymentRecord:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise RecordNotFound("Payment not found")
        return payment

    def create(self, payment: PaymentRecord) -> PaymentRecord:
        if payment.payment_id in self._payments:
            raise DuplicatePrimaryKey("Payment ID already used")
        if payment.item_id in self._paid_items:
            raise AlreadyPaid("Item already paid")

        self._payments[payment.payment_id] = payment
        self._paid_items[payment.item_id] = payment.payment_id
        self.count_processed += 1
        self.amount_processed += payment.amount
        self.balance += payment.amount

        logger.info(f"[STORAGE] Stored payment {payment.payment_id} for item {payment.item_id}")
        return payment

    def drain(self, recipient: str, timestamp: int) -> Withdrawal:
        withdrawal = Withdrawal(recipient=recipient, amount=self.balance, timestamp=timestamp)
        self.amount_withdrawn += withdrawal.amount
        self.balance = 0
        self.withdrawals.append(withdrawal)
        return withdrawal

    def snapshot(self) -> Dict[str, Any]:
        return {
            'payments': {k: replace(v) for k, v in self._payments.items()},
            'paid_items': dict(self._paid_items),
            'withdrawals': list(self.withdrawals),
            'count_processed': self.count_processed,
            'amount_processed': self.amount_processed,
            'amount_withdrawn': self.amount_withdrawn,
            'balance': self.balance
        }

    def restore(self, snapshot: Dict[str, Any]):
        self._payments = {k: replace(v) for k, v in snapshot['payments'].items()}
        self._paid_items = dict(snapshot['paid_items'])
        self.withdrawals = list(snapshot['withdrawals'])
        self.count_processed = snapshot['count_processed']
        self.amount_processed = snapshot['amount_processed']
        self.amount_withdrawn = snapshot['amount_withdrawn']
        self.balance = snapshot['balance']

# ============================================
# PAYMENT REGISTRY SERVICE
# ============================================

class PaymentRegistryService:
    """Gated payment and withdrawal transitions."""

    def __init__(
        self,
        payments: PaymentStorage,
        roles: RoleDirectory,
        clock: LedgerClock,
        emitter: AuditEmitter,
        decision_ledger: DecisionLedger
    ):
        self.payments = payments
        self.roles = roles
        self.clock = clock
        self.emitter = emitter

        self.payment_enforcer = InvariantEnforcer("process_payment", payment_invariants(), decision_ledger)
        self.withdraw_enforcer = InvariantEnforcer("withdraw", withdrawal_invariants(), decision_ledger)

        logger.info("[PAYMENTS] Payment registry initialized")

    def _rollback_to(self):
        snapshot = self.payments.snapshot()
        return lambda: self.payments.restore(snapshot)

    def process_payment(
        self,
        caller: str,
        payment_id: str,
        item_id: str,
        item_type: str,
        member_id: str,
        amount: int
    ) -> Dict[str, Any]:
        """
        Record a payment for ``item_id``.

        ``amount`` is the value attached by the caller; it is escrowed in the
        registry balance until withdrawn.
        """
        payer = normalize_principal(caller)
        block = self.clock.next_block()

        def _pay_action(**ctx) -> Dict[str, Any]:
            payment = self.payments.create(PaymentRecord(
                payment_id=payment_id,
                item_id=item_id,
                item_type=item_type or "",
                member_id=member_id or "",
                payer=payer,
                amount=amount,
                timestamp=block.timestamp
            ))
            return {
                'payment': payment,
                'payment_id': payment_id,
                'item_id': item_id,
                'payments': self.payments
            }

        try:
            result = self.payment_enforcer.enforce_action(
                _pay_action,
                rollback=self._rollback_to(),
                caller=payer,
                payment_id=payment_id,
                item_id=item_id,
                amount=amount,
                payments=self.payments
            )
        except InvariantViolation as e:
            logger.error(f"[PAYMENTS] Payment {payment_id} rejected: {e.reason}")
            raise

        payment = result['payment']
        self.emitter.emit(
            AuditEventKind.PAYMENT_PROCESSED, payment_id, item_id, block,
            item_type=payment.item_type, member_id=payment.member_id,
            payer=payer, amount=amount
        )
        logger.info(f"[PAYMENTS] ✅ Payment {payment_id}: {amount} for {payment.item_type} {item_id}")

        return {'payment_id': payment_id, 'item_id': item_id, 'block_number': block.number}

    def withdraw(self, caller: str) -> Dict[str, Any]:
        """Transfer the whole escrow balance to the custodian."""
        caller = normalize_principal(caller)
        block = self.clock.next_block()

        def _withdraw_action(**ctx) -> Dict[str, Any]:
            withdrawal = self.payments.drain(self.roles.custodian, block.timestamp)
            return {'withdrawal': withdrawal, 'payments': self.payments}

        try:
            result = self.withdraw_enforcer.enforce_action(
                _withdraw_action,
                rollback=self._rollback_to(),
                caller=caller,
                roles=self.roles,
                payments=self.payments
            )
        except InvariantViolation as e:
            logger.error(f"[PAYMENTS] Withdrawal rejected: {e.reason}")
            raise

        withdrawal = result['withdrawal']
        self.emitter.emit(
            AuditEventKind.FUNDS_WITHDRAWN, withdrawal.recipient, None, block,
            amount=withdrawal.amount
        )
        logger.info(f"[PAYMENTS] Withdrew {withdrawal.amount} to {withdrawal.recipient}")

        return {'recipient': withdrawal.recipient, 'amount': withdrawal.amount}

    # ---------- queries ----------

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        payment = self.payments.get(payment_id)
        return {
            'item_id': payment.item_id,
            'item_type': payment.item_type,
            'payer': payment.payer,
            'amount': payment.amount,
            'timestamp': payment.timestamp,
            'completed': payment.completed
        }

    def is_item_paid(self, item_id: str) -> bool:
        return self.payments.is_item_paid(item_id)

    def get_stats(self) -> Dict[str, int]:
        return {
            'count_processed': self.payments.count_processed,
            'amount_processed': self.payments.amount_processed,
            'balance': self.payments.balance
        }
