"""
SecureHealth Chain (SHC) - Identity/Role Directory
Version: 1.0.0

Tracks which principal holds which role. The deployer is the single
custodian (root role); grants are monotonic.
"""

from enum import Enum
from typing import Dict, List, Set

from shc_config import ZERO_PRINCIPAL
from shc_enforcement_v1 import Unauthorized, logger

CUSTODIAN_ONLY = "Only custodian can perform this action"

class Role(Enum):
    CUSTODIAN = "custodian"
    PROVIDER = "provider"

def normalize_principal(principal: str) -> str:
    """Principals are compared case-insensitively (hex addresses)."""
    return (principal or "").strip().lower()

def is_zero_principal(principal: str) -> bool:
    return normalize_principal(principal) in ("", ZERO_PRINCIPAL)

class RoleDirectory:
    """principal -> set of roles."""

    def __init__(self, custodian: str):
        custodian = normalize_principal(custodian)
        if is_zero_principal(custodian):
            raise ValueError("Custodian principal cannot be empty")

        self.custodian = custodian
        self._roles: Dict[str, Set[Role]] = {custodian: {Role.CUSTODIAN}}
        logger.info(f"[ROLES] Custodian bootstrapped: {custodian}")

    def has_role(self, principal: str, role: Role) -> bool:
        return role in self._roles.get(normalize_principal(principal), set())

    def require_role(self, principal: str, role: Role):
        """The single capability check used by every gated transition."""
        if not self.has_role(principal, role):
            logger.warning(f"[ROLES] {principal} lacks role {role.value}")
            raise Unauthorized(CUSTODIAN_ONLY if role is Role.CUSTODIAN else f"Caller is not a {role.value}")

    def grant_role(self, caller: str, principal: str, role: Role) -> bool:
        """Grant ``role`` to ``principal``. Returns False if it was already held."""
        self.require_role(caller, Role.CUSTODIAN)

        if role is Role.CUSTODIAN:
            raise Unauthorized("Custodian role cannot be granted")

        principal = normalize_principal(principal)
        if is_zero_principal(principal):
            raise Unauthorized("Cannot grant a role to the zero principal")

        roles = self._roles.setdefault(principal, set())
        if role in roles:
            return False
        roles.add(role)
        logger.info(f"[ROLES] Granted {role.value} to {principal}")
        return True

    def roles_of(self, principal: str) -> Set[Role]:
        return set(self._roles.get(normalize_principal(principal), set()))

    def holders(self, role: Role) -> List[str]:
        return sorted(p for p, roles in self._roles.items() if role in roles)

    def snapshot(self) -> Dict[str, Set[Role]]:
        return {p: set(roles) for p, roles in self._roles.items()}

    def restore(self, snapshot: Dict[str, Set[Role]]):
        self._roles = {p: set(roles) for p, roles in snapshot.items()}
