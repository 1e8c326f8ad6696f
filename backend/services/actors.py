"""
Compliance Case Hub - Actors & Capabilities

Users carry a role with nested permission flags, e.g.

    {"role": {"name": "reviewer",
              "permissions": {"kyc_management": {"lmro": true},
                              "bra_management": {"dlmro": true},
                              "operation_management": true}}}

The nested flags are resolved once into a flat capability set when the actor
is built, so authorization checks never walk permission paths.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable

ADMIN_ROLE = "admin"


class Capability(str, Enum):
    """Named permissions used by the approval workflows."""
    OPERATION_MANAGEMENT = "operation_management"

    KYC_LMRO = "kyc.lmro"
    KYC_DLMRO = "kyc.dlmro"
    KYC_CEO = "kyc.ceo"

    BRA_LMRO = "bra.lmro"
    BRA_DLMRO = "bra.dlmro"
    BRA_CEO = "bra.ceo"


# Capability -> dotted path of the boolean flag in a user record
CAPABILITY_PERMISSION_PATHS: Dict[Capability, str] = {
    Capability.OPERATION_MANAGEMENT: "role.permissions.operation_management",
    Capability.KYC_LMRO: "role.permissions.kyc_management.lmro",
    Capability.KYC_DLMRO: "role.permissions.kyc_management.dlmro",
    Capability.KYC_CEO: "role.permissions.kyc_management.ceo",
    Capability.BRA_LMRO: "role.permissions.bra_management.lmro",
    Capability.BRA_DLMRO: "role.permissions.bra_management.dlmro",
    Capability.BRA_CEO: "role.permissions.bra_management.ceo",
}


def _lookup(record: Dict[str, Any], dotted_path: str) -> Any:
    current: Any = record
    for key in dotted_path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


@dataclass(frozen=True)
class Actor:
    """An authenticated user acting on a workflow."""
    id: str
    name: str = ""
    role_name: str = ""
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role_name == ADMIN_ROLE

    def has_capability(self, capability: Capability) -> bool:
        """Admins hold every capability."""
        return self.is_admin or capability in self.capabilities

    def has_any_capability(self, capabilities: Iterable[Capability]) -> bool:
        return any(self.has_capability(c) for c in capabilities)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role_name,
            "capabilities": sorted(c.value for c in self.capabilities),
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_user_record(cls, user: Dict[str, Any]) -> "Actor":
        """Build an actor from a stored user document."""
        role = user.get("role") or {}
        capabilities = frozenset(
            capability
            for capability, path in CAPABILITY_PERMISSION_PATHS.items()
            if _lookup(user, path) is True
        )
        return cls(
            id=str(user.get("id") or user.get("_id")),
            name=user.get("name", ""),
            role_name=role.get("name", "") if isinstance(role, dict) else str(role),
            capabilities=capabilities,
        )


def capability_user_query(capability: Capability) -> Dict[str, Any]:
    """Mongo filter matching users that hold a capability."""
    return {CAPABILITY_PERMISSION_PATHS[capability]: True}


def role_user_query(role_name: str) -> Dict[str, Any]:
    return {"role.name": role_name}
