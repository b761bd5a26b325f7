"""
Puerta de permisos de caja

El servicio de permisos es un colaborador externo (roles/autenticación).
El controlador de caja resuelve un CapabilitySet una sola vez por comando y lo
consulta antes de escribir nada.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Protocol

from app.modules.auth.schemas import AuthContext
from app.modules.till.exceptions import PermissionDenied

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    WITHDRAW = "can_withdraw"
    RECOUNT = "can_recount"
    CLOSE = "can_close"
    VIEW_SHIFT_REPORTS = "can_view_shift_reports"


class PermissionService(Protocol):
    def has_capability(self, actor: AuthContext, capability: Capability) -> bool:
        ...


ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)

ROLE_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "owner": ALL_CAPABILITIES,
    "admin": ALL_CAPABILITIES,
    "cashier": frozenset({Capability.WITHDRAW, Capability.RECOUNT, Capability.CLOSE}),
    "seller": frozenset({Capability.RECOUNT}),
    "accountant": frozenset({Capability.VIEW_SHIFT_REPORTS}),
    "viewer": frozenset(),
}


class RolePermissionService:
    """Permisos derivados del rol del usuario en la empresa"""

    def __init__(self, role_capabilities: Optional[Dict[str, FrozenSet[Capability]]] = None):
        self.role_capabilities = role_capabilities if role_capabilities is not None else ROLE_CAPABILITIES

    def has_capability(self, actor: AuthContext, capability: Capability) -> bool:
        return capability in self.role_capabilities.get(actor.user_role or "", frozenset())


@dataclass(frozen=True)
class CapabilitySet:
    user_id: object
    can_withdraw: bool = False
    can_recount: bool = False
    can_close: bool = False
    can_view_shift_reports: bool = False

    def allows(self, capability: Capability) -> bool:
        return getattr(self, capability.value)

    def require(self, capability: Capability) -> None:
        if not self.allows(capability):
            logger.warning(f"Permission denied: user={self.user_id} capability={capability.value}")
            raise PermissionDenied(capability.value)


class PermissionGate:
    def __init__(self, service: PermissionService):
        self.service = service

    def capabilities_for(self, actor: AuthContext) -> CapabilitySet:
        return CapabilitySet(
            user_id=actor.user_id,
            **{capability.value: bool(self.service.has_capability(actor, capability)) for capability in Capability}
        )
