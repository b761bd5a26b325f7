"""
Módulo de caja (Till) - motor de turnos y conciliación de efectivo

ENTIDADES PRINCIPALES:
- TillSession: caja de un punto de venta durante un turno
- TillOperation: libro de operaciones inmutable de cada caja

FUNCIONALIDADES:
- Apertura con fondo inicial y cierre con arqueo final
- Retiradas, consumos propios y devoluciones
- Arqueos por denominación con diferencia contra el esperado
- Verificación del libro contra el efectivo esperado
- Historial de cajas y de operaciones por punto de venta

REGLAS DE NEGOCIO:
- Solo una caja abierta por punto de venta
- Una caja cerrada no admite más operaciones
- efectivo esperado = fondo inicial + suma de deltas del libro
- Las operaciones nunca se modifican ni se borran

SEGURIDAD:
- can_withdraw: retiradas y consumos propios
- can_recount: arqueos
- can_close: cierre
- can_view_shift_reports: historiales
"""

from .models import (
    TillSession, TillOperation,
    TillSessionState, OperationKind, PaymentMethod
)

from .exceptions import (
    TillError, InvalidAmount, InvalidDenomination, InvalidStateTransition,
    AlreadyOpen, PermissionDenied, SessionNotFound, ConcurrentModification,
    LedgerInconsistency, TransientStorageError
)

from .services import TillSessionService
from .reports import TillReportService

from .routers import till_sessions_router, till_operations_router

__all__ = [
    # Models
    "TillSession", "TillOperation",
    "TillSessionState", "OperationKind", "PaymentMethod",

    # Errors
    "TillError", "InvalidAmount", "InvalidDenomination", "InvalidStateTransition",
    "AlreadyOpen", "PermissionDenied", "SessionNotFound", "ConcurrentModification",
    "LedgerInconsistency", "TransientStorageError",

    # Services
    "TillSessionService", "TillReportService",

    # Routers
    "till_sessions_router", "till_operations_router"
]
