"""
Excepciones tipadas del módulo de caja (Till)

Todas heredan de TillError y exponen:
- code: identificador estable para clientes y logs
- http_status: código HTTP con el que se expone en la API
- field: campo del request que provocó el error (si aplica)

Jerarquía:

    TillError
    +-- InvalidAmount
    +-- InvalidDenomination
    +-- InvalidStateTransition
    |   +-- AlreadyOpen
    +-- PermissionDenied
    +-- SessionNotFound
    +-- ConcurrentModification
    +-- LedgerInconsistency
    |   +-- ImmutableLedgerEntry
    +-- TransientStorageError
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID


class TillError(Exception):
    """Error base del motor de caja"""

    code: str = "TILL_ERROR"
    http_status: int = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "field": self.field}


class InvalidAmount(TillError):
    """Monto no positivo, negativo o mal formado"""

    code = "INVALID_AMOUNT"
    http_status = 422

    def __init__(self, message: str, field: str = "amount"):
        super().__init__(message, field=field)


class InvalidDenomination(TillError):
    """Denominación desconocida o cantidad inválida en un conteo"""

    code = "INVALID_DENOMINATION"
    http_status = 422

    def __init__(self, message: str, denomination: Optional[str] = None):
        self.denomination = denomination
        super().__init__(message, field="denominations")


class InvalidStateTransition(TillError):
    """Comando emitido contra una caja que no está en el estado requerido"""

    code = "INVALID_STATE_TRANSITION"
    http_status = 409


class AlreadyOpen(InvalidStateTransition):
    """Ya existe una caja abierta para el punto de venta"""

    code = "ALREADY_OPEN"

    def __init__(self, point_of_sale_id: str):
        self.point_of_sale_id = point_of_sale_id
        super().__init__(
            f"Ya existe una caja abierta en el punto de venta '{point_of_sale_id}'",
            field="point_of_sale_id",
        )


class PermissionDenied(TillError):
    code = "PERMISSION_DENIED"
    http_status = 403

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"No tienes permiso para esta operación ({capability})")


class SessionNotFound(TillError):
    code = "SESSION_NOT_FOUND"
    http_status = 404

    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__("Caja no encontrada", field="session_id")


class ConcurrentModification(TillError):
    """La caja cambió mientras se aplicaba el comando y el reintento también falló"""

    code = "CONCURRENT_MODIFICATION"
    http_status = 409

    def __init__(self, session_id: Optional[UUID]):
        self.session_id = session_id
        super().__init__("La caja fue modificada por otra operación, vuelve a intentarlo")


class LedgerInconsistency(TillError):
    """
    El libro de operaciones no cuadra con el efectivo esperado guardado.

    Es fatal: nunca se corrige sobrescribiendo el historial.
    """

    code = "LEDGER_INCONSISTENCY"
    http_status = 500

    def __init__(self, session_id: Optional[UUID], stored: Optional[Decimal] = None,
                 replayed: Optional[Decimal] = None, message: Optional[str] = None):
        self.session_id = session_id
        self.stored = stored
        self.replayed = replayed
        super().__init__(
            message or f"Libro de caja inconsistente: esperado guardado {stored}, recalculado {replayed}"
        )


class ImmutableLedgerEntry(LedgerInconsistency):
    """Intento de modificar o borrar una operación ya registrada"""

    code = "LEDGER_ENTRY_IMMUTABLE"

    def __init__(self, operation_id: Optional[UUID], action: str):
        self.operation_id = operation_id
        super().__init__(
            None,
            message=f"Las operaciones de caja no se pueden modificar ({action} sobre {operation_id})",
        )


class TransientStorageError(TillError):
    """Fallo de la capa de persistencia; el resultado de una escritura es desconocido"""

    code = "TRANSIENT_STORAGE_ERROR"
    http_status = 503

    def __init__(self, message: str = "Error temporal de almacenamiento"):
        super().__init__(message)
