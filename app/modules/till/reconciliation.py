"""
Cálculo de conciliación de caja

efectivo esperado = fondo inicial + Σ(signed_cash_delta de las operaciones
posteriores a la apertura). La entrada OPEN lleva el propio fondo inicial como
delta, así que equivale a sumar el libro completo desde cero.

discrepancia = efectivo contado - efectivo esperado (None sin conteo).
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional
from uuid import UUID

from app.modules.till.exceptions import InvalidAmount
from app.modules.till.models import OperationKind, PaymentMethod

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Numeric(15, 2): trece dígitos enteros
MAX_MONEY = Decimal("1e13")


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Convierte a Decimal con dos decimales; rechaza valores mal formados"""
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"Monto inválido: {value!r}", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Monto inválido: {value!r}", field=field)
    if not amount.is_finite():
        raise InvalidAmount(f"Monto inválido: {value!r}", field=field)
    bounded(amount, field)
    if amount != amount.quantize(CENT):
        raise InvalidAmount(f"El monto admite como máximo dos decimales: {value}", field=field)
    return amount.quantize(CENT)


def bounded(amount: Decimal, field: str = "amount") -> Decimal:
    """Rechaza montos que no caben en las columnas monetarias"""
    if abs(amount) >= MAX_MONEY:
        raise InvalidAmount(f"El monto excede el máximo admitido: {amount}", field=field)
    return amount


def positive_amount(value: Any, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= 0:
        raise InvalidAmount("El monto debe ser mayor a cero", field=field)
    return amount


def non_negative_amount(value: Any, field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount < 0:
        raise InvalidAmount("El monto no puede ser negativo", field=field)
    return amount


def signed_delta(kind: OperationKind, amount: Decimal,
                 payment_method: Optional[PaymentMethod] = None) -> Decimal:
    """Aplica el signo de cada tipo de operación sobre un monto positivo"""
    if kind == OperationKind.OPEN:
        return amount
    if kind in (OperationKind.WITHDRAWAL, OperationKind.IN_HOUSE_CONSUMPTION):
        return -amount
    if kind == OperationKind.REFUND:
        # Una devolución en efectivo suma al esperado (comportamiento heredado,
        # pendiente de confirmar con producto). El resto solo queda auditado.
        return amount if payment_method == PaymentMethod.CASH else ZERO
    return ZERO


def expected_cash(opening_float: Decimal, operations: Iterable[Any]) -> Decimal:
    """Recalcula el efectivo esperado a partir del libro"""
    total = Decimal(opening_float)
    for operation in operations:
        if operation.kind == OperationKind.OPEN:
            continue
        total += Decimal(operation.signed_cash_delta)
    return total.quantize(CENT)


def discrepancy(counted: Optional[Decimal], expected: Decimal) -> Optional[Decimal]:
    if counted is None:
        return None
    return (Decimal(counted) - Decimal(expected)).quantize(CENT)


def within_tolerance(value: Optional[Decimal], tolerance: Decimal) -> Optional[bool]:
    if value is None:
        return None
    return abs(value) <= tolerance


@dataclass(frozen=True)
class ReconciliationResult:
    """Resultado de reproducir el libro de una caja"""
    session_id: UUID
    opening_float: Decimal
    stored_expected_cash: Decimal
    replayed_expected_cash: Decimal
    operations_count: int
    opening_entry_matches: bool

    @property
    def consistent(self) -> bool:
        return self.opening_entry_matches and self.stored_expected_cash == self.replayed_expected_cash


def reconcile(session: Any, operations: Iterable[Any]) -> ReconciliationResult:
    operations = list(operations)
    opening_entries = [op for op in operations if op.kind == OperationKind.OPEN]
    opening_float = Decimal(session.opening_float).quantize(CENT)
    opening_entry_matches = (
        len(opening_entries) == 1
        and Decimal(opening_entries[0].signed_cash_delta).quantize(CENT) == opening_float
    )
    return ReconciliationResult(
        session_id=session.id,
        opening_float=opening_float,
        stored_expected_cash=Decimal(session.expected_cash).quantize(CENT),
        replayed_expected_cash=expected_cash(opening_float, operations),
        operations_count=len(operations),
        opening_entry_matches=opening_entry_matches,
    )
