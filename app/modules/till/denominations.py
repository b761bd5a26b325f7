"""
Contador de denominaciones (billetes y monedas) para arqueos y cierres.

Función pura: recibe un mapa {valor facial: cantidad} y devuelve el total.
El conjunto de denominaciones es cerrado; cualquier valor facial desconocido
se rechaza con InvalidDenomination.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple

from app.modules.till.exceptions import InvalidDenomination
from app.modules.till.reconciliation import MAX_MONEY

CENT = Decimal("0.01")


class DenominationKind(str, Enum):
    BILL = "bill"
    COIN = "coin"


@dataclass(frozen=True)
class Denomination:
    face_value: Decimal
    kind: DenominationKind

    @property
    def key(self) -> str:
        """Clave canónica con dos decimales, p.ej. '0.50' o '500.00'"""
        return str(self.face_value.quantize(CENT))


DENOMINATIONS: Tuple[Denomination, ...] = (
    Denomination(Decimal("500"), DenominationKind.BILL),
    Denomination(Decimal("200"), DenominationKind.BILL),
    Denomination(Decimal("100"), DenominationKind.BILL),
    Denomination(Decimal("50"), DenominationKind.BILL),
    Denomination(Decimal("20"), DenominationKind.BILL),
    Denomination(Decimal("10"), DenominationKind.BILL),
    Denomination(Decimal("5"), DenominationKind.BILL),
    Denomination(Decimal("2"), DenominationKind.COIN),
    Denomination(Decimal("1"), DenominationKind.COIN),
    Denomination(Decimal("0.50"), DenominationKind.COIN),
    Denomination(Decimal("0.20"), DenominationKind.COIN),
    Denomination(Decimal("0.10"), DenominationKind.COIN),
    Denomination(Decimal("0.05"), DenominationKind.COIN),
    Denomination(Decimal("0.02"), DenominationKind.COIN),
    Denomination(Decimal("0.01"), DenominationKind.COIN),
)

_BY_VALUE: Dict[Decimal, Denomination] = {d.face_value: d for d in DENOMINATIONS}


def _resolve(raw_key: Any) -> Denomination:
    try:
        value = Decimal(str(raw_key).strip())
    except (InvalidOperation, ValueError):
        raise InvalidDenomination(f"Denominación inválida: {raw_key!r}", denomination=str(raw_key))
    # Decimal("0.5") == Decimal("0.50"), la búsqueda es numérica
    denomination = _BY_VALUE.get(value) if value.is_finite() else None
    if denomination is None:
        raise InvalidDenomination(f"Denominación desconocida: {raw_key}", denomination=str(raw_key))
    return denomination


def _quantity(raw_key: Any, raw_quantity: Any) -> int:
    # bool es subclase de int, no es una cantidad válida
    invalid = InvalidDenomination(f"Cantidad inválida para {raw_key}: {raw_quantity!r}", denomination=str(raw_key))
    if isinstance(raw_quantity, bool):
        raise invalid
    if isinstance(raw_quantity, int):
        quantity = raw_quantity
    elif isinstance(raw_quantity, (float, Decimal)):
        try:
            quantity = int(raw_quantity)
        except (ValueError, OverflowError):
            raise invalid
        if quantity != raw_quantity:
            raise invalid
    elif isinstance(raw_quantity, str) and raw_quantity.strip().isdigit():
        quantity = int(raw_quantity.strip())
    else:
        raise invalid
    if quantity < 0:
        raise InvalidDenomination(f"Cantidad negativa para {raw_key}: {quantity}", denomination=str(raw_key))
    return quantity


def normalize(counts: Mapping[Any, Any]) -> Dict[str, int]:
    """
    Valida un conteo y lo devuelve con claves canónicas.

    Claves repetidas con distinta escritura ('0.5' y '0.50') se suman.
    """
    if counts is None:
        raise InvalidDenomination("Se requiere el conteo de billetes y monedas")
    if not isinstance(counts, Mapping):
        raise InvalidDenomination("El conteo debe ser un mapa {denominación: cantidad}")

    normalized: Dict[str, int] = {}
    for raw_key, raw_quantity in counts.items():
        denomination = _resolve(raw_key)
        quantity = _quantity(raw_key, raw_quantity)
        normalized[denomination.key] = normalized.get(denomination.key, 0) + quantity
    return normalized


def total(counts: Mapping[Any, Any]) -> Decimal:
    """Σ(valor facial × cantidad) sobre el conjunto fijo de denominaciones"""
    normalized = normalize(counts)
    amount = sum(
        (Decimal(key) * quantity for key, quantity in normalized.items()),
        Decimal("0"),
    )
    if amount >= MAX_MONEY:
        raise InvalidDenomination(f"El conteo excede el máximo admitido: {amount}")
    return amount.quantize(CENT)


def breakdown(counts: Mapping[Any, Any]) -> List[Dict[str, Any]]:
    """Detalle ordenado por valor descendente, para mostrar en el cierre"""
    normalized = normalize(counts)
    lines = []
    for denomination in DENOMINATIONS:
        quantity = normalized.get(denomination.key, 0)
        if quantity:
            lines.append({
                "face_value": denomination.face_value.quantize(CENT),
                "kind": denomination.kind.value,
                "quantity": quantity,
                "subtotal": (denomination.face_value * quantity).quantize(CENT),
            })
    return lines
