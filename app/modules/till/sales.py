"""
Colaborador externo: agregación de ventas por método de pago.

La caja no calcula ventas; las recibe como valores opacos al abrir, arquear,
cerrar o sincronizar.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID


@dataclass(frozen=True)
class SalesTotals:
    cash: Decimal = Decimal("0.00")
    card: Decimal = Decimal("0.00")
    online: Decimal = Decimal("0.00")


class SalesAggregationService(Protocol):
    def cumulative_sales(self, tenant_id: UUID, point_of_sale_id: str,
                         since: Optional[datetime]) -> SalesTotals:
        ...


class NoSalesAggregation:
    """Implementación por defecto hasta conectar el módulo de pedidos: todo a cero"""

    def cumulative_sales(self, tenant_id: UUID, point_of_sale_id: str,
                         since: Optional[datetime]) -> SalesTotals:
        return SalesTotals()
