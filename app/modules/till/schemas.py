"""
Esquemas Pydantic para el módulo de caja (Till)

Define la validación de entrada y salida para:
- Apertura, retiradas, consumos propios, devoluciones, arqueos y cierre
- Instantánea de la caja y detalle con su libro de operaciones
- Historial de cajas y de operaciones por punto de venta

Los montos llegan siempre en positivo; el signo lo aplica el servicio.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime

from app.modules.till import denominations as cash_denominations
from app.modules.till.models import TillSessionState, OperationKind, PaymentMethod


# ===== COMMAND SCHEMAS =====

class TillSessionOpen(BaseModel):
    """Esquema para abrir caja"""
    point_of_sale_id: str = Field(..., min_length=1, max_length=64, description="ID del punto de venta")
    shift_label: Optional[str] = Field(None, max_length=100, description="Identificador libre del turno")
    opening_float: Decimal = Field(..., description="Fondo inicial de caja")
    opening_notes: Optional[str] = Field(None, max_length=500, description="Notas de apertura")

    @field_validator('point_of_sale_id')
    @classmethod
    def validate_point_of_sale(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError('El punto de venta no puede estar vacío')
        return cleaned


class CashOutflowCreate(BaseModel):
    """Esquema para retiradas y consumos propios"""
    amount: Decimal = Field(..., description="Monto (siempre positivo)")
    note: Optional[str] = Field(None, max_length=500, description="Notas de la operación")


class RefundCreate(BaseModel):
    """Esquema para devoluciones"""
    amount: Decimal = Field(..., description="Monto devuelto (siempre positivo)")
    payment_method: PaymentMethod = Field(..., description="Método de pago de la devolución")
    order_ref: Optional[str] = Field(None, max_length=100, description="Pedido asociado")
    note: Optional[str] = Field(None, max_length=500, description="Motivo de la devolución")


class CashCount(BaseModel):
    """Conteo de billetes y monedas, p.ej. {"20": 4, "0.50": 7}"""
    denominations: Dict[str, Any] = Field(..., description="Cantidad por valor facial")


class TillSessionClose(CashCount):
    """Esquema para cerrar caja"""
    closing_notes: Optional[str] = Field(None, max_length=500, description="Observaciones de cierre")


# ===== OUTPUT SCHEMAS =====

class DenominationLineOut(BaseModel):
    """Línea del conteo: valor facial, cantidad y subtotal"""
    face_value: Decimal
    kind: str
    quantity: int
    subtotal: Decimal


class TillOperationOut(BaseModel):
    """Esquema de salida para operación de caja"""
    id: UUID = Field(description="ID único de la operación")
    session_id: UUID = Field(description="ID de la caja")
    sequence: int = Field(description="Posición en el libro de la caja")
    kind: OperationKind = Field(description="Tipo de operación")
    amount: Decimal = Field(description="Monto sin signo")
    signed_cash_delta: Decimal = Field(description="Efecto sobre el efectivo esperado")
    payment_method: Optional[PaymentMethod] = Field(None, description="Método de pago (devoluciones)")
    reference: Optional[str] = Field(None, description="Pedido asociado")
    note: Optional[str] = Field(None, description="Notas")
    counted_cash: Optional[Decimal] = Field(None, description="Efectivo contado (arqueo/cierre)")
    denominations: Optional[Dict[str, int]] = Field(None, description="Conteo de billetes y monedas")
    denomination_lines: Optional[List[DenominationLineOut]] = Field(
        None, description="Detalle del conteo ordenado por valor"
    )
    created_by: UUID = Field(description="Usuario que registró la operación")
    created_at: datetime = Field(description="Fecha y hora")

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def fill_denomination_lines(self):
        if self.denominations:
            self.denomination_lines = [
                DenominationLineOut(**line) for line in cash_denominations.breakdown(self.denominations)
            ]
        return self


class TillSessionOut(BaseModel):
    """Instantánea de la caja"""
    id: UUID = Field(description="ID único de la caja")
    number: str = Field(description="Número legible del turno de caja")
    point_of_sale_id: str = Field(description="ID del punto de venta")
    company_id: UUID = Field(description="Empresa")
    shift_label: str = Field(description="Turno")
    state: TillSessionState = Field(description="Estado de la caja")
    opening_float: Decimal = Field(description="Fondo inicial")
    cumulative_cash_sales: Decimal = Field(description="Ventas en efectivo acumuladas")
    cumulative_card_sales: Decimal = Field(description="Ventas con tarjeta acumuladas")
    cumulative_online_sales: Decimal = Field(description="Ventas online acumuladas")
    cumulative_cash_expenses: Decimal = Field(description="Retiradas y consumos propios")
    expected_cash: Decimal = Field(description="Efectivo esperado")
    counted_cash: Optional[Decimal] = Field(None, description="Último efectivo contado")
    discrepancy: Optional[Decimal] = Field(None, description="Contado menos esperado")
    within_tolerance: Optional[bool] = Field(None, description="Diferencia dentro de la tolerancia")
    opened_by: UUID = Field(description="Usuario que abrió la caja")
    closed_by: Optional[UUID] = Field(None, description="Usuario que cerró la caja")
    opened_at: datetime = Field(description="Fecha y hora de apertura")
    closed_at: Optional[datetime] = Field(None, description="Fecha y hora de cierre")
    opening_notes: Optional[str] = Field(None, description="Notas de apertura")
    closing_notes: Optional[str] = Field(None, description="Observaciones de cierre")

    model_config = {"from_attributes": True}


class TillSessionDetail(TillSessionOut):
    """Caja con su libro de operaciones y totales por tipo"""
    total_withdrawals: Decimal = Field(description="Total de retiradas")
    total_in_house_consumption: Decimal = Field(description="Total de consumos propios")
    total_cash_refunds: Decimal = Field(description="Total de devoluciones en efectivo")
    total_non_cash_refunds: Decimal = Field(description="Total de devoluciones con otros medios")
    recounts: int = Field(description="Número de arqueos")
    operations_count: int = Field(description="Número de operaciones en el libro")
    operations: List[TillOperationOut] = Field(default=[], description="Operaciones de la caja")


class TillSessionList(BaseModel):
    """Esquema para historial de cajas"""
    sessions: List[TillSessionOut] = Field(description="Lista de cajas")
    total: int = Field(description="Total de cajas")
    limit: int = Field(description="Límite aplicado")
    offset: int = Field(description="Offset aplicado")


class TillOperationList(BaseModel):
    """Esquema para historial de operaciones"""
    operations: List[TillOperationOut] = Field(description="Lista de operaciones")
    total: int = Field(description="Total de operaciones")
    limit: int = Field(description="Límite aplicado")
    offset: int = Field(description="Offset aplicado")


class ReconciliationOut(BaseModel):
    """Resultado de reproducir el libro de la caja"""
    session_id: UUID
    opening_float: Decimal
    stored_expected_cash: Decimal
    replayed_expected_cash: Decimal
    operations_count: int
    consistent: bool

    model_config = {"from_attributes": True}
