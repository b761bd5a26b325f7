"""
Modelos SQLAlchemy para el módulo de caja (Till)

- TillSession: una caja física de un punto de venta durante un turno
- TillOperation: entrada inmutable del libro de operaciones de la caja

Reglas a nivel de base de datos:
- Índice único parcial: como máximo una caja OPEN por (tenant, punto de venta)
- (session_id, sequence) único: dos escrituras calculadas sobre la misma
  versión de la caja chocan en vez de intercalarse
- version_id: control optimista de concurrencia sobre la fila de la caja

Arquitectura multi-tenant: todas las tablas incluyen tenant_id (empresa)
"""

from app.database.database import Base
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Numeric, Enum, Text, JSON,
    UniqueConstraint, Index, Uuid, text
)
from sqlalchemy.orm import relationship
from datetime import datetime
from decimal import Decimal
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.core.config import settings
import enum


# ===== ENUMS =====

class TillSessionState(str, enum.Enum):
    """Estados de la caja"""
    OPEN = "open"
    CLOSED = "closed"


class OperationKind(str, enum.Enum):
    """Tipos de operación del libro de caja"""
    OPEN = "open"                                   # Apertura con fondo inicial
    WITHDRAWAL = "withdrawal"                       # Retirada de efectivo
    IN_HOUSE_CONSUMPTION = "in_house_consumption"   # Consumo propio del personal
    REFUND = "refund"                               # Devolución
    RECOUNT = "recount"                             # Arqueo (informativo)
    CLOSE = "close"                                 # Cierre (informativo)


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"
    TRANSFER = "transfer"
    OTHER = "other"


# ===== MODELOS =====

class TillSession(Base, TenantMixin, TimestampMixin):
    """
    Caja de un punto de venta durante un turno

    Se crea al abrir, se modifica con retiradas, consumos, devoluciones y
    arqueos, y se sella al cerrar. Nunca se borra: las cajas cerradas
    quedan como historial.
    """
    __tablename__ = "till_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    point_of_sale_id = Column(String(64), nullable=False, index=True)
    shift_label = Column(String(100), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    state = Column(Enum(TillSessionState), nullable=False, default=TillSessionState.OPEN, index=True)

    # Fondo inicial (inmutable tras la apertura)
    opening_float = Column(Numeric(15, 2), nullable=False)

    # Ventas acumuladas (servicio externo de agregación)
    cumulative_cash_sales = Column(Numeric(15, 2), nullable=False, default=0)
    cumulative_card_sales = Column(Numeric(15, 2), nullable=False, default=0)
    cumulative_online_sales = Column(Numeric(15, 2), nullable=False, default=0)

    # Retiradas + consumos propios registrados en esta caja
    cumulative_cash_expenses = Column(Numeric(15, 2), nullable=False, default=0)

    # Conciliación
    expected_cash = Column(Numeric(15, 2), nullable=False)
    counted_cash = Column(Numeric(15, 2), nullable=True)
    discrepancy = Column(Numeric(15, 2), nullable=True)

    # Control de apertura/cierre
    opened_by = Column(Uuid(as_uuid=True), nullable=False)
    closed_by = Column(Uuid(as_uuid=True), nullable=True)
    opened_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)

    opening_notes = Column(Text, nullable=True)
    closing_notes = Column(Text, nullable=True)

    version_id = Column(Integer, nullable=False)

    operations = relationship(
        "TillOperation",
        back_populates="session",
        order_by="TillOperation.sequence",
        cascade="save-update, merge"
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("tenant_id", "point_of_sale_id", "sequence_number", name="uq_till_session_pos_sequence"),
        Index(
            "uq_till_session_one_open_per_pos",
            "tenant_id", "point_of_sale_id",
            unique=True,
            postgresql_where=text("state = 'OPEN'"),
            sqlite_where=text("state = 'OPEN'"),
        ),
    )

    @property
    def company_id(self):
        return self.tenant_id

    @property
    def number(self) -> str:
        """Número legible del turno de caja, p.ej. CAJA-POS-1-0003"""
        return f"CAJA-{self.point_of_sale_id}-{self.sequence_number:04d}"

    @property
    def is_open(self) -> bool:
        return self.state == TillSessionState.OPEN

    @property
    def within_tolerance(self):
        """None hasta que exista un conteo"""
        if self.discrepancy is None:
            return None
        return abs(Decimal(self.discrepancy)) <= settings.CASH_DISCREPANCY_TOLERANCE


class TillOperation(Base, TenantMixin):
    """
    Entrada del libro de caja

    Solo se insertan; cualquier UPDATE o DELETE es rechazado por los
    listeners registrados en app.modules.till.ledger.
    """
    __tablename__ = "till_operations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("till_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    kind = Column(Enum(OperationKind), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)              # Siempre valor absoluto
    signed_cash_delta = Column(Numeric(15, 2), nullable=False)   # Efecto sobre el efectivo esperado

    payment_method = Column(Enum(PaymentMethod), nullable=True)  # Solo devoluciones
    reference = Column(String(100), nullable=True)               # Pedido asociado a la devolución
    note = Column(Text, nullable=True)

    # Instantánea del conteo en arqueos y cierres
    counted_cash = Column(Numeric(15, 2), nullable=True)
    denominations = Column(JSON, nullable=True)

    idempotency_key = Column(String(100), nullable=True)
    created_by = Column(Uuid(as_uuid=True), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    session = relationship("TillSession", back_populates="operations")

    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_till_operation_session_sequence"),
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_till_operation_idempotency_key"),
    )

