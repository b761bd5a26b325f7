"""
Servicio de negocio del módulo de caja (Till)

TillSessionService es el único dueño del estado de la caja:
- Recibe comandos (abrir, retirar, consumo propio, devolver, arquear, cerrar)
- Consulta la puerta de permisos una vez por comando
- Valida montos, conteos y estado antes de escribir nada
- Añade la operación al libro y actualiza la instantánea en el mismo commit
- Devuelve la caja actualizada

Concurrencia: bloqueo optimista sobre la fila de la caja (version_id). Si la
caja cambió entre la lectura y la escritura se reintenta una vez contra la
versión nueva; si vuelve a fallar se lanza ConcurrentModification.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.sql import func

from app.core.config import settings
from app.modules.auth.schemas import AuthContext
from app.modules.till import denominations, reconciliation
from app.modules.till.exceptions import (
    AlreadyOpen, ConcurrentModification, InvalidAmount, InvalidStateTransition,
    SessionNotFound, TillError, TransientStorageError
)
from app.modules.till.ledger import OperationLedger
from app.modules.till.models import (
    OperationKind, PaymentMethod, TillOperation, TillSession, TillSessionState
)
from app.modules.till.permissions import Capability, PermissionGate, PermissionService
from app.modules.till.sales import SalesAggregationService, SalesTotals
from app.modules.till.schemas import (
    CashCount, CashOutflowCreate, RefundCreate, TillSessionClose, TillSessionOpen
)

logger = logging.getLogger(__name__)

Mutation = Callable[[TillSession, List[TillOperation]], Optional[TillOperation]]


class TillSessionService:
    """Controlador del ciclo de vida de la caja"""

    def __init__(self, db: Session, permissions: PermissionService,
                 sales: SalesAggregationService):
        self.db = db
        self.ledger = OperationLedger(db)
        self.gate = PermissionGate(permissions)
        self.sales = sales

    # ===== LECTURAS =====

    def get_session(self, session_id: UUID, tenant_id: UUID) -> TillSession:
        return self.read(lambda: self._load(session_id, tenant_id))

    def get_current_session(self, tenant_id: UUID, point_of_sale_id: str) -> Optional[TillSession]:
        """
        Caja abierta actual para un punto de venta.

        Retorna None si no existe caja abierta.
        """
        return self.read(lambda: self._find_open(tenant_id, point_of_sale_id))

    def get_session_detail(self, session_id: UUID, tenant_id: UUID) -> Dict[str, Any]:
        """Caja con su libro de operaciones y totales por tipo"""
        def load():
            session = self._load(session_id, tenant_id)
            operations = self.ledger.entries(session.id)
            return session, operations

        session, operations = self.read(load)
        return {
            "session": session,
            "operations": operations,
            "summary": self.ledger.summary(operations),
        }

    def verify_session(self, session_id: UUID, tenant_id: UUID) -> reconciliation.ReconciliationResult:
        """Reproduce el libro; lanza LedgerInconsistency si no cuadra"""
        def load():
            session = self._load(session_id, tenant_id)
            return session, self.ledger.entries(session.id)

        session, operations = self.read(load)
        return self.ledger.verify(session, operations)

    def read(self, fn: Callable[[], Any]) -> Any:
        """Ejecuta una lectura reintentando fallos transitorios de la base de datos"""
        attempts = settings.TILL_READ_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except TillError:
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                if attempt < attempts:
                    logger.warning(f"Transient read failure (attempt {attempt}/{attempts}): {e}")
                    continue
                logger.error(f"Read failed after {attempts} attempts: {e}")
                raise TransientStorageError()

    # ===== COMANDOS =====

    def open_session(self, data: TillSessionOpen, actor: AuthContext,
                     idempotency_key: Optional[str] = None) -> TillSession:
        """Abrir caja con su fondo inicial"""
        opening_float = reconciliation.non_negative_amount(data.opening_float, field="opening_float")
        tenant_id = actor.tenant_id
        point_of_sale_id = data.point_of_sale_id

        try:
            replayed = self._replay_open(tenant_id, idempotency_key, point_of_sale_id)
            if replayed is not None:
                return replayed

            if self._find_open(tenant_id, point_of_sale_id) is not None:
                raise AlreadyOpen(point_of_sale_id)

            opened_at = datetime.utcnow()
            totals = self.sales.cumulative_sales(tenant_id, point_of_sale_id, opened_at)
            sequence_number = self._last_sequence_number(tenant_id, point_of_sale_id) + 1

            session = TillSession(
                id=uuid4(),
                tenant_id=tenant_id,
                point_of_sale_id=point_of_sale_id,
                shift_label=data.shift_label or f"TURNO-{opened_at.strftime('%Y%m%d-%H%M%S')}",
                sequence_number=sequence_number,
                state=TillSessionState.OPEN,
                opening_float=opening_float,
                cumulative_cash_sales=reconciliation.non_negative_amount(totals.cash, "cumulative_cash_sales"),
                cumulative_card_sales=reconciliation.non_negative_amount(totals.card, "cumulative_card_sales"),
                cumulative_online_sales=reconciliation.non_negative_amount(totals.online, "cumulative_online_sales"),
                cumulative_cash_expenses=reconciliation.ZERO,
                expected_cash=opening_float,
                counted_cash=opening_float,
                discrepancy=reconciliation.ZERO,
                opened_by=actor.user_id,
                opened_at=opened_at,
                opening_notes=data.opening_notes
            )
            self.db.add(session)
            self.ledger.append(
                session, 1, OperationKind.OPEN, opening_float, actor.user_id,
                note=data.opening_notes, idempotency_key=idempotency_key
            )
            self.db.commit()

        except TillError:
            self.db.rollback()
            raise
        except IntegrityError:
            # Otra apertura concurrente ganó la carrera (índice único parcial)
            self.db.rollback()
            replayed = self._replay_open(tenant_id, idempotency_key, point_of_sale_id)
            if replayed is not None:
                return replayed
            logger.warning(f"Concurrent open lost for point of sale {point_of_sale_id}")
            raise AlreadyOpen(point_of_sale_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage failure opening till for point of sale {point_of_sale_id}: {e}")
            raise TransientStorageError()

        self.db.refresh(session)
        logger.info(
            f"Till session {session.id} ({session.number}) opened by {actor.user_id} "
            f"with float {opening_float}"
        )
        return session

    def withdraw(self, session_id: UUID, data: CashOutflowCreate, actor: AuthContext,
                 idempotency_key: Optional[str] = None) -> TillSession:
        """Retirada de efectivo"""
        return self._cash_outflow(OperationKind.WITHDRAWAL, session_id, data, actor, idempotency_key)

    def record_in_house_consumption(self, session_id: UUID, data: CashOutflowCreate, actor: AuthContext,
                                    idempotency_key: Optional[str] = None) -> TillSession:
        """Consumo propio del personal; descuenta del esperado igual que una retirada"""
        return self._cash_outflow(OperationKind.IN_HOUSE_CONSUMPTION, session_id, data, actor, idempotency_key)

    def refund(self, session_id: UUID, data: RefundCreate, actor: AuthContext,
               idempotency_key: Optional[str] = None) -> TillSession:
        """
        Devolución. En efectivo suma al esperado; con otros medios solo se
        registra para auditoría.
        """
        amount = reconciliation.positive_amount(data.amount)
        payment_method = PaymentMethod(data.payment_method)

        def mutate(session, operations):
            sequence = self.ledger.next_sequence(operations)
            operation = self.ledger.append(
                session, sequence, OperationKind.REFUND, amount, actor.user_id,
                note=data.note, payment_method=payment_method, reference=data.order_ref,
                idempotency_key=idempotency_key
            )
            self._recalculate(session, operations + [operation])
            return operation

        return self._execute(session_id, actor, OperationKind.REFUND, mutate, idempotency_key)

    def recount(self, session_id: UUID, data: CashCount, actor: AuthContext,
                idempotency_key: Optional[str] = None) -> TillSession:
        """Arqueo: registra el efectivo contado sin cambiar el esperado"""
        counts = denominations.normalize(data.denominations)
        counted = denominations.total(counts)
        capabilities = self.gate.capabilities_for(actor)
        capabilities.require(Capability.RECOUNT)

        def mutate(session, operations):
            totals = self.sales.cumulative_sales(session.tenant_id, session.point_of_sale_id, session.opened_at)
            self._apply_sales(session, totals)
            operation = self.ledger.append(
                session, self.ledger.next_sequence(operations), OperationKind.RECOUNT,
                counted, actor.user_id, counted_cash=counted, denominations=counts,
                idempotency_key=idempotency_key
            )
            session.counted_cash = counted
            self._recalculate(session, operations + [operation])
            return operation

        return self._execute(session_id, actor, OperationKind.RECOUNT, mutate, idempotency_key)

    def close_session(self, session_id: UUID, data: TillSessionClose, actor: AuthContext,
                      idempotency_key: Optional[str] = None) -> TillSession:
        """Cierre con arqueo final; la caja queda sellada"""
        counts = denominations.normalize(data.denominations)
        counted = denominations.total(counts)
        capabilities = self.gate.capabilities_for(actor)
        capabilities.require(Capability.CLOSE)

        def mutate(session, operations):
            totals = self.sales.cumulative_sales(session.tenant_id, session.point_of_sale_id, session.opened_at)
            self._apply_sales(session, totals)
            operation = self.ledger.append(
                session, self.ledger.next_sequence(operations), OperationKind.CLOSE,
                counted, actor.user_id, note=data.closing_notes, counted_cash=counted,
                denominations=counts, idempotency_key=idempotency_key
            )
            session.counted_cash = counted
            self._recalculate(session, operations + [operation])
            session.state = TillSessionState.CLOSED
            session.closed_by = actor.user_id
            session.closed_at = datetime.utcnow()
            session.closing_notes = data.closing_notes
            if not reconciliation.within_tolerance(session.discrepancy, settings.CASH_DISCREPANCY_TOLERANCE):
                logger.warning(
                    f"Till session {session.id} closed with discrepancy {session.discrepancy} "
                    f"(tolerance {settings.CASH_DISCREPANCY_TOLERANCE})"
                )
            return operation

        return self._execute(session_id, actor, OperationKind.CLOSE, mutate, idempotency_key)

    def sync_sales(self, session_id: UUID, actor: AuthContext) -> TillSession:
        """Refresca las ventas acumuladas desde el servicio de agregación"""
        def mutate(session, operations):
            totals = self.sales.cumulative_sales(session.tenant_id, session.point_of_sale_id, session.opened_at)
            self._apply_sales(session, totals)
            return None

        return self._execute(session_id, actor, None, mutate, None)

    # ===== INTERNOS =====

    def _cash_outflow(self, kind: OperationKind, session_id: UUID, data: CashOutflowCreate,
                      actor: AuthContext, idempotency_key: Optional[str]) -> TillSession:
        amount = reconciliation.positive_amount(data.amount)
        capabilities = self.gate.capabilities_for(actor)
        capabilities.require(Capability.WITHDRAW)

        def mutate(session, operations):
            operation = self.ledger.append(
                session, self.ledger.next_sequence(operations), kind, amount,
                actor.user_id, note=data.note, idempotency_key=idempotency_key
            )
            session.cumulative_cash_expenses = reconciliation.bounded(
                (Decimal(session.cumulative_cash_expenses) + amount).quantize(reconciliation.CENT)
            )
            self._recalculate(session, operations + [operation])
            return operation

        return self._execute(session_id, actor, kind, mutate, idempotency_key)

    def _execute(self, session_id: UUID, actor: AuthContext, kind: Optional[OperationKind],
                 mutate: Mutation, idempotency_key: Optional[str]) -> TillSession:
        """
        Aplica un comando sobre la última versión confirmada de la caja.

        Todo lo que puede fallar por validación ocurre antes del commit; el
        commit escribe la operación y la instantánea juntas o ninguna.
        """
        tenant_id = actor.tenant_id
        attempts = settings.TILL_OPTIMISTIC_RETRIES + 1
        action = kind.value if kind else "sync_sales"

        for attempt in range(1, attempts + 1):
            try:
                replayed = self._replay(tenant_id, idempotency_key, kind, session_id)
                if replayed is not None:
                    return replayed

                session = self._load(session_id, tenant_id)
                if session.state != TillSessionState.OPEN:
                    raise InvalidStateTransition(
                        f"La caja {session.number} está cerrada y no admite operaciones ({action})",
                        field="session_id"
                    )
                operations = self.ledger.entries(session.id)
                self.ledger.verify(session, operations)

                operation = mutate(session, operations)
                session.updated_at = func.now()
                self.db.commit()

            except TillError:
                self.db.rollback()
                raise
            except (StaleDataError, IntegrityError) as e:
                self.db.rollback()
                replayed = self._replay(tenant_id, idempotency_key, kind, session_id)
                if replayed is not None:
                    return replayed
                if attempt < attempts:
                    logger.warning(
                        f"Concurrent modification on till session {session_id} ({action}), "
                        f"retrying {attempt}/{attempts - 1}: {e.__class__.__name__}"
                    )
                    continue
                logger.warning(f"Concurrent modification on till session {session_id} ({action}), giving up")
                raise ConcurrentModification(session_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Storage failure on till session {session_id} ({action}): {e}")
                raise TransientStorageError()

            self.db.refresh(session)
            if operation is not None:
                logger.info(
                    f"Till session {session.id}: {action} #{operation.sequence} "
                    f"amount={operation.amount} delta={operation.signed_cash_delta} "
                    f"by {actor.user_id}; expected_cash={session.expected_cash}"
                )
            else:
                logger.info(f"Till session {session.id}: {action} by {actor.user_id}")
            return session

    def _recalculate(self, session: TillSession, operations: List[TillOperation]) -> None:
        """Los acumulados también deben caber en las columnas monetarias"""
        expected = reconciliation.bounded(reconciliation.expected_cash(session.opening_float, operations))
        discrepancy = reconciliation.discrepancy(session.counted_cash, expected)
        if discrepancy is not None:
            reconciliation.bounded(discrepancy)
        session.expected_cash = expected
        session.discrepancy = discrepancy

    def _apply_sales(self, session: TillSession, totals: SalesTotals) -> None:
        """Las ventas acumuladas nunca bajan mientras la caja está abierta"""
        values = {
            "cumulative_cash_sales": reconciliation.non_negative_amount(totals.cash, "cumulative_cash_sales"),
            "cumulative_card_sales": reconciliation.non_negative_amount(totals.card, "cumulative_card_sales"),
            "cumulative_online_sales": reconciliation.non_negative_amount(totals.online, "cumulative_online_sales"),
        }
        for field, value in values.items():
            if value < Decimal(getattr(session, field)):
                raise InvalidAmount(
                    f"Las ventas acumuladas no pueden disminuir ({field}: {getattr(session, field)} -> {value})",
                    field=field
                )
        for field, value in values.items():
            setattr(session, field, value)

    def _replay_open(self, tenant_id: UUID, idempotency_key: Optional[str],
                     point_of_sale_id: str) -> Optional[TillSession]:
        session = self._replay(tenant_id, idempotency_key, OperationKind.OPEN)
        if session is not None and session.point_of_sale_id != point_of_sale_id:
            raise InvalidStateTransition(
                "La clave de idempotencia ya se usó para abrir otra caja",
                field="idempotency_key"
            )
        return session

    def _replay(self, tenant_id: UUID, idempotency_key: Optional[str],
                kind: Optional[OperationKind], session_id: Optional[UUID] = None) -> Optional[TillSession]:
        """Si la clave ya fue aplicada, devuelve la caja sin volver a aplicar el comando"""
        if not idempotency_key:
            return None
        operation = self.ledger.find_by_idempotency_key(tenant_id, idempotency_key)
        if operation is None:
            return None
        if operation.kind != kind or (session_id is not None and operation.session_id != session_id):
            raise InvalidStateTransition(
                "La clave de idempotencia ya se usó para otra operación",
                field="idempotency_key"
            )
        logger.info(f"Idempotent replay of {operation.kind.value} on till session {operation.session_id}")
        return self._load(operation.session_id, tenant_id)

    def _load(self, session_id: UUID, tenant_id: UUID) -> TillSession:
        session = self.db.query(TillSession).populate_existing().filter(
            TillSession.id == session_id,
            TillSession.tenant_id == tenant_id
        ).first()
        if not session:
            raise SessionNotFound(session_id)
        return session

    def _find_open(self, tenant_id: UUID, point_of_sale_id: str) -> Optional[TillSession]:
        return self.db.query(TillSession).filter(
            TillSession.tenant_id == tenant_id,
            TillSession.point_of_sale_id == point_of_sale_id,
            TillSession.state == TillSessionState.OPEN
        ).first()

    def _last_sequence_number(self, tenant_id: UUID, point_of_sale_id: str) -> int:
        value = self.db.query(func.max(TillSession.sequence_number)).filter(
            TillSession.tenant_id == tenant_id,
            TillSession.point_of_sale_id == point_of_sale_id
        ).scalar()
        return value or 0
