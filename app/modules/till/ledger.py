"""
Libro de operaciones de caja (append-only)

- Orden de inserción por caja mediante `sequence`
- Historial global por punto de venta, más reciente primero
- Verificación: reproducir el libro debe dar el efectivo esperado guardado
- Inmutabilidad: UPDATE/DELETE de operaciones rechazados a nivel ORM
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import desc, event
from sqlalchemy.orm import Session, object_session

from app.modules.till import reconciliation
from app.modules.till.exceptions import ImmutableLedgerEntry, LedgerInconsistency
from app.modules.till.models import (
    OperationKind, PaymentMethod, TillOperation, TillSession
)

logger = logging.getLogger(__name__)


@event.listens_for(TillOperation, "before_update")
def _reject_operation_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutableLedgerEntry(target.id, "UPDATE")


@event.listens_for(TillOperation, "before_delete")
def _reject_operation_delete(mapper, connection, target):
    raise ImmutableLedgerEntry(target.id, "DELETE")


class OperationLedger:
    """Acceso al libro de operaciones de caja"""

    def __init__(self, db: Session):
        self.db = db

    def entries(self, session_id: UUID) -> List[TillOperation]:
        """Operaciones de una caja en orden de inserción"""
        return (
            self.db.query(TillOperation)
            .filter(TillOperation.session_id == session_id)
            .order_by(TillOperation.sequence)
            .all()
        )

    def append(self, session: TillSession, sequence: int, kind: OperationKind,
               amount: Decimal, actor_id: UUID, note: Optional[str] = None,
               payment_method: Optional[PaymentMethod] = None,
               reference: Optional[str] = None,
               counted_cash: Optional[Decimal] = None,
               denominations: Optional[Dict[str, int]] = None,
               idempotency_key: Optional[str] = None) -> TillOperation:
        """
        Añade una operación a la caja. No hace flush: la operación se escribe
        junto con la instantánea de la caja en el mismo commit.
        """
        operation = TillOperation(
            tenant_id=session.tenant_id,
            session_id=session.id,
            sequence=sequence,
            kind=kind,
            amount=amount,
            signed_cash_delta=reconciliation.signed_delta(kind, amount, payment_method),
            payment_method=payment_method,
            reference=reference,
            note=note,
            counted_cash=counted_cash,
            denominations=denominations,
            idempotency_key=idempotency_key,
            created_by=actor_id,
            created_at=datetime.utcnow()
        )
        self.db.add(operation)
        return operation

    def find_by_idempotency_key(self, tenant_id: UUID, key: str) -> Optional[TillOperation]:
        return self.db.query(TillOperation).filter(
            TillOperation.tenant_id == tenant_id,
            TillOperation.idempotency_key == key
        ).first()

    def verify(self, session: TillSession,
               operations: Optional[List[TillOperation]] = None) -> reconciliation.ReconciliationResult:
        """
        Reproduce el libro y lo compara con el efectivo esperado guardado.
        Lanza LedgerInconsistency si no cuadra; nunca corrige el historial.
        """
        if operations is None:
            operations = self.entries(session.id)
        result = reconciliation.reconcile(session, operations)
        if not result.consistent:
            logger.critical(
                f"Ledger inconsistency on till session {session.id}: "
                f"stored={result.stored_expected_cash} replayed={result.replayed_expected_cash} "
                f"opening_entry_ok={result.opening_entry_matches} operations={result.operations_count}"
            )
            raise LedgerInconsistency(
                session.id,
                stored=result.stored_expected_cash,
                replayed=result.replayed_expected_cash
            )
        return result

    def history(self, tenant_id: UUID, point_of_sale_id: Optional[str] = None,
                session_id: Optional[UUID] = None,
                date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                kind: Optional[OperationKind] = None,
                limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        """Historial global de operaciones, más reciente primero"""
        query = self.db.query(TillOperation).filter(TillOperation.tenant_id == tenant_id)

        if point_of_sale_id:
            query = query.join(TillSession, TillSession.id == TillOperation.session_id).filter(
                TillSession.point_of_sale_id == point_of_sale_id
            )
        if session_id:
            query = query.filter(TillOperation.session_id == session_id)
        if kind:
            query = query.filter(TillOperation.kind == kind)
        if date_from:
            query = query.filter(TillOperation.created_at >= date_from)
        if date_to:
            query = query.filter(TillOperation.created_at < date_to)

        total = query.count()
        operations = query.order_by(
            desc(TillOperation.created_at), desc(TillOperation.sequence)
        ).offset(offset).limit(limit).all()

        return {
            "operations": operations,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def summary(self, operations: List[TillOperation]) -> Dict[str, Any]:
        """Totales por tipo de operación"""
        summary = {
            "total_withdrawals": Decimal("0.00"),
            "total_in_house_consumption": Decimal("0.00"),
            "total_cash_refunds": Decimal("0.00"),
            "total_non_cash_refunds": Decimal("0.00"),
            "recounts": 0,
            "operations_count": len(operations),
        }

        for operation in operations:
            if operation.kind == OperationKind.WITHDRAWAL:
                summary["total_withdrawals"] += operation.amount
            elif operation.kind == OperationKind.IN_HOUSE_CONSUMPTION:
                summary["total_in_house_consumption"] += operation.amount
            elif operation.kind == OperationKind.REFUND:
                if operation.payment_method == PaymentMethod.CASH:
                    summary["total_cash_refunds"] += operation.amount
                else:
                    summary["total_non_cash_refunds"] += operation.amount
            elif operation.kind == OperationKind.RECOUNT:
                summary["recounts"] += 1

        return summary

    def next_sequence(self, operations: List[TillOperation]) -> int:
        return max((op.sequence for op in operations), default=0) + 1

