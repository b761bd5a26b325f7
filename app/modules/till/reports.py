"""
Reportes de caja

- Historial de cajas por punto de venta (abiertas y cerradas)
- Historial global de operaciones, más reciente primero

Ambos requieren la capacidad can_view_shift_reports.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.modules.auth.schemas import AuthContext
from app.modules.till.ledger import OperationLedger
from app.modules.till.models import OperationKind, TillSession, TillSessionState
from app.modules.till.permissions import Capability, PermissionGate, PermissionService

logger = logging.getLogger(__name__)


class TillReportService:
    """Consultas de historial de caja"""

    def __init__(self, db: Session, permissions: PermissionService):
        self.db = db
        self.ledger = OperationLedger(db)
        self.gate = PermissionGate(permissions)

    def list_sessions(
        self,
        actor: AuthContext,
        point_of_sale_id: Optional[str] = None,
        state: Optional[TillSessionState] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        Historial de cajas del tenant.

        Args:
            actor: Usuario que consulta
            point_of_sale_id: Filtro opcional por punto de venta
            state: Filtro opcional por estado
            date_from: Apertura desde (incluida)
            date_to: Apertura hasta (excluida)
            limit: Tamaño de página
            offset: Desplazamiento

        Returns:
            Dict con sessions, total, limit y offset
        """
        self.gate.capabilities_for(actor).require(Capability.VIEW_SHIFT_REPORTS)

        query = self.db.query(TillSession).filter(TillSession.tenant_id == actor.tenant_id)
        if point_of_sale_id:
            query = query.filter(TillSession.point_of_sale_id == point_of_sale_id)
        if state:
            query = query.filter(TillSession.state == state)
        if date_from:
            query = query.filter(TillSession.opened_at >= date_from)
        if date_to:
            query = query.filter(TillSession.opened_at < date_to)

        total = query.count()
        sessions = query.order_by(
            desc(TillSession.opened_at), desc(TillSession.sequence_number)
        ).offset(offset).limit(limit).all()

        return {
            "sessions": sessions,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    def list_operations(
        self,
        actor: AuthContext,
        point_of_sale_id: Optional[str] = None,
        session_id: Optional[UUID] = None,
        kind: Optional[OperationKind] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Historial global de operaciones de caja"""
        self.gate.capabilities_for(actor).require(Capability.VIEW_SHIFT_REPORTS)
        return self.ledger.history(
            actor.tenant_id,
            point_of_sale_id=point_of_sale_id,
            session_id=session_id,
            date_from=date_from,
            date_to=date_to,
            kind=kind,
            limit=limit,
            offset=offset
        )
