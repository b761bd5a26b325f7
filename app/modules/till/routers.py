"""
Routers FastAPI para el módulo de caja (Till)

Define los endpoints REST para:
- TillSessions: apertura, retiradas, consumos propios, devoluciones,
  arqueos, cierre, consulta y conciliación
- TillOperations: historial global de operaciones

Todos los endpoints implementan:
- Autenticación por token de contexto y filtro multi-tenant
- Capacidades de caja resueltas por la puerta de permisos
- Cabecera opcional Idempotency-Key en los comandos
- Errores tipados con cuerpo {"error", "detail", "field"}
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status

from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.till.dependencies import get_report_service, get_till_service
from app.modules.till.models import OperationKind, TillSessionState
from app.modules.till.reports import TillReportService
from app.modules.till.schemas import (
    CashCount, CashOutflowCreate, ReconciliationOut, RefundCreate,
    TillOperationList, TillOperationOut, TillSessionClose, TillSessionDetail, TillSessionList,
    TillSessionOpen, TillSessionOut
)
from app.modules.till.services import TillSessionService


IdempotencyKey = Header(None, alias="Idempotency-Key", max_length=100,
                        description="Clave para reintentar un comando sin duplicarlo")


# ===== TILL SESSIONS ROUTER =====

till_sessions_router = APIRouter(prefix="/till-sessions", tags=["Till"])


@till_sessions_router.post("/open", response_model=TillSessionOut, status_code=status.HTTP_201_CREATED)
async def open_till_session(
    data: TillSessionOpen,
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Abrir caja en un punto de venta.

    - **point_of_sale_id**: Punto de venta
    - **opening_float**: Fondo inicial (>= 0)
    - **shift_label**: Turno (opcional)

    Validaciones:
    - Solo una caja abierta por punto de venta
    """
    return service.open_session(data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.get("/current", response_model=TillSessionOut)
async def get_current_till_session(
    point_of_sale_id: str = Query(..., min_length=1, description="ID del punto de venta"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Devuelve la caja abierta actual del punto de venta.

    - 404 si no hay caja abierta
    """
    session = service.get_current_session(auth_context.tenant_id, point_of_sale_id)
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No hay caja abierta para este punto de venta")
    return session


@till_sessions_router.get("/", response_model=TillSessionList)
async def list_till_sessions(
    point_of_sale_id: Optional[str] = Query(None, description="Filtrar por punto de venta"),
    state: Optional[TillSessionState] = Query(None, description="Filtrar por estado"),
    date_from: Optional[datetime] = Query(None, description="Apertura desde"),
    date_to: Optional[datetime] = Query(None, description="Apertura hasta"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Límite de resultados"),
    offset: int = Query(0, ge=0, description="Offset para paginación"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    reports: TillReportService = Depends(get_report_service)
):
    """Historial de cajas, más reciente primero (requiere can_view_shift_reports)"""
    return reports.list_sessions(
        auth_context,
        point_of_sale_id=point_of_sale_id,
        state=state,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    )


@till_sessions_router.get("/{session_id}", response_model=TillSessionDetail)
async def get_till_session(
    session_id: UUID = Path(..., description="ID de la caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    service: TillSessionService = Depends(get_till_service)
):
    """Caja con su libro de operaciones y totales por tipo"""
    detail = service.get_session_detail(session_id, auth_context.tenant_id)
    session_data = TillSessionOut.model_validate(detail["session"]).model_dump()
    return TillSessionDetail(
        **session_data,
        **detail["summary"],
        operations=[TillOperationOut.model_validate(op) for op in detail["operations"]]
    )


@till_sessions_router.post("/{session_id}/withdrawals", response_model=TillSessionOut)
async def create_withdrawal(
    data: CashOutflowCreate,
    session_id: UUID = Path(..., description="ID de la caja"),
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Retirada de efectivo (requiere can_withdraw).

    Descuenta el monto del efectivo esperado.
    """
    return service.withdraw(session_id, data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.post("/{session_id}/in-house-consumptions", response_model=TillSessionOut)
async def create_in_house_consumption(
    data: CashOutflowCreate,
    session_id: UUID = Path(..., description="ID de la caja"),
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """Consumo propio del personal pagado con el efectivo de la caja (requiere can_withdraw)"""
    return service.record_in_house_consumption(session_id, data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.post("/{session_id}/refunds", response_model=TillSessionOut)
async def create_refund(
    data: RefundCreate,
    session_id: UUID = Path(..., description="ID de la caja"),
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Registrar una devolución.

    - **cash**: suma el monto al efectivo esperado
    - otros métodos: solo se registra para auditoría
    """
    return service.refund(session_id, data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.post("/{session_id}/recount", response_model=TillSessionOut)
async def recount_till_session(
    data: CashCount,
    session_id: UUID = Path(..., description="ID de la caja"),
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Arqueo de caja (requiere can_recount).

    Registra el efectivo contado por denominación y la diferencia con el
    esperado. No cambia el efectivo esperado.
    """
    return service.recount(session_id, data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.post("/{session_id}/close", response_model=TillSessionOut)
async def close_till_session(
    data: TillSessionClose,
    session_id: UUID = Path(..., description="ID de la caja"),
    idempotency_key: Optional[str] = IdempotencyKey,
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Cerrar caja con arqueo final (requiere can_close).

    Tras el cierre la caja no admite más operaciones.
    """
    return service.close_session(session_id, data, auth_context, idempotency_key=idempotency_key)


@till_sessions_router.post("/{session_id}/sync-sales", response_model=TillSessionOut)
async def sync_till_sales(
    session_id: UUID = Path(..., description="ID de la caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_till_operator()),
    service: TillSessionService = Depends(get_till_service)
):
    """Refrescar las ventas acumuladas de la caja"""
    return service.sync_sales(session_id, auth_context)


@till_sessions_router.get("/{session_id}/reconciliation", response_model=ReconciliationOut)
async def get_till_reconciliation(
    session_id: UUID = Path(..., description="ID de la caja"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    service: TillSessionService = Depends(get_till_service)
):
    """
    Reproduce el libro de la caja y lo compara con el efectivo esperado.

    - 500 LEDGER_INCONSISTENCY si no cuadra
    """
    result = service.verify_session(session_id, auth_context.tenant_id)
    return ReconciliationOut.model_validate(result)


# ===== TILL OPERATIONS ROUTER =====

till_operations_router = APIRouter(prefix="/till-operations", tags=["Till"])


@till_operations_router.get("/", response_model=TillOperationList)
async def list_till_operations(
    point_of_sale_id: Optional[str] = Query(None, description="Filtrar por punto de venta"),
    session_id: Optional[UUID] = Query(None, description="Filtrar por caja"),
    kind: Optional[OperationKind] = Query(None, description="Filtrar por tipo"),
    date_from: Optional[datetime] = Query(None, description="Desde"),
    date_to: Optional[datetime] = Query(None, description="Hasta"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Límite de resultados"),
    offset: int = Query(0, ge=0, description="Offset para paginación"),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role()),
    reports: TillReportService = Depends(get_report_service)
):
    """Historial global de operaciones de caja, más reciente primero (requiere can_view_shift_reports)"""
    return reports.list_operations(
        auth_context,
        point_of_sale_id=point_of_sale_id,
        session_id=session_id,
        kind=kind,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    )
