"""
Dependencias FastAPI del módulo de caja
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.till.permissions import PermissionService, RolePermissionService
from app.modules.till.reports import TillReportService
from app.modules.till.sales import NoSalesAggregation, SalesAggregationService
from app.modules.till.services import TillSessionService


def get_permission_service() -> PermissionService:
    return RolePermissionService()


def get_sales_service() -> SalesAggregationService:
    return NoSalesAggregation()


def get_till_service(
    db: Session = Depends(get_db),
    permissions: PermissionService = Depends(get_permission_service),
    sales: SalesAggregationService = Depends(get_sales_service)
) -> TillSessionService:
    return TillSessionService(db, permissions, sales)


def get_report_service(
    db: Session = Depends(get_db),
    permissions: PermissionService = Depends(get_permission_service)
) -> TillReportService:
    return TillReportService(db, permissions)
