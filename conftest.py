"""
Fixtures compartidas para los tests

La base de datos de cada test es un SQLite en un directorio temporal; el
módulo de ventas se sustituye por un stub con totales modificables.
"""
import os
import tempfile

# La configuración se lee al importar app.core.config
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'caja_app.db')}")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.database.database import Base, build_engine, get_db
from app.main import app
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import create_context_token
from app.modules.till.dependencies import get_sales_service
from app.modules.till.permissions import RolePermissionService
from app.modules.till.sales import SalesTotals
from app.modules.till.services import TillSessionService


class StubSalesAggregation:
    """Ventas acumuladas controladas por el test"""

    def __init__(self):
        self.totals = SalesTotals()
        self.calls = []

    def set(self, cash="0.00", card="0.00", online="0.00"):
        self.totals = SalesTotals(cash=Decimal(cash), card=Decimal(card), online=Decimal(online))

    def cumulative_sales(self, tenant_id, point_of_sale_id, since):
        self.calls.append((tenant_id, point_of_sale_id, since))
        return self.totals


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'caja.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def make_actor(tenant_id):
    def _make(role: str = "owner", tenant=None) -> AuthContext:
        return AuthContext(user_id=uuid4(), tenant_id=tenant or tenant_id, user_role=role)
    return _make


@pytest.fixture
def owner(make_actor):
    return make_actor("owner")


@pytest.fixture
def cashier(make_actor):
    return make_actor("cashier")


@pytest.fixture
def seller(make_actor):
    return make_actor("seller")


@pytest.fixture
def permissions():
    return RolePermissionService()


@pytest.fixture
def sales():
    return StubSalesAggregation()


@pytest.fixture
def make_service(session_factory, permissions, sales):
    """Cada servicio con su propia sesión de base de datos, como dos peticiones distintas"""
    sessions = []

    def _make() -> TillSessionService:
        db = session_factory()
        sessions.append(db)
        return TillSessionService(db, permissions, sales)

    yield _make
    for db in sessions:
        db.close()


@pytest.fixture
def service(db_session, permissions, sales):
    return TillSessionService(db_session, permissions, sales)


@pytest.fixture
def client(session_factory, sales):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sales_service] = lambda: sales
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(tenant_id):
    """Cabeceras para un rol dado: token de contexto + X-Company-ID"""
    def _headers(role: str = "owner", user_id=None):
        token = create_context_token(user_id or uuid4(), tenant_id, role)
        return {
            "Authorization": f"Bearer {token}",
            "X-Company-ID": str(tenant_id),
        }
    return _headers
