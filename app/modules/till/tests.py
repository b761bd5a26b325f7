"""
Tests para el módulo de Caja (Till)

Tests que cubren:
- Contador de denominaciones y cálculo de conciliación
- Ciclo de vida completo: apertura, retiradas, consumos, devoluciones,
  arqueos y cierre
- Permisos por capacidad, rechazados antes de escribir
- Inmutabilidad y verificación del libro de operaciones
- Concurrencia: aperturas simultáneas y conflictos optimistas
- Idempotencia de comandos
- Endpoints API con token de contexto y X-Company-ID

Las fixtures (db_session, service, client, auth_headers...) viven en el
conftest.py de la raíz del proyecto.
"""

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.modules.till import denominations, reconciliation
from app.modules.till.exceptions import (
    AlreadyOpen, ConcurrentModification, ImmutableLedgerEntry, InvalidAmount,
    InvalidDenomination, InvalidStateTransition, LedgerInconsistency,
    PermissionDenied, SessionNotFound, TransientStorageError
)
from app.modules.till.ledger import OperationLedger
from app.modules.till.models import (
    OperationKind, PaymentMethod, TillSession, TillSessionState
)
from app.modules.till.permissions import Capability, PermissionGate, RolePermissionService
from app.modules.till.reports import TillReportService
from app.modules.till.schemas import (
    CashCount, CashOutflowCreate, RefundCreate, TillSessionClose, TillSessionOpen
)
from app.modules.till.services import TillSessionService


# ===== FIXTURES =====

COUNT_83_50 = {"50": 1, "20": 1, "10": 1, "2": 1, "1": 1, "0.50": 1}


@pytest.fixture
def open_session(service, owner):
    """Caja abierta en POS-1 con fondo de 100.00"""
    return service.open_session(
        TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("100.00")),
        owner
    )


def withdrawal(amount: str, note: str = "Pago proveedor") -> CashOutflowCreate:
    return CashOutflowCreate(amount=Decimal(amount), note=note)


def assert_invariant(db: Session, session: TillSession):
    operations = OperationLedger(db).entries(session.id)
    replayed = reconciliation.expected_cash(session.opening_float, operations)
    assert replayed == session.expected_cash


# ===== TESTS DEL CONTADOR DE DENOMINACIONES =====

class TestDenominations:
    """Tests para el contador de billetes y monedas"""

    def test_total_mixed_count(self):
        """Test total de un conteo con billetes y monedas"""
        assert denominations.total({"20": 4, "0.50": 7}) == Decimal("83.50")
        assert denominations.total(COUNT_83_50) == Decimal("83.50")

    def test_total_empty_count(self):
        assert denominations.total({}) == Decimal("0.00")

    def test_total_is_deterministic(self):
        """Test el mismo conteo siempre produce el mismo total"""
        counts = {"500": 1, "0.01": 3, "0.05": 2}
        assert denominations.total(counts) == denominations.total(dict(counts)) == Decimal("500.13")

    def test_equivalent_keys_are_merged(self):
        """Test '0.5' y '0.50' son la misma denominación"""
        assert denominations.normalize({"0.5": 1, "0.50": 2}) == {"0.50": 3}

    @pytest.mark.parametrize("key", ["3", "0.25", "1000", "abc", "NaN"])
    def test_unknown_denomination(self, key):
        with pytest.raises(InvalidDenomination) as exc_info:
            denominations.total({key: 1})
        assert exc_info.value.field == "denominations"

    @pytest.mark.parametrize("quantity", [-1, 1.5, "dos", True, None])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(InvalidDenomination):
            denominations.total({"20": quantity})

    def test_breakdown_ordered_by_face_value(self):
        lines = denominations.breakdown({"0.50": 7, "20": 4})
        assert [line["face_value"] for line in lines] == [Decimal("20.00"), Decimal("0.50")]
        assert lines[0]["kind"] == "bill"
        assert lines[1]["subtotal"] == Decimal("3.50")

    def test_total_beyond_money_columns(self):
        """Numeric(15,2) admite hasta 9999999999999.99"""
        assert denominations.total({"0.01": 999999999999999}) == Decimal("9999999999999.99")
        with pytest.raises(InvalidDenomination):
            denominations.total({"500": 20_000_000_000})


# ===== TESTS DE CONCILIACIÓN =====

class TestReconciliation:
    """Tests para el cálculo de montos y signos"""

    @pytest.mark.parametrize("value", ["0", "-5.00", "1.234", "abc", None, True, "Infinity"])
    def test_positive_amount_rejects(self, value):
        with pytest.raises(InvalidAmount):
            reconciliation.positive_amount(value)

    @pytest.mark.parametrize("value", ["12345678901234567.89", "10000000000000.00", "-10000000000000", "1e40"])
    def test_amount_beyond_money_columns(self, value):
        with pytest.raises(InvalidAmount):
            reconciliation.to_money(value)

    def test_largest_amount_accepted(self):
        assert reconciliation.positive_amount("9999999999999.99") == Decimal("9999999999999.99")

    def test_positive_amount_quantizes(self):
        assert reconciliation.positive_amount("20") == Decimal("20.00")

    def test_signed_delta_by_kind(self):
        amount = Decimal("10.00")
        assert reconciliation.signed_delta(OperationKind.OPEN, amount) == amount
        assert reconciliation.signed_delta(OperationKind.WITHDRAWAL, amount) == -amount
        assert reconciliation.signed_delta(OperationKind.IN_HOUSE_CONSUMPTION, amount) == -amount
        assert reconciliation.signed_delta(OperationKind.REFUND, amount, PaymentMethod.CASH) == amount
        assert reconciliation.signed_delta(OperationKind.REFUND, amount, PaymentMethod.CARD) == Decimal("0.00")
        assert reconciliation.signed_delta(OperationKind.RECOUNT, amount) == Decimal("0.00")
        assert reconciliation.signed_delta(OperationKind.CLOSE, amount) == Decimal("0.00")

    def test_discrepancy_without_count(self):
        assert reconciliation.discrepancy(None, Decimal("10.00")) is None
        assert reconciliation.discrepancy(Decimal("83.50"), Decimal("80.00")) == Decimal("3.50")


# ===== TESTS DEL CICLO DE VIDA =====

class TestTillLifecycle:
    """Tests para TillSessionService"""

    def test_open_session(self, open_session, owner):
        """Apertura con fondo 100.00: esperado = contado = 100.00, diferencia 0"""
        assert open_session.state == TillSessionState.OPEN
        assert open_session.expected_cash == Decimal("100.00")
        assert open_session.counted_cash == Decimal("100.00")
        assert open_session.discrepancy == Decimal("0.00")
        assert open_session.opened_by == owner.user_id
        assert open_session.tenant_id == owner.tenant_id
        assert open_session.sequence_number == 1
        assert open_session.number == "CAJA-POS-1-0001"

    def test_open_appends_opening_entry(self, db_session, open_session):
        operations = OperationLedger(db_session).entries(open_session.id)
        assert len(operations) == 1
        assert operations[0].kind == OperationKind.OPEN
        assert operations[0].sequence == 1
        assert operations[0].signed_cash_delta == Decimal("100.00")

    def test_open_negative_float(self, service, db_session, owner):
        """Fondo -1.00: InvalidAmount y no se crea la caja"""
        with pytest.raises(InvalidAmount) as exc_info:
            service.open_session(
                TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("-1.00")),
                owner
            )
        assert exc_info.value.field == "opening_float"
        assert db_session.query(TillSession).count() == 0

    def test_open_zero_float(self, service, owner):
        session = service.open_session(
            TillSessionOpen(point_of_sale_id="POS-2", opening_float=Decimal("0")),
            owner
        )
        assert session.expected_cash == Decimal("0.00")

    def test_open_twice_same_point_of_sale(self, service, open_session, owner):
        with pytest.raises(AlreadyOpen) as exc_info:
            service.open_session(
                TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("50.00")),
                owner
            )
        assert isinstance(exc_info.value, InvalidStateTransition)

    def test_open_other_point_of_sale(self, service, open_session, owner):
        other = service.open_session(
            TillSessionOpen(point_of_sale_id="POS-2", opening_float=Decimal("50.00")),
            owner
        )
        assert other.id != open_session.id
        assert other.sequence_number == 1

    def test_withdrawal(self, service, db_session, open_session, cashier):
        """Retirada de 20.00 con can_withdraw: esperado 80.00"""
        session = service.withdraw(open_session.id, withdrawal("20.00"), cashier)
        assert session.expected_cash == Decimal("80.00")
        assert session.cumulative_cash_expenses == Decimal("20.00")
        assert session.discrepancy == Decimal("20.00")
        assert_invariant(db_session, session)

    def test_withdrawal_without_capability(self, service, db_session, open_session, seller):
        """Retirada sin can_withdraw: PermissionDenied y esperado sigue en 100.00"""
        with pytest.raises(PermissionDenied) as exc_info:
            service.withdraw(open_session.id, withdrawal("20.00"), seller)
        assert exc_info.value.capability == "can_withdraw"

        session = service.get_session(open_session.id, seller.tenant_id)
        assert session.expected_cash == Decimal("100.00")
        assert len(OperationLedger(db_session).entries(session.id)) == 1

    def test_withdrawal_invalid_amount(self, service, open_session, owner):
        with pytest.raises(InvalidAmount):
            service.withdraw(open_session.id, withdrawal("0"), owner)
        with pytest.raises(InvalidAmount):
            service.withdraw(open_session.id, withdrawal("-5.00"), owner)

    def test_withdrawal_beyond_money_columns(self, service, db_session, open_session, owner):
        with pytest.raises(InvalidAmount) as exc_info:
            service.withdraw(open_session.id, withdrawal("12345678901234567.89"), owner)
        assert exc_info.value.field == "amount"

        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.expected_cash == Decimal("100.00")
        assert len(OperationLedger(db_session).entries(session.id)) == 1

    def test_accumulated_expenses_beyond_money_columns(self, service, db_session, open_session, owner):
        """Cada retirada cabe, pero el acumulado ya no: la segunda se rechaza sin escribir"""
        service.withdraw(open_session.id, withdrawal("9999999999999.99"), owner)
        with pytest.raises(InvalidAmount):
            service.withdraw(open_session.id, withdrawal("9999999999999.99"), owner)

        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.cumulative_cash_expenses == Decimal("9999999999999.99")
        assert session.expected_cash == Decimal("-9999999999899.99")
        assert len(OperationLedger(db_session).entries(session.id)) == 2

    def test_withdrawal_can_drive_expected_negative(self, service, open_session, owner):
        session = service.withdraw(open_session.id, withdrawal("150.00"), owner)
        assert session.expected_cash == Decimal("-50.00")

    def test_in_house_consumption(self, service, db_session, open_session, cashier):
        session = service.record_in_house_consumption(
            open_session.id, withdrawal("7.50", note="Comida personal"), cashier
        )
        assert session.expected_cash == Decimal("92.50")
        assert session.cumulative_cash_expenses == Decimal("7.50")
        operations = OperationLedger(db_session).entries(session.id)
        assert operations[-1].kind == OperationKind.IN_HOUSE_CONSUMPTION
        assert operations[-1].signed_cash_delta == Decimal("-7.50")

    def test_cash_refund_increases_expected(self, service, open_session, seller):
        session = service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("12.00"), payment_method=PaymentMethod.CASH, order_ref="PED-1"),
            seller
        )
        assert session.expected_cash == Decimal("112.00")
        assert session.counted_cash == Decimal("100.00")
        assert session.discrepancy == Decimal("-12.00")

    def test_card_refund_is_audit_only(self, service, db_session, open_session, seller):
        session = service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("12.00"), payment_method=PaymentMethod.CARD),
            seller
        )
        assert session.expected_cash == Decimal("100.00")
        operation = OperationLedger(db_session).entries(session.id)[-1]
        assert operation.kind == OperationKind.REFUND
        assert operation.amount == Decimal("12.00")
        assert operation.signed_cash_delta == Decimal("0.00")

    def test_recount(self, service, open_session, owner):
        """Tras retirar 20.00, arqueo de 83.50: diferencia 3.50 y sigue abierta"""
        service.withdraw(open_session.id, withdrawal("20.00"), owner)
        session = service.recount(open_session.id, CashCount(denominations=COUNT_83_50), owner)
        assert session.counted_cash == Decimal("83.50")
        assert session.discrepancy == Decimal("3.50")
        assert session.expected_cash == Decimal("80.00")
        assert session.state == TillSessionState.OPEN

    def test_recount_twice_is_idempotent(self, service, db_session, open_session, owner):
        service.withdraw(open_session.id, withdrawal("20.00"), owner)
        first = service.recount(open_session.id, CashCount(denominations=COUNT_83_50), owner)
        snapshot = (first.counted_cash, first.discrepancy, first.expected_cash)
        second = service.recount(open_session.id, CashCount(denominations=COUNT_83_50), owner)
        assert (second.counted_cash, second.discrepancy, second.expected_cash) == snapshot

        operations = OperationLedger(db_session).entries(second.id)
        recounts = [op for op in operations if op.kind == OperationKind.RECOUNT]
        assert len(recounts) == 2
        assert recounts[0].denominations == {"50.00": 1, "20.00": 1, "10.00": 1, "2.00": 1, "1.00": 1, "0.50": 1}

    def test_recount_unknown_denomination(self, service, open_session, owner):
        with pytest.raises(InvalidDenomination):
            service.recount(open_session.id, CashCount(denominations={"3": 1}), owner)
        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.counted_cash == Decimal("100.00")

    def test_recount_count_beyond_money_columns(self, service, open_session, owner):
        with pytest.raises(InvalidDenomination):
            service.recount(open_session.id, CashCount(denominations={"500": 20_000_000_000}), owner)
        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.counted_cash == Decimal("100.00")

    def test_recount_without_capability(self, service, open_session, make_actor):
        accountant = make_actor("accountant")
        with pytest.raises(PermissionDenied):
            service.recount(open_session.id, CashCount(denominations=COUNT_83_50), accountant)

    def test_close_session(self, service, open_session, cashier):
        """Cierre con 83.50: la caja queda cerrada y no admite más operaciones"""
        service.withdraw(open_session.id, withdrawal("20.00"), cashier)
        session = service.close_session(
            open_session.id,
            TillSessionClose(denominations=COUNT_83_50, closing_notes="Sobran monedas"),
            cashier
        )
        assert session.state == TillSessionState.CLOSED
        assert session.closed_by == cashier.user_id
        assert session.closed_at is not None
        assert session.closing_notes == "Sobran monedas"
        assert session.counted_cash == Decimal("83.50")
        assert session.discrepancy == Decimal("3.50")
        assert session.within_tolerance is False

        with pytest.raises(InvalidStateTransition):
            service.withdraw(session.id, withdrawal("1.00"), cashier)
        with pytest.raises(InvalidStateTransition):
            service.recount(session.id, CashCount(denominations=COUNT_83_50), cashier)
        with pytest.raises(InvalidStateTransition):
            service.close_session(session.id, TillSessionClose(denominations=COUNT_83_50), cashier)
        with pytest.raises(InvalidStateTransition):
            service.refund(
                session.id,
                RefundCreate(amount=Decimal("1.00"), payment_method=PaymentMethod.CASH),
                cashier
            )

    def test_close_without_capability(self, service, open_session, seller):
        with pytest.raises(PermissionDenied):
            service.close_session(open_session.id, TillSessionClose(denominations=COUNT_83_50), seller)
        assert service.get_session(open_session.id, seller.tenant_id).is_open

    def test_close_count_beyond_money_columns(self, service, open_session, owner):
        with pytest.raises(InvalidDenomination):
            service.close_session(
                open_session.id, TillSessionClose(denominations={"200": 10**12}), owner
            )
        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.is_open
        assert session.counted_cash == Decimal("100.00")

    def test_close_exact_count_within_tolerance(self, service, open_session, owner):
        session = service.close_session(
            open_session.id, TillSessionClose(denominations={"100": 1}), owner
        )
        assert session.discrepancy == Decimal("0.00")
        assert session.within_tolerance is True

    def test_reopen_after_close_creates_new_session(self, service, open_session, owner):
        service.close_session(open_session.id, TillSessionClose(denominations={"100": 1}), owner)
        new_session = service.open_session(
            TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("100.00")),
            owner
        )
        assert new_session.id != open_session.id
        assert new_session.sequence_number == 2
        assert new_session.number == "CAJA-POS-1-0002"

    def test_invariant_after_mixed_operations(self, service, db_session, open_session, owner):
        service.withdraw(open_session.id, withdrawal("20.00"), owner)
        service.record_in_house_consumption(open_session.id, withdrawal("4.30"), owner)
        service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("9.99"), payment_method=PaymentMethod.CASH),
            owner
        )
        service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("15.00"), payment_method=PaymentMethod.ONLINE),
            owner
        )
        service.recount(open_session.id, CashCount(denominations={"50": 1, "20": 1}), owner)
        session = service.withdraw(open_session.id, withdrawal("0.01"), owner)

        assert session.expected_cash == Decimal("85.68")
        assert session.cumulative_cash_expenses == Decimal("24.31")
        assert_invariant(db_session, session)

        result = service.verify_session(session.id, owner.tenant_id)
        assert result.consistent
        assert result.operations_count == 7

    def test_session_not_found(self, service, owner):
        with pytest.raises(SessionNotFound):
            service.withdraw(uuid4(), withdrawal("1.00"), owner)
        with pytest.raises(SessionNotFound):
            service.get_session(uuid4(), owner.tenant_id)

    def test_multi_tenant_isolation(self, service, open_session, make_actor):
        """Una caja de otro tenant no existe para este actor"""
        stranger = make_actor("owner", tenant=uuid4())
        with pytest.raises(SessionNotFound):
            service.withdraw(open_session.id, withdrawal("1.00"), stranger)
        assert service.get_current_session(stranger.tenant_id, "POS-1") is None

    def test_current_session(self, service, open_session, owner):
        current = service.get_current_session(owner.tenant_id, "POS-1")
        assert current.id == open_session.id
        service.close_session(open_session.id, TillSessionClose(denominations={"100": 1}), owner)
        assert service.get_current_session(owner.tenant_id, "POS-1") is None

    def test_session_detail_summary(self, service, open_session, owner):
        service.withdraw(open_session.id, withdrawal("20.00"), owner)
        service.record_in_house_consumption(open_session.id, withdrawal("5.00"), owner)
        service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("3.00"), payment_method=PaymentMethod.CASH),
            owner
        )
        service.refund(
            open_session.id,
            RefundCreate(amount=Decimal("8.00"), payment_method=PaymentMethod.TRANSFER),
            owner
        )
        service.recount(open_session.id, CashCount(denominations={"50": 1}), owner)

        detail = service.get_session_detail(open_session.id, owner.tenant_id)
        summary = detail["summary"]
        assert summary["total_withdrawals"] == Decimal("20.00")
        assert summary["total_in_house_consumption"] == Decimal("5.00")
        assert summary["total_cash_refunds"] == Decimal("3.00")
        assert summary["total_non_cash_refunds"] == Decimal("8.00")
        assert summary["recounts"] == 1
        assert summary["operations_count"] == 6
        assert [op.sequence for op in detail["operations"]] == [1, 2, 3, 4, 5, 6]


# ===== TESTS DE VENTAS ACUMULADAS =====

class TestSalesSync:
    """Tests para la sincronización de ventas"""

    def test_sales_fetched_on_open(self, service, sales, owner):
        sales.set(cash="10.00", card="5.00", online="2.50")
        session = service.open_session(
            TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("100.00")),
            owner
        )
        assert session.cumulative_cash_sales == Decimal("10.00")
        assert session.cumulative_card_sales == Decimal("5.00")
        assert session.cumulative_online_sales == Decimal("2.50")
        assert session.expected_cash == Decimal("100.00")

    def test_sync_sales_does_not_touch_ledger(self, service, db_session, sales, open_session, owner):
        sales.set(cash="40.00", card="12.00")
        session = service.sync_sales(open_session.id, owner)
        assert session.cumulative_cash_sales == Decimal("40.00")
        assert session.cumulative_card_sales == Decimal("12.00")
        assert session.expected_cash == Decimal("100.00")
        assert len(OperationLedger(db_session).entries(session.id)) == 1

    def test_sync_sales_rejects_decrease(self, service, sales, open_session, owner):
        sales.set(cash="40.00")
        service.sync_sales(open_session.id, owner)
        sales.set(cash="30.00")
        with pytest.raises(InvalidAmount) as exc_info:
            service.sync_sales(open_session.id, owner)
        assert exc_info.value.field == "cumulative_cash_sales"
        assert service.get_session(open_session.id, owner.tenant_id).cumulative_cash_sales == Decimal("40.00")

    def test_recount_refreshes_sales(self, service, sales, open_session, owner):
        sales.set(online="18.00")
        session = service.recount(open_session.id, CashCount(denominations={"100": 1}), owner)
        assert session.cumulative_online_sales == Decimal("18.00")
        assert sales.calls[-1][1] == "POS-1"


# ===== TESTS DEL LIBRO DE OPERACIONES =====

class TestOperationLedger:
    """Tests de inmutabilidad y verificación del libro"""

    def test_operation_update_rejected(self, db_session, open_session):
        operation = OperationLedger(db_session).entries(open_session.id)[0]
        operation.amount = Decimal("1.00")
        with pytest.raises(ImmutableLedgerEntry):
            db_session.commit()
        db_session.rollback()

    def test_operation_delete_rejected(self, db_session, open_session):
        operation = OperationLedger(db_session).entries(open_session.id)[0]
        db_session.delete(operation)
        with pytest.raises(ImmutableLedgerEntry):
            db_session.commit()
        db_session.rollback()
        assert len(OperationLedger(db_session).entries(open_session.id)) == 1

    def test_corrupted_expected_cash(self, service, db_session, open_session, owner):
        """Un esperado que no cuadra con el libro es fatal y no se corrige"""
        db_session.execute(
            update(TillSession.__table__)
            .where(TillSession.__table__.c.id == open_session.id)
            .values(expected_cash=Decimal("999.00"))
        )
        db_session.commit()

        with pytest.raises(LedgerInconsistency):
            service.verify_session(open_session.id, owner.tenant_id)
        with pytest.raises(LedgerInconsistency):
            service.withdraw(open_session.id, withdrawal("1.00"), owner)

        session = service.get_session(open_session.id, owner.tenant_id)
        assert session.expected_cash == Decimal("999.00")
        assert len(OperationLedger(db_session).entries(session.id)) == 1

    def test_history_most_recent_first(self, service, db_session, open_session, owner):
        service.withdraw(open_session.id, withdrawal("1.00"), owner)
        service.withdraw(open_session.id, withdrawal("2.00"), owner)

        history = OperationLedger(db_session).history(owner.tenant_id, point_of_sale_id="POS-1")
        assert history["total"] == 3
        assert [op.sequence for op in history["operations"]] == [3, 2, 1]

        filtered = OperationLedger(db_session).history(owner.tenant_id, kind=OperationKind.WITHDRAWAL, limit=1)
        assert filtered["total"] == 2
        assert len(filtered["operations"]) == 1

    def test_history_date_range(self, service, db_session, open_session, owner):
        tomorrow = datetime.utcnow() + timedelta(days=1)
        history = OperationLedger(db_session).history(owner.tenant_id, date_from=tomorrow)
        assert history["total"] == 0


# ===== TESTS DE PERMISOS =====

class TestPermissionGate:
    """Tests para la puerta de permisos"""

    def test_capabilities_by_role(self, make_actor):
        gate = PermissionGate(RolePermissionService())
        cashier = gate.capabilities_for(make_actor("cashier"))
        assert cashier.can_withdraw and cashier.can_recount and cashier.can_close
        assert not cashier.can_view_shift_reports

        viewer = gate.capabilities_for(make_actor("viewer"))
        assert not any(viewer.allows(capability) for capability in Capability)

    def test_unknown_role_has_no_capabilities(self, make_actor):
        gate = PermissionGate(RolePermissionService())
        with pytest.raises(PermissionDenied):
            gate.capabilities_for(make_actor("intruder")).require(Capability.CLOSE)

    def test_capabilities_resolved_once_per_command(self, db_session, sales, open_session, owner):
        class CountingPermissions(RolePermissionService):
            calls = 0

            def has_capability(self, actor, capability):
                CountingPermissions.calls += 1
                return super().has_capability(actor, capability)

        service = TillSessionService(db_session, CountingPermissions(), sales)
        service.withdraw(open_session.id, withdrawal("1.00"), owner)
        assert CountingPermissions.calls == len(Capability)


# ===== TESTS DE CONCURRENCIA =====

class TestConcurrency:
    """Tests de aperturas simultáneas y conflictos optimistas"""

    def test_concurrent_open_only_one_wins(self, make_service, owner):
        barrier = threading.Barrier(2)
        results, errors = [], []

        def open_till():
            service = make_service()
            barrier.wait()
            try:
                results.append(service.open_session(
                    TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("100.00")),
                    owner
                ))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=open_till) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyOpen)

    def test_open_race_detected_by_unique_index(self, service, db_session, open_session, owner, monkeypatch):
        """Aunque la comprobación previa no vea la otra caja, el índice la rechaza"""
        monkeypatch.setattr(service, "_find_open", lambda tenant_id, point_of_sale_id: None)
        with pytest.raises(AlreadyOpen):
            service.open_session(
                TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("50.00")),
                owner
            )
        assert db_session.query(TillSession).count() == 1

    def test_conflict_retried_against_fresh_snapshot(self, make_service, open_session, owner):
        competitor = make_service()
        target = make_service()
        original_entries = target.ledger.entries
        interfered = []

        def entries_with_competing_write(session_id):
            operations = original_entries(session_id)
            if not interfered:
                interfered.append(True)
                competitor.withdraw(session_id, withdrawal("20.00"), owner)
            return operations

        target.ledger.entries = entries_with_competing_write
        session = target.withdraw(open_session.id, withdrawal("20.00"), owner)

        assert session.expected_cash == Decimal("60.00")
        assert [op.sequence for op in original_entries(session.id)] == [1, 2, 3]

    def test_conflict_after_retry_fails(self, make_service, open_session, owner):
        competitor = make_service()
        target = make_service()
        original_entries = target.ledger.entries

        def entries_with_competing_write(session_id):
            operations = original_entries(session_id)
            competitor.withdraw(session_id, withdrawal("20.00"), owner)
            return operations

        target.ledger.entries = entries_with_competing_write
        with pytest.raises(ConcurrentModification):
            target.withdraw(open_session.id, withdrawal("20.00"), owner)

        session = make_service().get_session(open_session.id, owner.tenant_id)
        assert session.expected_cash == Decimal("60.00")

    def test_read_retries_transient_failure(self, service, open_session, owner, monkeypatch):
        calls = []
        original_load = service._load

        def flaky_load(session_id, tenant_id):
            calls.append(session_id)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original_load(session_id, tenant_id)

        monkeypatch.setattr(service, "_load", flaky_load)
        assert service.get_session(open_session.id, owner.tenant_id).id == open_session.id
        assert len(calls) == 2

    def test_read_gives_up_after_retries(self, service, open_session, owner, monkeypatch):
        def failing_load(session_id, tenant_id):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(service, "_load", failing_load)
        with pytest.raises(TransientStorageError):
            service.get_session(open_session.id, owner.tenant_id)


# ===== TESTS DE IDEMPOTENCIA =====

class TestIdempotency:
    """Tests para comandos con Idempotency-Key"""

    def test_withdrawal_replay_not_applied_twice(self, service, db_session, open_session, owner):
        first = service.withdraw(open_session.id, withdrawal("20.00"), owner, idempotency_key="ret-1")
        second = service.withdraw(open_session.id, withdrawal("20.00"), owner, idempotency_key="ret-1")
        assert first.id == second.id
        assert second.expected_cash == Decimal("80.00")
        assert len(OperationLedger(db_session).entries(open_session.id)) == 2

    def test_open_replay_returns_same_session(self, service, owner):
        data = TillSessionOpen(point_of_sale_id="POS-9", opening_float=Decimal("10.00"))
        first = service.open_session(data, owner, idempotency_key="open-1")
        second = service.open_session(data, owner, idempotency_key="open-1")
        assert first.id == second.id

    def test_key_reused_for_other_operation(self, service, open_session, owner):
        service.withdraw(open_session.id, withdrawal("20.00"), owner, idempotency_key="k-1")
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.recount(open_session.id, CashCount(denominations={"50": 1}), owner, idempotency_key="k-1")
        assert exc_info.value.field == "idempotency_key"

    def test_open_key_reused_for_other_point_of_sale(self, service, owner):
        """La clave que abrió POS-A no devuelve esa caja al abrir POS-B"""
        first = service.open_session(
            TillSessionOpen(point_of_sale_id="POS-A", opening_float=Decimal("10.00")),
            owner, idempotency_key="open-a"
        )
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.open_session(
                TillSessionOpen(point_of_sale_id="POS-B", opening_float=Decimal("10.00")),
                owner, idempotency_key="open-a"
            )
        assert exc_info.value.field == "idempotency_key"
        assert service.get_current_session(owner.tenant_id, "POS-B") is None
        assert service.get_current_session(owner.tenant_id, "POS-A").id == first.id

    def test_close_replay_after_close(self, service, open_session, owner):
        data = TillSessionClose(denominations={"100": 1})
        first = service.close_session(open_session.id, data, owner, idempotency_key="close-1")
        second = service.close_session(open_session.id, data, owner, idempotency_key="close-1")
        assert second.state == TillSessionState.CLOSED
        assert second.closed_at == first.closed_at


# ===== TESTS DE REPORTES =====

class TestTillReports:
    """Tests para TillReportService"""

    def test_list_sessions(self, db_session, service, permissions, open_session, owner):
        service.close_session(open_session.id, TillSessionClose(denominations={"100": 1}), owner)
        service.open_session(TillSessionOpen(point_of_sale_id="POS-1", opening_float=Decimal("50.00")), owner)
        service.open_session(TillSessionOpen(point_of_sale_id="POS-2", opening_float=Decimal("50.00")), owner)

        reports = TillReportService(db_session, permissions)
        result = reports.list_sessions(owner, point_of_sale_id="POS-1")
        assert result["total"] == 2
        assert [s.sequence_number for s in result["sessions"]] == [2, 1]

        closed = reports.list_sessions(owner, state=TillSessionState.CLOSED)
        assert closed["total"] == 1

    def test_reports_require_capability(self, db_session, permissions, cashier):
        reports = TillReportService(db_session, permissions)
        with pytest.raises(PermissionDenied):
            reports.list_sessions(cashier)
        with pytest.raises(PermissionDenied):
            reports.list_operations(cashier)

    def test_accountant_lists_operations(self, db_session, permissions, open_session, make_actor):
        reports = TillReportService(db_session, permissions)
        result = reports.list_operations(make_actor("accountant"), session_id=open_session.id)
        assert result["total"] == 1
        assert result["operations"][0].kind == OperationKind.OPEN


# ===== TESTS DE API ENDPOINTS =====

class TestTillAPI:
    """Tests de endpoints API"""

    def open_till(self, client, headers, point_of_sale_id="POS-1", opening_float="100.00"):
        return client.post(
            "/api/v1/till-sessions/open",
            json={"point_of_sale_id": point_of_sale_id, "opening_float": opening_float},
            headers=headers
        )

    def test_open_endpoint(self, client, auth_headers):
        response = self.open_till(client, auth_headers("cashier"))
        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "open"
        assert data["number"] == "CAJA-POS-1-0001"
        assert Decimal(data["expected_cash"]) == Decimal("100.00")
        assert Decimal(data["discrepancy"]) == Decimal("0.00")

    def test_open_negative_float_endpoint(self, client, auth_headers):
        response = self.open_till(client, auth_headers(), opening_float="-1.00")
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_AMOUNT"
        assert response.json()["field"] == "opening_float"

    def test_open_twice_endpoint(self, client, auth_headers):
        headers = auth_headers()
        self.open_till(client, headers)
        response = self.open_till(client, headers)
        assert response.status_code == 409
        assert response.json()["error"] == "ALREADY_OPEN"

    def test_full_shift_endpoints(self, client, auth_headers):
        headers = auth_headers("cashier")
        session_id = self.open_till(client, headers).json()["id"]

        response = client.post(
            f"/api/v1/till-sessions/{session_id}/withdrawals",
            json={"amount": "20.00", "note": "Cambio"},
            headers=headers
        )
        assert response.status_code == 200
        assert Decimal(response.json()["expected_cash"]) == Decimal("80.00")

        response = client.post(
            f"/api/v1/till-sessions/{session_id}/recount",
            json={"denominations": COUNT_83_50},
            headers=headers
        )
        assert response.status_code == 200
        assert Decimal(response.json()["discrepancy"]) == Decimal("3.50")

        response = client.post(
            f"/api/v1/till-sessions/{session_id}/close",
            json={"denominations": COUNT_83_50, "closing_notes": "Fin de turno"},
            headers=headers
        )
        assert response.status_code == 200
        assert response.json()["state"] == "closed"

        response = client.post(
            f"/api/v1/till-sessions/{session_id}/withdrawals",
            json={"amount": "1.00"},
            headers=headers
        )
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    def test_withdrawal_permission_denied_endpoint(self, client, auth_headers):
        session_id = self.open_till(client, auth_headers()).json()["id"]
        response = client.post(
            f"/api/v1/till-sessions/{session_id}/withdrawals",
            json={"amount": "20.00"},
            headers=auth_headers("seller")
        )
        assert response.status_code == 403
        assert response.json()["error"] == "PERMISSION_DENIED"

    def test_invalid_denomination_endpoint(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        response = client.post(
            f"/api/v1/till-sessions/{session_id}/recount",
            json={"denominations": {"3": 2}},
            headers=headers
        )
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_DENOMINATION"
        assert response.json()["field"] == "denominations"

    def test_session_not_found_endpoint(self, client, auth_headers):
        response = client.get(f"/api/v1/till-sessions/{uuid4()}", headers=auth_headers())
        assert response.status_code == 404
        assert response.json()["error"] == "SESSION_NOT_FOUND"

    def test_current_session_endpoint(self, client, auth_headers):
        headers = auth_headers()
        response = client.get("/api/v1/till-sessions/current", params={"point_of_sale_id": "POS-1"}, headers=headers)
        assert response.status_code == 404

        session_id = self.open_till(client, headers).json()["id"]
        response = client.get("/api/v1/till-sessions/current", params={"point_of_sale_id": "POS-1"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["id"] == session_id

    def test_session_detail_endpoint(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        client.post(
            f"/api/v1/till-sessions/{session_id}/refunds",
            json={"amount": "5.00", "payment_method": "card", "order_ref": "PED-7"},
            headers=headers
        )

        response = client.get(f"/api/v1/till-sessions/{session_id}", headers=headers)
        assert response.status_code == 200
        data = response.json()
        assert data["operations_count"] == 2
        assert Decimal(data["total_non_cash_refunds"]) == Decimal("5.00")
        assert [op["kind"] for op in data["operations"]] == ["open", "refund"]
        assert data["operations"][1]["reference"] == "PED-7"

    def test_count_breakdown_in_session_detail(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        client.post(
            f"/api/v1/till-sessions/{session_id}/recount",
            json={"denominations": {"0.50": 7, "20": 4}},
            headers=headers
        )

        operations = client.get(f"/api/v1/till-sessions/{session_id}", headers=headers).json()["operations"]
        assert operations[0]["denomination_lines"] is None
        lines = operations[1]["denomination_lines"]
        assert [line["kind"] for line in lines] == ["bill", "coin"]
        assert Decimal(lines[0]["face_value"]) == Decimal("20.00")
        assert lines[0]["quantity"] == 4
        assert Decimal(lines[1]["subtotal"]) == Decimal("3.50")

    def test_oversized_amount_endpoint(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        response = client.post(
            f"/api/v1/till-sessions/{session_id}/withdrawals",
            json={"amount": "12345678901234567.89"},
            headers=headers
        )
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_AMOUNT"

    def test_reconciliation_endpoint(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        response = client.get(f"/api/v1/till-sessions/{session_id}/reconciliation", headers=headers)
        assert response.status_code == 200
        assert response.json()["consistent"] is True
        assert Decimal(response.json()["replayed_expected_cash"]) == Decimal("100.00")

    def test_idempotency_key_header(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        for _ in range(2):
            response = client.post(
                f"/api/v1/till-sessions/{session_id}/in-house-consumptions",
                json={"amount": "4.00"},
                headers={**headers, "Idempotency-Key": "consumo-1"}
            )
            assert response.status_code == 200
            assert Decimal(response.json()["expected_cash"]) == Decimal("96.00")

    def test_history_endpoints(self, client, auth_headers):
        headers = auth_headers()
        session_id = self.open_till(client, headers).json()["id"]
        client.post(f"/api/v1/till-sessions/{session_id}/withdrawals", json={"amount": "1.00"}, headers=headers)

        response = client.get("/api/v1/till-sessions/", params={"point_of_sale_id": "POS-1"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1

        response = client.get("/api/v1/till-operations/", params={"session_id": session_id}, headers=headers)
        assert response.status_code == 200
        assert [op["kind"] for op in response.json()["operations"]] == ["withdrawal", "open"]

        response = client.get("/api/v1/till-operations/", headers=auth_headers("cashier"))
        assert response.status_code == 403

    def test_missing_company_header(self, client, auth_headers):
        headers = auth_headers()
        headers.pop("X-Company-ID")
        response = client.get("/api/v1/till-sessions/", headers=headers)
        assert response.status_code == 400

    def test_company_header_must_match_token(self, client, auth_headers):
        headers = {**auth_headers(), "X-Company-ID": str(uuid4())}
        response = client.get("/api/v1/till-sessions/", headers=headers)
        assert response.status_code == 403

    def test_invalid_token(self, client, tenant_id):
        response = client.get(
            "/api/v1/till-sessions/",
            headers={"Authorization": "Bearer invalid", "X-Company-ID": str(tenant_id)}
        )
        assert response.status_code == 401

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
