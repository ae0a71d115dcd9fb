# Overview: Pytest coverage for transaction scope and post-commit domain events.

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from stockledger import events
from stockledger.errors import Conflict, InsufficientStock, StoreFailure, ValidationFailure
from stockledger.extensions import db
from stockledger.models import Branch, StockRecord
from stockledger.services import sales_service, stock_service
from stockledger.services.unit_of_work import UnitOfWork, unit_of_work


class TestUnitOfWork:

    def test_commits_on_success(self, db_session):
        with unit_of_work("test"):
            db.session.add(Branch(name="Airport", code="AP"))
        assert db_session.query(Branch).filter_by(code="AP").count() == 1

    def test_ledger_error_rolls_back_and_propagates(self, db_session):
        with pytest.raises(ValidationFailure):
            with unit_of_work("test"):
                db.session.add(Branch(name="Airport", code="AP"))
                db.session.flush()
                raise ValidationFailure("nope")
        assert db_session.query(Branch).filter_by(code="AP").count() == 0

    def test_integrity_error_becomes_conflict(self, db_session, branch):
        with pytest.raises(Conflict):
            with unit_of_work("test"):
                db.session.add(Branch(name="Copy", code=branch.code))
        assert db_session.query(Branch).count() == 1

    def test_operational_error_becomes_store_failure(self, db_session):
        with pytest.raises(StoreFailure) as exc_info:
            with unit_of_work("test"):
                raise OperationalError("UPDATE stock_records", {}, Exception("database is locked"))
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    def test_other_exceptions_propagate_unchanged(self, db_session):
        with pytest.raises(KeyError):
            with unit_of_work("test"):
                db.session.add(Branch(name="Airport", code="AP"))
                raise KeyError("boom")
        assert db_session.query(Branch).filter_by(code="AP").count() == 0

    def test_conflict_keeps_integrity_error_as_cause(self, db_session, branch):
        with pytest.raises(Conflict) as exc_info:
            with unit_of_work("test"):
                db.session.add(Branch(name="Copy", code=branch.code))
        assert isinstance(exc_info.value.__cause__, IntegrityError)


class TestEventQueue:

    def test_keyed_emit_keeps_last_payload_in_first_position(self):
        uow = UnitOfWork("test")
        uow.emit(events.stock_changed, key=(1, 1), new_quantity=5)
        uow.emit(events.sale_created, sale_id=9)
        uow.emit(events.stock_changed, key=(1, 1), new_quantity=3)

        assert uow.pending == [
            ("stock-changed", {"new_quantity": 3}),
            ("sale-created", {"sale_id": 9}),
        ]

    def test_retract_drops_keyed_event(self):
        uow = UnitOfWork("test")
        uow.emit(events.low_stock, key=(1, 1), current_stock=0)
        uow.retract(events.low_stock, (1, 1))
        assert uow.pending == []

    def test_unkeyed_events_are_never_merged(self):
        uow = UnitOfWork("test")
        uow.emit(events.sale_created, sale_id=1)
        uow.emit(events.sale_created, sale_id=2)
        assert [payload["sale_id"] for _, payload in uow.pending] == [1, 2]


class TestDomainEvents:

    def test_sale_emits_one_stock_change_per_product(
        self, db_session, admin, branch, products, make_stock, captured_events
    ):
        make_stock(products[0], branch, 10, min_level=2, max_level=50)
        captured_events.clear()

        sales_service.create_sale(
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "quantity": 1, "unit_price_cents": 1},
                {"product_id": products[0].id, "quantity": 2, "unit_price_cents": 1},
            ],
            actor=admin,
        )

        stock_events = [p for name, p in captured_events if name == "stock-changed"]
        assert len(stock_events) == 1
        assert stock_events[0]["new_quantity"] == 7
        assert stock_events[0]["change_type"] == "sale"
        assert [name for name, _ in captured_events] == ["stock-changed", "sale-created"]

    def test_event_ids_are_unique(self, db_session, admin, branch, products, make_stock, captured_events):
        make_stock(products[0], branch, 10)
        make_stock(products[1], branch, 10)
        captured_events.clear()

        sales_service.create_sale(
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "quantity": 1, "unit_price_cents": 1},
                {"product_id": products[1].id, "quantity": 1, "unit_price_cents": 1},
            ],
            actor=admin,
        )

        ids = [payload["event_id"] for _, payload in captured_events]
        assert len(ids) == 3
        assert len(set(ids)) == 3

    def test_low_stock_emitted_at_threshold(self, db_session, admin, branch, products, make_stock, captured_events):
        make_stock(products[0], branch, 5, min_level=3, max_level=50)
        captured_events.clear()

        stock_service.adjust_stock(product_id=products[0].id, branch_id=branch.id, delta=-2, actor=admin)

        low = [p for name, p in captured_events if name == "low-stock"]
        assert low == [{
            "branch_id": branch.id,
            "product_id": products[0].id,
            "current_stock": 3,
            "min_stock_level": 3,
            "event_id": low[0]["event_id"],
        }]

    def test_low_stock_retracted_when_unit_ends_above_minimum(
        self, db_session, admin, branch, products, make_stock, make_order, captured_events
    ):
        """Two lines of one product: the first dips below minimum, the second lifts it back."""
        from stockledger.services import order_service

        make_stock(products[0], branch, 1, min_level=3, max_level=50)
        order = make_order(branch, [(products[0], 1, 100), (products[0], 5, 100)])
        captured_events.clear()

        order_service.confirm_delivery(order_id=order.id, actor=admin)

        names = [name for name, _ in captured_events]
        assert "low-stock" not in names
        assert names.count("stock-changed") == 1

    def test_no_events_on_rollback(self, db_session, admin, branch, products, make_stock, captured_events):
        make_stock(products[0], branch, 1)
        captured_events.clear()

        with pytest.raises(InsufficientStock):
            sales_service.create_sale(
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 5, "unit_price_cents": 1}],
                actor=admin,
            )

        assert captured_events == []

    def test_failing_subscriber_does_not_undo_commit(self, db_session, admin, branch, products, make_stock):
        record = make_stock(products[0], branch, 10)
        calls = []

        def broken(sender, **payload):
            raise RuntimeError("subscriber down")

        def healthy(sender, **payload):
            calls.append(payload["new_quantity"])

        events.stock_changed.connect(broken, weak=False)
        events.stock_changed.connect(healthy, weak=False)
        try:
            stock_service.adjust_stock(product_id=products[0].id, branch_id=branch.id, delta=-4, actor=admin)
        finally:
            events.stock_changed.disconnect(broken)
            events.stock_changed.disconnect(healthy)

        assert calls == [6]
        assert db_session.get(StockRecord, record.id).current_stock == 6
