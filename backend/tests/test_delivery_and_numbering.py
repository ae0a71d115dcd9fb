# Overview: Pytest coverage for order delivery and per-day document numbering.

from datetime import datetime

import pytest

from stockledger.errors import Conflict, NotFound, Unauthorized, ValidationFailure
from stockledger.models import DocumentSequence, InventoryHistory, Order, StockRecord
from stockledger.services import order_service
from stockledger.services.document_service import (
    DOC_TYPE_RETURN,
    DOC_TYPE_SALE,
    DocumentSequenceError,
    next_document_number,
)
from stockledger.services.unit_of_work import unit_of_work


class TestConfirmDelivery:

    def test_credits_existing_and_creates_missing_records(
        self, db_session, branch_user, branch, products, make_stock, make_order
    ):
        make_stock(products[0], branch, 4, min_level=1, max_level=30)
        order = make_order(branch, [(products[0], 6, 450), (products[1], 3, 250)])

        delivered = order_service.confirm_delivery(order_id=order.id, actor=branch_user)

        assert delivered.status == "delivered"
        assert delivered.delivered_by_user_id == branch_user.id
        assert delivered.delivered_at is not None

        first = db_session.query(StockRecord).filter_by(product_id=products[0].id, branch_id=branch.id).one()
        second = db_session.query(StockRecord).filter_by(product_id=products[1].id, branch_id=branch.id).one()
        assert first.current_stock == 10
        assert (first.min_stock_level, first.max_stock_level) == (1, 30)
        assert second.current_stock == 3
        assert (second.min_stock_level, second.max_stock_level) == (0, 0)

        rows = db_session.query(InventoryHistory).filter_by(action="delivery").all()
        assert sorted(r.quantity for r in rows) == [3, 6]
        assert {r.reference_id for r in rows} == {order.id}

    def test_second_confirmation_is_conflict(self, db_session, admin, branch, products, make_order):
        order = make_order(branch, [(products[0], 6, 450)])
        order_service.confirm_delivery(order_id=order.id, actor=admin)

        with pytest.raises(Conflict):
            order_service.confirm_delivery(order_id=order.id, actor=admin)

        assert db_session.query(InventoryHistory).filter_by(action="delivery").count() == 1
        record = db_session.query(StockRecord).filter_by(product_id=products[0].id).one()
        assert record.current_stock == 6

    def test_history_guard_survives_status_reset(self, db_session, admin, branch, products, make_order):
        order = make_order(branch, [(products[0], 6, 450)])
        order_service.confirm_delivery(order_id=order.id, actor=admin)
        db_session.query(Order).filter_by(id=order.id).update({"status": "in_transit"})
        db_session.commit()

        with pytest.raises(Conflict):
            order_service.confirm_delivery(order_id=order.id, actor=admin)

    def test_order_must_be_in_transit(self, db_session, admin, branch, products, make_order):
        order = make_order(branch, [(products[0], 6, 450)], status="approved")
        with pytest.raises(ValidationFailure):
            order_service.confirm_delivery(order_id=order.id, actor=admin)

    def test_production_role_cannot_confirm(self, db_session, production_user, branch, products, make_order):
        order = make_order(branch, [(products[0], 6, 450)])
        with pytest.raises(Unauthorized):
            order_service.confirm_delivery(order_id=order.id, actor=production_user)
        assert db_session.get(Order, order.id).status == "in_transit"

    def test_other_branch_cannot_confirm(self, db_session, other_branch_user, branch, products, make_order):
        order = make_order(branch, [(products[0], 6, 450)])
        with pytest.raises(Unauthorized):
            order_service.confirm_delivery(order_id=order.id, actor=other_branch_user)

    def test_missing_order(self, db_session, admin):
        with pytest.raises(NotFound):
            order_service.confirm_delivery(order_id=31337, actor=admin)


class TestDocumentNumbers:

    def test_numbers_restart_each_day(self, db_session):
        day_one = datetime(2026, 4, 19, 10, 0)
        day_two = datetime(2026, 4, 20, 0, 5)

        with unit_of_work("test"):
            first = next_document_number(document_type=DOC_TYPE_SALE, at=day_one)
            second = next_document_number(document_type=DOC_TYPE_SALE, at=day_one)
            next_day = next_document_number(document_type=DOC_TYPE_SALE, at=day_two)

        assert first == "SALE-20260419-1"
        assert second == "SALE-20260419-2"
        assert next_day == "SALE-20260420-1"

    def test_types_count_independently(self, db_session):
        at = datetime(2026, 4, 19, 10, 0)
        with unit_of_work("test"):
            sale = next_document_number(document_type=DOC_TYPE_SALE, at=at)
            ret = next_document_number(document_type=DOC_TYPE_RETURN, at=at)

        assert sale == "SALE-20260419-1"
        assert ret == "RET-20260419-1"
        assert db_session.query(DocumentSequence).count() == 2

    def test_rolled_back_unit_releases_number(self, db_session):
        at = datetime(2026, 4, 19, 10, 0)
        with pytest.raises(ValidationFailure):
            with unit_of_work("test"):
                next_document_number(document_type=DOC_TYPE_SALE, at=at)
                raise ValidationFailure("abort")

        with unit_of_work("test"):
            number = next_document_number(document_type=DOC_TYPE_SALE, at=at)
        assert number == "SALE-20260419-1"

    def test_unknown_type(self, db_session):
        with pytest.raises(DocumentSequenceError):
            next_document_number(document_type="invoice")
