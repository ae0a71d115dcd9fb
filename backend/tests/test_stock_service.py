# Overview: Pytest coverage for branch stock records and the adjust_quantity primitive.

import pytest

from stockledger.errors import Conflict, InsufficientStock, NotFound, Unauthorized, ValidationFailure
from stockledger.models import InventoryHistory, StockMovement, StockRecord
from stockledger.services import stock_service
from stockledger.services.integrity_service import verify_stock_records
from stockledger.services.unit_of_work import unit_of_work


class TestCreateStockRecord:

    def test_initial_stock_writes_one_movement_and_history(self, db_session, admin, branch, products):
        record = stock_service.create_stock_record(
            product_id=products[0].id,
            branch_id=branch.id,
            actor=admin,
            initial_stock=12,
            min_stock_level=2,
            max_stock_level=40,
        )

        assert record.current_stock == 12
        movements = db_session.query(StockMovement).filter_by(stock_record_id=record.id).all()
        assert [(m.type, m.quantity) for m in movements] == [("in", 12)]
        history = db_session.query(InventoryHistory).filter_by(product_id=products[0].id).all()
        assert [(h.action, h.quantity) for h in history] == [("restock", 12)]

    def test_zero_initial_stock_writes_nothing(self, db_session, admin, branch, products):
        record = stock_service.create_stock_record(
            product_id=products[0].id, branch_id=branch.id, actor=admin
        )
        assert record.current_stock == 0
        assert db_session.query(InventoryHistory).count() == 0

    def test_duplicate_record_is_conflict(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 5)
        with pytest.raises(Conflict):
            stock_service.create_stock_record(
                product_id=products[0].id, branch_id=branch.id, actor=admin
            )
        assert db_session.query(StockRecord).count() == 1

    def test_max_below_min_rejected(self, db_session, admin, branch, products):
        with pytest.raises(ValidationFailure):
            stock_service.create_stock_record(
                product_id=products[0].id,
                branch_id=branch.id,
                actor=admin,
                min_stock_level=10,
                max_stock_level=5,
            )
        assert db_session.query(StockRecord).count() == 0

    def test_unknown_product_not_found(self, db_session, admin, branch):
        with pytest.raises(NotFound):
            stock_service.create_stock_record(product_id=999, branch_id=branch.id, actor=admin)

    def test_branch_user_cannot_stock_other_branch(self, db_session, branch_user, other_branch, products):
        with pytest.raises(Unauthorized):
            stock_service.create_stock_record(
                product_id=products[0].id, branch_id=other_branch.id, actor=branch_user
            )


class TestBulkCreate:

    def test_creates_every_record(self, db_session, production_user, branch, products):
        records = stock_service.bulk_create_stock(
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "initial_stock": 3},
                {"product_id": products[1].id, "min_stock_level": 1, "max_stock_level": 9},
            ],
            actor=production_user,
        )
        assert sorted(r.product_id for r in records) == [products[0].id, products[1].id]
        assert db_session.query(StockRecord).filter_by(branch_id=branch.id).count() == 2

    def test_duplicate_in_payload_writes_nothing(self, db_session, admin, branch, products):
        with pytest.raises(Conflict) as exc_info:
            stock_service.bulk_create_stock(
                branch_id=branch.id,
                items=[{"product_id": products[0].id}, {"product_id": products[0].id}],
                actor=admin,
            )
        assert exc_info.value.details["product_ids"] == [products[0].id]
        assert db_session.query(StockRecord).count() == 0

    def test_existing_record_aborts_whole_batch(self, db_session, admin, branch, products, make_stock):
        make_stock(products[1], branch, 4)
        with pytest.raises(Conflict) as exc_info:
            stock_service.bulk_create_stock(
                branch_id=branch.id,
                items=[{"product_id": products[0].id}, {"product_id": products[1].id}],
                actor=admin,
            )
        assert exc_info.value.details["product_ids"] == [products[1].id]
        assert db_session.query(StockRecord).count() == 1


class TestAdjustStock:

    def test_positive_delta_is_restock(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 5)
        record = stock_service.adjust_stock(
            product_id=products[0].id, branch_id=branch.id, delta=7, actor=admin
        )
        assert record.current_stock == 12
        last = db_session.query(InventoryHistory).order_by(InventoryHistory.id.desc()).first()
        assert (last.action, last.quantity, last.created_by_user_id) == ("restock", 7, admin.id)

    def test_negative_delta_is_adjustment(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 5)
        record = stock_service.adjust_stock(
            product_id=products[0].id, branch_id=branch.id, delta=-5, actor=admin
        )
        assert record.current_stock == 0
        last = db_session.query(InventoryHistory).order_by(InventoryHistory.id.desc()).first()
        assert (last.action, last.quantity) == ("adjustment", -5)

    def test_overdraw_rejected_and_nothing_written(self, db_session, admin, branch, products, make_stock):
        record = make_stock(products[0], branch, 3)
        history_before = db_session.query(InventoryHistory).count()

        with pytest.raises(InsufficientStock) as exc_info:
            stock_service.adjust_stock(
                product_id=products[0].id, branch_id=branch.id, delta=-4, actor=admin
            )

        assert exc_info.value.details["items"][0]["available"] == 3
        assert db_session.get(StockRecord, record.id).current_stock == 3
        assert db_session.query(InventoryHistory).count() == history_before

    def test_zero_delta_rejected(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 3)
        with pytest.raises(ValidationFailure):
            stock_service.adjust_stock(
                product_id=products[0].id, branch_id=branch.id, delta=0, actor=admin
            )

    def test_missing_record_not_found(self, db_session, admin, branch, products):
        with pytest.raises(NotFound):
            stock_service.adjust_stock(
                product_id=products[0].id, branch_id=branch.id, delta=1, actor=admin
            )


class TestStockLimits:

    def test_limits_change_logged_as_settings_adjustment(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10, min_level=1, max_level=20)
        record = stock_service.set_stock_limits(
            product_id=products[0].id,
            branch_id=branch.id,
            min_stock_level=4,
            max_stock_level=30,
            actor=admin,
        )
        assert (record.min_stock_level, record.max_stock_level) == (4, 30)
        assert record.current_stock == 10

        last = db_session.query(InventoryHistory).order_by(InventoryHistory.id.desc()).first()
        assert last.action == "settings_adjustment"
        assert last.quantity == 0
        assert last.notes == "min 1 -> 4, max 20 -> 30"

    def test_invalid_range_keeps_prior_limits(self, db_session, admin, branch, products, make_stock):
        record = make_stock(products[0], branch, 10, min_level=1, max_level=20)
        with pytest.raises(ValidationFailure):
            stock_service.set_stock_limits(
                product_id=products[0].id,
                branch_id=branch.id,
                min_stock_level=8,
                max_stock_level=2,
                actor=admin,
            )
        record = db_session.get(StockRecord, record.id)
        assert (record.min_stock_level, record.max_stock_level) == (1, 20)


class TestStockStatus:

    @pytest.mark.parametrize(
        "quantity,min_level,max_level,expected",
        [
            (2, 2, 10, "low"),
            (0, 0, 0, "low"),
            (10, 2, 10, "full"),
            (5, 2, 10, "normal"),
            (50, 0, 0, "normal"),
        ],
    )
    def test_classification(self, db_session, branch, products, make_stock, quantity, min_level, max_level, expected):
        make_stock(products[0], branch, quantity, min_level=min_level, max_level=max_level)
        status = stock_service.stock_status(products[0].id, branch.id)
        assert status["stock_status"] == expected


class TestAvailabilityCheck:

    def test_reports_every_shortage(self, db_session, branch, products, make_stock):
        make_stock(products[0], branch, 1)
        make_stock(products[1], branch, 1)
        make_stock(products[2], branch, 10)

        with pytest.raises(InsufficientStock) as exc_info:
            with unit_of_work("test"):
                stock_service.lock_and_check_availability_inner(
                    branch.id, {products[0].id: 2, products[1].id: 5, products[2].id: 1}
                )

        short = {item["product_id"]: item for item in exc_info.value.details["items"]}
        assert set(short) == {products[0].id, products[1].id}
        assert short[products[1].id]["requested"] == 5
        assert short[products[1].id]["available"] == 1

    def test_missing_records_listed(self, db_session, branch, products, make_stock):
        make_stock(products[0], branch, 1)
        with pytest.raises(NotFound) as exc_info:
            with unit_of_work("test"):
                stock_service.lock_and_check_availability_inner(
                    branch.id, {products[0].id: 1, products[2].id: 1}
                )
        assert exc_info.value.details["product_ids"] == [products[2].id]


class TestLedgerConsistency:

    def test_movement_sums_match_after_mixed_changes(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10)
        stock_service.adjust_stock(product_id=products[0].id, branch_id=branch.id, delta=-4, actor=admin)
        stock_service.adjust_stock(product_id=products[0].id, branch_id=branch.id, delta=9, actor=admin)

        assert verify_stock_records() == []
        record = stock_service.get_stock_record(products[0].id, branch.id)
        assert sum(m.signed_quantity for m in record.movements) == record.current_stock == 15

    def test_verify_flags_drift(self, db_session, branch, products, make_stock):
        record = make_stock(products[0], branch, 10)
        db_session.query(StockRecord).filter_by(id=record.id).update({"current_stock": 11})
        db_session.commit()

        problems = verify_stock_records(branch_id=branch.id)
        assert [p["rule"] for p in problems] == ["movement_sum"]
        assert problems[0]["movement_total"] == 10
