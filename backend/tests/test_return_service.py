# Overview: Pytest coverage for the two return flows and their single review.

import pytest

from stockledger.errors import Conflict, InsufficientStock, NotFound, Unauthorized, ValidationFailure
from stockledger.models import InventoryHistory, Order, Return
from stockledger.services import order_service, return_service, sales_service
from stockledger.services.stock_service import get_stock_record


def _stock(product, branch):
    return get_stock_record(product.id, branch.id).current_stock


def _review_items(return_doc, status="approved"):
    return [
        {"product_id": line.product_id, "quantity": line.quantity, "status": status}
        for line in return_doc.lines
    ]


@pytest.fixture
def delivered_order(db_session, admin, branch, products, make_order):
    """Order of 10 x P1 @ 450c and 5 x P2 @ 250c, delivered to branch (stock 10 / 5)."""
    order = make_order(branch, [(products[0], 10, 450), (products[1], 5, 250)])
    return order_service.confirm_delivery(order_id=order.id, actor=admin)


class TestRestockFlow:

    def test_approval_credits_stock(self, db_session, admin, branch_user, branch, products, make_stock):
        """Pending return of 3 x P1 approved -> stock +3, one return_approved row, two status entries."""
        make_stock(products[0], branch, 10)
        return_doc = return_service.create_restock_return(
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 3, "reason": "Damaged"}],
            actor=branch_user,
        )
        assert return_doc.status == "pending_approval"
        assert return_doc.return_number.startswith("RET-")
        assert _stock(products[0], branch) == 10

        reviewed = return_service.review_return(
            return_id=return_doc.id,
            actor=admin,
            decision="approved",
            items=_review_items(return_doc),
        )

        assert reviewed.status == "approved"
        assert reviewed.reviewed_by_user_id == admin.id
        assert reviewed.reviewed_at is not None
        assert _stock(products[0], branch) == 13
        rows = db_session.query(InventoryHistory).filter_by(action="return_approved").all()
        assert [(r.quantity, r.reference_id) for r in rows] == [(3, return_doc.id)]
        assert [c.status for c in reviewed.status_history] == ["pending_approval", "approved"]

    def test_second_review_is_conflict(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10)
        return_doc = return_service.create_restock_return(
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 3}],
            actor=admin,
        )
        items = _review_items(return_doc)
        return_service.review_return(return_id=return_doc.id, actor=admin, decision="approved", items=items)

        with pytest.raises(Conflict):
            return_service.review_return(return_id=return_doc.id, actor=admin, decision="approved", items=items)

        assert _stock(products[0], branch) == 13
        assert len(db_session.get(Return, return_doc.id).status_history) == 2

    def test_rejection_leaves_stock(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10)
        return_doc = return_service.create_restock_return(
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 3}],
            actor=admin,
        )
        reviewed = return_service.review_return(
            return_id=return_doc.id,
            actor=admin,
            decision="rejected",
            items=_review_items(return_doc, "rejected"),
            review_notes="not ours",
        )
        assert reviewed.status == "rejected"
        assert reviewed.review_notes == "not ours"
        assert _stock(products[0], branch) == 10

    def test_partial_approval(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10)
        make_stock(products[1], branch, 10)
        return_doc = return_service.create_restock_return(
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "quantity": 2},
                {"product_id": products[1].id, "quantity": 4},
            ],
            actor=admin,
        )
        return_service.review_return(
            return_id=return_doc.id,
            actor=admin,
            decision="approved",
            items=[
                {"product_id": products[0].id, "quantity": 2, "status": "approved"},
                {"product_id": products[1].id, "quantity": 4, "status": "rejected"},
            ],
        )
        assert _stock(products[0], branch) == 12
        assert _stock(products[1], branch) == 10
        statuses = {line.product_id: line.status for line in db_session.get(Return, return_doc.id).lines}
        assert statuses == {products[0].id: "approved", products[1].id: "rejected"}

    def test_missing_stock_record_not_found(self, db_session, admin, branch, products):
        with pytest.raises(NotFound):
            return_service.create_restock_return(
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
            )
        assert db_session.query(Return).count() == 0

    def test_cites_sales_of_the_branch(self, db_session, admin, branch, other_branch, products, make_stock):
        make_stock(products[0], branch, 10)
        make_stock(products[0], other_branch, 10)
        item = [{"product_id": products[0].id, "quantity": 1, "unit_price_cents": 500}]
        own = sales_service.create_sale(branch_id=branch.id, items=item, actor=admin)
        foreign = sales_service.create_sale(branch_id=other_branch.id, items=item, actor=admin)

        return_doc = return_service.create_restock_return(
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 1}],
            actor=admin,
            sale_ids=[own.id],
        )
        assert return_doc.to_dict()["sale_ids"] == [own.id]

        with pytest.raises(ValidationFailure):
            return_service.create_restock_return(
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
                sale_ids=[foreign.id],
            )
        with pytest.raises(NotFound):
            return_service.create_restock_return(
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
                sale_ids=[987654],
            )


class TestReviewValidation:

    @pytest.fixture
    def pending_return(self, db_session, admin, branch, products, make_stock):
        make_stock(products[0], branch, 10)
        make_stock(products[1], branch, 10)
        return return_service.create_restock_return(
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "quantity": 2},
                {"product_id": products[1].id, "quantity": 1},
            ],
            actor=admin,
        )

    def test_quantity_mismatch_rejected(self, db_session, admin, branch, products, pending_return):
        with pytest.raises(ValidationFailure):
            return_service.review_return(
                return_id=pending_return.id,
                actor=admin,
                decision="approved",
                items=[
                    {"product_id": products[0].id, "quantity": 5, "status": "approved"},
                    {"product_id": products[1].id, "quantity": 1, "status": "approved"},
                ],
            )
        assert db_session.get(Return, pending_return.id).status == "pending_approval"
        assert _stock(products[0], branch) == 10

    def test_missing_line_rejected(self, db_session, admin, products, pending_return):
        with pytest.raises(ValidationFailure) as exc_info:
            return_service.review_return(
                return_id=pending_return.id,
                actor=admin,
                decision="approved",
                items=[{"product_id": products[0].id, "quantity": 2, "status": "approved"}],
            )
        assert exc_info.value.details["missing_lines"] == [{"product_id": products[1].id, "quantity": 1}]

    def test_rejected_decision_with_approved_item(self, db_session, admin, products, pending_return):
        with pytest.raises(ValidationFailure):
            return_service.review_return(
                return_id=pending_return.id,
                actor=admin,
                decision="rejected",
                items=[
                    {"product_id": products[0].id, "quantity": 2, "status": "approved"},
                    {"product_id": products[1].id, "quantity": 1, "status": "rejected"},
                ],
            )

    def test_approved_decision_needs_an_approved_item(self, db_session, admin, products, pending_return):
        with pytest.raises(ValidationFailure):
            return_service.review_return(
                return_id=pending_return.id,
                actor=admin,
                decision="approved",
                items=_review_items(pending_return, "rejected"),
            )

    def test_other_branch_reviewer_unauthorized(self, db_session, other_branch_user, pending_return):
        with pytest.raises(Unauthorized):
            return_service.review_return(
                return_id=pending_return.id,
                actor=other_branch_user,
                decision="approved",
                items=_review_items(pending_return),
            )

    def test_unknown_return(self, db_session, admin):
        with pytest.raises(NotFound):
            return_service.review_return(return_id=404, actor=admin, decision="approved", items=[])


class TestOrderFlow:

    def test_creation_debits_stock(self, db_session, branch_user, branch, products, delivered_order):
        return_doc = return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 3, "reason": "Damaged"}],
            actor=branch_user,
        )

        assert return_doc.flow == "order"
        assert return_doc.lines[0].price_cents == 450
        assert _stock(products[0], branch) == 7
        rows = db_session.query(InventoryHistory).filter_by(action="return_pending").all()
        assert [(r.quantity, r.reference_id) for r in rows] == [(-3, return_doc.id)]

    def test_approval_settles_refund_on_order(self, db_session, admin, branch, products, delivered_order):
        return_doc = return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[
                {"product_id": products[0].id, "quantity": 2},
                {"product_id": products[1].id, "quantity": 1},
            ],
            actor=admin,
        )
        reviewed = return_service.review_return(
            return_id=return_doc.id,
            actor=admin,
            decision="approved",
            items=_review_items(return_doc),
        )

        assert reviewed.refund_total_cents == 2 * 450 + 250
        order = db_session.get(Order, delivered_order.id)
        assert order.total_amount_cents == 10 * 450 + 5 * 250 - 1150
        assert return_doc.return_number in order.notes
        assert order.line_for_product(products[0].id).returned_quantity == 2
        # goods already left at creation; approval does not move stock
        assert _stock(products[0], branch) == 8
        assert _stock(products[1], branch) == 4
        approvals = (
            db_session.query(InventoryHistory)
            .filter_by(action="return_approved", reference_type="return", reference_id=return_doc.id)
            .order_by(InventoryHistory.id.asc())
            .all()
        )
        assert [(r.product_id, r.quantity) for r in approvals] == [(products[0].id, 0), (products[1].id, 0)]

    def test_rejected_lines_credited_back(self, db_session, admin, branch, products, delivered_order):
        return_doc = return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 4}],
            actor=admin,
        )
        assert _stock(products[0], branch) == 6

        reviewed = return_service.review_return(
            return_id=return_doc.id,
            actor=admin,
            decision="rejected",
            items=_review_items(return_doc, "rejected"),
        )

        assert reviewed.refund_total_cents == 0
        assert _stock(products[0], branch) == 10
        order = db_session.get(Order, delivered_order.id)
        assert order.total_amount_cents == 10 * 450 + 5 * 250
        actions = [
            r.action for r in db_session.query(InventoryHistory)
            .filter_by(reference_type="return", reference_id=return_doc.id)
            .order_by(InventoryHistory.id.asc())
        ]
        assert actions == ["return_pending", "return_rejected"]

    def test_refund_floors_order_total_at_zero(self, db_session, admin, branch, products, delivered_order):
        db_session.query(Order).filter_by(id=delivered_order.id).update({"total_amount_cents": 100})
        db_session.commit()

        return_doc = return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 1}],
            actor=admin,
        )
        return_service.review_return(
            return_id=return_doc.id, actor=admin, decision="approved", items=_review_items(return_doc)
        )
        assert db_session.get(Order, delivered_order.id).total_amount_cents == 0

    def test_order_must_be_delivered(self, db_session, admin, branch, products, make_order, make_stock):
        make_stock(products[0], branch, 10)
        order = make_order(branch, [(products[0], 5, 450)])
        with pytest.raises(ValidationFailure):
            return_service.create_order_return(
                order_id=order.id,
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
            )

    def test_window_expired(self, db_session, admin, branch, products, make_order):
        order = make_order(branch, [(products[0], 5, 450)], age_days=5)
        order_service.confirm_delivery(order_id=order.id, actor=admin)

        with pytest.raises(ValidationFailure) as exc_info:
            return_service.create_order_return(
                order_id=order.id,
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
                return_window_days=3,
            )
        assert "window" in exc_info.value.message
        assert _stock(products[0], branch) == 5

    def test_product_not_on_order(self, db_session, admin, branch, products, delivered_order, make_stock):
        make_stock(products[2], branch, 5)
        with pytest.raises(ValidationFailure) as exc_info:
            return_service.create_order_return(
                order_id=delivered_order.id,
                branch_id=branch.id,
                items=[{"product_id": products[2].id, "quantity": 1}],
                actor=admin,
            )
        assert exc_info.value.details["items"][0]["error"] == "not on order"

    def test_pending_returns_reduce_returnable(self, db_session, admin, branch, products, delivered_order):
        return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[1].id, "quantity": 4}],
            actor=admin,
        )
        with pytest.raises(ValidationFailure) as exc_info:
            return_service.create_order_return(
                order_id=delivered_order.id,
                branch_id=branch.id,
                items=[{"product_id": products[1].id, "quantity": 2}],
                actor=admin,
            )
        assert exc_info.value.details["items"][0]["returnable"] == 1

    def test_sold_goods_cannot_be_returned(self, db_session, admin, branch, products, delivered_order):
        sales_service.create_sale(
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 9, "unit_price_cents": 600}],
            actor=admin,
        )
        with pytest.raises(InsufficientStock):
            return_service.create_order_return(
                order_id=delivered_order.id,
                branch_id=branch.id,
                items=[{"product_id": products[0].id, "quantity": 3}],
                actor=admin,
            )
        assert db_session.query(Return).count() == 0
        assert _stock(products[0], branch) == 1

    def test_order_of_other_branch(self, db_session, admin, other_branch, products, delivered_order):
        with pytest.raises(ValidationFailure):
            return_service.create_order_return(
                order_id=delivered_order.id,
                branch_id=other_branch.id,
                items=[{"product_id": products[0].id, "quantity": 1}],
                actor=admin,
            )


class TestReturnableOrders:

    def test_remaining_nets_returned_and_pending(self, db_session, admin, branch, products, delivered_order):
        settled = return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 2}],
            actor=admin,
        )
        return_service.review_return(
            return_id=settled.id, actor=admin, decision="approved", items=_review_items(settled)
        )
        return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 3}],
            actor=admin,
        )

        orders = return_service.list_returnable_orders(
            product_id=products[0].id, branch_id=branch.id, actor=admin
        )

        assert orders == [{
            "order_id": delivered_order.id,
            "order_number": delivered_order.order_number,
            "product_id": products[0].id,
            "ordered_quantity": 10,
            "returned_quantity": 2,
            "pending_quantity": 3,
            "remaining_quantity": 5,
            "price_cents": 450,
            "return_window_open": True,
        }]

    def test_exhausted_and_undelivered_orders_left_out(
        self, db_session, admin, branch, products, delivered_order, make_order
    ):
        make_order(branch, [(products[1], 4, 250)])
        return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[1].id, "quantity": 5}],
            actor=admin,
        )

        assert return_service.list_returnable_orders(
            product_id=products[1].id, branch_id=branch.id, actor=admin
        ) == []

    def test_expired_window_flagged(self, db_session, admin, branch, products, make_order):
        order = make_order(branch, [(products[0], 5, 450)], age_days=5)
        order_service.confirm_delivery(order_id=order.id, actor=admin)

        orders = return_service.list_returnable_orders(
            product_id=products[0].id, branch_id=branch.id, actor=admin, return_window_days=3
        )
        assert [(o["order_id"], o["return_window_open"]) for o in orders] == [(order.id, False)]

    def test_other_branch_actor_unauthorized(self, db_session, other_branch_user, branch, products, delivered_order):
        with pytest.raises(Unauthorized):
            return_service.list_returnable_orders(
                product_id=products[0].id, branch_id=branch.id, actor=other_branch_user
            )


class TestListReturns:

    def test_filters(self, db_session, admin, branch, products, delivered_order):
        return_service.create_order_return(
            order_id=delivered_order.id,
            branch_id=branch.id,
            items=[{"product_id": products[0].id, "quantity": 1}],
            actor=admin,
        )
        return_service.create_restock_return(
            branch_id=branch.id,
            items=[{"product_id": products[1].id, "quantity": 1}],
            actor=admin,
        )

        items, total = return_service.list_returns(branch_id=branch.id)
        assert total == 2

        items, total = return_service.list_returns(flow="restock")
        assert total == 1
        assert items[0].flow == "restock"

        items, total = return_service.list_returns(status="approved")
        assert total == 0
