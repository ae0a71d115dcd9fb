# Overview: Domain events sent after a unit of work commits.
#
# Subscribers connect with the usual blinker API, e.g.
#
#     @stock_changed.connect
#     def on_stock_changed(sender, **payload): ...
#
# sender is the name of the service module that queued the event. Every
# payload carries a unique event_id (uuid4 string). Events are never sent for
# a unit that rolled back.

from __future__ import annotations

from blinker import Namespace


_signals = Namespace()

# {branch_id, product_id, new_quantity, change_type}
stock_changed = _signals.signal("stock-changed")

# {branch_id, product_id, current_stock, min_stock_level}
low_stock = _signals.signal("low-stock")

# {sale_id, branch_id, sale_number, status}
sale_created = _signals.signal("sale-created")
sale_updated = _signals.signal("sale-updated")
sale_deleted = _signals.signal("sale-deleted")

# {return_id, branch_id, return_number, status, refund_total_cents}
return_created = _signals.signal("return-created")
return_status_updated = _signals.signal("return-status-updated")

# {order_id, branch_id}
order_delivered = _signals.signal("order-delivered")


ALL_SIGNALS = (
    stock_changed,
    low_stock,
    sale_created,
    sale_updated,
    sale_deleted,
    return_created,
    return_status_updated,
    order_delivered,
)
