from .branches import Branch, User
from .inventory import Product, StockRecord, StockMovement, InventoryHistory
from .sales import Sale, SaleLine
from .orders import Order, OrderLine
from .documents import Return, ReturnLine, ReturnSaleReference, ReturnStatusChange, DocumentSequence

__all__ = [
    'Branch', 'User',
    'Product', 'StockRecord', 'StockMovement', 'InventoryHistory',
    'Sale', 'SaleLine',
    'Order', 'OrderLine',
    'Return', 'ReturnLine', 'ReturnSaleReference', 'ReturnStatusChange',
    'DocumentSequence',
]
