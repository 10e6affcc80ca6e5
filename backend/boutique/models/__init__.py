from .catalog import Product, Client, User, PaymentMethod, Supplier
from .inventory import InventoryMovement, StockAlert
from .sales import Sale, SaleLine
from .documents import Return, ReturnLine, DocumentSequence
from .replenishment import ReplenishmentOrder, ReplenishmentOrderLine

__all__ = [
    'Product', 'Client', 'User', 'PaymentMethod', 'Supplier',
    'InventoryMovement', 'StockAlert',
    'Sale', 'SaleLine',
    'Return', 'ReturnLine', 'DocumentSequence',
    'ReplenishmentOrder', 'ReplenishmentOrderLine',
]
