from .catalog import Product, ProductVariant
from .customers import Customer
from .orders import Order, OrderLine
from .stock import StockMovement
from .statements import Statement
from .mileage import MileageEntry

__all__ = [
    'Product', 'ProductVariant',
    'Customer',
    'Order', 'OrderLine',
    'StockMovement',
    'Statement',
    'MileageEntry',
]
