from .users import User
from .catalog import Product
from .orders import Order, OrderItem, OrderEvent
from .returns import Return, ReturnItem
from .invoices import Invoice, InvoicePayment
from .communications import Notification
from .ratings import Rating

__all__ = [
    'User',
    'Product',
    'Order', 'OrderItem', 'OrderEvent',
    'Return', 'ReturnItem',
    'Invoice', 'InvoicePayment',
    'Notification',
    'Rating',
]
