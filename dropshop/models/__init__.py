# Models
from .location import Location
from .product import Product
from .drop import Drop, DropProduct, DropStatus
from .client import Client
from .order import Order, OrderProduct, OrderStatus
from .inventory_reservations import InventoryReservation, ReservationStatus
from .inventory_logs import InventoryLog, ChangeType

__all__ = [
    "Location",
    "Product",
    "Drop",
    "DropProduct",
    "DropStatus",
    "Client",
    "Order",
    "OrderProduct",
    "OrderStatus",
    "InventoryReservation",
    "ReservationStatus",
    "InventoryLog",
    "ChangeType",
]
