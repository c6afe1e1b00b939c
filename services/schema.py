"""
Registers every model on the shared metadata.

All services share one database and their tables reference each other, so
``create_all`` needs every model module imported first.
"""
from shared.database import Base
from shared.outbox import OutboxMessage
from services.cart_service.models import Cart, CartItem, CartPromotion
from services.inventory_service.models import InventoryUnit, Product
from services.order_service.models import Address, Order, OrderHistory, OrderItem, User
from services.payment_service.models import Payment
from services.promotion_service.models import Promotion, PromotionUsage

metadata = Base.metadata

__all__ = [
    "metadata",
    "Address",
    "Cart",
    "CartItem",
    "CartPromotion",
    "InventoryUnit",
    "Order",
    "OrderHistory",
    "OrderItem",
    "OutboxMessage",
    "Payment",
    "Product",
    "Promotion",
    "PromotionUsage",
    "User",
]
