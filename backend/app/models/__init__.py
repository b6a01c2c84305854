"""SQLAlchemy models."""

from app.models.restaurant import Restaurant, Driver, Zone, ServiceType
from app.models.menu import (
    Product,
    ProductVariant,
    Combo,
    ComboItem,
    Section,
    SectionOption,
    Promotion,
    PromotionItem,
    PromotionType,
)
from app.models.customer import (
    CustomerType,
    Customer,
    CustomerAddress,
    CustomerNit,
    CustomerPointsTransaction,
    PointsTransactionType,
)
from app.models.cart import Cart, CartItem, CartStatus
from app.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

__all__ = [
    "Restaurant", "Driver", "Zone", "ServiceType",
    "Product", "ProductVariant", "Combo", "ComboItem", "Section", "SectionOption",
    "Promotion", "PromotionItem", "PromotionType",
    "CustomerType", "Customer", "CustomerAddress", "CustomerNit",
    "CustomerPointsTransaction", "PointsTransactionType",
    "Cart", "CartItem", "CartStatus",
    "Order", "OrderItem", "OrderStatusHistory", "OrderStatus", "PaymentMethod", "PaymentStatus",
]
