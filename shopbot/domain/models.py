from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Разрешенные переходы статусов заказа
ORDER_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Shop(BaseModel):
    id: str
    name: str
    page_access_token: Optional[str] = None
    is_ai_active: bool = True


class Product(BaseModel):
    """Товар магазина. reserved_stock меняет только StockLedger"""
    id: str
    shop_id: str
    name: str
    price: int
    stock: int
    reserved_stock: int = 0
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True

    @property
    def available(self) -> int:
        return self.stock - self.reserved_stock


class CartItem(BaseModel):
    id: str
    cart_id: str
    product_id: str
    product_name: str = ""
    variant_specs: Dict[str, str] = Field(default_factory=dict)
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


class Cart(BaseModel):
    id: str
    shop_id: str
    customer_id: str
    items: List[CartItem] = Field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(item.subtotal for item in self.items)


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    product_name: str = ""
    quantity: int
    unit_price: int
    variant_specs: Dict[str, str] = Field(default_factory=dict)


class Order(BaseModel):
    """Заказ со строками и статусом"""
    id: str
    shop_id: str
    customer_id: str
    status: OrderStatus
    total_amount: int
    notes: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def can_transition_to(self, target: OrderStatus) -> bool:
        """Бизнес-правило: только переходы из ORDER_TRANSITIONS"""
        return target in ORDER_TRANSITIONS[self.status]

    @property
    def short_id(self) -> str:
        return self.id[:8].upper()


class Payment(BaseModel):
    id: str
    order_id: str
    method: str = "qpay"
    amount: int
    status: PaymentStatus = PaymentStatus.PENDING
    invoice_id: Optional[str] = None
    payment_url: Optional[str] = None
    transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class Customer(BaseModel):
    id: str
    shop_id: str
    platform_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    ai_paused_until: Optional[datetime] = None
    preferences: Dict[str, str] = Field(default_factory=dict)
    total_orders: int = 0
    total_spent: int = 0

    def is_ai_paused(self, now: datetime) -> bool:
        """Пауза носит рекомендательный характер (last-write-wins)"""
        return self.ai_paused_until is not None and self.ai_paused_until > now


class ChatMessageRecord(BaseModel):
    customer_id: str
    role: str
    content: str
    created_at: datetime
