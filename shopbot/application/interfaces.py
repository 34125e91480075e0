from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shopbot.domain.models import (
    Cart, ChatMessageRecord, Customer, Order, OrderStatus, Payment, Product, Shop
)


class ShopRepository(ABC):
    @abstractmethod
    async def get_by_id(self, shop_id: str) -> Optional[Shop]:
        pass


class ProductRepository(ABC):
    @abstractmethod
    async def get_by_id(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def list_active(self, shop_id: str) -> List[Product]:
        pass

    @abstractmethod
    async def search_by_name(self, shop_id: str, name: str) -> List[Product]:
        """Регистронезависимый поиск по подстроке"""
        pass

    @abstractmethod
    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        """reserved_stock += quantity только если reserved_stock + quantity <= stock"""
        pass

    @abstractmethod
    async def release(self, product_id: str, quantity: int) -> None:
        pass

    @abstractmethod
    async def commit_sale(self, product_id: str, quantity: int) -> bool:
        pass


class CartRepository(ABC):
    @abstractmethod
    async def get_active(self, shop_id: str, customer_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def get_or_create(self, shop_id: str, customer_id: str) -> Cart:
        pass

    @abstractmethod
    async def add_item(
        self, cart_id: str, product_id: str, variant_specs: Dict[str, str], quantity: int, unit_price: int
    ) -> int:
        """Добавляет позицию или увеличивает количество, возвращает итоговое количество"""
        pass

    @abstractmethod
    async def remove_item(self, item_id: str) -> None:
        pass

    @abstractmethod
    async def clear(self, cart_id: str) -> None:
        pass


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def compare_and_set_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus, notes: Optional[str] = None
    ) -> bool:
        pass

    @abstractmethod
    async def list_for_customer(
        self, shop_id: str, customer_id: str, statuses: Optional[List[OrderStatus]] = None, limit: int = 5
    ) -> List[Order]:
        pass

    @abstractmethod
    async def find_recent_pending_with_product(
        self, shop_id: str, customer_id: str, product_id: str, since: datetime
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_expired_pending(self, cutoff: datetime, limit: int = 100) -> List[str]:
        """pending заказы старше cutoff без оплаченного платежа"""
        pass


class PaymentRepository(ABC):
    @abstractmethod
    async def create(self, payment: Payment) -> None:
        pass

    @abstractmethod
    async def get_by_invoice_id(self, invoice_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[Payment]:
        pass

    @abstractmethod
    async def has_paid_for_order(self, order_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_paid(self, payment_id: str, transaction_id: Optional[str], paid_at: datetime) -> bool:
        """Переводит в paid, если платеж еще не оплачен и у заказа нет другого оплаченного"""
        pass


class CustomerRepository(ABC):
    @abstractmethod
    async def get_by_id(self, customer_id: str) -> Optional[Customer]:
        pass

    @abstractmethod
    async def get_or_create_by_platform_id(
        self, shop_id: str, platform_id: str, name: Optional[str] = None
    ) -> Customer:
        pass

    @abstractmethod
    async def update_contact(self, customer_id: str, fields: Dict[str, str]) -> None:
        pass

    @abstractmethod
    async def set_ai_paused_until(self, customer_id: str, until: Optional[datetime]) -> None:
        pass

    @abstractmethod
    async def merge_preference(self, customer_id: str, key: str, value: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def record_purchase(self, customer_id: str, amount: int) -> None:
        pass


class ChatHistoryRepository(ABC):
    @abstractmethod
    async def append(self, record: ChatMessageRecord) -> None:
        pass

    @abstractmethod
    async def recent(self, customer_id: str, limit: int = 10) -> List[ChatMessageRecord]:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def shops(self) -> ShopRepository:
        pass

    @property
    @abstractmethod
    def products(self) -> ProductRepository:
        pass

    @property
    @abstractmethod
    def carts(self) -> CartRepository:
        pass

    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def payments(self) -> PaymentRepository:
        pass

    @property
    @abstractmethod
    def customers(self) -> CustomerRepository:
        pass

    @property
    @abstractmethod
    def chat_history(self) -> ChatHistoryRepository:
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class PaymentGateway(ABC):
    @abstractmethod
    async def create_invoice(self, order_id: str, amount: int, description: str, callback_url: str) -> Dict[str, Any]:
        """Возвращает {"invoice_id", "qr_text", "short_url"}"""
        pass

    @abstractmethod
    async def check_status(self, invoice_id: str) -> Dict[str, Any]:
        """Возвращает {"count", "paid_amount", "rows": [...]}"""
        pass


class MessagingService(ABC):
    @abstractmethod
    async def send_text(self, recipient_id: str, text: str, access_token: str) -> None:
        pass

    @abstractmethod
    async def send_tagged_message(self, recipient_id: str, text: str, tag: str, access_token: str) -> None:
        pass


class ShopNotificationsService(ABC):
    @abstractmethod
    async def send(self, shop_id: str, title: str, body: str, tag: str) -> None:
        pass


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    # JSON-строка, как ее вернула модель
    arguments: str

    def to_message(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class ModelReply:
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


class LanguageModel(ABC):
    @abstractmethod
    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> ModelReply:
        pass
