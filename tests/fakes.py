"""In-memory реализации портов для тестов use cases.

Каждый вызов репозитория уступает event loop (asyncio.sleep(0)), чтобы
параллельные задачи перемешивались. Атомарные операции (try_reserve,
compare_and_set_status, mark_paid) выполняют проверку и запись без await
между ними, как один UPDATE в БД. Записи видны сразу, а rollback откатывает
их по журналу.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from shopbot.application.interfaces import (
    CartRepository, ChatHistoryRepository, CustomerRepository, LanguageModel, MessagingService, ModelReply,
    OrderRepository, PaymentGateway, PaymentRepository, ProductRepository, ShopNotificationsService,
    ShopRepository
)
from shopbot.application.interfaces import UnitOfWork as AbstractUnitOfWork
from shopbot.application.place_order import OrderLine, PlaceOrder
from shopbot.application.retry import RetryPolicy
from shopbot.domain.exceptions import MessagingServiceError, NotificationServiceError, PaymentServiceError
from shopbot.domain.models import (
    Cart, CartItem, ChatMessageRecord, Customer, Order, OrderStatus, Payment, PaymentStatus, Product, Shop
)

FAST_POLICY = RetryPolicy(max_attempts=3, initial_delay=0.0, multiplier=2.0, max_delay=0.0, jitter=0.0)
PLACEHOLDER = "https://placehold.test/no-image.png"


async def _yield():
    await asyncio.sleep(0)


class FakeStore:
    def __init__(self):
        self.shops: Dict[str, Shop] = {}
        self.products: Dict[str, Product] = {}
        self.customers: Dict[str, Customer] = {}
        self.carts: Dict[str, Cart] = {}
        self.cart_items: Dict[str, CartItem] = {}
        self.orders: Dict[str, Order] = {}
        self.payments: Dict[str, Payment] = {}
        self.chat: List[ChatMessageRecord] = []
        self.commits = 0

    def add_shop(self, shop: Shop) -> Shop:
        self.shops[shop.id] = shop
        return shop

    def add_product(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = customer
        return customer

    def age_order(self, order_id: str, minutes: int) -> None:
        order = self.orders[order_id]
        self.orders[order_id] = order.model_copy(
            update={"created_at": order.created_at - timedelta(minutes=minutes)}
        )


class _Repository:
    def __init__(self, store: FakeStore, journal: list):
        self._store = store
        self._journal = journal

    def _undo(self, fn) -> None:
        self._journal.append(fn)


class FakeShopRepository(_Repository, ShopRepository):
    async def get_by_id(self, shop_id):
        await _yield()
        shop = self._store.shops.get(shop_id)
        return shop.model_copy() if shop else None


class FakeProductRepository(_Repository, ProductRepository):
    async def get_by_id(self, product_id):
        await _yield()
        product = self._store.products.get(product_id)
        return product.model_copy() if product else None

    async def list_active(self, shop_id):
        await _yield()
        return sorted(
            (p.model_copy() for p in self._store.products.values() if p.shop_id == shop_id and p.is_active),
            key=lambda p: p.name,
        )

    async def search_by_name(self, shop_id, name):
        return [p for p in await self.list_active(shop_id) if name.lower() in p.name.lower()]

    async def try_reserve(self, product_id, quantity):
        await _yield()
        product = self._store.products.get(product_id)
        if product is None or product.reserved_stock + quantity > product.stock:
            return False
        self._shift(product_id, reserved=quantity)
        self._undo(lambda: self._shift(product_id, reserved=-quantity))
        return True

    async def release(self, product_id, quantity):
        await _yield()
        product = self._store.products.get(product_id)
        if product is None:
            return
        released = min(product.reserved_stock, quantity)
        self._shift(product_id, reserved=-released)
        self._undo(lambda: self._shift(product_id, reserved=released))

    async def commit_sale(self, product_id, quantity):
        await _yield()
        product = self._store.products.get(product_id)
        if product is None or product.reserved_stock < quantity or product.stock < quantity:
            return False
        self._shift(product_id, stock=-quantity, reserved=-quantity)
        self._undo(lambda: self._shift(product_id, stock=quantity, reserved=quantity))
        return True

    def _shift(self, product_id: str, stock: int = 0, reserved: int = 0) -> None:
        product = self._store.products[product_id]
        self._store.products[product_id] = product.model_copy(update={
            "stock": product.stock + stock,
            "reserved_stock": product.reserved_stock + reserved,
        })


class FakeCartRepository(_Repository, CartRepository):
    async def get_active(self, shop_id, customer_id):
        await _yield()
        return self._find(shop_id, customer_id)

    async def get_or_create(self, shop_id, customer_id):
        await _yield()
        cart = self._find(shop_id, customer_id)
        if cart is not None:
            return cart
        cart = Cart(id=str(uuid.uuid4()), shop_id=shop_id, customer_id=customer_id)
        self._store.carts[cart.id] = cart
        self._undo(lambda: self._store.carts.pop(cart.id, None))
        return cart

    async def add_item(self, cart_id, product_id, variant_specs, quantity, unit_price):
        await _yield()
        for item in self._store.cart_items.values():
            if item.cart_id == cart_id and item.product_id == product_id and item.variant_specs == variant_specs:
                previous = item
                updated = item.model_copy(update={"quantity": item.quantity + quantity, "unit_price": unit_price})
                self._store.cart_items[item.id] = updated
                self._undo(lambda: self._store.cart_items.__setitem__(previous.id, previous))
                return updated.quantity

        item = CartItem(
            id=str(uuid.uuid4()),
            cart_id=cart_id,
            product_id=product_id,
            variant_specs=dict(variant_specs),
            quantity=quantity,
            unit_price=unit_price,
        )
        self._store.cart_items[item.id] = item
        self._undo(lambda: self._store.cart_items.pop(item.id, None))
        return quantity

    async def remove_item(self, item_id):
        await _yield()
        removed = self._store.cart_items.pop(item_id, None)
        if removed is not None:
            self._undo(lambda: self._store.cart_items.__setitem__(removed.id, removed))

    async def clear(self, cart_id):
        await _yield()
        removed = [i for i in self._store.cart_items.values() if i.cart_id == cart_id]
        for item in removed:
            del self._store.cart_items[item.id]
        self._undo(lambda: self._store.cart_items.update({i.id: i for i in removed}))

    def _find(self, shop_id: str, customer_id: str) -> Optional[Cart]:
        cart = next(
            (c for c in self._store.carts.values() if c.shop_id == shop_id and c.customer_id == customer_id),
            None,
        )
        if cart is None:
            return None
        items = [
            item.model_copy(update={"product_name": self._store.products[item.product_id].name})
            for item in self._store.cart_items.values()
            if item.cart_id == cart.id
        ]
        return cart.model_copy(update={"items": items})


class FakeOrderRepository(_Repository, OrderRepository):
    async def get_by_id(self, order_id):
        await _yield()
        order = self._store.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def create(self, order):
        await _yield()
        self._store.orders[order.id] = order.model_copy(deep=True)
        self._undo(lambda: self._store.orders.pop(order.id, None))

    async def compare_and_set_status(self, order_id, expected, new, notes=None):
        await _yield()
        order = self._store.orders.get(order_id)
        if order is None or order.status != expected:
            return False
        update = {"status": new, "updated_at": datetime.now(timezone.utc)}
        if notes is not None:
            update["notes"] = notes
        self._store.orders[order_id] = order.model_copy(update=update)
        self._undo(lambda: self._store.orders.__setitem__(order_id, order))
        return True

    async def list_for_customer(self, shop_id, customer_id, statuses=None, limit=5):
        await _yield()
        orders = [
            o.model_copy(deep=True) for o in self._store.orders.values()
            if o.shop_id == shop_id and o.customer_id == customer_id and (not statuses or o.status in statuses)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def find_recent_pending_with_product(self, shop_id, customer_id, product_id, since):
        orders = await self.list_for_customer(shop_id, customer_id, statuses=[OrderStatus.PENDING], limit=100)
        for order in orders:
            if order.created_at >= since and any(i.product_id == product_id for i in order.items):
                return order
        return None

    async def list_expired_pending(self, cutoff, limit=100):
        await _yield()
        paid_orders = {p.order_id for p in self._store.payments.values() if p.status == PaymentStatus.PAID}
        expired = sorted(
            (
                o for o in self._store.orders.values()
                if o.status == OrderStatus.PENDING and o.created_at < cutoff and o.id not in paid_orders
            ),
            key=lambda o: o.created_at,
        )
        return [o.id for o in expired[:limit]]


class FakePaymentRepository(_Repository, PaymentRepository):
    async def create(self, payment):
        await _yield()
        self._store.payments[payment.id] = payment.model_copy()
        self._undo(lambda: self._store.payments.pop(payment.id, None))

    async def get_by_invoice_id(self, invoice_id):
        await _yield()
        payment = next((p for p in self._store.payments.values() if p.invoice_id == invoice_id), None)
        return payment.model_copy() if payment else None

    async def list_for_order(self, order_id):
        await _yield()
        return sorted(
            (p.model_copy() for p in self._store.payments.values() if p.order_id == order_id),
            key=lambda p: p.created_at,
        )

    async def has_paid_for_order(self, order_id):
        await _yield()
        return any(p.order_id == order_id and p.status == PaymentStatus.PAID for p in self._store.payments.values())

    async def mark_paid(self, payment_id, transaction_id, paid_at):
        await _yield()
        payment = self._store.payments.get(payment_id)
        if payment is None or payment.status == PaymentStatus.PAID:
            return False
        if any(
            p.order_id == payment.order_id and p.status == PaymentStatus.PAID
            for p in self._store.payments.values()
        ):
            return False
        self._store.payments[payment_id] = payment.model_copy(update={
            "status": PaymentStatus.PAID, "transaction_id": transaction_id, "paid_at": paid_at
        })
        self._undo(lambda: self._store.payments.__setitem__(payment_id, payment))
        return True


class FakeCustomerRepository(_Repository, CustomerRepository):
    async def get_by_id(self, customer_id):
        await _yield()
        customer = self._store.customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def get_or_create_by_platform_id(self, shop_id, platform_id, name=None):
        await _yield()
        for customer in self._store.customers.values():
            if customer.shop_id == shop_id and customer.platform_id == platform_id:
                return customer.model_copy(deep=True)
        customer = Customer(id=str(uuid.uuid4()), shop_id=shop_id, platform_id=platform_id, name=name)
        self._store.customers[customer.id] = customer
        self._undo(lambda: self._store.customers.pop(customer.id, None))
        return customer.model_copy(deep=True)

    async def update_contact(self, customer_id, fields):
        self._replace(customer_id, dict(fields))
        await _yield()

    async def set_ai_paused_until(self, customer_id, until):
        self._replace(customer_id, {"ai_paused_until": until})
        await _yield()

    async def merge_preference(self, customer_id, key, value):
        await _yield()
        merged = {**self._store.customers[customer_id].preferences, key: value}
        self._replace(customer_id, {"preferences": merged})
        return merged

    async def record_purchase(self, customer_id, amount):
        await _yield()
        customer = self._store.customers.get(customer_id)
        if customer is not None:
            self._replace(customer_id, {
                "total_orders": customer.total_orders + 1,
                "total_spent": customer.total_spent + amount,
            })

    def _replace(self, customer_id: str, update: Dict[str, Any]) -> None:
        previous = self._store.customers.get(customer_id)
        if previous is None:
            return
        self._store.customers[customer_id] = previous.model_copy(update=update)
        self._undo(lambda: self._store.customers.__setitem__(customer_id, previous))


class FakeChatHistoryRepository(_Repository, ChatHistoryRepository):
    async def append(self, record):
        await _yield()
        self._store.chat.append(record)
        self._undo(lambda: self._store.chat.remove(record))

    async def recent(self, customer_id, limit=10):
        await _yield()
        records = [r for r in self._store.chat if r.customer_id == customer_id]
        return records[-limit:]


class _FakeUnitOfWorkImpl(AbstractUnitOfWork):
    def __init__(self, store: FakeStore):
        self._store = store
        self._journal: list = []
        self._shops = FakeShopRepository(store, self._journal)
        self._products = FakeProductRepository(store, self._journal)
        self._carts = FakeCartRepository(store, self._journal)
        self._orders = FakeOrderRepository(store, self._journal)
        self._payments = FakePaymentRepository(store, self._journal)
        self._customers = FakeCustomerRepository(store, self._journal)
        self._chat_history = FakeChatHistoryRepository(store, self._journal)

    @property
    def shops(self):
        return self._shops

    @property
    def products(self):
        return self._products

    @property
    def carts(self):
        return self._carts

    @property
    def orders(self):
        return self._orders

    @property
    def payments(self):
        return self._payments

    @property
    def customers(self):
        return self._customers

    @property
    def chat_history(self):
        return self._chat_history

    async def commit(self):
        self._journal.clear()
        self._store.commits += 1

    async def rollback(self):
        while self._journal:
            self._journal.pop()()


class FakeUnitOfWork:
    """Та же форма, что у infrastructure.unit_of_work.UnitOfWork"""

    def __init__(self, store: FakeStore):
        self.store = store

    @asynccontextmanager
    async def __call__(self):
        uow = _FakeUnitOfWorkImpl(self.store)
        try:
            yield uow
            await uow.rollback()
        except Exception:
            await uow.rollback()
            raise


class FakePaymentGateway(PaymentGateway):
    def __init__(self, fail_times: int = 0):
        self.paid: set = set()
        self.fail_times = fail_times
        self.created: List[str] = []
        self.checks: List[str] = []

    async def create_invoice(self, order_id, amount, description, callback_url):
        await _yield()
        if self.fail_times:
            self.fail_times -= 1
            raise PaymentServiceError("QPay ошибка: 503")
        self.created.append(order_id)
        return {
            "invoice_id": f"INV-{order_id}",
            "qr_text": f"qr-{order_id}",
            "short_url": f"https://qpay.test/{order_id[:8]}",
        }

    async def check_status(self, invoice_id):
        await _yield()
        self.checks.append(invoice_id)
        if self.fail_times:
            self.fail_times -= 1
            raise PaymentServiceError("QPay ошибка: 503")
        if invoice_id in self.paid:
            return {"count": 1, "paid_amount": 1, "rows": [{"payment_id": f"TX-{invoice_id}"}]}
        return {"count": 0, "paid_amount": 0, "rows": []}


class FakeMessaging(MessagingService):
    def __init__(self, fail_times: int = 0):
        self.sent: List[Dict[str, Any]] = []
        self.fail_times = fail_times

    async def send_text(self, recipient_id, text, access_token):
        await self._record(recipient_id, text, None, access_token)

    async def send_tagged_message(self, recipient_id, text, tag, access_token):
        await self._record(recipient_id, text, tag, access_token)

    async def _record(self, recipient_id, text, tag, access_token):
        await _yield()
        if self.fail_times:
            self.fail_times -= 1
            raise MessagingServiceError("Messenger ошибка: 500")
        self.sent.append({"recipient_id": recipient_id, "text": text, "tag": tag, "token": access_token})


class FakeShopNotifications(ShopNotificationsService):
    def __init__(self, fail_times: int = 0):
        self.sent: List[Dict[str, str]] = []
        self.fail_times = fail_times

    async def send(self, shop_id, title, body, tag):
        await _yield()
        if self.fail_times:
            self.fail_times -= 1
            raise NotificationServiceError("Notifications service ошибка: 500")
        self.sent.append({"shop_id": shop_id, "title": title, "body": body, "tag": tag})


class ScriptedModel(LanguageModel):
    """Отдает заранее заданные ответы, последний повторяется"""

    def __init__(self, replies: List[ModelReply], delay: float = 0.0):
        self.replies = list(replies)
        self.delay = delay
        self.calls: List[List[Dict[str, Any]]] = []

    async def complete(self, messages, tools):
        self.calls.append([dict(m) for m in messages])
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def make_product(product_id: str = "prod-1", name: str = "Blue T-Shirt", price: int = 25000,
                 stock: int = 10, reserved: int = 0, shop_id: str = "shop-1", **extra) -> Product:
    return Product(id=product_id, shop_id=shop_id, name=name, price=price, stock=stock,
                   reserved_stock=reserved, **extra)


async def place_pending_order(unit_of_work, product_id: str, quantity: int = 1,
                              customer_id: str = "cust-1", shop_id: str = "shop-1") -> Order:
    async with unit_of_work() as uow:
        product = await uow.products.get_by_id(product_id)
        order = await PlaceOrder()(uow, shop_id, customer_id, [OrderLine(product, quantity, product.price)])
        await uow.commit()
    return order
