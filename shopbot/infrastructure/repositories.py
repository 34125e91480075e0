import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import JSON, String, and_, case, cast, desc, func, insert, literal_column, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shopbot.application.interfaces import (
    CartRepository, ChatHistoryRepository, CustomerRepository, OrderRepository, PaymentRepository,
    ProductRepository, ShopRepository
)
from shopbot.domain.models import (
    Cart, CartItem, ChatMessageRecord, Customer, Order, OrderItem, OrderStatus, Payment, PaymentStatus,
    Product, Shop
)
from shopbot.infrastructure.db_schema import (
    cart_items_tbl, carts_tbl, chat_messages_tbl, customers_tbl, order_items_tbl, orders_tbl, payments_tbl,
    products_tbl, shops_tbl
)

logger = logging.getLogger(__name__)

CONTACT_FIELDS = {"name", "phone", "address"}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite отдает naive datetime, храним всегда UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _dialect(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def _upsert(session: AsyncSession, table):
    """INSERT с поддержкой ON CONFLICT для postgres и sqlite"""
    dialect = _dialect(session)
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Unsupported dialect: {dialect}")


def _insert_ignore(session: AsyncSession, table):
    return _upsert(session, table).on_conflict_do_nothing()


def variant_key(variant_specs: Dict[str, str]) -> str:
    """Канонический ключ варианта для уникальности строки корзины"""
    return json.dumps(variant_specs or {}, sort_keys=True, ensure_ascii=False)


class SQLAlchemyShopRepository(ShopRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, shop_id: str) -> Optional[Shop]:
        result = await self._session.execute(select(shops_tbl).where(shops_tbl.c.id == shop_id))
        row = result.fetchone()
        if not row:
            return None
        return Shop(
            id=row.id,
            name=row.name,
            page_access_token=row.page_access_token,
            is_ai_active=row.is_ai_active
        )


class SQLAlchemyProductRepository(ProductRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        result = await self._session.execute(select(products_tbl).where(products_tbl.c.id == product_id))
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def list_active(self, shop_id: str) -> List[Product]:
        result = await self._session.execute(
            select(products_tbl)
            .where(products_tbl.c.shop_id == shop_id, products_tbl.c.is_active.is_(True))
            .order_by(products_tbl.c.name)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def search_by_name(self, shop_id: str, name: str) -> List[Product]:
        result = await self._session.execute(
            select(products_tbl)
            .where(
                products_tbl.c.shop_id == shop_id,
                products_tbl.c.is_active.is_(True),
                products_tbl.c.name.ilike(f"%{name}%")
            )
            .order_by(products_tbl.c.name)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        # Проверка и изменение одним UPDATE: без гонки read-then-write
        stmt = (
            update(products_tbl)
            .where(
                products_tbl.c.id == product_id,
                products_tbl.c.reserved_stock + quantity <= products_tbl.c.stock
            )
            .values(reserved_stock=products_tbl.c.reserved_stock + quantity)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release(self, product_id: str, quantity: int) -> None:
        stmt = (
            update(products_tbl)
            .where(products_tbl.c.id == product_id)
            .values(
                reserved_stock=case(
                    (products_tbl.c.reserved_stock >= quantity, products_tbl.c.reserved_stock - quantity),
                    else_=0
                )
            )
        )
        await self._session.execute(stmt)

    async def commit_sale(self, product_id: str, quantity: int) -> bool:
        stmt = (
            update(products_tbl)
            .where(
                products_tbl.c.id == product_id,
                products_tbl.c.reserved_stock >= quantity,
                products_tbl.c.stock >= quantity
            )
            .values(
                stock=products_tbl.c.stock - quantity,
                reserved_stock=products_tbl.c.reserved_stock - quantity
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    def _to_domain(self, row) -> Product:
        return Product(
            id=row.id,
            shop_id=row.shop_id,
            name=row.name,
            price=row.price,
            stock=row.stock,
            reserved_stock=row.reserved_stock,
            description=row.description,
            image_url=row.image_url,
            is_active=row.is_active
        )


class SQLAlchemyCartRepository(CartRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_active(self, shop_id: str, customer_id: str) -> Optional[Cart]:
        result = await self._session.execute(
            select(carts_tbl).where(carts_tbl.c.shop_id == shop_id, carts_tbl.c.customer_id == customer_id)
        )
        row = result.fetchone()
        if not row:
            return None

        items = await self._session.execute(
            select(cart_items_tbl, products_tbl.c.name.label("product_name"))
            .join(products_tbl, products_tbl.c.id == cart_items_tbl.c.product_id)
            .where(cart_items_tbl.c.cart_id == row.id)
            .order_by(cart_items_tbl.c.created_at, cart_items_tbl.c.id)
        )
        return Cart(
            id=row.id,
            shop_id=row.shop_id,
            customer_id=row.customer_id,
            items=[
                CartItem(
                    id=item.id,
                    cart_id=item.cart_id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    variant_specs=item.variant_specs or {},
                    quantity=item.quantity,
                    unit_price=item.unit_price
                )
                for item in items.fetchall()
            ]
        )

    async def get_or_create(self, shop_id: str, customer_id: str) -> Cart:
        # Параллельное создание упирается в uq_carts_shop_customer и игнорируется
        await self._session.execute(
            _insert_ignore(self._session, carts_tbl).values(
                id=str(uuid.uuid4()),
                shop_id=shop_id,
                customer_id=customer_id,
                created_at=datetime.now(timezone.utc)
            )
        )
        return await self.get_active(shop_id, customer_id)

    async def add_item(
        self, cart_id: str, product_id: str, variant_specs: Dict[str, str], quantity: int, unit_price: int
    ) -> int:
        key = variant_key(variant_specs)
        # Одна строка на (корзина, товар, вариант): параллельные добавления суммируются
        stmt = _upsert(self._session, cart_items_tbl).values(
            id=str(uuid.uuid4()),
            cart_id=cart_id,
            product_id=product_id,
            variant_specs=variant_specs,
            variant_key=key,
            quantity=quantity,
            unit_price=unit_price,
            created_at=datetime.now(timezone.utc)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["cart_id", "product_id", "variant_key"],
            set_={
                "quantity": cart_items_tbl.c.quantity + stmt.excluded.quantity,
                "unit_price": stmt.excluded.unit_price
            }
        )
        await self._session.execute(stmt)

        result = await self._session.execute(
            select(cart_items_tbl.c.quantity).where(
                cart_items_tbl.c.cart_id == cart_id,
                cart_items_tbl.c.product_id == product_id,
                cart_items_tbl.c.variant_key == key
            )
        )
        return result.scalar_one()

    async def remove_item(self, item_id: str) -> None:
        await self._session.execute(cart_items_tbl.delete().where(cart_items_tbl.c.id == item_id))

    async def clear(self, cart_id: str) -> None:
        await self._session.execute(cart_items_tbl.delete().where(cart_items_tbl.c.cart_id == cart_id))


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        if not row:
            return None
        items = await self._load_items([row.id])
        return self._to_domain(row, items.get(row.id, []))

    async def create(self, order: Order) -> None:
        await self._session.execute(
            insert(orders_tbl).values(
                id=order.id,
                shop_id=order.shop_id,
                customer_id=order.customer_id,
                status=order.status.value,
                total_amount=order.total_amount,
                notes=order.notes,
                created_at=order.created_at,
                updated_at=order.updated_at
            )
        )
        if order.items:
            await self._session.execute(
                insert(order_items_tbl),
                [
                    {
                        "id": item.id,
                        "order_id": order.id,
                        "product_id": item.product_id,
                        "product_name": item.product_name,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                        "variant_specs": item.variant_specs
                    }
                    for item in order.items
                ]
            )

    async def compare_and_set_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus, notes: Optional[str] = None
    ) -> bool:
        values = {"status": new.value, "updated_at": datetime.now(timezone.utc)}
        if notes is not None:
            values["notes"] = notes
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id, orders_tbl.c.status == expected.value)
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def list_for_customer(
        self, shop_id: str, customer_id: str, statuses: Optional[List[OrderStatus]] = None, limit: int = 5
    ) -> List[Order]:
        stmt = select(orders_tbl).where(orders_tbl.c.shop_id == shop_id, orders_tbl.c.customer_id == customer_id)
        if statuses:
            stmt = stmt.where(orders_tbl.c.status.in_([s.value for s in statuses]))
        result = await self._session.execute(stmt.order_by(desc(orders_tbl.c.created_at)).limit(limit))
        rows = result.fetchall()
        items = await self._load_items([row.id for row in rows])
        return [self._to_domain(row, items.get(row.id, [])) for row in rows]

    async def find_recent_pending_with_product(
        self, shop_id: str, customer_id: str, product_id: str, since: datetime
    ) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .join(order_items_tbl, order_items_tbl.c.order_id == orders_tbl.c.id)
            .where(
                orders_tbl.c.shop_id == shop_id,
                orders_tbl.c.customer_id == customer_id,
                orders_tbl.c.status == OrderStatus.PENDING.value,
                orders_tbl.c.created_at >= since,
                order_items_tbl.c.product_id == product_id
            )
            .order_by(desc(orders_tbl.c.created_at))
            .limit(1)
        )
        row = result.fetchone()
        if not row:
            return None
        items = await self._load_items([row.id])
        return self._to_domain(row, items.get(row.id, []))

    async def list_expired_pending(self, cutoff: datetime, limit: int = 100) -> List[str]:
        paid = (
            select(payments_tbl.c.id)
            .where(
                payments_tbl.c.order_id == orders_tbl.c.id,
                payments_tbl.c.status == PaymentStatus.PAID.value
            )
            .correlate(orders_tbl)
            .exists()
        )
        result = await self._session.execute(
            select(orders_tbl.c.id)
            .where(
                orders_tbl.c.status == OrderStatus.PENDING.value,
                orders_tbl.c.created_at < cutoff,
                ~paid
            )
            .order_by(orders_tbl.c.created_at)
            .limit(limit)
        )
        return [row.id for row in result.fetchall()]

    async def _load_items(self, order_ids: List[str]) -> Dict[str, List[OrderItem]]:
        if not order_ids:
            return {}
        result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id.in_(order_ids))
            .order_by(order_items_tbl.c.id)
        )
        grouped: Dict[str, List[OrderItem]] = {}
        for row in result.fetchall():
            grouped.setdefault(row.order_id, []).append(OrderItem(
                id=row.id,
                order_id=row.order_id,
                product_id=row.product_id,
                product_name=row.product_name,
                quantity=row.quantity,
                unit_price=row.unit_price,
                variant_specs=row.variant_specs or {}
            ))
        return grouped

    def _to_domain(self, row, items: List[OrderItem]) -> Order:
        """Трансформация DB → Domain"""
        return Order(
            id=row.id,
            shop_id=row.shop_id,
            customer_id=row.customer_id,
            status=OrderStatus(row.status),
            total_amount=row.total_amount,
            notes=row.notes,
            items=items,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyPaymentRepository(PaymentRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, payment: Payment) -> None:
        await self._session.execute(
            insert(payments_tbl).values(
                id=payment.id,
                order_id=payment.order_id,
                method=payment.method,
                amount=payment.amount,
                status=payment.status.value,
                invoice_id=payment.invoice_id,
                payment_url=payment.payment_url,
                transaction_id=payment.transaction_id,
                expires_at=payment.expires_at,
                paid_at=payment.paid_at,
                created_at=payment.created_at
            )
        )

    async def get_by_invoice_id(self, invoice_id: str) -> Optional[Payment]:
        result = await self._session.execute(select(payments_tbl).where(payments_tbl.c.invoice_id == invoice_id))
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def list_for_order(self, order_id: str) -> List[Payment]:
        result = await self._session.execute(
            select(payments_tbl)
            .where(payments_tbl.c.order_id == order_id)
            .order_by(payments_tbl.c.created_at)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def has_paid_for_order(self, order_id: str) -> bool:
        result = await self._session.execute(
            select(payments_tbl.c.id).where(
                payments_tbl.c.order_id == order_id,
                payments_tbl.c.status == PaymentStatus.PAID.value
            )
        )
        return result.first() is not None

    async def mark_paid(self, payment_id: str, transaction_id: Optional[str], paid_at: datetime) -> bool:
        other = payments_tbl.alias("other_payments")
        already_paid = (
            select(other.c.id)
            .where(
                other.c.order_id == payments_tbl.c.order_id,
                other.c.status == PaymentStatus.PAID.value
            )
            .correlate(payments_tbl)
            .exists()
        )
        stmt = (
            update(payments_tbl)
            .where(
                and_(
                    payments_tbl.c.id == payment_id,
                    payments_tbl.c.status != PaymentStatus.PAID.value,
                    ~already_paid
                )
            )
            .values(status=PaymentStatus.PAID.value, transaction_id=transaction_id, paid_at=paid_at)
        )
        try:
            result = await self._session.execute(stmt)
        except IntegrityError:
            # uq_payments_order_paid: параллельно оплачен другой счет заказа.
            # Транзакция после ошибки непригодна, вызывающий только откатывает ее
            logger.warning(f"Платеж {payment_id}: заказ уже оплачен другим счетом")
            return False
        return result.rowcount == 1

    def _to_domain(self, row) -> Payment:
        return Payment(
            id=row.id,
            order_id=row.order_id,
            method=row.method,
            amount=row.amount,
            status=PaymentStatus(row.status),
            invoice_id=row.invoice_id,
            payment_url=row.payment_url,
            transaction_id=row.transaction_id,
            expires_at=_aware(row.expires_at),
            paid_at=_aware(row.paid_at),
            created_at=_aware(row.created_at)
        )


class SQLAlchemyCustomerRepository(CustomerRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, customer_id: str) -> Optional[Customer]:
        result = await self._session.execute(select(customers_tbl).where(customers_tbl.c.id == customer_id))
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_or_create_by_platform_id(
        self, shop_id: str, platform_id: str, name: Optional[str] = None
    ) -> Customer:
        await self._session.execute(
            _insert_ignore(self._session, customers_tbl).values(
                id=str(uuid.uuid4()),
                shop_id=shop_id,
                platform_id=platform_id,
                name=name,
                preferences={},
                total_orders=0,
                total_spent=0
            )
        )
        result = await self._session.execute(
            select(customers_tbl).where(
                customers_tbl.c.shop_id == shop_id,
                customers_tbl.c.platform_id == platform_id
            )
        )
        return self._to_domain(result.fetchone())

    async def update_contact(self, customer_id: str, fields: Dict[str, str]) -> None:
        values = {key: value for key, value in fields.items() if key in CONTACT_FIELDS}
        if not values:
            return
        await self._session.execute(
            update(customers_tbl).where(customers_tbl.c.id == customer_id).values(**values)
        )

    async def set_ai_paused_until(self, customer_id: str, until: Optional[datetime]) -> None:
        # last-write-wins, пауза влияет только на автоответы
        await self._session.execute(
            update(customers_tbl).where(customers_tbl.c.id == customer_id).values(ai_paused_until=until)
        )

    async def merge_preference(self, customer_id: str, key: str, value: str) -> Dict[str, str]:
        # Слияние внутри UPDATE: параллельные вызовы не затирают ключи друг друга
        current = customers_tbl.c.preferences
        if _dialect(self._session) == "postgresql":
            merged_expr = cast(
                func.coalesce(cast(current, postgresql.JSONB), literal_column("'{}'::jsonb"))
                .op("||")(func.jsonb_build_object(cast(key, String), cast(value, String))),
                JSON
            )
        else:
            merged_expr = func.json_patch(
                func.coalesce(current, literal_column("'{}'")),
                func.json_object(key, value)
            )

        await self._session.execute(
            update(customers_tbl).where(customers_tbl.c.id == customer_id).values(preferences=merged_expr)
        )
        result = await self._session.execute(
            select(customers_tbl.c.preferences).where(customers_tbl.c.id == customer_id)
        )
        return result.scalar_one_or_none() or {}

    async def record_purchase(self, customer_id: str, amount: int) -> None:
        await self._session.execute(
            update(customers_tbl)
            .where(customers_tbl.c.id == customer_id)
            .values(
                total_orders=customers_tbl.c.total_orders + 1,
                total_spent=customers_tbl.c.total_spent + amount
            )
        )

    def _to_domain(self, row) -> Customer:
        return Customer(
            id=row.id,
            shop_id=row.shop_id,
            platform_id=row.platform_id,
            name=row.name,
            phone=row.phone,
            address=row.address,
            ai_paused_until=_aware(row.ai_paused_until),
            preferences=row.preferences or {},
            total_orders=row.total_orders,
            total_spent=row.total_spent
        )


class SQLAlchemyChatHistoryRepository(ChatHistoryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, record: ChatMessageRecord) -> None:
        await self._session.execute(
            insert(chat_messages_tbl).values(
                customer_id=record.customer_id,
                role=record.role,
                content=record.content,
                created_at=record.created_at
            )
        )

    async def recent(self, customer_id: str, limit: int = 10) -> List[ChatMessageRecord]:
        result = await self._session.execute(
            select(chat_messages_tbl)
            .where(chat_messages_tbl.c.customer_id == customer_id)
            .order_by(desc(chat_messages_tbl.c.id))
            .limit(limit)
        )
        rows = list(reversed(result.fetchall()))
        return [
            ChatMessageRecord(
                customer_id=row.customer_id,
                role=row.role,
                content=row.content,
                created_at=_aware(row.created_at)
            )
            for row in rows
        ]
