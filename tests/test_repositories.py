import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shopbot.domain.models import ChatMessageRecord, Order, OrderItem, OrderStatus, Payment, PaymentStatus
from shopbot.infrastructure.db_schema import customers_tbl, metadata, products_tbl, shops_tbl
from shopbot.infrastructure.unit_of_work import UnitOfWork


async def seed(engine):
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(insert(shops_tbl).values(id="shop-1", name="Test Shop", is_ai_active=True))
        await conn.execute(insert(customers_tbl).values(
            id="cust-1", shop_id="shop-1", platform_id="psid-1", preferences={}, total_orders=0, total_spent=0
        ))
        await conn.execute(insert(products_tbl).values(
            id="prod-1", shop_id="shop-1", name="Blue T-Shirt", price=25000, stock=10, reserved_stock=0,
            is_active=True
        ))


def make_unit_of_work(engine):
    return UnitOfWork(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest.fixture
async def unit_of_work():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    await seed(engine)
    yield make_unit_of_work(engine)
    await engine.dispose()


@pytest.fixture
async def file_unit_of_work(tmp_path):
    # у каждой сессии свое соединение: транзакции идут параллельно
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    await seed(engine)
    yield make_unit_of_work(engine)
    await engine.dispose()


def new_order(created_at=None, quantity=2, status=OrderStatus.PENDING):
    order_id = str(uuid.uuid4())
    created_at = created_at or datetime.now(timezone.utc)
    return Order(
        id=order_id,
        shop_id="shop-1",
        customer_id="cust-1",
        status=status,
        total_amount=quantity * 25000,
        items=[OrderItem(id=str(uuid.uuid4()), order_id=order_id, product_id="prod-1",
                         product_name="Blue T-Shirt", quantity=quantity, unit_price=25000,
                         variant_specs={"size": "M"})],
        created_at=created_at,
        updated_at=created_at
    )


def new_payment(order_id, invoice_id, status=PaymentStatus.PENDING):
    return Payment(
        id=str(uuid.uuid4()),
        order_id=order_id,
        amount=50000,
        status=status,
        invoice_id=invoice_id,
        created_at=datetime.now(timezone.utc)
    )


async def test_try_reserve_is_conditional(unit_of_work):
    async with unit_of_work() as uow:
        assert await uow.products.try_reserve("prod-1", 7) is True
        assert await uow.products.try_reserve("prod-1", 4) is False
        assert await uow.products.try_reserve("prod-1", 3) is True
        await uow.commit()

    async with unit_of_work() as uow:
        product = await uow.products.get_by_id("prod-1")
    assert (product.stock, product.reserved_stock, product.available) == (10, 10, 0)


async def test_release_floors_at_zero_and_commit_sale(unit_of_work):
    async with unit_of_work() as uow:
        await uow.products.try_reserve("prod-1", 3)
        assert await uow.products.commit_sale("prod-1", 2) is True
        await uow.products.release("prod-1", 5)
        assert await uow.products.commit_sale("prod-1", 1) is False
        await uow.commit()

    async with unit_of_work() as uow:
        product = await uow.products.get_by_id("prod-1")
    assert (product.stock, product.reserved_stock) == (8, 0)


async def test_uncommitted_work_is_rolled_back(unit_of_work):
    async with unit_of_work() as uow:
        await uow.products.try_reserve("prod-1", 5)

    async with unit_of_work() as uow:
        product = await uow.products.get_by_id("prod-1")
    assert product.reserved_stock == 0


async def test_order_round_trip_and_compare_and_set(unit_of_work):
    order = new_order()
    async with unit_of_work() as uow:
        await uow.orders.create(order)
        await uow.commit()

    async with unit_of_work() as uow:
        assert await uow.orders.compare_and_set_status(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED, "late")
        assert not await uow.orders.compare_and_set_status(order.id, OrderStatus.PENDING, OrderStatus.CONFIRMED)
        await uow.commit()

    async with unit_of_work() as uow:
        stored = await uow.orders.get_by_id(order.id)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.notes == "late"
    assert stored.items[0].variant_specs == {"size": "M"}
    assert stored.created_at.tzinfo is not None


async def test_recent_pending_with_product(unit_of_work):
    order = new_order()
    async with unit_of_work() as uow:
        await uow.orders.create(order)
        await uow.commit()

    since = datetime.now(timezone.utc) - timedelta(seconds=30)
    async with unit_of_work() as uow:
        found = await uow.orders.find_recent_pending_with_product("shop-1", "cust-1", "prod-1", since)
        other = await uow.orders.find_recent_pending_with_product("shop-1", "cust-1", "prod-2", since)
    assert found.id == order.id
    assert other is None


async def test_list_expired_pending_skips_fresh_and_paid(unit_of_work):
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    expired, paid, fresh = new_order(old), new_order(old), new_order()
    async with unit_of_work() as uow:
        for order in (expired, paid, fresh):
            await uow.orders.create(order)
        await uow.payments.create(new_payment(paid.id, "INV-paid", PaymentStatus.PAID))
        await uow.commit()

    async with unit_of_work() as uow:
        ids = await uow.orders.list_expired_pending(datetime.now(timezone.utc) - timedelta(minutes=30))
    assert ids == [expired.id]


async def test_mark_paid_once_per_order(unit_of_work):
    order = new_order()
    first, second = new_payment(order.id, "INV-1"), new_payment(order.id, "INV-2")
    async with unit_of_work() as uow:
        await uow.orders.create(order)
        await uow.payments.create(first)
        await uow.payments.create(second)
        await uow.commit()

    now = datetime.now(timezone.utc)
    async with unit_of_work() as uow:
        assert await uow.payments.mark_paid(first.id, "TX-1", now) is True
        assert await uow.payments.mark_paid(first.id, "TX-1", now) is False
        # у заказа уже есть оплаченный платеж
        assert await uow.payments.mark_paid(second.id, "TX-2", now) is False
        await uow.commit()

    async with unit_of_work() as uow:
        stored = await uow.payments.get_by_invoice_id("INV-1")
        assert await uow.payments.has_paid_for_order(order.id) is True
    assert stored.status == PaymentStatus.PAID
    assert stored.transaction_id == "TX-1"


async def test_cart_items_merge_by_variant(unit_of_work):
    async with unit_of_work() as uow:
        cart = await uow.carts.get_or_create("shop-1", "cust-1")
        again = await uow.carts.get_or_create("shop-1", "cust-1")
        assert again.id == cart.id

        assert await uow.carts.add_item(cart.id, "prod-1", {"size": "M"}, 1, 25000) == 1
        assert await uow.carts.add_item(cart.id, "prod-1", {"size": "M"}, 2, 25000) == 3
        assert await uow.carts.add_item(cart.id, "prod-1", {"size": "L"}, 1, 25000) == 1
        await uow.commit()

    async with unit_of_work() as uow:
        cart = await uow.carts.get_active("shop-1", "cust-1")
        assert sorted(i.quantity for i in cart.items) == [1, 3]
        assert cart.items[0].product_name == "Blue T-Shirt"
        assert cart.total_amount == 4 * 25000

        await uow.carts.clear(cart.id)
        await uow.commit()

    async with unit_of_work() as uow:
        assert (await uow.carts.get_active("shop-1", "cust-1")).items == []


async def test_customer_get_or_create_by_platform_id(unit_of_work):
    async with unit_of_work() as uow:
        existing = await uow.customers.get_or_create_by_platform_id("shop-1", "psid-1", "Someone")
        created = await uow.customers.get_or_create_by_platform_id("shop-1", "psid-2", "Saraa")
        same = await uow.customers.get_or_create_by_platform_id("shop-1", "psid-2")
        await uow.commit()

    assert existing.id == "cust-1"
    assert existing.name is None
    assert created.id == same.id
    assert created.name == "Saraa"


async def test_customer_updates(unit_of_work):
    until = datetime.now(timezone.utc) + timedelta(minutes=30)
    async with unit_of_work() as uow:
        await uow.customers.update_contact("cust-1", {"phone": "99112233", "platform_id": "hijack"})
        await uow.customers.set_ai_paused_until("cust-1", until)
        await uow.customers.merge_preference("cust-1", "size", "M")
        merged = await uow.customers.merge_preference("cust-1", "color", "black")
        await uow.customers.record_purchase("cust-1", 50000)
        await uow.commit()

    async with unit_of_work() as uow:
        customer = await uow.customers.get_by_id("cust-1")
    assert merged == {"size": "M", "color": "black"}
    assert customer.phone == "99112233"
    assert customer.platform_id == "psid-1"
    assert customer.preferences == {"size": "M", "color": "black"}
    assert customer.is_ai_paused(datetime.now(timezone.utc))
    assert (customer.total_orders, customer.total_spent) == (1, 50000)


async def test_chat_history_returns_latest_in_order(unit_of_work):
    now = datetime.now(timezone.utc)
    async with unit_of_work() as uow:
        for i in range(5):
            await uow.chat_history.append(ChatMessageRecord(
                customer_id="cust-1", role="user", content=f"m{i}", created_at=now
            ))
        await uow.commit()

    async with unit_of_work() as uow:
        recent = await uow.chat_history.recent("cust-1", limit=3)
    assert [r.content for r in recent] == ["m2", "m3", "m4"]


async def test_variant_key_ignores_attribute_order(unit_of_work):
    async with unit_of_work() as uow:
        cart = await uow.carts.get_or_create("shop-1", "cust-1")
        await uow.carts.add_item(cart.id, "prod-1", {"size": "M", "color": "red"}, 1, 25000)
        assert await uow.carts.add_item(cart.id, "prod-1", {"color": "red", "size": "M"}, 1, 25000) == 2
        cart = await uow.carts.get_active("shop-1", "cust-1")
    assert len(cart.items) == 1


async def test_second_paid_payment_violates_unique_index(unit_of_work):
    order = new_order()
    async with unit_of_work() as uow:
        await uow.orders.create(order)
        await uow.payments.create(new_payment(order.id, "INV-1", PaymentStatus.PAID))
        await uow.commit()

    with pytest.raises(IntegrityError):
        async with unit_of_work() as uow:
            await uow.payments.create(new_payment(order.id, "INV-2", PaymentStatus.PAID))
            await uow.commit()


async def test_concurrent_preferences_keep_every_key(file_unit_of_work):
    async def remember(key, value):
        async with file_unit_of_work() as uow:
            await uow.customers.merge_preference("cust-1", key, value)
            await uow.commit()

    await asyncio.gather(remember("size", "M"), remember("color", "black"), remember("style", "casual"))

    async with file_unit_of_work() as uow:
        customer = await uow.customers.get_by_id("cust-1")
    assert customer.preferences == {"size": "M", "color": "black", "style": "casual"}


async def test_concurrent_add_item_keeps_one_line(file_unit_of_work):
    async with file_unit_of_work() as uow:
        cart = await uow.carts.get_or_create("shop-1", "cust-1")
        await uow.commit()

    async def add():
        async with file_unit_of_work() as uow:
            await uow.carts.add_item(cart.id, "prod-1", {}, 1, 25000)
            await uow.commit()

    await asyncio.gather(add(), add())

    async with file_unit_of_work() as uow:
        cart = await uow.carts.get_active("shop-1", "cust-1")
    assert [(i.product_id, i.quantity) for i in cart.items] == [("prod-1", 2)]


async def test_concurrent_payments_of_one_order_mark_once(file_unit_of_work):
    order = new_order()
    payments = [new_payment(order.id, "INV-1"), new_payment(order.id, "INV-2")]
    async with file_unit_of_work() as uow:
        await uow.orders.create(order)
        for payment in payments:
            await uow.payments.create(payment)
        await uow.commit()

    async def pay(payment):
        async with file_unit_of_work() as uow:
            marked = await uow.payments.mark_paid(payment.id, f"TX-{payment.invoice_id}", datetime.now(timezone.utc))
            if marked:
                await uow.commit()
        return marked

    results = await asyncio.gather(*(pay(p) for p in payments))

    assert sorted(results) == [False, True]
    async with file_unit_of_work() as uow:
        stored = await uow.payments.list_for_order(order.id)
    assert [p.status for p in stored].count(PaymentStatus.PAID) == 1
