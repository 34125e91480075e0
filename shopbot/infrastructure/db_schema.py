from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON, MetaData, String, Table, Text,
    UniqueConstraint
)
from sqlalchemy.sql import func

metadata = MetaData()


shops_tbl = Table(
    "shops",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("page_access_token", String, nullable=True),
    Column("is_ai_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


customers_tbl = Table(
    "customers",
    metadata,
    Column("id", String, primary_key=True),
    Column("shop_id", String, ForeignKey("shops.id"), nullable=False, index=True),
    Column("platform_id", String, nullable=True),
    Column("name", String, nullable=True),
    Column("phone", String, nullable=True),
    Column("address", Text, nullable=True),
    Column("ai_paused_until", DateTime(timezone=True), nullable=True),
    Column("preferences", JSON, nullable=False, default=dict),
    Column("total_orders", Integer, nullable=False, default=0),
    Column("total_spent", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("shop_id", "platform_id", name="uq_customers_shop_platform")
)


products_tbl = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("shop_id", String, ForeignKey("shops.id"), nullable=False, index=True),
    Column("name", String, nullable=False),
    Column("description", Text, nullable=True),
    Column("price", Integer, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("reserved_stock", Integer, nullable=False, default=0),
    Column("image_url", String, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    # инвариант резерва на уровне БД
    CheckConstraint("reserved_stock >= 0 AND reserved_stock <= stock", name="ck_products_reserved_stock")
)


carts_tbl = Table(
    "carts",
    metadata,
    Column("id", String, primary_key=True),
    Column("shop_id", String, ForeignKey("shops.id"), nullable=False),
    Column("customer_id", String, ForeignKey("customers.id"), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("shop_id", "customer_id", name="uq_carts_shop_customer")
)


cart_items_tbl = Table(
    "cart_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("cart_id", String, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", String, ForeignKey("products.id"), nullable=False),
    Column("variant_specs", JSON, nullable=False, default=dict),
    # variant_specs в каноническом виде (json с отсортированными ключами)
    Column("variant_key", String, nullable=False, default="{}"),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    CheckConstraint("quantity > 0", name="ck_cart_items_quantity"),
    UniqueConstraint("cart_id", "product_id", "variant_key", name="uq_cart_items_variant")
)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("shop_id", String, ForeignKey("shops.id"), nullable=False, index=True),
    Column("customer_id", String, ForeignKey("customers.id"), nullable=False, index=True),
    Column("status", String, nullable=False, default="pending", index=True),
    Column("total_amount", Integer, nullable=False),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False)
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", String, ForeignKey("products.id"), nullable=False),
    Column("product_name", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("variant_specs", JSON, nullable=False, default=dict),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity")
)


payments_tbl = Table(
    "payments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("method", String, nullable=False, default="qpay"),
    Column("amount", Integer, nullable=False),
    Column("status", String, nullable=False, default="pending"),
    Column("invoice_id", String, unique=True, nullable=True),
    Column("payment_url", String, nullable=True),
    Column("transaction_id", String, nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("paid_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False)
)

# не больше одного оплаченного платежа на заказ
Index(
    "uq_payments_order_paid",
    payments_tbl.c.order_id,
    unique=True,
    postgresql_where=payments_tbl.c.status == "paid",
    sqlite_where=payments_tbl.c.status == "paid"
)


chat_messages_tbl = Table(
    "chat_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", String, ForeignKey("customers.id"), nullable=False, index=True),
    Column("role", String, nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False)
)
