import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from shopbot.application.notifications import OrderNotifier
from shopbot.application.order_state_machine import OrderStateMachine
from shopbot.application.payments import IssueInvoiceUseCase
from shopbot.application.place_order import OrderLine, PlaceOrder
from shopbot.application.process_payment import PaymentReconciler
from shopbot.application.product_matcher import find_product
from shopbot.application.tool_catalog import (
    CancelOrderArgs, CheckOrderStatusArgs, CheckPaymentStatusArgs, CreateOrderArgs
)
from shopbot.application.tools.base import ToolContext, ToolResult, format_amount
from shopbot.domain.exceptions import OrderNotFoundError, ProductNotFoundError
from shopbot.domain.models import Order, OrderStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)

DUPLICATE_ORDER_WINDOW = timedelta(seconds=30)

ACTIVE_STATUSES = [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED]

STATUS_LABELS = {
    OrderStatus.PENDING: "⏳ awaiting payment",
    OrderStatus.CONFIRMED: "✅ confirmed",
    OrderStatus.PROCESSING: "📦 being prepared",
    OrderStatus.SHIPPED: "🚚 shipped",
    OrderStatus.DELIVERED: "🎉 delivered",
    OrderStatus.CANCELLED: "❌ cancelled",
}


def order_created_message(order: Order, payment: Optional[Payment], expiry_minutes: int) -> str:
    lines = ", ".join(f"{item.product_name} x{item.quantity}" for item in order.items)
    message = f"Order #{order.short_id} created: {lines}. Total: {format_amount(order.total_amount)}."
    if payment is not None and payment.payment_url:
        message += f" Pay here: {payment.payment_url}."
    message += f" Please pay within {expiry_minutes} minutes, otherwise the order is cancelled automatically."
    return message


def order_payload(order: Order, payment: Optional[Payment]) -> dict:
    data = {
        "order_id": order.id,
        "short_id": order.short_id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "items": [
            {"product_name": i.product_name, "quantity": i.quantity, "unit_price": i.unit_price}
            for i in order.items
        ],
    }
    if payment is not None:
        data["invoice_id"] = payment.invoice_id
        data["payment_url"] = payment.payment_url
    return data


class OrderTools:
    """create_order, cancel_order, check_order_status, check_payment_status"""

    def __init__(
        self,
        unit_of_work,
        place_order: PlaceOrder,
        state_machine: OrderStateMachine,
        issue_invoice: IssueInvoiceUseCase,
        reconciler: PaymentReconciler,
        notifier: Optional[OrderNotifier] = None,
        expiry_minutes: int = 30,
    ):
        self._uow = unit_of_work
        self._place_order = place_order
        self._state_machine = state_machine
        self._issue_invoice = issue_invoice
        self._reconciler = reconciler
        self._notifier = notifier
        self._expiry_minutes = expiry_minutes

    def handlers(self):
        return {
            "create_order": self.create_order,
            "cancel_order": self.cancel_order,
            "check_order_status": self.check_order_status,
            "check_payment_status": self.check_payment_status,
        }

    async def create_order(self, args: CreateOrderArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            products = await uow.products.list_active(ctx.shop_id)
            product = find_product(products, args.product_name)
            if product is None:
                raise ProductNotFoundError(f'Product "{args.product_name}" not found')

            since = datetime.now(timezone.utc) - DUPLICATE_ORDER_WINDOW
            duplicate = await uow.orders.find_recent_pending_with_product(
                ctx.shop_id, ctx.customer_id, product.id, since
            )
            if duplicate is not None:
                logger.info(f"Повторный create_order для {product.id}, возвращаем заказ {duplicate.id}")
                return ToolResult.ok(
                    f"Order #{duplicate.short_id} for {product.name} was just created and is awaiting payment.",
                    data={**order_payload(duplicate, None), "duplicate": True},
                )

            line = OrderLine(
                product=product,
                quantity=args.quantity,
                unit_price=product.price,
                variant_specs=args.variant_specs(),
            )
            order = await self._place_order(uow, ctx.shop_id, ctx.customer_id, [line])
            customer = await uow.customers.get_by_id(ctx.customer_id)
            await uow.commit()

        if self._notifier is not None:
            self._notifier.order_created(order, customer)
        payment = await self._issue_invoice(order)
        return ToolResult.ok(
            order_created_message(order, payment, self._expiry_minutes),
            data=order_payload(order, payment),
        )

    async def cancel_order(self, args: CancelOrderArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            active = await uow.orders.list_for_customer(ctx.shop_id, ctx.customer_id, statuses=ACTIVE_STATUSES, limit=1)
            if not active:
                raise OrderNotFoundError("You have no active order to cancel")

            reason = args.reason or "Cancelled by customer"
            transition = await self._state_machine.transition(uow, active[0].id, OrderStatus.CANCELLED, reason)
            await uow.commit()

        self._state_machine.announce(transition)
        order = transition.order
        return ToolResult.ok(
            f"Order #{order.short_id} has been cancelled.",
            data={"order_id": order.id, "status": order.status.value},
        )

    async def check_order_status(self, args: CheckOrderStatusArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            orders = await self._customer_orders(uow, ctx, args.order_id, limit=3)

        if not orders:
            return ToolResult.ok("You have no orders yet.", data={"orders": []})

        lines = [
            f"#{o.short_id}: {STATUS_LABELS[o.status]}, {format_amount(o.total_amount)}"
            for o in orders
        ]
        return ToolResult.ok(
            "\n".join(lines),
            data={"orders": [order_payload(o, None) for o in orders]},
        )

    async def check_payment_status(self, args: CheckPaymentStatusArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            if args.order_id:
                orders = await self._customer_orders(uow, ctx, args.order_id, limit=1)
            else:
                orders = await uow.orders.list_for_customer(
                    ctx.shop_id, ctx.customer_id, statuses=[OrderStatus.PENDING], limit=3
                )
            invoices: List[str] = []
            for order in orders:
                for payment in await uow.payments.list_for_order(order.id):
                    if payment.status == PaymentStatus.PENDING and payment.invoice_id:
                        invoices.append(payment.invoice_id)

        if not orders:
            raise OrderNotFoundError("No orders awaiting payment were found")
        if not invoices:
            return ToolResult.ok(
                "No pending payments were found for your orders.",
                data={"paid": False},
            )

        paid_orders = []
        for invoice_id in invoices:
            result = await self._reconciler.reconcile(invoice_id)
            if result.outcome in ("paid", "already_paid"):
                paid_orders.append(result.order_id)

        if paid_orders:
            return ToolResult.ok(
                "Payment received, thank you! Your order is confirmed.",
                data={"paid": True, "order_ids": paid_orders},
            )
        return ToolResult.ok(
            "Payment has not been received yet. It can take a minute after paying; please try again shortly.",
            data={"paid": False},
        )

    async def _customer_orders(self, uow, ctx: ToolContext, order_id: Optional[str], limit: int) -> List[Order]:
        if not order_id:
            return await uow.orders.list_for_customer(ctx.shop_id, ctx.customer_id, limit=limit)

        # полный UUID или короткий номер из сообщений (#ABCD1234)
        needle = order_id.strip().lstrip("#").lower()
        recent = await uow.orders.list_for_customer(ctx.shop_id, ctx.customer_id, limit=20)
        matched = [o for o in recent if o.id.lower() == needle or o.id.lower().startswith(needle)]
        if not matched:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return matched[:limit]
