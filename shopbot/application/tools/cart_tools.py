import logging
from typing import Optional

from shopbot.application.notifications import OrderNotifier
from shopbot.application.payments import IssueInvoiceUseCase
from shopbot.application.place_order import OrderLine, PlaceOrder
from shopbot.application.product_matcher import find_product
from shopbot.application.tool_catalog import AddToCartArgs, CheckoutArgs, RemoveFromCartArgs, ViewCartArgs
from shopbot.application.tools.base import ToolContext, ToolResult, format_amount
from shopbot.application.tools.order_tools import order_created_message, order_payload
from shopbot.domain.exceptions import InsufficientStockError, NotFoundError, ProductNotFoundError, ValidationError
from shopbot.domain.models import Cart

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 3


def cart_payload(cart: Optional[Cart]) -> dict:
    if cart is None:
        return {"items": [], "total_amount": 0}
    return {
        "cart_id": cart.id,
        "items": [
            {
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "variant_specs": item.variant_specs,
                "subtotal": item.subtotal,
            }
            for item in cart.items
        ],
        "total_amount": cart.total_amount,
    }


class CartTools:
    """Корзина живет без резерва, остатки резервирует только checkout"""

    def __init__(
        self,
        unit_of_work,
        place_order: PlaceOrder,
        issue_invoice: IssueInvoiceUseCase,
        notifier: Optional[OrderNotifier] = None,
        expiry_minutes: int = 30,
    ):
        self._uow = unit_of_work
        self._place_order = place_order
        self._issue_invoice = issue_invoice
        self._notifier = notifier
        self._expiry_minutes = expiry_minutes

    def handlers(self):
        return {
            "add_to_cart": self.add_to_cart,
            "remove_from_cart": self.remove_from_cart,
            "view_cart": self.view_cart,
            "checkout": self.checkout,
        }

    async def add_to_cart(self, args: AddToCartArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            products = await uow.products.list_active(ctx.shop_id)
            product = find_product(products, args.product_name)
            if product is None:
                raise ProductNotFoundError(f'Product "{args.product_name}" not found')
            if args.quantity > product.available:
                raise InsufficientStockError(product.available, args.quantity, product.name)

            cart = await uow.carts.get_or_create(ctx.shop_id, ctx.customer_id)
            in_cart = await uow.carts.add_item(
                cart.id, product.id, args.variant_specs(), args.quantity, product.price
            )
            if in_cart > product.available:
                # вместе с уже лежащим в корзине больше, чем есть
                raise InsufficientStockError(product.available, in_cart, product.name)
            cart = await uow.carts.get_active(ctx.shop_id, ctx.customer_id)
            await uow.commit()

        message = f"Added {product.name} x{args.quantity} to your cart. Cart total: {format_amount(cart.total_amount)}."
        remaining = product.available - in_cart
        if remaining <= LOW_STOCK_THRESHOLD:
            message += f" Only {remaining} left in stock."
        return ToolResult.ok(message, data=cart_payload(cart))

    async def remove_from_cart(self, args: RemoveFromCartArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            cart = await uow.carts.get_active(ctx.shop_id, ctx.customer_id)
            if cart is None or not cart.items:
                raise NotFoundError("Your cart is empty")

            needle = args.product_name.lower()
            item = next(
                (
                    i for i in cart.items
                    if needle in i.product_name.lower() or i.product_name.lower() in needle
                ),
                None,
            )
            if item is None:
                raise NotFoundError(f'"{args.product_name}" is not in your cart')

            await uow.carts.remove_item(item.id)
            cart = await uow.carts.get_active(ctx.shop_id, ctx.customer_id)
            await uow.commit()

        return ToolResult.ok(
            f"Removed {item.product_name} from your cart. Cart total: {format_amount(cart.total_amount if cart else 0)}.",
            data=cart_payload(cart),
        )

    async def view_cart(self, args: ViewCartArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            cart = await uow.carts.get_active(ctx.shop_id, ctx.customer_id)

        if cart is None or not cart.items:
            return ToolResult.ok("Your cart is empty.", data=cart_payload(None))

        lines = [
            f"{item.product_name} x{item.quantity} = {format_amount(item.subtotal)}"
            for item in cart.items
        ]
        lines.append(f"Total: {format_amount(cart.total_amount)}")
        return ToolResult.ok("\n".join(lines), data=cart_payload(cart))

    async def checkout(self, args: CheckoutArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            cart = await uow.carts.get_active(ctx.shop_id, ctx.customer_id)
            if cart is None or not cart.items:
                raise ValidationError("Your cart is empty")

            lines = []
            for item in cart.items:
                product = await uow.products.get_by_id(item.product_id)
                if product is None or not product.is_active:
                    raise ProductNotFoundError(f"{item.product_name} is no longer available")
                lines.append(OrderLine(
                    product=product,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    variant_specs=item.variant_specs,
                ))

            order = await self._place_order(uow, ctx.shop_id, ctx.customer_id, lines, notes=args.notes)
            await uow.carts.clear(cart.id)
            customer = await uow.customers.get_by_id(ctx.customer_id)
            await uow.commit()

        logger.info(f"Корзина {cart.id} оформлена в заказ {order.id}")
        if self._notifier is not None:
            self._notifier.order_created(order, customer)
        payment = await self._issue_invoice(order)
        return ToolResult.ok(
            order_created_message(order, payment, self._expiry_minutes),
            data=order_payload(order, payment),
        )
