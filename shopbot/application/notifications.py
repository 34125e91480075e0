import logging
from functools import partial
from typing import Optional

from shopbot.application.background import BackgroundTasks
from shopbot.application.interfaces import MessagingService, ShopNotificationsService
from shopbot.application.retry import RetryPolicy, retry_with_backoff
from shopbot.domain.models import Customer, Order, OrderStatus, Shop

logger = logging.getLogger(__name__)

POST_PURCHASE_TAG = "POST_PURCHASE_UPDATE"

STATUS_MESSAGES = {
    OrderStatus.CONFIRMED: "✅ Your order #{order_id} is confirmed! We will start preparing it soon.",
    OrderStatus.PROCESSING: "📦 Your order #{order_id} is being prepared.",
    OrderStatus.SHIPPED: "🚚 Your order #{order_id} is on its way!",
    OrderStatus.DELIVERED: "🎉 Your order #{order_id} has been delivered. Thank you!",
    OrderStatus.CANCELLED: "❌ Your order #{order_id} has been cancelled. Contact us if you have any questions.",
}

SHOP_STATUS_TITLES = {
    OrderStatus.CONFIRMED: "💰 Order paid",
    OrderStatus.PROCESSING: "📦 Order in progress",
    OrderStatus.SHIPPED: "🚚 Order shipped",
    OrderStatus.DELIVERED: "🎉 Order delivered",
    OrderStatus.CANCELLED: "❌ Order cancelled",
}

NOTIFICATION_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)


class OrderNotifier:
    """Уведомления клиенту (Messenger) и владельцу магазина.

    Все отправки best-effort: ставятся в BackgroundTasks после коммита,
    повторяются через retry_with_backoff, ошибка только логируется.
    """

    def __init__(
        self,
        messaging: MessagingService,
        shop_notifications: ShopNotificationsService,
        background: BackgroundTasks,
        policy: RetryPolicy = NOTIFICATION_POLICY,
    ):
        self._messaging = messaging
        self._shop_notifications = shop_notifications
        self._background = background
        self._policy = policy

    def order_status_changed(self, order: Order, customer: Optional[Customer], shop: Optional[Shop]) -> None:
        template = STATUS_MESSAGES.get(order.status)
        if template is not None:
            self._notify_customer(customer, shop, template.format(order_id=order.short_id))

        title = SHOP_STATUS_TITLES.get(order.status)
        if title is not None:
            body = f"#{order.short_id}: {order.total_amount:,}₮"
            if order.status == OrderStatus.CANCELLED and order.notes:
                body += f" ({order.notes})"
            self._notify_shop(order.shop_id, title, body, tag=f"order-{order.id}-{order.status.value}")

    def order_created(self, order: Order, customer: Optional[Customer]) -> None:
        items = ", ".join(f"{item.product_name} x{item.quantity}" for item in order.items)
        body = f"{items}\n💰 {order.total_amount:,}₮"
        if customer is not None and customer.name:
            body = f"{customer.name}: {body}"
        self._notify_shop(order.shop_id, "🛒 New order", body, tag=f"order-{order.id}")

    def payment_confirmed(self, order: Order, customer: Optional[Customer], shop: Optional[Shop]) -> None:
        text = f"💰 Payment for order #{order.short_id} received ({order.total_amount:,}₮). Thank you!"
        self._notify_customer(customer, shop, text)

    def contact_info_saved(self, shop_id: str, customer: Customer) -> None:
        parts = [value for value in (customer.name, customer.phone, customer.address) if value]
        self._notify_shop(shop_id, "📇 Contact info received", ", ".join(parts), tag=f"contact-{customer.id}")

    def support_requested(self, shop_id: str, customer: Customer, reason: str) -> None:
        who = customer.name or "Customer"
        self._notify_shop(shop_id, "🙋 Support requested", f"{who}: {reason}", tag=f"support-{customer.id}")

    def _notify_customer(self, customer: Optional[Customer], shop: Optional[Shop], text: str) -> None:
        if customer is None or not customer.platform_id:
            logger.info("У клиента нет platform_id, уведомление пропущено")
            return
        if shop is None or not shop.page_access_token:
            logger.warning(f"У магазина {customer.shop_id} нет page access token, уведомление пропущено")
            return

        recipient, token = customer.platform_id, shop.page_access_token
        # вне 24-часового окна Messenger принимает только сообщения с тегом
        send = partial(self._messaging.send_tagged_message, recipient, text, POST_PURCHASE_TAG, token)
        self._background.spawn(self._deliver(send, f"messenger:{customer.id}"), name="customer-notification")

    def _notify_shop(self, shop_id: str, title: str, body: str, tag: str) -> None:
        send = partial(self._shop_notifications.send, shop_id, title, body, tag)
        self._background.spawn(self._deliver(send, f"shop-notification:{shop_id}"), name="shop-notification")

    async def _deliver(self, send, operation: str) -> bool:
        try:
            await retry_with_backoff(send, self._policy, operation=operation)
            return True
        except Exception as e:
            logger.warning(f"Уведомление {operation} не доставлено: {e}")
            return False
