import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from shopbot.application.interfaces import UnitOfWork
from shopbot.application.notifications import OrderNotifier
from shopbot.application.stock_ledger import StockLedger
from shopbot.domain.exceptions import InvalidTransitionError, OrderNotFoundError
from shopbot.domain.models import Customer, Order, OrderStatus, Shop

logger = logging.getLogger(__name__)


@dataclass
class OrderTransition:
    order: Order
    previous: OrderStatus
    customer: Optional[Customer]
    shop: Optional[Shop]


class OrderStateMachine:
    """Переходы статусов заказа и их побочные эффекты.

    transition() выполняется внутри транзакции вызывающего кода: смена статуса
    (compare-and-set) и движение остатков коммитятся вместе. Уведомления
    отправляются через announce() только после коммита.
    """

    def __init__(self, notifier: Optional[OrderNotifier] = None):
        self._notifier = notifier

    async def transition(
        self, uow: UnitOfWork, order_id: str, target: OrderStatus, reason: Optional[str] = None
    ) -> OrderTransition:
        order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")

        if not order.can_transition_to(target):
            raise InvalidTransitionError(order.status, target)

        changed = await uow.orders.compare_and_set_status(order_id, order.status, target, notes=reason)
        if not changed:
            # Статус успели сменить параллельно (sweeper, клиент, владелец)
            current = await uow.orders.get_by_id(order_id)
            logger.info(f"Заказ {order_id}: статус изменен параллельно, переход в {target.value} отклонен")
            raise InvalidTransitionError(current.status if current else order.status, target)

        ledger = StockLedger(uow)
        if target == OrderStatus.DELIVERED:
            for item in order.items:
                await ledger.commit(item.product_id, item.quantity)
            await uow.customers.record_purchase(order.customer_id, order.total_amount)
        elif target == OrderStatus.CANCELLED:
            for item in order.items:
                await ledger.release(item.product_id, item.quantity)

        logger.info(f"Заказ {order_id}: {order.status.value} -> {target.value}")

        updated = order.model_copy(update={
            "status": target,
            "notes": reason if reason is not None else order.notes,
            "updated_at": datetime.now(timezone.utc),
        })
        customer = await uow.customers.get_by_id(order.customer_id)
        shop = await uow.shops.get_by_id(order.shop_id)
        return OrderTransition(order=updated, previous=order.status, customer=customer, shop=shop)

    def announce(self, transition: OrderTransition) -> None:
        if self._notifier is None:
            return
        self._notifier.order_status_changed(transition.order, transition.customer, transition.shop)


class ChangeOrderStatusUseCase:
    def __init__(self, unit_of_work, state_machine: OrderStateMachine):
        self._uow = unit_of_work
        self._state_machine = state_machine

    async def __call__(self, order_id: str, target: OrderStatus, reason: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            transition = await self._state_machine.transition(uow, order_id, target, reason)
            await uow.commit()

        self._state_machine.announce(transition)
        return transition.order
