from dataclasses import dataclass
from typing import List, Optional

from shopbot.domain.exceptions import OrderNotFoundError
from shopbot.domain.models import Order, Payment, PaymentStatus


@dataclass
class OrderDetails:
    order: Order
    payments: List[Payment]

    @property
    def paid_payment(self) -> Optional[Payment]:
        return next((p for p in self.payments if p.status == PaymentStatus.PAID), None)


class OrderDetailsUseCase:
    """Заказ со всеми счетами: для владельца магазина и ручных возвратов"""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: str) -> OrderDetails:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            payments = await uow.payments.list_for_order(order_id)
        return OrderDetails(order=order, payments=payments)
