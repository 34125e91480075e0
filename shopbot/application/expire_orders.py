import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from shopbot.application.order_state_machine import OrderStateMachine, OrderTransition
from shopbot.domain.exceptions import InvalidTransitionError, OrderNotFoundError
from shopbot.domain.models import OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0


class ExpireOrdersUseCase:
    """Отмена неоплаченных pending заказов старше expiry_minutes.

    Каждый заказ в отдельной транзакции. Резерв снимается только через
    переход в cancelled (compare-and-set), поэтому параллельные запуски и
    действия клиента не приводят к двойному снятию.
    """

    def __init__(self, unit_of_work, state_machine: OrderStateMachine, expiry_minutes: int = 30, batch_size: int = 100):
        self._uow = unit_of_work
        self._state_machine = state_machine
        self._expiry_minutes = expiry_minutes
        self._batch_size = batch_size

    @property
    def reason(self) -> str:
        return f"Auto-expired: payment not received in {self._expiry_minutes} minutes"

    async def __call__(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self._expiry_minutes)

        async with self._uow() as uow:
            order_ids = await uow.orders.list_expired_pending(cutoff, limit=self._batch_size)

        result = SweepResult(checked=len(order_ids))
        for order_id in order_ids:
            try:
                transition = await self._expire(order_id)
            except (InvalidTransitionError, OrderNotFoundError):
                # уже оплачен, отменен клиентом или другим запуском
                result.skipped += 1
                continue
            except Exception as e:
                logger.error(f"Ошибка отмены просроченного заказа {order_id}: {e}", exc_info=True)
                result.failed += 1
                continue

            if transition is None:
                result.skipped += 1
                continue
            result.cancelled += 1
            self._state_machine.announce(transition)

        if result.checked:
            logger.info(
                f"Просроченные заказы: найдено {result.checked}, отменено {result.cancelled}, "
                f"пропущено {result.skipped}, ошибок {result.failed}"
            )
        return result

    async def _expire(self, order_id: str) -> Optional[OrderTransition]:
        async with self._uow() as uow:
            if await uow.payments.has_paid_for_order(order_id):
                logger.info(f"Заказ {order_id} оплачен, отмена пропущена")
                return None
            transition = await self._state_machine.transition(uow, order_id, OrderStatus.CANCELLED, self.reason)
            await uow.commit()
        logger.info(f"Заказ {order_id} отменен: оплата не поступила")
        return transition
