import asyncio
import logging

from shopbot.application.background import BackgroundTasks
from shopbot.application.expire_orders import ExpireOrdersUseCase
from shopbot.application.notifications import OrderNotifier
from shopbot.application.order_state_machine import OrderStateMachine
from shopbot.config import settings
from shopbot.database import AsyncSessionLocal
from shopbot.infrastructure.http_clients import HTTPNotificationsClient, MessengerClient
from shopbot.infrastructure.unit_of_work import UnitOfWork

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def expiry_worker(interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS):
    """Worker для отмены неоплаченных заказов (вместо внешнего cron)"""
    logger.info(f"Expiry worker запущен, интервал {interval_seconds}s")

    background = BackgroundTasks()
    notifier = OrderNotifier(
        MessengerClient(settings.MESSENGER_GRAPH_URL),
        HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN),
        background
    )

    while True:
        try:
            # use_case создается на каждую итерацию
            use_case = ExpireOrdersUseCase(
                unit_of_work=UnitOfWork(AsyncSessionLocal),
                state_machine=OrderStateMachine(notifier),
                expiry_minutes=settings.ORDER_EXPIRY_MINUTES
            )
            result = await use_case()
            if result.cancelled:
                logger.info(f"Отменено {result.cancelled} просроченных заказов")
            await background.drain()

        except Exception as e:
            logger.error(f"Ошибка в expiry worker: {e}", exc_info=True)

        await asyncio.sleep(interval_seconds)


async def main():
    await expiry_worker()


if __name__ == "__main__":
    asyncio.run(main())
