import logging
from datetime import datetime, timedelta, timezone

from shopbot.application.interfaces import MessagingService
from shopbot.application.retry import RetryPolicy, retry_with_backoff
from shopbot.domain.exceptions import CustomerNotFoundError, ExternalServiceError, ValidationError
from shopbot.domain.models import ChatMessageRecord

logger = logging.getLogger(__name__)

MESSAGING_POLICY = RetryPolicy(max_attempts=3, initial_delay=0.5, multiplier=2.0, max_delay=5.0)


class HumanReplyUseCase:
    """Ответ оператора клиенту.

    Ставит автоответы на паузу на pause_minutes и пересылает текст клиенту.
    Пауза рекомендательная: последний записавший побеждает.
    """

    def __init__(self, unit_of_work, messaging: MessagingService, pause_minutes: int = 30,
                 policy: RetryPolicy = MESSAGING_POLICY):
        self._uow = unit_of_work
        self._messaging = messaging
        self._pause_minutes = pause_minutes
        self._policy = policy

    async def __call__(self, customer_id: str, text: str) -> datetime:
        now = datetime.now(timezone.utc)
        until = now + timedelta(minutes=self._pause_minutes)

        async with self._uow() as uow:
            customer = await uow.customers.get_by_id(customer_id)
            if customer is None:
                raise CustomerNotFoundError(f"Customer {customer_id} not found")
            shop = await uow.shops.get_by_id(customer.shop_id)
            if not customer.platform_id or shop is None or not shop.page_access_token:
                raise ValidationError("Customer cannot be reached through the messaging platform")

            await uow.customers.set_ai_paused_until(customer_id, until)
            await uow.chat_history.append(ChatMessageRecord(
                customer_id=customer_id, role="assistant", content=text, created_at=now
            ))
            await uow.commit()

        logger.info(f"Оператор ответил клиенту {customer_id}, автоответы на паузе до {until.isoformat()}")

        await retry_with_backoff(
            lambda: self._messaging.send_text(customer.platform_id, text, shop.page_access_token),
            self._policy,
            operation=f"messenger:human-reply:{customer_id}",
            retry_on=(ExternalServiceError,),
        )
        return until
