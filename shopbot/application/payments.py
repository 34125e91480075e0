import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from shopbot.application.interfaces import PaymentGateway
from shopbot.application.retry import RetryPolicy, retry_with_backoff
from shopbot.domain.exceptions import ExternalServiceError
from shopbot.domain.models import Order, Payment, PaymentStatus

logger = logging.getLogger(__name__)

GATEWAY_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)


class IssueInvoiceUseCase:
    """Выставляет QPay-счет на новый заказ и сохраняет pending платеж.

    Вызывается после коммита заказа. Ошибка шлюза заказ не отменяет: без
    оплаты его снимет sweeper.
    """

    def __init__(
        self,
        unit_of_work,
        gateway: PaymentGateway,
        service_url: str,
        expiry_minutes: int = 30,
        policy: RetryPolicy = GATEWAY_POLICY,
    ):
        self._uow = unit_of_work
        self._gateway = gateway
        self._service_url = service_url
        self._expiry_minutes = expiry_minutes
        self._policy = policy

    async def __call__(self, order: Order) -> Optional[Payment]:
        callback_url = f"{self._service_url}/api/payments/webhook"
        try:
            invoice = await retry_with_backoff(
                lambda: self._gateway.create_invoice(
                    order_id=order.id,
                    amount=order.total_amount,
                    description=f"Order #{order.short_id}",
                    callback_url=callback_url,
                ),
                self._policy,
                operation=f"qpay:create_invoice:{order.id}",
                retry_on=(ExternalServiceError,),
            )
        except ExternalServiceError as e:
            logger.error(f"Не удалось выставить счет на заказ {order.id}: {e}")
            return None

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            order_id=order.id,
            amount=order.total_amount,
            status=PaymentStatus.PENDING,
            invoice_id=invoice["invoice_id"],
            payment_url=invoice.get("short_url"),
            expires_at=now + timedelta(minutes=self._expiry_minutes),
            created_at=now,
        )
        async with self._uow() as uow:
            await uow.payments.create(payment)
            await uow.commit()

        logger.info(f"Счет {payment.invoice_id} выставлен на заказ {order.id}")
        return payment
