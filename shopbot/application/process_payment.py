import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from shopbot.application.interfaces import PaymentGateway
from shopbot.application.notifications import OrderNotifier
from shopbot.application.order_state_machine import OrderStateMachine, OrderTransition
from shopbot.application.payments import GATEWAY_POLICY
from shopbot.application.retry import RetryPolicy, retry_with_backoff
from shopbot.domain.exceptions import (
    ExternalServiceError, InvalidTransitionError, PaymentNotFoundError, SignatureVerificationError, ValidationError
)
from shopbot.domain.models import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """HMAC-SHA256 от сырого тела запроса, сравнение за постоянное время"""
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not signature:
        raise SignatureVerificationError("Missing webhook signature")

    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided.lower()):
        raise SignatureVerificationError("Invalid webhook signature")


class PaymentWebhookDTO(BaseModel):
    model_config = ConfigDict(extra="allow")

    invoice_id: Optional[str] = None
    object_id: Optional[str] = None

    @property
    def resolved_invoice_id(self) -> Optional[str]:
        return self.invoice_id or self.object_id


@dataclass
class ReconcileResult:
    invoice_id: str
    order_id: Optional[str]
    # "paid" | "already_paid" | "not_paid"
    outcome: str


def is_payment_completed(check: Dict[str, Any]) -> bool:
    return (check.get("count") or 0) > 0 and (check.get("paid_amount") or 0) > 0


def get_transaction_id(check: Dict[str, Any]) -> Optional[str]:
    rows = check.get("rows") or []
    if rows:
        return rows[0].get("payment_id")
    return None


class PaymentReconciler:
    """Подтверждение оплаты по invoice_id.

    Данным webhook не доверяем: факт оплаты всегда перепроверяется через
    check API шлюза. Повторная обработка оплаченного счета ничего не меняет.
    """

    def __init__(
        self,
        unit_of_work,
        gateway: PaymentGateway,
        state_machine: OrderStateMachine,
        notifier: Optional[OrderNotifier] = None,
        policy: RetryPolicy = GATEWAY_POLICY,
    ):
        self._uow = unit_of_work
        self._gateway = gateway
        self._state_machine = state_machine
        self._notifier = notifier
        self._policy = policy

    async def reconcile(self, invoice_id: str) -> ReconcileResult:
        async with self._uow() as uow:
            payment = await uow.payments.get_by_invoice_id(invoice_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment for invoice {invoice_id} not found")

        if payment.status == PaymentStatus.PAID:
            logger.info(f"Счет {invoice_id} уже оплачен, повторная обработка пропущена")
            return ReconcileResult(invoice_id, payment.order_id, "already_paid")

        # Исчерпание попыток пробрасывается: подтверждение оплаты критично
        check = await retry_with_backoff(
            lambda: self._gateway.check_status(invoice_id),
            self._policy,
            operation=f"qpay:check:{invoice_id}",
            retry_on=(ExternalServiceError,),
        )
        if not is_payment_completed(check):
            logger.info(f"Счет {invoice_id} еще не оплачен")
            return ReconcileResult(invoice_id, payment.order_id, "not_paid")

        transition: Optional[OrderTransition] = None
        async with self._uow() as uow:
            marked = await uow.payments.mark_paid(payment.id, get_transaction_id(check), datetime.now(timezone.utc))
            if not marked:
                logger.info(f"Счет {invoice_id} подтвержден параллельным запросом")
                return ReconcileResult(invoice_id, payment.order_id, "already_paid")

            try:
                transition = await self._state_machine.transition(uow, payment.order_id, OrderStatus.CONFIRMED)
            except InvalidTransitionError as e:
                # оплата пришла после отмены: деньги фиксируем, возврат вручную
                logger.error(
                    f"Оплата по счету {invoice_id} получена, но заказ {payment.order_id} "
                    f"в статусе {e.current}: требуется ручной возврат"
                )
            await uow.commit()

        logger.info(f"Платеж {payment.id} по счету {invoice_id} подтвержден")
        if transition is not None:
            self._state_machine.announce(transition)
            if self._notifier is not None:
                self._notifier.payment_confirmed(transition.order, transition.customer, transition.shop)
        return ReconcileResult(invoice_id, payment.order_id, "paid")


class ProcessPaymentWebhookUseCase:
    def __init__(self, reconciler: PaymentReconciler, webhook_secret: Optional[str]):
        self._reconciler = reconciler
        self._secret = webhook_secret

    async def __call__(self, raw_body: bytes, signature: Optional[str]) -> ReconcileResult:
        # подпись проверяется до любого разбора тела
        verify_signature(raw_body, signature, self._secret)

        try:
            dto = PaymentWebhookDTO.model_validate(json.loads(raw_body or b"{}"))
        except ValueError:
            raise ValidationError("Invalid webhook payload")

        invoice_id = dto.resolved_invoice_id
        if not invoice_id:
            raise ValidationError("Webhook payload has no invoice_id")

        logger.info(f"Получен webhook по счету {invoice_id}")
        return await self._reconciler.reconcile(invoice_id)
