import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from shopbot.application.expire_orders import ExpireOrdersUseCase
from shopbot.application.get_order import OrderDetailsUseCase
from shopbot.application.handle_message import HandleMessageUseCase, IncomingMessageDTO
from shopbot.application.human_handoff import HumanReplyUseCase
from shopbot.application.order_state_machine import ChangeOrderStatusUseCase
from shopbot.application.process_payment import ProcessPaymentWebhookUseCase
from shopbot.config import settings
from shopbot.domain.exceptions import (
    ExternalServiceError, InvalidTransitionError, NotFoundError, SignatureVerificationError, ValidationError
)
from shopbot.presentation.dependencies import (
    get_change_status_use_case, get_expire_orders_use_case, get_order_details_use_case, get_handle_message_use_case,
    get_human_reply_use_case, get_process_payment_use_case, verify_api_key, verify_cron_secret
)
from shopbot.presentation.schemas import (
    ChatMessageRequest, ChatMessageResponse, ErrorResponse, HumanReplyRequest, HumanReplyResponse,
    OrderDetailsResponse, OrderResponse, OrderStatusUpdateRequest, PaymentWebhookResponse, SweepResponse
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/chat/messages",
    response_model=ChatMessageResponse,
    responses={404: {"model": ErrorResponse}}
)
async def chat_message(
    request: ChatMessageRequest,
    use_case: HandleMessageUseCase = Depends(get_handle_message_use_case)
):
    """Входящее сообщение клиента, ответ ассистента"""
    try:
        reply = await use_case(IncomingMessageDTO(**request.model_dump()))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return ChatMessageResponse(
        reply=reply.reply,
        customer_id=reply.customer_id,
        paused=reply.paused,
        rate_limited=reply.rate_limited,
        images=reply.images
    )


@router.post(
    "/payments/webhook",
    response_model=PaymentWebhookResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse}
    }
)
async def payment_webhook(
    request: Request,
    use_case: ProcessPaymentWebhookUseCase = Depends(get_process_payment_use_case)
):
    """Webhook QPay: подпись проверяется по сырому телу"""
    raw_body = await request.body()
    signature = request.headers.get(settings.PAYMENT_SIGNATURE_HEADER)
    try:
        result = await use_case(raw_body, signature)
    except SignatureVerificationError as e:
        logger.warning(f"Webhook отклонен: {e}")
        raise HTTPException(status_code=401, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExternalServiceError as e:
        logger.error(f"Webhook не обработан, шлюз недоступен: {e}")
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")

    return PaymentWebhookResponse(status=result.outcome, invoice_id=result.invoice_id, order_id=result.order_id)


@router.api_route(
    "/cron/expire-orders",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    dependencies=[Depends(verify_cron_secret)]
)
async def expire_orders(use_case: ExpireOrdersUseCase = Depends(get_expire_orders_use_case)):
    """Отмена неоплаченных заказов, вызывается внешним планировщиком"""
    result = await use_case()
    return SweepResponse(
        checked=result.checked,
        cancelled=result.cancelled,
        skipped=result.skipped,
        failed=result.failed
    )


@router.post(
    "/conversations/{customer_id}/human-reply",
    response_model=HumanReplyResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    dependencies=[Depends(verify_api_key)]
)
async def human_reply(
    customer_id: str,
    request: HumanReplyRequest,
    use_case: HumanReplyUseCase = Depends(get_human_reply_use_case)
):
    """Ответ оператора: пауза автоответов и пересылка клиенту"""
    try:
        until = await use_case(customer_id, request.text)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExternalServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")

    return HumanReplyResponse(customer_id=customer_id, ai_paused_until=until)


@router.patch(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    dependencies=[Depends(verify_api_key)]
)
async def change_order_status(
    order_id: str,
    request: OrderStatusUpdateRequest,
    use_case: ChangeOrderStatusUseCase = Depends(get_change_status_use_case)
):
    """Смена статуса заказа владельцем магазина"""
    try:
        order = await use_case(order_id, request.status, request.reason)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return OrderResponse.from_domain(order)


@router.get(
    "/orders/{order_id}",
    response_model=OrderDetailsResponse,
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(verify_api_key)]
)
async def get_order(
    order_id: str,
    use_case: OrderDetailsUseCase = Depends(get_order_details_use_case)
):
    """Заказ со счетами по ID"""
    try:
        details = await use_case(order_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")

    return OrderDetailsResponse.from_details(details)

