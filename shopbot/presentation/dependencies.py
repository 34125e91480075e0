import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from shopbot.application.background import BackgroundTasks
from shopbot.application.conversation import ConversationOrchestrator
from shopbot.application.expire_orders import ExpireOrdersUseCase
from shopbot.application.get_order import OrderDetailsUseCase
from shopbot.application.handle_message import HandleMessageUseCase
from shopbot.application.human_handoff import HumanReplyUseCase
from shopbot.application.interfaces import LanguageModel, MessagingService, PaymentGateway, ShopNotificationsService
from shopbot.application.notifications import OrderNotifier
from shopbot.application.order_state_machine import ChangeOrderStatusUseCase, OrderStateMachine
from shopbot.application.payments import IssueInvoiceUseCase
from shopbot.application.process_payment import PaymentReconciler, ProcessPaymentWebhookUseCase
from shopbot.application.rate_limiter import RateLimiter
from shopbot.application.tool_executor import ToolExecutor, create_tool_executor
from shopbot.config import settings
from shopbot.database import AsyncSessionLocal
from shopbot.infrastructure.unit_of_work import UnitOfWork


# Долгоживущие сервисы создаются в lifespan и лежат в app.state
def get_background(request: Request) -> BackgroundTasks:
    return request.app.state.background


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_messaging(request: Request) -> MessagingService:
    return request.app.state.messaging


def get_shop_notifications(request: Request) -> ShopNotificationsService:
    return request.app.state.shop_notifications


def get_language_model(request: Request) -> LanguageModel:
    return request.app.state.language_model


def get_unit_of_work():
    return UnitOfWork(AsyncSessionLocal)


# Фабрики для создания use cases
def get_notifier(
    messaging: MessagingService = Depends(get_messaging),
    shop_notifications: ShopNotificationsService = Depends(get_shop_notifications),
    background: BackgroundTasks = Depends(get_background)
) -> OrderNotifier:
    return OrderNotifier(messaging, shop_notifications, background)


def get_state_machine(notifier: OrderNotifier = Depends(get_notifier)) -> OrderStateMachine:
    return OrderStateMachine(notifier)


def get_reconciler(
    uow=Depends(get_unit_of_work),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    state_machine: OrderStateMachine = Depends(get_state_machine),
    notifier: OrderNotifier = Depends(get_notifier)
) -> PaymentReconciler:
    return PaymentReconciler(uow, gateway, state_machine, notifier)


def get_issue_invoice(
    uow=Depends(get_unit_of_work),
    gateway: PaymentGateway = Depends(get_payment_gateway)
) -> IssueInvoiceUseCase:
    return IssueInvoiceUseCase(uow, gateway, settings.SERVICE_URL, settings.ORDER_EXPIRY_MINUTES)


def get_tool_executor(
    uow=Depends(get_unit_of_work),
    state_machine: OrderStateMachine = Depends(get_state_machine),
    issue_invoice: IssueInvoiceUseCase = Depends(get_issue_invoice),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    notifier: OrderNotifier = Depends(get_notifier)
) -> ToolExecutor:
    return create_tool_executor(
        uow,
        state_machine,
        issue_invoice,
        reconciler,
        notifier,
        expiry_minutes=settings.ORDER_EXPIRY_MINUTES,
        pause_minutes=settings.AI_PAUSE_MINUTES,
        placeholder_image_url=settings.PLACEHOLDER_IMAGE_URL
    )


def get_handle_message_use_case(
    uow=Depends(get_unit_of_work),
    model: LanguageModel = Depends(get_language_model),
    executor: ToolExecutor = Depends(get_tool_executor),
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
) -> HandleMessageUseCase:
    orchestrator = ConversationOrchestrator(
        model, executor, max_rounds=settings.MAX_TOOL_ROUNDS, timeout_seconds=settings.CHAT_TIMEOUT_SECONDS
    )
    return HandleMessageUseCase(uow, orchestrator, rate_limiter, history_limit=settings.CHAT_HISTORY_LIMIT)


def get_process_payment_use_case(
    reconciler: PaymentReconciler = Depends(get_reconciler)
) -> ProcessPaymentWebhookUseCase:
    return ProcessPaymentWebhookUseCase(reconciler, settings.QPAY_WEBHOOK_SECRET)


def get_expire_orders_use_case(
    uow=Depends(get_unit_of_work),
    state_machine: OrderStateMachine = Depends(get_state_machine)
) -> ExpireOrdersUseCase:
    return ExpireOrdersUseCase(uow, state_machine, expiry_minutes=settings.ORDER_EXPIRY_MINUTES)


def get_human_reply_use_case(
    uow=Depends(get_unit_of_work),
    messaging: MessagingService = Depends(get_messaging)
) -> HumanReplyUseCase:
    return HumanReplyUseCase(uow, messaging, pause_minutes=settings.AI_PAUSE_MINUTES)


def get_change_status_use_case(
    uow=Depends(get_unit_of_work),
    state_machine: OrderStateMachine = Depends(get_state_machine)
) -> ChangeOrderStatusUseCase:
    return ChangeOrderStatusUseCase(uow, state_machine)


def get_order_details_use_case(uow=Depends(get_unit_of_work)) -> OrderDetailsUseCase:
    return OrderDetailsUseCase(uow)


# Авторизация
def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if not settings.API_TOKEN or not hmac.compare_digest(x_api_key or "", settings.API_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    expected = f"Bearer {settings.CRON_SECRET}"
    if not settings.CRON_SECRET or not hmac.compare_digest(authorization or "", expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
