import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shopbot.application.background import BackgroundTasks
from shopbot.application.rate_limiter import RateLimiter
from shopbot.config import settings
from shopbot.database import engine
from shopbot.infrastructure.db_schema import metadata
from shopbot.infrastructure.http_clients import HTTPNotificationsClient, MessengerClient, QPayClient
from shopbot.infrastructure.llm_client import OpenAIChatClient
from shopbot.presentation.api import router

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    # 1. Создаем таблицы
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Таблицы созданы")

    # 2. Долгоживущие сервисы
    app.state.background = BackgroundTasks()
    app.state.rate_limiter = RateLimiter(settings.RATE_LIMIT_PER_MINUTE, window_seconds=60)
    app.state.payment_gateway = QPayClient(
        settings.QPAY_BASE_URL,
        settings.QPAY_CLIENT_ID,
        settings.QPAY_CLIENT_SECRET,
        settings.QPAY_INVOICE_CODE
    )
    app.state.messaging = MessengerClient(settings.MESSENGER_GRAPH_URL)
    app.state.shop_notifications = HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN)
    app.state.language_model = OpenAIChatClient(
        settings.OPENAI_BASE_URL,
        settings.OPENAI_API_KEY,
        settings.OPENAI_MODEL,
        timeout=settings.LLM_TIMEOUT_SECONDS
    )

    yield

    logger.info("Приложение останавливается...")
    # дожидаемся отправки уведомлений
    await app.state.background.drain()
    await engine.dispose()


app = FastAPI(
    title="Shopbot",
    description="Чат-ассистент магазина: заказы, резерв остатков, оплата QPay",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "healthy"}
