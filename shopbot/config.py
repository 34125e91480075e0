import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    SERVICE_URL: str = os.getenv("SERVICE_URL", "")
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # LLM
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

    # Messenger
    MESSENGER_GRAPH_URL: str = os.getenv("MESSENGER_GRAPH_URL", "https://graph.facebook.com/v18.0")

    # QPay
    QPAY_BASE_URL: str = os.getenv("QPAY_BASE_URL", "https://merchant.qpay.mn/v2")
    QPAY_CLIENT_ID: str = os.getenv("QPAY_CLIENT_ID", "")
    QPAY_CLIENT_SECRET: str = os.getenv("QPAY_CLIENT_SECRET", "")
    QPAY_INVOICE_CODE: str = os.getenv("QPAY_INVOICE_CODE", "")
    QPAY_WEBHOOK_SECRET: str = os.getenv("QPAY_WEBHOOK_SECRET", "")
    PAYMENT_SIGNATURE_HEADER: str = os.getenv("PAYMENT_SIGNATURE_HEADER", "X-QPay-Signature")

    # Services
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "")

    # Тайминги и лимиты
    ORDER_EXPIRY_MINUTES: int = int(os.getenv("ORDER_EXPIRY_MINUTES", "30"))
    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    AI_PAUSE_MINUTES: int = int(os.getenv("AI_PAUSE_MINUTES", "30"))
    MAX_TOOL_ROUNDS: int = int(os.getenv("MAX_TOOL_ROUNDS", "5"))
    CHAT_TIMEOUT_SECONDS: float = float(os.getenv("CHAT_TIMEOUT_SECONDS", "60"))
    CHAT_HISTORY_LIMIT: int = int(os.getenv("CHAT_HISTORY_LIMIT", "10"))
    RATE_LIMIT_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "20"))
    PLACEHOLDER_IMAGE_URL: str = os.getenv(
        "PLACEHOLDER_IMAGE_URL", "https://placehold.co/600x400?text=No+Image"
    )

    @property
    def DATABASE_URL(self) -> str:
        """Асинхронный URL для приложения"""
        if not self.POSTGRES_CONNECTION_STRING:
            # локальный запуск без Postgres
            return "sqlite+aiosqlite:///./shopbot.db"
        url = self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://", 1)
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Синхронный URL для Alembic"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite:///./shopbot.db"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://", 1)


settings = Settings()
