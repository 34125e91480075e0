import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shopbot.application.conversation import ConversationOrchestrator
from shopbot.application.prompt import build_system_prompt
from shopbot.application.rate_limiter import RateLimiter
from shopbot.application.tools.base import ToolContext
from shopbot.domain.exceptions import ShopNotFoundError
from shopbot.domain.models import ChatMessageRecord

logger = logging.getLogger(__name__)

RATE_LIMITED_REPLY = "You are sending messages too quickly. Please wait a moment and try again."


class IncomingMessageDTO(BaseModel):
    shop_id: str
    sender_id: str
    text: str = Field(min_length=1, max_length=4000)
    sender_name: Optional[str] = None


@dataclass
class ChatReply:
    reply: Optional[str]
    customer_id: Optional[str] = None
    paused: bool = False
    rate_limited: bool = False
    images: List[Dict[str, Any]] = field(default_factory=list)


class HandleMessageUseCase:
    """Входящее сообщение клиента: лимит, пауза, история, ответ модели"""

    def __init__(
        self,
        unit_of_work,
        orchestrator: ConversationOrchestrator,
        rate_limiter: RateLimiter,
        history_limit: int = 10,
    ):
        self._uow = unit_of_work
        self._orchestrator = orchestrator
        self._rate_limiter = rate_limiter
        self._history_limit = history_limit

    async def __call__(self, dto: IncomingMessageDTO) -> ChatReply:
        if not self._rate_limiter.allow(f"{dto.shop_id}:{dto.sender_id}"):
            logger.warning(f"Клиент {dto.sender_id} магазина {dto.shop_id} превысил лимит сообщений")
            return ChatReply(reply=RATE_LIMITED_REPLY, rate_limited=True)

        now = datetime.now(timezone.utc)
        async with self._uow() as uow:
            shop = await uow.shops.get_by_id(dto.shop_id)
            if shop is None:
                raise ShopNotFoundError(f"Shop {dto.shop_id} not found")

            customer = await uow.customers.get_or_create_by_platform_id(dto.shop_id, dto.sender_id, dto.sender_name)
            await uow.chat_history.append(ChatMessageRecord(
                customer_id=customer.id, role="user", content=dto.text, created_at=now
            ))
            history = await uow.chat_history.recent(customer.id, limit=self._history_limit)
            products = await uow.products.list_active(shop.id)
            await uow.commit()

        if not shop.is_ai_active:
            logger.info(f"Автоответы магазина {shop.id} выключены")
            return ChatReply(reply=None, customer_id=customer.id, paused=True)
        if customer.is_ai_paused(now):
            logger.info(f"Автоответы клиенту {customer.id} на паузе до {customer.ai_paused_until}")
            return ChatReply(reply=None, customer_id=customer.id, paused=True)

        messages = [{"role": "system", "content": build_system_prompt(shop, products, customer)}]
        messages += [{"role": record.role, "content": record.content} for record in history]

        result = await self._orchestrator.run(messages, ToolContext(shop_id=shop.id, customer_id=customer.id))
        logger.info(
            f"Ответ клиенту {customer.id}: раундов {result.rounds}, инструментов {result.tool_calls}"
        )

        async with self._uow() as uow:
            await uow.chat_history.append(ChatMessageRecord(
                customer_id=customer.id,
                role="assistant",
                content=result.text,
                created_at=datetime.now(timezone.utc),
            ))
            await uow.commit()

        return ChatReply(reply=result.text, customer_id=customer.id, images=result.images)
