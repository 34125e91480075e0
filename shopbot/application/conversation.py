import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shopbot.application.interfaces import LanguageModel
from shopbot.application.tool_catalog import tool_definitions
from shopbot.application.tool_executor import ToolExecutor
from shopbot.application.tools.base import ToolContext
from shopbot.domain.exceptions import LanguageModelError

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I could not complete your request. Please contact our support team and we will help you."


@dataclass
class ConversationResult:
    text: str
    rounds: int = 0
    tool_calls: int = 0
    completed: bool = True
    images: List[Dict[str, Any]] = field(default_factory=list)


class ConversationOrchestrator:
    """Цикл вызова инструментов для одного входящего сообщения.

    Модель -> текст: конец. Модель -> tool_calls: выполняем (параллельно в
    пределах раунда), результаты добавляем в историю в порядке запроса и снова
    идем в модель. Не больше max_rounds раундов и timeout_seconds на весь цикл,
    иначе отвечаем FALLBACK_REPLY.
    """

    def __init__(
        self,
        model: LanguageModel,
        executor: ToolExecutor,
        max_rounds: int = 5,
        timeout_seconds: Optional[float] = 60.0,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        self._model = model
        self._executor = executor
        self._max_rounds = max_rounds
        self._timeout = timeout_seconds
        self._tools = tool_definitions()

    async def run(self, messages: List[Dict[str, Any]], ctx: ToolContext) -> ConversationResult:
        progress = ConversationResult(text=FALLBACK_REPLY, completed=False)
        try:
            return await asyncio.wait_for(self._loop(list(messages), ctx, progress), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Диалог клиента {ctx.customer_id}: превышен таймаут {self._timeout}s")
        except LanguageModelError as e:
            logger.error(f"Диалог клиента {ctx.customer_id}: модель недоступна: {e}")
        return progress

    async def _loop(
        self, history: List[Dict[str, Any]], ctx: ToolContext, progress: ConversationResult
    ) -> ConversationResult:
        for round_no in range(1, self._max_rounds + 1):
            progress.rounds = round_no
            reply = await self._model.complete(history, self._tools)

            if not reply.tool_calls:
                progress.text = reply.content or ""
                progress.completed = True
                return progress

            history.append({
                "role": "assistant",
                "content": reply.content,
                "tool_calls": [call.to_message() for call in reply.tool_calls],
            })
            results = await asyncio.gather(
                *(self._executor.execute(call.name, call.arguments, ctx) for call in reply.tool_calls)
            )
            # gather сохраняет порядок аргументов
            for call, result in zip(reply.tool_calls, results):
                progress.tool_calls += 1
                history.append({"role": "tool", "tool_call_id": call.id, "content": result.to_content()})
                if result.success and result.data and result.data.get("images"):
                    progress.images.extend(result.data["images"])

        logger.warning(f"Диалог клиента {ctx.customer_id}: достигнут лимит {self._max_rounds} раундов")
        return progress
