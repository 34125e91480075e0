import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Best-effort задачи вне пути запроса (уведомления).

    Держит ссылки на запущенные задачи, чтобы их не собрал GC, и логирует
    ошибки. drain() дожидается всех задач (shutdown, тесты).
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return task

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Фоновая задача {name} отменена")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Фоновая задача {name} завершилась ошибкой: {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while True:
            # задачи могут порождать новые задачи
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
