import time
from collections import deque
from typing import Callable, Deque, Dict


class RateLimiter:
    """Скользящее окно на ключ (клиента).

    Создается один раз в lifespan приложения и передается через зависимости.
    Состояние в памяти процесса: при нескольких инстансах нужен общий store.
    Ключи без попаданий в окне удаляются не реже раза за окно.
    """

    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        # без await внутри: проверка и запись атомарны для event loop
        now = self._clock()
        cutoff = now - self._window
        if now - self._last_sweep >= self._window:
            self._sweep(cutoff)
            self._last_sweep = now

        hits = self._hits.get(key)
        if hits is None:
            hits = self._hits[key] = deque()
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self._limit:
            return False
        hits.append(now)
        return True

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
