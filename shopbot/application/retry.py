import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    # доля от базовой задержки
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


DEFAULT_POLICY = RetryPolicy()


def backoff_delay(attempt: int, policy: RetryPolicy = DEFAULT_POLICY, rand: Callable[[], float] = random.random) -> float:
    """Задержка перед повтором после неудачной попытки attempt (с 1).

    min(max_delay, initial_delay * multiplier ** (attempt - 1)) плюс джиттер
    в диапазоне [0, base * jitter).
    """
    base = min(policy.max_delay, policy.initial_delay * policy.multiplier ** (attempt - 1))
    return base + base * policy.jitter * rand()


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    operation: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Вызывает fn с повторными попытками.

    После max_attempts неудач пробрасывает последнюю ошибку, решение о том,
    фатальна ли она, принимает вызывающий код.
    """
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt == policy.max_attempts:
                logger.error(f"[{operation}] Все {policy.max_attempts} попыток неуспешны: {e}")
                break

            delay = backoff_delay(attempt, policy)
            logger.warning(
                f"[{operation}] Попытка {attempt}/{policy.max_attempts} неуспешна: {e}, повтор через {delay:.2f}s"
            )
            await sleep(delay)

    raise last_error
