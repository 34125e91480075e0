import logging
from typing import Any, Awaitable, Callable, Dict, Union

from shopbot.application.place_order import PlaceOrder
from shopbot.application.tool_catalog import TOOL_CATALOG, ValidatedArgs, validate
from shopbot.application.tools.cart_tools import CartTools
from shopbot.application.tools.customer_tools import CustomerTools
from shopbot.application.tools.order_tools import OrderTools
from shopbot.application.tools.product_tools import ProductTools
from shopbot.application.tools.base import ToolContext, ToolResult
from shopbot.domain.exceptions import DomainException, InternalError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ValidatedArgs, ToolContext], Awaitable[ToolResult]]


class ToolExecutor:
    """Валидирует аргументы и вызывает обработчик инструмента.

    Любая ошибка превращается в неуспешный ToolResult: модель получает текст
    ошибки и может уточнить у клиента, исключения наружу не выходят.
    """

    def __init__(self, handlers: Dict[str, ToolHandler]):
        missing = set(TOOL_CATALOG) - set(handlers)
        if missing:
            raise ValueError(f"No handlers for tools: {sorted(missing)}")
        self._handlers = handlers

    async def execute(self, name: str, raw_args: Union[str, Dict[str, Any], None], ctx: ToolContext) -> ToolResult:
        try:
            args = validate(name, raw_args)
            logger.info(f"Инструмент {name} для клиента {ctx.customer_id}: {args.model_dump(exclude_none=True)}")
            result = await self._handlers[name](args, ctx)
        except DomainException as e:
            logger.info(f"Инструмент {name} завершился ошибкой: {e}")
            return ToolResult.fail(str(e))
        except Exception as e:
            logger.error(f"Необработанная ошибка инструмента {name}: {e}", exc_info=True)
            return ToolResult.fail(str(InternalError()))

        return result


def create_tool_executor(
    unit_of_work,
    state_machine,
    issue_invoice,
    reconciler,
    notifier=None,
    expiry_minutes: int = 30,
    pause_minutes: int = 30,
    placeholder_image_url: str = "",
) -> ToolExecutor:
    """Собирает обработчики всех инструментов каталога"""
    place_order = PlaceOrder()
    handlers: Dict[str, ToolHandler] = {}
    handlers.update(OrderTools(
        unit_of_work, place_order, state_machine, issue_invoice, reconciler, notifier, expiry_minutes
    ).handlers())
    handlers.update(CartTools(unit_of_work, place_order, issue_invoice, notifier, expiry_minutes).handlers())
    handlers.update(CustomerTools(unit_of_work, notifier, pause_minutes).handlers())
    handlers.update(ProductTools(unit_of_work, placeholder_image_url).handlers())
    return ToolExecutor(handlers)
