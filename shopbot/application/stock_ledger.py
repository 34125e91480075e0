import logging

from shopbot.application.interfaces import UnitOfWork
from shopbot.domain.exceptions import InsufficientStockError, ProductNotFoundError

logger = logging.getLogger(__name__)


class StockLedger:
    """Единственное место, где меняется reserved_stock.

    Работает внутри транзакции вызывающего кода: резерв и создание заказа
    коммитятся вместе.
    """

    def __init__(self, uow: UnitOfWork):
        self._uow = uow

    async def reserve(self, product_id: str, quantity: int) -> None:
        _check_quantity(quantity)
        reserved = await self._uow.products.try_reserve(product_id, quantity)
        if reserved:
            logger.info(f"Зарезервировано {quantity} шт. товара {product_id}")
            return

        # Резерв не прошел: перечитываем только для текста ошибки
        product = await self._uow.products.get_by_id(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found")
        logger.info(
            f"Недостаточно остатка товара {product_id}: доступно {product.available}, запрошено {quantity}"
        )
        raise InsufficientStockError(product.available, quantity, product.name)

    async def release(self, product_id: str, quantity: int) -> None:
        _check_quantity(quantity)
        await self._uow.products.release(product_id, quantity)
        logger.info(f"Снят резерв {quantity} шт. товара {product_id}")

    async def commit(self, product_id: str, quantity: int) -> None:
        """Списание проданного товара: stock и reserved_stock уменьшаются вместе"""
        _check_quantity(quantity)
        committed = await self._uow.products.commit_sale(product_id, quantity)
        if not committed:
            # резерв уже снят или товар удален, остатки не трогаем
            logger.warning(f"Не удалось списать {quantity} шт. товара {product_id}: резерв не найден")
            return
        logger.info(f"Списано {quantity} шт. товара {product_id}")


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {quantity}")
