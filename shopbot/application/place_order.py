import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from shopbot.application.interfaces import UnitOfWork
from shopbot.application.stock_ledger import StockLedger
from shopbot.domain.exceptions import InsufficientStockError, ValidationError
from shopbot.domain.models import Order, OrderItem, OrderStatus, Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    product: Product
    quantity: int
    unit_price: int
    variant_specs: Dict[str, str] = field(default_factory=dict)


class PlaceOrder:
    """Резерв остатков и создание заказа с позициями.

    Работает в транзакции вызывающего кода: если что-то падает между резервом
    и вставкой заказа, откат UnitOfWork снимает и резерв.
    """

    async def __call__(
        self,
        uow: UnitOfWork,
        shop_id: str,
        customer_id: str,
        lines: List[OrderLine],
        notes: Optional[str] = None,
    ) -> Order:
        if not lines:
            raise ValidationError("Order must contain at least one item")

        # Предварительная проверка по прочитанным остаткам, без записи
        requested: Dict[str, int] = {}
        for line in lines:
            requested[line.product.id] = requested.get(line.product.id, 0) + line.quantity
        for line in lines:
            if requested[line.product.id] > line.product.available:
                raise InsufficientStockError(line.product.available, requested[line.product.id], line.product.name)

        # Окончательное решение принимает атомарный резерв
        ledger = StockLedger(uow)
        for line in lines:
            await ledger.reserve(line.product.id, line.quantity)

        now = datetime.now(timezone.utc)
        order_id = str(uuid.uuid4())
        items = [
            OrderItem(
                id=str(uuid.uuid4()),
                order_id=order_id,
                product_id=line.product.id,
                product_name=line.product.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                variant_specs=line.variant_specs,
            )
            for line in lines
        ]
        order = Order(
            id=order_id,
            shop_id=shop_id,
            customer_id=customer_id,
            status=OrderStatus.PENDING,
            total_amount=sum(item.quantity * item.unit_price for item in items),
            notes=notes,
            items=items,
            created_at=now,
            updated_at=now,
        )
        await uow.orders.create(order)
        logger.info(f"Заказ {order.id} создан: {len(items)} поз., сумма {order.total_amount}")
        return order
