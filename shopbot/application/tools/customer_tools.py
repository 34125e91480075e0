import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from shopbot.application.notifications import OrderNotifier
from shopbot.application.tool_catalog import (
    CollectContactInfoArgs, RememberPreferenceArgs, RequestHumanSupportArgs
)
from shopbot.application.tools.base import ToolContext, ToolResult
from shopbot.domain.exceptions import CustomerNotFoundError

logger = logging.getLogger(__name__)


class CustomerTools:
    def __init__(self, unit_of_work, notifier: Optional[OrderNotifier] = None, pause_minutes: int = 30):
        self._uow = unit_of_work
        self._notifier = notifier
        self._pause_minutes = pause_minutes

    def handlers(self):
        return {
            "collect_contact_info": self.collect_contact_info,
            "request_human_support": self.request_human_support,
            "remember_preference": self.remember_preference,
        }

    async def collect_contact_info(self, args: CollectContactInfoArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            customer = await uow.customers.get_by_id(ctx.customer_id)
            if customer is None:
                raise CustomerNotFoundError(f"Customer {ctx.customer_id} not found")

            changes = {
                field: value for field, value in args.fields().items()
                if getattr(customer, field) != value
            }
            if not changes:
                return ToolResult.ok("Contact info is already saved.", data={"updated": []})

            await uow.customers.update_contact(ctx.customer_id, changes)
            await uow.commit()

        updated = customer.model_copy(update=changes)
        logger.info(f"Контакты клиента {ctx.customer_id} обновлены: {sorted(changes)}")
        if self._notifier is not None:
            self._notifier.contact_info_saved(ctx.shop_id, updated)
        return ToolResult.ok("Contact info saved. Thank you!", data={"updated": sorted(changes)})

    async def request_human_support(self, args: RequestHumanSupportArgs, ctx: ToolContext) -> ToolResult:
        until = datetime.now(timezone.utc) + timedelta(minutes=self._pause_minutes)
        async with self._uow() as uow:
            customer = await uow.customers.get_by_id(ctx.customer_id)
            if customer is None:
                raise CustomerNotFoundError(f"Customer {ctx.customer_id} not found")
            await uow.customers.set_ai_paused_until(ctx.customer_id, until)
            await uow.commit()

        logger.info(f"Клиент {ctx.customer_id} запросил оператора, автоответы на паузе до {until.isoformat()}")
        if self._notifier is not None:
            self._notifier.support_requested(ctx.shop_id, customer, args.reason)
        return ToolResult.ok(
            "A team member will reply to you shortly.",
            data={"ai_paused_until": until.isoformat()},
        )

    async def remember_preference(self, args: RememberPreferenceArgs, ctx: ToolContext) -> ToolResult:
        async with self._uow() as uow:
            preferences = await uow.customers.merge_preference(ctx.customer_id, args.key, args.value)
            await uow.commit()

        return ToolResult.ok(f"Noted: {args.key} = {args.value}.", data={"preferences": preferences})
