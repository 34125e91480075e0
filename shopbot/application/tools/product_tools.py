from shopbot.application.product_matcher import find_products
from shopbot.application.tool_catalog import ShowProductImageArgs
from shopbot.application.tools.base import ToolContext, ToolResult, format_amount
from shopbot.domain.exceptions import ProductNotFoundError


class ProductTools:
    def __init__(self, unit_of_work, placeholder_image_url: str):
        self._uow = unit_of_work
        self._placeholder = placeholder_image_url

    def handlers(self):
        return {"show_product_image": self.show_product_image}

    async def show_product_image(self, args: ShowProductImageArgs, ctx: ToolContext) -> ToolResult:
        """Только чтение. Нет картинки у товара - отдаем заглушку"""
        async with self._uow() as uow:
            products = await uow.products.list_active(ctx.shop_id)

        matched = find_products(products, args.product_names)
        if not matched:
            raise ProductNotFoundError(f"No products found for: {', '.join(args.product_names)}")
        if args.mode == "single":
            matched = matched[:1]

        images = [
            {
                "product_id": p.id,
                "name": p.name,
                "price": p.price,
                "image_url": p.image_url or self._placeholder,
                "description": p.description,
            }
            for p in matched
        ]
        if args.mode == "confirm":
            options = ", ".join(f"{i + 1}. {p.name} ({format_amount(p.price)})" for i, p in enumerate(matched))
            message = f"Which one do you mean? {options}"
        else:
            message = f"Here is {matched[0].name} ({format_amount(matched[0].price)})."
        return ToolResult.ok(message, data={"mode": args.mode, "images": images})
