from typing import List, Optional

from shopbot.application.tools.base import format_amount
from shopbot.domain.models import Customer, Product, Shop

MAX_PRODUCTS_IN_PROMPT = 50


def build_system_prompt(shop: Shop, products: List[Product], customer: Optional[Customer]) -> str:
    """Системный промпт: магазин, каталог с остатками, память о клиенте"""
    lines = [
        f"You are the sales assistant of the online shop \"{shop.name}\".",
        "Answer briefly and politely. Only sell products from the catalog below.",
        "Use add_to_cart when the customer wants to buy, and checkout after they confirm.",
        "Never invent prices, stock or order numbers: use the tools.",
        "If you cannot help, call request_human_support.",
        "",
        "Catalog:",
    ]
    for product in products[:MAX_PRODUCTS_IN_PROMPT]:
        stock = f"{product.available} in stock" if product.available > 0 else "out of stock"
        line = f"- {product.name}: {format_amount(product.price)}, {stock}"
        if product.description:
            line += f". {product.description[:120]}"
        lines.append(line)
    if not products:
        lines.append("- (no products available)")

    if customer is not None:
        known = []
        if customer.name:
            known.append(f"name: {customer.name}")
        if customer.phone:
            known.append(f"phone: {customer.phone}")
        if customer.address:
            known.append(f"address: {customer.address}")
        known.extend(f"{key}: {value}" for key, value in customer.preferences.items())
        if customer.total_orders:
            known.append(f"previous orders: {customer.total_orders}")
        if known:
            lines += ["", "What you know about this customer:"] + [f"- {item}" for item in known]

    return "\n".join(lines)
