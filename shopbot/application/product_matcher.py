from typing import List, Optional

from rapidfuzz import fuzz, process

from shopbot.domain.models import Product

FUZZY_THRESHOLD = 80


def find_product(products: List[Product], name: str, threshold: int = FUZZY_THRESHOLD) -> Optional[Product]:
    """Поиск товара по названию.

    Порядок: точное совпадение без учета регистра, затем подстрока (в обе
    стороны), затем нечеткое совпадение rapidfuzz со score >= threshold.
    """
    query = name.strip().lower()
    if not query:
        return None

    for product in products:
        if product.name.lower() == query:
            return product

    for product in products:
        candidate = product.name.lower()
        if query in candidate or candidate in query:
            return product

    choices = {product.id: product.name.lower() for product in products}
    best = process.extractOne(query, choices, scorer=fuzz.token_sort_ratio)
    if not best:
        return None
    _, score, product_id = best
    if score < threshold:
        return None
    return next(p for p in products if p.id == product_id)


def find_products(products: List[Product], names: List[str]) -> List[Product]:
    """Совпадения для нескольких названий, без повторов, в порядке запроса"""
    found: List[Product] = []
    for name in names:
        product = find_product(products, name)
        if product is not None and product not in found:
            found.append(product)
    return found
