"""
Category classification for products coming from the ERP.

Maps an article code (SKU) and a display name to a storefront category,
subcategory and on-sale flag. Everything here is pure: no I/O, no state.
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_SOCKS_SUBCATEGORY = "Классические (40-45)"
CHILDREN_SOCKS = "Детские"

SOCK_CLASSIC = "Классические"
SOCK_ATHLETIC = "На спорт Резинке"
SOCK_SHORT = "Короткие"

SIZE_ADULT = "40-45"
SIZE_SMALL = "34-39"

CATEGORIES = {
    "clothing": {
        "name": "Одежда",
        "subcategories": ["Толстовки", "Свитшоты", "Свитера", "Шорты", "Футболки", "Куртки", "Брюки"],
    },
    "socks": {
        "name": "Носки",
        "subcategories": [
            f"{SOCK_CLASSIC} ({SIZE_ADULT})",
            f"{SOCK_CLASSIC} ({SIZE_SMALL})",
            f"{SOCK_ATHLETIC} ({SIZE_ADULT})",
            f"{SOCK_ATHLETIC} ({SIZE_SMALL})",
            f"{SOCK_SHORT} ({SIZE_ADULT})",
            f"{SOCK_SHORT} ({SIZE_SMALL})",
            CHILDREN_SOCKS,
        ],
    },
    "accessories": {
        "name": "Аксессуары",
        "subcategories": ["Кружки", "Ремни", "Сумки", "Шапки"],
    },
    "merch": {
        "name": "Мерч",
        "subcategories": ["JDM", "Тульские Дизайнеры", "ДИКАЯ МЯТА", "ГУДТАЙМС"],
    },
    "sale": {
        "name": "Распродажа",
        "subcategories": [],
    },
}

SOCK_SKU_PREFIXES = ("N", "№", "R", "G", "GR", "NK", "GK")
SOCK_NAME_KEYWORDS = ("носк", "sock", "№")

# prefix -> (sock type, size band)
SOCK_PREFIX_RULES = (
    ("GR", SOCK_ATHLETIC, SIZE_SMALL),
    ("GK", SOCK_SHORT, SIZE_SMALL),
    ("NK", SOCK_SHORT, SIZE_ADULT),
    ("R", SOCK_ATHLETIC, SIZE_ADULT),
    ("G", SOCK_CLASSIC, SIZE_SMALL),
    ("N", SOCK_CLASSIC, SIZE_ADULT),
    ("№", SOCK_CLASSIC, SIZE_ADULT),
)

SOCK_TYPE_KEYWORDS = (
    ("спортивн", SOCK_ATHLETIC),
    ("резинк", SOCK_ATHLETIC),
    ("классическ", SOCK_CLASSIC),
    ("№", SOCK_CLASSIC),
    ("коротк", SOCK_SHORT),
)

SIZE_KEYWORDS = (
    ("40-45", SIZE_ADULT),
    ("40/45", SIZE_ADULT),
    ("o/s", SIZE_ADULT),
    ("one size", SIZE_ADULT),
    ("34-39", SIZE_SMALL),
    ("34/39", SIZE_SMALL),
)

# Order matters: the first keyword found in the name wins.
NAME_KEYWORD_RULES = (
    ("худи", "clothing", "Толстовки"),
    ("толстов", "clothing", "Толстовки"),
    ("свитшот", "clothing", "Свитшоты"),
    ("свитер", "clothing", "Свитера"),
    ("шорт", "clothing", "Шорты"),
    ("футболк", "clothing", "Футболки"),
    ("куртк", "clothing", "Куртки"),
    ("брюк", "clothing", "Брюки"),
    ("кружк", "accessories", "Кружки"),
    ("ремен", "accessories", "Ремни"),
    ("ремн", "accessories", "Ремни"),
    ("сумк", "accessories", "Сумки"),
    ("шапк", "accessories", "Шапки"),
    ("jdm", "merch", "JDM"),
    ("тульск", "merch", "Тульские Дизайнеры"),
    ("дикая мята", "merch", "ДИКАЯ МЯТА"),
    ("гудтаймс", "merch", "ГУДТАЙМС"),
    ("goodtimes", "merch", "ГУДТАЙМС"),
)

SKU_PREFIX_RULES = (
    ("H", "clothing", "Толстовки"),
    ("SW", "clothing", "Свитшоты"),
    ("SV", "clothing", "Свитера"),
    ("SH", "clothing", "Шорты"),
    ("T", "clothing", "Футболки"),
    ("J", "clothing", "Куртки"),
    ("P", "clothing", "Брюки"),
    ("M", "accessories", "Кружки"),
    ("B", "accessories", "Ремни"),
    ("BG", "accessories", "Сумки"),
    ("C", "accessories", "Шапки"),
)

SALE_KEYWORDS = ("распродаж", "sale", "скидк")
SALE_THRESHOLD = 0.8


@dataclass(frozen=True)
class Classification:
    """Result of classifying a product."""
    category: str
    subcategory: Optional[str]
    on_sale: bool = False


def _longest_first(rules):
    # sorted() is stable, so equal-length prefixes keep declaration order
    return sorted(rules, key=lambda rule: len(rule[0]), reverse=True)


_SOCK_PREFIX_RULES = _longest_first(SOCK_PREFIX_RULES)
_SKU_PREFIX_RULES = _longest_first(SKU_PREFIX_RULES)


def is_sock(sku: str, name: str) -> bool:
    sku_upper = (sku or "").upper()
    name_lower = (name or "").lower()
    if any(sku_upper.startswith(prefix) for prefix in SOCK_SKU_PREFIXES):
        return True
    return any(keyword in name_lower for keyword in SOCK_NAME_KEYWORDS)


def socks_subcategory(sku: str, name: str) -> str:
    """
    Resolve the sock subcategory.

    Children's keyword in the name wins, then the SKU prefix table, then a
    keyword scan of the name for type and size band.
    """
    name_lower = (name or "").lower()
    sku_upper = (sku or "").upper()

    if "детск" in name_lower:
        return CHILDREN_SOCKS

    for prefix, sock_type, size in _SOCK_PREFIX_RULES:
        if sku_upper.startswith(prefix):
            return f"{sock_type} ({size})"

    sock_type = next(
        (label for keyword, label in SOCK_TYPE_KEYWORDS if keyword in name_lower),
        None,
    )
    size = next(
        (band for keyword, band in SIZE_KEYWORDS if keyword in name_lower),
        None,
    )

    if sock_type is None and size is None:
        return DEFAULT_SOCKS_SUBCATEGORY
    return f"{sock_type or SOCK_CLASSIC} ({size or SIZE_ADULT})"


def is_on_sale(name: str, price: Optional[int] = None, original_price: Optional[int] = None) -> bool:
    """
    Decide whether a product belongs to the sale section.

    True when the name carries a sale keyword, or when a reference price is
    known and the current price is below 80% of it.
    """
    name_lower = (name or "").lower()
    if any(keyword in name_lower for keyword in SALE_KEYWORDS):
        return True
    if original_price and price is not None and price < original_price * SALE_THRESHOLD:
        return True
    return False


def classify(
    sku: Optional[str],
    name: Optional[str],
    price: Optional[int] = None,
    original_price: Optional[int] = None,
) -> Classification:
    """
    Classify a product by SKU and name.

    Args:
        sku: Article code from the ERP (may be empty)
        name: Display name
        price: Current price in minor units, if known
        original_price: Reference price in minor units, if known

    Returns:
        Classification with category, subcategory and on-sale flag
    """
    sku = (sku or "").strip()
    name = name or ""
    on_sale = is_on_sale(name, price, original_price)

    if is_sock(sku, name):
        return Classification("socks", socks_subcategory(sku, name), on_sale)

    name_lower = name.lower()
    for keyword, category, subcategory in NAME_KEYWORD_RULES:
        if keyword in name_lower:
            return Classification(category, subcategory, on_sale)

    sku_upper = sku.upper()
    for prefix, category, subcategory in _SKU_PREFIX_RULES:
        if sku_upper.startswith(prefix):
            return Classification(category, subcategory, on_sale)

    return Classification("socks", DEFAULT_SOCKS_SUBCATEGORY, on_sale)
