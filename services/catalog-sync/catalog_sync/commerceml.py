"""
CommerceML 2 documents: parsing catalog/offers feeds and exporting orders.

Namespaces are stripped on parse; 1C emits documents with and without the
CommerceML namespace depending on its version.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional

from catalog_sync.exceptions import MalformedFeedError
from catalog_sync.models import CatalogEntry, CommerceMLFeed, OfferEntry, Order

logger = logging.getLogger(__name__)

ROOT_TAG = "КоммерческаяИнформация"
SCHEMA_VERSION = "2.04"
CURRENCY = "RUB"

SIZE_KEYWORD = "размер"
COLOR_KEYWORD = "цвет"


def _strip_namespaces(root: ET.Element) -> None:
    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.rsplit("}", 1)[1]


def _text(element: ET.Element, path: str) -> Optional[str]:
    child = element.find(path)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def _append_unique(values: list, value: Optional[str]) -> None:
    if value and value not in values:
        values.append(value)


def parse_price(raw: Optional[str]) -> Optional[int]:
    """
    Convert a decimal price string to integer minor units.

    Accepts comma or dot as the fractional separator and ignores spaces
    used as thousands separators. Rounds half up.

    Returns:
        Price in minor units, or None if the text is not a non-negative number
    """
    if raw is None:
        return None
    text = raw.replace("\xa0", "").replace(" ", "").replace(",", ".").strip()
    if not text:
        return None
    try:
        value = Decimal(text)
        if not value.is_finite() or value < 0:
            return None
        # Values beyond the decimal context precision cannot be quantized
        return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None


def _parse_product(element: ET.Element) -> CatalogEntry:
    sizes: list[str] = []
    colors: list[str] = []
    for characteristic in element.findall("./ХарактеристикиТовара/ХарактеристикаТовара"):
        name = (_text(characteristic, "Наименование") or "").lower()
        value = _text(characteristic, "Значение")
        if SIZE_KEYWORD in name:
            _append_unique(sizes, value)
        elif COLOR_KEYWORD in name:
            _append_unique(colors, value)

    return CatalogEntry(
        external_id=_text(element, "Ид"),
        name=_text(element, "Наименование"),
        description=_text(element, "Описание"),
        sku=_text(element, "Артикул"),
        image=_text(element, "Картинка"),
        sizes=sizes,
        colors=colors,
    )


def _parse_offer(element: ET.Element) -> OfferEntry:
    external_id = _text(element, "Ид")
    if external_id:
        # Characteristic offers are "<product id>#<characteristic id>"
        external_id = external_id.split("#", 1)[0].strip() or None
    raw_price = _text(element, "./Цены/Цена/ЦенаЗаЕдиницу")
    return OfferEntry(
        external_id=external_id,
        price=parse_price(raw_price),
        raw_price=raw_price,
    )


def parse_feed(data: bytes, filename: Optional[str] = None) -> CommerceMLFeed:
    """
    Parse a CommerceML catalog (import.xml) or offers (offers.xml) document.

    Args:
        data: Raw XML bytes
        filename: Name used in errors and logs

    Returns:
        CommerceMLFeed with product and offer entries in document order

    Raises:
        MalformedFeedError: If the bytes are not well-formed CommerceML
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedFeedError(
            message=f"Malformed XML: {e}",
            filename=filename,
            original_exception=e,
        )

    _strip_namespaces(root)
    if root.tag != ROOT_TAG:
        raise MalformedFeedError(
            message=f"Unexpected root element {root.tag!r}",
            filename=filename,
        )

    feed = CommerceMLFeed(
        products=[_parse_product(e) for e in root.findall("./Каталог/Товары/Товар")],
        offers=[_parse_offer(e) for e in root.findall("./ПакетПредложений/Предложения/Предложение")],
    )
    logger.info(
        f"Parsed {len(feed.products)} products and {len(feed.offers)} offers",
        extra={"filename": filename},
    )
    return feed


def format_amount(minor_units: int) -> str:
    return f"{Decimal(minor_units) / 100:.2f}"


def _sub(parent: ET.Element, tag: str, text=None) -> ET.Element:
    element = ET.SubElement(parent, tag)
    if text is not None:
        element.text = str(text)
    return element


def export_orders(
    orders: Iterable[Order],
    external_ids: Optional[Mapping[int, str]] = None,
    generated_at: Optional[datetime] = None,
) -> bytes:
    """
    Serialize orders as a CommerceML document, one ``Документ`` per order.

    Args:
        orders: Orders to export
        external_ids: Product id to ERP external id; unknown ids export as-is
        generated_at: Timestamp for ``ДатаФормирования``

    Returns:
        UTF-8 encoded XML
    """
    external_ids = external_ids or {}
    generated_at = generated_at or datetime.utcnow()

    root = ET.Element(
        ROOT_TAG,
        {"ВерсияСхемы": SCHEMA_VERSION, "ДатаФормирования": generated_at.isoformat(timespec="seconds")},
    )
    for order in orders:
        document = _sub(root, "Документ")
        _sub(document, "Ид", order.id)
        _sub(document, "Номер", order.id)
        _sub(document, "Дата", order.created_at.date().isoformat())
        _sub(document, "ХозОперация", "Заказ товара")
        _sub(document, "Роль", "Продавец")
        _sub(document, "Валюта", CURRENCY)
        _sub(document, "Курс", 1)
        _sub(document, "Сумма", format_amount(order.total))

        counterparty = _sub(_sub(document, "Контрагенты"), "Контрагент")
        _sub(counterparty, "Ид", order.customer_email)
        _sub(counterparty, "Наименование", order.customer_name)
        _sub(counterparty, "Роль", "Покупатель")
        _sub(counterparty, "ПолноеНаименование", order.customer_name)
        if order.address:
            _sub(_sub(counterparty, "АдресРегистрации"), "Представление", order.address)
        if order.customer_phone:
            contact = _sub(_sub(counterparty, "Контакты"), "Контакт")
            _sub(contact, "Тип", "Телефон рабочий")
            _sub(contact, "Значение", order.customer_phone)

        items = _sub(document, "Товары")
        for item in order.items:
            line = _sub(items, "Товар")
            _sub(line, "Ид", external_ids.get(item.product_id, str(item.product_id)))
            _sub(line, "Наименование", item.name)
            _sub(line, "ЦенаЗаЕдиницу", format_amount(item.price))
            _sub(line, "Количество", item.quantity)
            _sub(line, "Сумма", format_amount(item.price * item.quantity))

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
