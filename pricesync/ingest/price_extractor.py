"""Price, currency and availability extraction from competitor product pages."""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from selectolax.parser import HTMLParser, Node

logger = logging.getLogger(__name__)

# Ordered from most to least specific; first parseable value wins
PRICE_SELECTORS: List[str] = [
    '[itemprop="price"]',
    'meta[property="product:price:amount"]',
    'meta[property="og:price:amount"]',
    '[data-price]',
    '[data-product-price]',
    '.price__current',
    '.product-price',
    '.price',
    '[class*="price"]',
    '[class*="Price"]',
]

CURRENCY_SELECTORS: List[str] = [
    '[itemprop="priceCurrency"]',
    'meta[property="product:price:currency"]',
    'meta[property="og:price:currency"]',
]

OUT_OF_STOCK_PHRASES: List[str] = [
    "out of stock",
    "sold out",
    "unavailable",
    "not available",
    "vyprodáno",
    "nedostupné",
    "ausverkauft",
    "agotado",
    "épuisé",
    "esaurito",
]

DEFAULT_CURRENCY = "USD"

_NON_PRICE_CHARS = re.compile(r"[^\d.,-]")
_CENTS = Decimal("0.01")


@dataclass
class ExtractedPrice:
    """Result of extracting pricing signals from one page."""

    price: Optional[Decimal]
    currency: str = DEFAULT_CURRENCY
    availability: bool = True


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a human-formatted price string.

    The later of '.' and ',' is taken as the decimal separator when both
    appear; a lone ',' is a decimal separator.

    Args:
        text: Raw price text, e.g. "$1,234.56" or "1.234,56 Kč"

    Returns:
        Price rounded to cents, or None if not a non-negative number
    """
    if not text:
        return None

    cleaned = _NON_PRICE_CHARS.sub("", text)
    if not cleaned:
        return None

    has_dot = "." in cleaned
    has_comma = "," in cleaned
    if has_dot and has_comma:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif has_comma:
        cleaned = cleaned.replace(",", ".")

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None

    if not value.is_finite() or value < 0:
        return None
    try:
        return value.quantize(_CENTS)
    except InvalidOperation:
        # More digits than the decimal context holds; not a price
        return None


def _node_value(node: Node) -> str:
    attrs = node.attributes
    for attr in ("content", "data-price", "data-product-price"):
        value = attrs.get(attr)
        if value:
            return value
    return node.text(strip=True)


def _find_price(parser: HTMLParser) -> Optional[Decimal]:
    for selector in PRICE_SELECTORS:
        node = parser.css_first(selector)
        if node is None:
            continue
        price = parse_price(_node_value(node))
        if price is not None:
            logger.debug(f"Price matched selector {selector}: {price}")
            return price
    return None


def _find_currency(parser: HTMLParser) -> str:
    for selector in CURRENCY_SELECTORS:
        node = parser.css_first(selector)
        if node is None:
            continue
        value = _node_value(node).strip()
        if value:
            return value.upper()
    return DEFAULT_CURRENCY


def _is_available(parser: HTMLParser) -> bool:
    root = parser.body or parser.root
    text = root.text(separator=" ").lower() if root is not None else ""
    return not any(phrase in text for phrase in OUT_OF_STOCK_PHRASES)


def extract_price(html: str) -> ExtractedPrice:
    """
    Extract price, currency and availability from a product page.

    Args:
        html: Raw HTML returned by the scraping provider

    Returns:
        ExtractedPrice; ``price`` is None when no selector yields a number
    """
    if not html:
        return ExtractedPrice(price=None)

    parser = HTMLParser(html)
    return ExtractedPrice(
        price=_find_price(parser),
        currency=_find_currency(parser),
        availability=_is_available(parser),
    )
