"""Tests for price parsing and page extraction."""

from decimal import Decimal

import pytest

from pricesync.ingest.price_extractor import extract_price, parse_price


@pytest.mark.parametrize(
    "text,expected",
    [
        ("$1,234.56", Decimal("1234.56")),
        ("1.234,56 Kč", Decimal("1234.56")),
        ("€99", Decimal("99.00")),
        ("12,99 €", Decimal("12.99")),
        ("1 299 Kč", Decimal("1299.00")),
        ("Sold Out", None),
        ("", None),
        (None, None),
        ("-5.00", None),
        ("1.2.3", None),
        ("9" * 40, None),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


def test_extract_from_itemprop_content():
    html = """
    <html><body>
      <span itemprop="price" content="49.90">49,90 USD</span>
      <meta itemprop="priceCurrency" content="eur">
      <span class="price">$10.00</span>
    </body></html>
    """
    result = extract_price(html)

    assert result.price == Decimal("49.90")
    assert result.currency == "EUR"
    assert result.availability is True


def test_extract_from_open_graph_meta():
    html = """
    <html><head>
      <meta property="product:price:amount" content="1299">
      <meta property="product:price:currency" content="czk">
    </head><body><h1>Widget</h1></body></html>
    """
    result = extract_price(html)

    assert result.price == Decimal("1299.00")
    assert result.currency == "CZK"


def test_extract_skips_unparseable_selector():
    html = """
    <html><body>
      <div data-price="">call for price</div>
      <div class="product-price">$19.99</div>
    </body></html>
    """
    assert extract_price(html).price == Decimal("19.99")


def test_extract_skips_oversized_number():
    long_id = "1" * 40
    html = f"""
    <html><body>
      <span itemprop="price" content="{long_id}"></span>
      <div class="product-price">$19.99</div>
    </body></html>
    """
    assert extract_price(html).price == Decimal("19.99")


def test_extract_out_of_stock():
    html = """
    <html><body>
      <div class="price">$25.00</div>
      <p>This item is currently Out of Stock.</p>
    </body></html>
    """
    result = extract_price(html)

    assert result.price == Decimal("25.00")
    assert result.availability is False
    assert result.currency == "USD"


def test_extract_localized_out_of_stock():
    html = "<html><body><span class='price'>199 Kč</span><b>Vyprodáno</b></body></html>"

    assert extract_price(html).availability is False


def test_extract_no_price():
    html = "<html><body><h1>Sold Out</h1></body></html>"
    result = extract_price(html)

    assert result.price is None
    assert result.availability is False


def test_extract_empty_document():
    assert extract_price("").price is None
