"""Competitor store listing scraper used to collect matching candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import httpx
from selectolax.parser import HTMLParser, Node
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.config import Settings, settings as default_settings
from pricesync.ingest.budget import BudgetedScraper
from pricesync.ingest.price_extractor import parse_price

logger = logging.getLogger(__name__)

# Listing card wrappers; the first selector matching more than
# MIN_CARDS_FOR_SELECTOR nodes is used for the whole page
PRODUCT_SELECTORS: List[str] = [
    "[data-product-id]",
    "[data-product]",
    ".product-item",
    ".product-card",
    ".product",
    ".product-tile",
    ".product-grid-item",
]

NAME_SELECTORS: List[str] = [
    ".product-title",
    ".product-name",
    ".card-title",
    "h2 a",
    "h3 a",
    "h2",
    "h3",
    "a[title]",
]

PRICE_SELECTORS: List[str] = [
    ".price",
    ".product-price",
    "[data-price]",
    "[data-product-price]",
    ".price__current",
]

MIN_CARDS_FOR_SELECTOR = 3
MIN_PRODUCTS_TO_CONTINUE = 3
SHOPIFY_PAGE_LIMIT = 250


@dataclass
class CandidateProduct:
    """A product found on a competitor store."""

    id: str
    name: str
    url: str
    price: Optional[Decimal] = None
    sku: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class ListingScrapeResult:
    """Candidates collected from one competitor store."""

    candidates: List[CandidateProduct] = field(default_factory=list)
    pages_fetched: int = 0
    deferred: bool = False
    error: Optional[str] = None
    source: str = "html"  # html, shopify


def is_shopify_url(url: str) -> bool:
    """Best-effort Shopify detection from the URL alone."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    path = parsed.path.lower()
    return (
        host.endswith("myshopify.com")
        or "/collections" in path
        or "/products" in path
    )


def store_base_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url
    return f"{parsed.scheme}://{parsed.netloc}"


def listing_page_urls(base_url: str, max_pages: int) -> List[str]:
    """Page 1 is the URL itself; later pages append a ``page`` parameter."""
    urls = [base_url]
    separator = "&" if "?" in base_url else "?"
    for page in range(2, max_pages + 1):
        urls.append(f"{base_url}{separator}page={page}")
    return urls


def _first_text(node: Node, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        found = node.css_first(selector)
        if found is None:
            continue
        text = found.text(strip=True)
        if text:
            return text
    return None


def _first_price(node: Node) -> Optional[Decimal]:
    for selector in PRICE_SELECTORS:
        found = node.css_first(selector)
        if found is None:
            continue
        raw = found.text(strip=True) or found.attributes.get("data-price") or ""
        price = parse_price(raw)
        if price is not None:
            return price
    return None


def parse_listing_html(html: str, page_url: str) -> List[CandidateProduct]:
    """
    Parse product cards from a generic listing page.

    Args:
        html: Listing page HTML
        page_url: URL the page was fetched from (for absolute links)

    Returns:
        Candidates with a name and URL; price may be None
    """
    parser = HTMLParser(html)

    cards: List[Node] = []
    for selector in PRODUCT_SELECTORS:
        found = parser.css(selector)
        if len(found) > MIN_CARDS_FOR_SELECTOR:
            cards = found
            break

    products: List[CandidateProduct] = []
    for card in cards:
        name = _first_text(card, NAME_SELECTORS)
        if not name:
            continue

        link = card.css_first("a[href]")
        href = link.attributes.get("href") if link is not None else None
        if not href:
            continue
        url = urljoin(page_url, href)

        products.append(
            CandidateProduct(
                id=url,
                name=name,
                url=url,
                price=_first_price(card),
                external_id=card.attributes.get("data-product-id"),
            )
        )
    return products


def parse_shopify_products(payload: dict, base_url: str) -> List[CandidateProduct]:
    """Convert a Shopify ``/products.json`` payload into candidates."""
    products = payload.get("products") if isinstance(payload, dict) else None
    if not isinstance(products, list):
        return []

    candidates: List[CandidateProduct] = []
    for item in products:
        handle = item.get("handle")
        if not handle:
            continue
        variants = item.get("variants") or []
        variant = variants[0] if variants else {}
        url = f"{base_url}/products/{handle}"
        candidates.append(
            CandidateProduct(
                id=url,
                name=item.get("title") or "Unknown product",
                url=url,
                price=parse_price(str(variant.get("price") or "")),
                sku=variant.get("sku") or None,
                external_id=str(item["id"]) if item.get("id") is not None else None,
            )
        )
    return candidates


def dedupe_by_url(products: List[CandidateProduct]) -> List[CandidateProduct]:
    seen: set[str] = set()
    result: List[CandidateProduct] = []
    for product in products:
        if not product.url or product.url in seen:
            continue
        seen.add(product.url)
        result.append(product)
    return result


class CompetitorListingScraper:
    """
    Collects candidate products from a competitor store.

    Shopify stores are read through their public ``/products.json`` endpoint,
    which costs nothing. Everything else goes page by page through the
    budget-gated provider.
    """

    def __init__(
        self,
        scraper: BudgetedScraper,
        config: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.scraper = scraper
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self.config.scraping_timeout_seconds),
                follow_redirects=True,
            )
        return self._client

    async def _scrape_shopify(self, competitor_url: str) -> List[CandidateProduct]:
        base = store_base_url(competitor_url)
        client = await self._get_client()
        try:
            resp = await client.get(
                f"{base}/products.json", params={"limit": SHOPIFY_PAGE_LIMIT}
            )
        except httpx.HTTPError as e:
            logger.warning(f"Shopify products.json failed for {base}: {e}")
            return []

        if resp.status_code != 200:
            logger.warning(f"Shopify products.json returned {resp.status_code} for {base}")
            return []

        try:
            payload = resp.json()
        except ValueError:
            logger.warning(f"Shopify products.json for {base} is not JSON")
            return []
        return parse_shopify_products(payload, base)

    async def scrape(
        self,
        db: AsyncSession,
        user_id: str,
        competitor_url: str,
        max_pages: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ListingScrapeResult:
        """
        Collect candidate products from a competitor store.

        Args:
            db: Database session (budget ledger)
            user_id: Budget owner
            competitor_url: Store or collection URL
            max_pages: Listing page cap (defaults to config)
            now: Current time for budget accounting (naive UTC)

        Returns:
            ListingScrapeResult with de-duplicated candidates
        """
        if is_shopify_url(competitor_url):
            candidates = await self._scrape_shopify(competitor_url)
            if candidates:
                logger.info(f"Found {len(candidates)} Shopify products at {competitor_url}")
                return ListingScrapeResult(candidates=dedupe_by_url(candidates), source="shopify")

        result = ListingScrapeResult()
        collected: List[CandidateProduct] = []
        for page_url in listing_page_urls(competitor_url, max_pages or self.config.listing_max_pages):
            scraped = await self.scraper.scrape(db, user_id, page_url, now=now)
            if scraped.deferred:
                result.deferred = True
                result.error = scraped.error
                break
            if scraped.is_config_error:
                result.error = scraped.error
                break
            if not scraped.success:
                logger.warning(f"Listing page {page_url} failed: {scraped.error}")
                continue

            result.pages_fetched += 1
            page_products = parse_listing_html(scraped.data or "", page_url)
            collected.extend(page_products)
            if len(page_products) < MIN_PRODUCTS_TO_CONTINUE:
                break

        result.candidates = dedupe_by_url(collected)
        logger.info(
            f"Collected {len(result.candidates)} candidates from {competitor_url} "
            f"over {result.pages_fetched} page(s)"
        )
        return result

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
