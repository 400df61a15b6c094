import asyncio
import logging
from typing import List, Optional

import httpx

from ..errors import ScraperFailure
from ..models import ProductCandidate, ProductQuery
from ..utils import parse_price, raise_if_cancelled
from .base import ProductScraper

logger = logging.getLogger(__name__)

TIKI_API = "https://tiki.vn/api/v2/products"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


def _candidate_from_item(item: dict) -> Optional[ProductCandidate]:
    price = parse_price(item.get("price"))
    if price is None:
        return None

    sold = item.get("quantity_sold")
    if isinstance(sold, dict):
        sold = sold.get("value")
    sold = sold or item.get("all_time_quantity_sold") or 0

    # Tiki reports 0.0 for "no reviews yet"; that is unrated, not a bad shop
    rating = item.get("rating_average")
    if not rating and not item.get("review_count"):
        rating = None

    url_path = item.get("url_path") or item.get("url_key")
    product_url = f"https://tiki.vn/{url_path.lstrip('/')}" if url_path else None

    return ProductCandidate(
        platform="tiki",
        title=item.get("name") or "",
        price=price,
        shop_name=item.get("seller_name") or (item.get("current_seller") or {}).get("name") or "Tiki",
        shop_rating=float(rating) if rating is not None else None,
        shop_sales=int(sold),
        product_url=product_url,
        thumbnail_url=item.get("thumbnail_url"),
        original_price=parse_price(item.get("original_price")),
        discount_percent=item.get("discount_rate"),
    )


class TikiScraper(ProductScraper):
    """Tiki's public JSON API (no key needed)."""

    platform = "tiki"

    def __init__(self, limit: int = 20, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.limit = limit
        self.timeout = timeout
        self.transport = transport

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> dict:
        try:
            r = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ScraperFailure(self.platform, f"request to {url} failed: {e}") from e
        if r.status_code >= 400:
            raise ScraperFailure(self.platform, f"HTTP {r.status_code} from {url}")
        return r.json()

    async def search_by_query(self, query: ProductQuery, cancel: Optional[asyncio.Event] = None) -> List[ProductCandidate]:
        raise_if_cancelled(cancel)
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}

        async with httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self.transport) as client:
            text = query.title_hint

            # Only an id: ask Tiki for the product name first
            if not text and query.platform == "tiki" and query.product_id:
                detail = await self._get_json(client, f"{TIKI_API}/{query.product_id}")
                text = detail.get("name")
                raise_if_cancelled(cancel)

            if not text:
                return []

            data = await self._get_json(client, TIKI_API, {"q": text, "limit": self.limit})
            raise_if_cancelled(cancel)

        items = data.get("data") or []
        logger.info("tiki: %d results for %r", len(items), text)
        return [c for c in (_candidate_from_item(it) for it in items) if c is not None]
