import asyncio
import logging
import random
from typing import List, Optional

import httpx

from .. import config
from ..errors import ScraperFailure
from ..models import ProductCandidate, ProductQuery
from ..utils import parse_price, raise_if_cancelled
from .base import ProductScraper

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search.json"

# Core SerpAPI Request Helper
async def serp_get(
    url: str,
    q: dict,
    api_key: Optional[str] = None,
    platform: str = "serpapi",
    transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """
    Wrapper around SerpAPI HTTP GET.

    Features:
      - Adds API key + disables caching
      - Retries on 429 with exponential backoff
      - Retries on network errors/timeouts
      - Raises ScraperFailure on fatal errors
    """
    api_key = api_key or config.SERPAPI_KEY
    if not api_key:
        raise ScraperFailure(platform, "SERPAPI_KEY not set")

    # Inject API key + no cache
    q = {**q, "api_key": api_key, "no_cache": "true"}

    timeout = httpx.Timeout(connect=10.0, read=20.0, write=10.0, pool=10.0)

    async with httpx.AsyncClient(timeout=timeout, transport=transport) as c:
        last_err = None

        # Up to 3 attempts; the engine's per-scraper timeout bounds the total
        for attempt in range(3):
            try:
                r = await c.get(url, params=q)

                if r.status_code >= 400:
                    # Handle rate limit with retry
                    if r.status_code == 429 and attempt < 2:
                        await asyncio.sleep(0.5 * (2 ** attempt) + random.random() * 0.3)
                        continue

                    raise ScraperFailure(platform, f"SerpAPI HTTP {r.status_code}: {r.text[:200]}")

                return r.json()

            except httpx.TimeoutException as e:
                last_err = e
                if attempt < 2:
                    await asyncio.sleep(0.4 * (2 ** attempt) + random.random() * 0.3)
                    continue
                raise ScraperFailure(platform, "SerpAPI request timed out") from e

            except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
                last_err = e
                if attempt < 2:
                    await asyncio.sleep(0.3 * (2 ** attempt) + random.random() * 0.3)
                    continue
                raise ScraperFailure(platform, "Network error calling SerpAPI") from e

        raise ScraperFailure(platform, str(last_err) or "Unknown SerpAPI error")


def _shipping_from_delivery(delivery) -> float:
    """'Free delivery' -> 0, '$4.99 delivery' -> 4.99, unknown -> 0."""
    if not delivery:
        return 0.0
    text = str(delivery).lower()
    if "free" in text or "miễn phí" in text:
        return 0.0
    return parse_price(text) or 0.0


class SerpShoppingScraper(ProductScraper):
    """
    Google Shopping (via SerpAPI) restricted to one marketplace.

    Results whose `source` does not mention the platform are dropped, so a
    "shopee" scraper only returns Shopee listings.
    """

    def __init__(
        self,
        platform: str,
        api_key: Optional[str] = None,
        gl: str = "vn",
        hl: str = "vi",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.platform = platform
        self.transport = transport
        self.api_key = api_key
        self.gl = gl
        self.hl = hl

    async def search_by_query(self, query: ProductQuery, cancel: Optional[asyncio.Event] = None) -> List[ProductCandidate]:
        raise_if_cancelled(cancel)
        text = query.search_text()
        if not text:
            return []

        data = await serp_get(
            SERPAPI_URL,
            {
                "engine": "google_shopping",
                "q": text,
                "hl": self.hl,
                "gl": self.gl,
            },
            api_key=self.api_key,
            platform=self.platform,
            transport=self.transport,
        )
        raise_if_cancelled(cancel)

        results = data.get("shopping_results") or []
        logger.info("%s: %d Google Shopping results for %r", self.platform, len(results), text)

        offers: List[ProductCandidate] = []
        for r in results:
            # Source can be a string or object
            src = r.get("source")
            if isinstance(src, dict):
                src = src.get("link") or src.get("name")
            if not src or self.platform not in str(src).lower():
                continue

            price = parse_price(r.get("extracted_price") or r.get("price"))
            if price is None:
                continue

            rating = r.get("rating")
            offers.append(
                ProductCandidate(
                    platform=self.platform,
                    title=r.get("title") or "",
                    price=float(price),
                    shipping_cost=_shipping_from_delivery(r.get("delivery")),
                    shop_name=str(src),
                    shop_rating=float(rating) if rating is not None else None,
                    shop_sales=int(r.get("reviews") or 0),
                    product_url=r.get("product_link") or r.get("link"),
                    thumbnail_url=r.get("thumbnail"),
                    original_price=parse_price(r.get("extracted_old_price") or r.get("old_price")),
                )
            )

        return offers
