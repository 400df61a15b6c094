import asyncio
import hashlib
import random
from typing import List, Optional

from ..models import ProductCandidate, ProductQuery
from ..utils import raise_if_cancelled
from .base import ProductScraper

# Rough VND price bands per platform so offline results look plausible
PRICE_BANDS = {
    "shopee": (100_000, 110_000),
    "lazada": (120_000, 132_000),
    "tiki": (110_000, 125_000),
}


class DemoScraper(ProductScraper):
    """
    Offline catalog for local development (no API keys, no network).

    Results are seeded from the platform and the query, so the same query
    always yields the same listings.
    """

    def __init__(self, platform: str, count: int = 5):
        self.platform = platform
        self.count = count

    def _rng(self, query: ProductQuery) -> random.Random:
        key = f"{self.platform}|{query.platform}|{query.product_id}|{query.search_text()}"
        seed = int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big")
        return random.Random(seed)

    async def search_by_query(self, query: ProductQuery, cancel: Optional[asyncio.Event] = None) -> List[ProductCandidate]:
        raise_if_cancelled(cancel)
        rng = self._rng(query)
        low, high = PRICE_BANDS.get(self.platform, (100_000, 150_000))
        name = query.title_hint or f"{self.platform.title()} item"

        return [
            ProductCandidate(
                platform=self.platform,
                title=f"{name} #{i}",
                price=float(rng.randint(low, high) // 1000 * 1000),
                shipping_cost=float(rng.randint(0, 30) * 1000),
                shop_name=f"{self.platform.title()} Shop {i}",
                shop_rating=round(4.0 + rng.random(), 2),
                shop_sales=rng.randint(10, 800),
                product_url=query.canonical_url,
            )
            for i in range(1, self.count + 1)
        ]
