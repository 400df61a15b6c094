import logging
from typing import Iterable, List, Optional

from .. import config
from .base import ProductScraper
from .demo import DemoScraper
from .serp import SerpShoppingScraper, serp_get
from .tiki import TikiScraper

logger = logging.getLogger(__name__)

__all__ = [
    "ProductScraper",
    "DemoScraper",
    "SerpShoppingScraper",
    "TikiScraper",
    "build_scrapers",
    "serp_get",
]


def build_scrapers(names: Optional[Iterable[str]] = None, api_key: Optional[str] = None) -> List[ProductScraper]:
    """
    Build the fixed-at-startup scraper collection.

    "tiki" uses Tiki's public API. "shopee" / "lazada" go through SerpAPI
    Google Shopping when a key is configured and fall back to the offline
    DemoScraper otherwise. "demo:<platform>" forces the offline catalog.
    """
    names = list(names) if names is not None else config.SCRAPERS
    api_key = api_key if api_key is not None else config.SERPAPI_KEY

    scrapers: List[ProductScraper] = []
    for name in names:
        if name.startswith("demo:"):
            scrapers.append(DemoScraper(name.split(":", 1)[1]))
        elif name == "tiki":
            scrapers.append(TikiScraper())
        elif name in ("shopee", "lazada"):
            if api_key:
                scrapers.append(SerpShoppingScraper(name, api_key=api_key))
            else:
                logger.warning("SERPAPI_KEY not set, using offline demo catalog for %s", name)
                scrapers.append(DemoScraper(name))
        else:
            logger.warning("Unknown scraper %r in SCRAPERS, skipping", name)

    logger.info("Registered scrapers: %s", ", ".join(s.platform for s in scrapers) or "none")
    return scrapers
