import os
from typing import List, Optional

from .models import RecommendationOptions


def env_int(name: str, default: int, *, min_value: Optional[int] = None, max_value: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def env_float(name: str, default: float, *, min_value: Optional[float] = None, max_value: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


# MongoDB (search history)
MONGO_URL = os.getenv("MONGO_URL")
MONGO_DB = os.getenv("MONGO_DB", "pricewatch")
HISTORY_COLLECTION = os.getenv("HISTORY_COLLECTION", "search_history")
HISTORY_LIMIT = env_int("HISTORY_LIMIT", 50, min_value=1)

# Scrapers
SERPAPI_KEY = os.getenv("SERPAPI_KEY")
SCRAPERS = env_list("SCRAPERS", "shopee,lazada,tiki")
SCRAPER_TIMEOUT_SECONDS = env_float("SCRAPER_TIMEOUT_SECONDS", 8.0, min_value=0.5, max_value=60.0)

# Search pipeline
IMAGE_MATCH_THRESHOLD = env_float("IMAGE_MATCH_THRESHOLD", 0.7, min_value=-1.0, max_value=1.0)
SEARCH_WORKERS = env_int("SEARCH_WORKERS", 4, min_value=1, max_value=32)
MAX_IMAGE_BYTES = env_int("MAX_IMAGE_BYTES", 8 * 1024 * 1024, min_value=1024)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def load_recommendation_options() -> RecommendationOptions:
    """Build the ranking weights from the environment (read once at startup)."""
    return RecommendationOptions(
        weight_price=env_float("WEIGHT_PRICE", 0.7),
        weight_rating=env_float("WEIGHT_RATING", 0.2),
        weight_shipping=env_float("WEIGHT_SHIPPING", 0.1),
        weight_title=env_float("WEIGHT_TITLE", 0.0),
        trusted_shop_sales_threshold=env_int("TRUSTED_SHOP_SALES_THRESHOLD", 50, min_value=0),
        min_price_ratio=env_float("MIN_PRICE_RATIO", 0.3, min_value=0.0, max_value=1.0),
    )
