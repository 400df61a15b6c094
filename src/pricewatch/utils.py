import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx

from .errors import SearchCancelled

logger = logging.getLogger(__name__)

# Regex Helpers

# Price pattern: captures floats or ints like "12.99", "$19.00", "199000"
PRICE_RE = re.compile(r"(\d+(?:\.\d{1,2})?)")

# Words to remove when normalizing product titles / keywords
STOPWORDS = {
    "with", "and", "the", "for", "in", "of", "to", "by", "on",
    "chinh", "hang", "freeship", "sale", "gia", "re",
}

# Time / Date Helpers
def now_utc() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)

# Price Parsing
def parse_price(v) -> Optional[float]:
    """
    Convert various raw price formats into a float.

    Accepts:
      - int / float
      - dicts like {"value": "12.99", ...}
      - strings like "$12.99", "199,000", "199.000 ₫"

    Returns:
      float or None
    """
    if v is None:
        return None
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, dict):
        for k in ("value", "raw", "price", "extracted"):
            if k in v:
                return parse_price(v[k])
        return None
    s = str(v).replace(",", "")
    # VND style thousands separators: "199.000"
    if re.fullmatch(r"\D*\d{1,3}(?:\.\d{3})+\D*", s):
        s = s.replace(".", "")
    m = PRICE_RE.search(s)
    return float(m.group(1)) if m else None

def median(values: Iterable[float]) -> float:
    ordered = sorted(values)
    if not ordered:
        return 0.0
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]

# Title Normalization
def norm(s: str) -> str:
    """
    Normalize a product title or keyword:
      - Lowercase
      - Strip non-alphanumeric chars (unicode letters are kept)
      - Remove STOPWORDS
    """
    if not s:
        return ""
    s = re.sub(r"[^\w ]+|_", " ", s.lower())
    toks = [t for t in s.split() if t and t not in STOPWORDS]
    return " ".join(toks)

# Cancellation
def raise_if_cancelled(cancel: Optional[asyncio.Event]) -> None:
    """Checked at every suspension point of a search job."""
    if cancel is not None and cancel.is_set():
        raise SearchCancelled()

# Image Downloading
async def fetch_image_bytes(url: str, client: Optional[httpx.AsyncClient] = None) -> Optional[bytes]:
    """Download image bytes with a 10s timeout. Returns None on failure."""
    if not url:
        return None
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=10.0, follow_redirects=True) as c:
                r = await c.get(url)
        else:
            r = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning("Thumbnail fetch failed for %s: %s", url, e)
        return None
    if r.status_code != 200:
        logger.warning("Thumbnail fetch for %s returned HTTP %s", url, r.status_code)
        return None
    return r.content
