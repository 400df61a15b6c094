"""
Link processing: turn a raw product URL into a ProductQuery.

Every supported platform is one entry in PLATFORMS plus one extraction
function. An extraction function receives the lowercased host, the URL
path and the query parameters the platform recognises, and returns
(product_id, canonical_url). Adding a platform never touches the others.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

from .errors import InvalidInput, ProductIdNotFound, UnsupportedPlatform
from .models import ProductQuery
from .utils import norm

# Shopee: ".../Some-Product-i.123.456" or the canonical "/product/123/456"
SHOPEE_ID_RE = re.compile(r"i\.(?P<shop>\d+)\.(?P<item>\d+)", re.I)
SHOPEE_CANONICAL_RE = re.compile(r"^/product/(?P<shop>\d+)/(?P<item>\d+)/?$", re.I)

# Lazada: numeric suffix after "-s" in the last path segment ("...-s98765.html")
LAZADA_ID_RE = re.compile(r"-s(?P<item>\d+)(?:\.html?)?$", re.I)

# Tiki: numeric suffix after "-p" in the last path segment ("...-p123456.html")
TIKI_ID_RE = re.compile(r"-p(?P<item>\d+)(?:\.html?)?$", re.I)

# Identifier suffixes stripped when deriving a title hint from the slug
ID_SUFFIX_RE = re.compile(r"(?:-?i\.\d+\.\d+|-i\d+|-s\d+|-p\d+)+$", re.I)

ExtractFn = Callable[[str, str, Dict[str, str]], Tuple[str, str]]


@dataclass(frozen=True)
class PlatformRule:
    name: str
    host_keyword: str
    extract: ExtractFn
    keep_params: Tuple[str, ...] = ()


def _last_segment(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    return segments[-1] if segments else ""


def _extract_shopee(host: str, path: str, params: Dict[str, str]) -> Tuple[str, str]:
    m = SHOPEE_CANONICAL_RE.match(path) or SHOPEE_ID_RE.search(path)
    if not m:
        raise ProductIdNotFound(f"no i.<shop>.<item> segment in {path!r}")
    shop, item = m.group("shop"), m.group("item")
    return f"i.{shop}.{item}", f"https://{host}/product/{shop}/{item}"


def _extract_lazada(host: str, path: str, params: Dict[str, str]) -> Tuple[str, str]:
    m = LAZADA_ID_RE.search(_last_segment(path))
    if not m:
        raise ProductIdNotFound(f"no -s<id> suffix in {path!r}")
    item = m.group("item")
    return item, f"https://{host}/products/-s{item}.html"


def _extract_tiki(host: str, path: str, params: Dict[str, str]) -> Tuple[str, str]:
    spid = params.get("spid", "")
    m = TIKI_ID_RE.search(_last_segment(path))
    if spid.isdigit():
        item = spid
    elif m:
        item = m.group("item")
    else:
        raise ProductIdNotFound(f"no -p<id> suffix in {path!r}")
    return item, f"https://{host}/p{item}.html"


PLATFORMS: Tuple[PlatformRule, ...] = (
    PlatformRule("shopee", "shopee", _extract_shopee),
    PlatformRule("lazada", "lazada", _extract_lazada),
    PlatformRule("tiki", "tiki", _extract_tiki, keep_params=("spid",)),
)


def _split_absolute(url: str):
    if not url or not isinstance(url, str):
        raise InvalidInput("empty URL")
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError as e:
        raise InvalidInput(f"malformed URL {url!r}: {e}") from e
    if parts.scheme.lower() not in ("http", "https") or not host:
        raise InvalidInput(f"not an absolute http(s) URL: {url!r}")
    return parts, host.lower()


def detect_platform(host: str) -> PlatformRule:
    host = (host or "").lower()
    for rule in PLATFORMS:
        if rule.host_keyword in host:
            return rule
    raise UnsupportedPlatform(f"host {host!r} does not match any known platform")


def is_supported_url(url: str) -> bool:
    """True when the URL is well formed and its host is a known platform."""
    try:
        _, host = _split_absolute(url)
        detect_platform(host)
    except (InvalidInput, UnsupportedPlatform):
        return False
    return True


def normalize_url(url: str) -> str:
    """
    Strip the fragment and every tracking parameter.

    Only parameters the platform itself recognises (e.g. Tiki's `spid`)
    survive. Raises InvalidInput / UnsupportedPlatform like process_url.
    """
    parts, host = _split_absolute(url)
    rule = detect_platform(host)
    kept = [(k, v) for k, v in parse_qsl(parts.query) if k in rule.keep_params]
    return urlunsplit((parts.scheme.lower(), host, parts.path, urlencode(kept), ""))


def title_from_path(path: str) -> Optional[str]:
    """Turn a product slug like 'dau-goi-dove-p123.html' into 'dau goi dove'."""
    seg = unquote(_last_segment(path))
    seg = re.sub(r"\.html?$", "", seg, flags=re.I)
    seg = ID_SUFFIX_RE.sub("", seg)
    cleaned = " ".join(seg.replace("-", " ").replace("_", " ").split())
    if not cleaned or cleaned.isdigit():
        return None
    return cleaned


def process_url(url: str) -> ProductQuery:
    """
    Resolve a product URL into a ProductQuery.

    Raises:
      - InvalidInput: not a well-formed absolute URL
      - UnsupportedPlatform: host is not in PLATFORMS
      - ProductIdNotFound: host is known but the identifier pattern is missing
    """
    parts, host = _split_absolute(url)
    rule = detect_platform(host)
    params = {k: v for k, v in parse_qsl(parts.query) if k in rule.keep_params}
    product_id, canonical = rule.extract(host, parts.path, params)

    return ProductQuery(
        platform=rule.name,
        product_id=product_id,
        canonical_url=canonical,
        title_hint=title_from_path(parts.path),
        metadata={"normalized_url": normalize_url(url)},
    )


def keyword_query(text: str) -> ProductQuery:
    if not text or not text.strip():
        raise InvalidInput("empty keyword")
    return ProductQuery(title_hint=norm(text) or " ".join(text.split()))


def classify_input(text: str) -> ProductQuery:
    """
    Decide whether free-form input is a product URL or a keyword.

    Anything with a scheme (or starting with "www.") goes through
    process_url; everything else becomes a keyword query.
    """
    if not text or not text.strip():
        raise InvalidInput("empty input")
    text = text.strip()
    if "://" in text:
        return process_url(text)
    if text.lower().startswith("www."):
        return process_url("https://" + text)
    return keyword_query(text)
