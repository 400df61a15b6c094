"""Error taxonomy shared by the link processor, scrapers and the search pipeline.

Every error carries a short `user_message` that is safe to show in a
Failed status record (no stack traces, no internals).
"""

from typing import Optional


class PriceWatchError(Exception):
    user_message = "Processing failed. Please try again later."

    def __init__(self, detail: str = "", user_message: Optional[str] = None):
        super().__init__(detail or self.user_message)
        if user_message:
            self.user_message = user_message


class InvalidInput(PriceWatchError, ValueError):
    user_message = "The product URL or keyword is not valid."


class ProductIdNotFound(InvalidInput):
    user_message = "Could not find a product id in the URL. Please use a product detail link."


class UnsupportedPlatform(PriceWatchError):
    user_message = "This platform is not supported yet (Shopee, Lazada and Tiki only)."


class DecodeError(PriceWatchError):
    user_message = "Unsupported or corrupt image. Please upload a PNG, JPG, GIF or WEBP file."


class DimensionMismatch(PriceWatchError, ValueError):
    pass


class ScraperFailure(PriceWatchError):
    """Raised by a scraper; the recommendation engine absorbs it."""

    def __init__(self, platform: str, detail: str = ""):
        super().__init__(f"{platform}: {detail}" if detail else platform)
        self.platform = platform


class PipelineFailure(PriceWatchError):
    pass


class SearchCancelled(PriceWatchError):
    user_message = "Search was cancelled."


class DuplicateSearchId(PriceWatchError, KeyError):
    pass
