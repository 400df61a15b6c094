import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import ProductCandidate, ProductQuery


class ProductScraper(ABC):
    """
    One shopping platform behind a uniform "search by query" capability.

    Implementations may do network I/O and must check `cancel` before
    each request (see utils.raise_if_cancelled).
    """

    platform: str = ""

    @abstractmethod
    async def search_by_query(
        self, query: ProductQuery, cancel: Optional[asyncio.Event] = None
    ) -> List[ProductCandidate]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(platform={self.platform!r})"
