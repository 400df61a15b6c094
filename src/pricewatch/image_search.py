import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import ProductQuery

logger = logging.getLogger(__name__)


class ImageSearchService(ABC):
    """Turns an uploaded image into candidate product queries."""

    @abstractmethod
    async def search_by_image(self, data: bytes, cancel: Optional[asyncio.Event] = None) -> List[ProductQuery]:
        raise NotImplementedError


class NullImageSearch(ImageSearchService):
    """
    No visual search backend configured.

    Image jobs then need a title hint from the client (sent as the job's
    query_override); the uploaded picture is still used to validate
    candidate thumbnails.
    """

    async def search_by_image(self, data: bytes, cancel: Optional[asyncio.Event] = None) -> List[ProductQuery]:
        logger.info("No image search backend configured, %d byte image not resolved", len(data))
        return []
