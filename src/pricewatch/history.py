import asyncio
import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING

from .models import ProductCandidate, ProductQuery, SearchHistoryEntry
from .utils import now_utc, raise_if_cancelled

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


def _entry_from_doc(doc: dict) -> SearchHistoryEntry:
    return SearchHistoryEntry(
        history_id=str(doc["_id"]),
        search_id=doc.get("search_id"),
        user_id=doc.get("user_id"),
        search_type=doc.get("search_type"),
        input_content=doc.get("input_content"),
        detected_keyword=doc.get("detected_keyword"),
        platform=doc.get("platform"),
        product_id=doc.get("product_id"),
        best_price_found=doc.get("best_price_found"),
        result_count=doc.get("result_count") or 0,
        search_time=doc.get("search_time"),
    )


class SearchHistoryService:
    """
    Per-user search history stored in a MongoDB collection (motor).

    Each insert prunes the user's oldest entries so at most `limit` remain.
    The entry just inserted is never a pruning candidate, even if its
    timestamp sorts before older rows.
    """

    def __init__(self, collection, limit: int = HISTORY_LIMIT):
        self.collection = collection
        self.limit = limit

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("search_time", DESCENDING)])

    async def save_search_history(
        self,
        search_id: str,
        user_id: Optional[int],
        search_type,
        input_content: str,
        query: ProductQuery,
        results: Iterable[ProductCandidate],
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        if user_id is None:
            logger.debug("Anonymous search %s, not saving history", search_id)
            return None

        raise_if_cancelled(cancel)
        results = list(results)

        doc = {
            "search_id": search_id,
            "user_id": user_id,
            "search_type": getattr(search_type, "value", search_type),
            "input_content": input_content,
            "detected_keyword": query.title_hint,
            "platform": query.platform,
            "product_id": query.product_id,
            "canonical_url": query.canonical_url,
            "best_price_found": min((r.total_cost for r in results), default=None),
            "result_count": len(results),
            "results": [r.model_dump(mode="json") for r in results],
            "search_time": now_utc(),
        }
        inserted = await self.collection.insert_one(doc)
        await self._enforce_limit(user_id, inserted.inserted_id)

        logger.info("Saved search history %s for user %s", search_id, user_id)
        return str(inserted.inserted_id)

    async def _enforce_limit(self, user_id: int, keep_id) -> None:
        total = await self.collection.count_documents({"user_id": user_id})
        excess = total - self.limit
        if excess <= 0:
            return

        cursor = (
            self.collection.find({"user_id": user_id, "_id": {"$ne": keep_id}}, {"_id": 1})
            .sort([("search_time", ASCENDING), ("_id", ASCENDING)])
            .limit(excess)
        )
        stale = [d["_id"] for d in await cursor.to_list(length=excess)]
        if stale:
            res = await self.collection.delete_many({"_id": {"$in": stale}})
            logger.info("Pruned %d old history entries for user %s", res.deleted_count, user_id)

    async def get_user_history(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        keyword: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SearchHistoryEntry]:
        match: dict = {"user_id": user_id}
        if keyword:
            pattern = {"$regex": re.escape(keyword), "$options": "i"}
            match["$or"] = [{"input_content": pattern}, {"detected_keyword": pattern}]
        if start or end:
            match["search_time"] = {}
            if start:
                match["search_time"]["$gte"] = start
            if end:
                match["search_time"]["$lte"] = end

        page = max(page, 1)
        cursor = (
            self.collection.find(match, {"results": 0})
            .sort([("search_time", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * page_size)
            .limit(page_size)
        )
        return [_entry_from_doc(d) for d in await cursor.to_list(length=page_size)]

    async def delete_history(self, user_id: int, history_id: str) -> bool:
        try:
            oid = ObjectId(history_id)
        except (InvalidId, TypeError):
            return False
        res = await self.collection.delete_one({"_id": oid, "user_id": user_id})
        return res.deleted_count > 0

    async def clear_history(self, user_id: int) -> int:
        res = await self.collection.delete_many({"user_id": user_id})
        logger.info("Cleared %d history entries for user %s", res.deleted_count, user_id)
        return res.deleted_count
