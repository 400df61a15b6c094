import asyncio
import logging
from functools import partial
from typing import List, Optional

import httpx
import numpy as np

from . import links
from .embedding import compute_embedding, cosine_similarity, preprocess_image
from .errors import (
    DecodeError,
    InvalidInput,
    PipelineFailure,
    PriceWatchError,
    SearchCancelled,
)
from .history import SearchHistoryService
from .image_search import ImageSearchService, NullImageSearch
from .models import ProductCandidate, ProductQuery, SearchJob, SearchType
from .recommendation import RecommendationEngine
from .status import SearchStatusTracker
from .utils import fetch_image_bytes, raise_if_cancelled

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MATCH_THRESHOLD = 0.7


class SearchPipeline:
    """
    Runs one search job end to end and records the outcome.

    Flow:
    1. Mark the job Processing
    2. Resolve the query (override > URL > keyword > image search)
    3. Ask the recommendation engine for the top offers. Image jobs pass a
       thumbnail check that drops offers not looking like the upload,
       applied before ranking so the top slots are filled from matches
    4. Save history
    5. Mark Completed, or Failed with a short message

    process() never raises for a job-level failure and never leaves the
    job Processing. Task cancellation is recorded and then re-raised.
    """

    def __init__(
        self,
        status: SearchStatusTracker,
        recommender: RecommendationEngine,
        history: SearchHistoryService,
        image_search: Optional[ImageSearchService] = None,
        image_match_threshold: float = DEFAULT_IMAGE_MATCH_THRESHOLD,
        top: int = 3,
        thumbnail_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.status = status
        self.recommender = recommender
        self.history = history
        self.image_search = image_search or NullImageSearch()
        self.image_match_threshold = image_match_threshold
        self.top = top
        self.thumbnail_transport = thumbnail_transport

    async def process(self, job: SearchJob, cancel: Optional[asyncio.Event] = None) -> None:
        sid = job.search_id
        self.status.mark_processing(sid)

        try:
            results = await self._run(job, cancel)
        except asyncio.CancelledError:
            logger.warning("Search %s cancelled by shutdown", sid)
            self.status.fail(sid, SearchCancelled.user_message)
            raise
        except SearchCancelled as e:
            logger.info("Search %s cancelled", sid)
            self.status.fail(sid, e.user_message)
        except PriceWatchError as e:
            logger.warning("Search %s failed: %s", sid, e)
            self.status.fail(sid, e.user_message)
        except Exception:
            logger.exception("Search processing failed for %s", sid)
            self.status.fail(sid, PriceWatchError.user_message)
        else:
            self.status.complete(sid, results)
            logger.info("Search %s completed with %d results", sid, len(results))

    async def _run(self, job: SearchJob, cancel: Optional[asyncio.Event]) -> List[ProductCandidate]:
        raise_if_cancelled(cancel)

        image: Optional[bytes] = None
        source_embedding: Optional[np.ndarray] = None
        if job.search_type == SearchType.image:
            if not job.image_bytes:
                raise PipelineFailure("image job without image bytes", user_message="No image was uploaded.")
            image = await asyncio.to_thread(preprocess_image, job.image_bytes)
            source_embedding = await compute_embedding(image, cancel)

        query = await self._resolve(job, image, cancel)
        logger.info("Search %s resolved to %s/%s %r", job.search_id, query.platform, query.product_id, query.title_hint)

        candidate_filter = None
        if source_embedding is not None:
            candidate_filter = partial(self._validate_thumbnails, source=source_embedding, cancel=cancel)

        results = await self.recommender.recommend(
            query, top=self.top, cancel=cancel, candidate_filter=candidate_filter
        )

        await self._persist(job, query, results, cancel)
        return results

    async def _resolve(self, job: SearchJob, image: Optional[bytes], cancel: Optional[asyncio.Event]) -> ProductQuery:
        if job.query_override is not None:
            return job.query_override

        if job.url:
            return links.process_url(job.url)
        if job.search_type == SearchType.url:
            raise InvalidInput("url search without url")

        if job.search_type == SearchType.keyword:
            return links.classify_input(job.keyword or "")

        queries = await self.image_search.search_by_image(image, cancel)
        raise_if_cancelled(cancel)
        if not queries:
            raise PipelineFailure(
                "image search returned no queries",
                user_message="Could not identify a product from the image. Try adding a product name.",
            )
        return queries[0]

    async def _validate_thumbnails(
        self, candidates: List[ProductCandidate], source: np.ndarray, cancel: Optional[asyncio.Event]
    ) -> List[ProductCandidate]:
        if not any(c.thumbnail_url for c in candidates):
            return candidates

        async with httpx.AsyncClient(timeout=10.0, follow_redirects=True, transport=self.thumbnail_transport) as client:
            sims = await asyncio.gather(
                *(self._thumbnail_similarity(client, c, source, cancel) for c in candidates)
            )

        kept = []
        for c, sim in zip(candidates, sims):
            if sim is None:
                kept.append(c)
                continue
            if sim < self.image_match_threshold:
                logger.info("Dropping %s listing %r, image similarity %.3f", c.platform, c.title, sim)
                continue
            kept.append(c.model_copy(update={"image_similarity": round(sim, 4), "is_image_match": True}))
        return kept

    async def _thumbnail_similarity(
        self, client: httpx.AsyncClient, candidate: ProductCandidate, source: np.ndarray, cancel: Optional[asyncio.Event]
    ) -> Optional[float]:
        """None means the thumbnail could not be checked (missing, unreachable, undecodable)."""
        if not candidate.thumbnail_url:
            return None
        raise_if_cancelled(cancel)
        data = await fetch_image_bytes(candidate.thumbnail_url, client)
        if data is None:
            return None
        try:
            embedding = await compute_embedding(data, cancel)
        except DecodeError as e:
            logger.warning("Undecodable thumbnail %s: %s", candidate.thumbnail_url, e)
            return None
        return cosine_similarity(source, embedding)

    async def _persist(
        self, job: SearchJob, query: ProductQuery, results: List[ProductCandidate], cancel: Optional[asyncio.Event]
    ) -> None:
        raise_if_cancelled(cancel)
        try:
            await self.history.save_search_history(
                job.search_id,
                job.user_id,
                job.search_type,
                job.input_content(),
                query,
                results,
                cancel,
            )
        except SearchCancelled:
            raise
        except Exception as e:
            raise PipelineFailure(
                f"history write failed: {e}", user_message="Could not save the search. Please try again later."
            ) from e
