import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from .errors import ScraperFailure, SearchCancelled
from .models import ProductCandidate, ProductQuery, RecommendationOptions
from .scrapers.base import ProductScraper
from .utils import median, norm, raise_if_cancelled

logger = logging.getLogger(__name__)

BEST_DEAL = "BestDeal"
TRUSTED = "Trusted"

# Async post-filter hook, e.g. thumbnail validation for image searches
CandidateFilter = Callable[[List[ProductCandidate]], Awaitable[List[ProductCandidate]]]


def _normalizer(values: Sequence[float], degenerate: float):
    """Min-max map onto [0, 1]; a flat range maps everything to `degenerate`."""
    lo, hi = min(values), max(values)
    span = hi - lo
    if span <= 0:
        return lambda v: degenerate
    return lambda v: (v - lo) / span


class RecommendationEngine:
    """
    Fan a query out to every scraper, then filter, score, label and rank.

    Core algorithm:
      1. Call every scraper concurrently, each under its own timeout.
         A failing / slow scraper contributes [] and never fails the call.
      2. Merge all candidates.
      3. Drop explicit zero ratings and "too cheap" outliers
         (price < min_price_ratio * median price of the merged set),
         then apply the caller's candidate_filter if one was given.
      4. Score: w_price * inv_price + w_rating * rating - w_shipping * shipping
         (+ w_title * title similarity), every metric min-max normalized
         over the surviving candidates.
      5. Label the top score "BestDeal", and every shop with
         shop_sales >= threshold "Trusted".
      6. Sort by score desc, then shop_sales desc; return the first `top`.
    """

    def __init__(
        self,
        scrapers: Sequence[ProductScraper],
        options: Optional[RecommendationOptions] = None,
        scraper_timeout: float = 8.0,
    ):
        self.scrapers = tuple(scrapers)
        self.options = options or RecommendationOptions()
        self.scraper_timeout = scraper_timeout

    async def _gather_from_scraper(
        self, scraper: ProductScraper, query: ProductQuery, cancel: Optional[asyncio.Event]
    ) -> List[ProductCandidate]:
        try:
            results = await asyncio.wait_for(
                scraper.search_by_query(query, cancel), timeout=self.scraper_timeout
            )
            return list(results or [])
        except SearchCancelled:
            raise
        except ScraperFailure as e:
            logger.error("Scraper %s failed: %s", scraper.platform, e)
            return []
        except asyncio.TimeoutError:
            logger.error("Scraper %s timed out after %.1fs", scraper.platform, self.scraper_timeout)
            return []
        except Exception:
            logger.exception("Scraper %s failed", scraper.platform)
            return []

    async def gather(self, query: ProductQuery, cancel: Optional[asyncio.Event] = None) -> List[ProductCandidate]:
        raise_if_cancelled(cancel)
        tasks = [asyncio.ensure_future(self._gather_from_scraper(s, query, cancel)) for s in self.scrapers]
        try:
            gathered = await asyncio.gather(*tasks)
        except SearchCancelled:
            # gather leaves the other scrapers running
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        raise_if_cancelled(cancel)
        return [c for batch in gathered for c in batch]

    def filter_candidates(self, candidates: Sequence[ProductCandidate]) -> List[ProductCandidate]:
        if not candidates:
            return []

        floor = self.options.min_price_ratio * median(c.price for c in candidates)
        kept = []
        for c in candidates:
            if c.shop_rating == 0:
                continue
            if c.price < floor:
                logger.info("Dropping too-cheap %s listing %r at %.2f (floor %.2f)", c.platform, c.title, c.price, floor)
                continue
            kept.append(c)
        return kept

    def score_candidates(
        self, candidates: Sequence[ProductCandidate], query: Optional[ProductQuery] = None
    ) -> List[Tuple[ProductCandidate, float]]:
        if not candidates:
            return []

        opts = self.options
        price_n = _normalizer([c.price for c in candidates], 0.0)
        rating_n = _normalizer([c.shop_rating or 0.0 for c in candidates], 1.0)
        shipping_n = _normalizer([c.shipping_cost for c in candidates], 0.0)

        hint = norm(query.title_hint) if query is not None and query.title_hint else ""
        use_title = opts.weight_title > 0 and bool(hint)

        scored = []
        for c in candidates:
            # price_n(...) is 0 for the cheapest; a flat range gives every one 1.0
            inv_price = 1.0 - price_n(c.price)
            score = (
                opts.weight_price * inv_price
                + opts.weight_rating * rating_n(c.shop_rating or 0.0)
                - opts.weight_shipping * shipping_n(c.shipping_cost)
            )
            if use_title:
                score += opts.weight_title * fuzz.token_set_ratio(hint, norm(c.title)) / 100.0
            scored.append((c, score))
        return scored

    def rank(self, scored: Sequence[Tuple[ProductCandidate, float]], top: int) -> List[ProductCandidate]:
        ordered = sorted(scored, key=lambda cs: (cs[1], cs[0].shop_sales), reverse=True)
        threshold = self.options.trusted_shop_sales_threshold

        ranked: List[ProductCandidate] = []
        for i, (c, score) in enumerate(ordered):
            labels: Dict[str, None] = dict.fromkeys(c.labels)
            if i == 0:
                labels[BEST_DEAL] = None
            if c.shop_sales >= threshold:
                labels[TRUSTED] = None
            ranked.append(c.model_copy(update={"labels": tuple(labels), "match_score": round(score, 6)}))
        return ranked[:max(top, 0)]

    async def recommend(
        self,
        query: ProductQuery,
        top: int = 3,
        cancel: Optional[asyncio.Event] = None,
        candidate_filter: Optional[CandidateFilter] = None,
    ) -> List[ProductCandidate]:
        """
        `candidate_filter` runs on the filtered set before scoring, so a
        candidate it drops never takes a top slot or the BestDeal label.
        """
        candidates = await self.gather(query, cancel)
        if not candidates:
            logger.warning("No candidates gathered for %s", query.search_text())
            return []

        filtered = self.filter_candidates(candidates)
        if filtered and candidate_filter is not None:
            filtered = list(await candidate_filter(filtered))
            raise_if_cancelled(cancel)
        if not filtered:
            logger.warning("All %d candidates filtered out for %s", len(candidates), query.search_text())
            return []

        results = self.rank(self.score_candidates(filtered, query), top)
        logger.info(
            "Recommended %d of %d candidates (%d after filtering) for %s",
            len(results), len(candidates), len(filtered), query.search_text(),
        )
        return results
