import asyncio

import httpx
import pytest

from fakes import FakeScraper, MockCollection, candidate, ellipse_image, square_image
from pricewatch.errors import DecodeError, PriceWatchError, ProductIdNotFound, UnsupportedPlatform
from pricewatch.history import SearchHistoryService
from pricewatch.models import ProductQuery, SearchJob, SearchState, SearchType
from pricewatch.pipeline import SearchPipeline
from pricewatch.recommendation import RecommendationEngine

THUMBNAILS = {
    "/match.png": square_image(),
    "/other.png": ellipse_image(),
    "/garbage.png": b"definitely not an image",
}


def thumbnail_handler(request: httpx.Request) -> httpx.Response:
    body = THUMBNAILS.get(request.url.path)
    if body is None:
        return httpx.Response(404)
    return httpx.Response(200, content=body, headers={"content-type": "image/png"})


class BrokenRecommender:
    async def recommend(self, query, top=3, cancel=None, candidate_filter=None):
        raise RuntimeError("index out of range somewhere deep")


def build(status_tracker, scrapers, collection=None, **kw):
    collection = collection if collection is not None else MockCollection()
    recommender = kw.pop("recommender", None) or RecommendationEngine(scrapers)
    pipeline = SearchPipeline(
        status_tracker,
        recommender,
        SearchHistoryService(collection),
        thumbnail_transport=httpx.MockTransport(thumbnail_handler),
        **kw,
    )
    return pipeline, collection


async def run(pipeline, job, cancel=None):
    pipeline.status.initialize(job.search_id)
    await pipeline.process(job, cancel)
    return pipeline.status.get_status(job.search_id)


@pytest.mark.asyncio
async def test_url_search_completes_and_saves_history(status_tracker):
    scraper = FakeScraper("tiki", [candidate("tiki", "a", price=100), candidate("tiki", "b", price=120)])
    pipeline, collection = build(status_tracker, [scraper])
    job = SearchJob(user_id=7, search_type=SearchType.url, url="https://tiki.vn/dau-goi-dove-p123.html?utm_source=x")

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert [c.title for c in record.results] == ["a", "b"]
    assert scraper.queries[0].product_id == "123"
    assert scraper.queries[0].title_hint == "dau goi dove"
    [doc] = collection.docs
    assert doc["search_id"] == job.search_id
    assert doc["input_content"] == job.url
    assert doc["best_price_found"] == 100


@pytest.mark.asyncio
async def test_keyword_search(status_tracker):
    scraper = FakeScraper("shopee", [candidate(title="dove")])
    pipeline, collection = build(status_tracker, [scraper])
    job = SearchJob(search_type=SearchType.keyword, keyword="Dầu gội Dove")

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert scraper.queries[0].title_hint == "dầu gội dove"
    assert scraper.queries[0].platform is None
    # anonymous
    assert collection.docs == []


@pytest.mark.asyncio
async def test_keyword_that_is_a_url_goes_through_link_processing(status_tracker):
    scraper = FakeScraper("shopee", [candidate()])
    pipeline, _ = build(status_tracker, [scraper])

    await run(pipeline, SearchJob(search_type=SearchType.keyword, keyword="https://shopee.vn/x-i.1.2"))

    assert scraper.queries[0].product_id == "i.1.2"


@pytest.mark.asyncio
async def test_empty_results_still_complete(status_tracker):
    pipeline, collection = build(status_tracker, [FakeScraper("shopee", [])])
    job = SearchJob(user_id=7, search_type=SearchType.keyword, keyword="nothing")

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert record.results == ()
    assert collection.docs[0]["result_count"] == 0


@pytest.mark.asyncio
async def test_query_override_wins(status_tracker):
    scraper = FakeScraper("shopee", [candidate()])
    pipeline, _ = build(status_tracker, [scraper])
    override = ProductQuery(title_hint="override text")
    job = SearchJob(search_type=SearchType.url, url="https://example.com/not-supported", query_override=override)

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert scraper.queries == [override]


@pytest.mark.parametrize(
    "url, message",
    [
        ("https://example.com/item/1", UnsupportedPlatform.user_message),
        ("https://tiki.vn/khuyen-mai", ProductIdNotFound.user_message),
        (None, "The product URL or keyword is not valid."),
    ],
)
@pytest.mark.asyncio
async def test_bad_url_fails_the_job(status_tracker, url, message):
    scraper = FakeScraper("shopee", [candidate()])
    pipeline, collection = build(status_tracker, [scraper])

    record = await run(pipeline, SearchJob(user_id=7, search_type=SearchType.url, url=url))

    assert record.status == SearchState.failed
    assert record.error_message == message
    assert scraper.queries == []
    assert collection.docs == []


@pytest.mark.asyncio
async def test_image_search_drops_mismatched_thumbnails(status_tracker):
    scraper = FakeScraper("shopee", [
        candidate(title="same", price=100, thumb="https://img.test/match.png"),
        candidate(title="different", price=101, thumb="https://img.test/other.png"),
        candidate(title="broken link", price=102, thumb="https://img.test/missing.png"),
        candidate(title="garbage", price=103, thumb="https://img.test/garbage.png"),
        candidate(title="no thumbnail", price=104),
    ])
    pipeline, _ = build(status_tracker, [scraper], top=5)
    job = SearchJob(
        search_type=SearchType.image,
        image_bytes=square_image(fmt="WEBP"),
        query_override=ProductQuery(title_hint="black square"),
    )

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    by_title = {c.title: c for c in record.results}
    assert set(by_title) == {"same", "broken link", "garbage", "no thumbnail"}
    assert by_title["same"].is_image_match is True
    assert by_title["same"].image_similarity > 0.7
    assert by_title["broken link"].is_image_match is None
    assert by_title["no thumbnail"].image_similarity is None


@pytest.mark.asyncio
async def test_image_threshold_is_configurable(status_tracker):
    scraper = FakeScraper("shopee", [candidate(title="same", thumb="https://img.test/match.png")])
    pipeline, _ = build(status_tracker, [scraper], image_match_threshold=1.01)
    job = SearchJob(
        search_type=SearchType.image,
        image_bytes=square_image(),
        query_override=ProductQuery(title_hint="black square"),
    )

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert record.results == ()


@pytest.mark.asyncio
async def test_image_without_hint_fails_without_image_backend(status_tracker):
    pipeline, _ = build(status_tracker, [FakeScraper("shopee", [candidate()])])

    record = await run(pipeline, SearchJob(search_type=SearchType.image, image_bytes=square_image()))

    assert record.status == SearchState.failed
    assert "Could not identify a product" in record.error_message


@pytest.mark.asyncio
async def test_corrupt_upload_fails(status_tracker):
    pipeline, _ = build(status_tracker, [FakeScraper("shopee", [candidate()])])
    job = SearchJob(
        search_type=SearchType.image,
        image_bytes=b"\x01\x02\x03\x04\x05",
        query_override=ProductQuery(title_hint="anything"),
    )

    record = await run(pipeline, job)

    assert record.status == SearchState.failed
    assert record.error_message == DecodeError.user_message


@pytest.mark.asyncio
async def test_image_job_without_bytes_fails(status_tracker):
    pipeline, _ = build(status_tracker, [FakeScraper("shopee", [candidate()])])

    record = await run(pipeline, SearchJob(search_type=SearchType.image))

    assert record.status == SearchState.failed
    assert record.error_message == "No image was uploaded."


@pytest.mark.asyncio
async def test_history_failure_fails_the_job(status_tracker):
    pipeline, _ = build(
        status_tracker, [FakeScraper("shopee", [candidate()])], collection=MockCollection(fail_inserts=True)
    )

    record = await run(pipeline, SearchJob(user_id=7, search_type=SearchType.keyword, keyword="dove"))

    assert record.status == SearchState.failed
    assert record.error_message == "Could not save the search. Please try again later."
    assert record.results is None


@pytest.mark.asyncio
async def test_unexpected_error_gets_generic_message(status_tracker):
    pipeline, _ = build(status_tracker, [], recommender=BrokenRecommender())

    record = await run(pipeline, SearchJob(search_type=SearchType.keyword, keyword="dove"))

    assert record.status == SearchState.failed
    assert record.error_message == PriceWatchError.user_message
    assert "index out of range" not in record.error_message


@pytest.mark.asyncio
async def test_cancelled_before_start(status_tracker):
    scraper = FakeScraper("shopee", [candidate()])
    pipeline, collection = build(status_tracker, [scraper])
    cancel = asyncio.Event()
    cancel.set()

    record = await run(pipeline, SearchJob(user_id=7, search_type=SearchType.keyword, keyword="dove"), cancel)

    assert record.status == SearchState.failed
    assert record.error_message == "Search was cancelled."
    assert scraper.queries == []
    assert collection.docs == []


@pytest.mark.asyncio
async def test_cancelled_mid_search_skips_history(status_tracker):
    pipeline, collection = build(status_tracker, [FakeScraper("shopee", [candidate()], delay=0.2)])
    cancel = asyncio.Event()
    job = SearchJob(user_id=7, search_type=SearchType.keyword, keyword="dove")

    async def cancel_soon():
        await asyncio.sleep(0.05)
        cancel.set()

    status_tracker.initialize(job.search_id)
    await asyncio.gather(pipeline.process(job, cancel), cancel_soon())

    record = status_tracker.get_status(job.search_id)
    assert record.status == SearchState.failed
    assert record.error_message == "Search was cancelled."
    assert collection.docs == []


@pytest.mark.asyncio
async def test_task_cancellation_is_recorded_and_propagated(status_tracker):
    pipeline, _ = build(status_tracker, [FakeScraper("shopee", [candidate()], delay=5)])
    job = SearchJob(search_type=SearchType.keyword, keyword="dove")
    status_tracker.initialize(job.search_id)

    task = asyncio.create_task(pipeline.process(job))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert status_tracker.get_status(job.search_id).status == SearchState.failed


@pytest.mark.asyncio
async def test_image_job_with_product_url_skips_image_search(status_tracker):
    scraper = FakeScraper("tiki", [candidate("tiki", "dove", thumb="https://img.test/match.png")])
    pipeline, _ = build(status_tracker, [scraper])
    job = SearchJob(search_type=SearchType.image, image_bytes=square_image(), url="https://tiki.vn/dau-goi-p5.html")

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert scraper.queries[0].product_id == "5"
    assert record.results[0].is_image_match is True


@pytest.mark.asyncio
async def test_mismatched_cheapest_offer_does_not_cost_a_top_slot(status_tracker):
    scraper = FakeScraper("shopee", [
        candidate(title="lookalike", price=90, thumb="https://img.test/other.png"),
        candidate(title="ok1", price=100, thumb="https://img.test/match.png"),
        candidate(title="ok2", price=101, thumb="https://img.test/match.png"),
        candidate(title="ok3", price=102, thumb="https://img.test/match.png"),
    ])
    pipeline, _ = build(status_tracker, [scraper], top=3)
    job = SearchJob(
        search_type=SearchType.image,
        image_bytes=square_image(),
        query_override=ProductQuery(title_hint="black square"),
    )

    record = await run(pipeline, job)

    assert record.status == SearchState.completed
    assert [c.title for c in record.results] == ["ok1", "ok2", "ok3"]
    assert record.results[0].labels == ("BestDeal",)
    assert all(c.is_image_match for c in record.results)
