import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

# Internal imports
from . import config, links
from .errors import InvalidInput
from .history import SearchHistoryService
from .image_search import NullImageSearch
from .jobs import SearchJobQueue
from .models import SearchJob, SearchStatus, SearchSubmitReq, SearchSubmitted, SearchType
from .pipeline import SearchPipeline
from .recommendation import RecommendationEngine
from .scrapers import build_scrapers
from .status import SearchStatusTracker

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pricewatch")

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

# MongoDB Setup
if not config.MONGO_URL:
    raise RuntimeError("MONGO_URL env var is required")
client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.MONGO_DB]

# Core services (built once, shared by every request)
status_tracker = SearchStatusTracker()
history_service = SearchHistoryService(db[config.HISTORY_COLLECTION], limit=config.HISTORY_LIMIT)
recommender = RecommendationEngine(
    build_scrapers(),
    config.load_recommendation_options(),
    scraper_timeout=config.SCRAPER_TIMEOUT_SECONDS,
)
pipeline = SearchPipeline(
    status_tracker,
    recommender,
    history_service,
    NullImageSearch(),
    image_match_threshold=config.IMAGE_MATCH_THRESHOLD,
)
job_queue = SearchJobQueue(pipeline, status_tracker, workers=config.SEARCH_WORKERS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await history_service.ensure_indexes()
    except PyMongoError as e:
        logger.warning("Could not create history indexes: %s", e)
    await job_queue.start()
    yield
    await job_queue.stop()


# App + Environment Setup
app = FastAPI(title="PriceWatch", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "scrapers": [s.platform for s in recommender.scrapers]}

# Search submission (URL or keyword)
@app.post("/search/submit", status_code=202, response_model=SearchSubmitted)
async def submit_search(req: SearchSubmitReq):
    """
    Queue a search for a product URL or a free-text keyword.

    The response only carries the search_id. URL problems (bad link,
    unsupported platform) show up later as a Failed status, since the
    work happens in the background.
    """
    url = (req.url or "").strip()
    keyword = (req.keyword or "").strip()
    if not url and not keyword:
        raise HTTPException(400, "url or keyword is required")

    if url:
        job = SearchJob(user_id=req.user_id, search_type=SearchType.url, url=url)
    else:
        job = SearchJob(user_id=req.user_id, search_type=SearchType.keyword, keyword=keyword)

    search_id = await job_queue.submit(job)
    return SearchSubmitted(search_id=search_id)

# Search submission (image upload)
@app.post("/search/submit-image", status_code=202, response_model=SearchSubmitted)
async def submit_image_search(
    image: UploadFile = File(...),
    user_id: Optional[int] = Form(None),
    title_hint: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
):
    """
    Queue a visual search.

    Flow:
    1. Validate type (jpg/png/gif/webp) and size
    2. Optional title_hint becomes the job's query override, an optional
       product url is resolved like /search/submit
    3. The worker checks every offer thumbnail against the upload
    """
    if image.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(400, "Only jpg/png/gif/webp images are supported.")

    data = await image.read(config.MAX_IMAGE_BYTES + 1)
    if not data:
        raise HTTPException(400, "Uploaded image is empty.")
    if len(data) > config.MAX_IMAGE_BYTES:
        raise HTTPException(400, f"Image exceeds {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB limit.")

    override = None
    if title_hint and title_hint.strip():
        try:
            override = links.keyword_query(title_hint)
        except InvalidInput as e:
            raise HTTPException(400, e.user_message)

    job = SearchJob(
        user_id=user_id,
        search_type=SearchType.image,
        image_bytes=data,
        image_content_type=image.content_type,
        url=(url or "").strip() or None,
        query_override=override,
    )
    search_id = await job_queue.submit(job)
    return SearchSubmitted(search_id=search_id)

# Polling
@app.get("/search/status/{search_id}", response_model=SearchStatus)
async def get_search_status(search_id: str):
    """Clients poll this until status is Completed or Failed."""
    status = status_tracker.get_status(search_id)
    if status is None:
        raise HTTPException(404, "Unknown search id")
    return status


@app.post("/search/{search_id}/cancel")
async def cancel_search(search_id: str):
    if status_tracker.get_status(search_id) is None:
        raise HTTPException(404, "Unknown search id")
    return {"search_id": search_id, "cancelled": job_queue.cancel(search_id)}

# Search history
@app.get("/history/{user_id}")
async def get_history(
    user_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    keyword: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    items = await history_service.get_user_history(user_id, page, page_size, keyword, start, end)
    return {"page": page, "page_size": page_size, "history": items}


@app.delete("/history/{user_id}/{history_id}")
async def delete_history(user_id: int, history_id: str):
    if not await history_service.delete_history(user_id, history_id):
        raise HTTPException(404, "History item not found")
    return {"deleted": True}


@app.delete("/history/{user_id}")
async def clear_history(user_id: int):
    deleted = await history_service.clear_history(user_id)
    return {"deleted": deleted}
