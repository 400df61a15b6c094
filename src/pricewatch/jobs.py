import asyncio
import logging
from typing import Dict, List, Optional

from .models import SearchJob
from .pipeline import SearchPipeline
from .status import SearchStatusTracker

logger = logging.getLogger(__name__)


class SearchJobQueue:
    """
    Background workers pulling SearchJobs off an asyncio.Queue.

    submit() registers the Pending status before the job is visible to a
    worker, so a client polling right after submit never gets a 404.
    """

    def __init__(self, pipeline: SearchPipeline, status: SearchStatusTracker, workers: int = 4):
        self.pipeline = pipeline
        self.status = status
        self.workers = workers
        self._queue: "asyncio.Queue[SearchJob]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._cancel_events: Dict[str, asyncio.Event] = {}

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"search-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Started %d search workers", self.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Search workers stopped")

    async def submit(self, job: SearchJob) -> str:
        self.status.initialize(job.search_id)
        self._cancel_events[job.search_id] = asyncio.Event()
        await self._queue.put(job)
        logger.info("Queued %s search %s for user %s", job.search_type.value, job.search_id, job.user_id)
        return job.search_id

    def cancel(self, search_id: str) -> bool:
        """Signal a queued or running job to stop. False if it is unknown or already finished."""
        event = self._cancel_events.get(search_id)
        if event is None:
            return False
        event.set()
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            cancel: Optional[asyncio.Event] = self._cancel_events.get(job.search_id)
            try:
                await self.pipeline.process(job, cancel)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d failed to process search %s", index, job.search_id)
            finally:
                self._cancel_events.pop(job.search_id, None)
                self._queue.task_done()
