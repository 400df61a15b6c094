import logging
import threading
from typing import Dict, Iterable, Optional

from .errors import DuplicateSearchId
from .models import TERMINAL_STATES, ProductCandidate, SearchState, SearchStatus
from .utils import now_utc

logger = logging.getLogger(__name__)


class SearchStatusTracker:
    """
    Process-wide table of search job states, keyed by search_id.

    Pending -> Processing -> Completed | Failed. Records are frozen and
    replaced on every transition, so a reader always sees a consistent
    snapshot and a Completed record keeps returning the same results.

    Entries are never evicted.
    """

    def __init__(self):
        self._statuses: Dict[str, SearchStatus] = {}
        self._lock = threading.Lock()

    def initialize(self, search_id: str) -> SearchStatus:
        with self._lock:
            if search_id in self._statuses:
                raise DuplicateSearchId(f"search {search_id} already exists")
            record = SearchStatus(
                search_id=search_id,
                status=SearchState.pending,
                message="Waiting for processing",
                updated_at=now_utc(),
            )
            self._statuses[search_id] = record
            return record

    def _transition(self, search_id: str, **update) -> None:
        with self._lock:
            existing = self._statuses.get(search_id)
            if existing is None:
                logger.warning("Ignoring %s for unknown search %s", update["status"].value, search_id)
                return
            if existing.status in TERMINAL_STATES:
                logger.warning(
                    "Ignoring %s for search %s, already %s",
                    update["status"].value, search_id, existing.status.value,
                )
                return
            self._statuses[search_id] = existing.model_copy(update={**update, "updated_at": now_utc()})

    def mark_processing(self, search_id: str) -> None:
        self._transition(search_id, status=SearchState.processing, message="Processing")

    def complete(self, search_id: str, results: Iterable[ProductCandidate]) -> None:
        results = tuple(results)
        message = f"Found {len(results)} offers" if results else "No matching offers found"
        self._transition(search_id, status=SearchState.completed, message=message, results=results)

    def fail(self, search_id: str, message: str) -> None:
        self._transition(search_id, status=SearchState.failed, message=message, error_message=message)

    def get_status(self, search_id: str) -> Optional[SearchStatus]:
        with self._lock:
            return self._statuses.get(search_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)
