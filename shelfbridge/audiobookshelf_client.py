"""
Audiobookshelf API Client - Handles all interactions with Audiobookshelf server
"""

import concurrent.futures
import logging
from typing import Any, Dict, List, Optional

import requests

from .exceptions import LibraryServiceError, TransientRequestError
from .models import LibraryItem
from .rate_gate import RateGate
from .utils import retry_on_failure

MAX_PARALLEL_WORKERS = 8
REQUEST_TIMEOUT = 30


def _author_from_metadata(metadata: Dict[str, Any]) -> str:
    if metadata.get("authorName"):
        return str(metadata["authorName"])

    authors = metadata.get("authors")
    if isinstance(authors, list):
        names = [
            a.get("name", "") if isinstance(a, dict) else str(a) for a in authors
        ]
        return ", ".join(name for name in names if name)

    if isinstance(metadata.get("author"), str):
        return metadata["author"]
    return ""


def library_item_from_api(
    item_data: Dict[str, Any], progress_data: Optional[Dict[str, Any]] = None
) -> LibraryItem:
    """Build a LibraryItem from an /api/items response and the user's progress"""
    media = item_data.get("media") or {}
    metadata = media.get("metadata") or {}
    progress_data = progress_data or {}

    progress = progress_data.get("progress") or 0
    try:
        progress_percentage = float(progress) * 100
    except (TypeError, ValueError):
        progress_percentage = 0.0

    return LibraryItem(
        id=str(item_data["id"]),
        title=metadata.get("title") or item_data.get("title") or "Unknown Title",
        author=_author_from_metadata(metadata),
        metadata=dict(metadata),
        extra_metadata=dict(item_data.get("metadata") or {}),
        progress_percentage=progress_percentage,
        current_time=progress_data.get("currentTime"),
        duration=media.get("duration") or progress_data.get("duration"),
        is_finished=bool(progress_data.get("isFinished", False)),
        started_at=progress_data.get("startedAt"),
        finished_at=progress_data.get("finishedAt"),
        last_listened_at=progress_data.get("lastUpdate"),
    )


class AudiobookshelfClient:
    """Client for interacting with Audiobookshelf API"""

    def __init__(
        self,
        base_url: str,
        token: str,
        gate: Optional[RateGate] = None,
        max_workers: int = MAX_PARALLEL_WORKERS,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.gate = gate or RateGate(
            "audiobookshelf", max_concurrency=5, max_requests_per_minute=600
        )
        self.max_workers = max_workers
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

        self.logger.debug(f"AudiobookshelfClient initialized for {self.base_url}")

    def test_connection(self) -> bool:
        """Test connection to Audiobookshelf server"""
        response = self._make_request("GET", "/ping")
        return response is not None

    def get_reading_progress(self) -> List[LibraryItem]:
        """
        Get every library item with the user's progress merged in

        Items in progress come first; the rest of each library is included with
        0% progress so finished or untouched books are still considered.

        Raises:
            LibraryServiceError: the current user could not be fetched
        """
        self.logger.info("Fetching reading progress from Audiobookshelf...")

        user_data = self._get_current_user()
        if not user_data:
            raise LibraryServiceError(
                "Could not get current user data from Audiobookshelf"
            )

        progress_items = self.get_items_in_progress()
        # Repeated ids are kept so the sync run can report them as duplicates
        progress_item_ids = [item["id"] for item in progress_items if item.get("id")]

        in_progress = set(progress_item_ids)
        other_ids: List[str] = []
        for library in self.get_libraries():
            library_id = library.get("id")
            if not library_id:
                self.logger.warning(f"Skipping library without an id: {library.get('name', library)}")
                continue
            for book in self.get_library_items(library_id, limit=1000):
                book_id = book.get("id")
                if book_id and book_id not in in_progress:
                    other_ids.append(book_id)

        item_ids = progress_item_ids + other_ids
        details: Dict[str, LibraryItem] = {}

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers
        ) as executor:
            futures = {
                executor.submit(self.get_item_details, item_id): item_id
                for item_id in dict.fromkeys(item_ids)
            }
            for future in concurrent.futures.as_completed(futures):
                item = future.result()
                if item is not None:
                    details[futures[future]] = item

        books_to_sync = [details[item_id] for item_id in item_ids if item_id in details]

        self.logger.info(f"Found {len(books_to_sync)} total books to check for sync")
        return books_to_sync

    def _get_current_user(self) -> Optional[Dict[str, Any]]:
        """Get current user information"""
        return self._get_json("/api/me")

    def get_items_in_progress(self) -> List[Dict[str, Any]]:
        """Get library items that are currently in progress"""
        data = self._get_json("/api/me/items-in-progress")
        items = data.get("libraryItems", []) if data else []
        return items if isinstance(items, list) else []

    def get_item_details(self, item_id: str) -> Optional[LibraryItem]:
        """Get a library item merged with the user's progress for it"""
        item_data = self._get_json(f"/api/items/{item_id}")
        if not item_data or "id" not in item_data:
            return None

        progress_data = self.get_user_progress(item_id)
        return library_item_from_api(item_data, progress_data)

    def get_user_progress(self, item_id: str) -> Optional[Dict[str, Any]]:
        """
        Get user's progress for a specific item
        A 404 means the user never opened the item and is not an error.
        """
        return self._get_json(f"/api/me/progress/{item_id}", suppress_errors=[404])

    def get_libraries(self) -> List[Dict[str, Any]]:
        """Get all libraries"""
        data = self._get_json("/api/libraries")
        libraries = data.get("libraries", []) if data else []
        return libraries if isinstance(libraries, list) else []

    def get_library_items(
        self, library_id: str, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get items from a specific library"""
        data = self._get_json(
            f"/api/libraries/{library_id}/items", params={"limit": limit}
        )
        results = data.get("results", []) if data else []
        return results if isinstance(results, list) else []

    def _get_json(
        self,
        endpoint: str,
        suppress_errors: Optional[List[int]] = None,
        **kwargs,
    ) -> Optional[Dict[str, Any]]:
        response = self._make_request(
            "GET", endpoint, suppress_errors=suppress_errors, **kwargs
        )
        if response is None:
            return None

        try:
            data = response.json()
        except ValueError as e:
            self.logger.error(f"Invalid JSON from {endpoint}: {str(e)}")
            return None

        if not isinstance(data, dict):
            self.logger.error(f"Unexpected response shape from {endpoint}: {type(data)}")
            return None
        return data

    @retry_on_failure(max_retries=3, delay=1.0)
    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        with self.gate.slot():
            try:
                response = self.session.request(
                    method, url, timeout=REQUEST_TIMEOUT, **kwargs
                )
            except (
                requests.exceptions.ConnectionError,
                requests.exceptions.Timeout,
            ) as e:
                raise TransientRequestError(f"{method} {url}: {str(e)}") from e

        self.logger.debug(f"{method} {url} -> {response.status_code}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRequestError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _make_request(
        self,
        method: str,
        endpoint: str,
        suppress_errors: Optional[List[int]] = None,
        **kwargs,
    ) -> Optional[requests.Response]:
        """Make HTTP request to Audiobookshelf API, None on any failure"""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self._send(method, url, **kwargs)
            response.raise_for_status()
            return response

        except TransientRequestError as e:
            self.logger.error(f"Request failed after retries: {str(e)}")
            return None

        except requests.exceptions.RequestException as e:
            # Expected errors (like 404 for progress) are not logged
            if not (
                suppress_errors
                and e.response is not None
                and e.response.status_code in suppress_errors
            ):
                self.logger.error(f"Request failed: {method} {url} - {str(e)}")
            return None
