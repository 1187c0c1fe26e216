"""
Sync Manager - Coordinates synchronization between Audiobookshelf and Hardcover
"""

import concurrent.futures
import logging
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

from tqdm import tqdm

from .audiobookshelf_client import AudiobookshelfClient
from .book_cache import ProgressCache
from .book_matcher import BookMatcher, identity_for
from .completion import CompletionCoordinator
from .exceptions import ShelfBridgeError
from .hardcover_client import HardcoverClient
from .models import (
    BookDetail,
    BookKey,
    BookStatus,
    Edition,
    Identity,
    LibraryItem,
    SyncResult,
    UserBook,
)
from .rate_gate import RateGate
from .session_manager import ReadingSessionManager
from .utils import calculate_current_page, calculate_current_seconds, epoch_ms_to_date

STATUS_SYNCED = "synced"
STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"
STATUS_WOULD_SYNC = "would_sync"
STATUS_WOULD_COMPLETE = "would_complete"
STATUS_WOULD_AUTO_ADD = "would_auto_add"

_BAR_LABELS = {
    STATUS_SYNCED: "✓ Synced",
    STATUS_COMPLETED: "✓ Completed",
    STATUS_SKIPPED: "⏭ Skipped",
    STATUS_FAILED: "✗ Failed",
    STATUS_WOULD_SYNC: "~ Would sync",
    STATUS_WOULD_COMPLETE: "~ Would complete",
    STATUS_WOULD_AUTO_ADD: "~ Would add",
}


class _BookFailure(Exception):
    """Ends processing of one book with a recorded error"""


class SyncManager:
    """Manages synchronization between Audiobookshelf and Hardcover for one user"""

    def __init__(
        self,
        user: dict,
        global_config: dict,
        dry_run: bool = False,
        force: bool = False,
        audiobookshelf: Optional[AudiobookshelfClient] = None,
        hardcover: Optional[HardcoverClient] = None,
        book_cache: Optional[ProgressCache] = None,
    ) -> None:
        self.user = user
        self.user_id = str(user["id"])
        self.global_config = global_config
        self.dry_run = dry_run or bool(global_config.get("dry_run", False))
        self.force_sync = force or bool(global_config.get("force_sync", False))
        self.logger = logging.getLogger(f"SyncManager.{self.user_id}")

        self.min_progress_threshold = float(global_config.get("min_progress_threshold", 5.0))
        self.completion_threshold = float(global_config.get("completion_threshold", 95.0))
        self.timezone = global_config.get("timezone", "Etc/UTC")
        self.max_workers = int(global_config.get("workers", 3))
        self.enable_parallel = bool(global_config.get("parallel", True))
        self.timing_data: Dict[str, float] = {}

        rate_limits = global_config.get("rate_limits") or {}
        self.audiobookshelf = audiobookshelf or AudiobookshelfClient(
            user["abs_url"],
            user["abs_token"],
            gate=RateGate.from_config("audiobookshelf", rate_limits.get("audiobookshelf")),
        )
        self.hardcover = hardcover or HardcoverClient(
            user["hardcover_token"],
            gate=RateGate.from_config("hardcover", rate_limits.get("hardcover")),
        )
        self.book_cache = book_cache or ProgressCache(
            global_config.get("cache_file", "data/.book_cache.db")
        )

        self.sessions = ReadingSessionManager(
            self.hardcover, global_config.get("reread_detection"), self.timezone
        )
        self.completion = CompletionCoordinator(self.hardcover, self.timezone)

        self._in_flight: Set[BookKey] = set()
        self._in_flight_lock = threading.Lock()
        self._errors: List[str] = []
        self._errors_lock = threading.Lock()

        self.logger.info(
            f"SyncManager initialized for user {self.user_id} (dry_run: {self.dry_run}, "
            f"min_threshold: {self.min_progress_threshold}%, parallel: {self.enable_parallel}, "
            f"workers: {self.max_workers})"
        )

    def sync_progress(self) -> SyncResult:
        """
        Main synchronization method

        Only the two initial fetches can fail the run. Every book is processed
        independently and its errors are recorded against it.
        """
        self.logger.info("Starting progress synchronization...")
        run_start = time.time()
        self.timing_data = {}
        self._errors = []

        try:
            fetch_start = time.time()
            items = self.audiobookshelf.get_reading_progress()
            self.timing_data["fetch_audiobookshelf"] = time.time() - fetch_start

            fetch_start = time.time()
            user_books = self.hardcover.get_user_books()
            self.timing_data["fetch_hardcover"] = time.time() - fetch_start
        except ShelfBridgeError as e:
            error_msg = f"Synchronization failed: {str(e)}"
            self.logger.error(error_msg)
            return SyncResult(
                success=False, errors=(error_msg,), duration=time.time() - run_start
            )

        unique_items, duplicates_removed = self.deduplicate(items)
        if duplicates_removed:
            self.logger.info(f"Removed {duplicates_removed} duplicate library items")

        matcher = BookMatcher(
            self.hardcover,
            self.book_cache,
            self.user_id,
            user_books,
            auto_add_books=bool(self.global_config.get("auto_add_books", True)),
            title_author_search=bool(self.global_config.get("title_author_search", False)),
            dry_run=self.dry_run,
        )

        loop_start = time.time()
        details = self._process_books(unique_items, matcher)
        self.timing_data["sync_loop"] = time.time() - loop_start

        result = SyncResult(
            success=True,
            books_processed=len(details),
            books_synced=sum(1 for d in details if d.status == STATUS_SYNCED),
            books_completed=sum(1 for d in details if d.status == STATUS_COMPLETED),
            books_auto_added=sum(1 for d in details if "auto_added" in d.actions),
            books_skipped=sum(1 for d in details if d.status == STATUS_SKIPPED),
            books_failed=sum(1 for d in details if d.status == STATUS_FAILED),
            duplicates_removed=duplicates_removed,
            errors=tuple(self._errors),
            book_details=tuple(details),
            duration=time.time() - run_start,
        )

        self.print_timing_summary()
        self.logger.info(
            f"Synchronization completed: {result.books_synced} synced, "
            f"{result.books_completed} completed, {result.books_auto_added} auto-added, "
            f"{result.books_skipped} skipped, {result.books_failed} failed"
        )
        return result

    @staticmethod
    def deduplicate(items: List[LibraryItem]) -> Tuple[List[LibraryItem], int]:
        """Keep the first item for each library id"""
        seen: Set[str] = set()
        unique: List[LibraryItem] = []
        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            unique.append(item)
        return unique, len(items) - len(unique)

    def _process_books(
        self, items: List[LibraryItem], matcher: BookMatcher
    ) -> List[BookDetail]:
        details: List[BookDetail] = []
        parallel = self.enable_parallel and self.max_workers > 1 and len(items) > 1

        desc = "Syncing books (parallel)" if parallel else "Syncing books"
        with tqdm(total=len(items), desc=desc, unit="book") as pbar:
            if parallel:
                with concurrent.futures.ThreadPoolExecutor(
                    max_workers=self.max_workers
                ) as executor:
                    futures = [
                        executor.submit(self._sync_single_book, item, matcher)
                        for item in items
                    ]
                    for future in concurrent.futures.as_completed(futures):
                        detail = future.result()
                        details.append(detail)
                        self._update_bar(pbar, detail)
            else:
                for item in items:
                    pbar.set_description(
                        f"Syncing: {item.title[:30]}{'...' if len(item.title) > 30 else ''}"
                    )
                    detail = self._sync_single_book(item, matcher)
                    details.append(detail)
                    self._update_bar(pbar, detail)

        return details

    @staticmethod
    def _update_bar(pbar: tqdm, detail: BookDetail) -> None:
        pbar.set_postfix(
            {"status": _BAR_LABELS.get(detail.status, detail.status), "time": f"{detail.timing:.2f}s"}
        )
        pbar.update(1)

    def _record_error(self, message: str) -> None:
        with self._errors_lock:
            self._errors.append(message)

    def _sync_single_book(self, item: LibraryItem, matcher: BookMatcher) -> BookDetail:
        """Process one item behind the in-flight guard; never raises"""
        key = BookKey(self.user_id, item.id)
        book_start = time.time()

        with self._in_flight_lock:
            if key in self._in_flight:
                self.logger.debug(f"{item.title} is already being processed, skipping")
                return BookDetail(
                    title=item.title,
                    status=STATUS_SKIPPED,
                    actions=("already being processed",),
                )
            self._in_flight.add(key)

        actions: List[str] = []
        try:
            status = self._sync_book(item, matcher, actions)
            errors: Tuple[str, ...] = ()
        except _BookFailure as e:
            status, errors = STATUS_FAILED, (str(e),)
        except Exception as e:
            self.logger.exception(f"Unexpected error syncing {item.title}")
            status, errors = STATUS_FAILED, (f"unexpected error: {str(e)}",)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(key)

        for error in errors:
            self.logger.error(f"✗ Failed: {item.title} - {error}")
            self._record_error(f"{item.title}: {error}")

        if status == STATUS_SKIPPED:
            self.logger.debug(f"⏭ Skipped: {item.title} - {actions[-1] if actions else ''}")
        elif status != STATUS_FAILED:
            self.logger.info(f"{_BAR_LABELS.get(status, status)}: {item.title}")

        return BookDetail(
            title=item.title,
            status=status,
            identifiers=identity_for(item).as_dict(),
            actions=tuple(actions),
            errors=errors,
            timing=time.time() - book_start,
            progress=item.progress_percentage,
        )

    def _sync_book(
        self, item: LibraryItem, matcher: BookMatcher, actions: List[str]
    ) -> str:
        """Sync one item; returns its status and appends what was done to actions"""
        progress = float(item.progress_percentage or 0)

        if not item.is_finished:
            if progress <= 0:
                actions.append("zero progress")
                return STATUS_SKIPPED
            if progress < self.min_progress_threshold:
                actions.append(
                    f"progress {progress:.1f}% below {self.min_progress_threshold}% threshold"
                )
                return STATUS_SKIPPED

        finished = item.is_finished or progress >= self.completion_threshold
        target_status = BookStatus.READ if finished else BookStatus.CURRENTLY_READING
        identity = identity_for(item)

        cached_key, cached = self.book_cache.find_cached_info(
            self.user_id, identity.cache_keys(), identity.title
        )
        if cached_key is not None:
            check = self.book_cache.needs_sync_check(
                self.user_id,
                cached_key[0],
                identity.title,
                progress,
                cached_key[1],
                new_status_id=int(target_status),
            )
            if not check.needs_sync and not self.force_sync:
                actions.append("no changes since last sync")
                return STATUS_SKIPPED
            actions.append(f"sync needed: {check.reason}")

        match = matcher.resolve(item, cached=cached)
        if match.source == "would_auto_add":
            actions.append(
                f"would add book {match.metadata.get('book_id')} to library"
            )
            return STATUS_WOULD_AUTO_ADD
        if match.source == "auto_add_failed":
            raise _BookFailure(match.metadata.get("reason", "auto-add failed"))
        if match.match is None:
            actions.append(match.metadata.get("reason", "no match in Hardcover"))
            return STATUS_SKIPPED
        if match.auto_added:
            actions.append("auto_added")

        user_book, edition = match.match.user_book, match.match.edition
        use_seconds = edition.is_audiobook
        total = edition.total_for(use_seconds)
        if not total:
            actions.append(
                f"edition {edition.id} has no {'audio length' if use_seconds else 'page count'}"
            )
            return STATUS_SKIPPED

        started_at = epoch_ms_to_date(item.started_at, self.timezone)
        finished_at = epoch_ms_to_date(item.finished_at, self.timezone)

        if finished:
            status = self._complete_book(
                item, user_book, edition, total, use_seconds, started_at, finished_at, actions
            )
        else:
            if use_seconds:
                value = calculate_current_seconds(progress, total, item.current_time)
            else:
                value = calculate_current_page(progress, total)
            status = self._write_progress(
                user_book, edition, value, progress, total, use_seconds, started_at, actions
            )

        if status in (STATUS_SYNCED, STATUS_COMPLETED):
            self._store_cache(
                identity,
                item,
                edition,
                progress,
                target_status,
                started_at,
                finished_at if finished else None,
            )
        return status

    def _complete_book(
        self,
        item: LibraryItem,
        user_book: UserBook,
        edition: Edition,
        total: int,
        use_seconds: bool,
        started_at: Optional[str],
        finished_at: Optional[str],
        actions: List[str],
    ) -> str:
        if user_book.status_id == BookStatus.READ:
            snapshot = self.hardcover.get_book_current_progress(user_book.id)
            if snapshot and snapshot.latest_read and snapshot.latest_read.is_finished:
                actions.append("already completed in Hardcover")
                if not self.dry_run:
                    self._store_cache(
                        identity_for(item),
                        item,
                        edition,
                        float(item.progress_percentage or 0),
                        BookStatus.READ,
                        started_at,
                        snapshot.latest_read.finished_at,
                    )
                return STATUS_SKIPPED

        if self.dry_run:
            actions.append(f"would mark as Read ({total} {'seconds' if use_seconds else 'pages'})")
            return STATUS_WOULD_COMPLETE

        outcome = self.completion.complete(
            user_book.id,
            edition.id,
            total,
            use_seconds,
            finished_at=finished_at,
            started_at=started_at,
        )
        if not outcome.success:
            if outcome.partial:
                raise _BookFailure(
                    f"progress written but status is stale: {outcome.error}"
                )
            raise _BookFailure(outcome.error or "completion failed")

        actions.append("marked as Read")
        return STATUS_COMPLETED

    def _write_progress(
        self,
        user_book: UserBook,
        edition: Edition,
        value: int,
        progress: float,
        total: int,
        use_seconds: bool,
        started_at: Optional[str],
        actions: List[str],
    ) -> str:
        unit = "seconds" if use_seconds else "pages"

        if self.dry_run:
            actions.append(f"would sync {value}/{total} {unit} ({progress:.1f}%)")
            return STATUS_WOULD_SYNC

        if user_book.status_id in (BookStatus.WANT_TO_READ, BookStatus.READ):
            if not self.hardcover.update_book_status(
                user_book.id, BookStatus.CURRENTLY_READING
            ):
                raise _BookFailure("could not move book to Currently Reading")
            actions.append(f"status {user_book.status_id} -> Currently Reading")
            user_book.status_id = int(BookStatus.CURRENTLY_READING)

        write = self.sessions.sync_progress(
            user_book.id,
            edition.id,
            value,
            progress,
            use_seconds,
            started_at=started_at,
            edition_total=total,
        )
        if not write.success:
            raise _BookFailure(write.error or "progress write failed")

        if write.decision.create_new:
            actions.append(f"new reading session: {write.decision.reason}")
        if write.decision.is_regression:
            actions.append(f"regression warning: {write.decision.reason}")
        actions.append(f"synced {value}/{total} {unit} ({progress:.1f}%)")
        return STATUS_SYNCED

    def _store_cache(
        self,
        identity: Identity,
        item: LibraryItem,
        edition: Edition,
        progress: float,
        status_id: int,
        started_at: Optional[str],
        finished_at: Optional[str],
    ) -> None:
        identifier, identifier_type = identity.primary_key()
        self.book_cache.store_sync_data(
            self.user_id,
            identifier,
            identity.title,
            edition.id,
            identifier_type,
            author=edition.author or item.author or None,
            progress_percent=progress,
            started_at=started_at,
            finished_at=finished_at,
            status_id=int(status_id),
            last_listened_at=epoch_ms_to_date(item.last_listened_at, self.timezone),
        )

    def get_cache_stats(self) -> Dict[str, int]:
        """Get cache statistics"""
        return self.book_cache.stats()

    def clear_cache(self) -> None:
        """Clear the book cache"""
        self.book_cache.clear()

    def clear_edition_mappings(self) -> int:
        return self.book_cache.clear_edition_mappings()

    def export_to_json(self, filename: str = "book_cache_export.json") -> int:
        """Export cache data to JSON for backup/debugging"""
        return self.book_cache.export_to_json(filename)

    def get_timing_data(self) -> Dict[str, float]:
        """Get timing data for performance analysis"""
        return self.timing_data.copy()

    def print_timing_summary(self) -> None:
        """Log a summary of timing data"""
        if not self.timing_data:
            self.logger.info("No timing data available")
            return

        self.logger.info("=" * 50)
        self.logger.info("📊 TIMING SUMMARY")
        self.logger.info("=" * 50)

        sorted_timing = sorted(
            self.timing_data.items(), key=lambda x: x[1], reverse=True
        )
        total_time = sum(self.timing_data.values())

        for operation, duration in sorted_timing:
            percentage = (duration / total_time) * 100 if total_time > 0 else 0
            self.logger.info(f"{operation:30} {duration:8.3f}s ({percentage:5.1f}%)")

        self.logger.info(f"{'TOTAL':30} {total_time:8.3f}s")

        for name, stats in (
            ("audiobookshelf", self.audiobookshelf.gate.stats()),
            ("hardcover", self.hardcover.gate.stats()),
        ):
            self.logger.info(
                f"{name:30} {stats['total_requests']} requests, "
                f"{stats['total_waits']} rate waits ({stats['total_wait_seconds']}s)"
            )
        self.logger.info("=" * 50)
