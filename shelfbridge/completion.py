"""
Completion Coordinator - Marks a book as read in two ordered steps

1. write the full progress and finish date to the current reading session
2. set the user book status to Read

The status is only written after step 1 confirmed a record, and the operation
succeeds only when both steps did. A failed step 2 leaves step 1 in place and
is reported as a partial completion.
"""

import logging
from typing import Optional, Union

from .hardcover_client import HardcoverClient
from .models import BookStatus, CompletionOutcome, SessionRecord
from .utils import today


class CompletionCoordinator:
    def __init__(self, hardcover: HardcoverClient, timezone: str = "Etc/UTC"):
        self.hardcover = hardcover
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)

    def complete(
        self,
        user_book_id: int,
        edition_id: Optional[int],
        total_value: int,
        use_seconds: bool,
        finished_at: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> CompletionOutcome:
        finished_at = (finished_at or today(self.timezone))[:10]
        started_at = started_at[:10] if started_at else None

        snapshot = self.hardcover.get_book_current_progress(user_book_id)
        if snapshot is None:
            return CompletionOutcome(
                error=f"could not read current progress for user_book {user_book_id}"
            )

        if snapshot.latest_read is not None:
            read_id = snapshot.latest_read.id
        else:
            self.logger.debug(
                f"No reading session for user_book {user_book_id}, creating one for completion"
            )
            created = self.hardcover.insert_reading_session(
                user_book_id,
                edition_id,
                total_value,
                use_seconds,
                started_at=started_at or finished_at,
            )
            if created is None:
                return CompletionOutcome(
                    error=f"could not create reading session for user_book {user_book_id}"
                )
            read_id = created.id

        record = self.hardcover.update_reading_session(
            read_id,
            edition_id,
            total_value,
            use_seconds,
            started_at=started_at,
            finished_at=finished_at,
        )
        if record is None:
            return CompletionOutcome(
                error=f"could not write final progress to session {read_id}"
            )

        if not self.hardcover.update_book_status(user_book_id, BookStatus.READ):
            self.logger.warning(
                f"⚠️ Progress written to session {read_id} but user_book {user_book_id} "
                f"is not marked Read; status is stale"
            )
            return CompletionOutcome(
                partial=True,
                error=f"progress written but status update failed for user_book {user_book_id}",
            )

        self.logger.info(f"✅ Marked user_book {user_book_id} as Read ({finished_at})")
        return CompletionOutcome(record=record)

    def mark_completed(
        self,
        user_book_id: int,
        edition_id: Optional[int],
        total_value: int,
        use_seconds: bool,
        finished_at: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> Union[SessionRecord, bool]:
        """The completed session record, or False unless both steps succeeded"""
        outcome = self.complete(
            user_book_id, edition_id, total_value, use_seconds, finished_at, started_at
        )
        return outcome.record if outcome.success else False
