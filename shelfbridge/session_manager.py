"""
Reading Session Manager - Decides between updating the current reading session
and starting a new one, then performs the write
"""

import logging
from typing import Any, Dict, Optional

from .hardcover_client import HardcoverClient
from .models import ProgressSnapshot, SessionAction, SessionDecision, SessionWriteResult
from .utils import today

DEFAULT_REREAD_CONFIG = {
    "reread_threshold": 30,
    "high_progress_threshold": 85,
    "regression_warn_threshold": 10,
}

# Used only when the edition total is unknown; a rough estimate, not a contract
HEURISTIC_RATIO = 3
HEURISTIC_SCALE = 25
HEURISTIC_CAP = 95.0


def estimate_previous_percent(
    previous_value: Optional[int],
    new_value: int,
    total: Optional[int] = None,
) -> float:
    """
    Percent complete of the previous session

    Exact when the edition total is known. Otherwise a previous value more
    than three times the new one is read as a likely restart and scaled to
    ``min(95, ratio * 25)``, and anything else counts as 0.
    """
    if not previous_value:
        return 0.0

    if total:
        return previous_value / total * 100

    ratio = previous_value / max(new_value, 1)
    if ratio > HEURISTIC_RATIO:
        return min(HEURISTIC_CAP, ratio * HEURISTIC_SCALE)
    return 0.0


class ReadingSessionManager:
    """Writes progress to the right Hardcover reading session"""

    def __init__(
        self,
        hardcover: HardcoverClient,
        reread_config: Optional[Dict[str, Any]] = None,
        timezone: str = "Etc/UTC",
    ):
        self.hardcover = hardcover
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)

        config = dict(DEFAULT_REREAD_CONFIG)
        config.update(reread_config or {})
        self.reread_threshold = float(config["reread_threshold"])
        self.high_progress_threshold = float(config["high_progress_threshold"])
        self.regression_warn_threshold = float(config["regression_warn_threshold"])

    def decide(
        self,
        snapshot: Optional[ProgressSnapshot],
        new_percent: float,
        new_value: int,
        use_seconds: bool,
        edition_total: Optional[int] = None,
    ) -> SessionDecision:
        latest = snapshot.latest_read if snapshot else None

        if latest is None:
            return SessionDecision(SessionAction.CREATE_NEW, "no existing reading session")

        if latest.finished_at:
            return SessionDecision(
                SessionAction.CREATE_NEW,
                f"previous session finished on {latest.finished_at}",
            )

        total = edition_total or latest.edition_total(use_seconds)
        previous = estimate_previous_percent(
            latest.progress_value(use_seconds), new_value, total
        )

        if (
            previous >= self.high_progress_threshold
            and new_percent <= self.reread_threshold
        ):
            return SessionDecision(
                SessionAction.CREATE_NEW,
                f"progress dropped {previous:.1f}% -> {new_percent:.1f}% (likely re-read)",
                previous_percent=previous,
            )

        if (
            previous > 0
            and previous >= self.high_progress_threshold
            and previous - new_percent > self.regression_warn_threshold
        ):
            return SessionDecision(
                SessionAction.UPDATE_EXISTING,
                f"progress regression {previous:.1f}% -> {new_percent:.1f}%",
                is_regression=True,
                previous_percent=previous,
            )

        return SessionDecision(
            SessionAction.UPDATE_EXISTING,
            "continuing current session",
            previous_percent=previous,
        )

    def sync_progress(
        self,
        user_book_id: int,
        edition_id: Optional[int],
        value: int,
        percent: float,
        use_seconds: bool,
        started_at: Optional[str] = None,
        edition_total: Optional[int] = None,
    ) -> SessionWriteResult:
        """
        Write progress to Hardcover

        Fetches the current session state, decides, then inserts a new session
        or updates the existing one. A missing or malformed state is a failed
        write.
        """
        snapshot = self.hardcover.get_book_current_progress(user_book_id)
        if snapshot is None:
            return SessionWriteResult(
                error=f"could not read current progress for user_book {user_book_id}"
            )

        decision = self.decide(snapshot, percent, value, use_seconds, edition_total)

        if decision.create_new:
            self.logger.info(f"Creating new reading session: {decision.reason}")
            record = self.hardcover.insert_reading_session(
                user_book_id,
                edition_id,
                value,
                use_seconds,
                started_at=(started_at or today(self.timezone))[:10],
            )
        else:
            if decision.is_regression:
                self.logger.warning(f"⚠️ Progress regression detected: {decision.reason}")
            record = self.hardcover.update_reading_session(
                snapshot.latest_read.id,
                edition_id,
                value,
                use_seconds,
                started_at=started_at[:10] if started_at else None,
            )

        if record is None:
            return SessionWriteResult(
                decision=decision,
                error=f"{decision.action.value} write failed for user_book {user_book_id}",
            )

        return SessionWriteResult(record=record, decision=decision)
