"""
Utility functions for the sync tool
"""

import functools
import logging
import math
import re
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import pytz

from .exceptions import TransientRequestError

ISBN_KEYS = ["isbn", "isbn13", "isbn10", "isbn_13", "isbn_10"]
ASIN_KEYS = ["asin", "amazon_asin"]


def normalize_isbn(isbn: Any) -> Optional[str]:
    """
    Normalize ISBN by removing hyphens, spaces, and other non-digit characters
    Returns clean ISBN or None if invalid
    """
    if not isbn:
        return None

    # X is only meaningful as an ISBN-10 check digit
    clean_isbn = re.sub(r"[^0-9X]", "", str(isbn).upper())

    if len(clean_isbn) not in [10, 13]:
        return None

    return clean_isbn


def normalize_asin(asin: Any) -> Optional[str]:
    """
    Normalize an Amazon ASIN
    Returns the upper-cased 10 character ASIN or None when it does not look like one
    """
    if not asin:
        return None

    clean_asin = re.sub(r"[^0-9A-Z]", "", str(asin).upper())

    if len(clean_asin) != 10:
        return None

    # All-digit values are ISBN-10s, real ASINs start with a letter (usually B)
    if not clean_asin[0].isalpha():
        return None

    return clean_asin


def _lookup_case_insensitive(metadata: Dict[str, Any], keys: Iterable[str]) -> Any:
    lowered = {str(k).lower(): v for k, v in metadata.items()}
    for key in keys:
        value = lowered.get(key)
        if value:
            return value
    return None


def extract_isbn(*sources: Optional[Dict[str, Any]]) -> Optional[str]:
    """First valid ISBN found in the given metadata dicts, in order"""
    for metadata in sources:
        if not metadata:
            continue
        for key in ISBN_KEYS:
            isbn = normalize_isbn(_lookup_case_insensitive(metadata, [key]))
            if isbn:
                return isbn
    return None


def extract_asin(*sources: Optional[Dict[str, Any]]) -> Optional[str]:
    """First valid ASIN found in the given metadata dicts, in order"""
    for metadata in sources:
        if not metadata:
            continue
        for key in ASIN_KEYS:
            asin = normalize_asin(_lookup_case_insensitive(metadata, [key]))
            if asin:
                return asin
    return None


def calculate_progress_percentage(current_page: int, total_pages: int) -> float:
    """
    Calculate progress percentage from current page and total pages
    Returns percentage as float (0.0 to 100.0)
    """
    if total_pages <= 0:
        return 0.0

    if current_page <= 0:
        return 0.0

    if current_page >= total_pages:
        return 100.0

    return (current_page / total_pages) * 100.0


def calculate_current_page(progress_percentage: float, total_pages: int) -> int:
    """
    Calculate current page from progress percentage and total pages
    Returns page number as integer
    """
    if total_pages <= 0 or progress_percentage <= 0:
        return 0

    if progress_percentage >= 100:
        return total_pages

    # Floor keeps the synced position conservative
    return math.floor((progress_percentage / 100) * total_pages)


def calculate_current_seconds(
    progress_percentage: float,
    total_seconds: int,
    current_time: Optional[float] = None,
) -> int:
    """
    Listening position in whole seconds
    Prefers the library's own current_time, clamped to the edition length
    """
    if total_seconds <= 0:
        return 0

    if current_time and current_time > 0:
        return min(int(current_time), total_seconds)

    return calculate_current_page(progress_percentage, total_seconds)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def today(timezone: str = "Etc/UTC") -> str:
    """Today's date as YYYY-MM-DD in the given timezone"""
    return datetime.now(pytz.timezone(timezone)).strftime("%Y-%m-%d")


def epoch_ms_to_date(value: Any, timezone: str = "Etc/UTC") -> Optional[str]:
    """
    Convert an epoch-milliseconds timestamp to YYYY-MM-DD in the given timezone
    Returns None for missing or unparseable values
    """
    if value is None or value == "":
        return None

    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None

    if millis <= 0:
        return None

    moment = datetime.fromtimestamp(millis / 1000.0, tz=pytz.utc)
    return moment.astimezone(pytz.timezone(timezone)).strftime("%Y-%m-%d")


def retry_on_failure(max_retries: int = 3, delay: float = 1.0, backoff: float = 2.0):
    """
    Decorator for retrying function calls on transient failures

    Only TransientRequestError is retried, with the delay multiplied by
    ``backoff`` after every attempt. The last failure is re-raised.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__)
            wait = delay

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except TransientRequestError as e:
                    if attempt == max_retries - 1:
                        raise

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for {func.__name__}: {str(e)}. "
                        f"Retrying in {wait:.1f} seconds..."
                    )
                    time.sleep(wait)
                    wait *= backoff

        return wrapper

    return decorator
