"""
Typed records passed between the sync components

Remote responses are converted into these at the client boundary, so the sync
logic never has to guess at raw JSON shapes.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


class IdentifierType(str, Enum):
    """Kind of identifier a cache record is keyed by"""

    ASIN = "asin"
    ISBN = "isbn"
    TITLE_AUTHOR = "title_author"


class BookStatus(IntEnum):
    """Hardcover user_book status ids"""

    WANT_TO_READ = 1
    CURRENTLY_READING = 2
    READ = 3


class SessionAction(str, Enum):
    CREATE_NEW = "create_new"
    UPDATE_EXISTING = "update_existing"


CacheKey = Tuple[str, IdentifierType]


def normalize_text(value: Optional[str]) -> str:
    """Lower-case, strip punctuation and collapse whitespace"""
    if not value:
        return ""
    cleaned = re.sub(r"[^\w\s]", " ", str(value).lower())
    return " ".join(cleaned.split())


@dataclass(frozen=True)
class Identity:
    """Identifiers used to correlate a library item with a catalog entry"""

    title: str
    author: str = ""
    isbn: Optional[str] = None
    asin: Optional[str] = None

    @property
    def title_author_key(self) -> str:
        return f"{normalize_text(self.title)}|{normalize_text(self.author)}"

    def cache_keys(self) -> List[CacheKey]:
        """All cache keys that may hold this book, highest priority first"""
        keys: List[CacheKey] = []
        if self.asin:
            keys.append((self.asin, IdentifierType.ASIN))
        if self.isbn:
            keys.append((self.isbn, IdentifierType.ISBN))
        keys.append((self.title_author_key, IdentifierType.TITLE_AUTHOR))
        return keys

    def primary_key(self) -> CacheKey:
        return self.cache_keys()[0]

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"isbn": self.isbn, "asin": self.asin}


@dataclass(frozen=True)
class BookKey:
    """Identity of one library item within one user's sync run"""

    user_id: str
    item_id: str


@dataclass
class LibraryItem:
    """An Audiobookshelf library item merged with the user's progress"""

    id: str
    title: str
    author: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra_metadata: Dict[str, Any] = field(default_factory=dict)
    progress_percentage: float = 0.0
    current_time: Optional[float] = None
    duration: Optional[float] = None
    is_finished: bool = False
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_listened_at: Optional[int] = None


@dataclass
class Edition:
    """A specific published version of a book in Hardcover"""

    id: int
    book_id: Optional[int] = None
    title: str = ""
    author: Optional[str] = None
    pages: Optional[int] = None
    audio_seconds: Optional[int] = None
    isbn_10: Optional[str] = None
    isbn_13: Optional[str] = None
    asin: Optional[str] = None
    physical_format: Optional[str] = None
    reading_format: Optional[str] = None

    @property
    def is_audiobook(self) -> bool:
        """Detect if an edition is an audiobook based on available fields"""
        if self.audio_seconds and self.audio_seconds > 0:
            return True

        if self.physical_format:
            physical_format_lower = self.physical_format.lower()
            if any(
                indicator in physical_format_lower
                for indicator in ["audio", "cd", "mp3", "aac"]
            ):
                return True

        if self.reading_format:
            format_lower = self.reading_format.lower()
            if any(indicator in format_lower for indicator in ["audio", "audiobook"]):
                return True

        return False

    def total_for(self, use_seconds: bool) -> Optional[int]:
        return self.audio_seconds if use_seconds else self.pages


@dataclass
class UserBook:
    """A book in the user's Hardcover library"""

    id: int
    book_id: Optional[int] = None
    status_id: Optional[int] = None
    title: str = ""
    author: Optional[str] = None
    edition_id: Optional[int] = None
    latest_read_edition_id: Optional[int] = None
    editions: List[Edition] = field(default_factory=list)

    def find_edition(self, edition_id: Optional[int]) -> Optional[Edition]:
        if edition_id is None:
            return None
        for edition in self.editions:
            if edition.id == edition_id:
                return edition
        return None


@dataclass
class ReadingSession:
    """A user_book_read record: one read or listen attempt"""

    id: int
    progress_pages: Optional[int] = None
    progress_seconds: Optional[int] = None
    edition_id: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    edition_pages: Optional[int] = None
    edition_audio_seconds: Optional[int] = None

    @property
    def is_finished(self) -> bool:
        return bool(self.finished_at)

    def progress_value(self, use_seconds: bool) -> Optional[int]:
        return self.progress_seconds if use_seconds else self.progress_pages

    def edition_total(self, use_seconds: bool) -> Optional[int]:
        return self.edition_audio_seconds if use_seconds else self.edition_pages


SessionRecord = ReadingSession


@dataclass
class ProgressSnapshot:
    """Current catalog-side state of one user_book"""

    latest_read: Optional[ReadingSession] = None
    user_book_id: Optional[int] = None
    status_id: Optional[int] = None

    @property
    def has_progress(self) -> bool:
        return self.latest_read is not None


@dataclass
class CatalogMatch:
    user_book: UserBook
    edition: Edition


@dataclass
class MatchResult:
    """Outcome of resolving a library item against Hardcover"""

    match: Optional[CatalogMatch]
    identity: Identity
    identifier: str
    identifier_type: IdentifierType
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: str = "none"
    auto_added: bool = False


@dataclass(frozen=True)
class CacheInfo:
    exists: bool
    edition_id: Optional[int] = None
    progress_percent: Optional[float] = None
    status_id: Optional[int] = None
    author: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_sync: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SyncChanges:
    progress_changed: bool = False
    status_changed: bool = False
    edition_changed: bool = False


@dataclass(frozen=True)
class SyncCheck:
    needs_sync: bool
    reason: str
    changes: SyncChanges = SyncChanges()


@dataclass(frozen=True)
class SessionDecision:
    action: SessionAction
    reason: str
    is_regression: bool = False
    previous_percent: Optional[float] = None

    @property
    def create_new(self) -> bool:
        return self.action is SessionAction.CREATE_NEW


@dataclass
class SessionWriteResult:
    record: Optional[SessionRecord] = None
    decision: Optional[SessionDecision] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.record is not None


@dataclass
class CompletionOutcome:
    record: Optional[SessionRecord] = None
    partial: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class BookDetail:
    title: str
    status: str
    identifiers: Dict[str, Optional[str]] = field(default_factory=dict)
    actions: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    timing: float = 0.0
    progress: Optional[float] = None


@dataclass(frozen=True)
class SyncResult:
    """Summary of one sync run"""

    success: bool
    books_processed: int = 0
    books_synced: int = 0
    books_completed: int = 0
    books_auto_added: int = 0
    books_skipped: int = 0
    books_failed: int = 0
    duplicates_removed: int = 0
    errors: Tuple[str, ...] = ()
    book_details: Tuple[BookDetail, ...] = ()
    duration: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
