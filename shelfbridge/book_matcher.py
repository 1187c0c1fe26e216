"""
Book Matcher - Resolves an Audiobookshelf item to a Hardcover user book and edition

Resolution order, first hit wins: cached edition, ASIN, ISBN, then title and
author. Editions found by a remote search resolve to a book already in the
user's library when possible, otherwise the book is added when auto-add is on.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .book_cache import ProgressCache
from .hardcover_client import HardcoverClient
from .models import (
    BookStatus,
    CacheInfo,
    CatalogMatch,
    Edition,
    IdentifierType,
    Identity,
    LibraryItem,
    MatchResult,
    UserBook,
)
from .utils import extract_asin, extract_isbn, normalize_asin, normalize_isbn


def identity_for(item: LibraryItem) -> Identity:
    """Identifiers of a library item; media metadata wins over item metadata"""
    return Identity(
        title=item.title,
        author=item.author or "",
        isbn=extract_isbn(item.metadata, item.extra_metadata),
        asin=extract_asin(item.metadata, item.extra_metadata),
    )


class BookMatcher:
    """Matches library items against one user's Hardcover library"""

    def __init__(
        self,
        hardcover: HardcoverClient,
        cache: ProgressCache,
        user_id: str,
        user_books: List[UserBook],
        auto_add_books: bool = True,
        title_author_search: bool = False,
        dry_run: bool = False,
    ):
        self.hardcover = hardcover
        self.cache = cache
        self.user_id = user_id
        self.auto_add_books = auto_add_books
        self.title_author_search = title_author_search
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._by_asin: Dict[str, Tuple[UserBook, Edition]] = {}
        self._by_isbn: Dict[str, Tuple[UserBook, Edition]] = {}
        self._by_edition: Dict[int, Tuple[UserBook, Edition]] = {}
        self._by_book: Dict[int, UserBook] = {}

        for user_book in user_books:
            self._register(user_book)

        self.logger.debug(
            f"Identifier lookup: {len(self._by_asin)} ASINs, {len(self._by_isbn)} ISBNs, "
            f"{len(self._by_edition)} editions"
        )

    def _register(self, user_book: UserBook) -> None:
        with self._lock:
            if user_book.book_id is not None:
                self._by_book[user_book.book_id] = user_book

            for edition in user_book.editions:
                self._by_edition[edition.id] = (user_book, edition)

                asin = normalize_asin(edition.asin)
                if asin:
                    self._by_asin[asin] = (user_book, edition)

                for isbn_raw in (edition.isbn_10, edition.isbn_13):
                    isbn = normalize_isbn(isbn_raw)
                    if isbn:
                        self._by_isbn[isbn] = (user_book, edition)

    def select_edition(
        self,
        user_book: UserBook,
        matched_edition: Edition,
        cached_edition_id: Optional[int] = None,
    ) -> Edition:
        """
        Pick the edition to sync against

        Priority order:
        1. Cached edition
        2. Edition of the latest reading session
        3. Linked edition (user_book.edition_id)
        4. Identifier-matched edition
        """
        for edition_id, label in (
            (cached_edition_id, "cached"),
            (user_book.latest_read_edition_id, "existing progress"),
            (user_book.edition_id, "linked"),
        ):
            edition = user_book.find_edition(edition_id)
            if edition is not None:
                self.logger.debug(
                    f"Using {label} edition {edition.id} for {user_book.title}"
                )
                return edition

        return matched_edition

    def resolve(
        self, item: LibraryItem, cached: Optional[CacheInfo] = None
    ) -> MatchResult:
        """
        Resolve a library item to a Hardcover user book and edition

        ``cached`` is the cache row already looked up by the caller; when None
        every applicable cache key is checked here.
        """
        identity = identity_for(item)
        identifier, identifier_type = identity.primary_key()

        def result(match, source, via=None, **metadata) -> MatchResult:
            key = via or (identifier, identifier_type)
            return MatchResult(
                match=match,
                identity=identity,
                identifier=key[0],
                identifier_type=key[1],
                metadata=metadata,
                source=source,
                auto_added=source == "auto_added",
            )

        if cached is None:
            _, cached = self.cache.find_cached_info(
                self.user_id, identity.cache_keys(), identity.title
            )

        cached_edition_id = cached.edition_id if cached.exists else None
        if cached_edition_id is not None:
            with self._lock:
                hit = self._by_edition.get(int(cached_edition_id))
            if hit:
                user_book, edition = hit
                self.logger.debug(f"Cache hit for {item.title}: edition {edition.id}")
                return result(CatalogMatch(user_book, edition), "cache")

        for value, kind, lookup, search in (
            (identity.asin, IdentifierType.ASIN, self._by_asin, self.hardcover.search_by_asin),
            (identity.isbn, IdentifierType.ISBN, self._by_isbn, self.hardcover.search_by_isbn),
        ):
            if not value:
                continue

            with self._lock:
                hit = lookup.get(value)
            if hit:
                user_book, matched = hit
                edition = self.select_edition(user_book, matched, cached_edition_id)
                return result(
                    CatalogMatch(user_book, edition), "library", via=(value, kind)
                )

            editions = search(value)
            if editions:
                return self._resolve_remote(
                    item, editions, value, kind, result, cached_edition_id
                )

        if identity.asin or identity.isbn:
            return result(None, "none", reason="identifiers not found in Hardcover")

        if not self.title_author_search:
            return result(None, "none", reason="no identifiers and title search disabled")

        editions = self.hardcover.search_by_title_author(identity.title, identity.author)
        if not editions:
            return result(None, "none", reason="no title/author match in Hardcover")

        return self._resolve_remote(
            item,
            editions,
            identity.title_author_key,
            IdentifierType.TITLE_AUTHOR,
            result,
            cached_edition_id,
        )

    def _resolve_remote(
        self,
        item: LibraryItem,
        editions: List[Edition],
        value: str,
        kind: IdentifierType,
        result,
        cached_edition_id: Optional[int],
    ) -> MatchResult:
        """Turn editions from a remote search into a match"""
        via = (value, kind)

        for edition in editions:
            with self._lock:
                user_book = self._by_book.get(edition.book_id)
            if user_book is not None:
                own = user_book.find_edition(edition.id) or edition
                chosen = self.select_edition(user_book, own, cached_edition_id)
                self.logger.debug(
                    f"{item.title}: search hit book {edition.book_id} already in library"
                )
                return result(CatalogMatch(user_book, chosen), "search", via=via)

        edition = self._best_edition(editions, value, kind)
        if edition.book_id is None:
            return result(None, "none", via=via, reason="search hit has no book id")

        if not self.auto_add_books:
            return result(
                None, "none", via=via, reason="not in library and auto-add disabled"
            )

        if self.dry_run:
            self.logger.info(
                f"[DRY RUN] Would add {item.title} (book {edition.book_id}, edition {edition.id})"
            )
            return result(
                None,
                "would_auto_add",
                via=via,
                book_id=edition.book_id,
                edition_id=edition.id,
            )

        user_book_id = self.hardcover.add_book_to_library(
            edition.book_id, BookStatus.CURRENTLY_READING, edition.id
        )
        if not user_book_id:
            return result(
                None,
                "auto_add_failed",
                via=via,
                reason=f"could not add book {edition.book_id} to library",
            )

        user_book = UserBook(
            id=user_book_id,
            book_id=edition.book_id,
            status_id=int(BookStatus.CURRENTLY_READING),
            title=edition.title or item.title,
            author=edition.author or item.author,
            edition_id=edition.id,
            editions=[edition],
        )
        self._register(user_book)

        identifier, identifier_type = identity_for(item).primary_key()
        self.cache.store_sync_data(
            self.user_id,
            identifier,
            item.title,
            edition.id,
            identifier_type,
            author=user_book.author,
        )

        self.logger.info(
            f"➕ Added {item.title} to Hardcover library (user_book {user_book_id})"
        )
        return result(
            CatalogMatch(user_book, edition),
            "auto_added",
            via=via,
            book_id=edition.book_id,
            edition_id=edition.id,
        )

    @staticmethod
    def _best_edition(
        editions: List[Edition], value: str, kind: IdentifierType
    ) -> Edition:
        """The edition carrying the searched identifier, else the first one"""
        for edition in editions:
            if kind is IdentifierType.ASIN and normalize_asin(edition.asin) == value:
                return edition
            if kind is IdentifierType.ISBN and value in (
                normalize_isbn(edition.isbn_10),
                normalize_isbn(edition.isbn_13),
            ):
                return edition
        return editions[0]
