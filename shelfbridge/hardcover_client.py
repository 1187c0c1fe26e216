"""
Hardcover API Client - Handles all interactions with Hardcover GraphQL API
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .exceptions import CatalogServiceError, TransientRequestError
from .models import (
    BookStatus,
    Edition,
    ProgressSnapshot,
    ReadingSession,
    UserBook,
    normalize_text,
)
from .rate_gate import RateGate
from .utils import retry_on_failure

API_URL = "https://api.hardcover.app/v1/graphql"
REQUEST_TIMEOUT = 30
PAGE_SIZE = 100

EDITION_FIELDS = """
    id
    book_id
    isbn_10
    isbn_13
    asin
    pages
    audio_seconds
    physical_format
    reading_format { format }
"""

BOOK_AUTHORS = """
    contributions(where: {contributable_type: {_eq: "Book"}}) {
        author {
            id
            name
        }
    }
"""

READ_FIELDS = """
    id
    progress_pages
    progress_seconds
    edition_id
    started_at
    finished_at
"""


def _author_from_contributions(contributions: Any) -> Optional[str]:
    if not isinstance(contributions, list):
        return None
    for contribution in contributions:
        author = (contribution or {}).get("author") or {}
        if author.get("name"):
            return author["name"]
    return None


def edition_from_api(
    data: Any, book: Optional[Dict[str, Any]] = None
) -> Optional[Edition]:
    """Normalize an edition object, None when it has no id"""
    if not isinstance(data, dict) or data.get("id") is None:
        return None

    book = book if book is not None else (data.get("book") or {})
    reading_format = data.get("reading_format")
    if isinstance(reading_format, dict):
        reading_format = reading_format.get("format")

    return Edition(
        id=int(data["id"]),
        book_id=data.get("book_id") or book.get("id"),
        title=book.get("title") or "",
        author=_author_from_contributions(book.get("contributions")),
        pages=data.get("pages"),
        audio_seconds=data.get("audio_seconds"),
        isbn_10=data.get("isbn_10"),
        isbn_13=data.get("isbn_13"),
        asin=data.get("asin"),
        physical_format=data.get("physical_format"),
        reading_format=reading_format,
    )


def user_book_from_api(data: Any) -> Optional[UserBook]:
    """Normalize a user_books entry, None when it is unusable"""
    if not isinstance(data, dict) or data.get("id") is None:
        return None

    book = data.get("book") or {}
    editions = [
        edition
        for edition in (edition_from_api(e, book) for e in book.get("editions") or [])
        if edition is not None
    ]

    reads = data.get("user_book_reads") or []
    latest_read_edition_id = reads[0].get("edition_id") if reads else None

    return UserBook(
        id=int(data["id"]),
        book_id=book.get("id"),
        status_id=data.get("status_id"),
        title=book.get("title") or "",
        author=_author_from_contributions(book.get("contributions")),
        edition_id=data.get("edition_id"),
        latest_read_edition_id=latest_read_edition_id,
        editions=editions,
    )


def reading_session_from_api(data: Any) -> Optional[ReadingSession]:
    """Normalize a user_book_read record, None when it has no id"""
    if not isinstance(data, dict) or data.get("id") is None:
        return None

    edition = data.get("edition") or {}
    return ReadingSession(
        id=int(data["id"]),
        progress_pages=data.get("progress_pages"),
        progress_seconds=data.get("progress_seconds"),
        edition_id=data.get("edition_id"),
        started_at=data.get("started_at"),
        finished_at=data.get("finished_at"),
        edition_pages=edition.get("pages"),
        edition_audio_seconds=edition.get("audio_seconds"),
    )


class HardcoverClient:
    """Client for interacting with Hardcover GraphQL API"""

    def __init__(
        self, token: str, gate: Optional[RateGate] = None, api_url: str = API_URL
    ):
        self.token = token
        self.api_url = api_url
        self.gate = gate or RateGate(
            "hardcover", max_concurrency=1, max_requests_per_minute=55
        )
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

        self.logger.debug("HardcoverClient initialized")

    def test_connection(self) -> bool:
        """Test connection to Hardcover API"""
        return self.get_current_user() is not None

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        """Get current user information"""
        query = """
        query {
            me {
                id
                username
            }
        }
        """

        result = self._execute_query(query)
        if not result:
            return None

        me = result.get("me")
        # Hardcover returns `me` as a one element list
        if isinstance(me, list):
            me = me[0] if me else None
        return me if isinstance(me, dict) else None

    def get_user_books(self) -> List[UserBook]:
        """
        Get all books in user's library, one page at a time

        Raises:
            CatalogServiceError: a page could not be fetched or parsed. A partial
                library would make known books look missing.
        """
        self.logger.info("Fetching user's book library from Hardcover...")

        query = f"""
        query getUserBooks($offset: Int!, $limit: Int!) {{
            me {{
                user_books(offset: $offset, limit: $limit, order_by: {{id: asc}}) {{
                    id
                    status_id
                    edition_id
                    user_book_reads(order_by: {{id: desc}}, limit: 1) {{
                        edition_id
                    }}
                    book {{
                        id
                        title
                        {BOOK_AUTHORS}
                        editions {{
                            {EDITION_FIELDS}
                        }}
                    }}
                }}
            }}
        }}
        """

        all_books: List[UserBook] = []
        offset = 0

        while True:
            result = self._execute_query(query, {"offset": offset, "limit": PAGE_SIZE})
            if not result or "me" not in result:
                raise CatalogServiceError(
                    f"Could not fetch Hardcover library page at offset {offset}"
                )

            me_data = result["me"]
            if isinstance(me_data, list):
                me_data = me_data[0] if me_data else {}
            if not isinstance(me_data, dict) or not isinstance(
                me_data.get("user_books"), list
            ):
                raise CatalogServiceError(
                    f"Unexpected Hardcover library response shape: {type(me_data)}"
                )

            books = me_data["user_books"]
            for entry in books:
                user_book = user_book_from_api(entry)
                if user_book is not None:
                    all_books.append(user_book)

            if len(books) < PAGE_SIZE:
                break

            offset += PAGE_SIZE
            self.logger.debug(f"Fetched {len(all_books)} books so far...")

        self.logger.info(f"Retrieved {len(all_books)} books from Hardcover library")
        return all_books

    def get_book_current_progress(self, user_book_id: int) -> Optional[ProgressSnapshot]:
        """
        Get the latest reading session and status of a user_book
        Returns None when the state could not be fetched or was malformed.
        """
        query = f"""
        query getBookProgress($userBookId: Int!) {{
            user_book_reads(where: {{user_book_id: {{_eq: $userBookId}}}}, order_by: {{id: desc}}, limit: 1) {{
                {READ_FIELDS}
                edition {{
                    id
                    pages
                    audio_seconds
                }}
            }}
            user_books(where: {{id: {{_eq: $userBookId}}}}) {{
                id
                status_id
            }}
        }}
        """

        result = self._execute_query(query, {"userBookId": user_book_id})
        if not result:
            return None

        reads = result.get("user_book_reads")
        if not isinstance(reads, list):
            self.logger.error(
                f"Malformed progress response for user_book_id {user_book_id}: {result}"
            )
            return None

        latest_read = None
        if reads:
            latest_read = reading_session_from_api(reads[0])
            if latest_read is None:
                self.logger.error(
                    f"Reading session without id for user_book_id {user_book_id}"
                )
                return None

        user_books = result.get("user_books") or []
        status_id = user_books[0].get("status_id") if user_books else None

        return ProgressSnapshot(
            latest_read=latest_read, user_book_id=user_book_id, status_id=status_id
        )

    @staticmethod
    def _session_fields(
        value: int,
        edition_id: Optional[int],
        use_seconds: bool,
        started_at: Optional[str],
        finished_at: Optional[str],
    ) -> Dict[str, Tuple[str, Any]]:
        """Object fields for a user_book_read mutation; dates only when given"""
        progress_field = "progress_seconds" if use_seconds else "progress_pages"
        fields: Dict[str, Tuple[str, Any]] = {
            progress_field: ("Int", int(value)),
            "edition_id": ("Int", edition_id),
        }
        if started_at:
            fields["started_at"] = ("date", started_at)
        if finished_at:
            fields["finished_at"] = ("date", finished_at)
        return fields

    def _write_session(
        self,
        operation: str,
        id_argument: str,
        target_id: int,
        fields: Dict[str, Tuple[str, Any]],
    ) -> Optional[ReadingSession]:
        declarations = ", ".join(
            ["$targetId: Int!"] + [f"${name}: {kind}" for name, (kind, _) in fields.items()]
        )
        object_name = "user_book_read" if operation == "insert_user_book_read" else "object"
        assignments = ", ".join(f"{name}: ${name}" for name in fields)

        mutation = f"""
        mutation {operation}({declarations}) {{
            {operation}({id_argument}: $targetId, {object_name}: {{{assignments}}}) {{
                error
                user_book_read {{
                    {READ_FIELDS}
                }}
            }}
        }}
        """
        variables = {"targetId": target_id}
        variables.update({name: value for name, (_, value) in fields.items()})

        result = self._execute_query(mutation, variables)
        payload = (result or {}).get(operation) or {}

        if payload.get("error"):
            self.logger.warning(f"{operation} failed with error: {payload['error']}")
            return None

        record = reading_session_from_api(payload.get("user_book_read"))
        if record is None:
            self.logger.warning(f"{operation} returned no record. Response: {result}")
        return record

    def insert_reading_session(
        self,
        user_book_id: int,
        edition_id: Optional[int],
        value: int,
        use_seconds: bool,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> Optional[ReadingSession]:
        """
        Create a new user_book_read for a user_book

        Returns:
            The created session, or None if the write failed
        """
        self.logger.debug(
            f"Creating reading session for user_book_id {user_book_id}: "
            f"{value} {'seconds' if use_seconds else 'pages'}"
        )
        fields = self._session_fields(
            value, edition_id, use_seconds, started_at, finished_at
        )
        return self._write_session(
            "insert_user_book_read", "user_book_id", user_book_id, fields
        )

    def update_reading_session(
        self,
        read_id: int,
        edition_id: Optional[int],
        value: int,
        use_seconds: bool,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> Optional[ReadingSession]:
        """
        Update an existing user_book_read

        started_at and finished_at are only written when given, so an update
        never clears the session's original start date.
        """
        self.logger.debug(
            f"Updating reading session {read_id}: "
            f"{value} {'seconds' if use_seconds else 'pages'}"
        )
        fields = self._session_fields(
            value, edition_id, use_seconds, started_at, finished_at
        )
        return self._write_session("update_user_book_read", "id", read_id, fields)

    def update_book_status(self, user_book_id: int, status_id: int) -> bool:
        """
        Update the status of a book in Hardcover

        Args:
            user_book_id: ID of the user_book record in Hardcover
            status_id: Status (1=Want to Read, 2=Currently Reading, 3=Read)

        Returns:
            True if status updated successfully, False otherwise
        """
        mutation = """
        mutation updateBookStatus($id: Int!, $statusId: Int!) {
            update_user_book(id: $id, object: {status_id: $statusId}) {
                error
                user_book {
                    id
                    status_id
                }
            }
        }
        """

        result = self._execute_query(
            mutation, {"id": user_book_id, "statusId": int(status_id)}
        )
        payload = (result or {}).get("update_user_book") or {}

        if payload.get("user_book"):
            self.logger.debug(
                f"Updated book status: user_book_id {user_book_id} to status {status_id}"
            )
            return True

        self.logger.warning(
            f"Failed to update book status: user_book_id {user_book_id}. Response: {result}"
        )
        return False

    def _search_editions(self, where: str, variables: Dict[str, Any]) -> List[Edition]:
        declarations = ", ".join(f"${name}: String!" for name in variables)
        query = f"""
        query searchEditions({declarations}) {{
            editions(where: {where}, limit: 10) {{
                {EDITION_FIELDS}
                book {{
                    id
                    title
                    {BOOK_AUTHORS}
                }}
            }}
        }}
        """

        result = self._execute_query(query, variables)
        editions = (result or {}).get("editions")
        if not isinstance(editions, list):
            return []
        return [e for e in (edition_from_api(data) for data in editions) if e is not None]

    def search_by_isbn(self, isbn: str) -> List[Edition]:
        """Find editions whose ISBN-10 or ISBN-13 matches"""
        editions = self._search_editions(
            "{_or: [{isbn_10: {_eq: $isbn}}, {isbn_13: {_eq: $isbn}}]}", {"isbn": isbn}
        )
        self.logger.debug(f"Found {len(editions)} editions for ISBN {isbn}")
        return editions

    def search_by_asin(self, asin: str) -> List[Edition]:
        """Find editions with this ASIN"""
        editions = self._search_editions("{asin: {_eq: $asin}}", {"asin": asin})
        self.logger.debug(f"Found {len(editions)} editions for ASIN {asin}")
        return editions

    def search_by_title_author(
        self, title: str, author: Optional[str] = None, limit: int = 5
    ) -> List[Edition]:
        """
        Search the catalog by title and author

        Uses the full-text search endpoint, keeps the first hit whose title
        matches after normalization and, when an author is given, whose
        author names share that author, then returns that book's editions.
        """
        search_text = f"{title.strip()} {author.strip()}" if author else title.strip()
        query = """
        query searchBooks($query: String!, $limit: Int!) {
            search(query: $query, query_type: "books", per_page: $limit, page: 1) {
                results
            }
        }
        """

        result = self._execute_query(query, {"query": search_text, "limit": min(limit, 10)})
        results = ((result or {}).get("search") or {}).get("results")

        if isinstance(results, str):
            try:
                results = json.loads(results)
            except ValueError:
                self.logger.warning(f"Unparseable search results for '{title}'")
                return []

        if isinstance(results, dict):
            hits = [hit.get("document") for hit in results.get("hits") or []]
        elif isinstance(results, list):
            hits = results
        else:
            return []

        wanted = normalize_text(title)
        for document in hits:
            if not isinstance(document, dict) or document.get("id") is None:
                continue
            if normalize_text(document.get("title")) != wanted:
                continue
            if author and not self._author_matches(author, document.get("author_names")):
                continue
            return self.get_book_editions(int(document["id"]))

        self.logger.debug(f"No title match in search results for '{title}'")
        return []

    @staticmethod
    def _author_matches(author: str, author_names: Any) -> bool:
        """True when any queried author matches one of the hit's author names.

        Hits that carry no author names are accepted on title alone.
        """
        if isinstance(author_names, str):
            author_names = [author_names]
        names = [set(normalize_text(name).split()) for name in author_names or [] if name]
        names = [name for name in names if name]
        if not names:
            return True

        wanted = [set(normalize_text(part).split()) for part in author.split(",")]
        wanted = [part for part in wanted if part]
        if not wanted:
            return True

        return any(part <= name or name <= part for part in wanted for name in names)

    def get_book_editions(self, book_id: int) -> List[Edition]:
        """All editions of a book"""
        query = f"""
        query getBookEditions($id: Int!) {{
            books(where: {{id: {{_eq: $id}}}}, limit: 1) {{
                id
                title
                {BOOK_AUTHORS}
                editions {{
                    {EDITION_FIELDS}
                }}
            }}
        }}
        """

        result = self._execute_query(query, {"id": book_id})
        books = (result or {}).get("books")
        if not isinstance(books, list) or not books:
            return []

        book = books[0]
        return [
            e
            for e in (edition_from_api(data, book) for data in book.get("editions") or [])
            if e is not None
        ]

    def add_book_to_library(
        self,
        book_id: int,
        status_id: int = BookStatus.CURRENTLY_READING,
        edition_id: Optional[int] = None,
    ) -> Optional[int]:
        """
        Add a book to user's library

        Returns:
            The new user_book id, or None if the write failed
        """
        self.logger.info(f"Adding book {book_id} to library with status {int(status_id)}")

        mutation = """
        mutation addBookToLibrary($bookId: Int!, $statusId: Int!, $editionId: Int) {
            insert_user_book(object: {
                book_id: $bookId,
                status_id: $statusId,
                edition_id: $editionId
            }) {
                id
                error
            }
        }
        """

        result = self._execute_query(
            mutation,
            {"bookId": book_id, "statusId": int(status_id), "editionId": edition_id},
        )
        payload = (result or {}).get("insert_user_book") or {}

        if payload.get("id"):
            return int(payload["id"])

        self.logger.warning(f"Failed to add book {book_id} to library. Response: {result}")
        return None

    @retry_on_failure(max_retries=3, delay=2.0)
    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        with self.gate.slot():
            try:
                response = self.session.post(
                    self.api_url, json=payload, timeout=REQUEST_TIMEOUT
                )
            except (
                requests.exceptions.ConnectionError,
                requests.exceptions.Timeout,
            ) as e:
                raise TransientRequestError(f"Hardcover request failed: {str(e)}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRequestError(
                f"Hardcover returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _execute_query(
        self, query: str, variables: Optional[Dict] = None
    ) -> Optional[Dict]:
        """Execute GraphQL query through the rate gate, None on any failure"""
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = self._post(payload)
            response.raise_for_status()
            data = response.json()

        except TransientRequestError as e:
            self.logger.error(f"Request failed after retries: {str(e)}")
            return None
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Request failed: {str(e)}")
            return None
        except ValueError as e:
            self.logger.error(f"Invalid JSON response: {str(e)}")
            return None

        if not isinstance(data, dict):
            self.logger.error(f"Unexpected GraphQL response: {type(data)}")
            return None

        if "errors" in data:
            self.logger.error(f"GraphQL errors: {data['errors']}")
            return None

        return data.get("data")
