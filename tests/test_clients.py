"""Tests for the Audiobookshelf and Hardcover API clients"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from shelfbridge.audiobookshelf_client import AudiobookshelfClient, library_item_from_api
from shelfbridge.exceptions import CatalogServiceError, LibraryServiceError
from shelfbridge.hardcover_client import (
    HardcoverClient,
    edition_from_api,
    user_book_from_api,
)
from shelfbridge.rate_gate import RateGate


def make_response(status_code=200, data=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error", response=response
        )
    return response


@pytest.fixture(autouse=True)
def no_retry_sleep():
    with patch("shelfbridge.utils.time.sleep") as mock_sleep:
        yield mock_sleep


ITEM_A = {
    "id": "a",
    "media": {
        "duration": 36000,
        "metadata": {"title": "The Hobbit", "authorName": "J.R.R. Tolkien", "isbn": "9780547928227"},
    },
}
ITEM_B = {
    "id": "b",
    "media": {"metadata": {"title": "Dune", "authors": [{"name": "Frank Herbert"}]}},
    "metadata": {"asin": "B00B7NPRY8"},
}


class TestLibraryItemParsing:
    def test_progress_merged(self):
        item = library_item_from_api(
            ITEM_A,
            {
                "progress": 0.42,
                "currentTime": 15120.5,
                "isFinished": False,
                "startedAt": 1700000000000,
                "lastUpdate": 1700000500000,
            },
        )
        assert item.id == "a"
        assert item.title == "The Hobbit"
        assert item.author == "J.R.R. Tolkien"
        assert item.progress_percentage == pytest.approx(42.0)
        assert item.current_time == 15120.5
        assert item.duration == 36000
        assert item.started_at == 1700000000000
        assert item.last_listened_at == 1700000500000
        assert item.metadata["isbn"] == "9780547928227"

    def test_without_progress(self):
        item = library_item_from_api(ITEM_B)
        assert item.author == "Frank Herbert"
        assert item.progress_percentage == 0.0
        assert item.is_finished is False
        assert item.extra_metadata == {"asin": "B00B7NPRY8"}


class TestAudiobookshelfClient:
    """REST client for Audiobookshelf"""

    def make_client(self, routes):
        client = AudiobookshelfClient(
            "https://abs.example.com/", "token", gate=RateGate("audiobookshelf", 2, 1000)
        )
        client.session = MagicMock()

        def request(method, url, **kwargs):
            path = url.replace("https://abs.example.com", "")
            return routes.get(path) or make_response(404)

        client.session.request.side_effect = request
        return client

    def test_get_reading_progress(self):
        client = self.make_client(
            {
                "/api/me": make_response(data={"id": "user"}),
                "/api/me/items-in-progress": make_response(data={"libraryItems": [{"id": "a"}]}),
                "/api/libraries": make_response(data={"libraries": [{"id": "lib1"}]}),
                "/api/libraries/lib1/items": make_response(
                    data={"results": [{"id": "a"}, {"id": "b"}]}
                ),
                "/api/items/a": make_response(data=ITEM_A),
                "/api/items/b": make_response(data=ITEM_B),
                "/api/me/progress/a": make_response(data={"progress": 0.5}),
            }
        )

        items = {item.id: item for item in client.get_reading_progress()}

        assert set(items) == {"a", "b"}
        assert items["a"].progress_percentage == pytest.approx(50.0)
        assert items["b"].progress_percentage == 0.0
        # "a" appears in both lists but is only fetched once
        item_calls = [
            c for c in client.session.request.call_args_list if c.args[1].endswith("/api/items/a")
        ]
        assert len(item_calls) == 1

    def test_repeated_progress_items_are_passed_through(self):
        client = self.make_client(
            {
                "/api/me": make_response(data={"id": "user"}),
                "/api/me/items-in-progress": make_response(
                    data={"libraryItems": [{"id": "a"}, {"id": "a"}]}
                ),
                "/api/libraries": make_response(data={"libraries": []}),
                "/api/items/a": make_response(data=ITEM_A),
                "/api/me/progress/a": make_response(data={"progress": 0.5}),
            }
        )

        items = client.get_reading_progress()

        assert [item.id for item in items] == ["a", "a"]
        item_calls = [
            c for c in client.session.request.call_args_list if c.args[1].endswith("/api/items/a")
        ]
        assert len(item_calls) == 1

    def test_library_without_id_is_skipped(self):
        client = self.make_client(
            {
                "/api/me": make_response(data={"id": "user"}),
                "/api/me/items-in-progress": make_response(data={"libraryItems": []}),
                "/api/libraries": make_response(
                    data={"libraries": [{"name": "Broken"}, {"id": "lib1"}]}
                ),
                "/api/libraries/lib1/items": make_response(data={"results": [{"id": "b"}]}),
                "/api/items/b": make_response(data=ITEM_B),
            }
        )

        items = client.get_reading_progress()

        assert [item.id for item in items] == ["b"]

    def test_missing_user_raises(self):
        client = self.make_client({"/api/me": make_response(401)})

        with pytest.raises(LibraryServiceError):
            client.get_reading_progress()

    def test_server_errors_are_retried(self, no_retry_sleep):
        client = self.make_client({"/api/me": make_response(503)})

        assert client._get_json("/api/me") is None
        assert client.session.request.call_count == 3
        assert no_retry_sleep.call_count == 2

    def test_connection_errors_are_retried(self):
        client = self.make_client({})
        client.session.request.side_effect = [
            requests.exceptions.ConnectionError("refused"),
            make_response(data={"success": True}),
        ]

        assert client.test_connection()
        assert client.session.request.call_count == 2

    def test_requests_go_through_gate(self):
        client = self.make_client({"/ping": make_response(data={"success": True})})

        client.test_connection()

        assert client.gate.stats()["total_requests"] == 1
        assert client.gate.concurrency.active == 0

    def test_connection_failure(self):
        client = self.make_client({"/ping": make_response(401)})
        assert client.test_connection() is False


class TestHardcoverParsing:
    def test_edition_from_api(self):
        edition = edition_from_api(
            {
                "id": 1001,
                "book_id": 100,
                "asin": "B007978NPG",
                "audio_seconds": 39000,
                "reading_format": {"format": "Listened"},
                "book": {
                    "id": 100,
                    "title": "The Hobbit",
                    "contributions": [{"author": {"id": 1, "name": "J.R.R. Tolkien"}}],
                },
            }
        )
        assert edition.id == 1001
        assert edition.title == "The Hobbit"
        assert edition.author == "J.R.R. Tolkien"
        assert edition.reading_format == "Listened"
        assert edition.is_audiobook

    def test_edition_without_id(self):
        assert edition_from_api({"book_id": 1}) is None
        assert edition_from_api(None) is None

    def test_user_book_from_api(self):
        user_book = user_book_from_api(
            {
                "id": 10,
                "status_id": 2,
                "edition_id": 1000,
                "user_book_reads": [{"edition_id": 1001}],
                "book": {
                    "id": 100,
                    "title": "The Hobbit",
                    "editions": [{"id": 1000, "pages": 300}, {"id": 1001}, {"pages": 12}],
                },
            }
        )
        assert user_book.id == 10
        assert user_book.book_id == 100
        assert user_book.latest_read_edition_id == 1001
        assert [e.id for e in user_book.editions] == [1000, 1001]
        assert user_book.editions[0].book_id == 100


class TestHardcoverClient:
    """GraphQL client for Hardcover"""

    @pytest.fixture
    def client(self):
        client = HardcoverClient("token", gate=RateGate("hardcover", 1, 1000))
        client.session = MagicMock()
        return client

    def respond(self, client, *payloads):
        client.session.post.side_effect = [
            p if isinstance(p, MagicMock) else make_response(data=p) for p in payloads
        ]

    @staticmethod
    def sent(client, index=-1):
        return client.session.post.call_args_list[index].kwargs["json"]

    def test_current_user_list_shape(self, client):
        self.respond(client, {"data": {"me": [{"id": 1, "username": "alice"}]}})
        assert client.get_current_user() == {"id": 1, "username": "alice"}

    def test_user_books_paginated(self, client):
        entry = {"id": 1, "status_id": 2, "book": {"id": 100, "title": "A", "editions": []}}
        self.respond(
            client,
            {"data": {"me": {"user_books": [dict(entry, id=1), dict(entry, id=2)]}}},
            {"data": {"me": [{"user_books": [dict(entry, id=3)]}]}},
        )

        with patch("shelfbridge.hardcover_client.PAGE_SIZE", 2):
            books = client.get_user_books()

        assert [b.id for b in books] == [1, 2, 3]
        assert self.sent(client, 0)["variables"] == {"offset": 0, "limit": 2}
        assert self.sent(client, 1)["variables"] == {"offset": 2, "limit": 2}

    def test_user_books_failed_page_raises(self, client):
        entry = {"id": 1, "book": {"id": 100}}
        self.respond(
            client,
            {"data": {"me": {"user_books": [entry, dict(entry, id=2)]}}},
            {"errors": [{"message": "boom"}]},
        )

        with patch("shelfbridge.hardcover_client.PAGE_SIZE", 2):
            with pytest.raises(CatalogServiceError):
                client.get_user_books()

    def test_current_progress(self, client):
        self.respond(
            client,
            {
                "data": {
                    "user_book_reads": [
                        {
                            "id": 7,
                            "progress_pages": 120,
                            "edition_id": 1000,
                            "started_at": "2024-01-02",
                            "finished_at": None,
                            "edition": {"id": 1000, "pages": 300},
                        }
                    ],
                    "user_books": [{"id": 10, "status_id": 2}],
                }
            },
        )

        snapshot = client.get_book_current_progress(10)

        assert snapshot.status_id == 2
        assert snapshot.latest_read.id == 7
        assert snapshot.latest_read.edition_total(False) == 300
        assert not snapshot.latest_read.is_finished

    def test_current_progress_without_session(self, client):
        self.respond(client, {"data": {"user_book_reads": [], "user_books": []}})

        snapshot = client.get_book_current_progress(10)

        assert snapshot is not None
        assert snapshot.latest_read is None

    def test_current_progress_malformed(self, client):
        self.respond(client, {"data": {"user_book_reads": {"id": 7}}})
        assert client.get_book_current_progress(10) is None

    def test_insert_reading_session(self, client):
        self.respond(
            client,
            {"data": {"insert_user_book_read": {"error": None, "user_book_read": {"id": 9, "progress_pages": 120}}}},
        )

        record = client.insert_reading_session(10, 1000, 120, False, started_at="2024-01-02")

        assert record.id == 9
        payload = self.sent(client)
        assert payload["variables"] == {
            "targetId": 10,
            "progress_pages": 120,
            "edition_id": 1000,
            "started_at": "2024-01-02",
        }
        assert "insert_user_book_read(user_book_id: $targetId, user_book_read:" in payload["query"]
        assert "finished_at" not in payload["query"].split("user_book_read {")[0]

    def test_update_reading_session_seconds(self, client):
        self.respond(
            client,
            {"data": {"update_user_book_read": {"error": None, "user_book_read": {"id": 7, "progress_seconds": 600}}}},
        )

        record = client.update_reading_session(7, 1001, 600, True, finished_at="2024-03-01")

        assert record.progress_seconds == 600
        variables = self.sent(client)["variables"]
        assert variables == {
            "targetId": 7,
            "progress_seconds": 600,
            "edition_id": 1001,
            "finished_at": "2024-03-01",
        }
        assert "update_user_book_read(id: $targetId, object:" in self.sent(client)["query"]

    def test_session_write_error(self, client):
        self.respond(
            client,
            {"data": {"update_user_book_read": {"error": "not allowed", "user_book_read": None}}},
        )
        assert client.update_reading_session(7, 1001, 600, True) is None

    def test_update_book_status(self, client):
        self.respond(
            client,
            {"data": {"update_user_book": {"error": None, "user_book": {"id": 10, "status_id": 3}}}},
            {"data": {"update_user_book": {"error": "nope", "user_book": None}}},
        )

        assert client.update_book_status(10, 3) is True
        assert client.update_book_status(10, 3) is False

    def test_search_by_isbn(self, client):
        self.respond(
            client,
            {"data": {"editions": [{"id": 1000, "book_id": 100, "isbn_13": "9780547928227", "book": {"id": 100, "title": "The Hobbit"}}]}},
        )

        editions = client.search_by_isbn("9780547928227")

        assert [e.id for e in editions] == [1000]
        assert self.sent(client)["variables"] == {"isbn": "9780547928227"}

    def test_search_by_title_author(self, client):
        hits = {"hits": [{"document": {"id": 300, "title": "Dune"}}]}
        self.respond(
            client,
            {"data": {"search": {"results": json.dumps(hits)}}},
            {"data": {"books": [{"id": 300, "title": "Dune", "editions": [{"id": 3000, "pages": 600}]}]}},
        )

        editions = client.search_by_title_author("Dune", "Frank Herbert")

        assert [(e.id, e.book_id) for e in editions] == [(3000, 300)]
        assert self.sent(client, 0)["variables"]["query"] == "Dune Frank Herbert"

    def test_search_by_title_skips_other_authors(self, client):
        hits = [
            {"id": 900, "title": "Dune", "author_names": ["Someone Else"]},
            {"id": 300, "title": "Dune", "author_names": ["Frank Herbert"]},
        ]
        self.respond(
            client,
            {"data": {"search": {"results": hits}}},
            {"data": {"books": [{"id": 300, "title": "Dune", "editions": [{"id": 3000, "pages": 600}]}]}},
        )

        editions = client.search_by_title_author("Dune", "Frank Herbert")

        assert [e.book_id for e in editions] == [300]
        assert self.sent(client, 1)["variables"] == {"id": 300}

    def test_search_by_title_no_author_match(self, client):
        hits = [{"id": 900, "title": "Dune", "author_names": ["Someone Else"]}]
        self.respond(client, {"data": {"search": {"results": hits}}})

        assert client.search_by_title_author("Dune", "Frank Herbert") == []
        assert client.session.post.call_count == 1

    def test_search_by_title_author_punctuation_and_surname(self, client):
        hits = [{"id": 100, "title": "The Hobbit", "author_names": ["J. R. R. Tolkien"]}]
        self.respond(
            client,
            {"data": {"search": {"results": hits}}},
            {"data": {"books": [{"id": 100, "title": "The Hobbit", "editions": [{"id": 1000}]}]}},
        )

        editions = client.search_by_title_author("The Hobbit", "J.R.R. Tolkien")

        assert [e.book_id for e in editions] == [100]

    def test_search_by_title_requires_exact_title(self, client):
        self.respond(
            client,
            {"data": {"search": {"results": [{"id": 301, "title": "Dune Messiah"}]}}},
        )

        assert client.search_by_title_author("Dune") == []
        assert client.session.post.call_count == 1

    def test_add_book_to_library(self, client):
        self.respond(client, {"data": {"insert_user_book": {"id": 555, "error": None}}})

        assert client.add_book_to_library(300, 2, 3000) == 555
        assert self.sent(client)["variables"] == {"bookId": 300, "statusId": 2, "editionId": 3000}

    def test_graphql_errors_return_none(self, client):
        self.respond(client, {"errors": [{"message": "bad query"}]})
        assert client.get_current_user() is None

    def test_rate_limited_responses_are_retried(self, client, no_retry_sleep):
        self.respond(
            client,
            make_response(429),
            make_response(429),
            {"data": {"me": {"id": 1}}},
        )

        assert client.get_current_user() == {"id": 1}
        assert client.session.post.call_count == 3
        assert client.gate.stats()["total_requests"] == 3
