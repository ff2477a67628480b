"""Tests for the Notion API adapter."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from notion_client.errors import APIResponseError, RequestTimeoutError

from vaultsync.sync.notion import (
    NotionAuthError,
    NotionClient,
    NotionConfigError,
    NotionError,
    NotionNotFoundError,
    NotionPage,
    NotionRateLimitError,
    NotionServerError,
    is_throttled,
    is_transient,
    parse_timestamp,
    plain_text,
    translate_error,
)


def api_error(status: int, code: str = "error", message: str = "failed", headers=None):
    error = MagicMock(spec=APIResponseError)
    error.status = status
    error.code = code
    error.args = (message,)
    error.headers = headers or {}
    return error


class TestNotionPage:
    """Tests for NotionPage dataclass."""

    def test_from_api_response(self):
        """Test creating NotionPage from API response."""
        response = {
            "id": "page-123",
            "created_time": "2025-01-01T10:00:00.000Z",
            "last_edited_time": "2025-01-15T15:30:00.000Z",
            "properties": {
                "Status": {"type": "select", "select": {"name": "Draft"}},
                "Name": {"type": "title", "title": [{"plain_text": "Meeting "}, {"plain_text": "notes"}]},
                "Due": {"type": "date", "date": {"start": "2025-02-01"}},
            },
        }

        page = NotionPage.from_api_response(response)

        assert page.page_id == "page-123"
        assert page.title == "Meeting notes"
        assert page.last_edited_time == "2025-01-15T15:30:00.000Z"
        assert page.last_edited.day == 15
        assert page.first_date() == "2025-02-01"

    def test_from_api_response_empty_properties(self):
        """Test creating NotionPage with minimal properties."""
        response = {
            "id": "page-456",
            "created_time": "2025-01-01T10:00:00.000Z",
            "last_edited_time": "2025-01-01T10:00:00.000Z",
            "properties": {},
        }

        page = NotionPage.from_api_response(response)

        assert page.page_id == "page-456"
        assert page.title == ""
        assert page.first_date() is None


class TestHelpers:
    def test_parse_timestamp_variants(self):
        expected = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert parse_timestamp("2025-01-15T12:00:00.000Z") == expected
        assert parse_timestamp("2025-01-15T13:00:00+01:00") == expected
        assert parse_timestamp("2025-01-15T12:00:00") == expected

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("not a date") is None

    def test_plain_text_falls_back_to_content(self):
        runs = [{"plain_text": "a"}, {"text": {"content": "b"}}]
        assert plain_text(runs) == "ab"
        assert plain_text(None) == ""


class TestTranslateError:
    """Tests for mapping HTTP failures to NotionError types."""

    def test_rate_limited(self):
        error = translate_error(api_error(429, "rate_limited", headers={"Retry-After": "7"}))
        assert isinstance(error, NotionRateLimitError)
        assert error.retry_after == 7

    def test_not_found(self):
        error = translate_error(api_error(404, "object_not_found"))
        assert isinstance(error, NotionNotFoundError)

    @pytest.mark.parametrize("status", [401, 403])
    def test_unauthorized(self, status):
        error = translate_error(api_error(status, "unauthorized"))
        assert isinstance(error, NotionAuthError)
        assert str(status) in str(error)

    def test_server_error_keeps_status(self):
        error = translate_error(api_error(502, "bad_gateway"))
        assert isinstance(error, NotionServerError)
        assert error.status == 502

    def test_other_client_errors(self):
        error = translate_error(api_error(400, "validation_error", "body failed validation"))
        assert type(error) is NotionError
        assert "validation_error" in str(error)

    def test_timeout(self):
        assert isinstance(translate_error(RequestTimeoutError()), NotionServerError)

    def test_connection_failure_is_a_server_error(self):
        error = translate_error(httpx.ConnectError("connection refused"))
        assert isinstance(error, NotionServerError)
        assert "connection refused" in str(error)
        assert is_transient(error)

    def test_unrelated_errors_pass_through(self):
        original = ValueError("nope")
        assert translate_error(original) is original


class TestClassification:
    def test_throttled(self):
        assert is_throttled(NotionRateLimitError())
        assert not is_throttled(NotionServerError("boom", 500))

    def test_transient(self):
        assert is_transient(NotionRateLimitError())
        assert is_transient(NotionServerError("boom", 503))
        assert not is_transient(NotionAuthError("Unauthorized (401)"))
        assert not is_transient(NotionNotFoundError("gone"))


class TestNotionClientInit:
    """Tests for NotionClient initialization."""

    def test_missing_api_key_raises_error(self):
        """Test that missing API key raises NotionConfigError."""
        with patch("vaultsync.sync.notion.get_config") as mock_config:
            mock_config.return_value.notion_api_key = None
            mock_config.return_value.notion_database_id = "db-123"

            with pytest.raises(NotionConfigError, match="NOTION_API_KEY"):
                NotionClient()

    def test_missing_database_id_raises_error(self):
        """Test that missing database ID raises NotionConfigError."""
        with patch("vaultsync.sync.notion.get_config") as mock_config:
            mock_config.return_value.notion_api_key = "secret_key"
            mock_config.return_value.notion_database_id = None

            with pytest.raises(NotionConfigError, match="NOTION_DATABASE_ID"):
                NotionClient()

    def test_database_optional_for_search(self):
        with patch("vaultsync.sync.notion.get_config") as mock_config:
            mock_config.return_value.notion_api_key = "secret_key"
            mock_config.return_value.notion_database_id = None

            client = NotionClient(client=MagicMock(), require_database=False)

        assert client.database_id is None


class TestNotionClientCalls:
    """Tests for the request shapes sent to the SDK."""

    @pytest.fixture
    def sdk(self):
        sdk = MagicMock()
        sdk.pages.retrieve = AsyncMock(return_value={"id": "page-1"})
        sdk.pages.update = AsyncMock(return_value={"id": "page-1"})
        sdk.data_sources.retrieve = AsyncMock(return_value={"id": "db-123"})
        sdk.data_sources.query = AsyncMock(return_value={"results": [], "has_more": False})
        sdk.search = AsyncMock(return_value={"results": [], "has_more": False})
        sdk.blocks.children.list = AsyncMock(return_value={"results": [], "has_more": False})
        sdk.blocks.children.append = AsyncMock(return_value={"results": []})
        sdk.blocks.delete = AsyncMock(return_value={"id": "block-1"})
        return sdk

    @pytest.fixture
    def client(self, sdk):
        return NotionClient(api_key="secret_key", database_id="db-123", client=sdk)

    def test_update_page_title(self, client, sdk):
        asyncio.run(client.update_page_title("page-1", "New title"))

        sdk.pages.update.assert_awaited_once_with(
            page_id="page-1",
            properties={"title": {"title": [{"type": "text", "text": {"content": "New title"}}]}},
        )

    def test_query_uses_configured_data_source(self, client, sdk):
        asyncio.run(client.query_database(cursor="abc"))

        sdk.data_sources.query.assert_awaited_once_with(
            data_source_id="db-123", page_size=100, start_cursor="abc"
        )

    def test_retrieve_database(self, client, sdk):
        asyncio.run(client.retrieve_database())

        sdk.data_sources.retrieve.assert_awaited_once_with(data_source_id="db-123")

    def test_append_after_anchor(self, client, sdk):
        children = [{"type": "paragraph", "paragraph": {"rich_text": []}}]

        asyncio.run(client.append_child_blocks("page-1", children, after="block-9"))

        sdk.blocks.children.append.assert_awaited_once_with(
            block_id="page-1", children=children, after="block-9"
        )

    def test_append_without_anchor_omits_after(self, client, sdk):
        asyncio.run(client.append_child_blocks("page-1", []))

        assert "after" not in sdk.blocks.children.append.await_args.kwargs

    def test_list_children_first_page_has_no_cursor(self, client, sdk):
        asyncio.run(client.list_child_blocks("page-1"))

        sdk.blocks.children.list.assert_awaited_once_with(block_id="page-1", page_size=100)

    def test_search_filter(self, client, sdk):
        asyncio.run(client.search(query="notes", filter={"property": "object", "value": "data_source"}))

        kwargs = sdk.search.await_args.kwargs
        assert kwargs["query"] == "notes"
        assert kwargs["filter"]["value"] == "data_source"

    def test_transport_errors_are_translated(self, client, sdk):
        sdk.blocks.delete = AsyncMock(side_effect=RequestTimeoutError())

        with pytest.raises(NotionServerError):
            asyncio.run(client.delete_block("block-1"))

    def test_network_errors_are_translated(self, client, sdk):
        sdk.pages.retrieve = AsyncMock(side_effect=httpx.ReadError("connection reset"))

        with pytest.raises(NotionServerError, match="connection reset"):
            asyncio.run(client.retrieve_page("page-1"))
