"""Notion API client wrapper for page and block operations.

Thin async adapter over ``notion_client.AsyncClient``. Every method is a
single remote call; rate limiting and retries are the caller's job, so
call sites route these through the scheduler or the retry wrapper.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from notion_client import AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from ..config import get_config


class NotionError(Exception):
    """Base exception for Notion API errors."""

    pass


class NotionConfigError(NotionError):
    """Raised when Notion is not properly configured."""

    pass


class NotionRateLimitError(NotionError):
    """Raised when rate limited by Notion API."""

    def __init__(self, retry_after: int = 1):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after}s")


class NotionServerError(NotionError):
    """Raised on 5xx responses and request timeouts."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NotionNotFoundError(NotionError):
    """Raised when a page, block or database no longer exists (404)."""

    pass


class NotionAuthError(NotionError):
    """Raised when the integration token is invalid or lacks access."""

    pass


def translate_error(error: Exception) -> Exception:
    """Map a transport error onto the NotionError taxonomy.

    Connection failures count as server faults so they are retried.
    Other errors that are not HTTP failures are returned unchanged.
    """
    if isinstance(error, NotionError):
        return error
    if isinstance(error, RequestTimeoutError):
        return NotionServerError("Request to Notion timed out")
    if isinstance(error, httpx.TransportError):
        return NotionServerError(f"Network error talking to Notion: {error}")
    if not isinstance(error, HTTPResponseError):
        return error

    status = getattr(error, "status", None)
    code = getattr(error, "code", None) or "http_error"
    # Message is stored in args[0], not as .message attribute
    error_msg = str(error.args[0]) if error.args else "Unknown error"

    if status == 429:
        headers = getattr(error, "headers", None) or {}
        try:
            retry_after = int(headers.get("Retry-After", 1))
        except (TypeError, ValueError):
            retry_after = 1
        return NotionRateLimitError(retry_after)
    if status == 404:
        return NotionNotFoundError(f"Not found: {error_msg}")
    if status in (401, 403):
        return NotionAuthError(f"Unauthorized ({status}): {error_msg}")
    if status is not None and 500 <= status < 600:
        return NotionServerError(f"Notion server error: {code} - {error_msg}", status)
    return NotionError(f"Notion API error: {code} - {error_msg}")


def is_throttled(error: BaseException) -> bool:
    """True for quota-exceeded rejections."""
    if isinstance(error, NotionRateLimitError):
        return True
    return getattr(error, "status", None) == 429


def is_transient(error: BaseException) -> bool:
    """True for errors worth retrying: throttling and server faults."""
    if is_throttled(error) or isinstance(error, (NotionServerError, RequestTimeoutError)):
        return True
    status = getattr(error, "status", None)
    return isinstance(status, int) and 500 <= status < 600


def parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    """Parse ISO timestamp string to an aware datetime."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.strip().replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def plain_text(rich_text: Optional[list[dict]]) -> str:
    """Join the plain text of a rich_text array."""
    return "".join(
        t.get("plain_text") or t.get("text", {}).get("content", "")
        for t in (rich_text or [])
    )


@dataclass
class NotionPage:
    """Represents a Notion page (one database entry)."""

    page_id: str
    title: str
    properties: dict[str, Any]
    last_edited_time: str
    created_time: str

    @classmethod
    def from_api_response(cls, page: dict) -> "NotionPage":
        """Create NotionPage from API response."""
        props = page.get("properties", {})

        # The title is the first property of type "title"
        title = ""
        for prop in props.values():
            if prop.get("type") == "title" or "title" in prop:
                title = plain_text(prop.get("title"))
                break

        return cls(
            page_id=page["id"],
            title=title,
            properties=props,
            last_edited_time=page.get("last_edited_time", ""),
            created_time=page.get("created_time", ""),
        )

    @property
    def last_edited(self) -> Optional[datetime]:
        return parse_timestamp(self.last_edited_time)

    def first_date(self) -> Optional[str]:
        """Start of the first populated date property, if any."""
        for prop in self.properties.values():
            if prop.get("type") == "date" and prop.get("date"):
                return prop["date"].get("start")
        return None


class NotionClient:
    """Client for the Notion endpoints the sync engine needs."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        database_id: Optional[str] = None,
        client: Optional[AsyncClient] = None,
        require_database: bool = True,
    ):
        """Initialize Notion client.

        Args:
            api_key: Notion API key (uses config if not provided)
            database_id: Database ID (uses config if not provided)
            client: Pre-built AsyncClient, mainly for tests
            require_database: Fail without a database ID (search and auth
                checks work without one)
        """
        config = get_config()

        self.api_key = api_key or config.notion_api_key
        self.database_id = database_id or config.notion_database_id

        if not self.api_key:
            raise NotionConfigError("NOTION_API_KEY not set")
        if require_database and not self.database_id:
            raise NotionConfigError("NOTION_DATABASE_ID not set")

        self._client = client or AsyncClient(auth=self.api_key)

    async def _call(self, method, **kwargs) -> dict:
        try:
            return await method(**kwargs)
        except (HTTPResponseError, RequestTimeoutError, httpx.TransportError) as e:
            raise translate_error(e) from e

    # ========================================================================
    # Pages
    # ========================================================================

    async def retrieve_page(self, page_id: str) -> dict:
        return await self._call(self._client.pages.retrieve, page_id=page_id)

    async def update_page_title(
        self, page_id: str, title: str, property_name: str = "title"
    ) -> dict:
        """Replace the page title.

        Args:
            page_id: Notion page ID to update
            title: New title text
            property_name: Name of the database's title property
        """
        return await self._call(
            self._client.pages.update,
            page_id=page_id,
            properties={
                property_name: {"title": [{"type": "text", "text": {"content": title}}]}
            },
        )

    # ========================================================================
    # Databases and search
    # ========================================================================

    async def retrieve_database(self, database_id: Optional[str] = None) -> dict:
        """Fetch the data source behind the configured database ID."""
        return await self._call(
            self._client.data_sources.retrieve,
            data_source_id=database_id or self.database_id,
        )

    async def query_database(
        self,
        database_id: Optional[str] = None,
        cursor: Optional[str] = None,
        page_size: int = 100,
    ) -> dict:
        """Query one page of results from the database.

        Args:
            database_id: Database to query (uses the configured one if not provided)
            cursor: start_cursor from the previous response
            page_size: Number of results per page (max 100)
        """
        kwargs: dict[str, Any] = {
            "data_source_id": database_id or self.database_id,
            "page_size": page_size,
        }
        if cursor:
            kwargs["start_cursor"] = cursor
        return await self._call(self._client.data_sources.query, **kwargs)

    async def search(
        self,
        query: Optional[str] = None,
        filter: Optional[dict] = None,
        cursor: Optional[str] = None,
        page_size: int = 100,
    ) -> dict:
        kwargs: dict[str, Any] = {"page_size": page_size}
        if query:
            kwargs["query"] = query
        if filter:
            kwargs["filter"] = filter
        if cursor:
            kwargs["start_cursor"] = cursor
        return await self._call(self._client.search, **kwargs)

    # ========================================================================
    # Blocks
    # ========================================================================

    async def list_child_blocks(
        self, block_id: str, cursor: Optional[str] = None, page_size: int = 100
    ) -> dict:
        kwargs: dict[str, Any] = {"block_id": block_id, "page_size": page_size}
        if cursor:
            kwargs["start_cursor"] = cursor
        return await self._call(self._client.blocks.children.list, **kwargs)

    async def append_child_blocks(
        self, block_id: str, children: list[dict], after: Optional[str] = None
    ) -> dict:
        """Append children to a block.

        Args:
            block_id: Parent block or page ID
            children: Block payloads (at most 100 per call)
            after: Insert after this sibling instead of at the end
        """
        kwargs: dict[str, Any] = {"block_id": block_id, "children": children}
        if after:
            kwargs["after"] = after
        return await self._call(self._client.blocks.children.append, **kwargs)

    async def delete_block(self, block_id: str) -> dict:
        return await self._call(self._client.blocks.delete, block_id=block_id)
