"""Paginated and recursive Notion reads.

Each helper takes an ``execute`` callable with the Scheduler's submit
signature (a Scheduler or a RetryExecutor), so every page of results is
one routed remote call.
"""

from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from ..codec.blocks import Block, BlockKind
from .notion import NotionAuthError, NotionClient, NotionError, NotionPage, plain_text
from .scheduler import OperationKind

Executor = Callable[..., Awaitable[Any]]


class NotionDatabase(BaseModel):
    """A database (or data source) the integration can see."""

    id: str
    title: str
    url: Optional[str] = None
    icon: Optional[str] = None


async def list_all_child_blocks(
    client: NotionClient, execute: Executor, block_id: str, priority: int = 1
) -> list[Block]:
    """All direct children of a block, following pagination."""
    blocks: list[Block] = []
    cursor: Optional[str] = None

    while True:
        response = await execute(
            lambda c=cursor: client.list_child_blocks(block_id, cursor=c),
            priority,
            kind=OperationKind.FETCH,
            target=block_id,
        )
        blocks.extend(Block.from_api(b) for b in response.get("results", []))

        cursor = response.get("next_cursor") if response.get("has_more") else None
        if not cursor:
            break

    return blocks


async def fetch_block_tree(
    client: NotionClient, execute: Executor, block_id: str, priority: int = 1
) -> list[Block]:
    """Children of a block with their own children resolved recursively."""
    blocks = await list_all_child_blocks(client, execute, block_id, priority)
    for block in blocks:
        if block.has_children and block.block_id and block.kind != BlockKind.UNSUPPORTED:
            block.children = await fetch_block_tree(
                client, execute, block.block_id, priority
            )
    return blocks


async def query_all_pages(
    client: NotionClient,
    execute: Executor,
    database_id: Optional[str] = None,
    priority: int = 1,
) -> list[NotionPage]:
    """Every page in the database."""
    pages: list[NotionPage] = []
    cursor: Optional[str] = None

    while True:
        response = await execute(
            lambda c=cursor: client.query_database(database_id, cursor=c),
            priority,
            kind=OperationKind.FETCH,
            target=database_id or client.database_id,
        )
        for result in response.get("results", []):
            if "properties" in result:
                pages.append(NotionPage.from_api_response(result))

        cursor = response.get("next_cursor") if response.get("has_more") else None
        if not cursor:
            break

    return pages


def _icon(item: dict) -> Optional[str]:
    icon = item.get("icon") or {}
    if icon.get("type") == "emoji":
        return icon.get("emoji")
    if icon.get("type") == "file":
        return (icon.get("file") or {}).get("url")
    return None


async def search_databases(
    client: NotionClient,
    execute: Executor,
    query: Optional[str] = None,
) -> list[NotionDatabase]:
    """Databases shared with the integration, optionally filtered by title."""
    found: dict[str, NotionDatabase] = {}
    cursor: Optional[str] = None

    while True:
        response = await execute(
            lambda c=cursor: client.search(
                query=query,
                filter={"property": "object", "value": "data_source"},
                cursor=c,
            ),
            1,
            kind=OperationKind.FETCH,
            target="search",
        )
        for item in response.get("results", []):
            if item.get("object") not in ("database", "data_source"):
                continue
            if item["id"] in found:
                continue
            found[item["id"]] = NotionDatabase(
                id=item["id"],
                title=plain_text(item.get("title")) or item["id"],
                url=item.get("url"),
                icon=_icon(item),
            )

        cursor = response.get("next_cursor") if response.get("has_more") else None
        if not cursor:
            break

    return list(found.values())


async def check_auth(client: NotionClient, execute: Executor) -> tuple[bool, str]:
    """Check the token with the cheapest call available.

    Returns:
        (ok, message) where message explains a failure
    """
    try:
        await execute(lambda: client.search(page_size=1), 1, target="auth")
    except NotionAuthError:
        return False, "Unauthorized (401): Invalid Notion token or no access."
    except NotionError as e:
        return False, f"Notion API error: {e}"
    return True, ""
