"""Pytest configuration and shared fixtures.

This module provides fixtures for testing vaultsync, including an
in-memory Notion workspace, a temporary vault, and test configuration.
"""

import copy
import itertools
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest

from vaultsync.codec.blocks import Block
from vaultsync.config import Config, reset_config
from vaultsync.storage import Vault
from vaultsync.sync.notion import NotionNotFoundError

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def iso(moment: datetime) -> str:
    """Format a datetime the way Notion does."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def rich(text: str) -> list[dict]:
    return [{"type": "text", "text": {"content": text}, "plain_text": text}]


def block(kind: str, text: str = "", children: Optional[list[dict]] = None, **extra) -> dict:
    """Build a Notion block payload for seeding FakeNotion."""
    if kind == "divider":
        payload: dict = {"object": "block", "type": kind, kind: {}}
    else:
        payload = {"object": "block", "type": kind, kind: {"rich_text": rich(text), **extra}}
    if children:
        payload[kind]["children"] = children
    return payload


# ============================================================================
# In-memory Notion
# ============================================================================


class FakeNotion:
    """In-memory stand-in for NotionClient.

    Mirrors the adapter's async method surface, records every call, and
    bumps a page's ``last_edited_time`` on each mutation. Queue errors in
    ``errors[method_name]`` to make the next calls of that method fail.
    """

    def __init__(self, database_id: Optional[str] = "db-123", page_size: int = 100):
        self.database_id = database_id
        self.page_size = page_size
        self.pages: dict[str, dict] = {}
        self.children: dict[str, list[dict]] = {}
        self.parents: dict[str, str] = {}
        self.databases: list[dict] = []
        self.calls: list[tuple] = []
        self.errors: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)
        self._edits = itertools.count(1)

    # Seeding helpers -------------------------------------------------------

    def add_page(
        self,
        title: str,
        blocks: tuple = (),
        last_edited: str = "2025-01-01T00:00:00.000Z",
        created: str = "2025-01-01T00:00:00.000Z",
        properties: Optional[dict] = None,
        page_id: Optional[str] = None,
    ) -> str:
        page_id = page_id or f"page-{next(self._ids)}"
        props = {"Name": {"id": "title", "type": "title", "title": rich(title)}}
        props.update(properties or {})
        self.pages[page_id] = {
            "object": "page",
            "id": page_id,
            "created_time": created,
            "last_edited_time": last_edited,
            "properties": props,
        }
        self.children[page_id] = []
        self._insert(page_id, [copy.deepcopy(b) for b in blocks], None)
        return page_id

    def set_last_edited(self, page_id: str, timestamp: str) -> None:
        self.pages[page_id]["last_edited_time"] = timestamp

    def page_blocks(self, page_id: str) -> list[Block]:
        return [Block.from_api(b) for b in self.children.get(page_id, [])]

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def mutation_calls(self) -> list[tuple]:
        mutating = {"update_page_title", "append_child_blocks", "delete_block"}
        return [c for c in self.calls if c[0] in mutating]

    # Internals ---------------------------------------------------------------

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def _owning_page(self, block_id: str) -> Optional[str]:
        while block_id in self.parents:
            block_id = self.parents[block_id]
        return block_id if block_id in self.pages else None

    def _touch(self, block_id: str) -> None:
        page_id = self._owning_page(block_id)
        if page_id:
            moment = BASE_TIME + timedelta(days=30, minutes=next(self._edits))
            self.pages[page_id]["last_edited_time"] = iso(moment)

    def _insert(self, parent_id: str, payloads: list[dict], after: Optional[str]) -> list[dict]:
        created = []
        for payload in payloads:
            kind = payload["type"]
            data = copy.deepcopy(payload.get(kind) or {})
            nested = data.pop("children", [])
            for run in data.get("rich_text", []):
                run.setdefault("plain_text", run.get("text", {}).get("content", ""))
            block_id = f"block-{next(self._ids)}"
            stored = {
                "object": "block",
                "id": block_id,
                "type": kind,
                kind: data,
                "has_children": bool(nested),
            }
            self.parents[block_id] = parent_id
            self.children[block_id] = []
            if nested:
                self._insert(block_id, nested, None)
            created.append(stored)

        siblings = self.children.setdefault(parent_id, [])
        if after is None:
            siblings.extend(created)
        else:
            index = next(i for i, b in enumerate(siblings) if b["id"] == after)
            siblings[index + 1 : index + 1] = created
        return created

    @staticmethod
    def _paginate(items: list, cursor: Optional[str], size: int) -> dict:
        start = int(cursor) if cursor else 0
        chunk = items[start : start + size]
        more = start + size < len(items)
        return {
            "object": "list",
            "results": copy.deepcopy(chunk),
            "has_more": more,
            "next_cursor": str(start + size) if more else None,
        }

    # NotionClient surface ----------------------------------------------------

    async def retrieve_page(self, page_id: str) -> dict:
        self._record("retrieve_page", page_id)
        if page_id not in self.pages:
            raise NotionNotFoundError(f"Could not find page with ID: {page_id}")
        return copy.deepcopy(self.pages[page_id])

    async def update_page_title(self, page_id: str, title: str, property_name: str = "title") -> dict:
        self._record("update_page_title", page_id, title)
        if page_id not in self.pages:
            raise NotionNotFoundError(f"Could not find page with ID: {page_id}")
        self.pages[page_id]["properties"]["Name"]["title"] = rich(title)
        self._touch(page_id)
        return copy.deepcopy(self.pages[page_id])

    async def retrieve_database(self, database_id: Optional[str] = None) -> dict:
        database_id = database_id or self.database_id
        self._record("retrieve_database", database_id)
        if database_id != self.database_id:
            raise NotionNotFoundError(f"Could not find database with ID: {database_id}")
        return {"object": "data_source", "id": database_id}

    async def query_database(
        self, database_id: Optional[str] = None, cursor: Optional[str] = None, page_size: int = 100
    ) -> dict:
        self._record("query_database", database_id, cursor)
        return self._paginate(list(self.pages.values()), cursor, min(page_size, self.page_size))

    async def search(
        self,
        query: Optional[str] = None,
        filter: Optional[dict] = None,
        cursor: Optional[str] = None,
        page_size: int = 100,
    ) -> dict:
        self._record("search", query, cursor)
        found = [
            d for d in self.databases
            if not query or query.lower() in "".join(t["plain_text"] for t in d["title"]).lower()
        ]
        return self._paginate(found, cursor, min(page_size, self.page_size))

    async def list_child_blocks(
        self, block_id: str, cursor: Optional[str] = None, page_size: int = 100
    ) -> dict:
        self._record("list_child_blocks", block_id, cursor)
        if block_id not in self.children:
            raise NotionNotFoundError(f"Could not find block with ID: {block_id}")
        return self._paginate(self.children[block_id], cursor, min(page_size, self.page_size))

    async def append_child_blocks(
        self, block_id: str, children: list[dict], after: Optional[str] = None
    ) -> dict:
        self._record("append_child_blocks", block_id, len(children), after)
        created = self._insert(block_id, children, after)
        self._touch(block_id)
        return {"object": "list", "results": copy.deepcopy(created)}

    async def delete_block(self, block_id: str) -> dict:
        self._record("delete_block", block_id)
        parent_id = self.parents.get(block_id)
        if parent_id is None:
            raise NotionNotFoundError(f"Could not find block with ID: {block_id}")
        self.children[parent_id] = [b for b in self.children[parent_id] if b["id"] != block_id]
        self._touch(parent_id)
        del self.parents[block_id]
        return {"object": "block", "id": block_id, "archived": True}


async def direct_execute(operation, priority=0, **labels):
    """Executor that runs the call immediately, with no rate limiting."""
    return await operation()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env() -> Generator[None, None, None]:
    """Keep tests independent of the developer's environment."""
    saved = {k: v for k, v in os.environ.items() if k.startswith(("NOTION_", "VAULTSYNC_"))}
    for key in saved:
        del os.environ[key]
    reset_config()
    yield
    for key in [k for k in os.environ if k.startswith(("NOTION_", "VAULTSYNC_"))]:
        del os.environ[key]
    os.environ.update(saved)
    reset_config()


@pytest.fixture
def fake_notion() -> FakeNotion:
    return FakeNotion()


@pytest.fixture
def vault_root(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_root: Path) -> Vault:
    return Vault(vault_root)


@pytest.fixture
def config(vault_root: Path) -> Config:
    """Configuration pointing at the temporary vault."""
    return Config(
        notion_api_key="secret_test",
        notion_database_id="db-123",
        vault_path=vault_root,
        destination_folder="Notion Imports",
        template_path=None,
        file_naming_pattern="{{title}}",
        include_date_in_filename=False,
        date_format="%Y-%m-%d",
        date_position="prefix",
        date_separator="--",
        date_source="created",
        bidirectional_sync=True,
        import_interval=60,
        debounce_seconds=0.05,
        requests_per_second=100.0,
        burst_size=50,
        adaptive_backoff=False,
        log_level="INFO",
        log_file=None,
    )


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner."""
    from typer.testing import CliRunner
    return CliRunner()
