"""Block-level diff between a Notion page and a local note.

Only the top-level block sequence is compared, position by position.
Children travel with their parent: a change inside a nested child shows
up as an update of the top-level block that owns it.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ..codec.blocks import Block, BlockKind, markdown_to_blocks
from ..frontmatter import TITLE_FIELD
from .fetch import Executor, fetch_block_tree, list_all_child_blocks
from .notion import NotionClient, NotionError, plain_text
from .scheduler import OperationKind, SchedulerError

logger = logging.getLogger(__name__)


class DiffType(str, Enum):
    """What to do with one position of the block sequence."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"


class BlockDiff(BaseModel):
    """One positional diff entry."""

    type: DiffType
    position: int
    block_id: Optional[str] = None
    content: Optional[Block] = None


class ContentDiffResult(BaseModel):
    """Outcome of comparing a page with a note."""

    has_changes: bool
    diffs: list[BlockDiff] = Field(default_factory=list)
    title_changed: bool = False
    new_title: Optional[str] = None
    requires_full_replacement: bool = False

    @property
    def change_count(self) -> int:
        return sum(1 for d in self.diffs if d.type != DiffType.UNCHANGED)


# ============================================================================
# Comparison
# ============================================================================


def runs_equal(current: list[str], new: list[str]) -> bool:
    if len(current) != len(new):
        return False
    return all(a == b for a, b in zip(current, new))


def blocks_equal(current: Block, new: Block) -> bool:
    """Structural equality of two blocks and their children, ignoring identity."""
    if current.kind != new.kind or current.kind == BlockKind.UNSUPPORTED:
        return False
    if current.kind == BlockKind.DIVIDER:
        return True
    if current.kind == BlockKind.TO_DO and current.checked != new.checked:
        return False
    if current.kind == BlockKind.CODE and current.language != new.language:
        return False
    if not runs_equal(current.text, new.text):
        return False
    return len(current.children) == len(new.children) and all(
        blocks_equal(a, b) for a, b in zip(current.children, new.children)
    )


def compute_diff(current_blocks: list[Block], new_blocks: list[Block]) -> list[BlockDiff]:
    """Positional diff of two top-level block sequences."""
    diffs: list[BlockDiff] = []

    for i in range(max(len(current_blocks), len(new_blocks))):
        current = current_blocks[i] if i < len(current_blocks) else None
        new = new_blocks[i] if i < len(new_blocks) else None

        if current is None:
            diffs.append(BlockDiff(type=DiffType.CREATE, position=i, content=new))
        elif new is None:
            diffs.append(
                BlockDiff(type=DiffType.DELETE, position=i, block_id=current.block_id)
            )
        elif blocks_equal(current, new):
            diffs.append(
                BlockDiff(
                    type=DiffType.UNCHANGED,
                    position=i,
                    block_id=current.block_id,
                    content=new,
                )
            )
        else:
            diffs.append(
                BlockDiff(
                    type=DiffType.UPDATE,
                    position=i,
                    block_id=current.block_id,
                    content=new,
                )
            )

    return diffs


def page_title(page: dict) -> str:
    """Text of the first title property of a page object."""
    for prop in (page.get("properties") or {}).values():
        if prop.get("type") == "title":
            return plain_text(prop.get("title"))
    return ""


def plan_appends(diffs: list[BlockDiff]) -> list[tuple[Optional[str], list[Block]]]:
    """Group new content into runs, each anchored after a retained block.

    Notion only appends at the end or after a given sibling, so each run
    of created/updated blocks is inserted after the nearest unchanged
    block before it. When the page itself starts with new content, every
    retained block has to be recreated behind it.
    """
    ordered = sorted(diffs, key=lambda d: d.position)
    leading_change = bool(ordered) and ordered[0].type in (DiffType.CREATE, DiffType.UPDATE)

    groups: list[tuple[Optional[str], list[Block]]] = []
    anchor: Optional[str] = None
    pending: list[Block] = []

    for diff in ordered:
        if diff.type == DiffType.DELETE:
            continue
        if diff.type == DiffType.UNCHANGED and not leading_change:
            if pending:
                groups.append((anchor, pending))
                pending = []
            anchor = diff.block_id
            continue
        if diff.content is not None:
            pending.append(diff.content)

    if pending:
        groups.append((anchor, pending))
    return groups


def _retained_ids_to_recreate(diffs: list[BlockDiff]) -> list[str]:
    ordered = sorted(diffs, key=lambda d: d.position)
    if not ordered or ordered[0].type not in (DiffType.CREATE, DiffType.UPDATE):
        return []
    return [
        d.block_id
        for d in ordered
        if d.type == DiffType.UNCHANGED and d.block_id
    ]


# ============================================================================
# Remote side
# ============================================================================


class ContentDiffer:
    """Computes and applies minimal block patches through an executor."""

    BATCH_SIZE = 10

    def __init__(
        self,
        client: NotionClient,
        execute: Executor,
        batch_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the differ.

        Args:
            client: Notion adapter
            execute: Scheduler (or RetryExecutor) every call is routed through
            batch_delay: Courtesy pause between append batches, in seconds
            sleep: Coroutine used for the courtesy pause
        """
        self.client = client
        self.execute = execute
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def diff_page(self, page_id: str, markdown: str, title: str) -> ContentDiffResult:
        """Compare the live page with a note body and title.

        If the remote state cannot be read, the result asks for a full
        replacement instead of a patch.
        """
        try:
            current_blocks = await fetch_block_tree(self.client, self.execute, page_id)
            page = await self.execute(
                lambda: self.client.retrieve_page(page_id),
                1,
                kind=OperationKind.FETCH,
                target=page_id,
            )
        except (NotionError, SchedulerError) as e:
            logger.warning("Error diffing content for %s: %s", page_id, e)
            return ContentDiffResult(
                has_changes=True,
                diffs=[],
                title_changed=True,
                new_title=title,
                requires_full_replacement=True,
            )

        title_changed = page_title(page) != title
        diffs = compute_diff(current_blocks, markdown_to_blocks(markdown))
        has_changes = title_changed or any(d.type != DiffType.UNCHANGED for d in diffs)

        return ContentDiffResult(
            has_changes=has_changes,
            diffs=diffs,
            title_changed=title_changed,
            new_title=title if title_changed else None,
        )

    async def apply(self, page_id: str, result: ContentDiffResult) -> None:
        """Apply a diff: deletes, then update removals, then ordered appends.

        Updates are delete-then-recreate, so the recreated block gets a new
        remote identity.
        """
        removals = [
            d.block_id
            for d in result.diffs
            if d.type == DiffType.DELETE and d.block_id
        ]
        removals += [
            d.block_id
            for d in result.diffs
            if d.type == DiffType.UPDATE and d.block_id
        ]
        removals += _retained_ids_to_recreate(result.diffs)

        for block_id in removals:
            await self._delete(block_id)

        for anchor, blocks in plan_appends(result.diffs):
            await self._append(page_id, blocks, after=anchor)

    async def replace_all(self, page_id: str, markdown: str) -> None:
        """Full replacement: delete every child, then append the note."""
        current = await list_all_child_blocks(self.client, self.execute, page_id)
        for block in current:
            if block.block_id:
                await self._delete(block.block_id)
        await self._append(page_id, markdown_to_blocks(markdown))

    async def update_title(self, page_id: str, title: str) -> None:
        await self.execute(
            lambda: self.client.update_page_title(page_id, title),
            2,
            kind=OperationKind.UPDATE,
            target=f"{page_id}:{TITLE_FIELD}",
        )

    async def _delete(self, block_id: str) -> None:
        await self.execute(
            lambda: self.client.delete_block(block_id),
            1,
            kind=OperationKind.DELETE,
            target=block_id,
        )

    async def _append(
        self, page_id: str, blocks: list[Block], after: Optional[str] = None
    ) -> None:
        payloads = [b.to_api() for b in blocks if b.kind != BlockKind.UNSUPPORTED]

        for start in range(0, len(payloads), self.BATCH_SIZE):
            batch = payloads[start : start + self.BATCH_SIZE]
            response = await self.execute(
                lambda b=batch, a=after: self.client.append_child_blocks(
                    page_id, b, after=a
                ),
                1,
                kind=OperationKind.CREATE,
                target=page_id,
            )
            if after is not None:
                created = (response or {}).get("results") or []
                # The next batch goes after the last block we just inserted.
                after = created[-1]["id"] if created else after
            if start + self.BATCH_SIZE < len(payloads):
                await self._sleep(self.batch_delay)
