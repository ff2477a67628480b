"""Block tree <-> markdown codec."""

from .blocks import (
    INDENT,
    LIST_KINDS,
    Block,
    BlockKind,
    block_to_markdown,
    blocks_to_markdown,
    markdown_to_blocks,
    text_runs,
)

__all__ = [
    "INDENT",
    "LIST_KINDS",
    "Block",
    "BlockKind",
    "block_to_markdown",
    "blocks_to_markdown",
    "markdown_to_blocks",
    "text_runs",
]
