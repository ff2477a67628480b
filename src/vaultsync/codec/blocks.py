"""Conversion between Notion blocks and markdown text.

Only the block kinds the sync engine understands are modelled; anything
else is carried as ``UNSUPPORTED`` so the differ can still see it, and it
renders to nothing.
"""

import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

INDENT = "    "
INDENT_WIDTH = len(INDENT)
RICH_TEXT_LIMIT = 2000  # Notion's per-run content limit
DEFAULT_CODE_LANGUAGE = "plain text"


class BlockKind(str, Enum):
    """Notion block types handled by the codec."""

    PARAGRAPH = "paragraph"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    TO_DO = "to_do"
    TOGGLE = "toggle"
    QUOTE = "quote"
    CODE = "code"
    DIVIDER = "divider"
    UNSUPPORTED = "unsupported"


HEADING_LEVELS = {
    BlockKind.HEADING_1: 1,
    BlockKind.HEADING_2: 2,
    BlockKind.HEADING_3: 3,
}

LIST_KINDS = frozenset(
    {BlockKind.BULLETED_LIST_ITEM, BlockKind.NUMBERED_LIST_ITEM, BlockKind.TO_DO}
)


def text_runs(content: str) -> list[str]:
    """Split text into runs no longer than the Notion limit."""
    return [
        content[start : start + RICH_TEXT_LIMIT]
        for start in range(0, len(content), RICH_TEXT_LIMIT)
    ]


class Block(BaseModel):
    """A typed content node, possibly with children."""

    kind: BlockKind
    text: list[str] = Field(default_factory=list)
    checked: bool = False
    language: Optional[str] = None
    children: list["Block"] = Field(default_factory=list)
    block_id: Optional[str] = None
    has_children: bool = False
    raw_type: Optional[str] = None

    @property
    def plain_text(self) -> str:
        return "".join(self.text)

    @classmethod
    def from_api(cls, payload: dict) -> "Block":
        """Build a Block from a Notion block object."""
        block_type = payload.get("type", "")
        try:
            kind = BlockKind(block_type)
        except ValueError:
            kind = BlockKind.UNSUPPORTED
        if kind == BlockKind.UNSUPPORTED:
            return cls(
                kind=kind,
                block_id=payload.get("id"),
                has_children=bool(payload.get("has_children")),
                raw_type=block_type,
            )

        data = payload.get(block_type) or {}
        runs = [
            t.get("plain_text") or t.get("text", {}).get("content", "")
            for t in data.get("rich_text") or []
        ]
        return cls(
            kind=kind,
            text=runs,
            checked=bool(data.get("checked", False)),
            language=data.get("language") if kind == BlockKind.CODE else None,
            block_id=payload.get("id"),
            has_children=bool(payload.get("has_children")),
        )

    def to_api(self) -> dict[str, Any]:
        """Render as a Notion block payload suitable for append."""
        if self.kind == BlockKind.UNSUPPORTED:
            raise ValueError(f"Cannot create unsupported block type {self.raw_type!r}")

        kind = self.kind.value
        if self.kind == BlockKind.DIVIDER:
            return {"object": "block", "type": kind, kind: {}}

        data: dict[str, Any] = {
            "rich_text": [{"type": "text", "text": {"content": run}} for run in self.text]
        }
        if self.kind == BlockKind.TO_DO:
            data["checked"] = self.checked
        if self.kind == BlockKind.CODE:
            data["language"] = self.language or DEFAULT_CODE_LANGUAGE
        if self.children:
            data["children"] = [
                child.to_api()
                for child in self.children
                if child.kind != BlockKind.UNSUPPORTED
            ]
        return {"object": "block", "type": kind, kind: data}


Block.model_rebuild()


# ============================================================================
# Blocks -> markdown
# ============================================================================


def _render_own(block: Block) -> str:
    text = block.plain_text
    kind = block.kind

    if kind == BlockKind.PARAGRAPH:
        return text
    if kind in HEADING_LEVELS:
        return f"{'#' * HEADING_LEVELS[kind]} {text}"
    if kind in (BlockKind.BULLETED_LIST_ITEM, BlockKind.TOGGLE):
        return f"- {text}"
    if kind == BlockKind.NUMBERED_LIST_ITEM:
        return f"1. {text}"
    if kind == BlockKind.TO_DO:
        return f"- [{'x' if block.checked else ' '}] {text}"
    if kind == BlockKind.QUOTE:
        return "\n".join(f"> {line}" for line in text.split("\n"))
    if kind == BlockKind.DIVIDER:
        return "---"
    if kind == BlockKind.CODE:
        return f"```{block.language or DEFAULT_CODE_LANGUAGE}\n{text}\n```"
    return ""


def _indent(markdown: str) -> str:
    return "\n".join(INDENT + line for line in markdown.split("\n"))


def block_to_markdown(block: Block) -> str:
    """Render one block and, indented beneath it, its children."""
    content = _render_own(block)
    if not content:
        return ""

    rendered_children = [block_to_markdown(child) for child in block.children]
    rendered_children = [c for c in rendered_children if c]
    if rendered_children:
        content += "\n" + "\n".join(_indent(c) for c in rendered_children)
    return content


def blocks_to_markdown(blocks: list[Block]) -> str:
    """Render a top-level block sequence.

    Consecutive items of the same list kind sit on adjacent lines; every
    other pair of neighbours is separated by one blank line.
    """
    out: list[str] = []
    previous: Optional[Block] = None

    for block in blocks:
        markdown = block_to_markdown(block)
        if not markdown:
            continue
        if previous is not None:
            same_list = previous.kind in LIST_KINDS and previous.kind == block.kind
            out.append("\n" if same_list else "\n\n")
        out.append(markdown)
        previous = block

    return "".join(out)


# ============================================================================
# Markdown -> blocks
# ============================================================================

_HEADING = re.compile(r"^(#{1,3}) (.*)$")
_TODO = re.compile(r"^[-*] \[([ xX])\] ?(.*)$")
_BULLET = re.compile(r"^[-*+] (.*)$")
_NUMBERED = re.compile(r"^\d+[.)] (.*)$")
_QUOTE = re.compile(r"^> ?(.*)$")
_DIVIDER = re.compile(r"^(-{3,}|\*{3,}|_{3,})$")
_FENCE = re.compile(r"^```\s*(.*)$")

_HEADING_KINDS = {1: BlockKind.HEADING_1, 2: BlockKind.HEADING_2, 3: BlockKind.HEADING_3}


def _classify(line: str) -> Optional[Block]:
    """Turn a single non-paragraph line into a block, or None for paragraph text."""
    match = _HEADING.match(line)
    if match:
        kind = _HEADING_KINDS[len(match.group(1))]
        return Block(kind=kind, text=text_runs(match.group(2)))

    match = _TODO.match(line)
    if match:
        return Block(
            kind=BlockKind.TO_DO,
            text=text_runs(match.group(2)),
            checked=match.group(1).lower() == "x",
        )

    match = _BULLET.match(line)
    if match:
        return Block(kind=BlockKind.BULLETED_LIST_ITEM, text=text_runs(match.group(1)))

    match = _NUMBERED.match(line)
    if match:
        return Block(kind=BlockKind.NUMBERED_LIST_ITEM, text=text_runs(match.group(1)))

    match = _QUOTE.match(line)
    if match:
        return Block(kind=BlockKind.QUOTE, text=text_runs(match.group(1)))

    if _DIVIDER.match(line.rstrip()):
        return Block(kind=BlockKind.DIVIDER)

    return None


def _leading_width(line: str) -> int:
    width = 0
    for char in line:
        if char == " ":
            width += 1
        elif char == "\t":
            width += INDENT_WIDTH
        else:
            break
    return width


def _strip_prefix(line: str, prefix: str) -> str:
    if line.startswith(prefix):
        return line[len(prefix) :]
    if not line.strip():
        return ""
    return line


def markdown_to_blocks(markdown: str) -> list[Block]:
    """Parse markdown into a block tree.

    Nesting comes from leading whitespace, four columns per level; a line
    deeper than the block above it becomes that block's child. Adjacent
    quote lines at the same depth form one multi-line quote.
    """
    lines = markdown.strip("\n").replace("\r\n", "\n").split("\n")
    roots: list[Block] = []
    stack: list[tuple[int, Block]] = []
    paragraph: list[str] = []
    paragraph_depth = 0
    quote: Optional[tuple[int, Block]] = None

    def attach(block: Block, depth: int) -> None:
        while stack and stack[-1][0] >= depth:
            stack.pop()
        if stack:
            parent = stack[-1][1]
            parent.children.append(block)
            parent.has_children = True
        else:
            roots.append(block)
        stack.append((depth, block))

    def flush_paragraph() -> None:
        if paragraph:
            attach(
                Block(kind=BlockKind.PARAGRAPH, text=text_runs("\n".join(paragraph))),
                paragraph_depth,
            )
            paragraph.clear()

    i = 0
    while i < len(lines):
        raw = lines[i]
        if not raw.strip():
            flush_paragraph()
            quote = None
            i += 1
            continue

        width = _leading_width(raw)
        depth = width // INDENT_WIDTH
        body = raw.lstrip(" \t")

        fence = _FENCE.match(body)
        if fence:
            flush_paragraph()
            quote = None
            prefix = raw[: len(raw) - len(body)]
            code_lines: list[str] = []
            i += 1
            while i < len(lines) and not lines[i].lstrip(" \t").startswith("```"):
                code_lines.append(_strip_prefix(lines[i], prefix))
                i += 1
            i += 1  # closing fence (or end of input)
            attach(
                Block(
                    kind=BlockKind.CODE,
                    text=text_runs("\n".join(code_lines)),
                    language=fence.group(1).strip() or DEFAULT_CODE_LANGUAGE,
                ),
                depth,
            )
            continue

        block = _classify(body)
        if block is None:
            quote = None
            if paragraph and depth != paragraph_depth:
                flush_paragraph()
            if not paragraph:
                paragraph_depth = depth
            paragraph.append(body)
        elif block.kind == BlockKind.QUOTE and quote is not None and quote[0] == depth:
            open_quote = quote[1]
            open_quote.text = text_runs(f"{open_quote.plain_text}\n{block.plain_text}")
        else:
            flush_paragraph()
            attach(block, depth)
            quote = (depth, block) if block.kind == BlockKind.QUOTE else None
        i += 1

    flush_paragraph()
    return roots
