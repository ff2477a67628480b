"""Front-matter header parsing and editing.

A linked note starts with a ``---`` fenced block of ``key: value`` lines.
The header carries the Notion page identity and the sync watermark;
everything after it is the body.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

PAGE_ID_FIELD = "remote_page_id"
LEGACY_PAGE_ID_FIELD = "notion_page_id"
WATERMARK_FIELD = "last_edited_time"
PROVENANCE_FIELD = "imported_from"
PROVENANCE = "notion"
TITLE_FIELD = "title"

REQUIRED_FIELDS = (PAGE_ID_FIELD, WATERMARK_FIELD, PROVENANCE_FIELD, TITLE_FIELD)

# The closing fence must sit on its own line.
_HEADER = re.compile(r"\A---\n(?:(.*?)\n)?---[ \t]*(?:\n|\Z)", re.DOTALL)
_NEEDS_QUOTES = re.compile(r"[\n\"':]")
_ESCAPE = re.compile(r"\\(.)", re.DOTALL)
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_]")


@dataclass
class Document:
    """A note split into header fields and body text."""

    header: dict[str, str] = field(default_factory=dict)
    body: str = ""
    has_header: bool = False

    @property
    def page_id(self) -> Optional[str]:
        return page_id_of(self.header)

    @property
    def watermark(self) -> Optional[str]:
        return self.header.get(WATERMARK_FIELD) or None

    @property
    def title(self) -> Optional[str]:
        return self.header.get(TITLE_FIELD) or None


def quote_if_needed(value: str) -> str:
    """Double-quote values containing structural characters."""
    if not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        inner = value[1:-1]
        return _ESCAPE.sub(
            lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), inner
        )
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    return value


def sanitize_key(key: str) -> str:
    """Make a Notion property name safe to use as a header key."""
    return _UNSAFE_KEY_CHARS.sub("_", key).lower()


def _parse_lines(raw: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for line in raw.split("\n"):
        idx = line.find(":")
        if idx == -1:
            continue
        key = line[:idx].strip()
        if not key or line[:1] in (" ", "\t", "-", "#"):
            continue
        data[key] = _unquote(line[idx + 1 :].strip())
    return data


def parse_header(text: str) -> dict[str, str]:
    """Return the header fields of a note, or an empty dict if it has none."""
    match = _HEADER.match(text)
    if not match:
        return {}
    return _parse_lines(match.group(1) or "")


def parse_document(text: str) -> Document:
    """Split note text into header and body."""
    match = _HEADER.match(text)
    if not match:
        return Document(header={}, body=text, has_header=False)
    return Document(
        header=_parse_lines(match.group(1) or ""),
        body=text[match.end() :].lstrip("\n"),
        has_header=True,
    )


def get_field(text: str, key: str) -> Optional[str]:
    return parse_header(text).get(key)


def page_id_of(header: dict[str, str]) -> Optional[str]:
    """Remote page id, accepting the older ``notion_page_id`` key."""
    return header.get(PAGE_ID_FIELD) or header.get(LEGACY_PAGE_ID_FIELD) or None


def render_header(fields: dict[str, str]) -> str:
    lines = [f"{key}: {quote_if_needed(str(value))}" for key, value in fields.items()]
    return "---\n" + "".join(line + "\n" for line in lines) + "---\n"


def render_document(fields: dict[str, str], body: str) -> str:
    return render_header(fields) + "\n" + body


def set_field(text: str, key: str, value: str) -> str:
    """Set one header field, creating the header if the note has none.

    Lines for other keys, including ones this parser does not understand,
    are left exactly as they were.
    """
    new_line = f"{key}: {quote_if_needed(value)}"
    match = _HEADER.match(text)
    if not match:
        return render_header({key: value}) + "\n" + text

    raw = match.group(1)
    lines = raw.split("\n") if raw is not None else []
    key_pattern = re.compile(rf"^{re.escape(key)}\s*:")
    for idx, line in enumerate(lines):
        if key_pattern.match(line):
            lines[idx] = new_line
            break
    else:
        lines.append(new_line)

    header = "---\n" + "\n".join(lines) + "\n---\n"
    rest = text[match.end() :]
    return header + rest


def set_fields(text: str, fields: dict[str, str]) -> str:
    for key, value in fields.items():
        text = set_field(text, key, value)
    return text
