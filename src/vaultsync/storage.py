"""Local note storage.

A Vault is a directory of markdown notes addressed by posix paths
relative to its root.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .frontmatter import page_id_of, parse_header


def normalize_file_stem(stem: str) -> str:
    """Lowercase, with runs of non-alphanumerics collapsed to one space."""
    stem = re.sub(r"[^a-zA-Z0-9\s]", " ", stem)
    return re.sub(r"\s+", " ", stem).strip().lower()


def build_file_name(
    title: str,
    pattern: str = "{{title}}",
    include_date: bool = False,
    date_format: str = "%Y-%m-%d",
    date_position: str = "prefix",
    date_separator: str = "--",
    date_source: str = "created",
    created: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    """Build a note file name (without extension) for a page title.

    Args:
        title: Page title
        pattern: Name pattern; ``{{title}}`` is replaced by the title
        include_date: Add a date to the name
        date_format: strftime format for the date
        date_position: "prefix" or "suffix"
        date_separator: Text between the date and the stem
        date_source: "created" uses ``created`` when given, else today
        created: Creation (or first date property) timestamp of the page
        now: Current time, for tests
    """
    stem = normalize_file_stem(pattern.replace("{{title}}", title)) or "untitled"
    if not include_date:
        return stem

    when = created if date_source == "created" and created else (now or datetime.now())
    date_str = when.strftime(date_format)

    if date_position == "prefix":
        return f"{date_str}{date_separator}{stem}"
    return f"{stem}{date_separator}{date_str}"


def path_is_within_folder(path: str, folder: str) -> bool:
    folder = folder.strip("/")
    if not folder:
        return True
    return path == folder or path.startswith(folder + "/")


class Vault:
    """Filesystem-backed collection of markdown notes."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def read(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, text: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")

    def create(self, path: str, text: str) -> None:
        """Create a new note.

        Raises:
            FileExistsError: If a note already exists at ``path``
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("x", encoding="utf-8") as f:
            f.write(text)

    def ensure_folder_exists(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def list_all_documents(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*.md")
            if p.is_file()
        )

    def stat_modified_time(self, path: str) -> float:
        """Modification time in POSIX seconds."""
        return self._resolve(path).stat().st_mtime

    def find_by_page_id(self, page_id: str, folder: str = "") -> Optional[str]:
        """Path of the note linked to ``page_id``, if any."""
        return self.page_id_index(folder).get(page_id)

    def page_id_index(self, folder: str = "") -> dict[str, str]:
        """Map of remote page id to note path for every linked note."""
        index: dict[str, str] = {}
        for path in self.list_all_documents():
            if not path_is_within_folder(path, folder):
                continue
            try:
                page_id = page_id_of(parse_header(self.read(path)))
            except (OSError, UnicodeDecodeError):
                continue
            if page_id and page_id not in index:
                index[page_id] = path
        return index
