"""Logging configuration.

Console output goes through Rich; an optional log file receives the
same records in plain text.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler


def setup_logging(level: str = "INFO", logfile: Optional[str] = None) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers to avoid duplicates on repeated setup.
    for h in list(root.handlers):
        root.removeHandler(h)

    console_handler = RichHandler(rich_tracebacks=True, show_path=False)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console_handler)

    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile, encoding="utf-8")
        fh.setLevel(log_level)
        fh.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s")
        )
        root.addHandler(fh)

    # The Notion SDK logs every request at DEBUG; keep it quieter than ours.
    logging.getLogger("notion_client").setLevel(max(log_level, logging.WARNING))

    root.debug("logging initialized")
