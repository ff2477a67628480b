"""Filesystem watching for real-time export.

watchdog delivers events on its own thread; they are handed to the
engine on the event loop thread, where the debounce lives.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class VaultEventHandler(FileSystemEventHandler):
    """Forwards markdown modifications as vault-relative posix paths."""

    def __init__(
        self,
        root: Path,
        loop: asyncio.AbstractEventLoop,
        callback: Callable[[str], object],
    ):
        super().__init__()
        self.root = Path(root).resolve()
        self.loop = loop
        self.callback = callback

    def relative_path(self, src_path: str) -> Optional[str]:
        try:
            return Path(src_path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    def _forward(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src_path = getattr(event, "dest_path", None) or event.src_path
        if isinstance(src_path, bytes):
            src_path = src_path.decode()
        if not src_path.endswith(".md"):
            return
        path = self.relative_path(src_path)
        if path is None:
            return
        self.loop.call_soon_threadsafe(self.callback, path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event)


class VaultWatcher:
    """Runs a watchdog observer over the vault root."""

    def __init__(self, root: Path, callback: Callable[[str], object]):
        self.root = Path(root)
        self.callback = callback
        self.observer: Optional[Observer] = None

    def start(self) -> None:
        """Start watching; must be called from inside the running event loop."""
        handler = VaultEventHandler(self.root, asyncio.get_running_loop(), self.callback)
        self.observer = Observer()
        self.observer.schedule(handler, str(self.root), recursive=True)
        self.observer.start()
        logger.info("Watching %s for changes", self.root)

    def stop(self) -> None:
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None
