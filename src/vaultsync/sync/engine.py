"""Sync orchestration between a Notion database and a local vault.

Import pulls database pages into notes, export pushes one note's edits
back to its page, and the batch runs combine the two. Every remote call
goes through one executor (normally the process-wide Scheduler).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import AsyncIterator, Awaitable, Callable, Optional

from rich.console import Console
from rich.markup import escape
from tqdm import tqdm

from ..codec.blocks import blocks_to_markdown
from ..config import Config, get_config
from ..frontmatter import (
    PAGE_ID_FIELD,
    PROVENANCE,
    PROVENANCE_FIELD,
    TITLE_FIELD,
    WATERMARK_FIELD,
    page_id_of,
    parse_document,
    parse_header,
    render_document,
    sanitize_key,
    set_field,
)
from ..storage import Vault, build_file_name, path_is_within_folder
from .conflict import (
    ConflictResolution,
    ConflictResolver,
    detect_conflict,
    is_remote_newer,
    resolve_conflict_interactive,
)
from .differ import ContentDiffer
from .fetch import Executor, fetch_block_tree, query_all_pages
from .notion import (
    NotionAuthError,
    NotionClient,
    NotionError,
    NotionNotFoundError,
    NotionPage,
    parse_timestamp,
    plain_text,
)
from .scheduler import OperationKind, SchedulerError, get_scheduler, reset_scheduler

logger = logging.getLogger(__name__)

console = Console()

IMPORT = "import"
BIDIRECTIONAL = "bidirectional"


class ExportState(str, Enum):
    """Where a single note's export currently is."""

    IDLE = "idle"
    READING = "reading"
    CHECKING_CONFLICT = "checking_conflict"
    BLOCKED = "blocked"
    PROCEEDING = "proceeding"
    APPLYING = "applying"
    UPDATING_WATERMARK = "updating_watermark"
    FAILED = "failed"


class ExportOutcome(str, Enum):
    """How a single note's export ended."""

    PUSHED = "pushed"
    UNCHANGED = "unchanged"
    PULLED = "pulled"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ExportReport:
    """Outcome of one export, with the reason when it failed."""

    outcome: ExportOutcome
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True if Notion and the note agree afterwards."""
        return self.outcome in (
            ExportOutcome.PUSHED,
            ExportOutcome.UNCHANGED,
            ExportOutcome.PULLED,
        )


@dataclass
class SyncResult:
    """Result of a batch sync run."""

    imported: int = 0
    updated: int = 0
    exported: int = 0
    skipped: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.imported + self.updated + self.exported

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.imported += other.imported
        self.updated += other.updated
        self.exported += other.exported
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        return self


def console_notify(message: str) -> None:
    console.print(f"[cyan]vaultsync:[/cyan] {escape(message)}")


# ============================================================================
# Run guards
# ============================================================================


class OperationLocks:
    """One non-blocking lock per top-level operation kind.

    A second run of the same kind while one is in progress is refused
    rather than queued.
    """

    def __init__(self):
        self._held: set[str] = set()

    def is_running(self, kind: str) -> bool:
        return kind in self._held

    @asynccontextmanager
    async def hold(self, kind: str) -> AsyncIterator[bool]:
        """Try to take the lock for ``kind``; yields whether it was taken."""
        if kind in self._held:
            yield False
            return
        self._held.add(kind)
        try:
            yield True
        finally:
            self._held.discard(kind)


class DebouncedTasks:
    """Per-key delayed tasks where a new trigger replaces the pending one."""

    def __init__(
        self,
        delay: float = 2.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.delay = delay
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, callback: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Run ``callback`` once ``key`` has been quiet for ``delay`` seconds."""
        pending = self._tasks.pop(key, None)
        if pending is not None and not pending.done():
            pending.cancel()

        task = asyncio.get_running_loop().create_task(self._run(key, callback))
        self._tasks[key] = task
        return task

    def pending(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, key: str, callback: Callable[[], Awaitable[object]]) -> None:
        await self._sleep(self.delay)

        # Once the delay has passed the run is committed; later triggers
        # schedule a fresh one instead of cancelling this.
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except Exception:
            logger.exception("Debounced task for %s failed", key)


# ============================================================================
# Engine
# ============================================================================


def property_fields(properties: dict) -> dict[str, str]:
    """Header fields mirroring a page's date and rich text properties."""
    fields: dict[str, str] = {}
    for name, prop in properties.items():
        prop_type = prop.get("type")
        if prop_type == "title":
            continue
        if prop_type == "date" and prop.get("date"):
            start = prop["date"].get("start")
            if start:
                fields[sanitize_key(name)] = start
        elif prop_type == "rich_text" and prop.get("rich_text"):
            fields[sanitize_key(name)] = plain_text(prop["rich_text"])
    return fields


class SyncEngine:
    """Coordinates import, export and batch reconciliation."""

    def __init__(
        self,
        client: NotionClient,
        vault: Optional[Vault] = None,
        execute: Optional[Executor] = None,
        config: Optional[Config] = None,
        resolver: Optional[ConflictResolver] = None,
        notify: Optional[Callable[[str], None]] = None,
        differ: Optional[ContentDiffer] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        """Initialize the engine.

        Args:
            client: Notion adapter
            vault: Local note store (uses the configured vault path if not provided)
            execute: Scheduler or RetryExecutor (uses the process-wide scheduler
                if not provided)
            config: Settings (uses global config if not provided)
            resolver: Async conflict resolver (prompts on the terminal if not provided)
            notify: Sink for user-facing messages (prints to the console if not provided)
            differ: Content differ (built from client and executor if not provided)
            sleep: Coroutine used between periodic runs
        """
        self.config = config or get_config()
        self.client = client
        self.vault = vault or Vault(self.config.vault_path)
        self._shared_scheduler = execute is None
        self.execute = execute or get_scheduler()
        self.resolver = resolver or resolve_conflict_interactive
        self.notify = notify or console_notify
        self.differ = differ or ContentDiffer(client, self.execute)
        self._sleep = sleep

        self.locks = OperationLocks()
        self.debouncer = DebouncedTasks(self.config.debounce_seconds)
        self._active: set[str] = set()
        self._states: dict[str, ExportState] = {}
        # Modification times of the files this engine wrote last
        self._own_writes: dict[str, float] = {}

    @property
    def destination_folder(self) -> str:
        return self.config.destination_folder.strip("/")

    def state_of(self, path: str) -> ExportState:
        return self._states.get(path, ExportState.IDLE)

    def _set_state(self, path: str, state: ExportState) -> None:
        self._states[path] = state
        logger.debug("%s: %s", path, state.value)

    def _write(self, path: str, text: str, create: bool = False) -> None:
        if create:
            self.vault.create(path, text)
        else:
            self.vault.write(path, text)
        self._own_writes[path] = self.vault.stat_modified_time(path)

    def written_by_engine(self, path: str) -> bool:
        """True if the note is unchanged since this engine last wrote it."""
        recorded = self._own_writes.get(path)
        if recorded is None:
            return False
        try:
            return self.vault.stat_modified_time(path) == recorded
        except OSError:
            return False

    # ========================================================================
    # Export (local -> Notion)
    # ========================================================================

    async def export_document(self, path: str) -> bool:
        """Push one note to its linked page.

        Returns:
            True if Notion now matches the note (or the remote version was
            kept locally), False if the note was skipped, cancelled or failed
        """
        return (await self.export(path)).ok

    async def export(self, path: str) -> ExportReport:
        """Push one note to its linked page and report how it went."""
        if path in self._active:
            logger.info("Sync already in progress for %s, skipping", path)
            return ExportReport(ExportOutcome.SKIPPED)

        self._active.add(path)
        try:
            return await self._export(path)
        finally:
            self._active.discard(path)
            self._states.pop(path, None)

    def _failed(self, path: str, message: str) -> ExportReport:
        self._set_state(path, ExportState.FAILED)
        self.notify(message)
        return ExportReport(ExportOutcome.FAILED, message)

    async def _export(self, path: str) -> ExportReport:
        name = PurePosixPath(path).stem

        self._set_state(path, ExportState.READING)
        try:
            document = parse_document(self.vault.read(path))
        except (OSError, UnicodeDecodeError) as e:
            return self._failed(path, f"Error reading {name}: {e}")

        page_id = document.page_id
        if not page_id:
            logger.debug("No Notion page ID in %s, skipping", path)
            return ExportReport(ExportOutcome.SKIPPED)
        title = document.title or name

        self._set_state(path, ExportState.CHECKING_CONFLICT)
        try:
            page = await self.execute(
                lambda: self.client.retrieve_page(page_id),
                1,
                kind=OperationKind.FETCH,
                target=page_id,
            )
            conflict = detect_conflict(
                path, page_id, document.watermark, page.get("last_edited_time"), title
            )
            if conflict is not None:
                self._set_state(path, ExportState.BLOCKED)
                logger.info("Conflict on %s: Notion version is newer", path)
                resolution = await self.resolver(conflict)

                if resolution == ConflictResolution.CANCEL:
                    logger.info("Export of %s cancelled", path)
                    return ExportReport(ExportOutcome.SKIPPED)
                if resolution == ConflictResolution.KEEP_REMOTE:
                    content = await self.render_page(
                        page_id, NotionPage.from_api_response(page)
                    )
                    self._write(path, content)
                    self.notify(f"Replaced {name} with the Notion version")
                    return ExportReport(ExportOutcome.PULLED)

            self._set_state(path, ExportState.PROCEEDING)
            return await self._apply(path, page_id, document.body, title)

        except NotionNotFoundError:
            return self._failed(
                path, f"Notion page not found for {name}. It may have been deleted."
            )
        except (NotionError, SchedulerError, OSError) as e:
            logger.error("Error syncing %s: %s", path, e)
            return self._failed(path, f"Error syncing {name} to Notion: {e}")

    async def _apply(self, path: str, page_id: str, body: str, title: str) -> ExportReport:
        self._set_state(path, ExportState.APPLYING)
        diff = await self.differ.diff_page(page_id, body, title)
        if not diff.has_changes:
            logger.info("No changes detected for %s, skipping sync", path)
            return ExportReport(ExportOutcome.UNCHANGED)

        logger.info(
            "Changes detected for %s: title_changed=%s block_changes=%d",
            path,
            diff.title_changed,
            diff.change_count,
        )

        # Title first, body last; the watermark only moves once both landed.
        if diff.title_changed and diff.new_title:
            await self.differ.update_title(page_id, diff.new_title)

        if diff.requires_full_replacement:
            logger.info("Falling back to full replacement for %s", path)
            await self.differ.replace_all(page_id, body)
        else:
            await self.differ.apply(page_id, diff)

        self._set_state(path, ExportState.UPDATING_WATERMARK)
        page = await self.execute(
            lambda: self.client.retrieve_page(page_id),
            1,
            kind=OperationKind.FETCH,
            target=page_id,
        )
        last_edited = page.get("last_edited_time")
        if last_edited:
            self._write(path, set_field(self.vault.read(path), WATERMARK_FIELD, last_edited))

        self.notify(f"Successfully synced {PurePosixPath(path).stem} to Notion")
        return ExportReport(ExportOutcome.PUSHED)

    async def sync_all(self) -> SyncResult:
        """Export every linked note edited locally since its watermark."""
        result = SyncResult()
        logger.info("Starting sync of local changes to Notion")

        for path in self.vault.list_all_documents():
            if not path_is_within_folder(path, self.destination_folder):
                continue
            try:
                document = parse_document(self.vault.read(path))
            except (OSError, UnicodeDecodeError):
                continue
            watermark = parse_timestamp(document.watermark)
            if not document.page_id or watermark is None:
                continue
            if self.vault.stat_modified_time(path) <= watermark.timestamp():
                continue
            if self.written_by_engine(path):
                continue

            logger.info("Local file %s is newer, syncing to Notion", path)
            try:
                report = await self.export(path)
            except Exception as e:
                logger.warning("Failed to export %s: %s", path, e)
                result.errors.append((path, str(e)))
                continue

            if report.outcome == ExportOutcome.PUSHED:
                result.exported += 1
            elif report.outcome == ExportOutcome.PULLED:
                result.updated += 1
            elif report.outcome == ExportOutcome.FAILED:
                result.errors.append((path, report.error or "export failed"))
            else:
                result.skipped += 1

        if result.exported:
            self.notify(f"Synced {result.exported} files to Notion")
        return result

    # ========================================================================
    # Import (Notion -> local)
    # ========================================================================

    async def import_all(self, show_progress: bool = True) -> Optional[SyncResult]:
        """Import every page of the database into the destination folder.

        Returns:
            SyncResult, or None if another import was already running
        """
        async with self.locks.hold(IMPORT) as acquired:
            if not acquired:
                logger.info("Import already running, skipping")
                return None
            return await self._import_all(show_progress)

    async def _import_all(self, show_progress: bool) -> SyncResult:
        result = SyncResult()
        database_id = self.client.database_id
        if not database_id:
            self.notify("Please set your Notion database ID (NOTION_DATABASE_ID)")
            result.errors.append(("config", "NOTION_DATABASE_ID not set"))
            return result

        self.vault.ensure_folder_exists(self.destination_folder)

        try:
            await self.execute(
                lambda: self.client.retrieve_database(database_id),
                2,
                kind=OperationKind.FETCH,
                target=database_id,
            )
        except NotionNotFoundError as e:
            self.notify(
                f"Database not found (404). ID: {database_id}. Please check your "
                "database ID and make sure the integration has access to it."
            )
            result.errors.append((database_id, str(e)))
            return result
        except NotionAuthError as e:
            self.notify(
                "Invalid integration token (401). Please check your Notion integration token."
            )
            result.errors.append((database_id, str(e)))
            return result
        except (NotionError, SchedulerError) as e:
            self.notify(f"Error accessing database: {e}")
            result.errors.append((database_id, str(e)))
            return result

        try:
            pages = await query_all_pages(self.client, self.execute, database_id)
        except (NotionError, SchedulerError) as e:
            self.notify(f"Error importing from Notion: {e}")
            result.errors.append((database_id, str(e)))
            return result

        if not pages:
            self.notify("No entries found in the database")
            return result

        index = self.vault.page_id_index(self.destination_folder)
        for page in tqdm(pages, desc="Importing", disable=not show_progress):
            try:
                await self._import_page(page, index, result)
            except Exception as e:
                logger.warning("Failed to import page %s: %s", page.page_id, e)
                result.errors.append((page.page_id, str(e)))

        count = result.imported + result.updated
        if count:
            self.notify(f"Imported/updated {count} notes from Notion")
        return result

    async def _import_page(
        self, page: NotionPage, index: dict[str, str], result: SyncResult
    ) -> None:
        existing = index.get(page.page_id)

        if existing is not None:
            local = self.vault.read(existing)
            if is_remote_newer(page.last_edited_time, parse_header(local).get(WATERMARK_FIELD)):
                self._write(existing, await self.render_page(page.page_id, page))
                result.updated += 1
                logger.info("Updated %s from Notion", existing)
                return

            normalized = self._normalize_header(local, page)
            if normalized != local:
                self._write(existing, normalized)
            result.skipped += 1
            return

        created = parse_timestamp(page.first_date() or page.created_time)
        file_name = build_file_name(
            page.title or "Untitled",
            pattern=self.config.file_naming_pattern,
            include_date=self.config.include_date_in_filename,
            date_format=self.config.date_format,
            date_position=self.config.date_position,
            date_separator=self.config.date_separator,
            date_source=self.config.date_source,
            created=created,
        )
        folder = self.destination_folder
        path = f"{folder}/{file_name}.md" if folder else f"{file_name}.md"

        content = await self.render_page(page.page_id, page)
        try:
            self._write(path, content, create=True)
        except FileExistsError:
            logger.debug("%s already exists, skipping", path)
            result.skipped += 1
            return
        index[page.page_id] = path
        result.imported += 1

    def _normalize_header(self, text: str, page: NotionPage) -> str:
        """Fill in required header fields the note is missing."""
        header = parse_header(text)
        if not page_id_of(header):
            text = set_field(text, PAGE_ID_FIELD, page.page_id)
        if not header.get(PROVENANCE_FIELD):
            text = set_field(text, PROVENANCE_FIELD, PROVENANCE)
        if not header.get(WATERMARK_FIELD) and page.last_edited_time:
            text = set_field(text, WATERMARK_FIELD, page.last_edited_time)
        if not header.get(TITLE_FIELD) and page.title:
            text = set_field(text, TITLE_FIELD, page.title)
        return text

    async def render_page(self, page_id: str, page: Optional[NotionPage] = None) -> str:
        """Render a page as note text: header, template body, then content."""
        if page is None:
            raw = await self.execute(
                lambda: self.client.retrieve_page(page_id),
                1,
                kind=OperationKind.FETCH,
                target=page_id,
            )
            page = NotionPage.from_api_response(raw)

        blocks = await fetch_block_tree(self.client, self.execute, page_id)
        template_fields, template_body = self._load_template()

        fields = dict(template_fields)
        fields.update(property_fields(page.properties))
        fields[PROVENANCE_FIELD] = PROVENANCE
        fields[PAGE_ID_FIELD] = page.page_id
        fields[WATERMARK_FIELD] = page.last_edited_time
        if page.title:
            fields[TITLE_FIELD] = page.title

        body = blocks_to_markdown(blocks)
        if template_body:
            body = f"{template_body}\n\n{body}"
        return render_document(fields, body)

    def _load_template(self) -> tuple[dict[str, str], str]:
        template_path = self.config.template_path
        if not template_path:
            return {}, ""
        try:
            document = parse_document(self.vault.read(template_path))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Error reading template %s: %s", template_path, e)
            return {}, ""
        return document.header, document.body.strip()

    # ========================================================================
    # Combined and background runs
    # ========================================================================

    async def run_bidirectional(self, show_progress: bool = True) -> Optional[SyncResult]:
        """Import from Notion, then push local changes.

        Returns:
            Combined SyncResult, or None if a combined run was already active
        """
        async with self.locks.hold(BIDIRECTIONAL) as acquired:
            if not acquired:
                logger.info("Two-way sync already running, skipping")
                return None

            result = SyncResult()
            imported = await self.import_all(show_progress=show_progress)
            if imported is not None:
                result.merge(imported)
            result.merge(await self.sync_all())
            return result

    def notify_modified(self, path: str) -> bool:
        """Schedule a debounced export after a note changed on disk.

        Must be called from inside the running event loop.

        Returns:
            True if an export was scheduled
        """
        if not self.config.bidirectional_sync:
            return False
        if not path.endswith(".md") or not path_is_within_folder(path, self.destination_folder):
            return False
        try:
            if not page_id_of(parse_header(self.vault.read(path))):
                return False
        except (OSError, UnicodeDecodeError):
            return False
        if self.written_by_engine(path):
            logger.debug("Ignoring our own write to %s", path)
            return False

        logger.debug("File modified with Notion page ID: %s", path)
        self.debouncer.schedule(path, lambda: self.export_document(path))
        return True

    async def run_periodic(
        self,
        interval_minutes: Optional[int] = None,
        cycles: Optional[int] = None,
    ) -> None:
        """Auto-import loop.

        Args:
            interval_minutes: Minutes between runs (uses config if not provided)
            cycles: Stop after this many runs (runs forever if not provided)
        """
        interval = (interval_minutes or self.config.import_interval) * 60
        logger.info("Setting up auto-import every %s minutes", interval / 60)

        done = 0
        while cycles is None or done < cycles:
            await self._sleep(interval)
            done += 1

            if self.locks.is_running(IMPORT) or self.locks.is_running(BIDIRECTIONAL):
                logger.info("Skipping auto-import; another sync is running")
            else:
                await self.import_all(show_progress=False)

            if self.config.bidirectional_sync:
                if self.locks.is_running(BIDIRECTIONAL):
                    logger.info("Skipping local sync; another sync is running")
                else:
                    await self.sync_all()

    async def close(self) -> None:
        """Cancel pending debounced exports and stop the scheduler."""
        await self.debouncer.cancel_all()
        if self._shared_scheduler:
            await reset_scheduler()
        else:
            close = getattr(self.execute, "close", None)
            if close is not None:
                await close()
