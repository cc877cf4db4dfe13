"""
In-memory cache module for the Obsidian Vault MCP Server.

Two tiers sit in front of the note source:
- MetadataIndex: every note's stat, frontmatter and tags, rebuilt by refresh.
- ContentCache: bounded LRU of raw note text with a sliding TTL.

VaultCacheService drives the refresh (incremental by mtime, bounded
concurrency), recovers metadata from raw Markdown when the structured note
is unusable, optionally repairs broken frontmatter, and keeps single files
fresh after writes.
"""

import asyncio
import math
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from functools import partial
from types import MappingProxyType
from typing import Any

import structlog

from .config import CacheConfig
from .markdown import Failed, extract_inline_tags, frontmatter_of, normalize_tags, parse_frontmatter
from .models import FileIssue, IssueKind, NoteMetadata, NoteStat, RefreshStats, RepairPlan, RepairReport
from .repair import RepairWriter, plan_repair
from .source import NoteSource
from .utils import (
    NotFoundError,
    ValidationError,
    basename_no_ext,
    join_vault_path,
    retry_with_delay,
    run_limited,
    to_posix,
)

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def is_note_json(value: Any) -> bool:
    """Minimal shape check for a structured note."""
    return isinstance(value, dict) and isinstance(value.get("path"), str)


def coerce_stat(value: Any) -> NoteStat | None:
    """Return a NoteStat when ``value`` carries finite mtime and ctime."""
    if isinstance(value, NoteStat):
        return value
    if not isinstance(value, dict):
        return None

    def finite(x: Any) -> bool:
        return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)

    mtime, ctime, size = value.get("mtime"), value.get("ctime"), value.get("size")
    if not (finite(mtime) and finite(ctime)):
        return None
    return NoteStat(mtime=int(mtime), ctime=int(ctime), size=int(size) if finite(size) else 0)


class CacheState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    REFRESHING = "refreshing"
    READY = "ready"


# ============== Storage ==============

class MetadataIndex:
    """Unbounded mapping of normalized vault path to NoteMetadata."""

    def __init__(self):
        self._entries: dict[str, NoteMetadata] = {}

    def get(self, path: str) -> NoteMetadata | None:
        return self._entries.get(path)

    def get_all(self) -> Mapping[str, NoteMetadata]:
        """Read-only mapping of copies; edits never reach the index."""
        return MappingProxyType({path: m.model_copy(deep=True) for path, m in self._entries.items()})

    def set(self, path: str, metadata: NoteMetadata) -> None:
        self._entries[path] = metadata

    def delete(self, path: str) -> None:
        self._entries.pop(path, None)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ContentCache:
    """LRU cache of raw note content with a sliding TTL.

    Every hit pushes the entry's expiry out by ``ttl_seconds`` and marks it
    most recently used. Inserting past ``max_items`` evicts the least
    recently used entry.
    """

    def __init__(self, max_items: int, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()

    def get(self, path: str) -> str | None:
        entry = self._entries.get(path)
        if entry is None:
            return None
        value, expires_at = entry
        now = self._clock()
        if now > expires_at:
            del self._entries[path]
            return None
        self._entries[path] = (value, now + self.ttl_seconds)
        self._entries.move_to_end(path)
        return value

    async def get_or_fetch(self, path: str, fetch: Callable[[], Awaitable[str]]) -> str:
        cached = self.get(path)
        if cached is not None:
            logger.debug("content_cache_hit", path=path)
            return cached
        logger.debug("content_cache_miss", path=path)
        value = await fetch()
        self.set(path, value)
        return value

    def set(self, path: str, value: str) -> None:
        self._entries[path] = (value, self._clock() + self.ttl_seconds)
        self._entries.move_to_end(path)
        while len(self._entries) > self.max_items:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("content_cache_evicted", path=evicted)

    def delete(self, path: str) -> None:
        self._entries.pop(path, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, path: object) -> bool:
        entry = self._entries.get(path)  # type: ignore[arg-type]
        return entry is not None and self._clock() <= entry[1]

    def __len__(self) -> int:
        return len(self._entries)


class DiagnosticsLog:
    """Per-path list of data-quality issues found during the current pass."""

    def __init__(self):
        self._issues: dict[str, list[FileIssue]] = {}

    def record(self, file_path: str, kind: IssueKind, detail: str | None = None) -> FileIssue:
        key = to_posix(file_path)
        issue = FileIssue(file_path=key, kind=kind, detail=detail)
        self._issues.setdefault(key, []).append(issue)
        return issue

    def clear(self) -> None:
        self._issues.clear()

    def snapshot(self) -> Mapping[str, tuple[FileIssue, ...]]:
        return MappingProxyType({path: tuple(issues) for path, issues in self._issues.items()})

    def __len__(self) -> int:
        return len(self._issues)


# ============== Service ==============

class VaultCacheService:
    """Self-healing metadata + content cache in front of a NoteSource."""

    def __init__(
        self,
        source: NoteSource,
        config: CacheConfig | None = None,
        writer: RepairWriter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.config = config or CacheConfig()
        self.writer = writer or RepairWriter()
        self._metadata = MetadataIndex()
        self._content = ContentCache(self.config.content_max_items, self.config.content_ttl_seconds, clock)
        self._diagnostics = DiagnosticsLog()
        self._repair_reports: list[RepairReport] = []
        self._repair_lock = asyncio.Lock()
        self._repairs_remaining = 0
        self._is_ready = False
        self._is_building = False
        self._refresh_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self.last_refresh_stats: RefreshStats | None = None

        logger.info(
            "vault_cache_initialized",
            content_max_items=self.config.content_max_items,
            content_ttl_seconds=self.config.content_ttl_seconds,
            refresh_interval_min=self.config.refresh_interval_min,
            refresh_concurrency=self.config.refresh_concurrency,
            repair_enabled=self.config.repair_enabled,
            repair_dry_run=self.config.repair_dry_run,
            max_repairs_per_run=self.config.max_repairs_per_run,
            repair_writable=self.writer.can_write,
        )

    # --- Status ---

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def is_building(self) -> bool:
        return self._is_building

    @property
    def state(self) -> CacheState:
        if self._is_building:
            return CacheState.REFRESHING if self._is_ready else CacheState.BUILDING
        return CacheState.READY if self._is_ready else CacheState.IDLE

    def get_diagnostics(self) -> Mapping[str, tuple[FileIssue, ...]]:
        return self._diagnostics.snapshot()

    def get_repair_reports(self) -> tuple[RepairReport, ...]:
        return tuple(self._repair_reports)

    # --- Accessors ---

    def get_metadata(self, path: str) -> NoteMetadata | None:
        """Metadata for one note (a copy), or None if it is not indexed."""
        metadata = self._metadata.get(to_posix(path))
        return metadata.model_copy(deep=True) if metadata is not None else None

    def get_all_metadata(self) -> Mapping[str, NoteMetadata]:
        """Read-only snapshot of the whole index, for vault-wide queries."""
        return self._metadata.get_all()

    async def get_content(self, path: str) -> str:
        """Raw note text, served from the content cache when possible."""
        key = to_posix(path)
        return await self._content.get_or_fetch(key, partial(self.source.get_raw_content, key))

    def get_cached_content(self, path: str) -> str | None:
        return self._content.get(to_posix(path))

    # --- Single-file maintenance ---

    async def update_cache_for_file(self, path: str) -> None:
        """Re-read one file after a write. Never raises for fetch failures.

        The content entry is dropped before anything is awaited. A NotFound
        answer removes the file from both tiers; any other failure leaves
        the existing metadata in place.
        """
        key = to_posix(path)
        self._content.delete(key)
        logger.debug("cache_update_started", path=key)

        try:
            note = await retry_with_delay(
                partial(self.source.get_structured_note, key),
                operation="update_cache_for_file",
                max_retries=self.config.update_max_retries,
                delay_seconds=self.config.update_retry_delay_seconds,
            )
        except NotFoundError:
            self._metadata.delete(key)
            self._content.delete(key)
            logger.info("cache_entry_removed", path=key, reason="not found")
            return
        except Exception as e:
            self._diagnostics.record(key, IssueKind.FETCH_ERROR, f"update_cache_for_file: {e}")
            logger.error("cache_update_failed", path=key, error=str(e))
            return

        if not is_note_json(note):
            self._diagnostics.record(key, IssueKind.INVALID_NOTEJSON, "update_cache_for_file")
            logger.warning("cache_update_invalid_note", path=key)
            return

        raw = self._backfill_stat(key, note, None, self._metadata.get(key))
        self._metadata.set(key, self._normalize_metadata(key, raw))
        content = note.get("content")
        if isinstance(content, str):
            self._content.set(key, content)
        logger.info("cache_entry_updated", path=key)

    def notify_file_changed(self, path: str) -> None:
        """Fire-and-forget form of update_cache_for_file.

        Returns immediately; the update runs as a background task whose
        failure is logged and swallowed.
        """
        key = to_posix(path)
        self._content.delete(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("cache_update_not_scheduled", path=key, reason="no running event loop")
            return
        task = loop.create_task(self.update_cache_for_file(key))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("background_cache_update_failed", error=str(error))

    async def drain_pending_updates(self) -> None:
        """Wait for background single-file updates scheduled so far."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Refresh ---

    async def build_vault_cache(self) -> None:
        """Build the cache once; later calls are no-ops."""
        if self._is_building:
            logger.warning("cache_build_skipped", reason="build already in progress")
            return
        if self._is_ready:
            logger.info("cache_build_skipped", reason="cache already built")
            return
        await self.refresh_cache(is_initial_build=True)

    async def refresh_cache(self, is_initial_build: bool = False) -> RefreshStats | None:
        """Run one refresh pass over the whole vault.

        Returns the pass statistics, or None when the pass was skipped
        because another one is running or when it failed as a whole.
        A pass that starts before the cache was ever ready counts as the
        initial build, so a failed startup build heals on the next pass.
        """
        if self._is_building:
            logger.warning("cache_refresh_skipped", reason="refresh already in progress")
            return None

        is_initial_build = is_initial_build or not self._is_ready
        self._is_building = True
        if is_initial_build:
            self._is_ready = False
        self._diagnostics.clear()
        self._repair_reports.clear()
        self._repairs_remaining = self.config.max_repairs_per_run if self.config.repair_enabled else 0
        stats = RefreshStats()
        start_time = time.perf_counter()
        logger.info("cache_refresh_started", is_initial_build=is_initial_build)

        try:
            remote_files = list(dict.fromkeys(await self._list_markdown_files("", set())))
            remote_set = set(remote_files)

            for cached_path in self._metadata.keys():
                if cached_path not in remote_set:
                    self._metadata.delete(cached_path)
                    self._content.delete(cached_path)
                    stats.removed += 1

            await run_limited(
                self.config.refresh_concurrency,
                remote_files,
                partial(self._process_file, stats=stats),
            )

            stats.duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            self.last_refresh_stats = stats
            if is_initial_build:
                self._is_ready = True
            logger.info(
                "cache_refreshed",
                refresh_type="initial" if is_initial_build else "incremental",
                note_count=len(self._metadata),
                added=stats.added,
                updated=stats.updated,
                removed=stats.removed,
                skipped=stats.skipped,
                repaired=stats.repaired,
                issues=len(self._diagnostics),
                duration_ms=stats.duration_ms,
            )
            return stats
        except Exception as e:
            logger.error("cache_refresh_failed", is_initial_build=is_initial_build, error=str(e), exc_info=True)
            if is_initial_build:
                self._is_ready = False
            return None
        finally:
            self._is_building = False

    async def _process_file(self, file_path: str, stats: RefreshStats) -> None:
        file_path = to_posix(file_path)
        try:
            cached = self._metadata.get(file_path)
            remote_stat = await self._fetch_remote_stat(file_path)

            needs_update = cached is None or remote_stat is None or cached.stat.mtime < remote_stat.mtime
            if not needs_update:
                stats.skipped += 1
                return

            note = await self._try_fetch_structured_note(file_path)
            if note is not None:
                content = note.get("content")
                raw = self._backfill_stat(file_path, note, remote_stat, cached)
                metadata = self._normalize_metadata(file_path, raw)
                self._metadata.set(file_path, metadata)
                if cached is None:
                    stats.added += 1
                else:
                    stats.updated += 1
                    self._content.delete(file_path)
                await self._maybe_repair(file_path, content, metadata, stats)
                return

            recovered = await self._recover_from_markdown(file_path, remote_stat)
            if recovered is None:
                detail = "No recovery possible; kept existing" if cached else "No recovery possible; not added"
                self._diagnostics.record(file_path, IssueKind.MISSING_NOTEJSON, detail)
                return

            metadata, plan = recovered
            self._diagnostics.record(file_path, IssueKind.MISSING_NOTEJSON, "Recovered from Markdown")
            self._metadata.set(file_path, metadata)
            if cached is None:
                stats.added += 1
            else:
                stats.updated += 1
            if plan is not None:
                await self._apply_within_budget(plan, stats)
        except Exception as e:
            self._diagnostics.record(file_path, IssueKind.FETCH_ERROR, f"process_file: {e}")
            logger.error("cache_file_failed", path=file_path, error=str(e))

    async def _fetch_remote_stat(self, file_path: str) -> NoteStat | None:
        try:
            return await retry_with_delay(
                partial(self.source.get_metadata, file_path),
                operation="get_metadata",
                max_retries=self.config.stat_max_retries,
                delay_seconds=self.config.retry_delay_seconds,
            )
        except Exception as e:
            self._diagnostics.record(file_path, IssueKind.FETCH_ERROR, f"get_metadata: {e}")
            return None

    async def _try_fetch_structured_note(self, file_path: str) -> dict[str, Any] | None:
        try:
            note = await retry_with_delay(
                partial(self.source.get_structured_note, file_path),
                operation="get_structured_note",
                max_retries=self.config.fetch_max_retries,
                delay_seconds=self.config.retry_delay_seconds,
            )
        except Exception as e:
            self._diagnostics.record(file_path, IssueKind.FETCH_ERROR, f"get_structured_note: {e}")
            return None

        if not is_note_json(note):
            self._diagnostics.record(file_path, IssueKind.INVALID_NOTEJSON, "Structured note missing or invalid")
            return None
        return note

    def _backfill_stat(
        self,
        file_path: str,
        note: dict[str, Any],
        remote_stat: NoteStat | None,
        cached: NoteMetadata | None,
    ) -> dict[str, Any]:
        """Fill a missing stat from the remote stat, then the cached one, then now."""
        if coerce_stat(note.get("stat")) is not None:
            return note

        self._diagnostics.record(file_path, IssueKind.MISSING_STAT, "Structured note missing stat; backfilling")
        if remote_stat is not None:
            stat = remote_stat.model_dump()
        elif cached is not None:
            stat = cached.stat.model_dump()
        else:
            content = note.get("content")
            mtime = now_ms()
            stat = {
                "mtime": mtime,
                "ctime": mtime,
                "size": len(content.encode("utf-8")) if isinstance(content, str) else 0,
            }
        return {**note, "stat": stat}

    def _normalize_metadata(self, file_path: str, raw: dict[str, Any]) -> NoteMetadata:
        """Turn a raw note mapping into a fully populated NoteMetadata."""
        lowercase = self.config.normalize_tags_to_lowercase

        path = raw.get("path")
        basename = raw.get("basename")

        frontmatter = raw.get("frontmatter")
        if frontmatter is None:
            frontmatter = {}
            self._diagnostics.record(file_path, IssueKind.MISSING_FRONTMATTER)
        elif not isinstance(frontmatter, dict):
            frontmatter = {}
            self._diagnostics.record(file_path, IssueKind.INVALID_FRONTMATTER, "Coerced to {}")

        # Frontmatter tags win; the source's own tag list is the fallback
        fm_tags = frontmatter.get("tags")
        if fm_tags is not None and not isinstance(fm_tags, list):
            self._diagnostics.record(file_path, IssueKind.TAGS_NOT_ARRAY, "Coerced frontmatter tags to a list")
        tags = normalize_tags(fm_tags, lowercase)
        if not tags:
            note_tags = raw.get("tags")
            if note_tags is not None and not isinstance(note_tags, list):
                self._diagnostics.record(file_path, IssueKind.TAGS_NOT_ARRAY, "Coerced note tags to a list")
            tags = normalize_tags(note_tags, lowercase)

        stat = coerce_stat(raw.get("stat"))
        if stat is None:
            mtime = now_ms()
            stat = NoteStat(mtime=mtime, ctime=mtime)
            self._diagnostics.record(file_path, IssueKind.MISSING_STAT, "Filled with now()")

        return NoteMetadata(
            path=to_posix(path) if isinstance(path, str) and path else file_path,
            basename=basename if isinstance(basename, str) and basename else basename_no_ext(file_path),
            frontmatter=frontmatter,
            tags=tags,
            stat=stat,
        )

    async def _recover_from_markdown(
        self,
        file_path: str,
        remote_stat: NoteStat | None,
    ) -> tuple[NoteMetadata, RepairPlan | None] | None:
        """Synthesize metadata from the raw note when the structured note is unusable."""
        try:
            markdown = await self.source.get_raw_content(file_path)
            if not isinstance(markdown, str):
                raise ValidationError("raw content is not text")
        except Exception as e:
            self._diagnostics.record(file_path, IssueKind.PARSE_ERROR, f"Markdown recovery failed: {e}")
            return None

        self._content.set(file_path, markdown)

        lowercase = self.config.normalize_tags_to_lowercase
        parsed = parse_frontmatter(markdown)
        if isinstance(parsed, Failed):
            self._diagnostics.record(file_path, IssueKind.INVALID_FRONTMATTER, parsed.reason)
        frontmatter = frontmatter_of(parsed)
        fm_tags = normalize_tags(frontmatter.get("tags"), lowercase)
        tags = fm_tags or extract_inline_tags(parsed.body, lowercase)

        stat = remote_stat
        if stat is None:
            try:
                stat = await self.source.get_metadata(file_path)
            except Exception as e:
                logger.debug("recovery_stat_unavailable", path=file_path, error=str(e))

        mtime = now_ms()
        synthesized = {
            "path": file_path,
            "basename": basename_no_ext(file_path),
            "frontmatter": frontmatter,
            "tags": tags,
            "stat": {
                "mtime": stat.mtime if stat else mtime,
                "ctime": stat.ctime if stat else mtime,
                "size": stat.size if stat else len(markdown.encode("utf-8")),
            },
        }
        metadata = self._normalize_metadata(file_path, synthesized)
        logger.info("note_recovered_from_markdown", path=file_path, tags=len(tags))

        plan = None
        if self._repairs_remaining > 0:
            plan = plan_repair(file_path, parsed, tags, fm_tags)
        return metadata, plan

    # --- Repair ---

    async def _maybe_repair(self, file_path: str, content: Any, metadata: NoteMetadata, stats: RefreshStats) -> None:
        if self._repairs_remaining <= 0 or not isinstance(content, str):
            return
        lowercase = self.config.normalize_tags_to_lowercase
        parsed = parse_frontmatter(content)
        fm_tags = normalize_tags(frontmatter_of(parsed).get("tags"), lowercase)
        chosen_tags = fm_tags or extract_inline_tags(parsed.body, lowercase)
        plan = plan_repair(file_path, parsed, chosen_tags, metadata.tags)
        if plan is not None:
            await self._apply_within_budget(plan, stats)

    async def _apply_within_budget(self, plan: RepairPlan, stats: RefreshStats) -> None:
        if self.config.repair_dry_run:
            if self._repairs_remaining > 0:
                await self.apply_repair(plan)
            return

        # Reserve a slot; the write itself runs outside the lock.
        async with self._repair_lock:
            if self._repairs_remaining <= 0:
                return
            self._repairs_remaining -= 1

        applied = False
        try:
            applied = await self.apply_repair(plan)
        finally:
            if applied:
                stats.repaired += 1
            else:
                self._repairs_remaining += 1

    async def apply_repair(self, plan: RepairPlan) -> bool:
        """Write a repair plan back to the source.

        Returns True only when the note was actually rewritten. Disabled
        repairs, dry runs, missing write capabilities and write failures
        all return False; the last two are recorded as REPAIR_FAILED.
        """
        if not self.config.repair_enabled:
            return False

        actions = plan.describe()
        if self.config.repair_dry_run:
            logger.info(
                "repair_dry_run",
                path=plan.file_path,
                actions=actions,
                new_frontmatter=plan.new_frontmatter,
            )
            self._repair_reports.append(RepairReport(plan=plan, dry_run=True))
            return False

        try:
            if plan.new_content is not None and self.writer.rewrite is not None:
                await self.writer.rewrite(plan.file_path, plan.new_content)
                method = "rewrite"
            elif plan.new_frontmatter is not None and self.writer.upsert_frontmatter is not None:
                await self.writer.upsert_frontmatter(plan.file_path, plan.new_frontmatter)
                method = "upsert_frontmatter"
            else:
                logger.warning("repair_not_applied", path=plan.file_path, actions=actions, reason="no write method")
                self._diagnostics.record(plan.file_path, IssueKind.REPAIR_FAILED, "No compatible write method")
                self._repair_reports.append(RepairReport(plan=plan, error="No compatible write method"))
                return False
        except Exception as e:
            self._diagnostics.record(plan.file_path, IssueKind.REPAIR_FAILED, str(e) or type(e).__name__)
            self._repair_reports.append(RepairReport(plan=plan, error=str(e)))
            logger.error("repair_failed", path=plan.file_path, actions=actions, error=str(e))
            return False

        logger.info("repair_applied", path=plan.file_path, method=method, actions=actions)
        self._repair_reports.append(RepairReport(plan=plan, applied=True))
        await self.update_cache_for_file(plan.file_path)
        return True

    # --- Listing ---

    async def _list_markdown_files(self, dir_path: str, visited: set[str]) -> list[str]:
        """Recursively collect ``.md`` paths below ``dir_path``.

        ``visited`` guards against listing loops. Transient failures are
        retried. Missing directories are skipped; any other failure is
        skipped too, except at the vault root.
        """
        clean_dir = to_posix(dir_path)
        if clean_dir in visited:
            logger.warning("directory_already_visited", dir_path=clean_dir)
            return []
        visited.add(clean_dir)

        try:
            entries = await retry_with_delay(
                partial(self.source.list_directory, clean_dir),
                operation="list_directory",
                max_retries=self.config.fetch_max_retries,
                delay_seconds=self.config.retry_delay_seconds,
            )
        except NotFoundError:
            logger.debug("directory_not_found", dir_path=clean_dir)
            return []
        except Exception as e:
            if not clean_dir:
                raise
            logger.error("directory_list_failed", dir_path=clean_dir, error=str(e))
            return []

        if not isinstance(entries, list):
            logger.warning("directory_listing_invalid", dir_path=clean_dir)
            return []

        markdown_files: list[str] = []
        for entry in entries:
            if not isinstance(entry, str) or not to_posix(entry):
                continue
            full_path = join_vault_path(clean_dir, entry)
            if entry.endswith("/"):
                markdown_files.extend(await self._list_markdown_files(full_path, visited))
            elif entry.lower().endswith(".md"):
                markdown_files.append(full_path)
        return markdown_files

    # --- Scheduling ---

    def start_periodic_refresh(self) -> None:
        """Refresh every ``refresh_interval_min`` minutes. Needs a running loop."""
        if self._refresh_task is not None and not self._refresh_task.done():
            logger.warning("periodic_refresh_already_running")
            return
        interval_seconds = self.config.refresh_interval_min * 60
        self._refresh_task = asyncio.get_running_loop().create_task(self._periodic_refresh(interval_seconds))
        logger.info("periodic_refresh_scheduled", interval_min=self.config.refresh_interval_min)

    async def _periodic_refresh(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.refresh_cache()

    def stop_periodic_refresh(self) -> None:
        if self._refresh_task is None:
            logger.info("periodic_refresh_not_running")
            return
        self._refresh_task.cancel()
        self._refresh_task = None
        logger.info("periodic_refresh_stopped")

    @property
    def is_refresh_scheduled(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def dispose(self) -> None:
        """Stop refreshing and drop everything; the cache becomes unready."""
        self.stop_periodic_refresh()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._content.clear()
        self._metadata.clear()
        self._diagnostics.clear()
        self._repair_reports.clear()
        self._is_ready = False
        self._is_building = False
        self.last_refresh_stats = None
        logger.info("vault_cache_disposed")
