"""
Search and query functions for the Obsidian Vault MCP Server.

Global search asks the live API first and falls back to the vault cache
when the API fails or is too slow. Tag and statistics queries read the
metadata index only.
"""

import asyncio
import math
import posixpath
import re
from typing import Any

import structlog

from .cache import VaultCacheService
from .models import GlobalSearchParams, GlobalSearchResponse, GlobalSearchResult, MatchContext
from .utils import CacheNotReadyError, ValidationError, to_posix

logger = structlog.get_logger(__name__)


def find_matches_in_content(
    content: str,
    query: str,
    use_regex: bool = False,
    case_sensitive: bool = False,
    context_length: int = 100,
) -> list[MatchContext]:
    """Return a context snippet around every match of ``query`` in ``content``.

    Raises:
        ValidationError: If ``use_regex`` is set and the pattern does not compile
    """
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        pattern = re.compile(query if use_regex else re.escape(query), flags)
    except re.error as e:
        raise ValidationError(f"Invalid regex pattern: {query}") from e

    matches: list[MatchContext] = []
    for match in pattern.finditer(content):
        start = max(0, match.start() - context_length)
        end = min(len(content), match.end() + context_length)
        matches.append(MatchContext(context=content[start:end]))
    return matches


def _path_prefix(search_in_path: str | None) -> str:
    if not search_in_path:
        return ""
    clean = to_posix(posixpath.normpath(search_in_path.replace("\\", "/")))
    return "" if clean in ("", ".") else clean + "/"


def _in_window(mtime: int, params: GlobalSearchParams) -> bool:
    if params.modified_since is not None and mtime < params.modified_since:
        return False
    if params.modified_until is not None and mtime > params.modified_until:
        return False
    return True


async def _search_api(client: Any, params: GlobalSearchParams, cache: VaultCacheService | None) -> list[GlobalSearchResult]:
    hits = await client.search_simple(params.query, params.context_length)
    prefix = _path_prefix(params.search_in_path)
    results: list[GlobalSearchResult] = []

    for hit in hits:
        file_path = to_posix(hit.get("filename") or hit.get("path") or "")
        if not file_path or (prefix and not file_path.startswith(prefix)):
            continue

        metadata = cache.get_metadata(file_path) if cache is not None else None
        if metadata is not None:
            mtime, ctime = metadata.stat.mtime, metadata.stat.ctime
        else:
            stat = await client.get_metadata(file_path)
            mtime, ctime = (stat.mtime, stat.ctime) if stat else (0, 0)

        if not _in_window(mtime, params):
            continue
        matches = [MatchContext(context=m.get("context", "")) for m in hit.get("matches") or []]
        results.append(GlobalSearchResult(
            path=file_path,
            filename=posixpath.basename(file_path),
            matches=matches[:params.max_matches_per_file],
            modified_time=mtime,
            created_time=ctime,
        ))
    return results


async def _search_cache(cache: VaultCacheService, params: GlobalSearchParams) -> list[GlobalSearchResult]:
    prefix = _path_prefix(params.search_in_path)
    results: list[GlobalSearchResult] = []

    for file_path, metadata in cache.get_all_metadata().items():
        if prefix and not file_path.startswith(prefix):
            continue
        if not _in_window(metadata.stat.mtime, params):
            continue
        try:
            content = await cache.get_content(file_path)
        except Exception as e:
            logger.warning("cache_search_content_unavailable", path=file_path, error=str(e))
            continue

        matches = find_matches_in_content(
            content, params.query, params.use_regex, params.case_sensitive, params.context_length
        )
        if not matches:
            continue
        results.append(GlobalSearchResult(
            path=file_path,
            filename=posixpath.basename(file_path),
            matches=matches[:params.max_matches_per_file],
            modified_time=metadata.stat.mtime,
            created_time=metadata.stat.ctime,
        ))
    return results


async def global_search(
    params: GlobalSearchParams,
    client: Any | None,
    cache: VaultCacheService | None,
    api_timeout_ms: int = 30_000,
) -> GlobalSearchResponse:
    """Search the whole vault, preferring the live API.

    The API search gets ``api_timeout_ms`` to answer. On failure or timeout
    (or when ``client`` has no live search) the cache is scanned instead.

    Raises:
        CacheNotReadyError: If the API path failed and the cache is not ready
        ValidationError: If the query is an invalid regex in the fallback path
    """
    results: list[GlobalSearchResult] = []
    total_matches = 0
    strategy = ""

    api_failed = True
    if client is not None and hasattr(client, "search_simple"):
        strategy = "Attempting live API search... "
        try:
            results = await asyncio.wait_for(_search_api(client, params, cache), timeout=api_timeout_ms / 1000)
            total_matches = sum(len(r.matches) for r in results)
            strategy += f"API search successful, returned {len(results)} files. "
            api_failed = False
        except Exception as e:
            logger.warning("api_search_failed", query=params.query, error=str(e) or type(e).__name__)
            strategy += "API search failed or timed out. "

    if api_failed:
        if cache is None or not cache.is_ready:
            raise CacheNotReadyError("Live API search failed and the cache is not available or ready.")
        strategy += "Falling back to in-memory cache. "
        results = await _search_cache(cache, params)
        total_matches = sum(len(r.matches) for r in results)

    results.sort(key=lambda r: r.modified_time, reverse=True)

    total_files = len(results)
    total_pages = math.ceil(total_files / params.page_size)
    start = (params.page - 1) * params.page_size
    page_results = results[start:start + params.page_size]

    also_found = None
    if total_pages > 1:
        on_page = {r.path for r in page_results}
        also_found = list(dict.fromkeys(r.filename for r in results if r.path not in on_page))

    logger.debug("global_search_completed", query=params.query, files=total_files, fallback=api_failed)
    return GlobalSearchResponse(
        message=(
            f"{strategy}Found {total_matches} matches across {total_files} files. "
            f"Returning page {params.page} of {total_pages}."
        ),
        results=page_results,
        total_files_found=total_files,
        total_matches_found=total_matches,
        current_page=params.page,
        page_size=params.page_size,
        total_pages=total_pages,
        also_found_in_files=also_found,
    )


def find_notes_by_tag(cache: VaultCacheService, tag: str) -> list[dict]:
    """Find all indexed notes carrying ``tag`` (with or without ``#``)."""
    wanted = tag.strip().lstrip("#").lower()
    if not wanted:
        return []

    results: list[dict] = []
    for path, metadata in cache.get_all_metadata().items():
        if any(t.lower() == wanted or t.lower().startswith(wanted + "/") for t in metadata.tags):
            results.append({
                "title": metadata.basename,
                "path": path,
                "tags": list(metadata.tags),
            })
    results.sort(key=lambda r: r["path"])
    return results


def vault_stats(cache: VaultCacheService, recent_count: int = 10) -> dict:
    """Get statistics about the vault from the metadata index."""
    stats: dict = {
        "total_notes": 0,
        "total_bytes": 0,
        "by_folder": {},
        "tags": {},
        "recent_notes": [],
    }

    notes = list(cache.get_all_metadata().values())
    for metadata in notes:
        stats["total_notes"] += 1
        stats["total_bytes"] += metadata.stat.size

        folder = metadata.path.split("/", 1)[0] if "/" in metadata.path else "root"
        stats["by_folder"][folder] = stats["by_folder"].get(folder, 0) + 1

        for tag in metadata.tags:
            stats["tags"][tag] = stats["tags"].get(tag, 0) + 1

    notes.sort(key=lambda m: m.stat.mtime, reverse=True)
    stats["recent_notes"] = [
        {"title": m.basename, "path": m.path, "mtime": m.stat.mtime}
        for m in notes[:recent_count]
    ]

    # Sort tags by count
    stats["top_tags"] = sorted(stats["tags"].items(), key=lambda x: x[1], reverse=True)[:20]

    return stats
