"""
Pytest configuration and fixtures for obsidian-vault-mcp tests.
"""

import asyncio
from pathlib import Path

import pytest

from vault_mcp.config import CacheConfig
from vault_mcp.markdown import extract_inline_tags, frontmatter_of, normalize_tags, parse_frontmatter
from vault_mcp.models import NoteStat
from vault_mcp.utils import NotFoundError, ServiceUnavailableError, basename_no_ext, to_posix


class FakeNoteSource:
    """In-memory note source with call counting and failure injection.

    ``files`` maps vault path to (content, mtime). Directories are derived
    from the paths. ``fail`` maps (operation, path) to an exception raised
    on every call, or to a list of exceptions raised once each in order.
    """

    def __init__(self, files: dict[str, tuple[str, int]] | None = None, delay: float = 0.0):
        self.files: dict[str, tuple[str, int]] = dict(files or {})
        self.delay = delay
        self.fail: dict[tuple[str, str], object] = {}
        self.calls: list[tuple[str, str]] = []
        self.writes: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def set_file(self, path: str, content: str, mtime: int) -> None:
        self.files[path] = (content, mtime)

    async def _enter(self, operation: str, path: str) -> None:
        self.calls.append((operation, path))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        failure = self.fail.get((operation, path))
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

    def count(self, operation: str, path: str | None = None) -> int:
        return sum(1 for op, p in self.calls if op == operation and (path is None or p == path))

    async def list_directory(self, path: str) -> list[str]:
        await self._enter("list_directory", path)
        prefix = to_posix(path) + "/" if to_posix(path) else ""
        entries: list[str] = []
        for file_path in self.files:
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            entry = rest.split("/", 1)[0] + "/" if "/" in rest else rest
            if entry not in entries:
                entries.append(entry)
        if prefix and not entries:
            raise NotFoundError(f"Directory not found: {path}", operation="list_directory", path=path)
        return entries

    async def get_metadata(self, path: str) -> NoteStat | None:
        await self._enter("get_metadata", path)
        if path not in self.files:
            return None
        content, mtime = self.files[path]
        return NoteStat(mtime=mtime, ctime=1_000, size=len(content.encode("utf-8")))

    async def get_structured_note(self, path: str) -> dict:
        await self._enter("get_structured_note", path)
        if path not in self.files:
            raise NotFoundError(f"Note not found: {path}", operation="get_structured_note", path=path)
        content, mtime = self.files[path]
        parsed = parse_frontmatter(content)
        frontmatter = frontmatter_of(parsed)
        return {
            "path": path,
            "basename": basename_no_ext(path),
            "content": content,
            "frontmatter": frontmatter,
            "tags": normalize_tags(frontmatter.get("tags"), lowercase=False)
            or extract_inline_tags(parsed.body, lowercase=False),
            "stat": {"mtime": mtime, "ctime": 1_000, "size": len(content.encode("utf-8"))},
        }

    async def get_raw_content(self, path: str) -> str:
        await self._enter("get_raw_content", path)
        if path not in self.files:
            raise NotFoundError(f"Note not found: {path}", operation="get_raw_content", path=path)
        return self.files[path][0]

    async def rewrite(self, path: str, content: str) -> None:
        await self._enter("rewrite", path)
        _, mtime = self.files.get(path, ("", 0))
        self.files[path] = (content, mtime + 1)
        self.writes.append((path, content))


def unavailable(path: str = "") -> ServiceUnavailableError:
    return ServiceUnavailableError("Service unavailable", operation="test", path=path)


@pytest.fixture
def fake_source() -> FakeNoteSource:
    """A source holding a small vault of well-formed and malformed notes."""
    return FakeNoteSource({
        "Projects/Plan.md": ("---\ntitle: Plan\ntags:\n  - Work\n  - work\n---\n\nShip it.\n", 10_000),
        "Projects/Archive/Old.md": ("---\ntitle: Old\n---\n\nArchived #legacy note.\n", 5_000),
        "Inbox.md": ("Quick capture #todo and #Idea\n", 20_000),
        "Daily/2024-01-15.md": ("---\ntags: daily, Journal\n---\n\nWrote tests.\n", 15_000),
    })


@pytest.fixture
def cache_config() -> CacheConfig:
    """Cache config with no retry delays so failure tests run fast."""
    return CacheConfig(
        content_max_items=50,
        content_ttl_seconds=60,
        refresh_concurrency=4,
        retry_delay_seconds=0,
        update_retry_delay_seconds=0,
    )


@pytest.fixture
def temp_vault(tmp_path: Path):
    """Create a temporary vault directory with test notes."""
    vault_path = tmp_path / "vault"
    vault_path.mkdir()

    (vault_path / "Concepts").mkdir()
    (vault_path / ".obsidian").mkdir()

    (vault_path / "Concepts" / "Python.md").write_text("""---
title: Python
tags:
  - programming
  - language
---

# Python

Python is a programming language. See [[JavaScript|JS]].
""", encoding="utf-8")

    (vault_path / "no_frontmatter.md").write_text("""# Simple Note

This note has no YAML frontmatter. #draft
""", encoding="utf-8")

    (vault_path / "invalid_frontmatter.md").write_text("""---
title: [invalid yaml
---

This note has invalid YAML frontmatter.
""", encoding="utf-8")

    (vault_path / ".obsidian" / "workspace.md").write_text("hidden", encoding="utf-8")

    yield vault_path
