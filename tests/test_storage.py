"""
Tests for the storage tiers and the async helpers behind the refresh pass.
"""

import asyncio

import pytest

from conftest import unavailable
from vault_mcp.cache import ContentCache, DiagnosticsLog, MetadataIndex, coerce_stat
from vault_mcp.models import IssueKind, NoteMetadata, NoteStat
from vault_mcp.utils import (
    NoteSourceError,
    basename_no_ext,
    join_vault_path,
    retry_with_delay,
    run_limited,
    to_posix,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_metadata(path: str) -> NoteMetadata:
    return NoteMetadata(path=path, basename=basename_no_ext(path), stat=NoteStat(mtime=1, ctime=1))


# ============== ContentCache ==============

class TestContentCache:
    """Tests for the LRU + TTL content cache."""

    def test_get_missing_returns_none(self):
        cache = ContentCache(max_items=2, ttl_seconds=10)

        assert cache.get("a.md") is None

    def test_evicts_least_recently_used(self):
        """Inserting past max_items evicts the least recently accessed entry."""
        cache = ContentCache(max_items=2, ttl_seconds=10)
        cache.set("a.md", "A")
        cache.set("b.md", "B")
        cache.get("a.md")

        cache.set("c.md", "C")

        assert len(cache) == 2
        assert cache.get("b.md") is None
        assert cache.get("a.md") == "A"
        assert cache.get("c.md") == "C"

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = ContentCache(max_items=10, ttl_seconds=5, clock=clock)
        cache.set("a.md", "A")

        clock.now = 5.5

        assert cache.get("a.md") is None
        assert len(cache) == 0

    def test_ttl_slides_on_access(self):
        """Each hit pushes the expiry out by the full TTL."""
        clock = FakeClock()
        cache = ContentCache(max_items=10, ttl_seconds=5, clock=clock)
        cache.set("a.md", "A")

        clock.now = 4
        assert cache.get("a.md") == "A"
        clock.now = 8
        assert cache.get("a.md") == "A"
        clock.now = 13.5
        assert cache.get("a.md") is None

    def test_contains_respects_ttl(self):
        clock = FakeClock()
        cache = ContentCache(max_items=10, ttl_seconds=5, clock=clock)
        cache.set("a.md", "A")

        assert "a.md" in cache
        clock.now = 6
        assert "a.md" not in cache

    def test_delete_and_clear(self):
        cache = ContentCache(max_items=10, ttl_seconds=5)
        cache.set("a.md", "A")
        cache.set("b.md", "B")

        cache.delete("a.md")
        cache.delete("missing.md")
        assert cache.get("a.md") is None

        cache.clear()
        assert len(cache) == 0

    async def test_get_or_fetch_only_fetches_on_miss(self):
        cache = ContentCache(max_items=10, ttl_seconds=5)
        calls = []

        async def fetch():
            calls.append(1)
            return "fetched"

        assert await cache.get_or_fetch("a.md", fetch) == "fetched"
        assert await cache.get_or_fetch("a.md", fetch) == "fetched"
        assert len(calls) == 1

    async def test_get_or_fetch_propagates_errors(self):
        cache = ContentCache(max_items=10, ttl_seconds=5)

        async def fetch():
            raise NoteSourceError("down")

        with pytest.raises(NoteSourceError):
            await cache.get_or_fetch("a.md", fetch)
        assert "a.md" not in cache


# ============== MetadataIndex / DiagnosticsLog ==============

class TestMetadataIndex:
    """Tests for the metadata index."""

    def test_set_get_delete(self):
        index = MetadataIndex()
        index.set("a.md", make_metadata("a.md"))

        assert "a.md" in index
        assert index.get("a.md").basename == "a"

        index.delete("a.md")
        index.delete("a.md")
        assert index.get("a.md") is None
        assert len(index) == 0

    def test_snapshot_does_not_follow_later_changes(self):
        index = MetadataIndex()
        index.set("a.md", make_metadata("a.md"))

        snapshot = index.get_all()
        index.set("b.md", make_metadata("b.md"))

        assert list(snapshot) == ["a.md"]
        with pytest.raises(TypeError):
            snapshot["c.md"] = make_metadata("c.md")

    def test_snapshot_values_are_copies(self):
        index = MetadataIndex()
        index.set("a.md", make_metadata("a.md"))

        snapshot = index.get_all()
        snapshot["a.md"].tags.append("injected")
        snapshot["a.md"].frontmatter["extra"] = True

        assert "injected" not in index.get("a.md").tags
        assert "extra" not in index.get("a.md").frontmatter


class TestDiagnosticsLog:
    """Tests for the per-file issue log."""

    def test_records_issues_in_order(self):
        log = DiagnosticsLog()
        log.record("a.md", IssueKind.MISSING_STAT)
        log.record("/a.md", IssueKind.FETCH_ERROR, "timeout")

        issues = log.snapshot()["a.md"]
        assert [i.kind for i in issues] == [IssueKind.MISSING_STAT, IssueKind.FETCH_ERROR]
        assert issues[1].detail == "timeout"
        assert len(log) == 1

    def test_clear(self):
        log = DiagnosticsLog()
        log.record("a.md", IssueKind.PARSE_ERROR)

        log.clear()

        assert log.snapshot() == {}


class TestCoerceStat:
    def test_valid_stat(self):
        assert coerce_stat({"mtime": 2.0, "ctime": 1, "size": 3}) == NoteStat(mtime=2, ctime=1, size=3)

    def test_missing_size_defaults_to_zero(self):
        assert coerce_stat({"mtime": 2, "ctime": 1}).size == 0

    @pytest.mark.parametrize("value", [None, {}, {"mtime": 1}, {"mtime": float("nan"), "ctime": 1}, {"mtime": "1", "ctime": 1}])
    def test_invalid_stat(self, value):
        assert coerce_stat(value) is None


# ============== Path helpers ==============

class TestPathHelpers:
    def test_to_posix(self):
        assert to_posix("\\Folder\\Note.md") == "Folder/Note.md"
        assert to_posix("/Folder/") == "Folder"
        assert to_posix("") == ""

    def test_basename_no_ext(self):
        assert basename_no_ext("Folder/My.Note.md") == "My.Note"
        assert basename_no_ext(".hidden") == ".hidden"

    def test_join_vault_path(self):
        assert join_vault_path("", "Note.md") == "Note.md"
        assert join_vault_path("Folder/", "Sub/") == "Folder/Sub"


# ============== Async helpers ==============

class TestRunLimited:
    """Tests for the bounded-concurrency runner."""

    async def test_respects_limit(self):
        in_flight = 0
        peak = 0
        done = []

        async def worker(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            done.append(item)

        await run_limited(3, range(20), worker)

        assert peak == 3
        assert sorted(done) == list(range(20))

    async def test_failures_do_not_stop_other_items(self):
        done = []

        async def worker(item):
            if item % 2:
                raise RuntimeError(f"item {item}")
            done.append(item)

        await run_limited(2, range(6), worker)

        assert sorted(done) == [0, 2, 4]

    async def test_empty_items(self):
        async def worker(item):
            raise AssertionError("not called")

        await run_limited(4, [], worker)


class TestRetryWithDelay:
    """Tests for the transient-failure retry helper."""

    async def test_returns_after_transient_failures(self):
        attempts = []

        async def fn():
            attempts.append(1)
            if len(attempts) < 3:
                raise unavailable()
            return "ok"

        result = await retry_with_delay(fn, operation="test", max_retries=2, delay_seconds=0)

        assert result == "ok"
        assert len(attempts) == 3

    async def test_raises_after_retries_exhausted(self):
        attempts = []

        async def fn():
            attempts.append(1)
            raise unavailable()

        with pytest.raises(NoteSourceError):
            await retry_with_delay(fn, operation="test", max_retries=2, delay_seconds=0)
        assert len(attempts) == 3

    async def test_non_transient_not_retried(self):
        attempts = []

        async def fn():
            attempts.append(1)
            raise ValueError("bad shape")

        with pytest.raises(ValueError):
            await retry_with_delay(fn, operation="test", max_retries=5, delay_seconds=0)
        assert len(attempts) == 1
