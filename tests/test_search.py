"""
Tests for global search with cache fallback and the metadata-index queries.
"""

import asyncio

import pytest

from vault_mcp.cache import VaultCacheService
from vault_mcp.models import GlobalSearchParams
from vault_mcp.search import find_matches_in_content, find_notes_by_tag, global_search, vault_stats
from vault_mcp.utils import CacheNotReadyError, ServiceUnavailableError, ValidationError


class FakeSearchClient:
    """Live-search stand-in wrapping a FakeNoteSource."""

    def __init__(self, source, hits=None, error=None, delay=0.0):
        self.source = source
        self.hits = hits or []
        self.error = error
        self.delay = delay
        self.queries = []

    async def search_simple(self, query, context_length=100):
        self.queries.append((query, context_length))
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.hits

    async def get_metadata(self, path):
        return await self.source.get_metadata(path)


@pytest.fixture
async def ready_cache(fake_source, cache_config):
    cache = VaultCacheService(fake_source, cache_config)
    await cache.build_vault_cache()
    return cache


# ============== Tests for find_matches_in_content() ==============

class TestFindMatches:
    """Tests for in-content matching."""

    def test_plain_text_is_escaped(self):
        matches = find_matches_in_content("cost is $5 (approx.)", "$5 (", context_length=3)

        assert [m.context for m in matches] == ["is $5 (app"]

    def test_case_insensitive_by_default(self):
        assert len(find_matches_in_content("Ship it. ship IT.", "ship it")) == 2

    def test_case_sensitive(self):
        assert len(find_matches_in_content("Ship it. ship IT.", "ship", case_sensitive=True)) == 1

    def test_regex(self):
        matches = find_matches_in_content("a1 b22 c333", r"\d{2,}", use_regex=True, context_length=0)

        assert [m.context for m in matches] == ["22", "333"]

    def test_invalid_regex(self):
        with pytest.raises(ValidationError):
            find_matches_in_content("text", "(unclosed", use_regex=True)

    def test_context_is_clamped(self):
        matches = find_matches_in_content("needle", "needle", context_length=50)

        assert matches[0].context == "needle"


# ============== Tests for global_search() ==============

class TestGlobalSearch:
    """Tests for the API-first search with cache fallback."""

    async def test_uses_live_api_when_available(self, ready_cache, fake_source):
        client = FakeSearchClient(fake_source, hits=[
            {"filename": "Inbox.md", "matches": [{"context": "Quick capture"}]},
            {"filename": "Projects/Plan.md", "matches": [{"context": "a"}, {"context": "b"}]},
        ])

        response = await global_search(GlobalSearchParams(query="capture"), client, ready_cache)

        assert response.success
        assert "API search successful" in response.message
        assert [r.path for r in response.results] == ["Inbox.md", "Projects/Plan.md"]
        assert response.total_matches_found == 3
        assert response.results[0].modified_time == 20_000

    async def test_api_results_filtered_by_path_and_date(self, ready_cache, fake_source):
        client = FakeSearchClient(fake_source, hits=[
            {"filename": "Inbox.md", "matches": []},
            {"filename": "Projects/Plan.md", "matches": []},
            {"filename": "Projects/Archive/Old.md", "matches": []},
        ])
        params = GlobalSearchParams(query="x", search_in_path="Projects/", modified_since=6_000)

        response = await global_search(params, client, ready_cache)

        assert [r.path for r in response.results] == ["Projects/Plan.md"]

    async def test_api_stat_fetched_when_not_cached(self, fake_source):
        client = FakeSearchClient(fake_source, hits=[{"filename": "Inbox.md", "matches": []}])

        response = await global_search(GlobalSearchParams(query="x"), client, None)

        assert response.results[0].modified_time == 20_000

    async def test_falls_back_to_cache_on_api_error(self, ready_cache, fake_source):
        """A failing API search is answered from the cache."""
        client = FakeSearchClient(fake_source, error=ServiceUnavailableError("down"))

        response = await global_search(GlobalSearchParams(query="ship"), client, ready_cache)

        assert "Falling back to in-memory cache" in response.message
        assert [r.path for r in response.results] == ["Projects/Plan.md"]
        assert response.results[0].filename == "Plan.md"
        assert response.total_matches_found == 1

    async def test_falls_back_on_timeout(self, ready_cache, fake_source):
        client = FakeSearchClient(fake_source, hits=[{"filename": "Inbox.md", "matches": []}], delay=1)

        response = await global_search(GlobalSearchParams(query="wrote"), client, ready_cache, api_timeout_ms=10)

        assert "API search failed or timed out" in response.message
        assert [r.path for r in response.results] == ["Daily/2024-01-15.md"]

    async def test_searches_cache_without_live_search(self, ready_cache, fake_source):
        response = await global_search(GlobalSearchParams(query="#todo"), fake_source, ready_cache)

        assert [r.path for r in response.results] == ["Inbox.md"]

    async def test_cache_not_ready_raises(self, fake_source, cache_config):
        cache = VaultCacheService(fake_source, cache_config)
        client = FakeSearchClient(fake_source, error=ServiceUnavailableError("down"))

        with pytest.raises(CacheNotReadyError):
            await global_search(GlobalSearchParams(query="x"), client, cache)

    async def test_results_sorted_newest_first_and_paginated(self, ready_cache, fake_source):
        params = GlobalSearchParams(query="e", page_size=2, page=2)

        response = await global_search(params, fake_source, ready_cache)

        assert response.total_files_found == 4
        assert response.total_pages == 2
        assert response.current_page == 2
        assert [r.path for r in response.results] == ["Projects/Plan.md", "Projects/Archive/Old.md"]
        assert response.also_found_in_files == ["Inbox.md", "2024-01-15.md"]

    async def test_matches_per_file_are_capped(self, ready_cache, fake_source):
        params = GlobalSearchParams(query="t", max_matches_per_file=1)

        response = await global_search(params, fake_source, ready_cache)

        assert all(len(r.matches) == 1 for r in response.results)

    async def test_unreadable_note_is_skipped(self, ready_cache, fake_source):
        fake_source.fail[("get_raw_content", "Inbox.md")] = ServiceUnavailableError("down")

        response = await global_search(GlobalSearchParams(query="quick"), fake_source, ready_cache)

        assert response.results == []
        assert response.total_pages == 0


# ============== Tests for index queries ==============

class TestIndexQueries:
    """Tests for tag lookup and vault statistics."""

    async def test_find_notes_by_tag(self, ready_cache):
        results = find_notes_by_tag(ready_cache, "#Work")

        assert [r["path"] for r in results] == ["Projects/Plan.md"]
        assert results[0]["title"] == "Plan"

    async def test_find_notes_by_parent_tag(self, ready_cache, fake_source):
        fake_source.set_file("Nested.md", "Body #area/home\n", 1_000)
        await ready_cache.update_cache_for_file("Nested.md")

        assert [r["path"] for r in find_notes_by_tag(ready_cache, "area")] == ["Nested.md"]
        assert find_notes_by_tag(ready_cache, "are") == []

    async def test_empty_tag(self, ready_cache):
        assert find_notes_by_tag(ready_cache, "#") == []

    async def test_vault_stats(self, ready_cache):
        stats = vault_stats(ready_cache, recent_count=2)

        assert stats["total_notes"] == 4
        assert stats["by_folder"] == {"Projects": 2, "root": 1, "Daily": 1}
        assert stats["tags"]["todo"] == 1
        assert [n["path"] for n in stats["recent_notes"]] == ["Inbox.md", "Daily/2024-01-15.md"]
