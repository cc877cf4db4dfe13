"""
MCP Tools module for the Obsidian Vault MCP Server.

Contains the MCP tool handlers (list_tools and call_tool). The handlers
read the note source and the vault cache from a ToolContext bound by main.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from mcp.server import Server
from mcp.types import (
    Resource,
    TextContent,
    Tool,
)

from .cache import VaultCacheService
from .markdown import extract_wikilinks
from .models import GlobalSearchParams, WriteResult
from .search import find_notes_by_tag, global_search, vault_stats
from .utils import VaultError, to_posix

logger = structlog.get_logger(__name__)

# Initialize server
server = Server("obsidian-vault")


@dataclass
class ToolContext:
    """Collaborators the tool handlers work against."""

    source: Any
    cache: VaultCacheService | None = None
    api_search_timeout_ms: int = 30_000


_context: ToolContext | None = None


def bind_context(context: ToolContext | None) -> None:
    global _context
    _context = context


def get_context() -> ToolContext:
    if _context is None:
        raise VaultError("Tool context is not bound")
    return _context


def parse_date_ms(value: str | None) -> int | None:
    """Parse an ISO date or datetime into epoch milliseconds (UTC when naive)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as e:
        raise VaultError(f"Invalid date: '{value}' (expected ISO format, e.g. 2024-01-15)") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _text(output: str) -> list[TextContent]:
    return [TextContent(type="text", text=output)]


def _path_argument(arguments: dict[str, Any]) -> str:
    path = to_posix(arguments.get("path", "") or "")
    if not path:
        raise VaultError("path is required")
    return path


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="obsidian_global_search",
            description="Search the whole vault for text or a regex. Uses the live API and falls back "
                       "to the in-memory cache when the API fails or times out. Results are sorted by "
                       "modification time, newest first, and paginated.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query (text or regex pattern)"
                    },
                    "search_in_path": {
                        "type": "string",
                        "description": "Optional vault-relative folder to search within (e.g., 'Notes/Projects')"
                    },
                    "context_length": {
                        "type": "integer",
                        "description": "Characters of context around matches (default: 100)",
                        "default": 100
                    },
                    "modified_since": {
                        "type": "string",
                        "description": "Only files modified since this ISO date/time (e.g., '2024-01-15')"
                    },
                    "modified_until": {
                        "type": "string",
                        "description": "Only files modified until this ISO date/time"
                    },
                    "use_regex": {
                        "type": "boolean",
                        "description": "Treat query as a regular expression (default: false)",
                        "default": False
                    },
                    "case_sensitive": {
                        "type": "boolean",
                        "description": "Case-sensitive matching (default: false)",
                        "default": False
                    },
                    "page_size": {
                        "type": "integer",
                        "description": "Result files per page (default: 50)",
                        "default": 50
                    },
                    "page": {
                        "type": "integer",
                        "description": "Page number (default: 1)",
                        "default": 1
                    },
                    "max_matches_per_file": {
                        "type": "integer",
                        "description": "Maximum matches shown per file (default: 5)",
                        "default": 5
                    }
                },
                "required": ["query"]
            }
        ),
        Tool(
            name="obsidian_read_note",
            description="Read the content of a note, with its cached metadata when available.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Vault-relative path of the note (e.g., 'Projects/Plan.md')"
                    }
                },
                "required": ["path"]
            }
        ),
        Tool(
            name="obsidian_list_tags",
            description="List tags with their note counts, or the notes carrying one tag.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tag": {
                        "type": "string",
                        "description": "Optional tag (with or without #). Without it, all tags are listed."
                    }
                }
            }
        ),
        Tool(
            name="obsidian_update_note",
            description="Replace the whole content of a note, creating it if needed.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Vault-relative path of the note"
                    },
                    "content": {
                        "type": "string",
                        "description": "New Markdown content"
                    }
                },
                "required": ["path", "content"]
            }
        ),
        Tool(
            name="obsidian_append_note",
            description="Append Markdown to the end of a note, creating it if needed.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Vault-relative path of the note"
                    },
                    "content": {
                        "type": "string",
                        "description": "Markdown to append"
                    }
                },
                "required": ["path", "content"]
            }
        ),
        Tool(
            name="obsidian_delete_note",
            description="Delete a note from the vault.",
            inputSchema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Vault-relative path of the note"
                    }
                },
                "required": ["path"]
            }
        ),
        Tool(
            name="obsidian_cache_status",
            description="Report the vault cache state, sizes, last refresh statistics and data-quality issues.",
            inputSchema={
                "type": "object",
                "properties": {
                    "max_issues": {
                        "type": "integer",
                        "description": "Maximum number of files with issues to list (default: 20)",
                        "default": 20
                    }
                }
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    try:
        return await _dispatch(name, arguments or {})
    except VaultError as e:
        logger.warning("tool_failed", tool=name, error=str(e))
        return _text(f"Error: {e}")


async def _dispatch(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    context = get_context()
    cache = context.cache

    if name == "obsidian_global_search":
        try:
            params = GlobalSearchParams(
                query=arguments.get("query", ""),
                search_in_path=arguments.get("search_in_path"),
                context_length=arguments.get("context_length", 100),
                modified_since=parse_date_ms(arguments.get("modified_since")),
                modified_until=parse_date_ms(arguments.get("modified_until")),
                use_regex=arguments.get("use_regex", False),
                case_sensitive=arguments.get("case_sensitive", False),
                page_size=arguments.get("page_size", 50),
                page=arguments.get("page", 1),
                max_matches_per_file=arguments.get("max_matches_per_file", 5),
            )
        except ValueError as e:
            return _text(f"Error: invalid search arguments: {e}")

        response = await global_search(params, context.source, cache, context.api_search_timeout_ms)
        return _text(response.model_dump_json(indent=2))

    elif name == "obsidian_read_note":
        path = _path_argument(arguments)
        if cache is not None and cache.is_ready:
            content = await cache.get_content(path)
            metadata = cache.get_metadata(path)
        else:
            content = await context.source.get_raw_content(path)
            metadata = None

        output = f"# {path}\n\n"
        if metadata is not None:
            output += f"**Tags:** {', '.join(metadata.tags) or 'none'}\n"
            output += f"**Modified:** {datetime.fromtimestamp(metadata.stat.mtime / 1000, timezone.utc).isoformat()}\n"
        links = extract_wikilinks(content)
        if links:
            output += f"**Links:** {', '.join(links[:10])}\n"
        output += "\n"
        output += "---\n\n"
        output += content
        return _text(output)

    elif name == "obsidian_list_tags":
        if cache is None or not cache.is_ready:
            return _text("Error: the vault cache is not ready yet; try again shortly")
        tag = arguments.get("tag")
        if tag:
            results = find_notes_by_tag(cache, tag)
            if not results:
                return _text(f"No notes found with tag: '{tag}'")
            output = f"Found {len(results)} notes with tag '#{tag.lstrip('#')}':\n\n"
            for r in results:
                output += f"- **{r['title']}** ({r['path']})\n"
            return _text(output)

        stats = vault_stats(cache)
        if not stats["tags"]:
            return _text("No tags found in the vault")
        output = f"Found {len(stats['tags'])} tags across {stats['total_notes']} notes:\n\n"
        for tag_name, count in sorted(stats["tags"].items(), key=lambda x: (-x[1], x[0])):
            output += f"- #{tag_name}: {count}\n"
        return _text(output)

    elif name in ("obsidian_update_note", "obsidian_append_note"):
        path = _path_argument(arguments)
        content = arguments.get("content")
        if not isinstance(content, str):
            return _text("Error: content is required")

        if name == "obsidian_update_note":
            await context.source.update_content(path, content)
        else:
            await context.source.append_content(path, content)
        return _text(WriteResult(success=True, path=path).model_dump_json(indent=2))

    elif name == "obsidian_delete_note":
        path = _path_argument(arguments)
        await context.source.delete_note(path)
        return _text(WriteResult(success=True, path=path).model_dump_json(indent=2))

    elif name == "obsidian_cache_status":
        return _text(json.dumps(cache_status(cache, arguments.get("max_issues", 20)), indent=2))

    return _text(f"Unknown tool: {name}")


def cache_status(cache: VaultCacheService | None, max_issues: int = 20) -> dict:
    """Summarize the cache for the status tool and resource."""
    if cache is None:
        return {"enabled": False}

    diagnostics = cache.get_diagnostics()
    stats = cache.last_refresh_stats
    return {
        "enabled": True,
        "state": cache.state.value,
        "is_ready": cache.is_ready,
        "is_building": cache.is_building,
        "note_count": len(cache.get_all_metadata()),
        "last_refresh": stats.model_dump() if stats else None,
        "files_with_issues": len(diagnostics),
        "issues": {
            path: [issue.model_dump(mode="json") for issue in issues]
            for path, issues in list(diagnostics.items())[:max_issues]
        },
        "repairs": [
            {
                "path": report.plan.file_path,
                "actions": report.plan.describe(),
                "applied": report.applied,
                "dry_run": report.dry_run,
                "error": report.error,
            }
            for report in cache.get_repair_reports()
        ],
    }


# ============== Resources ==============

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    return [
        Resource(
            uri="vault://stats",
            name="Vault Statistics",
            description="Note, folder and tag counts from the vault cache",
            mimeType="application/json"
        ),
        Resource(
            uri="vault://cache-status",
            name="Vault Cache Status",
            description="State and diagnostics of the vault cache",
            mimeType="application/json"
        ),
    ]


@server.read_resource()
async def read_resource(uri: str) -> str:
    """Read a resource."""
    cache = get_context().cache
    uri = str(uri)

    if uri == "vault://stats":
        if cache is None or not cache.is_ready:
            return json.dumps({"error": "Vault cache is not ready"})
        return json.dumps(vault_stats(cache), indent=2)

    if uri == "vault://cache-status":
        return json.dumps(cache_status(cache), indent=2)

    return json.dumps({"error": f"Unknown resource: {uri}"})
