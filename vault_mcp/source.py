"""
Note sources for the Obsidian Vault MCP Server.

A note source is where the cache reads the vault from:
- ObsidianRestClient talks to the Obsidian Local REST API plugin over HTTP.
- LocalVaultSource reads a vault directory straight from disk.

Both report failures as NotFoundError (absent file or directory),
ServiceUnavailableError (transient, retried by the cache) or
NoteSourceError (anything else).
"""

import json
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import aiofiles
import httpx
import structlog

from .markdown import extract_inline_tags, frontmatter_of, normalize_tags, parse_frontmatter
from .models import NoteStat
from .repair import RepairWriter
from .utils import (
    NoteSourceError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
    basename_no_ext,
    to_posix,
)

logger = structlog.get_logger(__name__)

NOTE_JSON_MEDIA_TYPE = "application/vnd.olrapi.note+json"
MARKDOWN_MEDIA_TYPE = "text/markdown"


class NoteSource(Protocol):
    """Read interface the vault cache consumes."""

    async def list_directory(self, path: str) -> list[str]:
        """Entry names under ``path``; directories end with ``/``."""
        ...

    async def get_metadata(self, path: str) -> NoteStat | None:
        """Lightweight stat, or None when the file is unknown."""
        ...

    async def get_structured_note(self, path: str) -> dict[str, Any]:
        """Note with ``path``, ``content``, ``frontmatter``, ``tags`` and ``stat``."""
        ...

    async def get_raw_content(self, path: str) -> str:
        ...


WriteHook = Callable[[str], None]


class WriteHookMixin:
    """Calls a registered hook with the path of every successful write."""

    _write_hook: WriteHook | None = None

    def set_write_hook(self, hook: WriteHook | None) -> None:
        self._write_hook = hook

    def _after_write(self, path: str) -> None:
        if self._write_hook is None:
            return
        try:
            self._write_hook(to_posix(path))
        except Exception as e:
            logger.error("write_hook_failed", path=path, error=str(e))


def encode_vault_path(path: str) -> str:
    """URL-encode each segment of a vault path."""
    clean = to_posix(path.strip())
    if not clean:
        return ""
    return "/".join(quote(segment, safe="") for segment in clean.split("/"))


def _header_ms(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None


class ObsidianRestClient(WriteHookMixin):
    """Async client for the Obsidian Local REST API plugin."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        verify_ssl: bool = False,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            verify=verify_ssl,
            timeout=timeout,
            transport=transport,
        )
        logger.info("rest_client_initialized", base_url=self.base_url, verify_ssl=verify_ssl)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, *, operation: str, path: str = "", **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ServiceUnavailableError(
                f"Timed out during {operation}", operation=operation, path=path
            ) from e
        except httpx.HTTPError as e:
            raise ServiceUnavailableError(
                f"Could not reach the Obsidian API during {operation}: {e}", operation=operation, path=path
            ) from e

        if response.status_code == 404:
            raise NotFoundError(f"Not found during {operation}: {path or url}", operation=operation, path=path)
        if response.status_code >= 500 or response.status_code == 429:
            logger.error("rest_api_error", operation=operation, path=path, status=response.status_code)
            raise ServiceUnavailableError(
                f"Obsidian API returned {response.status_code} during {operation}", operation=operation, path=path
            )
        if response.is_error:
            logger.error("rest_api_error", operation=operation, path=path, status=response.status_code)
            raise NoteSourceError(
                f"Obsidian API rejected {operation} with {response.status_code}", operation=operation, path=path
            )
        return response

    # ============== Reads ==============

    async def list_directory(self, path: str) -> list[str]:
        encoded = encode_vault_path(path)
        url = f"/vault/{encoded}/" if encoded else "/vault/"
        response = await self._request("GET", url, operation="list_directory", path=path)
        return response.json().get("files") or []

    async def get_metadata(self, path: str) -> NoteStat | None:
        try:
            response = await self._request(
                "HEAD", f"/vault/{encode_vault_path(path)}", operation="get_metadata", path=path
            )
        except NotFoundError:
            return None

        mtime = _header_ms(response.headers.get("x-obsidian-mtime"))
        if mtime is None:
            return None
        ctime = _header_ms(response.headers.get("x-obsidian-ctime"))
        size = response.headers.get("content-length", "0")
        return NoteStat(
            mtime=mtime,
            ctime=ctime if ctime is not None else mtime,
            size=int(size) if size.isdigit() else 0,
        )

    async def get_structured_note(self, path: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"/vault/{encode_vault_path(path)}",
            operation="get_structured_note",
            path=path,
            headers={"Accept": NOTE_JSON_MEDIA_TYPE},
        )
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError(f"Structured note for {path} is not JSON") from e

    async def get_raw_content(self, path: str) -> str:
        response = await self._request(
            "GET",
            f"/vault/{encode_vault_path(path)}",
            operation="get_raw_content",
            path=path,
            headers={"Accept": MARKDOWN_MEDIA_TYPE},
        )
        return response.text

    async def search_simple(self, query: str, context_length: int = 100) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            "/search/simple/",
            operation="search_simple",
            params={"query": query, "contextLength": context_length},
        )
        return response.json()

    # ============== Writes ==============

    async def update_content(self, path: str, content: str, *, notify: bool = True) -> None:
        await self._request(
            "PUT",
            f"/vault/{encode_vault_path(path)}",
            operation="update_content",
            path=path,
            headers={"Content-Type": MARKDOWN_MEDIA_TYPE},
            content=content.encode("utf-8"),
        )
        if notify:
            self._after_write(path)

    async def append_content(self, path: str, content: str, *, notify: bool = True) -> None:
        await self._request(
            "POST",
            f"/vault/{encode_vault_path(path)}",
            operation="append_content",
            path=path,
            headers={"Content-Type": MARKDOWN_MEDIA_TYPE},
            content=content.encode("utf-8"),
        )
        if notify:
            self._after_write(path)

    async def delete_note(self, path: str, *, notify: bool = True) -> None:
        await self._request("DELETE", f"/vault/{encode_vault_path(path)}", operation="delete_note", path=path)
        if notify:
            self._after_write(path)

    async def upsert_frontmatter(self, path: str, fields: dict[str, Any], *, notify: bool = True) -> None:
        """Replace (or create) each frontmatter field with a PATCH request."""
        for key, value in fields.items():
            await self._request(
                "PATCH",
                f"/vault/{encode_vault_path(path)}",
                operation="upsert_frontmatter",
                path=path,
                headers={
                    "Operation": "replace",
                    "Target-Type": "frontmatter",
                    "Target": quote(str(key), safe=""),
                    "Create-Target-If-Missing": "true",
                    "Content-Type": "application/json",
                },
                content=json.dumps(value, default=str).encode("utf-8"),
            )
        if notify:
            self._after_write(path)

    def repair_writer(self) -> RepairWriter:
        """Write capabilities for repairs; they skip the write hook."""
        return RepairWriter(
            rewrite=partial(self.update_content, notify=False),
            upsert_frontmatter=partial(self.upsert_frontmatter, notify=False),
        )


class LocalVaultSource(WriteHookMixin):
    """Note source reading a vault directory directly from disk.

    Hidden folders are skipped and paths may not escape the vault.
    """

    def __init__(self, vault_path: Path):
        self.vault_path = vault_path
        self._root = vault_path.resolve()

    def _resolve(self, path: str) -> Path:
        clean = to_posix(path)
        if ".." in clean.split("/"):
            raise ValidationError("Path traversal detected: '..' is not allowed")
        full_path = (self._root / clean).resolve() if clean else self._root
        try:
            full_path.relative_to(self._root)
        except ValueError:
            raise ValidationError(f"Path escapes vault directory: {path}")
        return full_path

    async def list_directory(self, path: str) -> list[str]:
        directory = self._resolve(path)
        if not directory.is_dir():
            raise NotFoundError(f"Directory not found: {path}", operation="list_directory", path=path)
        entries: list[str] = []
        for child in sorted(directory.iterdir()):
            if child.name.startswith("."):
                continue
            entries.append(f"{child.name}/" if child.is_dir() else child.name)
        return entries

    async def get_metadata(self, path: str) -> NoteStat | None:
        note_file = self._resolve(path)
        try:
            st = note_file.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ServiceUnavailableError(str(e), operation="get_metadata", path=path) from e
        return NoteStat(mtime=int(st.st_mtime * 1000), ctime=int(st.st_ctime * 1000), size=st.st_size)

    async def get_raw_content(self, path: str) -> str:
        note_file = self._resolve(path)
        try:
            async with aiofiles.open(note_file, encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Note not found: {path}", operation="get_raw_content", path=path) from e
        except (OSError, UnicodeDecodeError) as e:
            raise NoteSourceError(str(e), operation="get_raw_content", path=path) from e

    async def get_structured_note(self, path: str) -> dict[str, Any]:
        content = await self.get_raw_content(path)
        stat = await self.get_metadata(path)
        parsed = parse_frontmatter(content)
        frontmatter = frontmatter_of(parsed)
        tags = normalize_tags(frontmatter.get("tags"), lowercase=False)
        tags += [t for t in extract_inline_tags(parsed.body, lowercase=False) if t not in tags]
        return {
            "path": to_posix(path),
            "basename": basename_no_ext(path),
            "content": content,
            "frontmatter": frontmatter,
            "tags": tags,
            "stat": stat.model_dump() if stat else None,
        }

    async def update_content(self, path: str, content: str, *, notify: bool = True) -> None:
        note_file = self._resolve(path)
        note_file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(note_file, mode="w", encoding="utf-8") as f:
            await f.write(content)
        logger.info("note_written", path=to_posix(path))
        if notify:
            self._after_write(path)

    async def append_content(self, path: str, content: str, *, notify: bool = True) -> None:
        note_file = self._resolve(path)
        note_file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(note_file, mode="a", encoding="utf-8") as f:
            await f.write(content)
        if notify:
            self._after_write(path)

    async def delete_note(self, path: str, *, notify: bool = True) -> None:
        note_file = self._resolve(path)
        try:
            note_file.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"Note not found: {path}", operation="delete_note", path=path) from e
        if notify:
            self._after_write(path)

    def repair_writer(self) -> RepairWriter:
        return RepairWriter(rewrite=partial(self.update_content, notify=False))
