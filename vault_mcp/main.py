"""
Main entry point for the Obsidian Vault MCP Server.

This module provides the main() function and server initialization.
"""

import asyncio
import sys

from mcp.server.stdio import stdio_server

from .cache import VaultCacheService
from .config import Settings, settings
from .logging import configure_logging, get_logger
from .source import LocalVaultSource, ObsidianRestClient
from .tools import ToolContext, bind_context, server
from .utils import ConfigurationError

logger = get_logger(__name__)


def build_source(config: Settings) -> ObsidianRestClient | LocalVaultSource:
    """Note source for the configured vault: a local directory or the REST API."""
    if config.vault_path is not None:
        logger.info("note_source_selected", kind="local", vault_path=str(config.vault_path))
        return LocalVaultSource(config.vault_path)
    logger.info("note_source_selected", kind="rest", base_url=config.base_url)
    return ObsidianRestClient(
        config.base_url,
        config.api_key,
        verify_ssl=config.verify_ssl,
        timeout=config.request_timeout_seconds,
    )


async def serve(config: Settings) -> None:
    source = build_source(config)
    cache: VaultCacheService | None = None
    build_task: asyncio.Task | None = None

    if config.enable_cache:
        cache = VaultCacheService(source, config.cache_config(), source.repair_writer())
        source.set_write_hook(cache.notify_file_changed)
        build_task = asyncio.create_task(cache.build_vault_cache())
        cache.start_periodic_refresh()
    else:
        logger.info("vault_cache_disabled")

    bind_context(ToolContext(source=source, cache=cache, api_search_timeout_ms=config.api_search_timeout_ms))

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if build_task is not None and not build_task.done():
            build_task.cancel()
        if cache is not None:
            cache.dispose()
        source.set_write_hook(None)
        if isinstance(source, ObsidianRestClient):
            await source.close()
        bind_context(None)
        logger.info("server_stopped")


def main():
    """Main entry point."""
    configure_logging(settings.log_level)

    try:
        settings.validate_source()
    except ConfigurationError as e:
        logger.error("invalid_configuration", error=str(e))
        sys.exit(1)

    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
