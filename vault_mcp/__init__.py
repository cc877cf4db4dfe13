# Obsidian Vault MCP Server
#
# Modular package structure:
# - config.py: Settings (OBSIDIAN_ environment variables) and CacheConfig
# - logging.py: structlog configuration
# - utils.py: Exceptions, path helpers, retry and bounded-concurrency helpers
# - markdown.py: Frontmatter parsing and tag extraction
# - models.py: Pydantic models
# - source.py: Note sources (Local REST API client, local vault directory)
# - repair.py: Frontmatter repair planning
# - cache.py: VaultCacheService and its storage tiers
# - search.py: Global search with cache fallback, tag and stats queries
# - tools.py: MCP tool handlers and server instance
# - main.py: Entry point and server initialization
