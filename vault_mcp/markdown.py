"""
Markdown helpers for the Obsidian Vault MCP Server.

Pure functions for frontmatter parsing and regeneration and for tag
extraction. None of them raise on malformed notes: a broken frontmatter
block is reported through the ``Failed`` result instead.
"""

import re
from dataclasses import dataclass
from typing import Any

import yaml

# Pre-compiled regex patterns
FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)
CODE_FENCE_PATTERN = re.compile(r"```.*?```", re.DOTALL)
INLINE_CODE_PATTERN = re.compile(r"`[^`\n]*`")
INLINE_TAG_PATTERN = re.compile(r"(?:^|\s)#([A-Za-z0-9/_-]{1,64})\b")
WIKILINK_PATTERN = re.compile(r"\[\[([^\]|#]+)(?:#[^\]|]*)?(?:\|[^\]]+)?\]\]")


@dataclass(frozen=True)
class Parsed:
    """Frontmatter parsed cleanly. ``frontmatter`` is None when there is no block."""

    frontmatter: dict[str, Any] | None
    body: str


@dataclass(frozen=True)
class Failed:
    """A frontmatter block exists but is not a valid YAML mapping."""

    body: str
    reason: str


FrontmatterResult = Parsed | Failed


def parse_frontmatter(content: str) -> FrontmatterResult:
    """Split a note into frontmatter and body without raising."""
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return Parsed(frontmatter=None, body=content)

    body = content[match.end():]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        reason = str(e).splitlines()[0] if str(e) else "unknown"
        return Failed(body=body, reason=f"YAML parse error: {reason}")

    if data is None:
        return Parsed(frontmatter={}, body=body)
    if not isinstance(data, dict):
        return Failed(body=body, reason="Frontmatter parsed to a non-mapping; coercing to {}")
    return Parsed(frontmatter=data, body=body)


def frontmatter_of(result: FrontmatterResult) -> dict[str, Any]:
    """Best-available frontmatter mapping for a parse result (never None)."""
    if isinstance(result, Parsed) and result.frontmatter is not None:
        return result.frontmatter
    return {}


def normalize_tags(value: Any, lowercase: bool = True) -> list[str]:
    """Coerce a frontmatter ``tags`` value into an ordered, deduplicated list.

    Accepts a list or a comma-separated string. Leading ``#`` and blanks
    are stripped, nested values dropped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        raw = list(value)
    else:
        raw = [value]

    tags: list[str] = []
    for item in raw:
        if item is None or isinstance(item, (dict, list, tuple, set)):
            continue
        tag = str(item).strip().lstrip("#").strip()
        if not tag:
            continue
        if lowercase:
            tag = tag.lower()
        tags.append(tag)
    return list(dict.fromkeys(tags))


def extract_inline_tags(text: str, lowercase: bool = True) -> list[str]:
    """Find ``#tag`` tokens outside code blocks and inline code."""
    stripped = CODE_FENCE_PATTERN.sub("", text)
    stripped = INLINE_CODE_PATTERN.sub("", stripped)
    return normalize_tags(INLINE_TAG_PATTERN.findall(stripped), lowercase)


def render_frontmatter(frontmatter: dict[str, Any]) -> str:
    """Render a ``---`` delimited YAML block, keeping key order."""
    if not frontmatter:
        return "---\n---\n"
    yaml_content = yaml.dump(frontmatter, allow_unicode=True, default_flow_style=False, sort_keys=False)
    return f"---\n{yaml_content}---\n"


def with_frontmatter(body: str, frontmatter: dict[str, Any]) -> str:
    """Prefix a note body with a regenerated frontmatter block."""
    separator = "" if body.startswith("\n") else "\n"
    return render_frontmatter(frontmatter) + separator + body


def extract_wikilinks(text: str) -> list[str]:
    """Targets of ``[[target]]`` / ``[[target#heading|alias]]`` links, in order, deduplicated."""
    return list(dict.fromkeys(target.strip() for target in WIKILINK_PATTERN.findall(text) if target.strip()))
