"""
Frontmatter repair planning for the Obsidian Vault MCP Server.

Decides whether a note's frontmatter needs fixing and builds the rewritten
note. Applying a plan is the cache service's job because it has to refresh
the index afterwards.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .markdown import Failed, FrontmatterResult, frontmatter_of, with_frontmatter
from .models import RepairAction, RepairActionType, RepairPlan


@dataclass
class RepairWriter:
    """Write capabilities available for applying repairs.

    Either slot may be None. With neither, repairs are reported but never
    written.
    """

    rewrite: Callable[[str, str], Awaitable[None]] | None = None
    upsert_frontmatter: Callable[[str, dict[str, Any]], Awaitable[None]] | None = None

    @property
    def can_write(self) -> bool:
        return self.rewrite is not None or self.upsert_frontmatter is not None


def plan_repair(
    file_path: str,
    parsed: FrontmatterResult,
    chosen_tags: Sequence[str],
    current_tags: Sequence[str],
) -> RepairPlan | None:
    """Build a repair plan for one note, or None when it is healthy.

    Args:
        file_path: Vault-relative path of the note
        parsed: Result of parsing the note's raw content
        chosen_tags: Normalized tags the note should carry
        current_tags: Tags the note is currently known to carry

    Returns:
        A plan whose ``new_content`` is the original body under a
        regenerated frontmatter block, or None
    """
    actions: list[RepairAction] = []
    frontmatter = frontmatter_of(parsed)

    if isinstance(parsed, Failed):
        actions.append(RepairAction(
            type=RepairActionType.FIX_INVALID_YAML,
            description=f"Rewrite invalid frontmatter as valid YAML ({parsed.reason}).",
        ))
    elif parsed.frontmatter is None:
        actions.append(RepairAction(
            type=RepairActionType.ADD_FRONTMATTER,
            description="Add missing frontmatter block.",
        ))

    raw_tags = frontmatter.get("tags")
    if raw_tags is not None and not isinstance(raw_tags, list):
        actions.append(RepairAction(
            type=RepairActionType.NORMALIZE_TAGS,
            description="Coerce frontmatter tags to a list.",
        ))
    elif list(current_tags) != list(chosen_tags):
        actions.append(RepairAction(
            type=RepairActionType.NORMALIZE_TAGS,
            description="Align tags to the normalized set (frontmatter, else inline).",
        ))

    if not actions:
        return None

    new_frontmatter = dict(frontmatter)
    if chosen_tags:
        new_frontmatter["tags"] = list(chosen_tags)

    return RepairPlan(
        file_path=file_path,
        actions=actions,
        original_frontmatter=None if isinstance(parsed, Failed) or parsed.frontmatter is None else frontmatter,
        new_frontmatter=new_frontmatter,
        new_content=with_frontmatter(parsed.body, new_frontmatter),
    )
