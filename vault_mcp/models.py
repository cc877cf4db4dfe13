"""
Pydantic models for the Obsidian Vault MCP Server.

Contains data models for note metadata, diagnostics, repair plans,
refresh statistics and search results.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NoteStat(BaseModel):
    """File timestamps in epoch milliseconds and size in bytes."""

    mtime: int
    ctime: int
    size: int = 0


class NoteMetadata(BaseModel):
    """Model for one indexed note. Always fully populated after normalization."""

    path: str
    basename: str
    frontmatter: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    stat: NoteStat


class IssueKind(str, Enum):
    MISSING_STAT = "MISSING_STAT"
    MISSING_NOTEJSON = "MISSING_NOTEJSON"
    INVALID_NOTEJSON = "INVALID_NOTEJSON"
    INVALID_FRONTMATTER = "INVALID_FRONTMATTER"
    MISSING_FRONTMATTER = "MISSING_FRONTMATTER"
    TAGS_NOT_ARRAY = "TAGS_NOT_ARRAY"
    REPAIR_FAILED = "REPAIR_FAILED"
    PARSE_ERROR = "PARSE_ERROR"
    FETCH_ERROR = "FETCH_ERROR"


class FileIssue(BaseModel):
    """A data-quality problem detected for one file during a refresh."""

    file_path: str
    kind: IssueKind
    detail: str | None = None


class RepairActionType(str, Enum):
    ADD_FRONTMATTER = "ADD_FRONTMATTER"
    NORMALIZE_TAGS = "NORMALIZE_TAGS"
    FIX_INVALID_YAML = "FIX_INVALID_YAML"


class RepairAction(BaseModel):
    type: RepairActionType
    description: str


class RepairPlan(BaseModel):
    """Proposed rewrite of one note. Lives only within one refresh step."""

    file_path: str
    actions: list[RepairAction] = Field(default_factory=list)
    original_frontmatter: dict[str, Any] | None = None
    new_frontmatter: dict[str, Any] | None = None
    new_content: str | None = None

    def describe(self) -> str:
        return ", ".join(action.type.value for action in self.actions)


class RepairReport(BaseModel):
    """Outcome of handing a repair plan to the writer."""

    plan: RepairPlan
    applied: bool = False
    dry_run: bool = False
    error: str | None = None


class RefreshStats(BaseModel):
    """Counters for one refresh pass."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    repaired: int = 0
    duration_ms: float = 0.0


class GlobalSearchParams(BaseModel):
    """Model for global search arguments. Dates are epoch milliseconds."""

    query: str = Field(min_length=1)
    search_in_path: str | None = None
    context_length: int = Field(default=100, gt=0)
    modified_since: int | None = None
    modified_until: int | None = None
    use_regex: bool = False
    case_sensitive: bool = False
    page_size: int = Field(default=50, gt=0)
    page: int = Field(default=1, gt=0)
    max_matches_per_file: int = Field(default=5, gt=0)


class MatchContext(BaseModel):
    context: str


class GlobalSearchResult(BaseModel):
    """Model for one file in a global search result."""

    path: str
    filename: str
    matches: list[MatchContext]
    modified_time: int = 0
    created_time: int = 0


class GlobalSearchResponse(BaseModel):
    """Model for a paginated global search response."""

    success: bool = True
    message: str
    results: list[GlobalSearchResult]
    total_files_found: int
    total_matches_found: int
    current_page: int
    page_size: int
    total_pages: int
    also_found_in_files: list[str] | None = None


class WriteResult(BaseModel):
    """Model for the result of a write operation."""

    success: bool
    path: str = ""
    error: str = ""
