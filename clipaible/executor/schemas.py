"""Schemas for clip jobs, extracted content, and the selector cache.

ContentItem is a closed tagged union: every block the pipeline produces
or accepts from an AI response is one of the item models below, keyed on
its "type" field. Order of items in a result is significant.
"""

import logging
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)

logger = logging.getLogger(__name__)


# ============================================================
# Job lifecycle
# ============================================================


class JobStage(str, Enum):
    """Job lifecycle stages."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    TRANSLATING = "translating"
    GENERATING = "generating"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STAGES = frozenset({JobStage.COMPLETE, JobStage.CANCELLED, JobStage.ERROR})

# Forward order of the happy path (Idle and the failure terminals excluded)
STAGE_ORDER = [
    JobStage.ANALYZING,
    JobStage.EXTRACTING,
    JobStage.TRANSLATING,
    JobStage.GENERATING,
    JobStage.COMPLETE,
]


class ProcessingMode(str, Enum):
    """How page content is identified."""
    SELECTOR = "selector"  # AI infers CSS selectors, local walker extracts
    EXTRACT = "extract"  # AI returns the content directly, chunked if large
    AUTOMATIC = "automatic"  # No AI: readability heuristic


class ClipRequest(BaseModel):
    """What the caller wants clipped."""

    url: str = Field(description="Page URL (used for the cache key and absolute links)")
    html: str = Field(description="Captured page HTML")
    title: str = Field(default="", description="Tab title, fallback when extraction finds none")
    mode: ProcessingMode = ProcessingMode.SELECTOR
    output_format: str = Field(default="markdown", description="Key into the generator registry")
    model: str = Field(default="claude-sonnet-4-6", description="AI model id")
    api_key: Optional[str] = Field(
        default=None,
        exclude=True,
        description="Provider key; never persisted, resumed jobs fall back to the environment",
    )
    target_language: str = Field(default="auto", description="'auto' disables translation")
    translate_images: bool = False
    generate_abstract: bool = False
    use_selector_cache: bool = True
    enable_selector_caching: bool = True


class JobError(BaseModel):
    """Normalized failure attached to a job in the Error stage."""

    code: str
    message: str


# ============================================================
# Content items
# ============================================================


class HeadingItem(BaseModel):
    type: Literal["heading"] = "heading"
    level: int = Field(default=2, ge=1, le=6)
    text: str
    id: str = ""


class ParagraphItem(BaseModel):
    type: Literal["paragraph"] = "paragraph"
    html: str
    id: str = ""


class ImageItem(BaseModel):
    type: Literal["image"] = "image"
    src: str
    alt: str = ""
    caption: Optional[str] = None
    id: str = ""


class ListBlock(BaseModel):
    type: Literal["list"] = "list"
    ordered: bool = False
    items: list[str] = Field(default_factory=list)
    id: str = ""


class QuoteItem(BaseModel):
    type: Literal["quote"] = "quote"
    html: str
    id: str = ""


class TableItem(BaseModel):
    type: Literal["table"] = "table"
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)
    id: str = ""


class CodeItem(BaseModel):
    type: Literal["code"] = "code"
    language: str = ""
    text: str
    id: str = ""


class SeparatorItem(BaseModel):
    type: Literal["separator"] = "separator"
    id: str = ""


class SubtitleItem(BaseModel):
    type: Literal["subtitle"] = "subtitle"
    text: str
    html: str = ""


class InfoboxStartItem(BaseModel):
    type: Literal["infobox_start"] = "infobox_start"
    title: str = ""
    id: str = ""


class InfoboxEndItem(BaseModel):
    type: Literal["infobox_end"] = "infobox_end"
    id: str = ""


ContentItem = Annotated[
    Union[
        HeadingItem,
        ParagraphItem,
        ImageItem,
        ListBlock,
        QuoteItem,
        TableItem,
        CodeItem,
        SeparatorItem,
        SubtitleItem,
        InfoboxStartItem,
        InfoboxEndItem,
    ],
    Field(discriminator="type"),
]

CONTENT_ITEM_TYPES = frozenset({
    "heading", "paragraph", "image", "list", "quote", "table", "code",
    "separator", "subtitle", "infobox_start", "infobox_end",
})

_content_item_adapter = TypeAdapter(ContentItem)


def parse_content_items(raw_items: Any) -> list:
    """Coerce loosely-typed AI output into ContentItems.

    AI responses use "text" for paragraph and quote bodies; that is mapped
    onto the "html" field. Items with an unknown type or missing required
    fields are dropped with a warning rather than failing the whole result.

    Args:
        raw_items: List of dicts as decoded from an AI JSON response

    Returns:
        List of ContentItem models, in input order
    """
    if not isinstance(raw_items, list):
        return []

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        item_type = raw.get("type")
        if item_type not in CONTENT_ITEM_TYPES:
            logger.warning(f"Dropping content item of unknown type: {item_type!r}")
            continue

        data = dict(raw)
        if item_type in ("paragraph", "quote") and "html" not in data:
            data["html"] = data.pop("text", "")
        if item_type == "subtitle" and "text" not in data:
            data["text"] = data.get("html", "")
        if item_type == "table":
            data["rows"] = [[str(c) for c in row] for row in data.get("rows") or []]
            data["headers"] = [str(h) for h in data.get("headers") or []]
        if item_type == "list":
            data["items"] = [str(i) for i in data.get("items") or []]

        try:
            items.append(_content_item_adapter.validate_python(data))
        except ValueError as e:
            logger.warning(f"Dropping malformed {item_type} item: {e}")

    return items


class ClipResult(BaseModel):
    """Extracted (and possibly translated) article."""

    title: str = ""
    author: str = ""
    content: list[ContentItem] = Field(default_factory=list)
    publish_date: str = ""
    language: str = Field(default="", description="Detected or target language code")
    summary: str = Field(default="", description="Optional AI abstract")
    translated: bool = False


class JobSnapshot(BaseModel):
    """Checkpoint of the singleton job, as persisted and as observed."""

    job_id: Optional[str] = None
    stage: JobStage = JobStage.IDLE
    status: str = ""
    progress: int = Field(default=0, ge=0, le=100)
    start_time: Optional[float] = Field(default=None, description="Epoch seconds")
    last_update_time: Optional[float] = Field(default=None, description="Epoch seconds")
    cancelled: bool = False
    error: Optional[JobError] = None
    result: Optional[ClipResult] = None
    output_format: str = ""
    completed_stages: list[JobStage] = Field(default_factory=list)
    request: Optional[ClipRequest] = None
    artifact: Optional[str] = Field(default=None, description="Where the generator put the output")

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def is_active(self) -> bool:
        return self.stage is not JobStage.IDLE and not self.is_terminal


class RestoreOutcome(str, Enum):
    """What restore() found in persistence."""
    NONE = "none"
    RESUMED = "resumed"
    STALE = "stale"
    TERMINAL = "terminal"


class StartResult(BaseModel):
    """Response to an orchestrator start() call."""

    accepted: bool
    job_id: Optional[str] = None
    reason: str = ""


# ============================================================
# Selector cache
# ============================================================

_SELECTOR_TEXT_FIELDS = (
    "container", "content_selector", "title", "author", "subtitle",
    "hero_image", "publish_date", "detected_language",
)


class SelectorSet(BaseModel):
    """CSS selectors (and text hints) describing where a site keeps its article.

    Accepts the camelCase keys the selector prompt asks the AI for.
    """

    model_config = ConfigDict(populate_by_name=True)

    container: str = Field(default="", validation_alias=AliasChoices("container", "articleContainer"))
    content_selector: str = Field(default="", validation_alias=AliasChoices("content_selector", "content"))
    exclude: list[str] = Field(default_factory=list)
    title: str = ""
    author: str = Field(default="", description="Author name text, not a selector")
    subtitle: str = ""
    hero_image: str = Field(default="", validation_alias=AliasChoices("hero_image", "heroImage"))
    publish_date: str = Field(
        default="",
        validation_alias=AliasChoices("publish_date", "publishDate"),
        description="Date text, not a selector",
    )
    detected_language: str = Field(default="", validation_alias=AliasChoices("detected_language", "detectedLanguage"))

    @field_validator(*_SELECTOR_TEXT_FIELDS, mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("exclude", mode="before")
    @classmethod
    def _coerce_exclude(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return [str(v) for v in value if v]

    @property
    def has_content_selectors(self) -> bool:
        return bool(self.container or self.content_selector)


class SelectorCacheEntry(BaseModel):
    """One cached site. No TTL; removed only by invalidation or deletion."""

    key: str
    selectors: SelectorSet
    success_count: int = 0
    failure_count: int = 0
    last_used: float = Field(description="Epoch seconds")
    created: float = Field(description="Epoch seconds")


# ============================================================
# Retry
# ============================================================


class RetryPolicy(BaseModel):
    """Bounded retry schedule for upstream calls.

    delays[i] is the wait before retry i+1; the last entry is reused when
    attempts outnumber the list.
    """

    max_attempts: int = Field(default=8, ge=1)
    delays: list[float] = Field(default_factory=lambda: [2, 5, 10, 20, 30, 60, 120, 300])
    retryable_status_codes: list[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])
    retry_network_errors: bool = True
    jitter: float = Field(default=0.0, ge=0.0, lt=1.0, description="Fractional +/- spread on each delay")

    def delay_for(self, retry_number: int) -> float:
        """Base wait before the Nth retry (1-indexed)."""
        if not self.delays:
            return 0.0
        return float(self.delays[min(retry_number - 1, len(self.delays) - 1)])


# ============================================================
# Stats
# ============================================================


class StatsRecord(BaseModel):
    """Running counters over saved clips."""

    total_saved: int = 0
    by_format: dict[str, int] = Field(default_factory=dict)
    by_month: dict[str, int] = Field(default_factory=dict)
    top_sites: dict[str, int] = Field(default_factory=dict)
    total_processing_time: float = Field(default=0.0, description="Seconds")
    last_saved: Optional[float] = None
    history: list[dict] = Field(default_factory=list, description="Most recent first")
