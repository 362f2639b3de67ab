"""Chunk splitting for oversized HTML and reconciliation of per-chunk results.

AI extract mode cannot send a whole large page in one prompt. The page is
carved into overlapping windows that end just after a closing tag where
possible, each window is extracted separately, and the partial results
are merged back in chunk order. The overlap guarantees nothing at a cut
is lost; the duplicate blocks it produces are removed by a content hash
during reconciliation.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from clipaible.executor.errors import ValidationError
from clipaible.executor.schemas import ClipResult

logger = logging.getLogger(__name__)

_CLOSING_TAG_RE = re.compile(r"</[a-zA-Z][a-zA-Z0-9:-]*\s*>")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_SVG_RE = re.compile(r"<svg\b[^<]*(?:(?!</svg>)<[^<]*)*</svg>", re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_LONG_TEXT_RE = re.compile(r">([^<]{300,})<")
_STRUCTURE_RE = re.compile(
    r'<(?:article|section|main|div)[^>]*(?:id|class)="[^"]*(?:chapter|section|part|content)[^"]*"[^>]*>',
    re.IGNORECASE,
)


@dataclass
class Chunk:
    """One window of the source text.

    overlap_start is the offset within text where the band shared with
    the previous chunk ends (0 for the first chunk).
    """

    index: int
    start: int
    end: int
    text: str
    overlap_start: int = 0


def split_into_chunks(
    text: str,
    chunk_size: int,
    overlap: int,
    tolerance: Optional[int] = None,
) -> list[Chunk]:
    """Partition text into overlapping chunks that end on tag boundaries.

    Each window [pos, pos + chunk_size) is shortened to end right after the
    nearest closing tag within `tolerance` characters of its end (falling
    back to any '>' in that band, then to a hard cut). The next window
    starts `overlap` characters before the previous one ended.

    Args:
        text: Source HTML
        chunk_size: Maximum characters per chunk
        overlap: Characters shared between consecutive chunks
        tolerance: How far back from the window end to look for a boundary
            (default chunk_size // 5)

    Returns:
        Chunks in source order. A text no longer than chunk_size yields one chunk.

    Raises:
        ValidationError: If chunk_size <= 0 or overlap is outside [0, chunk_size)
    """
    if chunk_size <= 0:
        raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValidationError(
            f"overlap must be in [0, chunk_size), got overlap={overlap}, chunk_size={chunk_size}"
        )

    length = len(text)
    if length <= chunk_size:
        return [Chunk(index=0, start=0, end=length, text=text)]

    if tolerance is None:
        tolerance = chunk_size // 5
    tolerance = max(0, min(tolerance, chunk_size - 1))

    chunks: list[Chunk] = []
    pos = 0
    prev_end = 0

    while pos < length:
        end = pos + chunk_size
        if end >= length:
            end = length
        else:
            boundary = _find_boundary(text, pos, end, tolerance)
            if boundary is not None:
                end = boundary

        chunks.append(Chunk(
            index=len(chunks),
            start=pos,
            end=end,
            text=text[pos:end],
            overlap_start=max(0, prev_end - pos) if chunks else 0,
        ))

        if end >= length:
            break

        next_pos = end - overlap
        if next_pos <= pos:
            # Boundary landed inside the overlap band; drop the overlap for this step
            next_pos = end
        prev_end = end
        pos = next_pos

    logger.info(
        f"Split {length:,} chars into {len(chunks)} chunks "
        f"(size={chunk_size:,}, overlap={overlap:,}): "
        f"{[len(c.text) for c in chunks]}"
    )
    return chunks


def _find_boundary(text: str, pos: int, end: int, tolerance: int) -> Optional[int]:
    """Index just past the last closing tag (or '>') ending in [end - tolerance, end]."""
    band_start = max(pos + 1, end - tolerance)
    window = text[band_start:end]

    last = None
    for match in _CLOSING_TAG_RE.finditer(window):
        last = match
    if last is not None:
        return band_start + last.end()

    gt = window.rfind(">")
    if gt != -1:
        return band_start + gt + 1
    return None


def djb2(value: str) -> str:
    """32-bit djb2 hash of a string as (up to) 8 lowercase hex chars."""
    h = 5381
    for ch in value:
        h = ((h << 5) + h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")[:8]


def _dedup_sample(item) -> str:
    """The text a content item is compared on during deduplication."""
    item_type = item.type
    if item_type in ("heading", "code"):
        return item.text.strip()
    if item_type in ("paragraph", "quote"):
        return item.html.strip()
    if item_type == "subtitle":
        return (item.text or item.html).strip()
    if item_type == "infobox_start":
        return item.title.strip()
    if item_type == "image":
        return item.src
    if item_type == "list":
        return "|".join(item.items)
    if item_type == "table":
        return "|".join(item.headers + ["|".join(row) for row in item.rows])
    return ""


def deduplicate_content(items: list) -> list:
    """Drop repeated content items, keeping the first occurrence.

    Items are keyed on (type, sample length, djb2(sample)). Structural
    items with no sample (separators, infobox ends) are always kept.
    """
    seen: set[tuple[str, int, str]] = set()
    result = []
    for item in items:
        sample = _dedup_sample(item)
        if not sample:
            result.append(item)
            continue
        key = (item.type, len(sample), djb2(sample))
        if key in seen:
            continue
        seen.add(key)
        result.append(item)

    removed = len(items) - len(result)
    if removed:
        logger.info(f"Deduplicated content: {len(items)} -> {len(result)} items ({removed} removed)")
    return result


def reconcile(chunk_results: list[ClipResult]) -> ClipResult:
    """Merge per-chunk extraction results into one article.

    Content is concatenated in chunk order and deduplicated (first
    occurrence wins). Title and publish date come from chunk 0 only; later
    chunks see the middle of the page and cannot be trusted for them.
    """
    if not chunk_results:
        return ClipResult()

    first = chunk_results[0]
    combined = []
    for result in chunk_results:
        combined.extend(result.content)

    author = next((r.author for r in chunk_results if r.author), "")

    return ClipResult(
        title=first.title,
        author=author,
        publish_date=first.publish_date,
        content=deduplicate_content(combined),
        language=first.language,
    )


def trim_html_for_analysis(html: str, max_length: int) -> str:
    """Shrink page HTML for the selector prompt while keeping its structure.

    Empties script/style/svg bodies, drops comments, and shortens long text
    runs. If the result is still over max_length it is truncated, with a
    note listing chapter/section containers so the model can still see
    how the page is organized.
    """
    trimmed = _SCRIPT_RE.sub("<script></script>", html)
    trimmed = _STYLE_RE.sub("<style></style>", trimmed)
    trimmed = _COMMENT_RE.sub("", trimmed)
    trimmed = _SVG_RE.sub("<svg></svg>", trimmed)
    trimmed = _LONG_TEXT_RE.sub(
        lambda m: ">" + m.group(1)[:100] + "... [content trimmed] ..." + m.group(1)[-50:] + "<",
        trimmed,
    )

    if len(trimmed) > max_length:
        structure_tags = _STRUCTURE_RE.findall(trimmed)
        summary = ""
        if len(structure_tags) > 2:
            examples = ", ".join(structure_tags[:5])
            more = "..." if len(structure_tags) > 5 else ""
            summary = (
                f"\n\n<!-- PAGE STRUCTURE SUMMARY: Found {len(structure_tags)} structural "
                f"elements. Examples: {examples}{more} -->"
            )
        trimmed = trimmed[:max(0, max_length - len(summary))] + summary + "\n... [truncated for analysis]"

    logger.debug(f"Trimmed HTML for analysis: {len(html):,} -> {len(trimmed):,} chars")
    return trimmed
