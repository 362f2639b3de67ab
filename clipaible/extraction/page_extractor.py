"""Local page extractors: CSS-selector walker and no-AI readability heuristic.

Both turn a DOM subtree into an ordered list of ContentItems. The
selector extractor starts from the subtree the AI-inferred selectors
point at; the heuristic extractor lets readability pick the main content
and falls back to <main>/<article>/<body> when that comes back too thin.

Parsing is CPU-bound and runs on a worker thread so the event loop stays
free for the heartbeat.
"""

import asyncio
import logging
import re
from typing import Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, NavigableString, Tag
from readability import Document
from soupsieve import SelectorSyntaxError

from clipaible.executor.errors import ExtractionFailure
from clipaible.executor.schemas import (
    ClipResult,
    CodeItem,
    HeadingItem,
    ImageItem,
    ListBlock,
    ParagraphItem,
    QuoteItem,
    SelectorSet,
    SeparatorItem,
    SubtitleItem,
    TableItem,
)

logger = logging.getLogger(__name__)

_MIN_PLAINTEXT_CHARS = 200
_NOISE_TAGS = ["script", "style", "noscript", "form", "iframe", "button"]
_CHROME_TAGS = ["header", "footer", "nav", "aside"]
_HEADING_RE = re.compile(r"^h([1-6])$")
_LANGUAGE_CLASS_RE = re.compile(r"(?:language|lang)-([\w+#-]+)")


def _safe_select(root: Tag, selector: str) -> list[Tag]:
    if not selector:
        return []
    try:
        return root.select(selector)
    except SelectorSyntaxError as e:
        logger.warning(f"Ignoring invalid selector {selector!r}: {e}")
        return []


def _safe_select_one(root: Tag, selector: str) -> Optional[Tag]:
    found = _safe_select(root, selector)
    return found[0] if found else None


def _clean(root: Tag, strip_chrome: bool = False) -> None:
    for tag in root.find_all(_NOISE_TAGS):
        tag.decompose()
    if strip_chrome:
        for tag in root.find_all(_CHROME_TAGS):
            tag.decompose()


def _absolutize(root: Tag, base_url: str) -> None:
    for a in root.find_all("a", href=True):
        href = a["href"].strip()
        if href and not href.startswith(("#", "mailto:", "javascript:")):
            a["href"] = urljoin(base_url, href)


def _image_src(img: Tag, base_url: str) -> str:
    src = img.get("src") or img.get("data-src") or img.get("data-lazy-src") or ""
    if not src or src.startswith("data:"):
        return ""
    return urljoin(base_url, src.strip())


def _inner_html(el: Tag) -> str:
    return el.decode_contents().strip()


def _is_inside(el: Tag, root: Tag) -> bool:
    return any(parent is root for parent in el.parents)


def walk_content(root: Tag, base_url: str) -> list:
    """Convert a DOM subtree into ContentItems in document order."""
    items: list = []
    _walk(root, base_url, items)
    return items


def _walk(node: Tag, base_url: str, items: list) -> None:
    loose_text: list[str] = []

    def flush_loose_text():
        text = " ".join(t for t in loose_text if t).strip()
        loose_text.clear()
        if text:
            items.append(ParagraphItem(html=text))

    for child in node.children:
        if isinstance(child, NavigableString):
            if type(child) is NavigableString:
                loose_text.append(str(child).strip())
            continue
        if not isinstance(child, Tag):
            continue

        name = child.name.lower()
        inline = name in ("a", "span", "strong", "em", "b", "i", "u", "code", "sup", "sub", "small", "mark")
        if inline:
            loose_text.append(str(child))
            continue
        flush_loose_text()

        heading = _HEADING_RE.match(name)
        if heading:
            text = child.get_text(" ", strip=True)
            if text:
                items.append(HeadingItem(level=int(heading.group(1)), text=text, id=child.get("id", "")))
        elif name == "p":
            html = _inner_html(child)
            if child.get_text(strip=True):
                items.append(ParagraphItem(html=html, id=child.get("id", "")))
            for img in child.find_all("img"):
                src = _image_src(img, base_url)
                if src:
                    items.append(ImageItem(src=src, alt=img.get("alt", "").strip()))
        elif name == "img":
            src = _image_src(child, base_url)
            if src:
                items.append(ImageItem(src=src, alt=child.get("alt", "").strip(), id=child.get("id", "")))
        elif name == "figure":
            img = child.find("img")
            src = _image_src(img, base_url) if img else ""
            if src:
                caption = child.find("figcaption")
                items.append(ImageItem(
                    src=src,
                    alt=img.get("alt", "").strip(),
                    caption=caption.get_text(" ", strip=True) if caption else None,
                    id=child.get("id", ""),
                ))
            else:
                _walk(child, base_url, items)
        elif name in ("ul", "ol"):
            entries = [_inner_html(li) for li in child.find_all("li", recursive=False)]
            entries = [e for e in entries if e]
            if entries:
                items.append(ListBlock(ordered=name == "ol", items=entries, id=child.get("id", "")))
        elif name == "blockquote":
            if child.get_text(strip=True):
                items.append(QuoteItem(html=_inner_html(child), id=child.get("id", "")))
        elif name == "pre":
            code = child.find("code") or child
            match = _LANGUAGE_CLASS_RE.search(" ".join(code.get("class", [])))
            items.append(CodeItem(
                language=match.group(1) if match else "",
                text=code.get_text(),
                id=child.get("id", ""),
            ))
        elif name == "table":
            items.append(_table_item(child))
        elif name == "hr":
            items.append(SeparatorItem())
        else:
            _walk(child, base_url, items)

    flush_loose_text()


def _table_item(table: Tag) -> TableItem:
    headers = [th.get_text(" ", strip=True) for th in table.find_all("th")]
    rows = []
    for tr in table.find_all("tr"):
        cells = [td.get_text(" ", strip=True) for td in tr.find_all("td")]
        if cells:
            rows.append(cells)
    return TableItem(headers=headers, rows=rows, id=table.get("id", ""))


def _meta_content(soup: BeautifulSoup, attrs_options: Iterable[dict]) -> str:
    for attrs in attrs_options:
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
    return ""


def _find_publish_date(soup: BeautifulSoup) -> str:
    date = _meta_content(soup, [
        {"property": "article:published_time"},
        {"name": "date"},
        {"name": "pubdate"},
    ])
    if date:
        return date
    time_tag = soup.find("time")
    if time_tag:
        return (time_tag.get("datetime") or time_tag.get_text(strip=True)).strip()
    return ""


def _find_author(soup: BeautifulSoup) -> str:
    return _meta_content(soup, [{"name": "author"}, {"property": "article:author"}])


# ============================================================
# Selector mode
# ============================================================


def extract_with_selectors(selectors: SelectorSet, html: str, base_url: str) -> ClipResult:
    """Extract an article using AI-inferred selectors.

    Raises:
        ExtractionFailure: If the selectors match nothing or yield no content
    """
    soup = BeautifulSoup(html, "html.parser")

    root = _safe_select_one(soup, selectors.content_selector) or _safe_select_one(soup, selectors.container)
    if root is None:
        raise ExtractionFailure(
            f"Selectors matched nothing (container={selectors.container!r}, "
            f"content={selectors.content_selector!r})"
        )

    title_el = _safe_select_one(soup, selectors.title)
    title = title_el.get_text(" ", strip=True) if title_el else ""

    # Hero and subtitle only count when they sit outside the article body
    hero = _safe_select_one(soup, selectors.hero_image)
    if hero is not None and _is_inside(hero, root):
        hero = None
    subtitle_el = _safe_select_one(soup, selectors.subtitle)
    if subtitle_el is not None and _is_inside(subtitle_el, root):
        subtitle_el = None

    for selector in selectors.exclude:
        for el in _safe_select(root, selector):
            el.decompose()
    if title_el is not None and _is_inside(title_el, root):
        title_el.decompose()
    _clean(root)
    _absolutize(root, base_url)

    items = []
    if subtitle_el is not None:
        text = subtitle_el.get_text(" ", strip=True)
        if text:
            items.append(SubtitleItem(text=text, html=_inner_html(subtitle_el)))
    if hero is not None:
        img = hero if hero.name == "img" else hero.find("img")
        src = _image_src(img, base_url) if img else ""
        if src:
            items.append(ImageItem(src=src, alt=img.get("alt", "").strip()))
    items.extend(walk_content(root, base_url))

    if not any(i.type != "separator" for i in items):
        raise ExtractionFailure("Selectors matched an element with no article content")

    logger.info(f"Selector extraction: {len(items)} items, title={title[:60]!r}")
    return ClipResult(
        title=title,
        author=selectors.author or _find_author(soup),
        publish_date=selectors.publish_date or _find_publish_date(soup),
        content=items,
        language=selectors.detected_language,
    )


class SelectorPageExtractor:
    """Page Extractor capability backed by BeautifulSoup."""

    async def extract(self, selectors: SelectorSet, html: str, base_url: str) -> ClipResult:
        return await asyncio.to_thread(extract_with_selectors, selectors, html, base_url)


# ============================================================
# No-AI heuristic mode
# ============================================================


def _iter_primary_candidates(soup_full: BeautifulSoup) -> Iterable[BeautifulSoup]:
    """Yield progressively broader content scopes to fall back on."""
    for selector in ("main", "article"):
        candidate = soup_full.select_one(selector)
        if candidate:
            yield BeautifulSoup(str(candidate), "html.parser")
    if soup_full.body:
        yield BeautifulSoup(str(soup_full.body), "html.parser")


def extract_heuristic(html: str, base_url: str) -> ClipResult:
    """Extract the main article without AI, using readability.

    Raises:
        ExtractionFailure: If no content can be found
    """
    document = Document(html)
    soup_full = BeautifulSoup(html, "html.parser")

    summary = BeautifulSoup(document.summary(html_partial=True), "html.parser")
    _clean(summary)
    plain_text = summary.get_text(" ", strip=True)

    if len(plain_text) < _MIN_PLAINTEXT_CHARS:
        for candidate in _iter_primary_candidates(soup_full):
            _clean(candidate, strip_chrome=True)
            candidate_text = candidate.get_text(" ", strip=True)
            if len(candidate_text) >= _MIN_PLAINTEXT_CHARS:
                summary = candidate
                plain_text = candidate_text
                break

    _absolutize(summary, base_url)
    items = walk_content(summary, base_url)
    if not items:
        raise ExtractionFailure("No article content found on the page")

    title = document.short_title() or ""
    if not title and soup_full.title and soup_full.title.string:
        title = soup_full.title.string.strip()

    lang = ""
    if soup_full.html and soup_full.html.get("lang"):
        lang = soup_full.html["lang"].split("-")[0].lower()

    logger.info(f"Heuristic extraction: {len(items)} items, {len(plain_text):,} chars")
    return ClipResult(
        title=title,
        author=_find_author(soup_full),
        publish_date=_find_publish_date(soup_full),
        content=items,
        language=lang,
    )


class HeuristicExtractor:
    """No-AI Extractor capability backed by readability-lxml."""

    async def extract(self, html: str, base_url: str) -> ClipResult:
        return await asyncio.to_thread(extract_heuristic, html, base_url)
