"""Markdown output.

Inline formatting inside paragraphs and quotes is kept as the HTML the
extractor produced; Markdown renderers pass inline HTML through.
"""

import asyncio
import logging

from clipaible.generation.registry import GenerationData, ProgressCallback, artifact_path

logger = logging.getLogger(__name__)


def _table_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def render_item(item) -> str:
    """One ContentItem as a Markdown block."""
    t = item.type
    if t == "heading":
        return f"{'#' * item.level} {item.text}"
    if t == "paragraph":
        return item.html
    if t == "image":
        block = f"![{item.alt}]({item.src})"
        if item.caption:
            block += f"\n*{item.caption}*"
        return block
    if t == "list":
        if item.ordered:
            return "\n".join(f"{n}. {entry}" for n, entry in enumerate(item.items, start=1))
        return "\n".join(f"- {entry}" for entry in item.items)
    if t == "quote":
        return "\n".join(f"> {line}" for line in item.html.splitlines() or [""])
    if t == "table":
        width = max([len(item.headers)] + [len(r) for r in item.rows]) or 1
        headers = item.headers or [""] * width
        lines = [
            "| " + " | ".join(_table_cell(h) for h in headers) + " |",
            "|" + "---|" * len(headers),
        ]
        for row in item.rows:
            lines.append("| " + " | ".join(_table_cell(c) for c in row) + " |")
        return "\n".join(lines)
    if t == "code":
        return f"```{item.language}\n{item.text.rstrip()}\n```"
    if t == "separator":
        return "---"
    if t == "subtitle":
        return f"*{item.text}*"
    if t == "infobox_start":
        return f"---\n**{item.title}**" if item.title else "---"
    if t == "infobox_end":
        return "---"
    return ""


def render_markdown(data: GenerationData) -> str:
    """Whole article as a Markdown document."""
    result = data.result
    blocks = [f"# {result.title or 'Untitled'}"]

    meta = [part for part in (result.author, result.publish_date) if part]
    if meta:
        blocks.append(f"*{' · '.join(meta)}*")
    blocks.append(f"Source: <{data.url}>")

    if result.summary:
        blocks.append(f"> **Abstract:** {result.summary}")

    for item in result.content:
        block = render_item(item)
        if block:
            blocks.append(block)

    return "\n\n".join(blocks) + "\n"


class MarkdownGenerator:
    """Writes the clip as a .md file."""

    async def generate(self, data: GenerationData, progress: ProgressCallback) -> str:
        await progress(10, "Rendering Markdown...")
        text = render_markdown(data)
        path = artifact_path(data, "md")
        await progress(80, "Saving Markdown...")
        await asyncio.to_thread(path.write_text, text, encoding="utf-8")
        await progress(100, "Markdown ready")
        logger.info(f"[{data.job_id}] Markdown written: {path} ({len(text):,} chars)")
        return str(path)
