"""HTML output (also the source document for PDF rendering)."""

import asyncio
import html
import logging

import markdown

from clipaible.generation.markdown_doc import render_markdown
from clipaible.generation.registry import GenerationData, ProgressCallback, artifact_path

logger = logging.getLogger(__name__)

BASE_CSS = """
body {
    font-family: 'Georgia', serif;
    font-size: 12pt;
    line-height: 1.6;
    color: #1e293b;
    max-width: 46em;
    margin: 2em auto;
    padding: 0 1em;
}
h1, h2, h3, h4 { font-family: 'Inter', sans-serif; line-height: 1.25; }
img { max-width: 100%; height: auto; }
blockquote { border-left: 3px solid #cbd5e1; margin-left: 0; padding-left: 1em; color: #475569; }
pre { background: #f1f5f9; padding: 0.75em; overflow-x: auto; font-size: 10pt; }
table { border-collapse: collapse; width: 100%; }
th, td { border: 1px solid #cbd5e1; padding: 0.3em 0.5em; text-align: left; }
"""


def render_html(data: GenerationData, extra_css: str = "") -> str:
    """Whole article as a standalone HTML document."""
    body = markdown.markdown(
        render_markdown(data),
        extensions=["tables", "fenced_code"],
    )
    title = html.escape(data.result.title or "Untitled")
    lang = html.escape(data.language or "en")
    return f"""<!DOCTYPE html>
<html lang="{lang}">
<head>
    <meta charset="UTF-8">
    <title>{title}</title>
    <style>{BASE_CSS}{extra_css}</style>
</head>
<body>
{body}
</body>
</html>
"""


class HtmlGenerator:
    """Writes the clip as a standalone .html file."""

    async def generate(self, data: GenerationData, progress: ProgressCallback) -> str:
        await progress(10, "Rendering HTML...")
        document = render_html(data)
        path = artifact_path(data, "html")
        await progress(80, "Saving HTML...")
        await asyncio.to_thread(path.write_text, document, encoding="utf-8")
        await progress(100, "HTML ready")
        logger.info(f"[{data.job_id}] HTML written: {path} ({len(document):,} chars)")
        return str(path)
