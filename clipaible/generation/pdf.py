"""PDF output via WeasyPrint.

Renders the same HTML document as the HTML generator with print CSS
(A4 pages, running title, page numbers).
"""

import asyncio
import logging

from clipaible.generation.html_doc import render_html
from clipaible.generation.registry import GenerationData, ProgressCallback, artifact_path

logger = logging.getLogger(__name__)

PRINT_CSS = """
@page {
    size: A4;
    margin: 2cm 2.5cm;
    @bottom-center {
        content: counter(page);
        font-family: 'Inter', sans-serif;
        font-size: 8pt;
        color: #94a3b8;
    }
}
body { max-width: none; margin: 0; padding: 0; font-size: 11pt; }
h1, h2, h3 { page-break-after: avoid; }
img, table, pre { page-break-inside: avoid; }
"""


def _write_pdf(document: str, path) -> int:
    try:
        from weasyprint import HTML
    except ImportError:
        raise ImportError(
            "weasyprint is required for PDF export. "
            "Install with: pip install weasyprint>=60.0"
        )
    pdf_bytes = HTML(string=document).write_pdf()
    path.write_bytes(pdf_bytes)
    return len(pdf_bytes)


class PdfGenerator:
    """Writes the clip as an A4 .pdf file."""

    async def generate(self, data: GenerationData, progress: ProgressCallback) -> str:
        await progress(10, "Building PDF layout...")
        document = render_html(data, extra_css=PRINT_CSS)
        path = artifact_path(data, "pdf")
        await progress(30, "Rendering PDF...")
        size = await asyncio.to_thread(_write_pdf, document, path)
        await progress(100, "PDF ready")
        logger.info(f"[{data.job_id}] PDF written: {path} ({size:,} bytes)")
        return str(path)
