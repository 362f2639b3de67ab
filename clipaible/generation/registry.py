"""Document generator registry, keyed by output format.

A generator takes the finished article plus a progress callback and
returns where it put the document. The orchestrator maps generator
progress (0-100) into the tail of the job's progress bar.
"""

import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from clipaible.executor.errors import ValidationError
from clipaible.executor.schemas import ClipResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]


class GenerationData(BaseModel):
    """Everything a generator needs to render one clip."""

    job_id: str
    url: str
    output_format: str
    result: ClipResult
    language: str = "en"
    output_dir: str = Field(default="output", description="Directory artifacts are written to")


@runtime_checkable
class DocumentGenerator(Protocol):
    """Protocol for output format generators."""

    async def generate(self, data: GenerationData, progress: ProgressCallback) -> str: ...


class GeneratorRegistry:
    """Maps output format names to generators."""

    def __init__(self):
        self._generators: dict[str, DocumentGenerator] = {}

    def register(self, output_format: str, generator: DocumentGenerator) -> None:
        self._generators[output_format.lower()] = generator
        logger.debug(f"Registered generator for {output_format}")

    def get(self, output_format: str) -> DocumentGenerator:
        """Look up a generator.

        Raises:
            ValidationError: If no generator handles the format
        """
        generator = self._generators.get((output_format or "").lower())
        if generator is None:
            raise ValidationError(
                f"Unsupported output format: {output_format!r} "
                f"(available: {', '.join(self.formats()) or 'none'})"
            )
        return generator

    def supports(self, output_format: str) -> bool:
        return (output_format or "").lower() in self._generators

    def formats(self) -> list[str]:
        return sorted(self._generators)


def artifact_path(data: GenerationData, extension: str, title: Optional[str] = None) -> Path:
    """Output file path for a clip: <output_dir>/<title-slug>-<job_id>.<ext>."""
    slug = re.sub(r"[^\w\s-]", "", (title or data.result.title or "clip").lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")[:80] or "clip"
    directory = Path(data.output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{slug}-{data.job_id}.{extension}"


def default_registry() -> GeneratorRegistry:
    """Registry with every built-in generator."""
    from clipaible.generation.html_doc import HtmlGenerator
    from clipaible.generation.markdown_doc import MarkdownGenerator
    from clipaible.generation.pdf import PdfGenerator

    registry = GeneratorRegistry()
    registry.register("markdown", MarkdownGenerator())
    registry.register("html", HtmlGenerator())
    registry.register("pdf", PdfGenerator())
    return registry
