"""Document generators (Markdown, HTML, PDF) and the format registry."""

from clipaible.generation.registry import (
    DocumentGenerator,
    GenerationData,
    GeneratorRegistry,
    default_registry,
)

__all__ = [
    "DocumentGenerator",
    "GenerationData",
    "GeneratorRegistry",
    "default_registry",
]
