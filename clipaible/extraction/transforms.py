"""Content-level AI transforms: translation, image-text translation, summaries.

Translation sends the article's text fields to the model as a flat
{id: text} map in batches and writes the answers back by id, so item
order and structure never depend on what the model returns. Missing ids
keep their original text.
"""

import json
import logging
from typing import Callable, Optional

from bs4 import BeautifulSoup

from clipaible.executor.schemas import ClipRequest, ClipResult
from clipaible.extraction.prompts import (
    IMAGE_TRANSLATION_SYSTEM_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    TRANSLATION_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

# Characters of source text per translation request
TRANSLATION_BATCH_CHARS = 12_000

# Article text sent to the summarizer
SUMMARY_MAX_CHARS = 40_000

LANGUAGE_NAMES = {
    "en": "English", "ru": "Russian", "uk": "Ukrainian", "de": "German",
    "fr": "French", "es": "Spanish", "it": "Italian", "pt": "Portuguese",
    "zh": "Chinese", "ja": "Japanese", "ko": "Korean", "ar": "Arabic",
}


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def _collect_text_fields(result: ClipResult) -> dict[str, str]:
    """Flatten every translatable text field to an id -> text map."""
    fields: dict[str, str] = {}
    if result.title:
        fields["title"] = result.title
    for i, item in enumerate(result.content):
        if item.type == "heading":
            fields[f"{i}.text"] = item.text
        elif item.type in ("paragraph", "quote"):
            if item.html:
                fields[f"{i}.html"] = item.html
        elif item.type == "subtitle":
            fields[f"{i}.text"] = item.text
        elif item.type == "infobox_start" and item.title:
            fields[f"{i}.title"] = item.title
        elif item.type == "list":
            for j, entry in enumerate(item.items):
                fields[f"{i}.items.{j}"] = entry
        elif item.type == "table":
            for j, header in enumerate(item.headers):
                fields[f"{i}.headers.{j}"] = header
            for r, row in enumerate(item.rows):
                for c, cell in enumerate(row):
                    if cell:
                        fields[f"{i}.rows.{r}.{c}"] = cell
    return fields


def _collect_image_fields(result: ClipResult) -> dict[str, str]:
    fields: dict[str, str] = {}
    for i, item in enumerate(result.content):
        if item.type == "image":
            if item.alt:
                fields[f"{i}.alt"] = item.alt
            if item.caption:
                fields[f"{i}.caption"] = item.caption
    return fields


def _apply_fields(result: ClipResult, translated: dict[str, str]) -> ClipResult:
    """Write translated values back onto a copy of the result."""
    updated = result.model_copy(deep=True)
    for field_id, value in translated.items():
        if not isinstance(value, str):
            continue
        if field_id == "title":
            updated.title = value
            continue
        parts = field_id.split(".")
        try:
            item = updated.content[int(parts[0])]
            if len(parts) == 2:
                setattr(item, parts[1], value)
            elif parts[1] in ("items", "headers"):
                getattr(item, parts[1])[int(parts[2])] = value
            elif parts[1] == "rows":
                item.rows[int(parts[2])][int(parts[3])] = value
        except (IndexError, ValueError, AttributeError):
            logger.debug(f"Ignoring translation for unknown field {field_id!r}")
    return updated


def _batches(fields: dict[str, str], max_chars: int) -> list[dict[str, str]]:
    batches: list[dict[str, str]] = []
    current: dict[str, str] = {}
    size = 0
    for key, value in fields.items():
        if current and size + len(value) > max_chars:
            batches.append(current)
            current, size = {}, 0
        current[key] = value
        size += len(value)
    if current:
        batches.append(current)
    return batches


class LLMTranslator:
    """Translator capability: translates a ClipResult through an AIClient."""

    def __init__(self, ai_client, batch_chars: int = TRANSLATION_BATCH_CHARS):
        self._ai = ai_client
        self._batch_chars = batch_chars

    async def _translate_fields(
        self,
        fields: dict[str, str],
        system_prompt: str,
        request: ClipRequest,
        label: str,
        cancellation_check: Optional[Callable[[], bool]],
    ) -> dict[str, str]:
        translated: dict[str, str] = {}
        batches = _batches(fields, self._batch_chars)
        for n, batch in enumerate(batches):
            response = await self._ai.call(
                system_prompt,
                _json_payload(batch),
                model=request.model,
                api_key=request.api_key,
                structured=True,
                label=f"{label} [batch {n + 1}/{len(batches)}]",
                cancellation_check=cancellation_check,
            )
            items = response.get("items") if isinstance(response, dict) else None
            if isinstance(items, dict):
                translated.update({k: v for k, v in items.items() if k in batch})
        return translated

    async def translate(
        self,
        result: ClipResult,
        request: ClipRequest,
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> ClipResult:
        """Translate all text in the result into request.target_language."""
        language = language_name(request.target_language)
        fields = _collect_text_fields(result)
        logger.info(f"Translating {len(fields)} fields into {language}")
        translated = await self._translate_fields(
            fields,
            TRANSLATION_SYSTEM_PROMPT.format(language=language),
            request,
            "translate",
            cancellation_check,
        )
        updated = _apply_fields(result, translated)
        updated.translated = True
        updated.language = request.target_language
        return updated

    async def translate_images(
        self,
        result: ClipResult,
        request: ClipRequest,
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> ClipResult:
        """Translate image alt text and captions."""
        fields = _collect_image_fields(result)
        if not fields:
            return result
        translated = await self._translate_fields(
            fields,
            IMAGE_TRANSLATION_SYSTEM_PROMPT.format(language=language_name(request.target_language)),
            request,
            "translate-images",
            cancellation_check,
        )
        return _apply_fields(result, translated)


class LLMSummarizer:
    """Summarizer capability: short abstract of the article."""

    def __init__(self, ai_client, max_chars: int = SUMMARY_MAX_CHARS):
        self._ai = ai_client
        self._max_chars = max_chars

    async def summarize(
        self,
        result: ClipResult,
        request: ClipRequest,
        language: str,
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> str:
        text = article_plain_text(result)[: self._max_chars]
        summary = await self._ai.call(
            SUMMARY_SYSTEM_PROMPT.format(language=language_name(language)),
            f"Title: {result.title}\n\n{text}",
            model=request.model,
            api_key=request.api_key,
            structured=False,
            label="summary",
            cancellation_check=cancellation_check,
        )
        return summary.strip()


def article_plain_text(result: ClipResult) -> str:
    """Rough plain text of the article, for prompts that only need the prose."""
    lines = []
    for item in result.content:
        if item.type in ("heading", "code", "subtitle"):
            lines.append(item.text)
        elif item.type in ("paragraph", "quote"):
            lines.append(BeautifulSoup(item.html, "html.parser").get_text(" ", strip=True))
        elif item.type == "list":
            lines.extend(BeautifulSoup(e, "html.parser").get_text(" ", strip=True) for e in item.items)
    return "\n\n".join(line for line in lines if line)


def effective_language(result: ClipResult, request: ClipRequest) -> str:
    """Language the output document is in: the translation target, else what extraction saw."""
    if request.target_language and request.target_language != "auto" and result.translated:
        return request.target_language
    return result.language or "en"


def _json_payload(batch: dict[str, str]) -> str:
    return json.dumps({"items": batch}, ensure_ascii=False)
