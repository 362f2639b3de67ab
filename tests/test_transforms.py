"""Translation and summary transforms over a fake AI client."""

import asyncio

from clipaible.executor.schemas import (
    ClipRequest,
    ClipResult,
    HeadingItem,
    ImageItem,
    ListBlock,
    ParagraphItem,
    TableItem,
)
from clipaible.extraction.transforms import (
    LLMSummarizer,
    LLMTranslator,
    article_plain_text,
    effective_language,
)
from tests.fakes import FakeAI

RESULT = ClipResult(
    title="Hello",
    content=[
        HeadingItem(level=2, text="Intro"),
        ParagraphItem(html="Some <b>bold</b> text."),
        ListBlock(items=["one", "two"]),
        TableItem(headers=["Col"], rows=[["cell"]]),
        ImageItem(src="https://example.com/a.png", alt="A cat", caption="Our cat"),
    ],
    language="en",
)

REQUEST = ClipRequest(url="https://example.com", html="<p/>", target_language="de")


def test_translate_writes_answers_back_by_field_id():
    ai = FakeAI([{"items": {
        "title": "Hallo",
        "0.text": "Einleitung",
        "1.html": "Etwas <b>fetter</b> Text.",
        "2.items.1": "zwei",
        "3.rows.0.0": "Zelle",
        "99.text": "ignored",
    }}])

    translated = asyncio.run(LLMTranslator(ai).translate(RESULT, REQUEST))

    assert translated.title == "Hallo"
    assert translated.content[0].text == "Einleitung"
    assert translated.content[1].html == "Etwas <b>fetter</b> Text."
    assert translated.content[2].items == ["one", "zwei"]
    assert translated.content[3].headers == ["Col"]
    assert translated.content[3].rows == [["Zelle"]]
    assert translated.translated
    assert translated.language == "de"
    assert RESULT.title == "Hello"
    assert "German" in ai.calls[0]["system"]


def test_translation_is_batched():
    ai = FakeAI([{"items": {}}, {"items": {}}, {"items": {}}])
    long_result = ClipResult(content=[ParagraphItem(html="x" * 40) for _ in range(3)])

    asyncio.run(LLMTranslator(ai, batch_chars=50).translate(long_result, REQUEST))
    assert len(ai.calls) == 3


def test_translate_images_only_touches_alt_and_caption():
    ai = FakeAI([{"items": {"4.alt": "Eine Katze", "4.caption": "Unsere Katze"}}])
    translated = asyncio.run(LLMTranslator(ai).translate_images(RESULT, REQUEST))
    image = translated.content[4]
    assert (image.alt, image.caption) == ("Eine Katze", "Unsere Katze")
    assert translated.title == "Hello"


def test_summarize_returns_stripped_text():
    ai = FakeAI(["  A short abstract.  "])
    summary = asyncio.run(LLMSummarizer(ai).summarize(RESULT, REQUEST, "de"))
    assert summary == "A short abstract."
    assert ai.calls[0]["structured"] is False
    assert "Some bold text." in ai.calls[0]["user"]


def test_plain_text_and_effective_language():
    text = article_plain_text(RESULT)
    assert "Intro" in text
    assert "<b>" not in text
    assert effective_language(RESULT, REQUEST) == "en"
    assert effective_language(RESULT.model_copy(update={"translated": True}), REQUEST) == "de"
