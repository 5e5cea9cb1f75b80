import asyncio
import base64
import json
from types import SimpleNamespace
from unittest import mock

import pytest

from config import Settings
from conftest import make_deck
from models import ImageQuality, SlideKind, VoiceAccent
from services.llm import (
    CREDENTIALS_ERROR_MARKER,
    IMAGE_STYLE_SUFFIX,
    CredentialsError,
    GenerationClient,
    GenerationError,
    build_deck_prompt,
    clean_llm_output,
    is_credentials_error,
    parse_deck,
    sanitize_narration,
)


def fake_gemini(response=None, error=None):
    generate = mock.AsyncMock(return_value=response, side_effect=error)
    return SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate)))


def inline_response(data: bytes, mime_type="image/png"):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def make_client(gemini=None, mistral=None, provider="gemini"):
    settings = Settings(gemini_api_key="test", mistral_api_key="test", deck_provider=provider)
    return GenerationClient(settings, gemini=gemini, mistral=mistral)


def deck_json():
    return make_deck().model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Narration sanitization
# ---------------------------------------------------------------------------

class TestSanitize:

    def test_symbols_spoken(self):
        assert sanitize_narration("ΣF") == "sum of F"
        assert sanitize_narration("Δx") == "change in x"
        assert sanitize_narration("a ≠ b") == "a is not equal to  b"
        assert sanitize_narration("≈3") == "is approximately 3"
        assert sanitize_narration("±2") == "plus or minus 2"

    def test_markup_stripped(self):
        assert sanitize_narration("$x^2$ #tag @me *bold* {a} [b]") == "x2 tag me bold a b"

    @pytest.mark.parametrize("text", [
        "The ΣF of forces ≈ 10 ± 2 and Δv ≠ 0",
        "Price $5 [approx] *really* {cheap}",
        "plain words only",
    ])
    def test_idempotent(self, text):
        once = sanitize_narration(text)
        assert sanitize_narration(once) == once


# ---------------------------------------------------------------------------
# Deck parsing
# ---------------------------------------------------------------------------

class TestParseDeck:

    def test_parses_camel_case_payload(self):
        deck = parse_deck(deck_json())
        assert len(deck.slides) == 15
        assert deck.slides[1].kind == SlideKind.DEEP_DIVE
        assert deck.slides[4].quiz.correct_index == 1

    def test_fenced_payload(self):
        deck = parse_deck(f"```json\n{deck_json()}\n```")
        assert deck.topic == "supply and demand"

    def test_clean_llm_output_extracts_object(self):
        assert clean_llm_output('Here you go: {"a": 1} thanks') == '{"a": 1}'

    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_empty(self, text):
        with pytest.raises(GenerationError, match="No content"):
            parse_deck(text)

    def test_malformed_json(self):
        with pytest.raises(GenerationError, match="Malformed"):
            parse_deck('{"topic": "x", "slides": [')

    def test_unknown_kind(self):
        payload = json.loads(deck_json())
        payload["slides"][0]["kind"] = "APPENDIX"
        with pytest.raises(GenerationError, match="schema"):
            parse_deck(json.dumps(payload))

    def test_short_deck_accepted(self):
        deck = parse_deck(make_deck(count=3).model_dump_json(by_alias=True))
        assert len(deck.slides) == 3


# ---------------------------------------------------------------------------
# Deck request
# ---------------------------------------------------------------------------

class TestGenerateDeckText:

    def test_prompt_contains_topic(self):
        gemini = fake_gemini(SimpleNamespace(text=deck_json()))
        client = make_client(gemini)

        deck = asyncio.run(client.generate_deck_text("supply and demand"))

        assert len(deck.slides) == 15
        gemini.aio.models.generate_content.assert_awaited_once()
        kwargs = gemini.aio.models.generate_content.call_args.kwargs
        assert '"supply and demand"' in kwargs["contents"]
        assert kwargs["config"].response_mime_type == "application/json"

    def test_no_content(self):
        client = make_client(fake_gemini(SimpleNamespace(text=None)))
        with pytest.raises(GenerationError):
            asyncio.run(client.generate_deck_text("x"))

    def test_backend_error_propagates(self):
        client = make_client(fake_gemini(error=RuntimeError("503 overloaded")))
        with pytest.raises(GenerationError) as info:
            asyncio.run(client.generate_deck_text("x"))
        assert not isinstance(info.value, CredentialsError)

    def test_credentials_error(self):
        error = RuntimeError(f"404 NOT_FOUND. {CREDENTIALS_ERROR_MARKER}.")
        client = make_client(fake_gemini(error=error))
        with pytest.raises(CredentialsError):
            asyncio.run(client.generate_deck_text("x"))

    def test_mistral_provider(self):
        message = SimpleNamespace(content=deck_json())
        mistral = SimpleNamespace(chat=SimpleNamespace(
            complete_async=mock.AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
        ))
        gemini = fake_gemini()
        client = make_client(gemini, mistral=mistral, provider="mistral")

        deck = asyncio.run(client.generate_deck_text("photosynthesis"))

        assert deck.topic == "supply and demand"
        kwargs = mistral.chat.complete_async.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert '"photosynthesis"' in kwargs["messages"][0]["content"]
        gemini.aio.models.generate_content.assert_not_awaited()

    def test_schema_only_in_json_mode_prompt(self):
        assert "narrationScript" in build_deck_prompt("t", with_schema=True)
        assert "narrationDurationEstimate" not in build_deck_prompt("t")


def test_is_credentials_error():
    assert is_credentials_error(CredentialsError("x"))
    assert is_credentials_error(RuntimeError("Requested entity was not found."))
    assert not is_credentials_error(GenerationError("No content generated"))


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

class TestGenerateSlideImage:

    @pytest.mark.parametrize("quality,model,size", [
        (ImageQuality.LOW, "gemini-2.5-flash-image", None),
        (ImageQuality.MEDIUM, "gemini-3-pro-image-preview", "2K"),
        (ImageQuality.HIGH, "gemini-3-pro-image-preview", "4K"),
    ])
    def test_quality_tiers(self, quality, model, size):
        gemini = fake_gemini(inline_response(b"\x89PNG"))
        client = make_client(gemini)

        url = asyncio.run(client.generate_slide_image("diagram of supply curve", quality))

        assert url == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
        kwargs = gemini.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == model
        assert kwargs["contents"] == f"diagram of supply curve. {IMAGE_STYLE_SUFFIX}"
        assert kwargs["config"].image_config.aspect_ratio == "16:9"
        assert kwargs["config"].image_config.image_size == size

    def test_failure_returns_none(self):
        client = make_client(fake_gemini(error=RuntimeError("quota")))
        assert asyncio.run(client.generate_slide_image("x", ImageQuality.LOW)) is None

    def test_no_image_part_returns_none(self):
        part = SimpleNamespace(inline_data=None, text="sorry")
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])
        client = make_client(fake_gemini(response))
        assert asyncio.run(client.generate_slide_image("x", ImageQuality.LOW)) is None


# ---------------------------------------------------------------------------
# Narration audio
# ---------------------------------------------------------------------------

class TestGenerateSlideAudio:

    @pytest.mark.parametrize("accent,voice,instruction", [
        (VoiceAccent.AMERICAN, "Kore", "American English"),
        (VoiceAccent.BRITISH, "Puck", "refined British English"),
        (VoiceAccent.INDIAN, "Kore", "warm Indian English"),
        (VoiceAccent.NIGERIAN, "Kore", "lively Nigerian English"),
    ])
    def test_voice_mapping(self, accent, voice, instruction):
        gemini = fake_gemini(inline_response(b"\x01\x00\x02\x00", mime_type="audio/L16"))
        client = make_client(gemini)

        data = asyncio.run(client.generate_slide_audio("Δ price *now*", accent))

        assert base64.b64decode(data) == b"\x01\x00\x02\x00"
        kwargs = gemini.aio.models.generate_content.call_args.kwargs
        assert kwargs["contents"] == f"Speak naturally in a {instruction} accent: change in  price now"
        config = kwargs["config"]
        assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == voice

    def test_failure_returns_none(self):
        client = make_client(fake_gemini(error=RuntimeError("tts down")))
        assert asyncio.run(client.generate_slide_audio("hello", VoiceAccent.BRITISH)) is None

    def test_missing_candidates_returns_none(self):
        client = make_client(fake_gemini(SimpleNamespace(candidates=None)))
        assert asyncio.run(client.generate_slide_audio("hello", VoiceAccent.AMERICAN)) is None
