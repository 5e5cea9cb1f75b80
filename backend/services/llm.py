import base64
import json
import logging
import re
from typing import Optional

from google import genai
from google.genai import types
from mistralai import Mistral
from pydantic import ValidationError

from config import Settings, get_settings
from models import DECK_SLIDE_COUNT, Deck, ImageQuality, SlideKind, VoiceAccent

logger = logging.getLogger(__name__)

CREDENTIALS_ERROR_MARKER = "Requested entity was not found"

IMAGE_STYLE_SUFFIX = (
    "3D claymation style, soft lighting, depth of field, "
    "mint green and soft purple colors. Bold legible labels."
)

# accent -> (backend voice, accent instruction for the prompt)
VOICES = {
    VoiceAccent.AMERICAN: ("Kore", "American English"),
    VoiceAccent.BRITISH: ("Puck", "refined British English"),
    VoiceAccent.INDIAN: ("Kore", "warm Indian English"),
    VoiceAccent.NIGERIAN: ("Kore", "lively Nigerian English"),
}

SPOKEN_SYMBOLS = [
    ("Σ", "sum of "),
    ("Δ", "change in "),
    ("≠", "is not equal to "),
    ("≈", "is approximately "),
    ("±", "plus or minus "),
]
MARKUP_CHARS = re.compile(r"[$#@*^{}\[\]]")

DECK_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "topic": {"type": "STRING"},
        "slides": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "kind": {"type": "STRING", "enum": [k.value for k in SlideKind]},
                    "title": {"type": "STRING"},
                    "content": {"type": "STRING"},
                    "narrationScript": {"type": "STRING"},
                    "narrationDurationEstimate": {"type": "NUMBER"},
                    "visualPrompt": {"type": "STRING"},
                    "vocabulary": {
                        "type": "ARRAY",
                        "items": {
                            "type": "OBJECT",
                            "properties": {
                                "term": {"type": "STRING"},
                                "definition": {"type": "STRING"},
                            },
                            "required": ["term", "definition"],
                        },
                    },
                    "quiz": {
                        "type": "OBJECT",
                        "properties": {
                            "question": {"type": "STRING"},
                            "options": {"type": "ARRAY", "items": {"type": "STRING"}},
                            "correctIndex": {"type": "INTEGER"},
                        },
                        "required": ["question", "options", "correctIndex"],
                    },
                },
                "required": ["kind", "title", "content", "narrationScript", "narrationDurationEstimate"],
            },
        },
    },
    "required": ["topic", "slides"],
}


class GenerationError(Exception):
    """The deck request failed or returned unusable content."""


class CredentialsError(GenerationError):
    """The backend could not find the project/key: billing or credentials are misconfigured."""


def is_credentials_error(exc: BaseException) -> bool:
    return isinstance(exc, CredentialsError) or CREDENTIALS_ERROR_MARKER in str(exc)


def sanitize_narration(text: str) -> str:
    """Spell out math symbols and drop markup the synthesizer would read aloud."""
    for symbol, spoken in SPOKEN_SYMBOLS:
        text = text.replace(symbol, spoken)
    return MARKUP_CHARS.sub("", text)


def build_deck_prompt(topic: str, with_schema: bool = False) -> str:
    prompt = f"""
    Act as a Lead Educational Engineer. Your mission is to generate a high-quality {DECK_SLIDE_COUNT}-slide educational deck from this competency: "{topic}".

    UNIVERSAL CONTENT REFINEMENT: "THE SCAFFOLDING RULE"
    1. Audience Calibration: Determine the target audience's likely age (e.g., 10yo vs 17yo).
       - For Younger Learners (K-8): Use "Concrete-Relatable" language and analogies involving playgrounds or toys.
       - For Older Learners (9-12+): Use "Advanced Academic" language and analogies involving driving, professional sports, or technology.
    2. Concept Progression: Every explanation must follow this strict 3-sentence structure:
       - Sentence 1 (The Anchor): State the concept clearly using age-appropriate technical terms.
       - Sentence 2 (The Elaborated Analogy): Bridge the concept to a common relevant experience.
       - Sentence 3 (The Application): Explain its real-world importance based on the competency.
    3. No Bullets: Use cohesive, descriptive mini-paragraphs. No lists. The narration must sound like a professional talk.

    SLIDE KINDS: {", ".join(k.value for k in SlideKind)}.
    - VOCABULARY slides carry a "vocabulary" list of term/definition pairs.
    - SCENARIO and CONCLUSION slides carry a "quiz" with a question, options and the correctIndex.

    AUDIO & SYNC LOGIC:
    - narrationScript: REQUIRED FOR ALL SLIDES. Podcast-quality conversational narration (50-100 words).
    - Integrated Visual Narration: For DEEP_DIVE slides, the script MUST reference the image (e.g., "If you look at the diagram on the right, you can see the purple arrow...").
    - Quiz Narrations: Provide a "Hint-style overview" that helps the learner reason through the problem.
    - Clean Scripting: Do not use math symbols like Σ, Δ, or LaTeX. Use full words (e.g., "sum of", "change in").

    VISUAL REQUIREMENTS:
    - visualPrompt: Detailed prompt for a "3D claymation" style infographic. Specify layout (split-screen comparison or hero diagram) and use mint green and soft purple colors with bold text labels.
    """
    if with_schema:
        prompt += f"""
    Return ONLY valid JSON matching this schema, with no prose before or after it:
    {json.dumps(DECK_SCHEMA)}
    """
    return prompt


def clean_llm_output(text: str) -> str:
    """Remove markdown fences and extract JSON block if present."""
    text = text.strip()
    text = re.sub(r"^```[a-zA-Z]*\n?", "", text)
    text = re.sub(r"```$", "", text)
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        return match.group(0)
    return text


def parse_deck(text: Optional[str]) -> Deck:
    if not text or not text.strip():
        raise GenerationError("No content generated")
    try:
        deck = Deck.model_validate(json.loads(clean_llm_output(text)))
    except json.JSONDecodeError as e:
        raise GenerationError(f"Malformed deck JSON: {e}") from e
    except ValidationError as e:
        raise GenerationError(f"Deck does not match schema: {e}") from e

    if len(deck.slides) != DECK_SLIDE_COUNT:
        logger.warning(f"[LLM] Deck has {len(deck.slides)} slides, expected {DECK_SLIDE_COUNT}")
    return deck


class GenerationClient:
    """Typed boundary to the generative backend (deck text, slide images, narration)."""

    def __init__(self, settings: Optional[Settings] = None, gemini=None, mistral=None):
        self.settings = settings or get_settings()
        if not self.settings.gemini_api_key and gemini is None:
            logger.warning("GEMINI_API_KEY is not set.")
        self._gemini = gemini
        self._mistral = mistral

    @property
    def gemini(self) -> genai.Client:
        # Created on first use: the SDK refuses to build a client without a key
        if self._gemini is None:
            self._gemini = genai.Client(api_key=self.settings.gemini_api_key)
        return self._gemini

    @property
    def mistral(self) -> Mistral:
        if self._mistral is None:
            self._mistral = Mistral(api_key=self.settings.mistral_api_key)
        return self._mistral

    async def generate_deck_text(self, topic: str) -> Deck:
        """Request the whole deck. Raises GenerationError; never returns a partial deck."""
        logger.info(f"[LLM] Requesting deck for topic: {topic!r} (provider={self.settings.deck_provider})")
        try:
            if self.settings.deck_provider == "mistral":
                text = await self._deck_text_mistral(topic)
            else:
                text = await self._deck_text_gemini(topic)
        except Exception as e:
            if CREDENTIALS_ERROR_MARKER in str(e):
                raise CredentialsError(str(e)) from e
            raise GenerationError(f"Deck request failed: {e}") from e

        deck = parse_deck(text)
        logger.info(f"[LLM] Deck received: {len(deck.slides)} slides")
        return deck

    async def _deck_text_gemini(self, topic: str) -> Optional[str]:
        response = await self.gemini.aio.models.generate_content(
            model=self.settings.deck_model,
            contents=build_deck_prompt(topic),
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=DECK_SCHEMA,
            ),
        )
        return response.text

    async def _deck_text_mistral(self, topic: str) -> Optional[str]:
        response = await self.mistral.chat.complete_async(
            model=self.settings.mistral_model,
            messages=[{"role": "user", "content": build_deck_prompt(topic, with_schema=True)}],
            response_format={"type": "json_object"},
        )
        if not response or not response.choices:
            return None
        return response.choices[0].message.content

    def _image_request(self, quality: ImageQuality):
        if quality == ImageQuality.LOW:
            return self.settings.image_model_fast, types.ImageConfig(aspect_ratio="16:9")
        image_size = "4K" if quality == ImageQuality.HIGH else "2K"
        return self.settings.image_model_pro, types.ImageConfig(aspect_ratio="16:9", image_size=image_size)

    async def generate_slide_image(self, prompt: str, quality: ImageQuality) -> Optional[str]:
        """Returns a data URL, or None when the backend fails or sends no image."""
        model, image_config = self._image_request(quality)
        try:
            response = await self.gemini.aio.models.generate_content(
                model=model,
                contents=f"{prompt}. {IMAGE_STYLE_SUFFIX}",
                config=types.GenerateContentConfig(image_config=image_config),
            )
        except Exception as e:
            logger.warning(f"[LLM] Image generation failed: {e}")
            return None

        for candidate in response.candidates or []:
            parts = candidate.content.parts if candidate.content else None
            for part in parts or []:
                if part.inline_data and part.inline_data.data:
                    mime_type = part.inline_data.mime_type or "image/png"
                    encoded = base64.b64encode(part.inline_data.data).decode("ascii")
                    return f"data:{mime_type};base64,{encoded}"

        logger.warning("[LLM] Image response carried no image data")
        return None

    async def generate_slide_audio(self, text: str, accent: VoiceAccent) -> Optional[str]:
        """Returns base64 raw PCM (16-bit mono 24 kHz), or None on failure."""
        voice_name, accent_instruction = VOICES[accent]
        prompt = f"Speak naturally in a {accent_instruction} accent: {sanitize_narration(text)}"
        try:
            response = await self.gemini.aio.models.generate_content(
                model=self.settings.tts_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=types.SpeechConfig(
                        voice_config=types.VoiceConfig(
                            prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name)
                        )
                    ),
                ),
            )
            data = response.candidates[0].content.parts[0].inline_data.data
        except Exception as e:
            logger.warning(f"[LLM] Audio generation failed: {e}")
            return None

        if not data:
            return None
        return base64.b64encode(data).decode("ascii")
