import base64
import struct

import pytest

from models import Deck, Slide, SlideKind

KIND_CYCLE = [
    SlideKind.INTRO,
    SlideKind.DEEP_DIVE,
    SlideKind.VOCABULARY,
    SlideKind.DEEP_DIVE,
    SlideKind.SCENARIO,
]


def make_slide(kind: SlideKind, index: int, **overrides) -> Slide:
    fields = {
        "kind": kind,
        "title": f"Slide {index}",
        "content": f"Content for slide {index}.",
        "narration_script": f"Narration for slide {index}.",
        "narration_duration_estimate": 30,
    }
    if kind == SlideKind.DEEP_DIVE:
        fields["visual_prompt"] = f"diagram {index}"
    if kind == SlideKind.VOCABULARY:
        fields["vocabulary"] = [{"term": "Demand", "definition": "Desire backed by ability to pay"}]
    if kind in (SlideKind.SCENARIO, SlideKind.CONCLUSION):
        fields["quiz"] = {"question": "Which?", "options": ["A", "B", "C"], "correct_index": 1}
    fields.update(overrides)
    return Slide(**fields)


def make_deck(topic: str = "supply and demand", count: int = 15) -> Deck:
    slides = [make_slide(KIND_CYCLE[i % len(KIND_CYCLE)], i) for i in range(count - 1)]
    slides.append(make_slide(SlideKind.CONCLUSION, count - 1))
    return Deck(topic=topic, slides=slides)


def pcm_base64(samples) -> str:
    return base64.b64encode(struct.pack(f"<{len(samples)}h", *samples)).decode("ascii")


class FakeClient:
    """Stands in for GenerationClient; positions listed in fail_* raise."""

    def __init__(self, deck=None, deck_error=None, fail_images=(), fail_audio=(), empty_images=()):
        self.deck = deck or make_deck()
        self.deck_error = deck_error
        self.fail_images = set(fail_images)
        self.fail_audio = set(fail_audio)
        self.empty_images = set(empty_images)
        self.deck_calls = []
        self.image_calls = []
        self.audio_calls = []

    def _position(self, field, value):
        return next(i for i, s in enumerate(self.deck.slides) if getattr(s, field) == value)

    async def generate_deck_text(self, topic):
        self.deck_calls.append(topic)
        if self.deck_error:
            raise self.deck_error
        return self.deck

    async def generate_slide_image(self, prompt, quality):
        position = self._position("visual_prompt", prompt)
        self.image_calls.append((position, quality))
        if position in self.fail_images:
            raise RuntimeError(f"image {position} exploded")
        if position in self.empty_images:
            return None
        return f"data:image/png;base64,IMG{position}"

    async def generate_slide_audio(self, text, accent):
        position = self._position("narration_script", text)
        self.audio_calls.append((position, accent))
        if position in self.fail_audio:
            raise RuntimeError(f"audio {position} exploded")
        return pcm_base64([position, -position, 0, 1])


@pytest.fixture
def deck():
    return make_deck()


@pytest.fixture
def fake_client(deck):
    return FakeClient(deck=deck)
