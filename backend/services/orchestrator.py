"""
Generation run: deck text first, then every image and narration request
concurrently. Only the deck request can fail the run; each asset request is
settled into a tagged result so one failure never aborts the batch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from models import AssetBundle, Deck, ImageQuality, VoiceAccent

logger = logging.getLogger(__name__)

STEP_DECK = "Generating course structure (15 slides)..."
STEP_ASSETS = "Designing infographics and recording audio..."


@dataclass(frozen=True)
class Success:
    position: int
    value: Any


@dataclass(frozen=True)
class Failure:
    position: int
    reason: str


Settled = Union[Success, Failure]


async def settle(position: int, awaitable: Awaitable[Any]) -> Settled:
    """Await one asset request; exceptions and empty results become a Failure."""
    try:
        value = await awaitable
    except Exception as e:
        return Failure(position, str(e) or type(e).__name__)
    if value is None:
        return Failure(position, "no asset returned")
    return Success(position, value)


def image_positions(deck: Deck) -> List[int]:
    return [i for i, slide in enumerate(deck.slides) if slide.wants_image]


def audio_positions(deck: Deck) -> List[int]:
    return [i for i, slide in enumerate(deck.slides) if slide.has_narration]


def fold(results: Iterable[Settled], label: str) -> Dict[int, Any]:
    assets = {}
    for result in results:
        if isinstance(result, Success):
            assets[result.position] = result.value
        else:
            logger.warning(f"[Orchestrator] {label} for slide {result.position} unavailable: {result.reason}")
    return assets


class GenerationOrchestrator:
    def __init__(self, client):
        self.client = client

    async def generate(
        self,
        topic: str,
        quality: ImageQuality,
        accent: VoiceAccent,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> AssetBundle:
        def progress(step: str):
            logger.info(f"[Orchestrator] {step}")
            if on_progress:
                on_progress(step)

        # 1. Deck text (fatal on failure)
        progress(STEP_DECK)
        deck = await self.client.generate_deck_text(topic)

        # 2. Which slides get images / narration
        image_slots = image_positions(deck)
        audio_slots = audio_positions(deck)

        # 3. Fan out both groups at once
        progress(STEP_ASSETS)
        image_tasks = [
            settle(i, self.client.generate_slide_image(deck.slides[i].visual_prompt, quality))
            for i in image_slots
        ]
        audio_tasks = [
            settle(i, self.client.generate_slide_audio(deck.slides[i].narration_script, accent))
            for i in audio_slots
        ]
        image_results, audio_results = await asyncio.gather(
            asyncio.gather(*image_tasks),
            asyncio.gather(*audio_tasks),
        )

        # 4. Fold into sparse maps
        bundle = AssetBundle(
            deck=deck,
            images=fold(image_results, "Image"),
            audio=fold(audio_results, "Audio"),
        )
        logger.info(
            f"[Orchestrator] Run complete: {len(bundle.images)}/{len(image_slots)} images, "
            f"{len(bundle.audio)}/{len(audio_slots)} narrations"
        )
        return bundle
