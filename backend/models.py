from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DECK_SLIDE_COUNT = 15


class CamelModel(BaseModel):
    # JSON uses camelCase, Python code uses snake_case; both are accepted
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SlideKind(str, Enum):
    INTRO = "INTRO"
    DEEP_DIVE = "DEEP_DIVE"
    VOCABULARY = "VOCABULARY"
    SCENARIO = "SCENARIO"
    CONCLUSION = "CONCLUSION"


class ImageQuality(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class VoiceAccent(str, Enum):
    AMERICAN = "American"
    BRITISH = "British"
    INDIAN = "Indian"
    NIGERIAN = "Nigerian"


class VocabularyItem(CamelModel):
    term: str
    definition: str


class QuizData(CamelModel):
    question: str
    options: List[str]
    correct_index: int

    def is_correct(self, option: int) -> bool:
        return option == self.correct_index


class Slide(CamelModel):
    kind: SlideKind
    title: str
    content: str
    narration_script: str = ""
    narration_duration_estimate: float = 0.0
    visual_prompt: Optional[str] = None
    vocabulary: Optional[List[VocabularyItem]] = None
    quiz: Optional[QuizData] = None

    @property
    def wants_image(self) -> bool:
        return self.kind == SlideKind.DEEP_DIVE and bool((self.visual_prompt or "").strip())

    @property
    def has_narration(self) -> bool:
        return bool(self.narration_script.strip())


class Deck(CamelModel):
    topic: str
    slides: List[Slide]


class AssetBundle(CamelModel):
    """Deck plus sparse position -> asset maps for one generation run."""
    deck: Deck
    images: Dict[int, str] = Field(default_factory=dict)  # position -> data URL
    audio: Dict[int, str] = Field(default_factory=dict)   # position -> base64 PCM


# --- Session / API payloads ---

class SessionState(str, Enum):
    INPUT = "INPUT"
    LOADING = "LOADING"
    READY = "READY"
    ERROR = "ERROR"


class ErrorKind(str, Enum):
    GENERIC = "generic"
    CREDENTIALS = "credentials"


class GenerateRequest(CamelModel):
    topic: str
    quality: ImageQuality = ImageQuality.LOW
    accent: VoiceAccent = VoiceAccent.AMERICAN


class CreateSessionRequest(CamelModel):
    topic: Optional[str] = None
    quality: ImageQuality = ImageQuality.LOW
    accent: VoiceAccent = VoiceAccent.AMERICAN


class QuizAnswerRequest(CamelModel):
    option: int


class QuizResult(CamelModel):
    slide_index: int
    selected: int
    correct_index: int
    correct: bool


class QuizScore(CamelModel):
    answered: int
    correct: int
    total: int


class PlaybackInfo(CamelModel):
    url: str
    duration_seconds: float


class SessionView(CamelModel):
    id: str
    state: SessionState
    topic: str = ""
    quality: ImageQuality = ImageQuality.LOW
    accent: VoiceAccent = VoiceAccent.AMERICAN
    loading_step: str = ""
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reselect_credentials: bool = False
    slide_index: int = 0
    slide_count: int = 0
    muted: bool = False
    slide: Optional[Slide] = None
    image: Optional[str] = None
    has_audio: bool = False
    score: Optional[QuizScore] = None
