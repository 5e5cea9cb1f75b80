import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

from models import (
    AssetBundle,
    ErrorKind,
    ImageQuality,
    QuizResult,
    QuizScore,
    SessionState,
    SessionView,
    Slide,
    VoiceAccent,
)
from services.audio import AudioHandle, AudioStore
from services.llm import is_credentials_error
from services.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Failed to generate content. Please check your connection and try again."
CREDENTIALS_ERROR_MESSAGE = (
    "API configuration error. Please select a valid project with an active billing account."
)


class SessionStateError(Exception):
    pass


class DeckSession:
    """
    Player state for one browser client.

    INPUT --submit--> LOADING --success--> READY
                              --failure--> ERROR
    READY/ERROR --restart--> INPUT, READY/ERROR --submit--> LOADING

    Routes run in a threadpool, so every mutation holds the session lock.
    """

    def __init__(self, audio_store: AudioStore, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.audio_store = audio_store
        self.state = SessionState.INPUT
        self.topic = ""
        self.quality = ImageQuality.LOW
        self.accent = VoiceAccent.AMERICAN
        self.loading_step = ""
        self.bundle: Optional[AssetBundle] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.slide_index = 0
        self.muted = False
        self.playback: Optional[AudioHandle] = None
        self.quiz_answers: Dict[int, int] = {}
        self.closed = False
        self.last_touched = time.monotonic()
        self._lock = threading.RLock()

    # --- Lifecycle ---

    def submit(self, topic: str, quality: ImageQuality, accent: VoiceAccent) -> bool:
        """Start a run. Returns False (and changes nothing) while a run is in flight."""
        with self._lock:
            if self.state == SessionState.LOADING:
                logger.info(f"Session {self.id}: submit ignored, generation already in progress")
                return False
            if not topic or not topic.strip():
                raise SessionStateError("Topic is empty")

            self._discard_bundle()
            self.topic = topic.strip()
            self.quality = quality
            self.accent = accent
            self.error = None
            self.error_kind = None
            self.loading_step = ""
            self.state = SessionState.LOADING
            return True

    def set_progress(self, step: str):
        self.loading_step = step

    def succeed(self, bundle: AssetBundle):
        with self._lock:
            if self.closed:
                logger.info(f"Session {self.id} closed during generation, result dropped")
                return
            self.bundle = bundle
            self.slide_index = 0
            self.quiz_answers = {}
            self.loading_step = ""
            self.state = SessionState.READY

    def fail(self, exc: BaseException):
        with self._lock:
            if self.closed:
                return
            if is_credentials_error(exc):
                self.error_kind = ErrorKind.CREDENTIALS
                self.error = CREDENTIALS_ERROR_MESSAGE
            else:
                self.error_kind = ErrorKind.GENERIC
                self.error = GENERIC_ERROR_MESSAGE
            self.loading_step = ""
            self.state = SessionState.ERROR

    async def run(self, orchestrator: GenerationOrchestrator):
        """Execute the run started by submit() and land in READY or ERROR."""
        try:
            bundle = await orchestrator.generate(
                self.topic, self.quality, self.accent, on_progress=self.set_progress
            )
        except Exception as e:
            logger.error(f"Session {self.id}: generation failed: {e}", exc_info=True)
            self.fail(e)
            return
        self.succeed(bundle)

    def restart(self):
        with self._lock:
            if self.state == SessionState.LOADING:
                raise SessionStateError("Cannot restart while generating")
            self._discard_bundle()
            self.topic = ""
            self.error = None
            self.error_kind = None
            self.state = SessionState.INPUT

    def close(self):
        with self._lock:
            self.closed = True
            self._discard_bundle()

    def _discard_bundle(self):
        self.stop_playback()
        self.bundle = None
        self.slide_index = 0
        self.quiz_answers = {}

    # --- Navigation ---

    def require_ready(self):
        if self.state != SessionState.READY or self.bundle is None:
            raise SessionStateError(f"Deck is not ready (state={self.state.value})")

    @property
    def slide_count(self) -> int:
        return len(self.bundle.deck.slides) if self.bundle else 0

    @property
    def current_slide(self) -> Optional[Slide]:
        if not self.bundle or not self.bundle.deck.slides:
            return None
        return self.bundle.deck.slides[self.slide_index]

    def go_to(self, index: int) -> int:
        with self._lock:
            self.require_ready()
            index = max(0, min(index, self.slide_count - 1))
            if index != self.slide_index:
                self.stop_playback()
                self.slide_index = index
            return self.slide_index

    def next(self) -> int:
        with self._lock:
            self.require_ready()
            return self.go_to(self.slide_index + 1)

    def previous(self) -> int:
        with self._lock:
            self.require_ready()
            return self.go_to(self.slide_index - 1)

    # --- Audio ---

    def toggle_mute(self) -> bool:
        """Player control: only a READY deck can be muted or unmuted."""
        with self._lock:
            self.require_ready()
            self.muted = not self.muted
            if self.muted:
                self.stop_playback()
            return self.muted

    def stop_playback(self):
        with self._lock:
            if self.playback is not None:
                self.audio_store.release(self.playback)
                self.playback = None

    def play_current(self) -> Optional[AudioHandle]:
        """Replace the active handle with one for the current slide (None if muted or silent)."""
        with self._lock:
            self.require_ready()
            self.stop_playback()
            if self.muted:
                return None
            pcm = self.bundle.audio.get(self.slide_index)
            if not pcm:
                return None
            self.playback = self.audio_store.create(pcm)
            return self.playback

    # --- Quiz ---

    def answer_quiz(self, slide_index: int, option: int) -> QuizResult:
        with self._lock:
            self.require_ready()
            if not 0 <= slide_index < self.slide_count:
                raise SessionStateError(f"No slide at position {slide_index}")
            quiz = self.bundle.deck.slides[slide_index].quiz
            if quiz is None:
                raise SessionStateError(f"Slide {slide_index} has no quiz")
            if not 0 <= option < len(quiz.options):
                raise SessionStateError(f"Option {option} out of range")

            # First answer is final
            selected = self.quiz_answers.setdefault(slide_index, option)
        return QuizResult(
            slide_index=slide_index,
            selected=selected,
            correct_index=quiz.correct_index,
            correct=quiz.is_correct(selected),
        )

    def score(self) -> Optional[QuizScore]:
        if not self.bundle:
            return None
        quizzes = {i: s.quiz for i, s in enumerate(self.bundle.deck.slides) if s.quiz}
        correct = sum(1 for i, opt in self.quiz_answers.items() if quizzes[i].is_correct(opt))
        return QuizScore(answered=len(self.quiz_answers), correct=correct, total=len(quizzes))

    # --- Sharing / views ---

    def share_link(self, base_url: str) -> str:
        if not self.topic:
            raise SessionStateError("Nothing to share yet")
        return f"{base_url.rstrip('/')}/share?{urlencode({'topic': self.topic})}"

    def view(self) -> SessionView:
        with self._lock:
            return self._view()

    def _view(self) -> SessionView:
        slide = self.current_slide if self.state == SessionState.READY else None
        return SessionView(
            id=self.id,
            state=self.state,
            topic=self.topic,
            quality=self.quality,
            accent=self.accent,
            loading_step=self.loading_step,
            error=self.error,
            error_kind=self.error_kind,
            reselect_credentials=self.error_kind == ErrorKind.CREDENTIALS,
            slide_index=self.slide_index,
            slide_count=self.slide_count,
            muted=self.muted,
            slide=slide,
            image=self.bundle.images.get(self.slide_index) if slide else None,
            has_audio=bool(slide and self.slide_index in self.bundle.audio),
            score=self.score(),
        )


class SessionRegistry:
    """
    Live sessions, least recently used first.
    Sessions idle longer than `ttl_seconds` are closed and dropped, and the
    oldest ones are evicted once more than `max_sessions` exist.
    """

    def __init__(self, ttl_seconds: float, max_sessions: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self.clock = clock
        self._sessions: "OrderedDict[str, DeckSession]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def add(self, session: DeckSession) -> DeckSession:
        with self._lock:
            session.last_touched = self.clock()
            self._sessions[session.id] = session
            self._evict()
        return session

    def get(self, session_id: str) -> Optional[DeckSession]:
        with self._lock:
            self._evict()
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_touched = self.clock()
                self._sessions.move_to_end(session_id)
            return session

    def remove(self, session_id: str) -> Optional[DeckSession]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
        return session

    def clear(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def _evict(self):
        now = self.clock()
        expired = [sid for sid, s in self._sessions.items() if now - s.last_touched > self.ttl_seconds]
        while len(self._sessions) - len(expired) > self.max_sessions:
            oldest = next(sid for sid in self._sessions if sid not in expired)
            expired.append(oldest)
        for session_id in expired:
            logger.info(f"Evicting idle session {session_id}")
            self._sessions.pop(session_id).close()
