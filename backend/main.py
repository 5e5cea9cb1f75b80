import logging
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import get_settings
from models import (
    AssetBundle,
    CreateSessionRequest,
    GenerateRequest,
    ImageQuality,
    PlaybackInfo,
    QuizAnswerRequest,
    QuizResult,
    SessionView,
    VoiceAccent,
)
from services.audio import AudioDecodeError, AudioStore
from services.llm import GenerationClient
from services.orchestrator import GenerationOrchestrator
from session import DeckSession, SessionRegistry, SessionStateError

settings = get_settings()

# Setup Logging
logging.basicConfig(level=settings.log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="DeepDeck", version="1.0")

# Decoded narration files are served from here
audio_store = AudioStore(settings.audio_dir)
app.mount("/audio", StaticFiles(directory=settings.audio_dir), name="audio")

# Allow CORS for Frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

generation_client = GenerationClient(settings)
orchestrator = GenerationOrchestrator(generation_client)

sessions = SessionRegistry(settings.session_ttl_seconds, settings.max_sessions)


def get_session(session_id: str) -> DeckSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def start_generation(
    session: DeckSession,
    background_tasks: BackgroundTasks,
    topic: str,
    quality: ImageQuality,
    accent: VoiceAccent,
) -> bool:
    try:
        accepted = session.submit(topic, quality, accent)
    except SessionStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if accepted:
        logger.info(f"Session {session.id}: generating deck for {session.topic!r} "
                    f"(quality={quality.value}, accent={accent.value})")
        background_tasks.add_task(session.run, orchestrator)
    return accepted


@app.get("/api/health")
def read_root():
    return {"message": "DeepDeck Backend is ready"}


@app.post("/sessions", response_model=SessionView)
def create_session(background_tasks: BackgroundTasks, request: Optional[CreateSessionRequest] = None):
    session = DeckSession(audio_store)
    sessions.add(session)
    logger.info(f"Created session {session.id}")

    if request and request.topic:
        start_generation(session, background_tasks, request.topic, request.quality, request.accent)
    return session.view()


@app.get("/share", response_model=SessionView)
def open_shared_link(background_tasks: BackgroundTasks, topic: str = Query(...)):
    """Shared links auto-start generation with default quality and voice."""
    session = DeckSession(audio_store)
    sessions.add(session)
    logger.info(f"Created session {session.id} from shared link")
    start_generation(session, background_tasks, topic, ImageQuality.LOW, VoiceAccent.AMERICAN)
    return session.view()


@app.get("/sessions/{session_id}", response_model=SessionView)
def read_session(session_id: str):
    return get_session(session_id).view()


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    get_session(session_id)
    sessions.remove(session_id)
    return {"message": "Session deleted"}


@app.post("/sessions/{session_id}/generate")
def generate_deck(session_id: str, request: GenerateRequest, background_tasks: BackgroundTasks):
    session = get_session(session_id)
    accepted = start_generation(session, background_tasks, request.topic, request.quality, request.accent)
    return {"accepted": accepted, "session": session.view().model_dump(mode="json", by_alias=True)}


@app.get("/sessions/{session_id}/bundle", response_model=AssetBundle, response_model_by_alias=True)
def read_bundle(session_id: str):
    session = get_session(session_id)
    try:
        session.require_ready()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.bundle


def _transition(session_id: str, action) -> SessionView:
    session = get_session(session_id)
    try:
        action(session)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.view()


@app.post("/sessions/{session_id}/next", response_model=SessionView)
def next_slide(session_id: str):
    return _transition(session_id, lambda s: s.next())


@app.post("/sessions/{session_id}/previous", response_model=SessionView)
def previous_slide(session_id: str):
    return _transition(session_id, lambda s: s.previous())


@app.post("/sessions/{session_id}/goto/{index}", response_model=SessionView)
def goto_slide(session_id: str, index: int):
    return _transition(session_id, lambda s: s.go_to(index))


@app.post("/sessions/{session_id}/restart", response_model=SessionView)
def restart_session(session_id: str):
    return _transition(session_id, lambda s: s.restart())


@app.post("/sessions/{session_id}/mute", response_model=SessionView)
def toggle_mute(session_id: str):
    return _transition(session_id, lambda s: s.toggle_mute())


@app.get("/sessions/{session_id}/audio", response_model=Optional[PlaybackInfo])
def play_current_slide(session_id: str):
    session = get_session(session_id)
    try:
        handle = session.play_current()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AudioDecodeError as e:
        logger.error(f"Session {session_id}: narration for slide {session.slide_index} undecodable: {e}")
        return None
    if handle is None:
        return None
    return PlaybackInfo(url=handle.url, duration_seconds=handle.duration_seconds)


@app.post("/sessions/{session_id}/quiz/{slide_index}", response_model=QuizResult)
def answer_quiz(session_id: str, slide_index: int, request: QuizAnswerRequest):
    session = get_session(session_id)
    try:
        return session.answer_quiz(slide_index, request.option)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/sessions/{session_id}/share")
def share_session(session_id: str):
    session = get_session(session_id)
    try:
        return {"url": session.share_link(settings.public_base_url)}
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
