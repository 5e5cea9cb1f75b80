import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file BEFORE services read them
load_dotenv()


@dataclass(frozen=True)
class Settings:
    gemini_api_key: Optional[str]
    mistral_api_key: Optional[str]
    deck_provider: str = "gemini"
    deck_model: str = "gemini-3-pro-preview"
    mistral_model: str = "mistral-large-latest"
    image_model_fast: str = "gemini-2.5-flash-image"
    image_model_pro: str = "gemini-3-pro-image-preview"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    audio_dir: str = "temp/audio"
    public_base_url: str = "http://127.0.0.1:8000"
    session_ttl_seconds: float = 3600.0
    max_sessions: int = 100
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY"),
        mistral_api_key=os.getenv("MISTRAL_API_KEY"),
        deck_provider=os.getenv("DECK_PROVIDER", "gemini").lower(),
        deck_model=os.getenv("DECK_MODEL", "gemini-3-pro-preview"),
        mistral_model=os.getenv("MISTRAL_MODEL", "mistral-large-latest"),
        image_model_fast=os.getenv("IMAGE_MODEL_FAST", "gemini-2.5-flash-image"),
        image_model_pro=os.getenv("IMAGE_MODEL_PRO", "gemini-3-pro-image-preview"),
        tts_model=os.getenv("TTS_MODEL", "gemini-2.5-flash-preview-tts"),
        audio_dir=os.getenv("AUDIO_DIR", "temp/audio"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000").rstrip("/"),
        session_ttl_seconds=float(os.getenv("SESSION_TTL_SECONDS", "3600")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "100")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
