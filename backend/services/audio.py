import base64
import binascii
import io
import logging
import os
import uuid
from dataclasses import dataclass

from pydub import AudioSegment

logger = logging.getLogger(__name__)

# Narration arrives as headerless PCM in this fixed format
SAMPLE_RATE = 24000
CHANNELS = 1
SAMPLE_WIDTH = 2  # bytes, 16-bit


class AudioDecodeError(ValueError):
    pass


def decode_pcm(pcm_base64: str) -> AudioSegment:
    try:
        raw = base64.b64decode(pcm_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"Invalid base64 audio payload: {e}") from e

    if len(raw) % (SAMPLE_WIDTH * CHANNELS):
        raise AudioDecodeError(f"Payload of {len(raw)} bytes is not whole 16-bit mono frames")

    return AudioSegment(data=raw, sample_width=SAMPLE_WIDTH, frame_rate=SAMPLE_RATE, channels=CHANNELS)


def pcm_to_wav(pcm_base64: str) -> bytes:
    """Wrap base64 raw PCM in a RIFF/WAVE header (mono, 16-bit, 24 kHz)."""
    segment = decode_pcm(pcm_base64)
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()


@dataclass
class AudioHandle:
    url: str
    path: str
    duration_seconds: float
    released: bool = False


class AudioStore:
    """
    Decoded narration files served under /audio.
    Every handle is transient: callers release it before decoding the next one.
    """

    def __init__(self, directory: str, url_prefix: str = "/audio"):
        self.directory = directory
        self.url_prefix = url_prefix.rstrip("/")
        os.makedirs(directory, exist_ok=True)
        self.clear_stale()

    def clear_stale(self) -> int:
        """Delete WAV files left behind by a previous process."""
        removed = 0
        for filename in os.listdir(self.directory):
            if not filename.endswith(".wav"):
                continue
            try:
                os.remove(os.path.join(self.directory, filename))
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove stale audio {filename}: {e}")
        if removed:
            logger.info(f"Removed {removed} stale narration files from {self.directory}")
        return removed

    def create(self, pcm_base64: str) -> AudioHandle:
        segment = decode_pcm(pcm_base64)
        filename = f"{uuid.uuid4().hex}.wav"
        path = os.path.join(self.directory, filename)
        with open(path, "wb") as f:
            segment.export(f, format="wav")
        return AudioHandle(
            url=f"{self.url_prefix}/{filename}",
            path=path,
            duration_seconds=segment.duration_seconds,
        )

    def release(self, handle: AudioHandle) -> None:
        if handle.released:
            return
        handle.released = True
        try:
            if os.path.exists(handle.path):
                os.remove(handle.path)
        except OSError as e:
            logger.warning(f"Failed to release audio {handle.path}: {e}")
