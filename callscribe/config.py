"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


def split_csv(value: str) -> list[str]:
    """Comma-separated setting → list of non-empty, stripped tokens."""
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Telephony input: 8-bit mu-law @ 8kHz. Transcription wants PCM 16-bit mono @ 16kHz.
    SOURCE_SAMPLE_RATE: int = 8000
    UPSAMPLE_FACTOR: int = 2
    SAMPLE_WIDTH: int = 2  # 16-bit
    CHANNELS: int = 1

    # Noise floor: |sample| below threshold → 0; the rest is scaled and clamped to int16
    NOISE_GATE_THRESHOLD: int = 64
    AUDIO_GAIN: float = 1.5

    # Tracks accepted from the media stream (comma-separated). Frames without a track are always kept.
    MEDIA_ACCEPTED_TRACKS: str = "inbound"

    # Chunk buffer: flush every N seconds, or immediately once this much audio is buffered
    CHUNK_INTERVAL_SECONDS: float = 2.0
    CHUNK_MAX_SECONDS: float = 10.0

    # Transcription provider (HTTP: upload → job id → poll status)
    TRANSCRIPTION_PROVIDER: Literal["assemblyai"] = "assemblyai"
    TRANSCRIPTION_API_KEY: str = ""
    TRANSCRIPTION_BASE_URL: str = "https://api.assemblyai.com/v2"
    TRANSCRIPTION_LANGUAGE: str = "en_us"
    TRANSCRIPTION_HTTP_TIMEOUT_SECONDS: float = 30.0
    POLL_INTERVAL_SECONDS: float = 1.0
    POLL_MAX_ATTEMPTS: int = 15

    # Chunks below this confidence never reach the aggregator
    MIN_TRANSCRIPT_CONFIDENCE: float = 0.2

    # Sentence aggregation
    AGGREGATOR_MAX_AGE_SECONDS: float = 4.0
    AGGREGATOR_MIN_WORDS: int = 15
    AGGREGATOR_TICK_SECONDS: float = 0.5

    # Session timers
    RESULTS_WATCHDOG_SECONDS: float = 8.0
    DRAIN_TIMEOUT_SECONDS: float = 30.0
    PREREGISTER_TTL_SECONDS: float = 300.0

    # Connection classification (comma-separated)
    MEDIA_USER_AGENT_MARKERS: str = "TwilioMediaStreams"
    MEDIA_SUBPROTOCOLS: str = "audio.stream,media-stream"
    OBSERVER_SUBPROTOCOLS: str = "observer,dashboard"

    # Per-observer outbound queue; events beyond this are dropped for that observer
    OBSERVER_QUEUE_SIZE: int = 256

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def target_sample_rate(self) -> int:
        return self.SOURCE_SAMPLE_RATE * self.UPSAMPLE_FACTOR

    @property
    def chunk_max_bytes(self) -> int:
        return int(self.CHUNK_MAX_SECONDS * self.target_sample_rate) * self.SAMPLE_WIDTH


def get_settings() -> Settings:
    return Settings()
