import pytest

from callscribe.broadcast import BroadcastHub
from callscribe.config import Settings
from callscribe.session_store import SessionRegistry
from callscribe.transcription.dispatcher import TranscriptionDispatcher

from tests.fakes import no_sleep


def make_settings(**overrides) -> Settings:
    values = dict(
        CHUNK_INTERVAL_SECONDS=60.0,
        AGGREGATOR_TICK_SECONDS=60.0,
        RESULTS_WATCHDOG_SECONDS=60.0,
        DRAIN_TIMEOUT_SECONDS=5.0,
        POLL_INTERVAL_SECONDS=0.01,
        POLL_MAX_ATTEMPTS=5,
        TRANSCRIPTION_API_KEY="test-key",
    )
    values.update(overrides)
    return Settings(**values)


def make_stack(provider, settings, sleep=no_sleep):
    registry = SessionRegistry.from_settings(settings)
    dispatcher = TranscriptionDispatcher(
        provider,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        max_attempts=settings.POLL_MAX_ATTEMPTS,
        sleep=sleep,
    )
    return registry, dispatcher, BroadcastHub()


@pytest.fixture
def settings():
    return make_settings()
