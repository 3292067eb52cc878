import asyncio

import httpx

from callscribe.transcription.assemblyai import AssemblyAIProvider
from callscribe.transcription.base import JobStatus, RequestState, TranscriptionRequest
from callscribe.transcription.dispatcher import TranscriptionDispatcher

from tests.fakes import FakeProvider, no_sleep


def _request(seq=0):
    return TranscriptionRequest(call_id="call-1", sequence=seq, audio=b"RIFF", duration_seconds=0.1)


def test_completed_job_returns_chunk():
    provider = FakeProvider([[JobStatus("queued"), JobStatus("processing"), JobStatus("completed", "hello there.", 0.9)]])
    dispatcher = TranscriptionDispatcher(provider, poll_interval=0.01, max_attempts=5, sleep=no_sleep)
    request = _request()

    chunk = asyncio.run(dispatcher.submit(request))

    assert chunk is not None
    assert chunk.text == "hello there."
    assert chunk.confidence == 0.9
    assert chunk.sequence == 0
    assert chunk.provider_id == "job-1"
    assert request.state is RequestState.COMPLETED
    assert provider.fetches == 3
    assert dispatcher.outcomes["completed"] == 1


def test_error_status_marks_failed():
    provider = FakeProvider([[JobStatus("error", error="bad audio")]])
    dispatcher = TranscriptionDispatcher(provider, poll_interval=0.01, max_attempts=5, sleep=no_sleep)
    request = _request()

    assert asyncio.run(dispatcher.submit(request)) is None
    assert request.state is RequestState.FAILED
    assert request.error == "bad audio"


def test_never_completing_job_times_out_after_max_attempts():
    provider = FakeProvider([[JobStatus("processing")]])
    dispatcher = TranscriptionDispatcher(provider, poll_interval=0.01, max_attempts=4, sleep=no_sleep)
    request = _request()

    assert asyncio.run(dispatcher.submit(request)) is None
    assert request.state is RequestState.TIMED_OUT
    assert provider.fetches == 4


def test_deadline_stops_polling_early():
    now = [0.0]

    async def fake_sleep(seconds):
        now[0] += seconds * 10

    provider = FakeProvider([[JobStatus("processing")]])
    dispatcher = TranscriptionDispatcher(
        provider, poll_interval=1.0, max_attempts=15, sleep=fake_sleep, clock=lambda: now[0]
    )
    request = _request()

    assert asyncio.run(dispatcher.submit(request)) is None
    assert request.state is RequestState.TIMED_OUT
    assert request.deadline == 15.0
    assert provider.fetches == 2


def test_submit_failure_marks_failed_without_polling():
    provider = FakeProvider(fail_submit=True)
    dispatcher = TranscriptionDispatcher(provider, sleep=no_sleep)
    request = _request()

    assert asyncio.run(dispatcher.submit(request)) is None
    assert request.state is RequestState.FAILED
    assert provider.fetches == 0
    assert dispatcher.outcomes["failed"] == 1


def test_terminal_request_is_not_resubmitted():
    provider = FakeProvider([[JobStatus("completed", "hi.", 0.8)]])
    dispatcher = TranscriptionDispatcher(provider, sleep=no_sleep)
    request = _request()
    asyncio.run(dispatcher.submit(request))

    assert asyncio.run(dispatcher.submit(request)) is None
    assert len(provider.submitted) == 1
    assert request.state is RequestState.COMPLETED


def test_bad_status_body_ends_request_instead_of_raising():
    def handle(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/upload"):
            return httpx.Response(200, json={"upload_url": "https://cdn.example/a"})
        if request.method == "POST":
            return httpx.Response(200, json={"id": "job-1"})
        return httpx.Response(200, json={"status": "completed", "text": "hi.", "confidence": "high"})

    async def run():
        provider = AssemblyAIProvider(
            api_key="secret",
            base_url="https://api.example.test/v2",
            transport=httpx.MockTransport(handle),
        )
        dispatcher = TranscriptionDispatcher(provider, poll_interval=0.01, max_attempts=3, sleep=no_sleep)
        request = _request()
        try:
            chunk = await dispatcher.submit(request)
        finally:
            await provider.aclose()
        return chunk, request, dispatcher

    chunk, request, dispatcher = asyncio.run(run())
    assert chunk is None
    assert request.state is RequestState.TIMED_OUT
    assert dispatcher.outcomes["timed_out"] == 1


class _BrokenProvider(FakeProvider):
    async def fetch(self, job_id):
        raise RuntimeError("unexpected body")


def test_unexpected_provider_exception_marks_failed():
    dispatcher = TranscriptionDispatcher(_BrokenProvider(), sleep=no_sleep)
    request = _request()

    assert asyncio.run(dispatcher.submit(request)) is None
    assert request.state is RequestState.FAILED
    assert dispatcher.outcomes["failed"] == 1
