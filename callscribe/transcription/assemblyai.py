"""
AssemblyAIProvider: job-based transcription over HTTP.

Flow per chunk: POST {base}/upload (raw WAV) → upload_url;
POST {base}/transcript {audio_url, ...} → job id; GET {base}/transcript/{id} → status.
Bearer token from settings. One shared httpx.AsyncClient per provider.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from callscribe.config import Settings, get_settings
from callscribe.errors import ProviderError
from callscribe.transcription.base import JobStatus, TranscriptionProvider

logger = logging.getLogger(__name__)


def _json_or_error(resp: httpx.Response, what: str) -> dict[str, Any]:
    if resp.status_code // 100 != 2:
        raise ProviderError(f"{what} failed: HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as err:
        raise ProviderError(f"{what} returned non-JSON body") from err
    if not isinstance(data, dict):
        raise ProviderError(f"{what} returned unexpected payload")
    return data


class AssemblyAIProvider(TranscriptionProvider):
    """Remote chunk transcription. submit() uploads then creates a job; fetch() reads its status."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.assemblyai.com/v2",
        language_code: str = "en_us",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._language_code = language_code
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def submit(self, audio: bytes) -> str:
        if not self._api_key:
            raise ProviderError("TRANSCRIPTION_API_KEY is not configured")
        resp = await self._client.post(
            "/upload",
            content=audio,
            headers={"Content-Type": "application/octet-stream"},
        )
        upload_url = _json_or_error(resp, "upload").get("upload_url")
        if not upload_url:
            raise ProviderError("upload response has no upload_url")

        resp = await self._client.post(
            "/transcript",
            json={
                "audio_url": upload_url,
                "language_code": self._language_code,
                "punctuate": True,
                "format_text": True,
            },
        )
        job_id = _json_or_error(resp, "transcript create").get("id")
        if not job_id:
            raise ProviderError("transcript create response has no id")
        return str(job_id)

    async def fetch(self, job_id: str) -> JobStatus:
        resp = await self._client.get(f"/transcript/{job_id}")
        data = _json_or_error(resp, "transcript status")
        confidence = data.get("confidence")
        try:
            return JobStatus(
                status=str(data.get("status") or ""),
                text=(data.get("text") or "").strip(),
                confidence=float(confidence) if confidence is not None else 0.0,
                error=data.get("error"),
            )
        except (AttributeError, TypeError, ValueError) as err:
            raise ProviderError(f"transcript status for {job_id} has unusable fields") from err

    async def aclose(self) -> None:
        await self._client.aclose()


def create_transcription_provider(settings: Settings | None = None) -> TranscriptionProvider:
    """Provider selected by TRANSCRIPTION_PROVIDER."""
    settings = settings or get_settings()
    if not settings.TRANSCRIPTION_API_KEY:
        logger.warning("TRANSCRIPTION_API_KEY is empty; every transcription request will fail")
    return AssemblyAIProvider(
        api_key=settings.TRANSCRIPTION_API_KEY,
        base_url=settings.TRANSCRIPTION_BASE_URL,
        language_code=settings.TRANSCRIPTION_LANGUAGE,
        timeout=settings.TRANSCRIPTION_HTTP_TIMEOUT_SECONDS,
    )
