"""
Telephony media-stream events (JSON text frames with an `event` field).

connected → start {callSid, streamSid, tracks, customParameters} → media {payload, track} ... → stop.
Unknown fields are kept (forward compatible); missing optional fields are None, never an error.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MEDIA_EVENTS = frozenset({"connected", "start", "media", "stop", "mark", "dtmf"})


class StartPayload(BaseModel):
    callSid: str | None = None
    streamSid: str | None = None
    accountSid: str | None = None
    tracks: list[str] = Field(default_factory=list)
    customParameters: dict[str, Any] = Field(default_factory=dict)
    mediaFormat: dict[str, Any] | None = None

    model_config = ConfigDict(extra="allow")


class MediaPayload(BaseModel):
    payload: str | None = None  # base64 mu-law
    track: str | None = None
    chunk: int | str | None = None
    timestamp: int | str | None = None

    model_config = ConfigDict(extra="allow")


class StopPayload(BaseModel):
    callSid: str | None = None
    accountSid: str | None = None

    model_config = ConfigDict(extra="allow")


class MediaStreamEvent(BaseModel):
    """One media-stream frame. Only `event` is required."""

    event: str
    sequenceNumber: int | str | None = None
    streamSid: str | None = None
    protocol: str | None = None
    start: StartPayload | None = None
    media: MediaPayload | None = None
    stop: StopPayload | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def sequence_number(self) -> int | None:
        try:
            return int(self.sequenceNumber) if self.sequenceNumber is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def call_sid(self) -> str | None:
        """Call ID carried by this frame, if any (start/stop body, custom parameters, top level)."""
        if self.start is not None:
            if self.start.callSid:
                return self.start.callSid
            custom = self.start.customParameters.get("callSid") or self.start.customParameters.get("call_id")
            if custom:
                return str(custom)
        if self.stop is not None and self.stop.callSid:
            return self.stop.callSid
        extra = self.model_extra or {}
        for key in ("callSid", "call_id"):
            if extra.get(key):
                return str(extra[key])
        return None


def looks_like_media_event(data: Any) -> bool:
    """
    True when a decoded frame has the media-stream shape rather than the observer {type, data} shape:
    an `event` in the known set, no observer `type`, and the body that event carries.
    """
    if not isinstance(data, dict) or "type" in data:
        return False
    event = data.get("event")
    if event not in MEDIA_EVENTS:
        return False
    if event == "connected":
        return "protocol" in data or "version" in data
    if event == "media":
        return isinstance(data.get("media"), dict)
    if event == "start":
        return isinstance(data.get("start"), dict) or "streamSid" in data
    return "streamSid" in data or isinstance(data.get(event), dict)
