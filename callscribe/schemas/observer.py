"""Observer (dashboard) protocol: JSON frames {type, data}."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ObserverCommand(BaseModel):
    """Inbound frame from a dashboard: ping, get_active_calls."""

    type: str
    data: Any = None

    model_config = ConfigDict(extra="allow")


class ObserverEvent(BaseModel):
    """Outbound frame: live_transcript, stream_started, stream_ended, pong, welcome, active_calls."""

    type: str
    data: Any = Field(default_factory=dict)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_event(event_type: str, data: Any = None) -> dict[str, Any]:
    """Build an outbound event dict; dict payloads get a timestamp if they lack one."""
    if data is None:
        data = {}
    if isinstance(data, dict):
        data = {**data}
        data.setdefault("timestamp", utc_timestamp())
    return ObserverEvent(type=event_type, data=data).model_dump()
