"""Pydantic schemas for the media-stream and observer wire protocols."""
from callscribe.schemas.media import (
    MEDIA_EVENTS,
    MediaPayload,
    MediaStreamEvent,
    StartPayload,
    StopPayload,
    looks_like_media_event,
)
from callscribe.schemas.observer import ObserverCommand, ObserverEvent, make_event, utc_timestamp

__all__ = [
    "MEDIA_EVENTS",
    "MediaPayload",
    "MediaStreamEvent",
    "ObserverCommand",
    "ObserverEvent",
    "StartPayload",
    "StopPayload",
    "looks_like_media_event",
    "make_event",
    "utc_timestamp",
]
