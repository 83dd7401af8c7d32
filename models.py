"""Data types shared by the scanner, state store and caption resolver."""
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PeerId = Union[int, str]


def to_epoch(value: Any) -> int:
    """Unix seconds for a telethon datetime or an already numeric timestamp."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp())
    if value is None:
        return 0
    return int(value)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class VideoCandidate:
    """A video-bearing message read from the source. Immutable once read."""
    peer_id: Optional[PeerId]
    message_id: int
    timestamp: int
    video_byte_size: Optional[int] = None
    video_duration_seconds: Optional[float] = None
    text: str = ""
    sender_id: Optional[int] = None
    # Source handle used for downloading; not part of identity
    message: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_message(cls, message: Any) -> "VideoCandidate":
        peer = getattr(message, "peer_id", None)
        peer_id = (
            getattr(peer, "channel_id", None)
            or getattr(peer, "chat_id", None)
            or getattr(peer, "user_id", None)
        )
        video = getattr(message, "video", None)
        duration = None
        for attr in getattr(video, "attributes", None) or []:
            if getattr(attr, "duration", None):
                duration = attr.duration
                break
        return cls(
            peer_id=peer_id,
            message_id=message.id,
            timestamp=to_epoch(getattr(message, "date", None)),
            video_byte_size=getattr(video, "size", None),
            video_duration_seconds=duration,
            text=(getattr(message, "message", None) or "").strip(),
            sender_id=getattr(message, "sender_id", None),
            message=message,
        )


@dataclass(frozen=True)
class ContextMessage:
    message_id: int
    text: str
    sender_id: Optional[int]
    timestamp: int
    position: Literal["before", "after"]
    time_delta: int


class FailedRecord(BaseModel):
    """One permanent failure. Legacy entries carry only the video id."""
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(alias="videoId")
    reason: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None
    legacy: bool = Field(default=False, exclude=True)


class CursorState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    offset: int = Field(default=0, ge=0)
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    total_processed: int = Field(default=0, alias="totalProcessed")
