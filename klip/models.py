#!/usr/bin/env python3
"""
Clip data models

A clip is a tagged variant on ``clip_type``: text clips carry non-empty
content only, image clips carry a mandatory image path and the OCR text
extracted from it (empty until backfilled).
"""
import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def new_clip_id() -> str:
    """Generate a unique clip ID"""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _ClipBase(BaseModel):
    """Fields shared by every clip variant"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_clip_id, min_length=1)
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    is_favorite: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        """Store every timestamp as timezone-aware UTC (naive means local time)"""
        return v.astimezone(timezone.utc)

    @property
    def local_date(self):
        """Calendar date of the capture in local time"""
        return self.created_at.astimezone().date()


class TextClip(_ClipBase):
    clip_type: Literal["text"] = "text"

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("text clips must have content")
        return v


class ImageClip(_ClipBase):
    clip_type: Literal["image"] = "image"
    image_path: str = Field(min_length=1)


Clip = Annotated[Union[TextClip, ImageClip], Field(discriminator="clip_type")]

_clip_adapter = TypeAdapter(Clip)


def clip_from_dict(data: dict) -> Union[TextClip, ImageClip]:
    """Build the right clip variant from a plain dict (e.g. a database row)"""
    data = dict(data)
    if data.get("image_path") is None:
        data.pop("image_path", None)
    return _clip_adapter.validate_python(data)


def clip_to_dict(clip: Union[TextClip, ImageClip]) -> dict:
    """Serialize a clip for the UI (JSON-safe)"""
    return {
        "id": clip.id,
        "content": clip.content,
        "created_at": clip.created_at.isoformat(),
        "is_favorite": clip.is_favorite,
        "clip_type": clip.clip_type,
        "image_path": getattr(clip, "image_path", None),
    }
