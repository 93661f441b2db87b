"""
Progress channel messages.
"""

import json
from enum import Enum
from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Progress event types pushed to subscribers."""

    FILE_PROGRESS = "file_progress"
    CHUNK_PROGRESS = "chunk_progress"
    PROCESSING_PROGRESS = "processing_progress"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """Server push: ``{type, uploadId, data}``."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    type: EventType
    upload_id: str = Field(alias="uploadId")
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True))

    @classmethod
    def from_json(cls, raw: str) -> "ProgressEvent":
        return cls.model_validate_json(raw)


class SubscribeMessage(BaseModel):
    """Client message: ``{type: "subscribe", uploadId}``."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["subscribe"]
    upload_id: str = Field(alias="uploadId", min_length=1)
