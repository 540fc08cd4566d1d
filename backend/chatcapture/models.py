"""Capture data model: turns, attachments, payload, tracked network records."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


PAYLOAD_VERSION = "1.2.0"
ATTACHMENT_ONLY_PLACEHOLDER = "(attachment-only message)"

CaptureSource = Literal["chatgpt", "gemini", "ai_studio", "claude"]
TurnRole = Literal["user", "assistant", "system", "tool"]
AttachmentKind = Literal["image", "pdf", "file"]
AttachmentStatus = Literal["remote_only", "cached", "failed"]

CAPTURE_SOURCES: tuple[str, ...] = ("chatgpt", "gemini", "ai_studio", "claude")


class _CaptureModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class CaptureAttachment(_CaptureModel):
    kind: AttachmentKind
    original_url: str
    mime: str | None = None
    status: AttachmentStatus = "remote_only"


class CaptureTurn(_CaptureModel):
    role: TurnRole
    content_markdown: str
    thought_markdown: str | None = None
    attachments: list[CaptureAttachment] | None = None
    model: str | None = None
    timestamp: str | None = None


class CapturePayload(_CaptureModel):
    source: CaptureSource
    page_url: str
    title: str
    turns: list[CaptureTurn]
    captured_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    version: str = PAYLOAD_VERSION

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


@dataclass
class TrackedNetworkRecord:
    url: str
    method: str
    started_at: float  # monotonic milliseconds
    status: int = 0
    ok: bool = False
