"""
Pydantic schemas for request/response validation.

This module contains:
- Inbound webhook payload models for both SMS providers
- The canonical IngestionRequest and the normalizer's result union
- Response models for the HTTP API
- WebSocket frame models
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Inbound Webhook Payloads
# =============================================================================

class TwilioWebhook(BaseModel):
    """
    Provider A: Twilio Programmable Messaging inbound webhook.

    Twilio posts many more fields than these; they are ignored. Body may be
    empty for an MMS that only carries media.
    """
    model_config = ConfigDict(extra="ignore")

    Body: str
    From: str = Field(..., min_length=1)
    To: str
    AccountSid: str
    MessageSid: Optional[str] = None
    SmsMessageSid: Optional[str] = None
    NumMedia: str = "0"
    MediaUrl0: Optional[str] = None
    MediaContentType0: Optional[str] = None
    # Carrier segment count; Twilio has already reassembled the segments
    NumSegments: Optional[str] = None

    @property
    def delivery_id(self) -> Optional[str]:
        return self.MessageSid or self.SmsMessageSid or None

    @property
    def media_count(self) -> int:
        try:
            return int(self.NumMedia or "0")
        except ValueError:
            return 0


class GatewayWebhook(BaseModel):
    """
    Provider B: generic SMS gateway inbound webhook.

    Content arrives as "message", "sms" or "body"; the sender as "from" or
    "originalsenderid".
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message: Optional[str] = None
    sms: Optional[str] = None
    body: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")
    originalsenderid: Optional[str] = None
    message_id: Optional[str] = None

    @model_validator(mode="after")
    def require_sender_and_content(self):
        if not (self.from_ or self.originalsenderid):
            raise ValueError("missing sender ('from' or 'originalsenderid')")
        if self.message is None and self.sms is None and self.body is None:
            raise ValueError("missing content ('message', 'sms' or 'body')")
        return self

    @property
    def content(self) -> str:
        for candidate in (self.message, self.sms, self.body):
            if candidate:
                return candidate
        return ""

    @property
    def sender(self) -> str:
        return self.from_ or self.originalsenderid or ""


# =============================================================================
# Canonical Ingestion Request
# =============================================================================

class IngestionRequest(BaseModel):
    """One inbound SMS, provider-independent. sender_identity is canonical."""
    content: str = ""
    sender_identity: str
    raw_media_url: Optional[str] = None
    raw_media_type: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider: Literal["twilio", "gateway"]


class NormalizedOk(BaseModel):
    kind: Literal["ok"] = "ok"
    request: IngestionRequest


class NormalizedSkip(BaseModel):
    kind: Literal["skip"] = "skip"
    reason: str
    provider: Optional[str] = None


class NormalizedInvalid(BaseModel):
    kind: Literal["invalid"] = "invalid"
    reason: str


NormalizerResult = Annotated[
    Union[NormalizedOk, NormalizedSkip, NormalizedInvalid],
    Field(discriminator="kind"),
]


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response for an accepted webhook delivery."""
    status: Literal["created", "merged", "duplicate", "skipped"] = Field(..., description="Ingestion outcome")
    message_id: Optional[int] = Field(None, description="Stored message id, absent when skipped")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A stored message as the dashboard sees it."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    sender_id: str
    content: str
    tags: list[str]
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    created_at: datetime


class MessagesListResponse(BaseModel):
    """
    Paginated message listing.

    - data: messages on this page
    - total: messages matching filters (ignoring limit/offset)
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class TagsResponse(BaseModel):
    tags: list[str] = Field(default_factory=list)


class SharedBoardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64, pattern=r"^\w+$")
    owner_id: int


class BoardMemberAdd(BaseModel):
    user_id: int


class SharedBoardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    owner_id: int
    created_at: datetime


class BoardMemberResponse(BaseModel):
    user_id: int
    display_name: Optional[str] = None
    role: Literal["owner", "member"]
    joined_at: datetime


class BoardMembersResponse(BaseModel):
    board: str
    members: list[BoardMemberResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# WebSocket Frames
# =============================================================================

class WsInbound(BaseModel):
    """Client -> server. The only client frame is IDENTIFY."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["IDENTIFY"]
    user_id: int = Field(..., alias="userId")
