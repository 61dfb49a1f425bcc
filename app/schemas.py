"""
Pydantic schemas for request/response validation.

This module contains:
- Inbound WhatsApp callback payload models
- The LLM reply contract
- Slack interactive callback models
- Response models for API responses
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


HOLDING_REPLY = "I'm looking into that, one moment!"


# =============================================================================
# WhatsApp Inbound Payload
# =============================================================================

class WAText(BaseModel):
    body: str = ""


class WAMessage(BaseModel):
    """
    A single inbound message.

    - from: sender phone number, used as the conversation id
    - id: provider message id (wamid), used for idempotency
    - type: "text", "image", ...
    """
    from_number: str = Field(..., alias="from", description="Sender phone number")
    id: str = Field(..., min_length=1, description="Provider message id")
    type: str = Field(..., description="Message type")
    text: Optional[WAText] = None

    model_config = {"populate_by_name": True}

    @property
    def is_text(self) -> bool:
        return self.type == "text" and self.text is not None


class WAValue(BaseModel):
    # Delivery receipts carry "statuses" and no "messages".
    # Entries stay raw so one malformed message cannot sink its batch.
    messages: List[Any] = Field(default_factory=list)


class WAChange(BaseModel):
    value: WAValue = Field(default_factory=WAValue)


class WAEntry(BaseModel):
    changes: List[WAChange] = Field(default_factory=list)


class WAPayload(BaseModel):
    object: Optional[str] = None
    entry: List[WAEntry] = Field(default_factory=list)

    def iter_raw_messages(self):
        """Yield every unvalidated message entry; Meta may batch several."""
        for entry in self.entry:
            for change in entry.changes:
                for message in change.value.messages:
                    yield message


# =============================================================================
# LLM Contract
# =============================================================================

class ReplyAction(str, Enum):
    """What the pipeline does with the model's reply."""
    CONTINUE = "continue"
    HANDOFF = "handoff"
    SCHEDULE = "schedule"

    @classmethod
    def coerce(cls, value: Any) -> "ReplyAction":
        """Map any unrecognized value to CONTINUE."""
        try:
            return cls(value)
        except ValueError:
            return cls.CONTINUE


class LLMMessage(BaseModel):
    role: str
    content: str


class LLMReply(BaseModel):
    """
    Structured reply parsed from the model's JSON output.

    Normalized on construction: an empty reply becomes a holding message
    and an unknown action becomes "continue".
    """
    reply_to_user: str = ""
    extracted_data: Dict[str, str] = Field(default_factory=dict)
    action: ReplyAction = ReplyAction.CONTINUE

    @field_validator("reply_to_user", mode="before")
    @classmethod
    def default_empty_reply(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return HOLDING_REPLY
        return v

    @field_validator("extracted_data", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "unknown" if val is None else str(val) for k, val in v.items()}
        return v

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v: Any) -> ReplyAction:
        return ReplyAction.coerce(v)


# =============================================================================
# Slack Interactive Callback
# =============================================================================

class SlackUser(BaseModel):
    id: str = ""
    username: str = ""
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.name or self.id or "someone"


class SlackAction(BaseModel):
    action_id: str = ""
    value: str = ""


class SlackInteractivePayload(BaseModel):
    type: Optional[str] = None
    user: SlackUser = Field(default_factory=SlackUser)
    actions: Optional[List[SlackAction]] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for an accepted webhook callback."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class SlackCallbackResponse(BaseModel):
    """Replaces the original Slack message with the outcome of the action."""
    replace_original: bool = Field(default=True)
    text: str = Field(..., description="Outcome shown to the operator")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
