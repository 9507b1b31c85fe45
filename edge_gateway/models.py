"""Request and response models for the edge chat gateway."""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    """A single message in a chat conversation.

    Unknown keys are kept so the message reaches the upstream API exactly
    as the caller sent it.
    """

    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None


class ChatRequest(BaseModel):
    """Incoming chat request from the caller."""

    messages: List[ChatMessage] = Field(
        ..., min_length=1, description="Conversation messages"
    )
    caller_identity: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("callerIdentity", "userToken", "caller_identity"),
        description="Accountable party for quota and rate limiting",
    )
    model: Optional[str] = Field(default=None, min_length=1)
    max_tokens: Optional[int] = Field(
        default=None,
        gt=0,
        strict=True,
        validation_alias=AliasChoices("maxTokens", "max_tokens"),
    )

    @field_validator("caller_identity")
    @classmethod
    def _blank_identity_is_anonymous(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    def upstream_messages(self) -> List[Dict[str, Any]]:
        """Return the messages as plain dicts, in the order received."""
        return [m.model_dump(exclude_unset=True) for m in self.messages]


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: str
    detail: Optional[str] = None
