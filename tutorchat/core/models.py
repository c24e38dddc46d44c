"""Internal transport models."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model"] = "user"
    content: str = ""

    def to_content(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.content}]}


class GenerationOptions(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    temperature: float
    top_k: int = Field(alias="topK")
    top_p: float = Field(alias="topP")
    max_output_tokens: int = Field(alias="maxOutputTokens")

    def to_config(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SafetySetting(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    threshold: str


class ProviderRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    preamble: tuple[Turn, ...] = ()
    turns: tuple[Turn, ...] = ()
    options: GenerationOptions
    safety_settings: tuple[SafetySetting, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "contents": [turn.to_content() for turn in (*self.preamble, *self.turns)],
            "generationConfig": self.options.to_config(),
            "safetySettings": [item.model_dump() for item in self.safety_settings],
        }


class MemberAccount(BaseModel):
    user_id: str
    membership_name: str | None = None
    features: frozenset[str] = frozenset()
    expires_at: datetime | None = None
    chat_credits: int = 0

    def membership_active(self, now: datetime | None = None) -> bool:
        if self.membership_name is None or self.expires_at is None:
            return False
        current = now or datetime.now(tz=timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at >= current

    def has_feature(self, feature: str, now: datetime | None = None) -> bool:
        return self.membership_active(now) and feature in self.features


class StartChatRequest(BaseModel):
    user_id: str | int | None = None
    idempotency_key: str | None = Field(default=None, max_length=200)


class ChatMessageRequest(BaseModel):
    user_id: str | int | None = None
    messages: list[Any] = Field(default_factory=list)


class StartResult(BaseModel):
    message: str
    remaining_chat_coupons: int
    duplicate: bool = False
