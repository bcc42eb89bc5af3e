"""API request schemas"""
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional


class ChatRequest(BaseModel):
    """One user message submitted to the concierge."""
    message: str = Field(..., min_length=1, max_length=10000)
    thread_id: Optional[str] = Field(None, max_length=128)
    mode: Optional[str] = Field(None, max_length=32)
    timezone: Optional[str] = Field(None, max_length=64)
    model: Optional[str] = Field(None, max_length=128)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v.strip()

    @field_validator("mode", "thread_id", "timezone", "model")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()
