"""Intent data models"""
import math

from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel
from typing import Literal, Optional


class PreferenceFeedback(BaseModel):
    """Like/dislike feedback the user gave about an activity or venue"""
    subject: str
    sentiment: Literal["like", "dislike"]
    reason: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class AutopilotCreateFields(BaseModel):
    """Typed payload for an autopilot create request"""
    name: Optional[str] = None
    goal: Optional[str] = None
    trigger: Optional[str] = None  # e.g. "every friday 9am"
    action: Optional[str] = None
    mode: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


AutopilotOperation = Literal["none", "create", "delete", "pause", "resume", "list"]


class IntentRecord(BaseModel):
    """
    Classified interpretation of one user message.

    Produced per request by the intent pipeline and never persisted.
    Field aliases are the camelCase keys the classifier returns.
    """
    is_action_command: bool = False
    is_calendar_write: bool = False
    is_calendar_query: bool = False
    is_proactive_calendar_check: bool = False
    references_prior_suggestions: bool = False
    is_travel_query: bool = False
    is_upcoming_query: bool = False
    is_research_request: bool = False
    is_discovery_query: bool = False
    is_greeting: bool = False
    is_small_talk: bool = False
    is_capability_query: bool = False
    is_location_info_query: bool = False
    is_explicit_suggestion_request: bool = False
    is_meta_conversation_query: bool = False
    is_profile_capture_turn: bool = False
    is_proximity_preference_query: bool = False
    wants_best_effort: bool = False
    is_historical_recall: bool = False

    preferred_name: Optional[str] = None
    city: Optional[str] = None
    home_area: Optional[str] = None
    preference_feedback: Optional[PreferenceFeedback] = None
    capability_topic: Optional[str] = None

    autopilot_operation: AutopilotOperation = "none"
    autopilot_target_name: Optional[str] = None
    autopilot_create_fields: Optional[AutopilotCreateFields] = None
    autopilot_operation_confidence: float = 0.0

    extraction_ok: bool = True

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"

    @field_validator("autopilot_operation_confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(value):
            return 0.0
        return min(max(value, 0.0), 1.0)

    @field_validator("autopilot_operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value):
        if not isinstance(value, str):
            return "none"
        value = value.strip().lower()
        return value if value in ("create", "delete", "pause", "resume", "list") else "none"

    @field_validator("preferred_name", "city", "home_area", "capability_topic",
                     "autopilot_target_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def conservative_default(cls) -> "IntentRecord":
        """All flags off, extraction marked as failed."""
        return cls(extraction_ok=False)

    @property
    def has_profile_facts(self) -> bool:
        return bool(self.preferred_name or self.city or self.home_area)

    @property
    def is_light_turn(self) -> bool:
        """Greeting/smalltalk/profile/meta turn with no actionable signal."""
        conversational = (
            self.is_greeting
            or self.is_small_talk
            or self.is_profile_capture_turn
            or self.is_meta_conversation_query
        )
        actionable = (
            self.is_action_command
            or self.is_calendar_write
            or self.is_calendar_query
            or self.is_proactive_calendar_check
            or self.is_upcoming_query
            or self.is_discovery_query
            or self.is_explicit_suggestion_request
            or self.is_research_request
            or self.is_location_info_query
            or self.references_prior_suggestions
        )
        return conversational and not actionable
