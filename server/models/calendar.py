"""Calendar data models"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Optional


class CalendarEvent(BaseModel):
    """Normalized external calendar event (never owned by this service)"""
    id: str
    summary: str = "(untitled)"
    description: Optional[str] = None
    location: Optional[str] = None
    start: str  # ISO datetime or date
    end: str
    status: Optional[str] = None
    html_link: Optional[str] = None
    attendees: list[str] = []
    calendar_id: Optional[str] = None
    calendar_name: Optional[str] = None
    primary: Optional[bool] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CalendarListEntry(BaseModel):
    """One calendar the connected account can read"""
    id: str
    summary: str = "(untitled calendar)"
    description: Optional[str] = None
    primary: bool = False

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class ScoredEvent(BaseModel):
    event: CalendarEvent
    score: float


class EventResolution(BaseModel):
    """Result of resolving a natural-language event reference"""
    match: Optional[CalendarEvent] = None
    candidates: list[ScoredEvent] = []
    strategy: str = "provider_query"  # provider_query | fuzzy_local
    confidence: float = 0.0


class CalendarNameMatch(BaseModel):
    """Result of resolving a calendar by its display name"""
    matched_id: Optional[str] = None
    matched_name: Optional[str] = None
    confidence: float = 0.0
    suggestions: list[str] = []


class DuplicateMatch(BaseModel):
    """Best existing event for a proposed create, with runner-up score"""
    candidate: Optional[CalendarEvent] = None
    score: float = 0.0
    second_score: float = 0.0

    @property
    def margin(self) -> float:
        return self.score - self.second_score
