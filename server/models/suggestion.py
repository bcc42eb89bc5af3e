"""Thread suggestion data models"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Optional


class ThreadSuggestion(BaseModel):
    """Projection of an option/image card previously shown in the thread"""
    index: int  # 1-based, stable within one resolution call
    title: str
    subtitle: Optional[str] = None
    meta: dict[str, str] = {}
    action_url: Optional[str] = None
    source_name: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SuggestionResolution(BaseModel):
    """Which prior suggestions the user message refers to"""
    selected_indices: list[int] = []
    confidence: float = 0.0
    rationale: str = ""

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @property
    def is_empty(self) -> bool:
        return not self.selected_indices
