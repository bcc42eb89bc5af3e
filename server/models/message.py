"""Message and session data models"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class StoredMessage(BaseModel):
    """Message as persisted in the conversation store"""
    id: Optional[str] = None
    thread_id: Optional[str] = None
    role: str  # 'user' | 'assistant' | 'system'
    content: str
    blocks_json: Optional[str] = None
    created_at: Optional[datetime] = None


class PreferenceProfile(BaseModel):
    """Aggregated view of what is known (and not) about the user"""
    known: dict[str, str] = {}
    unknown: list[str] = []
    is_new_user: bool = True


class SessionSnapshot(BaseModel):
    """
    Per-request view of the session used by mode selection.

    Recomputed from storage on every turn; the reply model lives here
    rather than in process-wide state.
    """
    thread_id: str
    is_new_thread: bool = False
    messages: list[StoredMessage] = []
    last_assistant_message: Optional[str] = None
    has_recent_clarifier: bool = False
    preference_profile: PreferenceProfile = PreferenceProfile()
    taste_hints: list[str] = []
    taste_count: int = 0
    known_name: Optional[str] = None
    known_city: Optional[str] = None
    known_home_area: Optional[str] = None
    timezone: Optional[str] = None
    mode: Optional[str] = None
    model: str
    history_limit: int = 8

    @property
    def history(self) -> list[dict]:
        """Last `history_limit` messages in chat-completions shape."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages[-self.history_limit:]
            if m.role in ("user", "assistant", "system")
        ]
