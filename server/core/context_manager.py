"""Context Manager — builds the per-request session snapshot."""
from typing import Optional
import logging

from config.settings import settings
from core.orchestrator import has_recent_clarifier
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.memory_repo import MemoryRepository
from models.message import SessionSnapshot

logger = logging.getLogger(__name__)

_PROFILE_KEYS = ("preferred_name", "city", "home_area")


class ContextManager:
    """
    Loads everything mode selection needs for one turn:
    - the thread (created when missing) and its recent messages
    - whether a clarifying question was asked recently
    - known profile facts, taste hints and the preference profile
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        memory_repo: MemoryRepository,
    ):
        self.conversation_repo = conversation_repo
        self.memory_repo = memory_repo

    async def _known_profile(self) -> dict:
        """Latest value per profile key."""
        known = {}
        for entry in await self.memory_repo.list_entries("profile_memory"):
            key = entry.get("key")
            if key in _PROFILE_KEYS and key not in known and entry.get("value"):
                known[key] = entry["value"]
        return known

    async def build_snapshot(
        self,
        message: str,
        thread_id: Optional[str] = None,
        mode: Optional[str] = None,
        timezone: Optional[str] = None,
        model: Optional[str] = None,
    ) -> SessionSnapshot:
        thread, created = await self.conversation_repo.get_or_create_thread(thread_id, title=message)

        messages = []
        if not created:
            # Wide enough for the clarifier lookback; the reply history is trimmed separately
            window = max(settings.CONVERSATION_HISTORY_LIMIT, settings.CLARIFIER_LOOKBACK_TURNS * 2)
            messages = await self.conversation_repo.get_recent_messages(thread["id"], window)

        last_assistant = next((m.content for m in reversed(messages) if m.role == "assistant"), None)
        profile = await self.memory_repo.get_preference_profile()
        taste = await self.memory_repo.taste_profile()
        known = await self._known_profile()

        snapshot = SessionSnapshot(
            thread_id=thread["id"],
            is_new_thread=created,
            messages=messages,
            last_assistant_message=last_assistant,
            has_recent_clarifier=has_recent_clarifier(messages),
            preference_profile=profile,
            taste_hints=taste["top_preferences"],
            taste_count=taste["count"],
            known_name=known.get("preferred_name"),
            known_city=known.get("city"),
            known_home_area=known.get("home_area"),
            timezone=timezone,
            mode=mode,
            model=model or settings.LLM_MODEL,
            history_limit=settings.CONVERSATION_HISTORY_LIMIT,
        )
        logger.info(
            f"Session snapshot for thread {snapshot.thread_id}: {len(messages)} messages, "
            f"new_thread={created}, recent_clarifier={snapshot.has_recent_clarifier}"
        )
        return snapshot
