"""Memory repository for user facts and preferences."""
from asyncio import to_thread
from typing import Optional, List
from supabase import Client
import logging

from models.message import PreferenceProfile

logger = logging.getLogger(__name__)

# (bucket, key) -> label shown to the model
KNOWN_FIELD_LABELS = {
    ("profile_memory", "preferred_name"): "Name",
    ("profile_memory", "city"): "City",
    ("profile_memory", "home_area"): "Home area",
    ("profile_memory", "household"): "Household",
    ("logistics_memory", "budget_range"): "Budget",
    ("logistics_memory", "transportation"): "Transportation",
    ("taste_memory", "explicit_preference"): "Likes",
    ("taste_memory", "partner_preference"): "Partner likes",
    ("taste_memory", "liked_activity"): "Liked activities",
    ("taste_memory", "disliked_activity"): "Disliked activities",
}

# Gaps worth learning about, keyed by the field that fills them
PREFERENCE_GAPS = [
    (("profile_memory", "city"), "Which city they're based in"),
    (("profile_memory", "home_area"), "Their home neighbourhood (for proximity)"),
    (("profile_memory", "household"), "Who they usually plan for (partner, kids, friends)"),
    (("logistics_memory", "budget_range"), "Typical budget for outings"),
    (("logistics_memory", "transportation"), "How they get around (car, transit, walking)"),
    (("taste_memory", "explicit_preference"), "Food, activity and vibe preferences"),
]

NEW_USER_ENTRY_THRESHOLD = 3


class MemoryRepository:
    """Handle memory entry database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def list_entries(self, bucket: Optional[str] = None) -> List[dict]:
        """Entries newest first, optionally limited to one bucket."""
        try:
            def _query():
                query = self.supabase.table("memory_entries").select("*")
                if bucket:
                    query = query.eq("bucket", bucket)
                return query.order("created_at", desc=True).execute()

            response = await to_thread(_query)
            return response.data if response.data else []
        except Exception as e:
            logger.error(f"Error listing memory entries: {e}")
            return []

    async def find_entry(
        self,
        bucket: str,
        key: str,
        value: Optional[str] = None,
    ) -> Optional[dict]:
        """First entry matching (bucket, key[, value]). Raises on database errors."""
        try:
            def _query():
                query = (
                    self.supabase.table("memory_entries")
                    .select("*")
                    .eq("bucket", bucket)
                    .eq("key", key)
                )
                if value is not None:
                    query = query.eq("value", value)
                return query.limit(1).execute()

            response = await to_thread(_query)
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error finding memory entry ({bucket}/{key}): {e}")
            raise

    async def upsert(
        self,
        bucket: str,
        key: str,
        value: str,
        source: str = "chat",
        confidence: float = 0.8,
        entry_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Insert a fact, or update it in place when entry_id is given."""
        data = {
            "bucket": bucket,
            "key": key,
            "value": value,
            "source": source,
            "confidence": confidence,
        }
        try:
            if entry_id:
                response = await to_thread(
                    lambda: self.supabase.table("memory_entries")
                    .update(data)
                    .eq("id", entry_id)
                    .execute()
                )
            else:
                response = await to_thread(
                    lambda: self.supabase.table("memory_entries").insert(data).execute()
                )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error upserting memory ({bucket}/{key}): {e}")
            raise

    async def upsert_if_new(
        self,
        bucket: str,
        key: str,
        value: str,
        source: str,
        confidence: float,
        replace: bool = False,
    ) -> bool:
        """
        Store the fact unless an identical (bucket, key, value) entry exists.

        With `replace`, older values under (bucket, key) are forgotten first
        so single-valued facts like the home city keep one entry.
        """
        if await self.find_entry(bucket, key, value):
            return False
        if replace:
            removed = await self.forget(bucket, key)
            if removed:
                logger.info(f"Replaced {removed} stale memory value(s) for {bucket}/{key}")
        await self.upsert(bucket, key, value, source=source, confidence=confidence)
        return True

    async def forget(self, bucket: str, key: str) -> int:
        """Delete all entries for (bucket, key). Returns the number removed."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("memory_entries")
                .delete()
                .eq("bucket", bucket)
                .eq("key", key)
                .execute()
            )
            return len(response.data or [])
        except Exception as e:
            logger.error(f"Error forgetting memory ({bucket}/{key}): {e}")
            raise

    async def taste_profile(self) -> dict:
        """Top taste preferences and total count."""
        entries = await self.list_entries("taste_memory")
        return {
            "top_preferences": [entry["value"] for entry in entries[:5]],
            "count": len(entries),
        }

    async def get_preference_profile(self) -> PreferenceProfile:
        """Known facts (latest value per field, multi-valued taste merged) and open gaps."""
        entries = await self.list_entries()

        known: dict = {}
        seen_fields = set()
        for entry in entries:
            field = (entry.get("bucket"), entry.get("key"))
            label = KNOWN_FIELD_LABELS.get(field)
            if not label:
                continue
            seen_fields.add(field)
            if field[0] == "taste_memory":
                values = known.setdefault(label, [])
                if entry["value"] not in values and len(values) < 5:
                    values.append(entry["value"])
            elif label not in known:
                known[label] = entry["value"]

        flattened = {
            label: ", ".join(value) if isinstance(value, list) else value
            for label, value in known.items()
        }
        unknown = [gap for field, gap in PREFERENCE_GAPS if field not in seen_fields]

        return PreferenceProfile(
            known=flattened,
            unknown=unknown,
            is_new_user=len(entries) < NEW_USER_ENTRY_THRESHOLD,
        )
