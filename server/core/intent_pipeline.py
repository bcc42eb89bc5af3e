"""
Intent pipeline — primary classification plus narrow rescue passes.

Each rescue pass is a (name, precondition, run) triple applied in a fixed
order. A pass asks the model exactly one question with its own prompt and
returns a new IntentRecord; a failed pass returns its input unchanged.
"""
import logging
import re
from typing import Awaitable, Callable, NamedTuple, Optional

from config.settings import settings
from core.signals import extract_implicit_preferences
from database.repositories.memory_repo import MemoryRepository
from integrations.llm.client import LLMClient, parse_json_object
from integrations.llm.prompts import (
    CALENDAR_ANCHOR_RESCUE_PROMPT,
    CALENDAR_READ_GUARD_PROMPT,
    CALENDAR_WRITE_GUARD_PROMPT,
    INTENT_CLASSIFICATION_PROMPT,
    PRIOR_CONTEXT_TEMPLATE,
    PROACTIVE_CHECK_GUARD_PROMPT,
    PROFILE_FACTS_RESCUE_PROMPT,
)
from models.intent import IntentRecord

logger = logging.getLogger(__name__)

_HISTORICAL_RECALL_RE = re.compile(
    r"\b("
    r"what did i (?:ask|say|tell|mention)"
    r"|what (?:was|were) (?:the name|that place|the place|those places|the options?)"
    r"|remember (?:the|that|those|when)"
    r"|(?:you|u) (?:recommended|suggested|mentioned) (?:earlier|before|yesterday|last)"
    r"|what did (?:you|u) (?:recommend|suggest)"
    r"|earlier you (?:said|recommended|suggested)"
    r")\b",
    re.IGNORECASE,
)

_PRIMARY_MAX_TOKENS = 400
_RESCUE_MAX_TOKENS = 80
_CONTEXT_CHARS = 500
_FACT_SOURCE = "chat"
_FACT_CONFIDENCE = 0.9
_INFERRED_SOURCE = "inferred"
_INFERRED_CONFIDENCE = 0.8
# One current value each; a new value replaces the old
_SINGLE_VALUED_KEYS = {"preferred_name", "city", "home_area"}


class RescuePass(NamedTuple):
    name: str
    precondition: Callable[[IntentRecord], bool]
    run: Callable[[IntentRecord, str, Optional[str]], Awaitable[IntentRecord]]


def is_historical_recall(message: str) -> bool:
    return bool(_HISTORICAL_RECALL_RE.search(message))


def _sanitize_classifier_output(parsed: dict) -> dict:
    """Drop nulls and malformed nested payloads so one bad field doesn't void the record."""
    cleaned = {k: v for k, v in parsed.items() if v is not None}
    feedback = cleaned.get("preferenceFeedback")
    if feedback is not None and not (
        isinstance(feedback, dict)
        and isinstance(feedback.get("subject"), str)
        and feedback.get("sentiment") in ("like", "dislike")
    ):
        cleaned.pop("preferenceFeedback")
    if "autopilotCreateFields" in cleaned and not isinstance(cleaned["autopilotCreateFields"], dict):
        cleaned.pop("autopilotCreateFields")
    return cleaned


class IntentPipeline:
    """Classify a message into an IntentRecord and persist any facts it reveals."""

    def __init__(self, llm_client: LLMClient, memory_repo: Optional[MemoryRepository] = None):
        self.llm = llm_client
        self.memory_repo = memory_repo
        self.rescue_passes: list[RescuePass] = [
            RescuePass("profile_facts", self._needs_profile_facts, self._rescue_profile_facts),
            RescuePass("calendar_anchor", self._needs_calendar_anchor, self._rescue_calendar_anchor),
            RescuePass("calendar_write_guard", self._needs_write_guard, self._guard_calendar_write),
            RescuePass("calendar_read_guard", self._needs_read_guard, self._guard_calendar_read),
            RescuePass("proactive_check_guard", self._needs_proactive_guard, self._guard_proactive_check),
        ]

    async def classify(self, message: str, prior_assistant_message: Optional[str] = None) -> IntentRecord:
        intent = await self._primary(message, prior_assistant_message)

        for rescue in self.rescue_passes:
            if not rescue.precondition(intent):
                continue
            before = intent
            intent = await rescue.run(intent, message, prior_assistant_message)
            if intent != before:
                logger.info(f"Rescue pass {rescue.name} changed the intent record")

        intent = self._reconcile(intent)

        if intent.is_historical_recall or is_historical_recall(message):
            logger.info("Historical recall detected; disabling action/write flags")
            intent = intent.model_copy(update={
                "is_historical_recall": True,
                "is_action_command": False,
                "is_calendar_write": False,
            })

        await self.persist_extracted_facts(intent)
        return intent

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    @staticmethod
    def _context(prior_assistant_message: Optional[str]) -> str:
        if not prior_assistant_message:
            return ""
        return PRIOR_CONTEXT_TEMPLATE.format(previous=prior_assistant_message[:_CONTEXT_CHARS])

    async def _primary(self, message: str, prior_assistant_message: Optional[str]) -> IntentRecord:
        """Zero-temperature structured extraction; any failure yields the conservative default."""
        prompt = INTENT_CLASSIFICATION_PROMPT.format(
            context=self._context(prior_assistant_message),
            message=message,
        )
        try:
            text = await self.llm.complete(
                prompt,
                temperature=0.0,
                timeout_s=settings.LLM_INTENT_TIMEOUT,
                max_tokens=_PRIMARY_MAX_TOKENS,
            )
            return IntentRecord.model_validate(_sanitize_classifier_output(parse_json_object(text)))
        except Exception as e:
            logger.warning(f"Intent classification failed, using conservative default: {e}")
            return IntentRecord.conservative_default()

    async def _ask(self, name: str, prompt: str) -> Optional[dict]:
        """One rescue question. Returns None on any failure."""
        try:
            text = await self.llm.complete(
                prompt,
                temperature=0.0,
                timeout_s=settings.LLM_RESCUE_TIMEOUT,
                max_tokens=_RESCUE_MAX_TOKENS,
            )
            return parse_json_object(text)
        except Exception as e:
            logger.warning(f"Rescue pass {name} failed, leaving intent unchanged: {e}")
            return None

    async def _ask_yes_no(self, name: str, prompt: str) -> Optional[bool]:
        """True/False only for a literal boolean answer; anything else is None."""
        parsed = await self._ask(name, prompt)
        answer = parsed.get("answer") if parsed else None
        return answer if isinstance(answer, bool) else None

    # ------------------------------------------------------------------
    # Rescue passes
    # ------------------------------------------------------------------

    @staticmethod
    def _needs_profile_facts(intent: IntentRecord) -> bool:
        return not intent.has_profile_facts and (
            intent.is_profile_capture_turn
            or intent.is_proximity_preference_query
            or intent.is_proactive_calendar_check
        )

    async def _rescue_profile_facts(self, intent, message, prior):
        parsed = await self._ask("profile_facts", PROFILE_FACTS_RESCUE_PROMPT.format(message=message))
        if not parsed:
            return intent
        update = {}
        for alias, field in (("preferredName", "preferred_name"), ("city", "city"), ("homeArea", "home_area")):
            value = parsed.get(alias)
            if isinstance(value, str) and value.strip():
                update[field] = value.strip()
        return intent.model_copy(update=update) if update else intent

    @staticmethod
    def _needs_calendar_anchor(intent: IntentRecord) -> bool:
        return (
            (intent.is_discovery_query and intent.is_explicit_suggestion_request)
            or not intent.extraction_ok
        )

    async def _rescue_calendar_anchor(self, intent, message, prior):
        parsed = await self._ask("calendar_anchor", CALENDAR_ANCHOR_RESCUE_PROMPT.format(message=message))
        if not parsed:
            return intent
        update = {}
        if parsed.get("isProactiveCalendarCheck") is True:
            update["is_proactive_calendar_check"] = True
        if parsed.get("isUpcomingQuery") is True:
            update["is_upcoming_query"] = True
        return intent.model_copy(update=update) if update else intent

    @staticmethod
    def _write_may_be_missed(intent: IntentRecord) -> bool:
        return (
            (intent.is_calendar_query or intent.is_proactive_calendar_check or intent.is_upcoming_query)
            and not intent.is_calendar_write
        )

    @staticmethod
    def _write_may_be_false_positive(intent: IntentRecord) -> bool:
        return (
            intent.is_calendar_write
            and intent.is_explicit_suggestion_request
            and intent.references_prior_suggestions
        )

    def _needs_write_guard(self, intent: IntentRecord) -> bool:
        return self._write_may_be_missed(intent) or self._write_may_be_false_positive(intent)

    async def _guard_calendar_write(self, intent, message, prior):
        answer = await self._ask_yes_no(
            "calendar_write_guard",
            CALENDAR_WRITE_GUARD_PROMPT.format(context=self._context(prior), message=message),
        )
        if answer is True and self._write_may_be_missed(intent):
            return intent.model_copy(update={"is_calendar_write": True})
        if answer is False and self._write_may_be_false_positive(intent):
            return intent.model_copy(update={"is_calendar_write": False})
        return intent

    @staticmethod
    def _needs_read_guard(intent: IntentRecord) -> bool:
        return (
            intent.is_calendar_query
            and not intent.is_calendar_write
            and not intent.is_proactive_calendar_check
            and not intent.is_upcoming_query
        )

    async def _guard_calendar_read(self, intent, message, prior):
        answer = await self._ask_yes_no("calendar_read_guard", CALENDAR_READ_GUARD_PROMPT.format(message=message))
        if answer is False:
            return intent.model_copy(update={"is_calendar_query": False})
        return intent

    @staticmethod
    def _needs_proactive_guard(intent: IntentRecord) -> bool:
        return (
            (intent.is_proactive_calendar_check or intent.is_upcoming_query)
            and not intent.is_calendar_write
            and not intent.is_action_command
        )

    async def _guard_proactive_check(self, intent, message, prior):
        answer = await self._ask_yes_no(
            "proactive_check_guard", PROACTIVE_CHECK_GUARD_PROMPT.format(message=message),
        )
        if answer is False:
            return intent.model_copy(update={
                "is_proactive_calendar_check": False,
                "is_upcoming_query": False,
            })
        return intent

    @staticmethod
    def _reconcile(intent: IntentRecord) -> IntentRecord:
        """Write wins over read."""
        if intent.is_calendar_write and intent.is_calendar_query:
            return intent.model_copy(update={"is_calendar_query": False})
        return intent

    # ------------------------------------------------------------------
    # Memory side effects
    # ------------------------------------------------------------------

    async def _remember(self, bucket: str, key: str, value: str, source: str, confidence: float) -> None:
        try:
            stored = await self.memory_repo.upsert_if_new(
                bucket, key, value, source, confidence, replace=key in _SINGLE_VALUED_KEYS,
            )
            if stored:
                logger.info(f"Stored memory {bucket}/{key}")
        except Exception as e:
            logger.error(f"Failed to persist memory {bucket}/{key}: {e}")

    async def persist_extracted_facts(self, intent: IntentRecord) -> None:
        """Queue profile facts and preference feedback not already in memory."""
        if not self.memory_repo:
            return

        facts = [
            ("profile_memory", "preferred_name", intent.preferred_name),
            ("profile_memory", "city", intent.city),
            ("profile_memory", "home_area", intent.home_area),
        ]
        feedback = intent.preference_feedback
        if feedback:
            liked = feedback.sentiment == "like"
            facts.append(("taste_memory", "liked_activity" if liked else "disliked_activity", feedback.subject))
            if feedback.reason:
                facts.append((
                    "taste_memory",
                    "like_reason" if liked else "dislike_reason",
                    f"{feedback.subject}: {feedback.reason}",
                ))

        for bucket, key, value in facts:
            if value:
                await self._remember(bucket, key, value, _FACT_SOURCE, _FACT_CONFIDENCE)

    async def persist_implicit_preferences(self, message: str) -> None:
        """Store regex-detected preferences stated in passing."""
        if not self.memory_repo:
            return
        for fact in extract_implicit_preferences(message):
            await self._remember(fact.bucket, fact.key, fact.value, _INFERRED_SOURCE, _INFERRED_CONFIDENCE)
