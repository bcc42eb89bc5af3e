"""Main Agent — one chat turn end to end, degrading to a generic reply on any fault."""
import json
import time
import logging
from typing import Optional

from pydantic import BaseModel

from core.context_manager import ContextManager
from core.intent_pipeline import IntentPipeline
from core.orchestrator import DialogueOrchestrator, Mode, TurnResult, select_mode
from core.policy import suggestions_eligible
from core.thread_suggestions import (
    SuggestionResolver,
    extract_thread_suggestions,
    needs_disambiguation,
    should_resolve,
)
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.trace_repo import TraceRepository
from models.intent import IntentRecord
from models.message import SessionSnapshot
from services.reply_enricher import ReplyEnricher

logger = logging.getLogger(__name__)

GENERIC_FALLBACK_REPLY = (
    "I couldn’t complete a live tool lookup right now, but I can still help with a "
    "best-effort suggestion."
)
FALLBACK_MODEL = "fallback/generic"
AUDIT_ACTOR = "api:chat"
PERSONALIZED_CONFIDENCE = 0.86
BASE_CONFIDENCE = 0.78


class AgentError(Exception):
    """Typed agent errors so callers can distinguish transient from permanent failures."""
    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class AgentReply(BaseModel):
    """Result of one processed chat message."""
    reply: str
    blocks: Optional[list[dict]] = None
    confidence: float
    model: str
    requested_model: str
    response_id: Optional[str] = None
    thread_id: Optional[str] = None
    message_id: Optional[str] = None
    mode: Optional[str] = None


class ConciergeAgent:
    """
    Pipeline for one user message:
    implicit preferences → session snapshot → classify → thread suggestions →
    disambiguation or mode selection → handler → enrichment → persist → audit.
    """

    def __init__(
        self,
        context_manager: ContextManager,
        intent_pipeline: IntentPipeline,
        suggestion_resolver: SuggestionResolver,
        orchestrator: DialogueOrchestrator,
        enricher: ReplyEnricher,
        conversation_repo: ConversationRepository,
        trace_repo: TraceRepository,
    ):
        self.context_manager = context_manager
        self.intent_pipeline = intent_pipeline
        self.suggestion_resolver = suggestion_resolver
        self.orchestrator = orchestrator
        self.enricher = enricher
        self.conversation_repo = conversation_repo
        self.trace_repo = trace_repo

    async def process_message(
        self,
        message: str,
        thread_id: Optional[str] = None,
        mode: Optional[str] = None,
        timezone: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AgentReply:
        """Never raises: any internal fault becomes the generic fallback reply."""
        start_time = time.time()
        session: Optional[SessionSnapshot] = None

        try:
            await self._store_implicit_preferences(message)
            session = await self.context_manager.build_snapshot(
                message, thread_id=thread_id, mode=mode, timezone=timezone, model=model,
            )
            intent = await self.intent_pipeline.classify(message, session.last_assistant_message)
            turn, reason = await self._run_turn(intent, session, message)

            reply, blocks = self._enrich(turn, intent, session)
            if not reply.strip():
                raise AgentError(f"Mode {turn.mode.value} produced an empty reply", retryable=True)

            message_id = await self._persist(session.thread_id, message, reply, blocks)
            await self.trace_repo.add_audit(AUDIT_ACTOR, "chat_intent_parsed", {
                "threadId": session.thread_id,
                "mode": turn.mode.value,
                "reason": reason,
                "extractionOk": intent.extraction_ok,
                "isCalendarWrite": intent.is_calendar_write,
                "isActionCommand": intent.is_action_command,
                "referencesPriorSuggestions": intent.references_prior_suggestions,
            })

            execution_time = int((time.time() - start_time) * 1000)
            await self.trace_repo.add_trace(
                "chat", f"chat_turn_complete mode={turn.mode.value} model={turn.model} ms={execution_time}",
            )
            logger.info(f"Chat turn completed in {execution_time}ms (mode={turn.mode.value})")

            return AgentReply(
                reply=reply,
                blocks=blocks,
                confidence=PERSONALIZED_CONFIDENCE if session.taste_count > 0 else BASE_CONFIDENCE,
                model=turn.model,
                requested_model=turn.requested_model,
                response_id=turn.response_id,
                thread_id=session.thread_id,
                message_id=message_id,
                mode=turn.mode.value,
            )

        except Exception as e:
            retryable = _is_retryable(e)
            error_code = _classify_error(e)
            logger.error(
                f"Error in process_message (code={error_code}, retryable={retryable}): {e}",
                exc_info=True,
            )
            await self.trace_repo.add_trace(
                "chat", f"chat_turn_failed code={error_code} retryable={str(retryable).lower()}",
            )
            message_id = None
            if session is not None:
                message_id = await self._persist(session.thread_id, message, GENERIC_FALLBACK_REPLY, None)
            return AgentReply(
                reply=GENERIC_FALLBACK_REPLY,
                confidence=BASE_CONFIDENCE,
                model=FALLBACK_MODEL,
                requested_model=session.model if session else FALLBACK_MODEL,
                thread_id=session.thread_id if session else thread_id,
                message_id=message_id,
            )

    async def _store_implicit_preferences(self, message: str) -> None:
        try:
            await self.intent_pipeline.persist_implicit_preferences(message)
        except Exception as e:
            logger.error(f"Failed to store implicit preferences: {e}")

    async def _run_turn(
        self,
        intent: IntentRecord,
        session: SessionSnapshot,
        message: str,
    ) -> tuple[TurnResult, str]:
        suggestions = extract_thread_suggestions(session.messages)
        resolution = None
        if should_resolve(intent, suggestions):
            resolution = await self.suggestion_resolver.resolve(
                message, session.last_assistant_message, suggestions,
            )

        if needs_disambiguation(intent, suggestions, resolution):
            logger.info(f"Suggestion reference unresolved ({len(suggestions)} candidates); asking the user")
            return await self.orchestrator.disambiguate(suggestions, resolution), "suggestion_disambiguation"

        decision = select_mode(intent, session, message)
        turn = await self.orchestrator.run(decision, intent, session, message, suggestions, resolution)
        return turn, decision.reason

    def _enrich(
        self,
        turn: TurnResult,
        intent: IntentRecord,
        session: SessionSnapshot,
    ) -> tuple[str, Optional[list[dict]]]:
        """Option cards only on eligible recommendation turns; elsewhere keep the text."""
        enriched = self.enricher.enrich(turn.reply)
        eligible = (
            turn.mode == Mode.RECOMMENDATION
            and not turn.bypass_enrichment
            and suggestions_eligible(intent, session.mode)
        )
        if eligible and enriched.blocks:
            return enriched.text, enriched.blocks
        return enriched.text, turn.blocks

    async def _persist(
        self,
        thread_id: str,
        user_message: str,
        reply: str,
        blocks: Optional[list[dict]],
    ) -> Optional[str]:
        """Store both sides of the turn; returns the assistant message id."""
        await self.conversation_repo.insert_message(thread_id, "user", user_message)
        stored = await self.conversation_repo.insert_message(
            thread_id,
            "assistant",
            reply,
            blocks_json=json.dumps(blocks) if blocks else None,
        )
        await self.conversation_repo.touch_thread(thread_id)
        return stored.get("id") if stored else None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_RETRYABLE_ERRORS = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def _is_retryable(exc: Exception) -> bool:
    """Classify an exception as transient (retryable) or permanent."""
    if isinstance(exc, AgentError):
        return exc.retryable
    if isinstance(exc, _RETRYABLE_ERRORS):
        return True
    msg = str(exc).lower()
    if any(kw in msg for kw in ("timeout", "timed out", "connection", "unreachable")):
        return True
    # Malformed model output is usually a one-off
    if any(kw in msg for kw in ("json", "parse")):
        return True
    return False


def _classify_error(exc: Exception) -> str:
    """Return a machine-readable error code for the exception."""
    if isinstance(exc, AgentError):
        return "agent_error"
    if isinstance(exc, TimeoutError):
        return "llm_timeout"
    if isinstance(exc, (ConnectionError, OSError)):
        return "connection_error"
    msg = str(exc).lower()
    if "timeout" in msg or "timed out" in msg:
        return "llm_timeout"
    if "connection" in msg or "unreachable" in msg:
        return "connection_error"
    if "json" in msg or "parse" in msg:
        return "llm_parse_error"
    if "model request failed" in msg or "empty response" in msg:
        return "llm_provider_error"
    return "internal_error"
