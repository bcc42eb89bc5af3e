"""
Tool-calling loop — bounded model/tool rounds with calendar write
deduplication and read-back verification.
"""
import json
import logging
import time
from typing import Any, Optional

from pydantic import BaseModel

from config.settings import settings
from core.calendar_resolver import find_potential_duplicate
from core.thread_suggestions import ensure_description_includes_suggestions
from database.repositories.trace_repo import TraceRepository
from integrations.llm.client import LLMClient
from integrations.llm.prompts import FINAL_SYNTHESIS_MESSAGE, WRITE_ENFORCEMENT_MESSAGE
from models.action import ToolCall, ToolOutcome
from models.suggestion import SuggestionResolution, ThreadSuggestion
from tools.base import ToolRegistry
from tools.calendar_tool import WRITE_OPERATIONS

logger = logging.getLogger(__name__)

CALENDAR_TOOL = "google_calendar_events"

FOUND_NOT_APPLIED_REPLY = (
    "I found your event, but I haven't applied the calendar edit yet. I can do it now "
    "if you confirm exactly what to change in the event details."
)
NO_WRITE_REPLY = (
    "I couldn't complete the calendar change yet because no write action was executed. "
    "Please repeat the exact edit you want, and I'll apply it directly."
)
UNVERIFIED_WRITE_REPLY = (
    "I attempted the calendar edit, but post-update verification failed, so I can't confirm "
    "it was applied. Please retry once and I'll verify the event state before confirming."
)
TOOL_FAILED_REPLY = "I couldn't complete the live tool lookup because a tool call failed: {error}"
NO_TOOL_EVIDENCE_REPLY = (
    "I couldn't complete the live tool lookup because no final tool-backed status was "
    "produced. Please retry once."
)
DUPLICATE_PROMPT = (
    "I found a matching event already on your calendar. Should I update it with the "
    "suggestion details, or create a separate entry?"
)

_VERBS = {
    "create": ("added", "to"),
    "update": ("updated", "on"),
    "delete": ("removed", "from"),
}


class ToolLoopResult(BaseModel):
    reply: str = ""
    requested_model: Optional[str] = None
    response_model: Optional[str] = None
    response_id: Optional[str] = None
    outcomes: list[ToolOutcome] = []
    rounds: int = 0
    write_executed: bool = False
    write_verification_failed: bool = False
    find_succeeded: bool = False
    pending_confirmation: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def tool_calls_executed(self) -> int:
        return len(self.outcomes)


def _is_record(value: Any) -> bool:
    return isinstance(value, dict)


def is_write_verified(operation: str, readback: Any) -> bool:
    """Deletes verify by absence, creates/updates by presence of the event id."""
    record = readback if _is_record(readback) else {}
    error = record.get("error")
    if operation == "delete":
        message = error.lower() if isinstance(error, str) else ""
        return "not found" in message or "404" in message
    event = record.get("event")
    return not error and _is_record(event) and isinstance(event.get("id"), str)


def build_status_sentence(outcomes: list[ToolOutcome]) -> Optional[str]:
    """Deterministic summary of verified calendar writes, or None when there were none."""
    sentences = []
    for outcome in outcomes:
        if outcome.tool_name != CALENDAR_TOOL or not outcome.write_verified:
            continue
        verb, preposition = _VERBS[outcome.operation]
        result = outcome.result or {}
        event = result.get("event") if _is_record(result.get("event")) else {}
        title = event.get("summary") or "the event"
        sentences.append(f"I {verb} \"{title}\" {preposition} your calendar and verified the change.")
    return " ".join(sentences) or None


class ToolCallingLoop:
    """
    Drive up to MAX_TOOL_ROUNDS + 1 model calls.

    Tools run sequentially and every failure becomes a structured tool
    result. No round ends without a reminder while a required calendar
    write has not executed and rounds remain.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        tool_registry: ToolRegistry,
        trace_repo: Optional[TraceRepository] = None,
        max_rounds: Optional[int] = None,
    ):
        self.llm = llm_client
        self.tool_registry = tool_registry
        self.trace_repo = trace_repo
        self.max_rounds = settings.MAX_TOOL_ROUNDS if max_rounds is None else max_rounds

    async def _trace(self, message: str) -> None:
        if self.trace_repo:
            await self.trace_repo.add_trace("chat", message)

    def _owes_write(self, state: ToolLoopResult, write_required: bool, round_index: int) -> bool:
        return (
            write_required
            and not state.write_executed
            and not state.pending_confirmation
            and round_index < self.max_rounds
        )

    async def _enforce_write(self, messages: list[dict], round_index: int) -> None:
        logger.info(f"Write required but not executed (round {round_index + 1}); enforcing tool use")
        messages.append({"role": "system", "content": WRITE_ENFORCEMENT_MESSAGE})
        await self._trace(f"calendar_write_enforced round={round_index + 1}")

    async def run(
        self,
        messages: list[dict],
        tools: list[dict],
        model: str,
        write_required: bool = False,
        references_prior: bool = False,
        resolution: Optional[SuggestionResolution] = None,
        suggestions_for_write: Optional[list[ThreadSuggestion]] = None,
    ) -> ToolLoopResult:
        """
        Run the loop over a prepared message list (system + history + user).

        Raises only when the very first model call fails, before any tool
        ran; later failures degrade to deterministic replies.
        """
        messages = list(messages)
        state = ToolLoopResult(requested_model=model, response_model=model)
        reply = ""

        for round_index in range(self.max_rounds + 1):
            state.rounds = round_index + 1
            try:
                model_reply = await self.llm.chat(messages, tools=tools or None, model=model)
            except Exception as e:
                if not state.outcomes:
                    raise
                logger.error(f"Model call failed in round {round_index + 1}: {e}")
                break

            state.requested_model = model_reply.requested_model
            state.response_model = model_reply.response_model
            state.response_id = model_reply.response_id

            if not model_reply.tool_calls:
                if self._owes_write(state, write_required, round_index):
                    messages.append({"role": "assistant", "content": model_reply.content})
                    await self._enforce_write(messages, round_index)
                    continue
                reply = model_reply.text
                break

            messages.append(model_reply.to_assistant_message())
            for tool_call in model_reply.tool_calls:
                await self._trace(f"tool_call_start name={tool_call.tool_name} round={round_index + 1}")
                outcome = await self._execute(
                    tool_call, references_prior, resolution, suggestions_for_write or [],
                )
                state.outcomes.append(outcome)
                self._record(state, outcome)

                messages.append({
                    "role": "tool",
                    "name": tool_call.tool_name,
                    "tool_call_id": tool_call.action_id,
                    "content": json.dumps(
                        outcome.result if outcome.result is not None else {"error": outcome.error},
                        default=str,
                    ),
                })
                if outcome.error:
                    await self._trace(f"tool_call_error name={tool_call.tool_name} error={outcome.error[:120]}")
                else:
                    await self._trace(f"tool_call_success name={tool_call.tool_name}")

            # read-only rounds still owe the write
            if self._owes_write(state, write_required, round_index):
                await self._enforce_write(messages, round_index)

        if not reply and state.outcomes:
            reply = await self._synthesize(messages, model)

        state.reply = self._apply_guards(reply, state, write_required)
        return state

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        tool_call: ToolCall,
        references_prior: bool,
        resolution: Optional[SuggestionResolution],
        suggestions_for_write: list[ThreadSuggestion],
    ) -> ToolOutcome:
        """Execute one call with error isolation; never raises."""
        tool_start = time.time()
        outcome = ToolOutcome(
            action_id=tool_call.action_id,
            tool_name=tool_call.tool_name,
            operation=tool_call.operation,
        )

        tool = self.tool_registry.get_tool(tool_call.tool_name)
        if not tool:
            logger.error(f"Tool not found: {tool_call.tool_name}")
            outcome.error = f"Tool '{tool_call.tool_name}' is not available."
            outcome.result = {"error": outcome.error}
            return outcome

        try:
            args = dict(tool_call.arguments)
            await tool.validate_parameters(**args)
            logger.info(f"Executing tool: {tool_call.tool_name} ({outcome.operation or '-'})")
            if tool.name == CALENDAR_TOOL and outcome.operation == "create":
                result = await self._create_with_dedupe(
                    tool, args, references_prior, resolution, suggestions_for_write,
                )
                outcome.operation = result.pop("_operation", "create")
            else:
                result = await tool.execute(**args)

            if tool.name == CALENDAR_TOOL and outcome.operation in WRITE_OPERATIONS and self._is_applied(result):
                readback = await self._verify_write(tool, outcome.operation, args, result)
                outcome.write_verified = is_write_verified(outcome.operation, readback)
                result = {**result, "writeVerified": outcome.write_verified, "verificationReadback": readback}
                logger.info(f"Calendar {outcome.operation} verified={outcome.write_verified}")

            outcome.result = result if _is_record(result) else {"result": result}
            error = outcome.result.get("error")
            outcome.error = error if isinstance(error, str) and error.strip() else None
            outcome.success = outcome.error is None
        except Exception as e:
            logger.error(f"Tool execution error ({tool_call.tool_name}): {e}", exc_info=True)
            outcome.error = str(e) or "Tool execution failed"
            outcome.result = {"error": outcome.error}

        outcome.execution_time_ms = int((time.time() - tool_start) * 1000)
        return outcome

    @staticmethod
    def _is_applied(result: Any) -> bool:
        """A write result that neither failed nor asked for confirmation."""
        return _is_record(result) and not result.get("error") and not result.get("requiresUserConfirmation")

    async def _create_with_dedupe(
        self,
        tool,
        args: dict,
        references_prior: bool,
        resolution: Optional[SuggestionResolution],
        suggestions_for_write: list[ThreadSuggestion],
    ) -> dict:
        """
        Update an existing event instead of creating a clear duplicate, ask
        when a duplicate is only plausible, otherwise create.
        """
        if not all(isinstance(args.get(k), str) for k in ("summary", "start", "end")):
            return await tool.execute(**args)

        args["description"] = ensure_description_includes_suggestions(
            args.get("description"), suggestions_for_write,
        )
        duplicate = await find_potential_duplicate(tool, args)
        has_duplicate = duplicate.candidate is not None and duplicate.score >= settings.DUPLICATE_ASK_THRESHOLD
        clear_intent = not references_prior or (
            resolution is not None
            and not resolution.is_empty
            and resolution.confidence >= settings.SUGGESTION_WRITE_CONFIDENCE
        )
        clear_duplicate = (
            has_duplicate
            and duplicate.score >= settings.DUPLICATE_UPDATE_THRESHOLD
            and duplicate.margin >= settings.DUPLICATE_MARGIN
        )

        if has_duplicate and clear_duplicate and clear_intent:
            existing = duplicate.candidate
            await self._trace(
                f"calendar_dedupe action=update_existing score={duplicate.score:.2f} event={existing.id}"
            )
            patch = {
                "description": ensure_description_includes_suggestions(
                    existing.description or args.get("description"), suggestions_for_write,
                ),
                "location": args.get("location") or existing.location,
            }
            patch = {k: v for k, v in patch.items() if v}
            args.update(operation="update", eventId=existing.id, calendarId=existing.calendar_id)
            if not patch:
                # nothing to change; the existing event already is the outcome
                result = {
                    "calendarId": existing.calendar_id,
                    "eventId": existing.id,
                    "event": {"id": existing.id, "summary": existing.summary},
                    "unchanged": True,
                }
            else:
                result = await tool.execute(
                    operation="update", eventId=existing.id, calendarId=existing.calendar_id, **patch,
                )
            return {**result, "_operation": "update", "dedupedFromCreate": True}

        if has_duplicate:
            existing = duplicate.candidate
            await self._trace(
                f"calendar_dedupe action=ask_user score={duplicate.score:.2f} event={existing.id}"
            )
            return {
                "requiresUserConfirmation": True,
                "reason": "potential_duplicate_event",
                "duplicateEvent": {
                    "eventId": existing.id,
                    "summary": existing.summary,
                    "start": existing.start,
                    "end": existing.end,
                    "calendarId": existing.calendar_id,
                    "calendarName": existing.calendar_name,
                    "score": round(duplicate.score, 2),
                },
                "prompt": DUPLICATE_PROMPT,
            }

        return await tool.execute(**args)

    async def _verify_write(self, tool, operation: str, args: dict, result: dict) -> Any:
        """Re-read the written event by id; None when no id is known."""
        event = result.get("event") if _is_record(result.get("event")) else {}
        event_id = result.get("eventId") or event.get("id") or args.get("eventId")
        calendar_id = result.get("calendarId") or args.get("calendarId")
        if not isinstance(event_id, str) or not event_id:
            logger.warning(f"Cannot verify calendar {operation}: no event id in result")
            return None
        return await tool.execute(operation="get", eventId=event_id, calendarId=calendar_id)

    @staticmethod
    def _record(state: ToolLoopResult, outcome: ToolOutcome) -> None:
        if outcome.error:
            state.last_error = outcome.error
        if outcome.tool_name != CALENDAR_TOOL:
            return
        result = outcome.result or {}
        if outcome.operation in WRITE_OPERATIONS:
            if result.get("requiresUserConfirmation"):
                state.pending_confirmation = result.get("prompt") or DUPLICATE_PROMPT
            elif not outcome.error:
                state.write_executed = True
                if not outcome.write_verified:
                    state.write_verification_failed = True
        elif result.get("requiresUserConfirmation") and not state.pending_confirmation:
            state.pending_confirmation = result.get("prompt")
        if outcome.operation == "find" and result.get("found") is True:
            state.find_succeeded = True

    # ------------------------------------------------------------------
    # Final reply
    # ------------------------------------------------------------------

    async def _synthesize(self, messages: list[dict], model: str) -> str:
        """One tools-disabled call turning tool results into a status reply."""
        try:
            final = await self.llm.chat(
                [*messages, {"role": "system", "content": FINAL_SYNTHESIS_MESSAGE}],
                tools=None,
                model=model,
            )
            return final.text
        except Exception as e:
            logger.warning(f"Final synthesis failed, using deterministic status: {e}")
            return ""

    @staticmethod
    def _apply_guards(reply: str, state: ToolLoopResult, write_required: bool) -> str:
        """
        Model text never stands in for an unexecuted or unverified write.
        """
        if state.pending_confirmation and not state.write_executed:
            return state.pending_confirmation
        if write_required and not state.write_executed:
            logger.info(f"Calendar write guard activated (find_succeeded={state.find_succeeded})")
            return FOUND_NOT_APPLIED_REPLY if state.find_succeeded else NO_WRITE_REPLY
        if state.write_executed and state.write_verification_failed:
            return UNVERIFIED_WRITE_REPLY
        if reply:
            return reply
        if state.outcomes:
            status = build_status_sentence(state.outcomes)
            if status:
                return status
            if state.last_error:
                return TOOL_FAILED_REPLY.format(error=state.last_error)
            return NO_TOOL_EVIDENCE_REPLY
        return ""
