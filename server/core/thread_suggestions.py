"""
Thread suggestions — recover option cards shown earlier in a thread and
resolve references like "these" or "option 2" to specific items.
"""
import json
import logging
import math
from typing import Optional

from config.settings import settings
from integrations.llm.client import LLMClient, parse_json_object
from integrations.llm.prompts import PRIOR_CONTEXT_TEMPLATE, SUGGESTION_RESOLVER_PROMPT
from models.intent import IntentRecord
from models.message import StoredMessage
from models.suggestion import SuggestionResolution, ThreadSuggestion

logger = logging.getLogger(__name__)

DISAMBIGUATION_MODEL = "resolver/suggestion_intent"
_DISAMBIGUATION_OPTIONS = 4
_RATIONALE_MAX = 300


def parse_message_blocks(blocks_json: Optional[str]) -> list[dict]:
    """Decode stored reply blocks; anything malformed yields an empty list."""
    if not blocks_json:
        return []
    try:
        blocks = json.loads(blocks_json)
    except (TypeError, ValueError):
        return []
    if isinstance(blocks, dict):
        blocks = blocks.get("blocks") or []
    return [b for b in blocks if isinstance(b, dict)] if isinstance(blocks, list) else []


def _cards_in_block(block: dict) -> list[dict]:
    """Flatten image_card / image_gallery / option_set into a list of cards."""
    kind = block.get("type")
    if kind == "image_card":
        cards = [block]
    elif kind == "image_gallery":
        cards = block.get("items") or []
    elif kind == "option_set":
        cards = [item.get("card") for item in block.get("items") or [] if isinstance(item, dict)]
    else:
        cards = []
    return [c for c in cards if isinstance(c, dict) and isinstance(c.get("title"), str) and c["title"].strip()]


def extract_thread_suggestions(
    messages: list[StoredMessage],
    limit: Optional[int] = None,
) -> list[ThreadSuggestion]:
    """
    Collect cards from assistant messages, most recent first.

    De-duplicated on (lowercased title, action url); stops at `limit`
    so recent cards win over older ones.
    """
    limit = limit or settings.THREAD_SUGGESTION_LIMIT
    collected: list[ThreadSuggestion] = []
    seen = set()

    for message in reversed(messages):
        if message.role != "assistant":
            continue
        for block in parse_message_blocks(message.blocks_json):
            for card in _cards_in_block(block):
                key = f"{card['title'].lower()}::{card.get('actionUrl') or ''}"
                if key in seen:
                    continue
                seen.add(key)
                meta = card.get("meta") if isinstance(card.get("meta"), dict) else {}
                collected.append(ThreadSuggestion(
                    index=len(collected) + 1,
                    title=card["title"],
                    subtitle=card.get("subtitle"),
                    meta={str(k): str(v) for k, v in meta.items()},
                    action_url=card.get("actionUrl"),
                    source_name=card.get("sourceName"),
                ))
                if len(collected) >= limit:
                    return collected

    return collected


def format_suggestions_for_prompt(suggestions: list[ThreadSuggestion]) -> str:
    if not suggestions:
        return "No prior structured suggestions found in thread blocks."
    lines = []
    for s in suggestions:
        subtitle = f" — {s.subtitle}" if s.subtitle else ""
        meta = f" | meta={json.dumps(s.meta)}" if s.meta else ""
        link = f" | url={s.action_url}" if s.action_url else ""
        lines.append(f"[{s.index}] {s.title}{subtitle}{meta}{link}")
    return "\n".join(lines)


def select_resolved(
    suggestions: list[ThreadSuggestion],
    resolution: Optional[SuggestionResolution],
) -> list[ThreadSuggestion]:
    if resolution is None or resolution.is_empty:
        return []
    chosen = set(resolution.selected_indices)
    return [s for s in suggestions if s.index in chosen]


def should_resolve(intent: IntentRecord, suggestions: list[ThreadSuggestion]) -> bool:
    """Resolution only runs when there is something to resolve and the turn may act on it."""
    return bool(suggestions) and (
        intent.references_prior_suggestions or intent.is_action_command or intent.is_calendar_write
    )


def _is_finite_number(value) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and math.isfinite(value)


class SuggestionResolver:
    """One zero-temperature call mapping a message onto prior suggestion indices."""

    def __init__(self, llm_client: LLMClient):
        self.llm = llm_client

    async def resolve(
        self,
        message: str,
        last_assistant_message: Optional[str],
        suggestions: list[ThreadSuggestion],
    ) -> Optional[SuggestionResolution]:
        """Returns None when there are no candidates or the call fails."""
        if not suggestions:
            return None

        context = (
            PRIOR_CONTEXT_TEMPLATE.format(previous=last_assistant_message[:500])
            if last_assistant_message else ""
        )
        prompt = SUGGESTION_RESOLVER_PROMPT.format(
            context=context,
            message=message,
            suggestions=format_suggestions_for_prompt(suggestions),
        )

        try:
            text = await self.llm.complete(
                prompt,
                temperature=0.0,
                timeout_s=settings.LLM_RESOLVER_TIMEOUT,
                max_tokens=180,
            )
            parsed = parse_json_object(text)
        except Exception as e:
            logger.warning(f"Suggestion resolution failed: {e}")
            return None

        allowed = {s.index for s in suggestions}
        indices = set()
        for value in parsed.get("selectedIndices") or []:
            if not _is_finite_number(value):
                continue
            if round(value) in allowed:
                indices.add(round(value))

        confidence = parsed.get("confidence")
        if not _is_finite_number(confidence):
            confidence = 0.0
        rationale = parsed.get("rationale")

        resolution = SuggestionResolution(
            selected_indices=sorted(indices),
            confidence=min(max(float(confidence), 0.0), 1.0),
            rationale=rationale[:_RATIONALE_MAX] if isinstance(rationale, str) else "",
        )
        logger.info(
            f"Resolved suggestions {resolution.selected_indices} "
            f"(confidence={resolution.confidence:.2f})"
        )
        return resolution


def needs_disambiguation(
    intent: IntentRecord,
    suggestions: list[ThreadSuggestion],
    resolution: Optional[SuggestionResolution],
) -> bool:
    """
    A calendar write pointing at earlier suggestions must know which ones.

    True when the selection is missing, empty or below the confidence
    threshold. Holds even when no suggestions could be recovered.
    """
    if not (intent.is_calendar_write and intent.references_prior_suggestions):
        return False
    if resolution is None or resolution.is_empty:
        return True
    return resolution.confidence < settings.SUGGESTION_CONFIDENCE_THRESHOLD


def build_disambiguation_reply(suggestions: list[ThreadSuggestion]) -> str:
    if not suggestions:
        return (
            "Quick check so I place the right one on your calendar: I can't see which "
            "options you mean in this thread. Which place should I add, and when?"
        )
    options = "\n".join(f"[{s.index}] {s.title}" for s in suggestions[:_DISAMBIGUATION_OPTIONS])
    return (
        "Quick check so I place the right one on your calendar:\n"
        f"{options}\n"
        "Which option should I add?"
    )


def build_suggestion_details_block(suggestions: list[ThreadSuggestion]) -> str:
    lines = []
    for s in suggestions:
        parts = [s.title]
        if s.subtitle:
            parts.append(s.subtitle)
        if s.action_url:
            parts.append(s.action_url)
        lines.append("- " + " | ".join(parts))
    return "\n".join(["Suggested venues from thread:", *lines])


def ensure_description_includes_suggestions(
    description: Optional[str],
    suggestions: list[ThreadSuggestion],
) -> Optional[str]:
    """Append any chosen venue whose title is missing from the event description."""
    if not suggestions:
        return description
    base = (description or "").strip()
    lower = base.lower()
    missing = [s for s in suggestions if s.title.lower() not in lower]
    if not missing:
        return description
    details = build_suggestion_details_block(missing)
    return f"{base}\n\n{details}" if base else details
