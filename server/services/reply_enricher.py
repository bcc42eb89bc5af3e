"""Turn option-card JSON replies into structured reply blocks."""
import logging
from typing import Optional

from pydantic import BaseModel

from integrations.llm.client import parse_json_object

logger = logging.getLogger(__name__)

CARD_CATEGORIES = {"hotel", "restaurant", "park", "activity", "destination", "experience"}
MAX_OPTIONS = 5
MAX_META_CHIPS = 4


class EnrichedReply(BaseModel):
    text: str
    blocks: Optional[list[dict]] = None


def _to_card(option: dict) -> Optional[dict]:
    title = option.get("title")
    if not isinstance(title, str) or not title.strip():
        return None
    card = {"title": title.strip()}
    if isinstance(option.get("subtitle"), str):
        card["subtitle"] = option["subtitle"]
    category = option.get("category")
    card["category"] = category if category in CARD_CATEGORIES else "experience"
    meta = option.get("meta")
    if isinstance(meta, dict):
        card["meta"] = {str(k): str(v) for k, v in list(meta.items())[:MAX_META_CHIPS]}
    for key in ("actionUrl", "sourceName"):
        if isinstance(option.get(key), str) and option[key].strip():
            card[key] = option[key].strip()
    return card


class ReplyEnricher:
    """
    Pass-through for plain text. A reply following the option-card contract
    ({"text": ..., "options": [...]}) becomes its text plus one option_set block.
    """

    def enrich(self, reply: str) -> EnrichedReply:
        if '"options"' not in reply:
            return EnrichedReply(text=reply)

        try:
            parsed = parse_json_object(reply)
        except ValueError:
            return EnrichedReply(text=reply)

        options = parsed.get("options")
        text = parsed.get("text")
        if not isinstance(options, list) or not isinstance(text, str):
            return EnrichedReply(text=reply)

        cards = [c for c in (_to_card(o) for o in options if isinstance(o, dict)) if c][:MAX_OPTIONS]
        if not cards:
            return EnrichedReply(text=text.strip() or reply)

        logger.info(f"Enriched reply with {len(cards)} option cards")
        return EnrichedReply(
            text=text.strip(),
            blocks=[{"type": "option_set", "items": [{"card": card} for card in cards]}],
        )
