# app/chat/parser.py
from __future__ import annotations

import json
import logging
import re
from collections import Counter
from typing import Any, Tuple

from pydantic import ValidationError

from app.chat.schema import HealthAssistantResponse

logger = logging.getLogger(__name__)

FORMAT_ERROR_MESSAGE = (
    "I apologize, but I encountered an error formatting my response. Please try again."
)

_MESSAGE_PATTERN = re.compile(r'"message"\s*:\s*"([^"]+)"', re.IGNORECASE)

# How often each parsing stage produced the reply; scraped for monitoring
parse_stats: Counter = Counter()


class DuplicateKeyError(ValueError):
    pass


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict:
    result: dict = {}
    for key, value in pairs:
        if key in result:
            raise DuplicateKeyError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _loads(text: str) -> Any:
    """
    json.loads that treats duplicate keys as malformed input.
    """
    return json.loads(text, object_pairs_hook=_reject_duplicates)


def extract_json_candidate(raw: str) -> str:
    """
    Strip ``` / ```json fences, then isolate the outermost {...} if that
    substring parses on its own. Otherwise return the stripped text.
    """
    text = raw.strip()
    if text.lower().startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    first = text.find("{")
    last = text.rfind("}")
    if first >= 0 and last > first:
        candidate = text[first:last + 1]
        try:
            _loads(candidate)
            return candidate
        except ValueError:
            pass
    return text


def _find_message(doc: dict) -> Tuple[bool, Any]:
    for key, value in doc.items():
        if key.lower() == "message":
            return True, value
    return False, None


def _normalize_top_level_keys(doc: dict) -> dict:
    """
    Case-insensitive match of top-level keys onto the response fields.
    """
    known = {
        "message": "message",
        "appointment": "appointment",
        "symptomchanges": "symptomChanges",
        "symptom_changes": "symptomChanges",
    }
    return {known.get(k.lower(), k): v for k, v in doc.items()}


def parse_response(raw: str) -> HealthAssistantResponse:
    """
    Best-effort extraction of the structured reply from raw model output.

    Stages, each tried only if the previous one failed:
      1. fence strip + brace isolation
      2. full HealthAssistantResponse validation with a non-empty message
      3. just the (case-insensitive) "message" string
      4. valid JSON object with no "message" key -> fixed apology, logged
      5. regex for "message": "..." in the raw text
      6. trimmed raw text
    """
    raw = raw or ""
    candidate = extract_json_candidate(raw)

    try:
        doc = _loads(candidate)
    except ValueError:
        doc = None

    if isinstance(doc, dict):
        found, message = _find_message(doc)
        if not found:
            parse_stats["missing_message"] += 1
            logger.error(
                "Response is valid JSON but missing required 'message' field. Response: %s",
                raw[:500],
            )
            return HealthAssistantResponse(message=FORMAT_ERROR_MESSAGE)

        try:
            response = HealthAssistantResponse.model_validate(_normalize_top_level_keys(doc))
            if response.message.strip():
                parse_stats["structured"] += 1
                return response
        except ValidationError:
            logger.debug("Full response validation failed, extracting message only")

        if isinstance(message, str):
            parse_stats["message_only"] += 1
            # Blank stays blank; the caller substitutes its own fallback
            return HealthAssistantResponse(message=message if message.strip() else "")

    match = _MESSAGE_PATTERN.search(raw.strip())
    if match:
        parse_stats["regex"] += 1
        extracted = match.group(1).replace("\\n", "\n").replace('\\"', '"')
        return HealthAssistantResponse(message=extracted)

    parse_stats["raw_text"] += 1
    if doc is None:
        logger.warning(
            "Could not parse JSON response, returning raw text. Response length: %d",
            len(raw),
        )
    return HealthAssistantResponse(message=raw.strip())
