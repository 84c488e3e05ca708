"""
Response guard for model answers.

Models sometimes wrap their answer in a markdown code fence or a JSON
object such as {"answer": "..."}; the guard strips those wrappers so the
caller always receives plain text.
"""

import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ANSWER_KEYS = ("answer", "response", "message", "text", "content")


def strip_code_fence(text: str) -> str:
    if text.startswith("```json") and text.endswith("```"):
        return text[7:-3].strip()
    if text.startswith("```") and text.endswith("```"):
        lines = text.split("\n")
        if len(lines) > 2:
            return "\n".join(lines[1:-1]).strip()
    return text


def parse_json_object(response_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a (possibly fenced) JSON object answer; None when there is none."""
    if not response_text:
        return None
    try:
        parsed = json.loads(strip_code_fence(response_text.strip()))
    except json.JSONDecodeError:
        logger.warning(f"[GUARD] Model answer is not valid JSON: {response_text[:200]}")
        return None
    return parsed if isinstance(parsed, dict) else None


def _answer_from_json(parsed: Any) -> Optional[str]:
    if isinstance(parsed, str):
        return parsed
    if not isinstance(parsed, dict):
        return None
    for key in ANSWER_KEYS:
        value = parsed.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and isinstance(value.get("text"), str):
            return value["text"]
    return None


def clean_answer(response_text: Optional[str]) -> Optional[str]:
    """Unwrap fenced / JSON-wrapped answers.

    Returns None for None input. Text that is not wrapped, or JSON with no
    recognizable answer field, comes back stripped but otherwise unchanged.
    """
    if response_text is None:
        return None
    cleaned = strip_code_fence(response_text.strip())

    if (cleaned.startswith("{") and cleaned.endswith("}")) or (cleaned.startswith('"') and cleaned.endswith('"')):
        try:
            answer = _answer_from_json(json.loads(cleaned))
        except json.JSONDecodeError:
            answer = None  # Keep original if not valid JSON
        if answer is not None and answer.strip():
            cleaned = answer.strip()

    if not cleaned:
        return response_text.strip()

    if cleaned != response_text:
        logger.debug(f"[GUARD] Cleaned model answer: {response_text[:100]}... -> {cleaned[:100]}...")
    return cleaned
