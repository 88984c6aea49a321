import json
import re
from typing import Any, Dict, List, Optional, Union

from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

JSONValue = Union[Dict[str, Any], List[Any]]

_OBJECT_PATTERN = re.compile(r"(\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\})", re.DOTALL)
_ARRAY_PATTERN = re.compile(r"(\[.*\])", re.DOTALL)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_safely(text: Optional[str]) -> Optional[JSONValue]:
    """Parse JSON from model output, handling common formatting issues.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Leading/trailing prose around the JSON payload
    - Trailing data after the first complete value

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON value or None if parsing fails
    """
    if not text:
        return None

    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Initial JSON parse failed: {e}, attempting repairs...")
        first_error = e

    # First complete value, ignoring whatever follows it
    start = min((i for i in (cleaned.find("{"), cleaned.find("[")) if i >= 0), default=-1)
    if start >= 0:
        try:
            value, _ = json.JSONDecoder().raw_decode(cleaned[start:])
            return value
        except json.JSONDecodeError:
            LOGGER.debug("No complete JSON value at first bracket")

    for pattern in (_ARRAY_PATTERN, _OBJECT_PATTERN):
        match = pattern.search(cleaned)
        if not match:
            continue
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            continue

    LOGGER.error(f"Failed to parse JSON: {first_error}")
    return None


def extract_list(payload: Optional[JSONValue], key: str) -> List[Any]:
    """Return ``payload[key]`` when payload is an object, or payload itself when it is a list."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        value = payload.get(key, [])
        return value if isinstance(value, list) else []
    return []
