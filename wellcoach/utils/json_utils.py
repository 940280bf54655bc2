"""
JSON utilities for cleaning and recovering objects from LLM responses.
"""

import json
from typing import Any, Dict, List, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def balanced_object_at(text: str, start: int) -> Optional[str]:
    """Return the balanced brace-delimited substring opening at text[start].

    Braces inside JSON string literals are ignored.

    Args:
        text: Free-form text
        start: Index of an opening '{'

    Returns:
        The substring up to the matching '}', or None if it never closes
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of model output.

    Tries a strict parse of the cleaned response first, then falls back to the
    first balanced brace-delimited substring that parses as an object.

    Args:
        raw: Raw LLM response

    Returns:
        Parsed dict, or None when nothing parseable is found
    """
    if not raw:
        return None

    cleaned = clean_json_response(raw)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = cleaned.find('{')
    while start != -1:
        candidate = balanced_object_at(cleaned, start)
        if candidate is not None:
            try:
                parsed = json.loads(candidate)
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass
        start = cleaned.find('{', start + 1)
    return None


def get_str(data: Optional[Dict[str, Any]], key: str, default: str) -> str:
    """Read a string field, falling back to default when missing or mistyped."""
    if data is not None and isinstance(data.get(key), str) and data[key].strip():
        return data[key]
    return default


def get_str_list(data: Optional[Dict[str, Any]], key: str, default: List[str], limit: int) -> List[str]:
    """Read a list field as strings, truncated to limit items.

    A bare string value is accepted as a single-item list.
    """
    if data is None:
        return list(default)
    value = data.get(key)
    if isinstance(value, list):
        return [str(item) for item in value][:limit]
    if isinstance(value, str) and value.strip():
        return [value]
    return list(default)
