"""
Input sanitization and prompt-injection detection for caller-supplied text.
"""

import re
from typing import Optional

CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')
TAGS = re.compile(r'<[^>]+>')
SCRIPT_URIS = re.compile(r'(javascript:|data:text/html)', re.IGNORECASE)
WHITESPACE = re.compile(r'\s+')
SESSION_ID = re.compile(r'^[a-zA-Z0-9-]{8,80}$')

MAX_MESSAGE_LENGTH = 600
MAX_FEEDBACK_LENGTH = 300

INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'ignore\s+(all\s+)?previous\s+instructions',
        r'ignore\s+(all\s+)?above',
        r'disregard\s+(all\s+)?previous',
        r'you\s+are\s+now\s+(?:a|an|the)',
        r'new\s+system\s+prompt',
        r'override\s+(?:your|the)\s+(?:system|instructions|prompt)',
        r'forget\s+(?:all|your)\s+(?:previous|instructions|rules)',
        r'act\s+as\s+(?:a\s+)?(?:different|new)\s+(?:ai|assistant|bot)',
        r'\bsystem:\s',
        r'\bassistant:\s',
        r'\bdo not\s+follow\s+(?:your|the)\s+(?:instructions|rules|guidelines)',
        r'jailbreak',
        r'dan\s+mode',
        r'developer\s+mode\s+enabled',
    )
]
INSTRUCTION_PHRASES = re.compile(r'\b(you must|you should|you will|always|never|important|rule|instruction)\b')


def sanitize_input(value: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Strip control characters, markup and script URIs, collapse whitespace and cap the length."""
    value = CONTROL_CHARS.sub(' ', value)
    value = TAGS.sub(' ', value)
    value = SCRIPT_URIS.sub('', value)
    return WHITESPACE.sub(' ', value).strip()[:max_length]


def sanitize_message(value: str) -> str:
    return sanitize_input(value, MAX_MESSAGE_LENGTH)


def sanitize_feedback(value: str) -> str:
    return sanitize_input(value, MAX_FEEDBACK_LENGTH)


def is_valid_session_id(candidate: Optional[str]) -> bool:
    return isinstance(candidate, str) and SESSION_ID.match(candidate) is not None


def detect_prompt_injection(message: str) -> Optional[str]:
    """
    Flag text that tries to override the system instructions.

    Returns:
        'potential_injection', 'suspicious_instructions' or None when the text looks safe
    """
    lower = message.lower()
    if any(pattern.search(lower) for pattern in INJECTION_PATTERNS):
        return 'potential_injection'

    # long messages stacked with imperative phrasing
    if len(message) > 500 and len(INSTRUCTION_PHRASES.findall(lower)) >= 5:
        return 'suspicious_instructions'
    return None
