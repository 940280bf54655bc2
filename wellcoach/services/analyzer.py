"""
Analyzer stage: health snapshot and energy score for the current turn.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AnalyzerResult, ImageAttachment, Turn, WearableSnapshot
from ..utils.bedrock_llm import BedrockLLM, build_messages
from ..utils.config import RouteBudget, StabilizerConfig
from ..utils.json_utils import extract_json_object, get_str, get_str_list
from ..utils.logging_config import get_logger, log_stage
from .prompts import (ANALYZER_FINAL_REMINDER, ANALYZER_SYSTEM_PROMPT, bullet_block, history_to_prompt,
                      join_prompt)
from .wearables import format_wearable_for_prompt, user_stated_overrides

logger = get_logger(__name__)

DEFAULT_SUMMARY = 'User may be experiencing routine fatigue based on current activity and recovery signals.'
DEFAULT_ENERGY = 55
DEFAULT_SIGNALS = ['Lower perceived energy', 'Heart rate and sleep suggest moderate recovery load']
DEFAULT_RISKS = ['If fatigue persists, suggest clinical follow-up.']

EMERGENCY_PATTERN = re.compile(
    r"(?:emergency|faint|unconscious|hospital|ambulance|chest\s*pain|can'?t\s*breathe|severe|collapsed|dizzy"
    r'|blacking\s*out)', re.IGNORECASE)
WORSENING_PATTERN = re.compile(
    r"(?:worse|terrible|awful|horrible|can'?t\s*move|much\s*more\s*tired|significantly\s*worse|really\s*bad)",
    re.IGNORECASE)
IMPROVING_PATTERN = re.compile(
    r'(?:better|great|amazing|wonderful|much\s*better|recovered|well[\s-]*rested|energized|fantastic)', re.IGNORECASE)


def parse_analyzer_result(raw: str) -> AnalyzerResult:
    """Parse model output, applying a default to every missing or mistyped field."""
    parsed = extract_json_object(raw)
    energy = parsed.get('energyScore') if parsed else None
    if isinstance(energy, bool) or not isinstance(energy, (int, float)):
        energy = DEFAULT_ENERGY
    return AnalyzerResult(summary=get_str(parsed, 'summary', DEFAULT_SUMMARY),
                          energy_score=int(round(max(0, min(100, energy)))),
                          key_signals=get_str_list(parsed, 'keySignals', DEFAULT_SIGNALS, 5),
                          risk_flags=get_str_list(parsed, 'riskFlags', DEFAULT_RISKS, 4))


def stabilize_energy_score(raw_score: int, previous_score: Optional[int], message: str, config: StabilizerConfig) -> int:
    """
    Bound a new energy score relative to the previous turn's score.

    The bound widens when the message reports a clear worsening or improvement.
    The absolute floor is the safety minimum, lowered only for emergencies.

    Args:
        raw_score: Score produced by the analyzer
        previous_score: Score persisted by the previous full turn, if any
        message: Current user message
        config: Stabilizer bounds

    Returns:
        Stabilized score in [floor, 100]
    """
    floor = config.emergency_floor if EMERGENCY_PATTERN.search(message) else config.safety_floor
    score = min(100, max(raw_score, floor))

    if previous_score is not None:
        max_drop = config.wide_drop if WORSENING_PATTERN.search(message) else config.max_drop
        max_rise = config.wide_rise if IMPROVING_PATTERN.search(message) else config.max_rise
        lower_bound = max(previous_score - max_drop, floor)
        upper_bound = min(previous_score + max_rise, 100)
        score = max(lower_bound, min(upper_bound, score))

    return score


class Analyzer:
    """Runs the analysis call against the text model."""

    def __init__(self, llm: BedrockLLM, budget: RouteBudget):
        self.llm = llm
        self.budget = budget

    def build_prompt(self,
                     message: str,
                     wearable: WearableSnapshot,
                     history: Sequence[Turn],
                     notes: List[str],
                     facts: List[str],
                     user_context: str = '',
                     feedback: Optional[str] = None,
                     has_image: bool = False) -> str:
        overrides = user_stated_overrides(history, message)
        return join_prompt(
            f'CONVERSATION HISTORY (previous messages in this session):\n{history_to_prompt(history)}' if history else '',
            f'CURRENT USER MESSAGE: {message}',
            '[The user also attached a photo. Describe what you see and incorporate it into your health analysis.]'
            if has_image else '',
            f'User feedback on previous plan: {feedback}' if feedback else '',
            f'Sensor/wearable data (LOWER priority than user-stated values):\n{format_wearable_for_prompt(wearable)}',
            bullet_block('USER-STATED VALUES (these override sensor data)', overrides),
            bullet_block('Adaptation notes from previous interactions', notes),
            bullet_block('Known user facts', facts),
            f'User context:\n{user_context}' if user_context else '',
            ANALYZER_FINAL_REMINDER,
        )

    async def run(self,
                  message: str,
                  wearable: WearableSnapshot,
                  history: Sequence[Turn],
                  notes: List[str],
                  facts: List[str],
                  user_context: str = '',
                  feedback: Optional[str] = None,
                  image: Optional[ImageAttachment] = None,
                  session_id: Optional[str] = None) -> AnalyzerResult:
        """
        Produce an AnalyzerResult for the turn.

        Raises:
            BedrockLLMError: If the model call fails after retries
        """
        prompt = self.build_prompt(message, wearable, history, notes, facts, user_context, feedback, image is not None)
        if image is not None:
            log_stage(logger, logging.DEBUG, 'analyzer', f'Image attached: {image.format}, {len(image.data)} bytes',
                      session_id)

        raw, metrics = await asyncio.to_thread(self.llm.generate_response,
                                               build_messages(history, prompt, image),
                                               ANALYZER_SYSTEM_PROMPT,
                                               max_tokens=self.budget.max_tokens,
                                               temperature=self.budget.temperature)
        result = parse_analyzer_result(raw)
        log_stage(logger, logging.DEBUG, 'analyzer', f'Energy {result.energy_score}, usage: {_usage(metrics)}',
                  session_id)
        return result


def _usage(metrics: Optional[Dict[str, Any]]) -> str:
    if not metrics:
        return 'n/a'
    return f"{metrics.get('inputTokens', '?')} in / {metrics.get('outputTokens', '?')} out"
