"""
Intent dispatcher: picks how much of the pipeline a turn needs.

A deterministic pattern pre-filter answers the obvious cases without a network
call; ambiguous messages get one low-token classification call.
"""

import asyncio
import logging
import re
import time
from typing import Optional, Sequence

from ..models.core import DispatchDecision, DispatchRoute, Turn
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, build_messages
from ..utils.config import RouteBudget
from ..utils.json_utils import extract_json_object
from ..utils.logging_config import get_logger, log_stage
from .prompts import DISPATCHER_SYSTEM_PROMPT

logger = get_logger(__name__)

PREFILTER_THRESHOLD = 0.8
MODEL_CONFIDENCE_THRESHOLD = 0.7

DANGEROUS_PATTERN = re.compile(
    r'(?:gas(?:u|em)?.*(?:buzi|ust|do ust|wdycha|pić|pic)|psikn[ąa][ćc].*(?:gaz|spray|aerozol|buzi)'
    r'|(?:huff|sniff|inhale).*(?:gas|spray|aerosol|glue|paint|fume)|drink.*(?:bleach|cleaner|detergent|poison)'
    r'|eat.*(?:tide pod|glue|battery|magnet)|inject.*(?:air|bleach)|wdycha[ćc].*(?:klej|gaz|spray|aerozol)'
    r'|wypi[ćc].*(?:wybielacz|płyn|detergent|aceton|benzyn)|połkn[ąa][ćc].*(?:batteri|magnes)'
    r'|(?:kill|hurt|harm)\s*(?:my ?self|yourself)|(?:zabić|zabi[ćc])\s*(?:się|sie)|samobójstw|samobojstw'
    r'|suicid|end my life)', re.IGNORECASE)

OFFTOPIC_PATTERN = re.compile(
    r'(?:(?:write|napisz).*(?:code|program|kod|esej|essay)|(?:solve|rozwiąż|rozwiaz).*(?:equation|math|równanie)'
    r'|(?:tell|opowiedz).*(?:joke|żart|dowcip)|(?:who|kto)\s+(?:is|to|jest)\s+(?:president|premier|king)'
    r'|(?:capital|stolica)\s+(?:of|kraju)|(?:translate|przetłumacz|przetlumacz)'
    r'|(?:pokemon|fortnite|minecraft|bitcoin|crypto|krypto)|(?:how to hack|jak zhakować|jak zhakowac))', re.IGNORECASE)

GREETING_PATTERN = re.compile(
    r"^(h(i|ello|ey|owdy)|dzien dobry|dzień dobry|czesc|cześć|siema|yo|hola|what'?s up"
    r'|good (morning|afternoon|evening))[\s!?.]*$', re.IGNORECASE)

ACKNOWLEDGEMENT_PATTERN = re.compile(
    r'^(thanks?|thank you|ok(ay)?|ok thanks|okay thanks|thanks a lot|got it|sure|cool|nice|great|good|perfect'
    r'|understood|dzięki|dzieki|dziekuje|dziękuję|dobra|spoko|super|fajnie|rozumiem)[\s!?.]*$', re.IGNORECASE)

HEALTH_KEYWORDS = re.compile(
    r'sleep|tired|eat|food|exercise|workout|stress|pain|calori|diet|weight|run|gym|walk|snu|sen|zmęczon|ćwicz|bieg'
    r'|jedzeni|dieta|ból|stres')

FOLLOWUP_PATTERN = re.compile(
    r'^(yes|no|yeah|nah|that|this|the first|the second|option|which|and what about|a co z|tak|nie|to|tamto'
    r'|pierwszy|drugi|opcja)', re.IGNORECASE)

FULL_PIPELINE_PATTERN = re.compile(
    r'(?:feel|plan|program|routine|hurt|ache|suggest|recommend|analyze|czuję|czuje|rutyn|boli|zaproponuj|polec'
    r'|przeanalizuj|co.*jeść|co.*jesc|co.*ćwiczyć|what should i|give me a|create|make me|help me with|tired'
    r'|exhausted|zmęczon)', re.IGNORECASE)


class ClassificationFailure(Exception):
    """Custom exception for dispatcher classification errors."""
    pass


def prefilter(text: str, has_image: bool, history: Sequence[Turn]) -> Optional[DispatchDecision]:
    """Classify obvious messages by pattern.

    Dangerous content is checked before any health-intent pattern, so a
    message mentioning the body can never reach the full pipeline if it also
    describes harm.

    Returns:
        A decision, or None when the message is ambiguous
    """
    lower = text.lower().strip()
    if not lower and not has_image:
        return DispatchDecision(DispatchRoute.GREETING, 0.95, 'Empty message')

    if DANGEROUS_PATTERN.search(lower):
        return DispatchDecision(DispatchRoute.OFFTOPIC, 0.99, 'Dangerous/harmful activity detected')

    if has_image:
        return DispatchDecision(DispatchRoute.PHOTO, 0.99, 'Image attached')

    if OFFTOPIC_PATTERN.search(lower):
        return DispatchDecision(DispatchRoute.OFFTOPIC, 0.9, 'Non-health topic detected')

    if GREETING_PATTERN.match(lower):
        return DispatchDecision(DispatchRoute.GREETING, 0.95, 'Simple greeting detected')

    if ACKNOWLEDGEMENT_PATTERN.match(lower):
        return DispatchDecision(DispatchRoute.QUICK, 0.95, 'Quick acknowledgement')

    if len(lower) < 15 and not HEALTH_KEYWORDS.search(lower):
        return DispatchDecision(DispatchRoute.QUICK, 0.8, 'Short non-health message')

    if len(history) >= 2 and len(lower) < 60 and FOLLOWUP_PATTERN.match(lower):
        return DispatchDecision(DispatchRoute.FOLLOWUP, 0.85, 'Short follow-up to previous answer')

    if FULL_PIPELINE_PATTERN.search(lower):
        return DispatchDecision(DispatchRoute.FULL, 0.85, 'Health/plan request detected')

    return None


def parse_classification(raw: str) -> DispatchDecision:
    """Parse the classifier's JSON answer.

    Raises:
        ClassificationFailure: If no object is found or the route is not in the closed set
    """
    parsed = extract_json_object(raw)
    if parsed is None:
        raise ClassificationFailure(f'Unparseable classification: {raw[:80]!r}')

    try:
        route = DispatchRoute(str(parsed.get('route', '')).strip().lower())
    except ValueError as e:
        raise ClassificationFailure(f"Unknown route: {parsed.get('route')!r}") from e

    confidence = parsed.get('confidence')
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    reasoning = parsed.get('reasoning') if isinstance(parsed.get('reasoning'), str) else 'Model classification'
    return DispatchDecision(route, max(0.0, min(1.0, float(confidence))), reasoning)


class Dispatcher:
    """Classifies a turn into a DispatchRoute."""

    def __init__(self, llm: BedrockLLM, budget: RouteBudget):
        self.llm = llm
        self.budget = budget

    async def classify(self,
                       text: str,
                       has_image: bool,
                       history: Sequence[Turn],
                       session_id: Optional[str] = None) -> DispatchDecision:
        """
        Pick a route for the turn. Never raises: failures fall back to the full route.

        Args:
            text: Sanitized user message
            has_image: Whether an image is attached
            history: Recent session turns, oldest first
            session_id: Session identifier, used for logging only

        Returns:
            DispatchDecision
        """
        start = time.monotonic()
        decision = prefilter(text, has_image, history)
        if decision is not None and decision.confidence >= PREFILTER_THRESHOLD:
            log_stage(logger, logging.INFO, 'dispatcher',
                      f'Route: {decision.route.value} (pre-filter, {decision.confidence}, '
                      f'{int((time.monotonic() - start) * 1000)}ms)', session_id)
            return decision

        try:
            decision = await self._classify_with_model(text, bool(history))
        except ClassificationFailure as e:
            log_stage(logger, logging.WARNING, 'dispatcher', f'Classification failed, defaulting to full: {e}', session_id)
            decision = DispatchDecision(DispatchRoute.FULL, 0.5, 'Classification failed, defaulting to full')

        if decision.confidence < MODEL_CONFIDENCE_THRESHOLD and decision.route != DispatchRoute.FULL:
            decision = DispatchDecision(DispatchRoute.FULL, decision.confidence,
                                        f'{decision.reasoning} (low confidence, using full)')

        log_stage(logger, logging.INFO, 'dispatcher',
                  f'Route: {decision.route.value} (model, {decision.confidence}, '
                  f'{int((time.monotonic() - start) * 1000)}ms)', session_id)
        return decision

    async def _classify_with_model(self, text: str, has_history: bool) -> DispatchDecision:
        prompt = f'Message: "{text}"\nHas conversation history: {str(has_history).lower()}'
        try:
            raw, _ = await asyncio.to_thread(self.llm.generate_response,
                                             build_messages([], prompt),
                                             DISPATCHER_SYSTEM_PROMPT,
                                             max_tokens=self.budget.max_tokens,
                                             temperature=self.budget.temperature)
        except BedrockLLMError as e:
            raise ClassificationFailure(str(e)) from e
        return parse_classification(raw)
