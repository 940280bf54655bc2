"""
Composer stage: the user-facing reply, in whole-response or streaming mode.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

from ..models.core import (AnalyzerResult, ComposedReply, DispatchRoute, PlanRecommendation, ProfileUpdates, Role,
                           Tone, Turn)
from ..utils.bedrock_llm import BedrockLLM, build_messages, iterate_in_thread
from ..utils.config import RouteBudget
from ..utils.json_utils import extract_json_object, get_str
from ..utils.logging_config import get_logger
from .prompts import COMPOSER_SYSTEM_PROMPT, ROUTE_INSTRUCTIONS, VOICE_MODE_SUFFIX, join_prompt

logger = get_logger(__name__)

DEFAULT_REPLY = 'It sounds like your body needs a recovery-first evening. I have prepared a lighter plan for tonight.'
DEFAULT_FOLLOW_UP = "Would you like tomorrow's plan to be gentler, balanced, or more active?"
DEFAULT_ADAPTATION_NOTE = 'Adjust plan intensity based on user preference next turn.'

DeltaCallback = Callable[[str], Awaitable[None]]

_ESCAPES = {'"': '"', '\\': '\\', '/': '/', 'b': '\b', 'f': '\f', 'n': '\n', 'r': '\r', 't': '\t'}


class ReplyFieldExtractor:
    """Incrementally decodes the "reply" string field out of a streamed JSON object.

    feed() returns only newly decoded reply characters, so the JSON envelope
    and the other fields never reach the user.
    """

    def __init__(self, field: str = 'reply'):
        self._marker = f'"{field}"'
        self._buffer = ''
        self._position: Optional[int] = None
        self.done = False

    def _find_value_start(self) -> Optional[int]:
        index = self._buffer.find(self._marker)
        while index != -1:
            cursor = index + len(self._marker)
            while cursor < len(self._buffer) and self._buffer[cursor].isspace():
                cursor += 1
            if cursor < len(self._buffer) and self._buffer[cursor] == ':':
                cursor += 1
                while cursor < len(self._buffer) and self._buffer[cursor].isspace():
                    cursor += 1
                if cursor < len(self._buffer):
                    return cursor + 1 if self._buffer[cursor] == '"' else None
                return None
            if cursor >= len(self._buffer):
                return None
            index = self._buffer.find(self._marker, index + 1)
        return None

    def feed(self, chunk: str) -> str:
        if self.done:
            return ''
        self._buffer += chunk
        if self._position is None:
            self._position = self._find_value_start()
            if self._position is None:
                return ''

        decoded: List[str] = []
        buffer = self._buffer
        position = self._position
        while position < len(buffer):
            char = buffer[position]
            if char == '"':
                self.done = True
                position += 1
                break
            if char != '\\':
                decoded.append(char)
                position += 1
                continue
            if position + 1 >= len(buffer):
                break
            escape = buffer[position + 1]
            if escape == 'u':
                if position + 6 > len(buffer):
                    break
                try:
                    decoded.append(chr(int(buffer[position + 2:position + 6], 16)))
                except ValueError:
                    pass
                position += 6
                continue
            decoded.append(_ESCAPES.get(escape, escape))
            position += 2

        self._position = position
        return ''.join(decoded)


def parse_composed(raw: str) -> ComposedReply:
    """Parse model output, applying a default to every missing or mistyped field.

    A plain-text answer with no JSON envelope is used as the reply itself.
    """
    parsed = extract_json_object(raw)
    if parsed is None and raw.strip() and not raw.lstrip().startswith(('{', '```')):
        return ComposedReply(reply=raw.strip(),
                             tone=Tone.EMPATHETIC,
                             follow_up='',
                             adaptation_note=DEFAULT_ADAPTATION_NOTE)

    follow_up = get_str(parsed, 'followUp', get_str(parsed, 'feedbackPrompt', DEFAULT_FOLLOW_UP))
    return ComposedReply(reply=get_str(parsed, 'reply', DEFAULT_REPLY),
                         tone=Tone.parse(parsed.get('tone') if parsed else None),
                         follow_up=follow_up,
                         adaptation_note=get_str(parsed, 'adaptationNote', DEFAULT_ADAPTATION_NOTE),
                         profile_updates=ProfileUpdates.from_payload(parsed.get('profileUpdates') if parsed else None))


class Composer:
    """Writes the reply from the analysis and plan (or the route alone for lightweight turns)."""

    def __init__(self, llm: BedrockLLM, budget: RouteBudget):
        self.llm = llm
        self.budget = budget

    def build_prompt(self,
                     message: str,
                     route: DispatchRoute,
                     history: Sequence[Turn],
                     analysis: Optional[AnalyzerResult] = None,
                     plan: Optional[PlanRecommendation] = None,
                     user_context: str = '',
                     feedback: Optional[str] = None) -> str:
        previous = [turn.content[:120] for turn in history if turn.role == Role.USER]
        sections = [
            f'Current user message: {message}',
            f'User feedback: {feedback}' if feedback else '',
            'PREVIOUS MESSAGES FROM USER (reference these naturally):\n' + '\n'.join(f'- "{m}"' for m in previous)
            if previous else '',
        ]
        if route.is_lightweight:
            sections.append(ROUTE_INSTRUCTIONS[route.value])
        else:
            if analysis is not None:
                sections.append(f'Analyzer summary: {analysis.summary}\nEnergy score: {analysis.energy_score}/100\n'
                                f"Key signals: {', '.join(analysis.key_signals)}\n"
                                f"Risk flags: {' | '.join(analysis.risk_flags)}")
            if plan is not None:
                sections.append(f"Plan summary: {plan.summary}\nDiet highlights: {'; '.join(plan.diet[:2])}\n"
                                f"Exercise: {'; '.join(plan.exercise[:2])}")
            sections.append('Compose a warm, natural response. If the user mentioned things in previous messages '
                            '(sleep hours, exercise, pain), reference them naturally. End with one brief follow-up '
                            'question.')
        sections.append(f'User context:\n{user_context}' if user_context else '')
        return join_prompt(*sections)

    def _system_prompt(self, voice: bool) -> str:
        return f'{COMPOSER_SYSTEM_PROMPT}\n\n{VOICE_MODE_SUFFIX}' if voice else COMPOSER_SYSTEM_PROMPT

    async def compose(self,
                      message: str,
                      route: DispatchRoute,
                      history: Sequence[Turn],
                      analysis: Optional[AnalyzerResult] = None,
                      plan: Optional[PlanRecommendation] = None,
                      user_context: str = '',
                      feedback: Optional[str] = None,
                      voice: bool = False) -> ComposedReply:
        """
        Whole-response mode.

        Raises:
            BedrockLLMError: If the model call fails after retries
        """
        prompt = self.build_prompt(message, route, history, analysis, plan, user_context, feedback)
        raw, _ = await asyncio.to_thread(self.llm.generate_response,
                                         build_messages(history, prompt),
                                         self._system_prompt(voice),
                                         max_tokens=self.budget.max_tokens,
                                         temperature=self.budget.temperature)
        return parse_composed(raw)

    async def compose_stream(self,
                             message: str,
                             route: DispatchRoute,
                             history: Sequence[Turn],
                             on_delta: DeltaCallback,
                             analysis: Optional[AnalyzerResult] = None,
                             plan: Optional[PlanRecommendation] = None,
                             user_context: str = '',
                             feedback: Optional[str] = None) -> ComposedReply:
        """
        Streaming mode: on_delta receives reply text as it is generated.

        The full JSON is parsed once the stream ends. If the model never wrote a
        reply field, the parsed reply is delivered as a single delta.

        Raises:
            BedrockLLMError: If the stream cannot be opened or breaks mid-flight
        """
        prompt = self.build_prompt(message, route, history, analysis, plan, user_context, feedback)
        extractor = ReplyFieldExtractor()
        chunks: List[str] = []
        emitted = False

        stream = self.llm.stream_response(build_messages(history, prompt),
                                          self._system_prompt(False),
                                          max_tokens=self.budget.max_tokens,
                                          temperature=self.budget.temperature)
        deltas = iterate_in_thread(stream)
        try:
            async for chunk in deltas:
                chunks.append(chunk)
                delta = extractor.feed(chunk)
                if delta:
                    emitted = True
                    await on_delta(delta)
        finally:
            await deltas.aclose()

        composed = parse_composed(''.join(chunks))
        if not emitted:
            await on_delta(composed.reply)
        return composed
