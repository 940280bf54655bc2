import json
from typing import Any, Dict, Iterator, List, Optional

import pytest

from wellcoach.services.prompts import (ANALYZER_SYSTEM_PROMPT, COMPOSER_SYSTEM_PROMPT, DISPATCHER_SYSTEM_PROMPT,
                                        PLANNER_SYSTEM_PROMPT, VALIDATOR_SYSTEM_PROMPT)
from wellcoach.services.session_memory import SessionMemoryStore
from wellcoach.utils.bedrock_llm import BedrockLLMError
from wellcoach.utils.config import MemoryConfig, StabilizerConfig

ANALYZER_JSON = json.dumps({
    'summary': 'Tired after a long workday with short sleep.',
    'energyScore': 38,
    'keySignals': ['Short sleep', 'Moderate stress'],
    'riskFlags': ['Watch for persistent fatigue']
})
PLANNER_JSON = json.dumps({
    'summary': 'Gentle recovery evening.',
    'diet': ['Salmon with rice and spinach', 'Greek yogurt with berries'],
    'exercise': ['15 minute walk', 'Light stretching'],
    'hydration': ['2L water across the day'],
    'recovery': ['Bed by 22:30']
})
COMPOSER_JSON = json.dumps({
    'reply': 'Long day, huh? Let us keep tonight light and restful.',
    'tone': 'empathetic',
    'followUp': 'How did you sleep last night?',
    'adaptationNote': 'User gets tired after work on weekdays.'
})

STAGE_PROMPTS = (
    ('dispatcher', DISPATCHER_SYSTEM_PROMPT),
    ('analyzer', ANALYZER_SYSTEM_PROMPT),
    ('planner', PLANNER_SYSTEM_PROMPT),
    ('validator', VALIDATOR_SYSTEM_PROMPT),
    ('composer', COMPOSER_SYSTEM_PROMPT),
)

DEFAULT_RESPONSES = {
    'dispatcher': '{"route": "full", "confidence": 0.9, "reasoning": "health request"}',
    'analyzer': ANALYZER_JSON,
    'planner': PLANNER_JSON,
    'validator': '{"approved": true, "conflicts": [], "suggestions": [], "reasoning": "ok"}',
    'composer': COMPOSER_JSON,
}


class FakeLLM:
    """In-memory stand-in for BedrockLLM, answering per pipeline stage.

    responses: stage -> text, or a list of texts consumed in order (the last one repeats)
    errors: stage -> exception raised by every call for that stage
    stream_errors: stage -> exception raised by stream_response only
    """

    def __init__(self,
                 responses: Optional[Dict[str, Any]] = None,
                 errors: Optional[Dict[str, Exception]] = None,
                 stream_errors: Optional[Dict[str, Exception]] = None):
        self.responses = {**DEFAULT_RESPONSES, **(responses or {})}
        self.errors = errors or {}
        self.stream_errors = stream_errors or {}
        self.calls: List[tuple] = []
        self.tool_results: List[Dict[str, Any]] = []
        self.model_id = 'fake-model'

    @staticmethod
    def stage_of(system_prompt: str) -> str:
        for stage, prompt in STAGE_PROMPTS:
            if system_prompt.startswith(prompt):
                return stage
        return 'other'

    def count(self, stage: str) -> int:
        return sum(1 for call in self.calls if call[0] == stage)

    def _respond(self, system_prompt: str, messages: List[Dict[str, Any]], mode: str) -> str:
        stage = self.stage_of(system_prompt)
        self.calls.append((stage, mode, messages))
        if stage in self.errors:
            raise self.errors[stage]
        value = self.responses.get(stage, 'OK')
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        return self._respond(system_prompt, messages, 'converse'), {'inputTokens': 12, 'outputTokens': 34}

    def stream_response(self, messages, system_prompt, max_tokens=None, temperature=None) -> Iterator[str]:
        stage = self.stage_of(system_prompt)
        if stage in self.stream_errors:
            self.calls.append((stage, 'stream', messages))
            raise self.stream_errors[stage]
        text = self._respond(system_prompt, messages, 'stream')
        for index in range(0, len(text), 7):
            yield text[index:index + 7]

    def generate_with_tools(self,
                            messages,
                            system_prompt,
                            tools,
                            tool_executor,
                            max_tokens=None,
                            temperature=None,
                            max_rounds=3):
        self.tool_results.append(tool_executor('get_health_data', {}))
        return self._respond(system_prompt, messages, 'tools')

    def health_check(self) -> bool:
        return True


def quota_error() -> BedrockLLMError:
    return BedrockLLMError('Bedrock converse failed (fake-model): An error occurred (ThrottlingException) when '
                           'calling the Converse operation: Too many tokens, please wait before trying again.')


def hard_error() -> BedrockLLMError:
    return BedrockLLMError('Bedrock converse failed (fake-model): An error occurred (ValidationException): '
                           'malformed input request, secret=abc123')


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def memory_config():
    return MemoryConfig(history_cap=16,
                        recent_window=8,
                        adaptation_note_cap=10,
                        recent_notes=3,
                        user_fact_cap=20,
                        session_ttl_seconds=3600)


@pytest.fixture
def stabilizer_config():
    return StabilizerConfig(max_rise=15, max_drop=15, wide_rise=30, wide_drop=30, safety_floor=20, emergency_floor=5)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory(memory_config, clock):
    return SessionMemoryStore(memory_config, clock=clock)


@pytest.fixture
def fake_llm():
    return FakeLLM()
