"""
Wearable snapshot resolution: deterministic mock data, caller sensors and user-stated overrides.
"""

import re
from dataclasses import replace
from typing import Iterable, List, Optional

from ..models.core import HealthData, Role, StressLevel, Turn, WearableSnapshot
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SLEEP_STATED = re.compile(r'(?:slept|sleep|sleeping)\s+(?:only\s+)?(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h\b)')
STEPS_STATED = re.compile(r'(\d{1,2}[,.]?\d{3})\s*steps')
WALKED_KM = re.compile(r'walked\s+(\d+(?:\.\d+)?)\s*km')
PAIN_STATED = re.compile(r'(?:back|neck|knee|head|shoulder|muscle)\s*(?:hurts?|pain|ache|sore)')
CALORIES_STATED = re.compile(r'(\d{3,4})\s*(?:cal|kcal|calories)')

STRESS_LEVELS = (StressLevel.LOW, StressLevel.MODERATE, StressLevel.HIGH)
UNAVAILABLE_SOURCE = 'unavailable'


def seeded_int(seed: str, low: int, high: int) -> int:
    """Deterministic integer in [low, high] derived from seed (32-bit string hash)."""
    value = 0
    for char in seed:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    normalized = (abs(value) % 10_000) / 10_000
    return int(normalized * (high - low + 1)) + low


def mock_snapshot(session_id: str) -> WearableSnapshot:
    """Synthesize a stable snapshot for a session key."""
    return WearableSnapshot(steps=seeded_int(f'{session_id}-steps', 2400, 9800),
                            average_heart_rate=seeded_int(f'{session_id}-avg-hr', 74, 108),
                            resting_heart_rate=seeded_int(f'{session_id}-rest-hr', 56, 76),
                            sleep_hours=float(seeded_int(f'{session_id}-sleep', 5, 8)),
                            stress_level=STRESS_LEVELS[seeded_int(f'{session_id}-stress', 0, 2)],
                            source='mock')


def neutral_snapshot() -> WearableSnapshot:
    """Stand-in when mock data is disabled and the caller sent no sensors.

    Every value sits where the fallback energy estimate applies no adjustment.
    """
    return WearableSnapshot(steps=5000,
                            average_heart_rate=72,
                            resting_heart_rate=60,
                            sleep_hours=7.0,
                            stress_level=StressLevel.MODERATE,
                            source=UNAVAILABLE_SOURCE)


def user_text(history: Iterable[Turn], message: str) -> str:
    """Lower-cased concatenation of the user's prior turns and the current message."""
    parts = [turn.content for turn in history if turn.role == Role.USER]
    parts.append(message)
    return ' '.join(parts).lower()


def _last_match(pattern: re.Pattern, text: str) -> Optional[re.Match]:
    matches = list(pattern.finditer(text))
    return matches[-1] if matches else None


class WearableProvider:
    """Resolves the snapshot used for a turn.

    Precedence, lowest to highest: synthesized mock values (or a neutral
    placeholder when use_mock is off), caller-supplied sensor values, explicit
    statements in the user's own text.
    """

    def __init__(self, use_mock: bool = True):
        self.use_mock = use_mock

    def snapshot(self, session_id: str) -> WearableSnapshot:
        # Real device readings arrive from the caller as HealthData.
        if self.use_mock:
            return mock_snapshot(session_id)
        return neutral_snapshot()

    def resolve(self,
                session_id: str,
                health_data: Optional[HealthData] = None,
                history: Iterable[Turn] = (),
                message: str = '') -> WearableSnapshot:
        wearable = self.snapshot(session_id)

        if health_data is not None and health_data.source != 'mock':
            heart_rate = health_data.heart_rate or wearable.average_heart_rate
            wearable = WearableSnapshot(steps=health_data.steps,
                                        average_heart_rate=heart_rate,
                                        resting_heart_rate=round(heart_rate * 0.75),
                                        sleep_hours=health_data.sleep,
                                        stress_level=health_data.stress,
                                        source=health_data.source)

        text = user_text(history, message)
        sleep_match = _last_match(SLEEP_STATED, text)
        if sleep_match:
            wearable = replace(wearable, sleep_hours=float(sleep_match.group(1)))
        steps_match = _last_match(STEPS_STATED, text)
        if steps_match:
            wearable = replace(wearable, steps=int(re.sub(r'[,.]', '', steps_match.group(1))))

        logger.debug(f'Wearable for {session_id[:8]}: steps={wearable.steps}, sleep={wearable.sleep_hours}h, '
                     f'stress={wearable.stress_level.value} (source: {wearable.source})')
        return wearable


def user_stated_overrides(history: Iterable[Turn], message: str) -> List[str]:
    """Health values the user stated in this session, phrased for the analyzer prompt."""
    text = user_text(history, message)
    overrides = []

    sleep_match = _last_match(SLEEP_STATED, text)
    if sleep_match:
        overrides.append(f'Sleep: User stated {sleep_match.group(1)} hours - use this, NOT sensor data')

    steps_match = _last_match(STEPS_STATED, text) or _last_match(WALKED_KM, text)
    if steps_match:
        overrides.append(f'Activity: User stated {steps_match.group(0)} - use this, NOT sensor data')

    if PAIN_STATED.search(text):
        overrides.append('Pain: User mentioned physical discomfort - factor into energy and exercise recommendations')

    calories_match = _last_match(CALORIES_STATED, text)
    if calories_match:
        overrides.append(f'Nutrition: User mentioned {calories_match.group(0)} intake')

    return overrides


def format_wearable_for_prompt(snapshot: WearableSnapshot) -> str:
    if snapshot.source == 'android-sensors':
        source_note = '(from phone sensors - may be incomplete if app was just opened)'
    elif snapshot.source == 'mock':
        source_note = '(estimated/simulated - not from real sensors)'
    elif snapshot.source == UNAVAILABLE_SOURCE:
        source_note = '(no device data available - rely on what the user reports)'
    else:
        source_note = '(from sensors)'

    steps_note = ' (sensor may not have started tracking yet)' if snapshot.steps == 0 else ''
    return '\n'.join([
        f'Sensor data {source_note}:',
        f'  Steps today: {snapshot.steps}{steps_note}',
        f'  Average heart rate: {snapshot.average_heart_rate} bpm',
        f'  Resting heart rate: {snapshot.resting_heart_rate} bpm',
        f'  Sleep last night: {snapshot.sleep_hours}h',
        f'  Stress level: {snapshot.stress_level.value}',
        'NOTE: If the user explicitly states different values (e.g., "I slept 5 hours"), trust the user over this sensor data.',
    ])
