from wellcoach.models.core import HealthData, Role, StressLevel, Turn
from wellcoach.services.fallback import energy_from_wearable
from wellcoach.services.wearables import (WearableProvider, format_wearable_for_prompt, mock_snapshot, neutral_snapshot,
                                          seeded_int, user_stated_overrides)


def test_seeded_int_is_stable_and_in_range():
    values = [seeded_int(f'session-{index}', 5, 8) for index in range(50)]
    assert values == [seeded_int(f'session-{index}', 5, 8) for index in range(50)]
    assert all(5 <= value <= 8 for value in values)


def test_mock_snapshot_is_deterministic_per_session():
    first = mock_snapshot('session-abc123')
    second = mock_snapshot('session-abc123')
    assert (first.steps, first.sleep_hours, first.stress_level) == (second.steps, second.sleep_hours,
                                                                    second.stress_level)
    assert 2400 <= first.steps <= 9800
    assert first.source == 'mock'


def test_caller_sensors_override_mock():
    health = HealthData(steps=4321, sleep=6.5, stress=StressLevel.HIGH, heart_rate=88, source='android-sensors')
    wearable = WearableProvider().resolve('session-abc123', health_data=health)
    assert wearable.steps == 4321
    assert wearable.sleep_hours == 6.5
    assert wearable.stress_level == StressLevel.HIGH
    assert wearable.resting_heart_rate == 66
    assert wearable.source == 'android-sensors'


def test_user_statements_override_sensors():
    health = HealthData(steps=4321, sleep=8, stress=StressLevel.LOW, source='sensors')
    history = [Turn(role=Role.USER, content='I slept 6 hours'), Turn(role=Role.ASSISTANT, content='I slept 9 hours')]
    wearable = WearableProvider().resolve('session-abc123', health, history, 'and walked 12,000 steps today')
    assert wearable.sleep_hours == 6.0
    assert wearable.steps == 12000


def test_latest_user_statement_wins():
    history = [Turn(role=Role.USER, content='I slept 6 hours')]
    wearable = WearableProvider().resolve('session-abc123', history=history, message='actually I slept 4 hours')
    assert wearable.sleep_hours == 4.0


def test_user_stated_overrides_lines():
    overrides = user_stated_overrides([], 'I slept only 5 hours, my back hurts and I ate 1800 kcal')
    assert overrides[0].startswith('Sleep: User stated 5 hours')
    assert any(line.startswith('Pain:') for line in overrides)
    assert overrides[-1] == 'Nutrition: User mentioned 1800 kcal intake'


def test_prompt_format_names_source():
    text = format_wearable_for_prompt(mock_snapshot('session-abc123'))
    assert 'estimated/simulated' in text
    assert 'Stress level:' in text


def test_disabled_mock_gives_neutral_snapshot():
    wearable = WearableProvider(use_mock=False).resolve('session-abc123')
    assert wearable.source == 'unavailable'
    assert energy_from_wearable(wearable) == 50
    assert 'no device data available' in format_wearable_for_prompt(wearable)


def test_disabled_mock_still_uses_caller_sensors():
    health = HealthData(steps=9100, sleep=7.5, stress=StressLevel.LOW, source='android-sensors')
    wearable = WearableProvider(use_mock=False).resolve('session-abc123', health_data=health)
    assert wearable.steps == 9100
    assert wearable.resting_heart_rate == round(neutral_snapshot().average_heart_rate * 0.75)
    assert wearable.source == 'android-sensors'
