"""
Request body contracts for the HTTP routes and MCP tools.

Bodies arrive camelCase from browser clients and snake_case from tools, so
every field accepts both spellings. Validated bodies convert into the core
dataclasses the pipeline works with.
"""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from .core import HealthData, StressLevel, UserContext

STRESS_HINT = 'must be a 0-100 score or one of low, moderate, high'


def _either(camel: str, snake: str) -> AliasChoices:
    return AliasChoices(camel, snake)


def describe_validation_error(error: ValidationError) -> str:
    """One line per invalid field, without echoing the submitted values."""
    problems = []
    for item in error.errors():
        location = '.'.join(str(part) for part in item['loc']) or 'body'
        problems.append(f"{location}: {item['msg']}")
    return '; '.join(problems)


class HealthDataBody(BaseModel):
    steps: int = Field(0, ge=0)
    sleep: float = Field(0.0, ge=0, le=24)
    stress: StressLevel = StressLevel.MODERATE
    heart_rate: Optional[int] = Field(None, gt=0, lt=300, validation_alias=_either('heartRate', 'heart_rate'))
    calories: Optional[int] = Field(None, ge=0)
    source: str = 'sensors'

    @field_validator('stress', mode='before')
    @classmethod
    def _stress_level(cls, value: Any) -> StressLevel:
        """Accept a level label or a 0-100 sensor score."""
        if isinstance(value, StressLevel):
            return value
        if isinstance(value, str):
            label = value.strip().lower()
            if label in {level.value for level in StressLevel}:
                return StressLevel(label)
            try:
                value = float(label)
            except ValueError:
                raise ValueError(STRESS_HINT)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(STRESS_HINT)
        if not 0 <= value <= 100:
            raise ValueError(STRESS_HINT)
        return StressLevel.from_score(value)

    def to_health_data(self) -> HealthData:
        return HealthData(steps=self.steps,
                          sleep=self.sleep,
                          stress=self.stress,
                          heart_rate=self.heart_rate,
                          calories=self.calories,
                          source=self.source)


class UserContextBody(BaseModel):
    name: Optional[str] = None
    goals: Dict[str, float] = Field(default_factory=dict)
    constraints: Optional[str] = Field(None, validation_alias=AliasChoices('constraints', 'healthTwin'))
    health_data: Optional[HealthDataBody] = Field(None, validation_alias=_either('healthData', 'health_data'))
    recent_meals: List[Dict[str, Any]] = Field(default_factory=list,
                                               validation_alias=_either('recentMeals', 'recent_meals'))
    app_language: Optional[str] = Field(None, validation_alias=_either('appLanguage', 'app_language'))
    time_of_day: Optional[str] = Field(None, validation_alias=_either('timeOfDay', 'time_of_day'))
    day_of_week: Optional[str] = Field(None, validation_alias=_either('dayOfWeek', 'day_of_week'))

    def to_context(self) -> UserContext:
        return UserContext(name=self.name,
                           goals=dict(self.goals),
                           constraints=self.constraints,
                           health_data=self.health_data.to_health_data() if self.health_data else None,
                           recent_meals=list(self.recent_meals),
                           app_language=self.app_language,
                           time_of_day=self.time_of_day,
                           day_of_week=self.day_of_week)


class ImageBody(BaseModel):
    data: str
    format: str = 'jpeg'


class TurnBody(BaseModel):
    """POST /api/turn body. The session id is checked by the route, not here."""
    session_id: Any = Field(None, validation_alias=_either('sessionId', 'session_id'))
    message: str = ''
    feedback: Optional[str] = None
    image: Optional[ImageBody] = None
    image_base64: Optional[str] = Field(None, validation_alias=_either('imageBase64', 'image_base64'))
    image_format: str = Field('jpeg', validation_alias=_either('imageFormat', 'image_format'))
    user_context: Optional[UserContextBody] = Field(None, validation_alias=_either('userContext', 'user_context'))
    streaming: bool = Field(False, validation_alias=AliasChoices('streaming', 'streamingRequested'))


class VoiceBody(BaseModel):
    session_id: Any = Field(None, validation_alias=_either('sessionId', 'session_id'))
    audio_base64: str = Field('', validation_alias=_either('audioBase64', 'audio_base64'))
    sample_rate: Optional[int] = Field(None, validation_alias=_either('sampleRate', 'sample_rate'))


class VoiceChatBody(BaseModel):
    session_id: str = Field(validation_alias=_either('sessionId', 'session_id'))
    transcript: str = ''
    user_context: Optional[UserContextBody] = Field(None, validation_alias=_either('userContext', 'user_context'))


def parse_user_context(payload: Optional[Dict[str, Any]]) -> Optional[UserContext]:
    """
    Validate a caller-supplied user context.

    Raises:
        ValidationError: If a field has the wrong type or an out-of-range value
    """
    if not payload:
        return None
    return UserContextBody.model_validate(payload).to_context()
