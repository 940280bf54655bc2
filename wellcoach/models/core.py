"""
Core data models for the coaching orchestration pipeline.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    USER = 'user'
    ASSISTANT = 'assistant'


class DispatchRoute(str, Enum):
    """How much of the pipeline a turn needs."""
    GREETING = 'greeting'
    QUICK = 'quick'
    FOLLOWUP = 'followup'
    PHOTO = 'photo'
    FULL = 'full'
    OFFTOPIC = 'offtopic'

    @property
    def is_lightweight(self) -> bool:
        return self in (DispatchRoute.GREETING, DispatchRoute.QUICK, DispatchRoute.OFFTOPIC)


class Topic(str, Enum):
    FATIGUE = 'fatigue'
    STRESS = 'stress'
    PAIN = 'pain'
    MOTIVATION = 'motivation'
    NUTRITION = 'nutrition'
    SLEEP = 'sleep'
    EXERCISE = 'exercise'
    HEADACHE = 'headache'
    POSITIVE = 'positive'
    GENERAL = 'general'


class Tone(str, Enum):
    EMPATHETIC = 'empathetic'
    ENCOURAGING = 'encouraging'
    CELEBRATORY = 'celebratory'
    GENTLE = 'gentle'
    DIRECT = 'direct'

    @classmethod
    def parse(cls, value: Any) -> 'Tone':
        """Map a model-supplied tone onto the closed set, defaulting to empathetic."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.EMPATHETIC


class StressLevel(str, Enum):
    LOW = 'low'
    MODERATE = 'moderate'
    HIGH = 'high'

    @classmethod
    def from_score(cls, score: float) -> 'StressLevel':
        """Bucket a 0-100 stress reading from a sensor."""
        if score < 35:
            return cls.LOW
        if score < 65:
            return cls.MODERATE
        return cls.HIGH


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    """One message in a session history. Immutable once appended."""
    role: Role
    content: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, str]:
        return {'role': self.role.value, 'content': self.content, 'created_at': self.created_at.isoformat()}


@dataclass
class DispatchDecision:
    route: DispatchRoute
    confidence: float
    reasoning: str


@dataclass
class AnalyzerResult:
    """Health snapshot for the current turn. energy_score is in [0, 100]."""
    summary: str
    energy_score: int
    key_signals: List[str] = field(default_factory=list)
    risk_flags: List[str] = field(default_factory=list)


@dataclass
class PlanRecommendation:
    summary: str
    diet: List[str] = field(default_factory=list)
    exercise: List[str] = field(default_factory=list)
    hydration: List[str] = field(default_factory=list)
    recovery: List[str] = field(default_factory=list)
    nutrition_context: List[str] = field(default_factory=list)


@dataclass
class ValidationVerdict:
    approved: bool
    conflicts: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    reasoning: str = ''


@dataclass
class ProfileUpdates:
    """Facts to merge into the user's persistent profile (owned by the caller)."""
    add_conditions: List[str] = field(default_factory=list)
    add_allergies: List[str] = field(default_factory=list)
    add_medications: List[str] = field(default_factory=list)
    add_food_likes: List[str] = field(default_factory=list)
    add_food_dislikes: List[str] = field(default_factory=list)
    add_exercise_likes: List[str] = field(default_factory=list)
    add_exercise_dislikes: List[str] = field(default_factory=list)
    add_patterns: List[str] = field(default_factory=list)
    add_lifestyle: List[str] = field(default_factory=list)
    session_note: Optional[str] = None

    # camelCase keys as produced by the composer prompt
    FIELD_ALIASES = {
        'addConditions': 'add_conditions',
        'addAllergies': 'add_allergies',
        'addMedications': 'add_medications',
        'addFoodLikes': 'add_food_likes',
        'addFoodDislikes': 'add_food_dislikes',
        'addExerciseLikes': 'add_exercise_likes',
        'addExerciseDislikes': 'add_exercise_dislikes',
        'addPatterns': 'add_patterns',
        'addLifestyle': 'add_lifestyle',
    }

    @classmethod
    def from_payload(cls, payload: Any) -> Optional['ProfileUpdates']:
        """Build from a model payload, dropping unknown or mistyped fields."""
        if not isinstance(payload, dict):
            return None
        updates = cls()
        for key, attr in cls.FIELD_ALIASES.items():
            value = payload.get(key, payload.get(attr))
            if isinstance(value, list):
                setattr(updates, attr, [str(item) for item in value if str(item).strip()])
        note = payload.get('sessionNote', payload.get('session_note'))
        if isinstance(note, str) and note.strip():
            updates.session_note = note
        return None if updates.is_empty() else updates

    def is_empty(self) -> bool:
        return not self.session_note and not any(getattr(self, attr) for attr in self.FIELD_ALIASES.values())


@dataclass
class ComposedReply:
    reply: str
    tone: Tone
    follow_up: str
    adaptation_note: str
    profile_updates: Optional[ProfileUpdates] = None

    @property
    def text(self) -> str:
        """User-visible reply text stored in history."""
        if not self.follow_up:
            return self.reply
        return f'{self.reply}\n\n{self.follow_up}'


@dataclass
class WearableSnapshot:
    steps: int
    average_heart_rate: int
    resting_heart_rate: int
    sleep_hours: float
    stress_level: StressLevel
    captured_at: datetime = field(default_factory=utc_now)
    source: str = 'mock'


@dataclass
class ImageAttachment:
    data: bytes
    format: str = 'jpeg'

    SUPPORTED_FORMATS = ('jpeg', 'png', 'webp', 'gif')

    def __post_init__(self):
        if self.format == 'jpg':
            self.format = 'jpeg'
        if self.format not in self.SUPPORTED_FORMATS:
            raise ValueError(f'Unsupported image format: {self.format}')


@dataclass
class HealthData:
    """Sensor values supplied by the caller."""
    steps: int
    sleep: float
    stress: StressLevel
    heart_rate: Optional[int] = None
    calories: Optional[int] = None
    source: str = 'sensors'


@dataclass
class UserContext:
    name: Optional[str] = None
    goals: Dict[str, float] = field(default_factory=dict)
    constraints: Optional[str] = None  # profile text: allergies, dislikes, conditions
    health_data: Optional[HealthData] = None
    recent_meals: List[Dict[str, Any]] = field(default_factory=list)
    app_language: Optional[str] = None
    time_of_day: Optional[str] = None
    day_of_week: Optional[str] = None


@dataclass
class TurnRequest:
    session_id: str
    message: str
    feedback: Optional[str] = None
    image: Optional[ImageAttachment] = None
    user_context: Optional[UserContext] = None
    streaming: bool = False
    mode: str = 'text'  # text | voice


@dataclass
class TurnResult:
    session_id: str
    reply: str
    route: DispatchRoute
    analyzer: AnalyzerResult
    plan: PlanRecommendation
    composed: ComposedReply
    memory_size: int
    wearable: Optional[WearableSnapshot] = None
    validation: Optional[ValidationVerdict] = None
    timing: Dict[str, int] = field(default_factory=dict)
    used_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation delivered in the final event."""
        return to_jsonable({
            'success': True,
            'session_id': self.session_id,
            'reply': self.reply,
            'route': self.route,
            'analyzer': self.analyzer,
            'plan': self.plan,
            'tone': self.composed.tone,
            'follow_up': self.composed.follow_up,
            'profile_updates': self.composed.profile_updates,
            'memory_size': self.memory_size,
            'wearable': self.wearable,
            'validation': self.validation,
            'timing': self.timing,
            'used_fallback': self.used_fallback,
        })


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-compatible values."""
    if hasattr(value, '__dataclass_fields__'):
        return to_jsonable(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value
