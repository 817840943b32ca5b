import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

# --- STANDARDIZED FLAGS ---

class StrugglePatternType(str, Enum):
    RAPID_CLICKING = "rapidClicking"
    LONG_IDLE = "longIdle"
    REPETITIVE_SCROLLING = "repetitiveScrolling"
    BACKSPACE_SPAMMING = "backspaceSpamming"
    WINDOW_HOPPING = "windowHopping"


class SuggestedAction(str, Enum):
    """
    Single action vocabulary shared by the need-predictor and the session
    assessment. The UI layer decides how each action is rendered.
    """
    WAIT = "wait"
    MONITOR = "monitor"
    GENTLE_PROMPT = "gentle_prompt"
    OFFER_HINT = "offer_hint"
    PROVIDE_ENCOURAGEMENT = "provide_encouragement"
    SUGGEST_BREAK = "suggest_break"
    IMMEDIATE_HELP = "immediate_help"


# Raw counters are per-sample deltas; timing fields are seconds.
COUNTER_FIELDS = (
    "mouse_movements",
    "keystrokes",
    "scrolls",
    "clicks",
    "window_focus_changes",
    "platform_switches",
    "question_attempts",
    "correct_answers",
    "help_requests",
)
TIMING_FIELDS = (
    "time_on_question",
    "time_inactive",
    "average_response_time",
)
DERIVED_FIELDS = (
    "frustration_level",
    "confidence_level",
    "engagement_level",
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def coerce_number(value: Any) -> float:
    """Missing, malformed, negative or non-finite telemetry values count as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TelemetrySample:
    """
    One slice of behavioral data for a student session.

    Raw fields are filled by the ingestion boundary; the three derived levels
    stay None until the IndicatorCalculator has produced a processed copy.
    """
    user_id: str
    session_id: str
    timestamp: datetime = field(default_factory=utcnow)

    # Interaction counters
    mouse_movements: int = 0
    keystrokes: int = 0
    scrolls: int = 0
    clicks: int = 0

    # Timing (seconds)
    time_on_question: float = 0.0
    time_inactive: float = 0.0
    average_response_time: float = 0.0

    # Focus
    window_focus_changes: int = 0
    platform_switches: int = 0

    # Performance
    question_attempts: int = 0
    correct_answers: int = 0
    help_requests: int = 0

    # Derived emotional indicators (0..1)
    frustration_level: Optional[float] = None
    confidence_level: Optional[float] = None
    engagement_level: Optional[float] = None

    @property
    def is_processed(self) -> bool:
        return all(getattr(self, name) is not None for name in DERIVED_FIELDS)

    @classmethod
    def from_raw(
        cls,
        user_id: str,
        session_id: str,
        raw: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "TelemetrySample":
        """
        Builds a sample from loosely typed input.

        Accepts snake_case or camelCase keys (the browser and desktop clients
        send camelCase). Derived fields in the input are ignored.
        """
        raw = raw or {}

        def pick(name: str) -> Any:
            if name in raw:
                return raw[name]
            return raw.get(_camel(name))

        values: Dict[str, Any] = {}
        for name in COUNTER_FIELDS:
            values[name] = int(coerce_number(pick(name)))
        for name in TIMING_FIELDS:
            values[name] = coerce_number(pick(name))

        return cls(
            user_id=str(user_id),
            session_id=str(session_id),
            timestamp=timestamp or utcnow(),
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class StrugglePatternEvent:
    """A discrete struggle detection for one student."""
    user_id: str
    pattern_type: StrugglePatternType
    timestamp: datetime
    intensity: float  # observed count / threshold, unbounded above 1
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "type": self.pattern_type.value,
            "timestamp": self.timestamp.isoformat(),
            "intensity": round(self.intensity, 4),
            "data": dict(self.data),
        }


@dataclass(frozen=True)
class BehaviorTrends:
    frustration_trend: float = 0.0
    performance_trend: float = 0.0
    engagement_trend: float = 0.0


@dataclass(frozen=True)
class PredictionResult:
    """
    Output of one prediction run. Each run produces a fresh result; the
    prediction_id lets the dispatcher recognise a result it already handled.
    """
    user_id: str
    needs_help: bool
    confidence: float
    suggested_action: SuggestedAction
    time_until_intervention: float  # seconds
    reasoning: Tuple[str, ...] = ()
    help_probability: float = 0.0
    indicators: Dict[str, float] = field(default_factory=dict)
    trends: BehaviorTrends = field(default_factory=BehaviorTrends)
    prediction_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def insufficient_data(cls, user_id: str) -> "PredictionResult":
        return cls(
            user_id=user_id,
            needs_help=False,
            confidence=0.0,
            suggested_action=SuggestedAction.WAIT,
            time_until_intervention=0.0,
            reasoning=("Insufficient data",),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "user_id": self.user_id,
            "needs_help": self.needs_help,
            "confidence": round(self.confidence, 4),
            "suggested_action": self.suggested_action.value,
            "time_until_intervention": self.time_until_intervention,
            "reasoning": list(self.reasoning),
            "help_probability": round(self.help_probability, 4),
            "indicators": {k: round(v, 4) for k, v in self.indicators.items()},
            "trends": asdict(self.trends),
            "created_at": self.created_at.isoformat(),
        }
