"""
Per-student personalization state and its in-memory store.

A profile is created lazily with hardcoded defaults the first time a student
needs one, cached for the life of the store and written through (best-effort)
to the injected BehaviorStorage.
"""

import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Mapping

from app.services.behavior_engine.storage import BehaviorStorage, StorageError

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _check_fields(record: Any, numbers: tuple, texts: tuple = ()) -> None:
    """Raises ValueError for non-finite numbers or non-string names."""
    kind = type(record).__name__
    for name in numbers:
        value = getattr(record, name)
        if not _is_number(value):
            raise ValueError(f"{kind}.{name} must be a finite number, got {value!r}")
    for name in texts:
        value = getattr(record, name)
        if not isinstance(value, str):
            raise ValueError(f"{kind}.{name} must be a string, got {value!r}")


@dataclass
class LearningPattern:
    pattern: str
    frequency: float = 0.0
    effectiveness: float = 0.0
    conditions: List[str] = field(default_factory=list)

    def __post_init__(self):
        _check_fields(self, ("frequency", "effectiveness"), ("pattern",))
        if not isinstance(self.conditions, list):
            raise ValueError(f"LearningPattern.conditions must be a list, got {self.conditions!r}")


@dataclass
class StruggleIndicator:
    indicator: str  # name of a struggle metric computed by the need-predictor
    threshold: float
    accuracy: float
    false_positive_rate: float

    def __post_init__(self):
        _check_fields(self, ("threshold", "accuracy", "false_positive_rate"), ("indicator",))


@dataclass
class OptimalCondition:
    # Descriptive only; kept so stored profiles round-trip unchanged.
    condition: str
    performance_boost: float = 0.0
    evidence_strength: float = 0.0

    def __post_init__(self):
        _check_fields(self, ("performance_boost", "evidence_strength"), ("condition",))


@dataclass
class PersonalizedThresholds:
    frustration_threshold: float = 0.6
    help_offer_timing: float = 120.0        # seconds on a question before offering help
    break_suggestion_timing: float = 600.0  # seconds
    encouragement_frequency: float = 0.3    # 0..1

    def __post_init__(self):
        for name, value in asdict(self).items():
            if not _is_number(value) or value <= 0:
                raise ValueError(f"Threshold '{name}' must be a positive number, got {value!r}")


def default_struggle_indicators() -> List[StruggleIndicator]:
    return [
        StruggleIndicator("timeStagnation", threshold=2.0, accuracy=0.7, false_positive_rate=0.2),
        StruggleIndicator("performanceDecline", threshold=0.3, accuracy=0.8, false_positive_rate=0.15),
        StruggleIndicator("attentionSpan", threshold=0.5, accuracy=0.6, false_positive_rate=0.3),
    ]


@dataclass
class StudentProfile:
    user_id: str
    learning_patterns: List[LearningPattern] = field(default_factory=list)
    struggle_indicators: List[StruggleIndicator] = field(default_factory=default_struggle_indicators)
    optimal_conditions: List[OptimalCondition] = field(default_factory=list)
    personalized_thresholds: PersonalizedThresholds = field(default_factory=PersonalizedThresholds)

    @classmethod
    def default(cls, user_id: str) -> "StudentProfile":
        return cls(user_id=user_id)

    def has_learning_pattern(self, name: str) -> bool:
        return any(p.pattern == name for p in self.learning_patterns)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StudentProfile":
        """
        Rebuilds a profile from its stored document.

        Collection fields may also arrive JSON-encoded as strings (the layout
        of the hosted profile table). Raises ValueError (or KeyError/TypeError)
        on malformed documents, including numeric fields of the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"Profile document must be a mapping, got {type(data).__name__}")

        def collection(key: str, default: Any) -> Any:
            value = data.get(key, default)
            if isinstance(value, str):
                value = json.loads(value or json.dumps(default))
            if value is None:
                return default
            if not isinstance(value, type(default)):
                raise ValueError(f"Profile field '{key}' must be a {type(default).__name__}")
            return value

        def records(key: str, record_type: type) -> list:
            entries = collection(key, [])
            if not all(isinstance(entry, Mapping) for entry in entries):
                raise ValueError(f"Profile field '{key}' must hold objects")
            return [record_type(**entry) for entry in entries]

        return cls(
            user_id=str(data["user_id"]),
            learning_patterns=records("learning_patterns", LearningPattern),
            struggle_indicators=records("struggle_indicators", StruggleIndicator),
            optimal_conditions=records("optimal_conditions", OptimalCondition),
            personalized_thresholds=PersonalizedThresholds(**collection("personalized_thresholds", {})),
        )


class ProfileStore:
    """
    Exactly one cached profile per user id.

    Load failures never block prediction: the store falls back to a fresh
    default profile and logs a warning.
    """

    def __init__(self, storage: BehaviorStorage):
        self.storage = storage
        self._profiles: Dict[str, StudentProfile] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> StudentProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
        if profile is not None:
            return profile

        # Loaded outside the lock so a slow backend only delays this student
        loaded = self._load_or_create(user_id)
        with self._lock:
            return self._profiles.setdefault(user_id, loaded)

    def save(self, profile: StudentProfile) -> StudentProfile:
        with self._lock:
            self._profiles[profile.user_id] = profile
        self._persist(profile)
        return profile

    def update_thresholds(self, user_id: str, **changes: float) -> StudentProfile:
        """Raises ValueError if any resulting threshold is not positive."""
        profile = self.get(user_id)
        thresholds = replace(profile.personalized_thresholds, **changes)
        return self.save(replace(profile, personalized_thresholds=thresholds))

    def add_learning_pattern(self, user_id: str, pattern: LearningPattern) -> StudentProfile:
        profile = self.get(user_id)
        patterns = [p for p in profile.learning_patterns if p.pattern != pattern.pattern]
        patterns.append(pattern)
        return self.save(replace(profile, learning_patterns=patterns))

    def cached_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._profiles)

    def _load_or_create(self, user_id: str) -> StudentProfile:
        try:
            stored = self.storage.load_profile(user_id)
        except StorageError as e:
            logger.warning(f"Profile load failed for {user_id}, using defaults: {e}")
            return StudentProfile.default(user_id)

        if stored is None:
            profile = StudentProfile.default(user_id)
            logger.info(f"Created default profile for {user_id}")
            self._persist(profile)
            return profile

        try:
            return StudentProfile.from_dict(stored)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Stored profile for {user_id} is malformed, using defaults: {e}")
            return StudentProfile.default(user_id)

    def _persist(self, profile: StudentProfile) -> bool:
        try:
            self.storage.save_profile(profile.user_id, profile.to_dict())
            return True
        except StorageError as e:
            logger.warning(f"Profile save failed for {profile.user_id}: {e}")
            return False
