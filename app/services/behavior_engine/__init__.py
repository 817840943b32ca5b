"""
Behavior Engine - behavioral analytics and intervention prediction.

Turns raw interaction telemetry into emotional indicators, discrete struggle
events and help predictions that the UI layer can act on.
"""

from .indicators import IndicatorCalculator
from .interventions import EventBus, InterventionDispatcher, InterventionEvent
from .metrics import PredictionResult, StrugglePatternEvent, StrugglePatternType, SuggestedAction, TelemetrySample
from .need_predictor import NeedPredictor
from .profiles import ProfileStore, StudentProfile
from .storage import BehaviorStorage, InMemoryBehaviorStorage, JsonFileBehaviorStorage, WriteBehindStorage
from .struggle_patterns import StrugglePatternDetector
from .tracker import BehaviorTracker
from .trends import TrendAnalyzer

__all__ = [
    "BehaviorStorage",
    "BehaviorTracker",
    "EventBus",
    "IndicatorCalculator",
    "InMemoryBehaviorStorage",
    "InterventionDispatcher",
    "InterventionEvent",
    "JsonFileBehaviorStorage",
    "NeedPredictor",
    "PredictionResult",
    "ProfileStore",
    "StrugglePatternDetector",
    "StrugglePatternEvent",
    "StrugglePatternType",
    "StudentProfile",
    "SuggestedAction",
    "TelemetrySample",
    "TrendAnalyzer",
    "WriteBehindStorage",
]
