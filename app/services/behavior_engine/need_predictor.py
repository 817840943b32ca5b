import logging
import statistics
from typing import Dict, List, Optional, Sequence, Tuple

from app.services.behavior_engine.metrics import (
    BehaviorTrends,
    PredictionResult,
    SuggestedAction,
    TelemetrySample,
)
from app.services.behavior_engine.profiles import ProfileStore, StudentProfile
from app.services.behavior_engine.trends import TrendAnalyzer

logger = logging.getLogger(__name__)


def aggregate_accuracy(samples: Sequence[TelemetrySample]) -> float:
    """Correct / attempted over the samples; 0.5 when nothing was attempted."""
    attempts = sum(s.question_attempts for s in samples)
    correct = sum(s.correct_answers for s in samples)
    return correct / attempts if attempts > 0 else 0.5


class NeedPredictor:
    """
    Predicts whether a student needs help now and what to offer.

    Pipeline (per call):
    1. Struggle indicators of the current sample against recent history
    2. Recent-vs-older trends (TrendAnalyzer)
    3. Additive help probability from the profile's personalized thresholds
    4. Personalized multiplier from learning patterns and struggle indicators
    5. Probability band -> suggested action and intervention delay

    The predictor is total over its input: empty history yields an explicit
    insufficient-data result, missing values count as 0 and a broken profile
    falls back to defaults (handled by the ProfileStore).
    """

    # =====================================================================
    # HELP PROBABILITY CONTRIBUTIONS
    # =====================================================================

    W_EXTENDED_TIME = 0.3
    W_HIGH_FRUSTRATION = 0.4

    LOW_ACCURACY = 0.4
    W_LOW_ACCURACY = 0.2

    HELP_REQUESTS_MIN = 2
    HELP_REQUEST_MIN_SECONDS = 60
    W_REPEATED_HELP = 0.3

    LOW_ENGAGEMENT = 0.3
    W_LOW_ENGAGEMENT = 0.2

    RISING_FRUSTRATION = 0.2
    W_RISING_FRUSTRATION = 0.15

    # =====================================================================
    # PERSONALIZATION
    # =====================================================================

    PATTERN_NEEDS_ENCOURAGEMENT = "needs_frequent_encouragement"
    ENCOURAGEMENT_DECLINE = 0.2
    ENCOURAGEMENT_FACTOR = 1.2

    PATTERN_BETTER_WITH_BREAKS = "works_better_with_breaks"
    BREAKS_STAGNATION = 2.0
    BREAKS_FACTOR = 1.3

    MAX_MULTIPLIER = 2.0

    # =====================================================================
    # DECISION BANDS
    # =====================================================================

    IMMEDIATE_BAND = 0.8
    ENCOURAGEMENT_BAND = 0.6
    HINT_BAND = 0.4
    BREAK_FRUSTRATION = 0.7
    NEEDS_HELP_PROBABILITY = 0.5

    RECENT_WINDOW = 3
    FULL_CONFIDENCE_SAMPLES = 10
    MIN_CONSISTENCY = 0.3
    DEFAULT_RESPONSE_TIME = 30.0

    def __init__(self, profile_store: ProfileStore, trend_analyzer: Optional[TrendAnalyzer] = None):
        self.profile_store = profile_store
        self.trend_analyzer = trend_analyzer or TrendAnalyzer()

    def predict(self, user_id: str, samples: Sequence[TelemetrySample]) -> PredictionResult:
        """
        Args:
            user_id: Student identifier
            samples: Recent processed samples, oldest first (the caller passes
                at most the prediction window, normally the last 10)
        """
        recent = list(samples)
        if not recent:
            return PredictionResult.insufficient_data(user_id)

        profile = self.profile_store.get(user_id)
        current = recent[-1]

        indicators = self.calculate_struggle_indicators(current, recent)
        trends = self.trend_analyzer.analyze(recent)
        probability, reasoning = self._help_probability(current, recent, trends, profile)

        multiplier = self.personalized_multiplier(indicators, profile)
        probability *= multiplier
        if multiplier > 1.0:
            reasoning.append(f"Personalized adjustment (x{multiplier:.2f})")

        action, delay = self.map_action(probability, current.frustration_level or 0.0)

        result = PredictionResult(
            user_id=user_id,
            needs_help=probability > self.NEEDS_HELP_PROBABILITY,
            confidence=self.prediction_confidence(indicators, len(recent)),
            suggested_action=action,
            time_until_intervention=delay,
            reasoning=tuple(reasoning),
            help_probability=probability,
            indicators=indicators,
            trends=trends,
        )
        logger.debug(
            f"Prediction for {user_id}: p={probability:.3f} action={action.value} "
            f"confidence={result.confidence:.3f}"
        )
        return result

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def calculate_struggle_indicators(
        self, current: TelemetrySample, recent: Sequence[TelemetrySample]
    ) -> Dict[str, float]:
        """
        Named struggle metrics. The names are what StudentProfile
        struggle indicators refer to.
        """
        longest = max((s.time_on_question for s in recent), default=0.0)
        time_stagnation = (current.time_on_question / longest if longest > 0 else 0.0) or 1.0

        activity_level = (current.mouse_movements + current.keystrokes) / len(recent)

        # Focus changes per minute on the current question
        minutes = current.time_on_question / 60
        attention_span = current.window_focus_changes / minutes if minutes > 0 else 0.0

        mean_response = self._average_response_time(recent)
        response_pattern = current.average_response_time / mean_response if mean_response > 0 else 0.0

        return {
            "timeStagnation": time_stagnation,
            "activityLevel": activity_level,
            "attentionSpan": attention_span,
            "responsePattern": response_pattern,
            "performanceDecline": self.performance_decline(recent),
        }

    def performance_decline(self, samples: Sequence[TelemetrySample]) -> float:
        """Accuracy drop from the older window to the recent one (never negative)."""
        if len(samples) < 2:
            return 0.0
        recent = samples[-self.RECENT_WINDOW:]
        older = samples[-2 * self.RECENT_WINDOW:-self.RECENT_WINDOW]
        return max(0.0, aggregate_accuracy(older) - aggregate_accuracy(recent))

    def _average_response_time(self, samples: Sequence[TelemetrySample]) -> float:
        if not samples:
            return self.DEFAULT_RESPONSE_TIME
        return sum(s.average_response_time for s in samples) / len(samples)

    # ------------------------------------------------------------------
    # Probability
    # ------------------------------------------------------------------

    def _help_probability(
        self,
        current: TelemetrySample,
        recent: Sequence[TelemetrySample],
        trends: BehaviorTrends,
        profile: StudentProfile,
    ) -> Tuple[float, List[str]]:
        thresholds = profile.personalized_thresholds
        frustration = current.frustration_level or 0.0
        engagement = current.engagement_level or 0.0
        probability = 0.0
        reasoning: List[str] = []

        if current.time_on_question > thresholds.help_offer_timing:
            probability += self.W_EXTENDED_TIME
            reasoning.append(f"Extended time on question ({current.time_on_question:g}s)")

        if frustration > thresholds.frustration_threshold:
            probability += self.W_HIGH_FRUSTRATION
            reasoning.append(f"High frustration level ({frustration:.2f})")

        accuracy = aggregate_accuracy(recent)
        if accuracy < self.LOW_ACCURACY:
            probability += self.W_LOW_ACCURACY
            reasoning.append(f"Low recent accuracy ({accuracy * 100:.1f}%)")

        if current.help_requests > self.HELP_REQUESTS_MIN and current.time_on_question > self.HELP_REQUEST_MIN_SECONDS:
            probability += self.W_REPEATED_HELP
            reasoning.append("Multiple help requests on same question")

        if engagement < self.LOW_ENGAGEMENT:
            probability += self.W_LOW_ENGAGEMENT
            reasoning.append(f"Low engagement level ({engagement:.2f})")

        if trends.frustration_trend > self.RISING_FRUSTRATION:
            probability += self.W_RISING_FRUSTRATION
            reasoning.append("Increasing frustration trend")

        return probability, reasoning

    def personalized_multiplier(self, indicators: Dict[str, float], profile: StudentProfile) -> float:
        factor = 1.0

        for pattern in profile.learning_patterns:
            if (pattern.pattern == self.PATTERN_NEEDS_ENCOURAGEMENT
                    and indicators.get("performanceDecline", 0.0) > self.ENCOURAGEMENT_DECLINE):
                factor *= self.ENCOURAGEMENT_FACTOR
            if (pattern.pattern == self.PATTERN_BETTER_WITH_BREAKS
                    and indicators.get("timeStagnation", 0.0) > self.BREAKS_STAGNATION):
                factor *= self.BREAKS_FACTOR

        for indicator in profile.struggle_indicators:
            if indicators.get(indicator.indicator, 0.0) > indicator.threshold:
                factor *= 1 + indicator.accuracy

        return min(factor, self.MAX_MULTIPLIER)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def map_action(self, probability: float, frustration: float) -> Tuple[SuggestedAction, float]:
        """Probability band -> (action, seconds until intervention)."""
        if probability > self.IMMEDIATE_BAND:
            if frustration > self.BREAK_FRUSTRATION:
                return SuggestedAction.SUGGEST_BREAK, 0.0
            return SuggestedAction.IMMEDIATE_HELP, 0.0
        if probability > self.ENCOURAGEMENT_BAND:
            return SuggestedAction.PROVIDE_ENCOURAGEMENT, 10.0
        if probability > self.HINT_BAND:
            return SuggestedAction.OFFER_HINT, 30.0
        return SuggestedAction.WAIT, 60.0

    def prediction_confidence(self, indicators: Dict[str, float], data_points: int) -> float:
        """More data and lower indicator variance -> higher confidence."""
        confidence = min(data_points / self.FULL_CONFIDENCE_SAMPLES, 1.0)
        values = list(indicators.values())
        variance = statistics.pvariance(values) if values else 0.0
        return confidence * max(self.MIN_CONSISTENCY, 1 - variance)
