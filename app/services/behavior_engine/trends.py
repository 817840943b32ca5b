from typing import List, Sequence

from app.services.behavior_engine.metrics import BehaviorTrends, TelemetrySample


class TrendAnalyzer:
    """
    Compares the most recent samples against the ones just before them.

    recent = last WINDOW samples, older = the WINDOW samples before those.
    Each trend is mean(recent) - mean(older); positive means rising.
    """

    WINDOW = 3
    MIN_SAMPLES = 3

    def analyze(self, samples: Sequence[TelemetrySample]) -> BehaviorTrends:
        if len(samples) < self.MIN_SAMPLES:
            return BehaviorTrends()

        recent = list(samples[-self.WINDOW:])
        older = list(samples[-2 * self.WINDOW:-self.WINDOW])

        return BehaviorTrends(
            frustration_trend=self._trend(
                [s.frustration_level or 0.0 for s in recent],
                [s.frustration_level or 0.0 for s in older],
            ),
            performance_trend=self._trend(
                [s.correct_answers for s in recent],
                [s.correct_answers for s in older],
            ),
            engagement_trend=self._trend(
                [s.engagement_level or 0.0 for s in recent],
                [s.engagement_level or 0.0 for s in older],
            ),
        )

    def _trend(self, recent: List[float], older: List[float]) -> float:
        # Between 3 and 5 samples the older window may be empty: no signal.
        if not recent or not older:
            return 0.0
        return sum(recent) / len(recent) - sum(older) / len(older)
