from dataclasses import replace

from app.services.behavior_engine.metrics import TelemetrySample


class IndicatorCalculator:
    """
    Derives frustration, confidence and engagement levels (0..1) from the
    raw counters of a single TelemetrySample.

    Additive heuristics, hand-tuned for SAT practice sessions. The calculator
    is stateless: it only looks at the raw fields of the sample it is given,
    so processing the same raw sample twice yields identical levels.
    """

    # ---------------------------------------------------------
    # 1. FRUSTRATION
    # ---------------------------------------------------------

    LONG_QUESTION_SECONDS = 120
    VERY_LONG_QUESTION_SECONDS = 300
    W_LONG_QUESTION = 0.3
    W_VERY_LONG_QUESTION = 0.4
    # Stacks with W_LONG_QUESTION: up to +0.7 from time alone.

    FAILED_ATTEMPTS_MIN = 3
    W_FAILED_ATTEMPTS = 0.4
    # More than 3 attempts with nothing correct.

    MIN_ACTIVITY_RATE = 2.0
    MAX_ACTIVITY_RATE = 50.0
    W_ABNORMAL_ACTIVITY = 0.2
    # Activity rate = (mouse + keys) per 10s of question time.
    # Both near-silence and frantic input count as frustration signals.

    HELP_REQUESTS_MIN = 2
    W_HELP_SEEKING = 0.3

    # ---------------------------------------------------------
    # 2. CONFIDENCE
    # ---------------------------------------------------------

    BASE_CONFIDENCE = 0.5
    HIGH_ACCURACY_RATIO = 0.8
    LOW_ACCURACY_RATIO = 0.3
    W_HIGH_ACCURACY = 0.3
    W_LOW_ACCURACY = 0.4
    QUICK_RESPONSE_SECONDS = 30
    W_QUICK_CORRECT = 0.2
    W_UNAIDED_CORRECT = 0.2

    # ---------------------------------------------------------
    # 3. ENGAGEMENT
    # ---------------------------------------------------------

    BASE_ENGAGEMENT = 0.5
    ACTIVITY_SATURATION = 20.0
    W_ACTIVITY = 0.3
    FOCUS_CHANGE_SATURATION = 10.0
    W_FOCUS = 0.2
    W_PROGRESS = 0.3

    def process(self, sample: TelemetrySample) -> TelemetrySample:
        """
        Returns a copy of the sample with the three derived levels set.
        The input sample is left untouched.
        """
        return replace(
            sample,
            frustration_level=self.frustration(sample),
            confidence_level=self.confidence(sample),
            engagement_level=self.engagement(sample),
        )

    def activity_rate(self, sample: TelemetrySample) -> float:
        return (sample.mouse_movements + sample.keystrokes) / max(sample.time_on_question / 10, 1)

    def frustration(self, sample: TelemetrySample) -> float:
        score = 0.0

        if sample.time_on_question > self.LONG_QUESTION_SECONDS:
            score += self.W_LONG_QUESTION
        if sample.time_on_question > self.VERY_LONG_QUESTION_SECONDS:
            score += self.W_VERY_LONG_QUESTION

        if sample.question_attempts > self.FAILED_ATTEMPTS_MIN and sample.correct_answers == 0:
            score += self.W_FAILED_ATTEMPTS

        if self._has_observation_window(sample):
            rate = self.activity_rate(sample)
            if rate > self.MAX_ACTIVITY_RATE or rate < self.MIN_ACTIVITY_RATE:
                score += self.W_ABNORMAL_ACTIVITY

        if sample.help_requests > self.HELP_REQUESTS_MIN:
            score += self.W_HELP_SEEKING

        return self._clamp(score)

    def confidence(self, sample: TelemetrySample) -> float:
        score = self.BASE_CONFIDENCE

        if sample.correct_answers > sample.question_attempts * self.HIGH_ACCURACY_RATIO:
            score += self.W_HIGH_ACCURACY
        if sample.correct_answers < sample.question_attempts * self.LOW_ACCURACY_RATIO:
            score -= self.W_LOW_ACCURACY

        if sample.average_response_time < self.QUICK_RESPONSE_SECONDS and sample.correct_answers > 0:
            score += self.W_QUICK_CORRECT

        if sample.help_requests == 0 and sample.correct_answers > 0:
            score += self.W_UNAIDED_CORRECT

        return self._clamp(score)

    def engagement(self, sample: TelemetrySample) -> float:
        score = self.BASE_ENGAGEMENT

        if self._has_observation_window(sample):
            normalized_activity = min(self.activity_rate(sample) / self.ACTIVITY_SATURATION, 1)
            score += normalized_activity * self.W_ACTIVITY

            # Fewer focus changes -> more engagement
            focus_score = max(0, 1 - (sample.window_focus_changes / self.FOCUS_CHANGE_SATURATION))
            score += focus_score * self.W_FOCUS

        if sample.correct_answers > 0:
            score += self.W_PROGRESS

        return self._clamp(score)

    def _has_observation_window(self, sample: TelemetrySample) -> bool:
        # Activity and focus terms are rates over question time; a sample
        # with no time on question carries no rate evidence either way.
        return sample.time_on_question > 0

    def _clamp(self, value: float) -> float:
        return max(0.0, min(1.0, value))
