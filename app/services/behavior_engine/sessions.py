from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from app.services.behavior_engine.metrics import StrugglePatternEvent, SuggestedAction, TelemetrySample


@dataclass
class SessionStats:
    """
    Live counters for one tracked session. Discarded when tracking stops so
    a restarted session never inherits them.
    """
    user_id: str
    session_id: str
    started_at: float      # epoch seconds
    last_activity: float   # epoch seconds

    keystrokes: int = 0
    mouse_movements: int = 0
    clicks: int = 0
    scrolls: int = 0
    window_switches: int = 0
    help_requests: int = 0
    questions_detected: int = 0

    idle_ms: float = 0.0
    idle_reported: bool = False
    samples_recorded: int = 0
    last_sample: Optional[TelemetrySample] = None

    def mark_activity(self, now: float) -> None:
        self.last_activity = now
        self.idle_ms = 0.0
        self.idle_reported = False

    def duration_seconds(self, now: float) -> float:
        return max(0.0, now - self.started_at)

    def counters(self) -> Dict[str, Any]:
        return {
            "keystrokes": self.keystrokes,
            "mouse_movements": self.mouse_movements,
            "clicks": self.clicks,
            "scrolls": self.scrolls,
            "window_switches": self.window_switches,
            "help_requests": self.help_requests,
            "questions_detected": self.questions_detected,
            "samples_recorded": self.samples_recorded,
        }


@dataclass(frozen=True)
class SessionAssessment:
    needs_help: bool
    confidence: float
    urgency: float
    struggle_score: float
    suggested_action: SuggestedAction
    time_until_intervention: float
    reasoning: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needs_help": self.needs_help,
            "confidence": round(self.confidence, 4),
            "urgency": round(self.urgency, 4),
            "struggle_score": round(self.struggle_score, 4),
            "suggested_action": self.suggested_action.value,
            "time_until_intervention": self.time_until_intervention,
            "reasoning": list(self.reasoning),
        }


class SessionAnalyzer:
    """
    Session-level struggle assessment from live counters and recent
    struggle events (the coarse periodic check of the desktop tracker).
    """

    RECENT_STRUGGLE_SECONDS = 120
    W_RECENT_STRUGGLE = 0.3       # per recent struggle event
    C_RECENT_STRUGGLE = 0.2

    LONG_IDLE_MS = 60000
    W_LONG_IDLE = 0.4
    C_LONG_IDLE = 0.15

    W_UNASKED_QUESTIONS = 0.3     # questions seen, no help asked
    C_UNASKED_QUESTIONS = 0.1

    LONG_SESSION_SECONDS = 300
    W_LONG_SESSION = 0.2
    C_LONG_SESSION = 0.1

    BASE_CONFIDENCE = 0.5
    NEEDS_HELP_SCORE = 0.6
    IMMEDIATE_URGENCY = 0.8

    def assess(
        self,
        stats: SessionStats,
        recent_struggles: Sequence[StrugglePatternEvent],
        now: float,
    ) -> SessionAssessment:
        score = 0.0
        confidence = self.BASE_CONFIDENCE
        reasoning: List[str] = []

        if recent_struggles:
            score += len(recent_struggles) * self.W_RECENT_STRUGGLE
            confidence += self.C_RECENT_STRUGGLE

        if stats.idle_ms > self.LONG_IDLE_MS:
            score += self.W_LONG_IDLE
            confidence += self.C_LONG_IDLE

        if stats.questions_detected > 0 and stats.help_requests == 0:
            score += self.W_UNASKED_QUESTIONS
            confidence += self.C_UNASKED_QUESTIONS

        if stats.duration_seconds(now) > self.LONG_SESSION_SECONDS and stats.help_requests == 0:
            score += self.W_LONG_SESSION
            confidence += self.C_LONG_SESSION

        needs_help = score > self.NEEDS_HELP_SCORE
        urgency = min(score, 1.0)

        if needs_help and urgency > self.IMMEDIATE_URGENCY:
            action, delay = SuggestedAction.IMMEDIATE_HELP, 0.0
            reasoning.append("High urgency: Multiple struggle indicators detected")
        elif needs_help:
            action, delay = SuggestedAction.GENTLE_PROMPT, 30.0
            reasoning.append("Moderate concern: User showing signs of struggle")
        else:
            action, delay = SuggestedAction.WAIT, 60.0

        if recent_struggles:
            kinds = ", ".join(event.pattern_type.value for event in recent_struggles)
            reasoning.append(f"Recent struggles: {kinds}")
        if stats.idle_ms > self.LONG_IDLE_MS:
            reasoning.append(f"Long idle time: {round(stats.idle_ms / 1000)}s")
        if stats.questions_detected > 0:
            reasoning.append(f"Questions detected: {stats.questions_detected}")

        return SessionAssessment(
            needs_help=needs_help,
            confidence=min(confidence, 1.0),
            urgency=urgency,
            struggle_score=score,
            suggested_action=action,
            time_until_intervention=delay,
            reasoning=reasoning,
        )


def build_session_summary(
    stats: SessionStats,
    assessment: SessionAssessment,
    struggle_log: Sequence[StrugglePatternEvent],
    now: float,
) -> Dict[str, Any]:
    return {
        "session_id": stats.session_id,
        "user_id": stats.user_id,
        "start_time": datetime.fromtimestamp(stats.started_at, tz=timezone.utc).isoformat(),
        "end_time": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        "duration_seconds": round(stats.duration_seconds(now), 3),
        "metrics": stats.counters(),
        "struggling_indicators": [event.to_dict() for event in struggle_log],
        "final_analysis": assessment.to_dict(),
    }


def apply_retention(history: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """Keeps the newest `limit` sessions, ordered by start time."""
    ordered = sorted(history, key=lambda s: s.get("start_time", ""))
    return ordered[-limit:] if limit > 0 else []
