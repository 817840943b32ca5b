"""
BehaviorTracker - in-process boundary of the behavior engine.

Wires the pipeline for every tracked student:

    raw events -> StrugglePatternDetector -> struggle-detected
    samples    -> IndicatorCalculator -> rolling buffer
               -> (every N samples) NeedPredictor -> InterventionDispatcher

Everything here is synchronous over in-memory state. Durable writes go
through the injected BehaviorStorage (wrap it in WriteBehindStorage to keep
them off the caller's thread).
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from app.services.behavior_engine.indicators import IndicatorCalculator
from app.services.behavior_engine.interventions import (
    QUESTION_DETECTED,
    STRUGGLE_DETECTED,
    TRACKING_STARTED,
    TRACKING_STOPPED,
    EventBus,
    InterventionDispatcher,
    InterventionEvent,
)
from app.services.behavior_engine.metrics import (
    PredictionResult,
    StrugglePatternEvent,
    StrugglePatternType,
    SuggestedAction,
    TelemetrySample,
    coerce_number,
)
from app.services.behavior_engine.need_predictor import NeedPredictor
from app.services.behavior_engine.profiles import ProfileStore
from app.services.behavior_engine.sessions import (
    SessionAnalyzer,
    SessionAssessment,
    SessionStats,
    apply_retention,
    build_session_summary,
)
from app.services.behavior_engine.storage import BehaviorStorage, InMemoryBehaviorStorage, StorageError
from app.services.behavior_engine.struggle_patterns import PatternThreshold, StrugglePatternDetector

logger = logging.getLogger(__name__)

BACKSPACE_KEYS = {"Backspace", "backspace", "Delete", "delete"}


def _coordinate(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class BehaviorTracker:
    """
    Owns per-student session stats and sample buffers.

    Different students never share mutable state. Calls for a single student
    are expected to arrive sequentially (one logical thread per session).
    """

    def __init__(
        self,
        storage: Optional[BehaviorStorage] = None,
        *,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], float]] = None,
        pattern_thresholds: Optional[Mapping[StrugglePatternType, PatternThreshold]] = None,
        buffer_size: int = 100,
        prediction_window: int = 10,
        predict_every: int = 5,
        session_history_limit: int = 10,
        dispatch_threshold: float = InterventionDispatcher.DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        self.storage = storage or InMemoryBehaviorStorage()
        self.events = event_bus or EventBus()
        self._clock = clock or time.time

        self.calculator = IndicatorCalculator()
        self.detector = StrugglePatternDetector(pattern_thresholds, clock=self._clock)
        self.profiles = ProfileStore(self.storage)
        self.predictor = NeedPredictor(self.profiles)
        self.session_analyzer = SessionAnalyzer()
        self.dispatcher = InterventionDispatcher(
            self.events, storage=self.storage, confidence_threshold=dispatch_threshold, clock=self._clock
        )

        self.buffer_size = buffer_size
        self.prediction_window = prediction_window
        self.predict_every = predict_every
        self.session_history_limit = session_history_limit

        self._sessions: Dict[str, SessionStats] = {}
        self._samples: Dict[str, Deque[TelemetrySample]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_tracking(self, user_id: str, session_id: Optional[str] = None) -> SessionStats:
        """Starts a fresh session; a no-op returning the live one if already tracking."""
        now = self._clock()
        with self._lock:
            stats = self._sessions.get(user_id)
            if stats is not None:
                return stats
            stats = SessionStats(
                user_id=user_id,
                session_id=session_id or f"session_{uuid.uuid4().hex[:12]}",
                started_at=now,
                last_activity=now,
            )
            self._sessions[user_id] = stats
            self._samples[user_id] = deque(maxlen=self.buffer_size)
        self.detector.reset(user_id)

        logger.info(f"Tracking started for {user_id} (session {stats.session_id})")
        self.events.emit(TRACKING_STARTED, {"user_id": user_id, "session_id": stats.session_id})
        return stats

    def stop_tracking(self, user_id: str, persist: bool = True) -> Optional[Dict[str, Any]]:
        """
        Halts ingestion for the student immediately and flushes (or, with
        persist=False, discards) the session. Returns the session summary.
        """
        now = self._clock()
        with self._lock:
            stats = self._sessions.pop(user_id, None)
            self._samples.pop(user_id, None)
        if stats is None:
            return None

        struggle_log = self.detector.struggle_log(user_id)
        assessment = self._assess(stats, now)
        self.detector.reset(user_id)

        summary = build_session_summary(stats, assessment, struggle_log, now)
        if persist:
            self._save_session_summary(user_id, summary)

        logger.info(f"Tracking stopped for {user_id} (session {stats.session_id})")
        self.events.emit(TRACKING_STOPPED, summary)
        return summary

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def is_tracking(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._sessions

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_sample(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        raw_fields: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TelemetrySample]:
        """
        Processes one raw telemetry sample and appends it to the student's
        buffer. Every `predict_every` samples a prediction runs and, if
        confident enough, an intervention is dispatched.
        """
        stats = self._session(user_id)
        if stats is None:
            logger.debug(f"Ignoring sample for {user_id}: not tracking")
            return None

        now = self._clock()
        sample = TelemetrySample.from_raw(
            user_id,
            session_id or stats.session_id,
            raw_fields,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc),
        )
        processed = self.calculator.process(sample)

        with self._lock:
            buffer = self._samples.get(user_id)
        if buffer is None:
            return None
        buffer.append(processed)
        stats.samples_recorded += 1
        stats.last_sample = processed
        if processed.mouse_movements + processed.keystrokes + processed.clicks > 0:
            stats.mark_activity(now)

        self._append_log(user_id, {"kind": "sample", **processed.to_dict()})

        if len(buffer) >= self.predict_every and stats.samples_recorded % self.predict_every == 0:
            self.predict_and_act(user_id)

        return processed

    def record_raw_event(
        self,
        user_id: str,
        kind: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> List[StrugglePatternEvent]:
        """
        Feeds one raw input event to the struggle detector.

        Kinds: mouse_move {x, y}, click {x, y}, scroll, keydown {key},
        window_switch, idle {idle_ms}. Unknown kinds are ignored.
        """
        stats = self._session(user_id)
        if stats is None:
            logger.debug(f"Ignoring {kind} event for {user_id}: not tracking")
            return []

        payload = dict(payload or {})
        now = self._clock()
        detected: List[Optional[StrugglePatternEvent]] = []

        if kind == "mouse_move":
            stats.mouse_movements += 1
            stats.mark_activity(now)
            self.detector.record_position(user_id, *self._position(payload))
        elif kind == "click":
            stats.clicks += 1
            stats.mark_activity(now)
            x, y = self._position(payload)
            self.detector.record_position(user_id, x, y)
            detected.append(self.detector.record_click(user_id, x, y))
        elif kind == "scroll":
            stats.scrolls += 1
            stats.mark_activity(now)
            detected.append(self.detector.detect_struggle_pattern(
                user_id, StrugglePatternType.REPETITIVE_SCROLLING, payload
            ))
        elif kind == "keydown":
            stats.keystrokes += 1
            stats.mark_activity(now)
            if payload.get("key") in BACKSPACE_KEYS:
                detected.append(self.detector.detect_struggle_pattern(
                    user_id, StrugglePatternType.BACKSPACE_SPAMMING, payload
                ))
        elif kind in ("window_switch", "focus_change"):
            stats.window_switches += 1
            detected.append(self.detector.detect_struggle_pattern(
                user_id, StrugglePatternType.WINDOW_HOPPING, payload
            ))
        elif kind == "idle":
            idle_ms = coerce_number(payload.get("idle_ms"))
            stats.idle_ms = max(stats.idle_ms, idle_ms)
            detected.append(self.detector.check_idle(user_id, idle_ms))
        else:
            logger.debug(f"Unknown raw event kind '{kind}' for {user_id}")

        return self._publish([event for event in detected if event is not None])

    def tick(self, user_id: str) -> List[StrugglePatternEvent]:
        """
        Fast cadence check: idle detection (reported once per idle stretch)
        and positional analysis of recent mouse samples.
        """
        stats = self._session(user_id)
        if stats is None:
            return []

        now = self._clock()
        detected: List[StrugglePatternEvent] = []

        stats.idle_ms = max(0.0, (now - stats.last_activity) * 1000)
        if not stats.idle_reported:
            idle_event = self.detector.check_idle(user_id, stats.idle_ms)
            if idle_event is not None:
                stats.idle_reported = True
                detected.append(idle_event)

        detected.extend(self.detector.analyze_recent_activity(user_id))
        return self._publish(detected)

    def increment_help_requests(self, user_id: str) -> int:
        stats = self._session(user_id)
        if stats is None:
            return 0
        stats.help_requests += 1
        logger.debug(f"Help requests for {user_id}: {stats.help_requests}")
        return stats.help_requests

    def report_question_detected(self, user_id: str, payload: Optional[Mapping[str, Any]] = None) -> bool:
        """Pass-through for the external question detector."""
        stats = self._session(user_id)
        if stats is None:
            return False
        stats.questions_detected += 1
        self.events.emit(QUESTION_DETECTED, {"user_id": user_id, **dict(payload or {})})
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def predict(self, user_id: str) -> PredictionResult:
        """Prediction over the last `prediction_window` samples. Never raises."""
        samples = self.recent_samples(user_id, self.prediction_window)
        try:
            return self.predictor.predict(user_id, samples)
        except Exception as e:
            logger.error(f"Prediction failed for {user_id}: {e}", exc_info=True)
            return PredictionResult(
                user_id=user_id,
                needs_help=False,
                confidence=0.0,
                suggested_action=SuggestedAction.WAIT,
                time_until_intervention=0.0,
                reasoning=("Prediction failed",),
            )

    def predict_and_act(self, user_id: str) -> Optional[InterventionEvent]:
        prediction = self.predict(user_id)
        return self.dispatcher.dispatch(prediction)

    def assess_session(self, user_id: str) -> Optional[SessionAssessment]:
        stats = self._session(user_id)
        if stats is None:
            return None
        return self._assess(stats, self._clock())

    def recent_samples(self, user_id: str, count: int) -> List[TelemetrySample]:
        with self._lock:
            buffer = self._samples.get(user_id)
            samples = list(buffer) if buffer else []
        return samples[-count:] if count > 0 else []

    def get_current_metrics(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of the live session, or None when the student is not tracked."""
        stats = self._session(user_id)
        if stats is None:
            return None

        now = self._clock()
        last_help = self.dispatcher.last_proactive_help(user_id)
        return {
            "user_id": user_id,
            "session_id": stats.session_id,
            "is_tracking": True,
            "session_duration_seconds": round(stats.duration_seconds(now), 3),
            "idle_seconds": round(max(stats.idle_ms, (now - stats.last_activity) * 1000) / 1000, 3),
            **stats.counters(),
            "buffered_samples": len(self.recent_samples(user_id, self.buffer_size)),
            "pattern_windows": self.detector.window_sizes(user_id),
            "struggling_indicators": [e.to_dict() for e in self.detector.struggle_log(user_id)],
            "last_sample": stats.last_sample.to_dict() if stats.last_sample else None,
            "last_proactive_help": last_help.isoformat() if last_help else None,
        }

    def get_session_history(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            return apply_retention(self.storage.load_session_history(user_id), self.session_history_limit)
        except StorageError as e:
            logger.warning(f"Could not load session history for {user_id}: {e}")
            return []

    # ------------------------------------------------------------------

    def _session(self, user_id: str) -> Optional[SessionStats]:
        with self._lock:
            return self._sessions.get(user_id)

    def _assess(self, stats: SessionStats, now: float) -> SessionAssessment:
        recent = self.detector.recent_struggles(stats.user_id, SessionAnalyzer.RECENT_STRUGGLE_SECONDS)
        return self.session_analyzer.assess(stats, recent, now)

    def _publish(self, detected: List[StrugglePatternEvent]) -> List[StrugglePatternEvent]:
        for event in detected:
            self.events.emit(STRUGGLE_DETECTED, event)
            self._append_log(event.user_id, {"kind": "struggle", **event.to_dict()})
        return detected

    def _append_log(self, user_id: str, entry: Dict[str, Any]) -> None:
        try:
            self.storage.append_behavior_log(user_id, entry)
        except StorageError as e:
            logger.warning(f"Behavior log write failed for {user_id}: {e}")

    def _save_session_summary(self, user_id: str, summary: Dict[str, Any]) -> None:
        try:
            history = self.storage.load_session_history(user_id)
        except StorageError as e:
            logger.warning(f"Could not load session history for {user_id}, starting fresh: {e}")
            history = []

        history = apply_retention(history + [summary], self.session_history_limit)
        try:
            self.storage.save_session_history(user_id, history)
        except StorageError as e:
            logger.warning(f"Could not save session history for {user_id}: {e}")

    @staticmethod
    def _position(payload: Mapping[str, Any]) -> Tuple[float, float]:
        # Screen coordinates may be negative on multi-monitor setups
        return _coordinate(payload.get("x")), _coordinate(payload.get("y"))
