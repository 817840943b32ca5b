"""
Intervention dispatch and event fan-out.

The dispatcher turns confident predictions into intervention events for the
UI layer. It does not rate-limit: cooldowns are the calling application's
policy, for which it exposes the time of the last proactive help per student.
"""

import logging
import threading
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from app.services.behavior_engine.metrics import PredictionResult, SuggestedAction, utcnow
from app.services.behavior_engine.storage import BehaviorStorage, StorageError

logger = logging.getLogger(__name__)

# Event names
STRUGGLE_DETECTED = "struggle-detected"
QUESTION_DETECTED = "question-detected"
HELP_NEEDED = "help-needed"
TRACKING_STARTED = "tracking-started"
TRACKING_STOPPED = "tracking-stopped"

Listener = Callable[[Any], None]


class EventBus:
    """
    Callback registry keyed by event name.

    Any number of listeners per event; delivery order is not part of the
    contract. A failing listener is logged and does not affect the others
    or the emitter.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """Registers a listener and returns a callable that removes it."""
        with self._lock:
            self._listeners[event].append(listener)
        return lambda: self.unsubscribe(event, listener)

    def unsubscribe(self, event: str, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners.get(event, []):
                self._listeners[event].remove(listener)

    def emit(self, event: str, payload: Any = None) -> int:
        """Delivers payload to every listener; returns how many succeeded."""
        with self._lock:
            listeners = list(self._listeners.get(event, []))

        delivered = 0
        for listener in listeners:
            try:
                listener(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}", exc_info=True)
        return delivered

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))


class InterventionPolicy:
    """
    How each suggested action is delivered by the UI layer.

    open_chat: open the assistant window with a proactive message
    badge: subtle indicator, no interruption
    break_prompt: suggest stepping away
    none: nothing shown
    """

    DELIVERY_CHANNEL = {
        SuggestedAction.IMMEDIATE_HELP: "open_chat",
        SuggestedAction.OFFER_HINT: "open_chat",
        SuggestedAction.PROVIDE_ENCOURAGEMENT: "badge",
        SuggestedAction.GENTLE_PROMPT: "badge",
        SuggestedAction.SUGGEST_BREAK: "break_prompt",
        SuggestedAction.MONITOR: "none",
        SuggestedAction.WAIT: "none",
    }

    TONE = {
        SuggestedAction.IMMEDIATE_HELP: "encouraging_and_concrete",
        SuggestedAction.SUGGEST_BREAK: "calm_and_supportive",
        SuggestedAction.PROVIDE_ENCOURAGEMENT: "encouraging",
        SuggestedAction.OFFER_HINT: "gentle_nudge",
        SuggestedAction.GENTLE_PROMPT: "gentle_nudge",
    }

    @classmethod
    def delivery_channel(cls, action: SuggestedAction) -> str:
        return cls.DELIVERY_CHANNEL.get(action, "none")

    @classmethod
    def tone(cls, action: SuggestedAction) -> str:
        return cls.TONE.get(action, "supportive")


@dataclass(frozen=True)
class InterventionEvent:
    user_id: str
    prediction_id: str
    suggested_action: SuggestedAction
    confidence: float
    reasoning: List[str]
    delivery_channel: str
    tone: str
    time_until_intervention: float
    triggered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "prediction_id": self.prediction_id,
            "suggested_action": self.suggested_action.value,
            "confidence": round(self.confidence, 4),
            "reasoning": list(self.reasoning),
            "delivery_channel": self.delivery_channel,
            "tone": self.tone,
            "time_until_intervention": self.time_until_intervention,
            "triggered_at": self.triggered_at.isoformat(),
        }


class InterventionDispatcher:
    """
    Forwards predictions with needs_help and confidence above the threshold.

    Dispatch is idempotent per PredictionResult: a result that was already
    dispatched is ignored. Records are written best-effort.
    """

    DEFAULT_CONFIDENCE_THRESHOLD = 0.6
    MAX_REMEMBERED_PREDICTIONS = 1000
    MAX_EVENTS_PER_USER = 50

    def __init__(
        self,
        event_bus: EventBus,
        storage: Optional[BehaviorStorage] = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.event_bus = event_bus
        self.storage = storage
        self.confidence_threshold = confidence_threshold
        self._clock = clock or time.time
        self._dispatched: "OrderedDict[str, None]" = OrderedDict()
        self._last_proactive_help: Dict[str, datetime] = {}
        self._events: Dict[str, List[InterventionEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def should_dispatch(self, prediction: PredictionResult) -> bool:
        return prediction.needs_help and prediction.confidence > self.confidence_threshold

    def dispatch(self, prediction: PredictionResult) -> Optional[InterventionEvent]:
        if not self.should_dispatch(prediction):
            return None

        with self._lock:
            if prediction.prediction_id in self._dispatched:
                logger.debug(f"Prediction {prediction.prediction_id} already dispatched")
                return None
            self._dispatched[prediction.prediction_id] = None
            while len(self._dispatched) > self.MAX_REMEMBERED_PREDICTIONS:
                self._dispatched.popitem(last=False)

            event = InterventionEvent(
                user_id=prediction.user_id,
                prediction_id=prediction.prediction_id,
                suggested_action=prediction.suggested_action,
                confidence=prediction.confidence,
                reasoning=list(prediction.reasoning),
                delivery_channel=InterventionPolicy.delivery_channel(prediction.suggested_action),
                tone=InterventionPolicy.tone(prediction.suggested_action),
                time_until_intervention=prediction.time_until_intervention,
                triggered_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            )
            self._last_proactive_help[prediction.user_id] = event.triggered_at
            events = self._events[prediction.user_id]
            events.append(event)
            del events[:-self.MAX_EVENTS_PER_USER]

        logger.info(
            f"Intervention for {prediction.user_id}: {prediction.suggested_action.value} "
            f"(confidence {prediction.confidence:.2f})"
        )
        self.event_bus.emit(HELP_NEEDED, prediction)
        self._record(event)
        return event

    def last_proactive_help(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_proactive_help.get(user_id)

    def recent_events(self, user_id: str) -> List[InterventionEvent]:
        with self._lock:
            return list(self._events.get(user_id, []))

    def _record(self, event: InterventionEvent) -> None:
        if self.storage is None:
            return
        try:
            self.storage.record_intervention(event.user_id, event.to_dict())
        except StorageError as e:
            logger.warning(f"Could not record intervention for {event.user_id}: {e}")
