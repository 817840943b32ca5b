"""
Sliding-window struggle pattern detection.

Each student has one time-pruned window per pattern type. Raw interaction
events are appended to the matching window; when the window holds at least
`threshold` entries a StrugglePatternEvent is produced with
intensity = window length / threshold.

Long idle is not count based: it fires directly when the observed idle time
exceeds its threshold, with intensity = idle_ms / threshold.
"""

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from app.services.behavior_engine.metrics import StrugglePatternEvent, StrugglePatternType, coerce_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternThreshold:
    threshold: float
    time_window_ms: Optional[float] = None  # None -> evaluated directly (long idle)


DEFAULT_PATTERN_THRESHOLDS: Dict[StrugglePatternType, PatternThreshold] = {
    StrugglePatternType.RAPID_CLICKING: PatternThreshold(threshold=10, time_window_ms=5000),
    StrugglePatternType.LONG_IDLE: PatternThreshold(threshold=30000),
    StrugglePatternType.REPETITIVE_SCROLLING: PatternThreshold(threshold=20, time_window_ms=10000),
    StrugglePatternType.BACKSPACE_SPAMMING: PatternThreshold(threshold=15, time_window_ms=3000),
    StrugglePatternType.WINDOW_HOPPING: PatternThreshold(threshold=5, time_window_ms=10000),
}

# Window used when a pattern is configured without one
FALLBACK_TIME_WINDOW_MS = 60000

# Positional analysis (mouse samples)
CLUSTER_RADIUS_PX = 50
CLUSTER_MIN_POINTS = 3        # a cluster counts once it has MORE than this many points
MIN_REPEATED_CLUSTERS = 5     # more than this many clusters -> rapid clicking
SCROLL_MIN_DELTA_Y = 10
SCROLL_MAX_DELTA_X = 5
POSITION_WINDOW_MS = 10000
POSITION_BUFFER_SIZE = 100


@dataclass
class MousePosition:
    x: float
    y: float
    timestamp_ms: float


@dataclass
class ClickCluster:
    x: float
    y: float
    count: int = 1


def _distance(ax: float, ay: float, bx: float, by: float) -> float:
    return math.sqrt((ax - bx) ** 2 + (ay - by) ** 2)


def find_click_clusters(
    positions: Sequence[MousePosition],
    radius: float = CLUSTER_RADIUS_PX,
    min_points: int = CLUSTER_MIN_POINTS,
) -> List[ClickCluster]:
    """
    Greedy spatial clustering: each position joins the first cluster whose
    seed lies within `radius`, otherwise it seeds a new one. Only clusters
    with more than `min_points` points are returned.
    """
    clusters: List[ClickCluster] = []
    for position in positions:
        for cluster in clusters:
            if _distance(position.x, position.y, cluster.x, cluster.y) < radius:
                cluster.count += 1
                break
        else:
            clusters.append(ClickCluster(x=position.x, y=position.y))

    return [cluster for cluster in clusters if cluster.count > min_points]


def detect_scrolling(positions: Sequence[MousePosition]) -> int:
    """Counts vertical-dominant moves between consecutive positions."""
    scroll_count = 0
    for prev, curr in zip(positions, positions[1:]):
        if abs(curr.y - prev.y) > SCROLL_MIN_DELTA_Y and abs(curr.x - prev.x) < SCROLL_MAX_DELTA_X:
            scroll_count += 1
    return scroll_count


@dataclass
class _StudentPatternState:
    windows: Dict[StrugglePatternType, List[Tuple[float, Dict[str, Any]]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    struggle_log: List[StrugglePatternEvent] = field(default_factory=list)
    positions: Deque[MousePosition] = field(
        default_factory=lambda: deque(maxlen=POSITION_BUFFER_SIZE)
    )
    click_anchor: Optional[Tuple[float, float]] = None


class StrugglePatternDetector:
    """
    Stateful matcher for discrete struggle events.

    State is keyed by user id with no structure shared between students.
    Calls for one student are expected to be sequential.
    """

    def __init__(
        self,
        thresholds: Optional[Mapping[StrugglePatternType, PatternThreshold]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            thresholds: Overrides merged over DEFAULT_PATTERN_THRESHOLDS
            clock: Returns the current time in epoch seconds (time.time by default)
        """
        self.thresholds: Dict[StrugglePatternType, PatternThreshold] = dict(DEFAULT_PATTERN_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self._clock = clock or time.time
        self._states: Dict[str, _StudentPatternState] = {}

    # ------------------------------------------------------------------
    # Core sliding-window matcher
    # ------------------------------------------------------------------

    def detect_struggle_pattern(
        self,
        user_id: str,
        pattern_type: StrugglePatternType,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[StrugglePatternEvent]:
        """
        Appends one observation to the pattern's window, prunes it and
        returns an event if the threshold is met.
        """
        pattern_type = StrugglePatternType(pattern_type)
        data = dict(data or {})

        if pattern_type is StrugglePatternType.LONG_IDLE:
            return self.check_idle(user_id, data.get("idle_ms", 0))

        config = self.thresholds[pattern_type]
        state = self._state_for(user_id)
        now_ms = self._now_ms()

        time_window = config.time_window_ms or FALLBACK_TIME_WINDOW_MS
        window = state.windows[pattern_type]
        window.append((now_ms, data))
        window[:] = [entry for entry in window if now_ms - entry[0] < time_window]

        if len(window) >= config.threshold:
            return self._emit(state, user_id, pattern_type, len(window) / config.threshold, data)
        return None

    def check_idle(self, user_id: str, idle_ms: float) -> Optional[StrugglePatternEvent]:
        """Fires longIdle when idle time alone exceeds the configured threshold."""
        config = self.thresholds[StrugglePatternType.LONG_IDLE]
        idle_ms = coerce_number(idle_ms)

        if idle_ms <= config.threshold:
            return None

        state = self._state_for(user_id)
        return self._emit(
            state,
            user_id,
            StrugglePatternType.LONG_IDLE,
            idle_ms / config.threshold,
            {"idle_ms": idle_ms},
        )

    # ------------------------------------------------------------------
    # Raw input adapters
    # ------------------------------------------------------------------

    def record_click(self, user_id: str, x: float, y: float) -> Optional[StrugglePatternEvent]:
        """
        Clicks count toward rapid clicking while they stay in the same screen
        region (within CLUSTER_RADIUS_PX of the region's first click).
        """
        state = self._state_for(user_id)
        anchor = state.click_anchor
        if anchor is None or _distance(x, y, anchor[0], anchor[1]) >= CLUSTER_RADIUS_PX:
            state.click_anchor = (x, y)
            state.windows[StrugglePatternType.RAPID_CLICKING].clear()

        return self.detect_struggle_pattern(
            user_id, StrugglePatternType.RAPID_CLICKING, {"x": x, "y": y}
        )

    def record_position(self, user_id: str, x: float, y: float) -> None:
        state = self._state_for(user_id)
        state.positions.append(MousePosition(x=x, y=y, timestamp_ms=self._now_ms()))

    def analyze_recent_activity(self, user_id: str) -> List[StrugglePatternEvent]:
        """
        Positional analysis over the last POSITION_WINDOW_MS of mouse samples:
        repeated-click clusters and vertical scrolling.
        """
        state = self._states.get(user_id)
        if state is None:
            return []

        now_ms = self._now_ms()
        recent = [p for p in state.positions if now_ms - p.timestamp_ms < POSITION_WINDOW_MS]
        events: List[StrugglePatternEvent] = []

        clusters = find_click_clusters(recent)
        if len(clusters) > MIN_REPEATED_CLUSTERS:
            area = clusters[0]
            event = self.detect_struggle_pattern(
                user_id,
                StrugglePatternType.RAPID_CLICKING,
                {"clusters": len(clusters), "area": {"x": area.x, "y": area.y, "count": area.count}},
            )
            if event:
                events.append(event)

        scroll_count = detect_scrolling(recent)
        if scroll_count > self.thresholds[StrugglePatternType.REPETITIVE_SCROLLING].threshold:
            event = self.detect_struggle_pattern(
                user_id,
                StrugglePatternType.REPETITIVE_SCROLLING,
                {"scroll_count": scroll_count},
            )
            if event:
                events.append(event)

        return events

    # ------------------------------------------------------------------
    # Queries and lifecycle
    # ------------------------------------------------------------------

    def struggle_log(self, user_id: str) -> List[StrugglePatternEvent]:
        state = self._states.get(user_id)
        return list(state.struggle_log) if state else []

    def recent_struggles(self, user_id: str, within_seconds: float) -> List[StrugglePatternEvent]:
        now = self._now_datetime()
        return [
            event for event in self.struggle_log(user_id)
            if (now - event.timestamp).total_seconds() < within_seconds
        ]

    def window_sizes(self, user_id: str) -> Dict[str, int]:
        state = self._states.get(user_id)
        if state is None:
            return {}
        return {pattern.value: len(entries) for pattern, entries in state.windows.items()}

    def reset(self, user_id: str) -> None:
        """Discards every window, position and log entry held for the student."""
        self._states.pop(user_id, None)

    # ------------------------------------------------------------------

    def _emit(
        self,
        state: _StudentPatternState,
        user_id: str,
        pattern_type: StrugglePatternType,
        intensity: float,
        data: Dict[str, Any],
    ) -> StrugglePatternEvent:
        event = StrugglePatternEvent(
            user_id=user_id,
            pattern_type=pattern_type,
            timestamp=self._now_datetime(),
            intensity=intensity,
            data=data,
        )
        state.struggle_log.append(event)
        logger.info(f"Struggle pattern detected for {user_id}: {pattern_type.value} (intensity {intensity:.2f})")
        return event

    def _state_for(self, user_id: str) -> _StudentPatternState:
        return self._states.setdefault(user_id, _StudentPatternState())

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _now_datetime(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)
