"""
FastAPI endpoints for behavioral telemetry ingestion.

Clients (desktop tracker, browser extension, web app) push raw samples and
input events; the behavior engine derives indicators, flags struggle
patterns and runs predictions on its own cadence.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from ..deps import get_tracker
from ...services.behavior_engine import BehaviorTracker, StrugglePatternEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])


# --- REQUEST/RESPONSE MODELS ---

class SessionStartRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Student identifier")
    session_id: Optional[str] = Field(None, description="Client session id (generated if omitted)")


class SessionStopRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Student identifier")
    persist: bool = Field(True, description="Write the session summary to history")


class SessionResponse(BaseModel):
    user_id: str
    session_id: Optional[str] = None
    is_tracking: bool
    summary: Optional[Dict[str, Any]] = None


class SampleRequest(BaseModel):
    """
    One telemetry slice. Counters are deltas since the previous sample.
    Metrics are free-form: missing or malformed values count as 0.
    """
    user_id: str = Field(..., min_length=1, description="Student identifier")
    session_id: Optional[str] = Field(None, description="Session identifier")
    metrics: Dict[str, Any] = Field(
        default_factory=dict,
        description="mouseMovements, keystrokes, scrolls, clicks, timeOnQuestion, timeInactive, "
                    "averageResponseTime, windowFocusChanges, platformSwitches, questionAttempts, "
                    "correctAnswers, helpRequests (camelCase or snake_case)",
    )


class SampleResponse(BaseModel):
    user_id: str
    session_id: str
    timestamp: datetime
    frustration_level: float = Field(..., description="0..1")
    confidence_level: float = Field(..., description="0..1")
    engagement_level: float = Field(..., description="0..1")


class RawEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Student identifier")
    kind: str = Field(..., description="mouse_move, click, scroll, keydown, window_switch or idle")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event data, e.g. {x, y} or {key}")


class StruggleEventModel(BaseModel):
    type: str
    intensity: float
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: StrugglePatternEvent) -> "StruggleEventModel":
        return cls(
            type=event.pattern_type.value,
            intensity=round(event.intensity, 4),
            timestamp=event.timestamp,
            data=event.data,
        )


class StruggleResponse(BaseModel):
    user_id: str
    detected: List[StruggleEventModel] = Field(default_factory=list)


class QuestionDetectedRequest(BaseModel):
    """Forwarded from the external question detector (OCR / DOM scraping)."""
    text: Optional[str] = Field(None, max_length=2000)
    patterns: List[str] = Field(default_factory=list)


# --- ENDPOINTS ---

@router.post("/sessions/start", response_model=SessionResponse)
async def start_session(request: SessionStartRequest, tracker: BehaviorTracker = Depends(get_tracker)):
    stats = tracker.start_tracking(request.user_id, request.session_id)
    return SessionResponse(user_id=request.user_id, session_id=stats.session_id, is_tracking=True)


@router.post("/sessions/stop", response_model=SessionResponse)
async def stop_session(request: SessionStopRequest, tracker: BehaviorTracker = Depends(get_tracker)):
    summary = tracker.stop_tracking(request.user_id, persist=request.persist)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No active session for {request.user_id}")
    return SessionResponse(
        user_id=request.user_id,
        session_id=summary["session_id"],
        is_tracking=False,
        summary=summary,
    )


@router.post("/samples", response_model=SampleResponse)
async def record_sample(request: SampleRequest, tracker: BehaviorTracker = Depends(get_tracker)):
    """
    Records one telemetry sample, starting a session for the student if
    none is active, and returns the derived indicators.
    """
    logger.info(f"Sample for user {request.user_id}, session {request.session_id}")

    try:
        tracker.start_tracking(request.user_id, request.session_id)
        sample = tracker.record_sample(request.user_id, request.session_id, request.metrics)
    except Exception as e:
        logger.error(f"Sample processing failed for {request.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to process telemetry sample")

    if sample is None:
        raise HTTPException(status_code=409, detail=f"Tracking stopped for {request.user_id}")

    return SampleResponse(
        user_id=sample.user_id,
        session_id=sample.session_id,
        timestamp=sample.timestamp,
        frustration_level=sample.frustration_level,
        confidence_level=sample.confidence_level,
        engagement_level=sample.engagement_level,
    )


@router.post("/events", response_model=StruggleResponse)
async def record_event(request: RawEventRequest, tracker: BehaviorTracker = Depends(get_tracker)):
    if not tracker.is_tracking(request.user_id):
        raise HTTPException(status_code=404, detail=f"No active session for {request.user_id}")

    detected = tracker.record_raw_event(request.user_id, request.kind, request.payload)
    return StruggleResponse(
        user_id=request.user_id,
        detected=[StruggleEventModel.from_event(e) for e in detected],
    )


@router.post("/{user_id}/tick", response_model=StruggleResponse)
async def tick(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)):
    """Fast-cadence check (idle detection, positional analysis)."""
    if not tracker.is_tracking(user_id):
        raise HTTPException(status_code=404, detail=f"No active session for {user_id}")

    detected = tracker.tick(user_id)
    return StruggleResponse(user_id=user_id, detected=[StruggleEventModel.from_event(e) for e in detected])


@router.post("/{user_id}/help-requests")
async def increment_help_requests(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)):
    if not tracker.is_tracking(user_id):
        raise HTTPException(status_code=404, detail=f"No active session for {user_id}")
    return {"user_id": user_id, "help_requests": tracker.increment_help_requests(user_id)}


@router.post("/{user_id}/questions")
async def question_detected(
    user_id: str,
    request: QuestionDetectedRequest,
    tracker: BehaviorTracker = Depends(get_tracker),
):
    if not tracker.report_question_detected(user_id, request.model_dump(exclude_none=True)):
        raise HTTPException(status_code=404, detail=f"No active session for {user_id}")
    return {"user_id": user_id, "status": "recorded"}


@router.get("/{user_id}/metrics")
async def current_metrics(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)):
    metrics = tracker.get_current_metrics(user_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"No active session for {user_id}")
    return metrics


@router.get("/{user_id}/history")
async def session_history(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)):
    return {"user_id": user_id, "sessions": tracker.get_session_history(user_id)}


@router.get("/health")
async def health_check():
    """Check if telemetry processing services are available"""
    return {
        "status": "healthy",
        "services": {
            "indicator_calculator": "available",
            "struggle_pattern_detector": "available",
            "need_predictor": "available",
        }
    }
