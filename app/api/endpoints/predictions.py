"""
FastAPI endpoints for help predictions and student profiles.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta
import logging

from ..deps import get_tracker
from ...services.behavior_engine import BehaviorTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/predictions", tags=["predictions"])


class PredictionResponse(BaseModel):
    prediction_id: str
    user_id: str
    needs_help: bool
    confidence: float
    suggested_action: str
    time_until_intervention: float
    reasoning: List[str]
    help_probability: float
    indicators: Dict[str, float]
    trends: Dict[str, float]
    created_at: datetime
    can_offer_help: bool = Field(..., description="False while the proactive-help cooldown is running")
    last_proactive_help: Optional[datetime] = None


class ThresholdUpdateRequest(BaseModel):
    frustration_threshold: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    help_offer_timing: Optional[float] = Field(None, gt=0, allow_inf_nan=False, description="Seconds before offering help")
    break_suggestion_timing: Optional[float] = Field(None, gt=0, allow_inf_nan=False, description="Seconds before suggesting a break")
    encouragement_frequency: Optional[float] = Field(None, gt=0, allow_inf_nan=False)


def cooldown_elapsed(last_help: Optional[datetime], now: datetime, cooldown_seconds: float) -> bool:
    if last_help is None:
        return True
    return now - last_help >= timedelta(seconds=cooldown_seconds)


@router.get("/{user_id}", response_model=PredictionResponse)
async def get_prediction(user_id: str, request: Request, tracker: BehaviorTracker = Depends(get_tracker)):
    """
    Runs the need-predictor over the student's recent samples.

    Does not dispatch; the caller decides whether to act, guided by
    `can_offer_help`.
    """
    prediction = tracker.predict(user_id)
    last_help = tracker.dispatcher.last_proactive_help(user_id)
    cooldown = request.app.state.intervention_cooldown_seconds

    return PredictionResponse(
        **prediction.to_dict(),
        can_offer_help=cooldown_elapsed(last_help, tracker.now(), cooldown),
        last_proactive_help=last_help,
    )


@router.get("/{user_id}/interventions")
async def get_interventions(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)):
    events = tracker.dispatcher.recent_events(user_id)
    return {"user_id": user_id, "interventions": [event.to_dict() for event in events]}


@router.get("/{user_id}/profile")
async def get_profile(user_id: str, tracker: BehaviorTracker = Depends(get_tracker)) -> Dict[str, Any]:
    return tracker.profiles.get(user_id).to_dict()


@router.put("/{user_id}/profile/thresholds")
async def update_thresholds(
    user_id: str,
    request: ThresholdUpdateRequest,
    tracker: BehaviorTracker = Depends(get_tracker),
) -> Dict[str, Any]:
    changes = request.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No threshold values supplied")

    try:
        profile = tracker.profiles.update_thresholds(user_id, **changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info(f"Thresholds updated for {user_id}: {changes}")
    return profile.to_dict()
