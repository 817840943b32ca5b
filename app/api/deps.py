from fastapi import Request

from ..services.behavior_engine import BehaviorTracker


def get_tracker(request: Request) -> BehaviorTracker:
    """The tracker owned by the running application (see app.main.create_app)."""
    return request.app.state.tracker
