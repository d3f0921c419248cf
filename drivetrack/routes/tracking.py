"""
Tracking screen API: start/stop, live status, recent tracks and map layers.

Domain errors (Unauthenticated, AlreadyActive, ProviderUnavailable,
FetchFailed) are translated to HTTP responses by the handlers in main.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from drivetrack.models import Order
from drivetrack.routes.deps import get_runtime
from drivetrack.schemas import NotificationOut, TrackingStatus, TrackOut
from drivetrack.services.runtime import TrackerRuntime

router = APIRouter(prefix="/api/v1", tags=["tracking"])


@router.post("/tracking/start", response_model=TrackingStatus)
async def start_tracking(runtime: TrackerRuntime = Depends(get_runtime)):
    await runtime.session.start()
    return runtime.session.status()


@router.post("/tracking/stop", response_model=TrackingStatus)
async def stop_tracking(runtime: TrackerRuntime = Depends(get_runtime)):
    await runtime.session.stop()
    return runtime.session.status()


@router.get("/tracking/status", response_model=TrackingStatus)
async def tracking_status(runtime: TrackerRuntime = Depends(get_runtime)):
    return runtime.session.status()


@router.get("/tracks", response_model=list[TrackOut])
async def recent_tracks(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    order: Order = Query(Order.DESC),
    runtime: TrackerRuntime = Depends(get_runtime),
):
    """Recent tracks, newest first by default."""
    records = await runtime.history.load(
        limit=limit or runtime.settings.history_default_limit,
        order=order,
    )
    return [TrackOut.from_record(r) for r in records]


@router.get("/map")
async def map_layers(runtime: TrackerRuntime = Depends(get_runtime)):
    """Route and point layers (oldest first) plus the live position marker."""
    await runtime.history.load_route(runtime.map_view)
    return runtime.map_view.render()


@router.get("/notifications", response_model=list[NotificationOut])
async def notifications(
    limit: int = Query(20, ge=1, le=200),
    runtime: TrackerRuntime = Depends(get_runtime),
):
    return [n.to_dict() for n in runtime.notifications.recent(limit)]
