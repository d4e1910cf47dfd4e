"""Tracking control endpoints: status, start, stop."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter

from ..api_models import TrackingStartResponse, TrackingStatusResponse, TrackingStopResponse
from ..constants import TRACKING_STOPPED
from ._helpers import unwrap_or_http

if TYPE_CHECKING:
    from ..app import RuntimeState


def create_tracking_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/tracking", response_model=TrackingStatusResponse)
    async def get_tracking_status() -> TrackingStatusResponse:
        return state.service.status()

    @router.post("/api/tracking/start", response_model=TrackingStartResponse)
    async def start_tracking() -> TrackingStartResponse:
        session_id = unwrap_or_http(await asyncio.to_thread(state.service.start_tracking))
        return {"tracking": True, "session_id": session_id}

    @router.post("/api/tracking/stop", response_model=TrackingStopResponse)
    async def stop_tracking() -> TrackingStopResponse:
        unwrap_or_http(await asyncio.to_thread(state.service.stop_tracking))
        return {"tracking": False, "status": TRACKING_STOPPED}

    return router
