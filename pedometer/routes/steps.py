"""Step query endpoints over the recorded step log.

Every endpoint takes an inclusive ``[from_ms, to_ms]`` window in epoch
milliseconds.  ``to_ms`` defaults to now and ``from_ms`` to the retention
horizon, so a bare request returns everything still on record.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter, Query

from ..api_models import SessionListResponse, StepDetailResponse, StepTotalResponse
from ..constants import MAX_TIMESTAMP_MS
from ..domain_models import now_ms
from ._helpers import unwrap_or_http

if TYPE_CHECKING:
    from ..app import RuntimeState


def create_steps_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    def _window(from_ms: int | None, to_ms: int | None) -> tuple[int, int]:
        end = now_ms() if to_ms is None else to_ms
        start = end - state.config.retention.retention_ms if from_ms is None else from_ms
        return start, end

    @router.get("/api/steps/total", response_model=StepTotalResponse)
    async def get_step_total(
        from_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
        to_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
    ) -> StepTotalResponse:
        start, end = _window(from_ms, to_ms)
        steps = unwrap_or_http(await asyncio.to_thread(state.service.query_total, start, end))
        return {"from_ms": start, "to_ms": end, "steps": steps}

    @router.get("/api/steps/detailed", response_model=StepDetailResponse)
    async def get_step_details(
        from_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
        to_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
    ) -> StepDetailResponse:
        start, end = _window(from_ms, to_ms)
        records = unwrap_or_http(
            await asyncio.to_thread(state.service.query_detailed, start, end)
        )
        return {"from_ms": start, "to_ms": end, "records": records}

    @router.get("/api/steps/sessions", response_model=SessionListResponse)
    async def get_step_sessions(
        from_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
        to_ms: int | None = Query(default=None, ge=0, le=MAX_TIMESTAMP_MS),
    ) -> SessionListResponse:
        start, end = _window(from_ms, to_ms)
        sessions = unwrap_or_http(
            await asyncio.to_thread(state.service.query_sessions, start, end)
        )
        return {"from_ms": start, "to_ms": end, "sessions": sessions}

    return router
