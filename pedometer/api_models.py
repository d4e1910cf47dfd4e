"""Pydantic response models for the pedometer HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    status: str
    initialized: bool
    sensor_available: bool


class TrackingStatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    tracking: bool
    sensor_available: bool
    session_id: str
    total_steps: int
    last_sensor_value: int
    last_timestamp: int
    pipeline: dict[str, Any]


class TrackingStartResponse(BaseModel):
    tracking: bool
    session_id: str


class TrackingStopResponse(BaseModel):
    tracking: bool
    status: str


class StepTotalResponse(BaseModel):
    from_ms: int
    to_ms: int
    steps: int


class StepRecordResponse(BaseModel):
    timestamp: int
    steps: int
    calculatedSteps: int
    sensorSteps: int
    sessionId: str


class StepDetailResponse(BaseModel):
    from_ms: int
    to_ms: int
    records: list[StepRecordResponse]


class SessionSummaryResponse(BaseModel):
    sessionId: str
    startTime: int
    endTime: int
    totalSteps: int


class SessionListResponse(BaseModel):
    from_ms: int
    to_ms: int
    sessions: list[SessionSummaryResponse]
