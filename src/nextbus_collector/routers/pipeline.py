"""Collection pipeline control and status endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from nextbus_collector.logging import get_logger
from nextbus_collector.services.pipeline.controller import get_controller

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/pipeline", tags=["pipeline"])


class PipelineStatusResponse(BaseModel):
    """Response for pipeline status."""

    running: bool
    agency: str
    started_at: Optional[str] = None
    interval_sec: float
    fetch_count: int = 0
    failure_count: int = 0
    recovering: bool = False
    last_time: Optional[str] = None
    archived_count: int = 0
    csv_rows_written: int = 0
    pending_vehicles: int = 0
    queues: Dict[str, int] = {}
    stages: Dict[str, bool] = {}
    last_shutdown: Optional[Dict[str, Any]] = None


class ShutdownResponse(BaseModel):
    """Response for pipeline stop."""

    clean: bool
    started_at: str
    ended_at: str
    duration_ms: int
    undrained_queues: List[str]
    unacknowledged_stages: List[str]


@router.get("/status", response_model=PipelineStatusResponse, summary="Get pipeline status")
async def get_pipeline_status() -> dict[str, Any]:
    """Counters and queue depths of the running pipeline."""
    return await get_controller().get_status()


@router.post("/start", response_model=PipelineStatusResponse, summary="Start the pipeline")
async def start_pipeline() -> dict[str, Any]:
    """Start fetching and archiving. Returns 409 if already running."""
    controller = get_controller()
    if controller.pipeline is not None:
        raise HTTPException(status_code=409, detail="Pipeline is already running")
    try:
        controller.start()
    except OSError as exc:
        logger.error("Unable to start pipeline", exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail=f"Unable to start pipeline: {type(exc).__name__}: {exc}",
        ) from exc
    return await controller.get_status()


@router.post("/stop", response_model=ShutdownResponse, summary="Stop the pipeline")
async def stop_pipeline() -> dict[str, Any]:
    """Run the ordered shutdown. Returns 409 if not running."""
    controller = get_controller()
    if controller.pipeline is None:
        raise HTTPException(status_code=409, detail="Pipeline is not running")
    report = await controller.shutdown()
    return report.to_dict()
