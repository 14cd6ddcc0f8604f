"""
Training API endpoints.

Handles training requests, queue status, cancellation and cooldown
administration.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from retrainer.schemas.training_job import (
    AdmissionDecision,
    CancelRequest,
    ClearCooldownsRequest,
    ClearCooldownsResponse,
    EmergencyStopResult,
    PeriodicCycleResult,
    QueueStatus,
    TrainRequest,
    TrainResponse,
)
from retrainer.services.training_service import (
    TrainingService,
    TrainingUnavailable,
    UnknownVariantError,
)

router = APIRouter()


def get_training_service(request: Request) -> TrainingService:
    """Dependency to get the TrainingService created at startup."""
    return request.app.state.training_service


@router.get("/status", response_model=QueueStatus)
async def get_training_status(
    service: TrainingService = Depends(get_training_service),
) -> QueueStatus:
    """Get active, queued and recently retired jobs plus running cooldowns."""
    return service.get_status()


@router.get("/can-train/{subject}/{variant}", response_model=AdmissionDecision)
async def can_train(
    subject: str,
    variant: str,
    service: TrainingService = Depends(get_training_service),
) -> AdmissionDecision:
    """Check whether a training request for the pair would be admitted."""
    try:
        return service.can_train(subject, variant)
    except UnknownVariantError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/emergency-stop", response_model=EmergencyStopResult)
async def emergency_stop(
    service: TrainingService = Depends(get_training_service),
) -> EmergencyStopResult:
    """
    Stop all training.

    Cancels every queued job, flags every active job for cancellation
    and stops the periodic cycle.
    """
    return service.emergency_stop()


@router.post("/clear-cooldowns", response_model=ClearCooldownsResponse)
async def clear_cooldowns(
    request: Optional[ClearCooldownsRequest] = Body(None),
    service: TrainingService = Depends(get_training_service),
) -> ClearCooldownsResponse:
    """Clear the cooldown of one pair, or all cooldowns when no pair is given."""
    return service.clear_cooldowns(request or ClearCooldownsRequest())


@router.post("/periodic/run-now", response_model=PeriodicCycleResult)
async def run_periodic_now(
    service: TrainingService = Depends(get_training_service),
) -> PeriodicCycleResult:
    """Run one periodic training cycle immediately."""
    try:
        return service.run_periodic_now()
    except TrainingUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/jobs/{job_id}")
async def cancel_job(
    job_id: str,
    request: Optional[CancelRequest] = Body(None),
    service: TrainingService = Depends(get_training_service),
) -> dict:
    """
    Cancel a training job.

    Queued jobs are removed immediately. Active jobs are marked and
    their result is discarded when training finishes.
    """
    reason = (request or CancelRequest()).reason
    if not service.cancel_job(job_id, reason):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"message": "Job cancelled", "job_id": job_id, "reason": reason}


def _train(
    service: TrainingService,
    subject: str,
    variant: str | None,
    request: TrainRequest | None,
) -> TrainResponse:
    try:
        response = service.request_training(subject, request or TrainRequest(), variant)
    except TrainingUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except UnknownVariantError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if variant and response.results[0].status == "rejected":
        result = response.results[0]
        raise HTTPException(
            status_code=409,
            detail={
                "reason": result.reason,
                "job_id": result.job_id,
                "cooldown_remaining_ms": result.cooldown_remaining_ms,
            },
        )
    return response


@router.post("/{subject}", response_model=TrainResponse, status_code=202)
async def train_subject(
    subject: str,
    request: Optional[TrainRequest] = Body(None),
    service: TrainingService = Depends(get_training_service),
) -> TrainResponse:
    """Queue training of every enabled variant for a subject."""
    return _train(service, subject, None, request)


@router.post("/{subject}/{variant}", response_model=TrainResponse, status_code=202)
async def train_variant(
    subject: str,
    variant: str,
    request: Optional[TrainRequest] = Body(None),
    service: TrainingService = Depends(get_training_service),
) -> TrainResponse:
    """
    Queue training of one variant for a subject.

    Returns 409 when a job for the pair is already queued or active, or
    its cooldown is running.
    """
    return _train(service, subject, variant, request)
