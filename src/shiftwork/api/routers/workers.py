"""
Worker router — list registered workers and gate their claims.

GET    /workers
POST   /workers/{worker_pk}/suspend
POST   /workers/{worker_pk}/resume
"""

from __future__ import annotations

from fastapi import APIRouter, Path, Query

from shiftwork.api.deps import DbSession, Registry
from shiftwork.api.schemas import SuccessResponse, WorkerOut

router = APIRouter(prefix="/workers")


@router.get("", response_model=SuccessResponse[list[WorkerOut]])
def list_workers(
    session: DbSession,
    registry: Registry,
    hostname: str | None = Query(None),
    queue: str | None = Query(None),
):
    workers = registry.list(session, hostname=hostname, queue=queue)
    return SuccessResponse(data=[WorkerOut.model_validate(worker) for worker in workers])


@router.post("/{worker_pk}/suspend", response_model=SuccessResponse[WorkerOut])
def suspend_worker(session: DbSession, registry: Registry, worker_pk: int = Path(...)):
    """Stop a suspendable worker from claiming; 409 if it is not suspendable."""
    worker = registry.suspend(session, registry.get(session, worker_pk))
    return SuccessResponse(data=WorkerOut.model_validate(worker))


@router.post("/{worker_pk}/resume", response_model=SuccessResponse[WorkerOut])
def resume_worker(session: DbSession, registry: Registry, worker_pk: int = Path(...)):
    worker = registry.resume(session, registry.get(session, worker_pk))
    return SuccessResponse(data=WorkerOut.model_validate(worker))
