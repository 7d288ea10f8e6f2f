"""
Instance router — inspect and operate job instances.

GET    /instances/{instance_id}
GET    /instances/{instance_id}/logs
GET    /instances/{instance_id}/executions
POST   /instances/{instance_id}/cancel
POST   /instances/{instance_id}/retry
POST   /instances/{instance_id}/skip
"""

from __future__ import annotations

from fastapi import APIRouter, Path
from sqlalchemy import select

from shiftwork.api.deps import DbSession, Lifecycle
from shiftwork.api.schemas import (
    ExecutionHistoryOut,
    InstanceOut,
    LogOut,
    SuccessResponse,
    instance_out,
)
from shiftwork.core.orm.tables import ExecutionHistoryTable
from shiftwork.engine.journal import instance_logs

router = APIRouter(prefix="/instances")


@router.get("/{instance_id}", response_model=SuccessResponse[InstanceOut])
def get_instance(session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)):
    """Instance state with its token tree, ordered by token id."""
    return SuccessResponse(data=instance_out(lifecycle.get(session, instance_id)))


@router.get("/{instance_id}/logs", response_model=SuccessResponse[list[LogOut]])
def get_instance_logs(session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)):
    instance = lifecycle.get(session, instance_id)
    logs = instance_logs(session, instance.id)
    return SuccessResponse(data=[LogOut.model_validate(log) for log in logs])


@router.get("/{instance_id}/executions", response_model=SuccessResponse[list[ExecutionHistoryOut]])
def get_instance_executions(
    session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)
):
    """Archived executions of the instance, oldest first."""
    instance = lifecycle.get(session, instance_id)
    rows = session.scalars(
        select(ExecutionHistoryTable)
        .where(ExecutionHistoryTable.job_instance_id == instance.id)
        .order_by(ExecutionHistoryTable.id)
    )
    return SuccessResponse(data=[ExecutionHistoryOut.model_validate(row) for row in rows])


@router.post("/{instance_id}/cancel", response_model=SuccessResponse[InstanceOut])
def cancel_instance(session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)):
    instance = lifecycle.cancel(session, lifecycle.get(session, instance_id))
    return SuccessResponse(data=instance_out(instance))


@router.post("/{instance_id}/retry", response_model=SuccessResponse[InstanceOut])
def retry_instance(session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)):
    """Re-run the failed steps of an errored instance; 409 in any other state."""
    instance = lifecycle.retry(session, lifecycle.get(session, instance_id))
    return SuccessResponse(data=instance_out(instance))


@router.post("/{instance_id}/skip", response_model=SuccessResponse[InstanceOut])
def skip_instance(session: DbSession, lifecycle: Lifecycle, instance_id: int = Path(...)):
    instance = lifecycle.skip(session, lifecycle.get(session, instance_id))
    return SuccessResponse(data=instance_out(instance))
