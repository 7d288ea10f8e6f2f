"""
API schemas: request bodies, response models and the RFC 7807 error body.

Every 2xx response carries its payload under ``data``
(:class:`SuccessResponse`); every 4xx/5xx response is a
:class:`ProblemDetail`.
"""

from __future__ import annotations

import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shiftwork.core.orm.tables import JobInstanceTable
from shiftwork.definitions import EDITABLE_FIELDS, NULLABLE_FIELDS
from shiftwork.engine.lifecycle import LifecycleController

T = TypeVar("T")


# ── Envelopes ────────────────────────────────────────────────────────────


class ProblemDetail(BaseModel):
    """RFC 7807 «Problem Details for HTTP APIs»."""

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str = ""
    instance: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


class SuccessResponse(BaseModel, Generic[T]):
    data: T


# ── Definitions ──────────────────────────────────────────────────────────


class DefinitionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    script: str = Field(min_length=1, description="YAML step tree")
    description: str = ""
    suspended: bool = False
    prevent_multi: int = Field(default=1, ge=0, description="Concurrent instances, 0 = unlimited")
    prevent_multi_on_error: bool = False
    notify_cancellation: bool = True
    slack_channel: str = ""
    webhook_url: str | None = None
    api_allowed: bool = False


class DefinitionUpdate(BaseModel):
    """Partial update; only the fields present in the body are applied."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    script: str | None = Field(default=None, min_length=1)
    description: str | None = None
    suspended: bool | None = None
    prevent_multi: int | None = Field(default=None, ge=0)
    prevent_multi_on_error: bool | None = None
    notify_cancellation: bool | None = None
    slack_channel: str | None = None
    webhook_url: str | None = None
    api_allowed: bool | None = None

    @field_validator(*sorted(EDITABLE_FIELDS - NULLABLE_FIELDS))
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        # omitted fields keep their value; an explicit null is not a value
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class DefinitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    version: int
    name: str
    description: str
    script: str
    suspended: bool
    prevent_multi: int
    prevent_multi_on_error: bool
    notify_cancellation: bool
    slack_channel: str
    webhook_url: str | None
    api_allowed: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime


class MemoryExpectancyBody(BaseModel):
    expected_value: int = Field(ge=0, description="KiB; 0 falls back to the default")


# ── Instances ────────────────────────────────────────────────────────────


class InstanceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    context: dict[str, Any] = Field(default_factory=dict)
    version: int | None = Field(default=None, ge=0, description="Script version (default: current)")


class TokenOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    parent_id: int | None
    path: str
    status: str
    message: str
    attempts: int
    context: dict[str, Any]
    updated_at: datetime.datetime


class InstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_definition_id: int
    job_definition_version: int
    state: str
    context: dict[str, Any]
    retrying: bool
    started_at: datetime.datetime | None
    finished_at: datetime.datetime | None
    canceled_at: datetime.datetime | None
    error_at: datetime.datetime | None
    created_at: datetime.datetime
    tokens: list[TokenOut] = Field(default_factory=list)


class LogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    level: str
    message: str
    created_at: datetime.datetime


class ExecutionHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    uuid: str
    token_path: str
    queue: str
    hostname: str | None
    shell: str
    exit_status: int | None
    term_signal: int | None
    output: str
    started_at: datetime.datetime | None
    finished_at: datetime.datetime | None
    mailed_at: datetime.datetime | None


# ── Workers ──────────────────────────────────────────────────────────────


class WorkerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    hostname: str
    worker_id: int
    queue: str
    working: bool
    execution_id: int | None
    suspendable: bool
    suspended: bool
    heartbeat_at: datetime.datetime | None


def instance_out(instance: JobInstanceTable) -> InstanceOut:
    """Serialize *instance* with its derived state and token tree."""
    return InstanceOut(
        id=instance.id,
        job_definition_id=instance.job_definition_id,
        job_definition_version=instance.job_definition_version,
        state=LifecycleController.state(instance).value,
        context=dict(instance.context or {}),
        retrying=instance.retrying,
        started_at=instance.started_at,
        finished_at=instance.finished_at,
        canceled_at=instance.canceled_at,
        error_at=instance.error_at,
        created_at=instance.created_at,
        tokens=[TokenOut.model_validate(token) for token in instance.tokens],
    )
