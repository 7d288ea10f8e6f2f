"""
Definition router — CRUD for job definitions and API triggers.

GET    /definitions
GET    /definitions/{definition_id}
POST   /definitions
PUT    /definitions/{definition_id}
DELETE /definitions/{definition_id}
PUT    /definitions/{definition_id}/memory_expectancy
POST   /definitions/{definition_id}/instances
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Query, Response, status

from shiftwork.api.deps import DbSession, Definitions, Lifecycle
from shiftwork.api.schemas import (
    DefinitionCreate,
    DefinitionOut,
    DefinitionUpdate,
    InstanceCreate,
    InstanceOut,
    MemoryExpectancyBody,
    SuccessResponse,
    instance_out,
)

router = APIRouter(prefix="/definitions")


@router.get("", response_model=SuccessResponse[list[DefinitionOut]])
def list_definitions(
    session: DbSession,
    definitions: Definitions,
    name: str | None = Query(None, description="Substring of the definition name"),
):
    items = definitions.list(session, name=name)
    return SuccessResponse(data=[DefinitionOut.model_validate(item) for item in items])


@router.get("/{definition_id}", response_model=SuccessResponse[DefinitionOut])
def get_definition(session: DbSession, definitions: Definitions, definition_id: int = Path(...)):
    return SuccessResponse(
        data=DefinitionOut.model_validate(definitions.get(session, definition_id))
    )


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessResponse[DefinitionOut],
)
def create_definition(body: DefinitionCreate, session: DbSession, definitions: Definitions):
    """Create a definition; the script is compiled first and rejected with 422 if invalid."""
    fields = body.model_dump(exclude={"name", "script"})
    definition = definitions.create(session, name=body.name, script=body.script, **fields)
    return SuccessResponse(data=DefinitionOut.model_validate(definition))


@router.put("/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
def update_definition(
    body: DefinitionUpdate,
    session: DbSession,
    definitions: Definitions,
    definition_id: int = Path(...),
):
    definitions.update(session, definition_id, body.model_dump(exclude_unset=True))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_definition(session: DbSession, definitions: Definitions, definition_id: int = Path(...)):
    """Delete a definition; 409 while one of its instances is active."""
    definitions.delete(session, definition_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{definition_id}/memory_expectancy", status_code=status.HTTP_204_NO_CONTENT)
def set_memory_expectancy(
    body: MemoryExpectancyBody,
    session: DbSession,
    definitions: Definitions,
    definition_id: int = Path(...),
):
    definitions.set_memory_expectancy(session, definition_id, body.expected_value)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{definition_id}/instances",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[InstanceOut],
)
def trigger_instance(
    session: DbSession,
    definitions: Definitions,
    lifecycle: Lifecycle,
    body: InstanceCreate | None = None,
    definition_id: int = Path(...),
):
    """Trigger an instance of a definition that allows API triggers.

    Raises:
        403: ``api_allowed`` is off for the definition.
        404: Unknown definition or script version.
    """
    definition = definitions.get(session, definition_id)
    if not definition.api_allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"job_definition {definition_id} does not allow API triggers",
        )
    body = body or InstanceCreate()
    instance = lifecycle.trigger(
        session, definition.id, version=body.version, context=body.context
    )
    return SuccessResponse(data=instance_out(instance))
