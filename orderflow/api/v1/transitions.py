"""
Lifecycle transition routes
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from orderflow.api.deps import get_actor, get_executor, get_repository
from orderflow.core.exceptions import EntityNotFoundError
from orderflow.core.logging import actor_id as actor_id_var
from orderflow.models.base.enums import EntityKind
from orderflow.repositories.bookable_repository import BookableRepository
from orderflow.schemas.transition import Actor, EntityRef, EntitySnapshot, TransitionBody
from orderflow.services.base.service_result import ErrorCode, ServiceResult
from orderflow.services.lifecycle.transition_executor import TransitionExecutor

router = APIRouter(tags=["Lifecycle Transitions"])

STATUS_BY_ERROR_CODE = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_PERMISSIONS: 403,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.PAYMENT_FAILED: 402,
    ErrorCode.INTERNAL_ERROR: 500,
}


def result_response(result: ServiceResult) -> JSONResponse:
    if result.is_success:
        status_code = 200
    else:
        status_code = STATUS_BY_ERROR_CODE.get(result.error.code, 500)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))


@router.get("/review-queue", response_model=List[EntitySnapshot])
def list_review_queue(
    kind: Optional[EntityKind] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    repository: BookableRepository = Depends(get_repository),
):
    """Entities whose payment side effect failed and await an operator."""
    return repository.list_flagged(kind.value if kind else None, limit=limit)


@router.post("/{kind}/{entity_id}/transitions")
def execute_transition(
    kind: EntityKind,
    entity_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_actor),
    executor: TransitionExecutor = Depends(get_executor),
):
    token = actor_id_var.set(actor.actor_id)
    try:
        result = executor.execute(
            EntityRef(kind=kind, entity_id=entity_id),
            body.action,
            actor,
            reason=body.reason,
            params=body.params,
        )
    finally:
        actor_id_var.reset(token)
    return result_response(result)


@router.get("/{kind}/{entity_id}", response_model=EntitySnapshot)
def get_entity(
    kind: EntityKind,
    entity_id: str,
    repository: BookableRepository = Depends(get_repository),
):
    entity = repository.get(kind.value, entity_id)
    if entity is None:
        raise EntityNotFoundError(kind.value, entity_id)
    return entity
