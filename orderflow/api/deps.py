"""
FastAPI dependencies.

The caller's identity is established by the managed auth layer in front of
this service and forwarded as headers.
"""

from fastapi import Header, Request

from orderflow.models.base.enums import ActorRole
from orderflow.repositories.bookable_repository import BookableRepository
from orderflow.schemas.transition import Actor
from orderflow.services.lifecycle.factory import LifecycleContainer
from orderflow.services.lifecycle.transition_executor import TransitionExecutor


def get_container(request: Request) -> LifecycleContainer:
    return request.app.state.container


def get_executor(request: Request) -> TransitionExecutor:
    return get_container(request).executor


def get_repository(request: Request) -> BookableRepository:
    return get_container(request).repository


def get_actor(
    x_actor_id: str = Header(..., min_length=1, max_length=64),
    x_actor_role: ActorRole = Header(...),
) -> Actor:
    return Actor(actor_id=x_actor_id, role=x_actor_role)
