"""Shared API dependencies."""

from fastapi import Header


def get_actor_id(x_actor_id: int | None = Header(default=None)) -> int | None:
    """Id of the operator performing the request, recorded in audit columns."""
    return x_actor_id
