"""
Shared FastAPI dependencies.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status

from visitqueue.api.auth import AuthenticatedUser, require_permission
from visitqueue.constants import Permission
from visitqueue.engine.controller import QueueController
from visitqueue.observability.logging import bind_server


def get_controller(request: Request) -> QueueController:
    """Return the controller created at startup."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue service is starting",
        )
    return controller


Controller = Annotated[QueueController, Depends(get_controller)]


async def server_path(server_id: UUID) -> UUID:
    """Path server id, also bound to log records of the request."""
    bind_server(server_id)
    return server_id


ServerId = Annotated[UUID, Depends(server_path)]

# Role-gated callers
Joiner = Annotated[AuthenticatedUser, Depends(require_permission(Permission.JOIN_QUEUE))]
Advancer = Annotated[AuthenticatedUser, Depends(require_permission(Permission.ADVANCE))]
Completer = Annotated[AuthenticatedUser, Depends(require_permission(Permission.COMPLETE))]
Skipper = Annotated[AuthenticatedUser, Depends(require_permission(Permission.SKIP))]
SessionManager = Annotated[
    AuthenticatedUser,
    Depends(require_permission(Permission.TOGGLE_ACCEPTING)),
]
StatsViewer = Annotated[AuthenticatedUser, Depends(require_permission(Permission.VIEW_STATS))]
