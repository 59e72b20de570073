"""
Server routes: directory, queue view, calling the next consumer, and
opening or closing admission.
"""

from fastapi import APIRouter, Query

from visitqueue.api.auth import CurrentUser
from visitqueue.api.dependencies import Advancer, Controller, ServerId, SessionManager
from visitqueue.constants import API_V1_PREFIX
from visitqueue.types.api import EntryResponse, ServerListResponse, SetAcceptingRequest
from visitqueue.types.queue import ServerSummary, ServerView

router = APIRouter(prefix=f"{API_V1_PREFIX}/servers", tags=["Servers"])


@router.get(
    "",
    response_model=ServerListResponse,
    summary="List servers",
)
async def list_servers(
    current_user: CurrentUser,
    controller: Controller,
    accepting_only: bool = Query(False, description="Only servers admitting new entries"),
) -> ServerListResponse:
    servers = await controller.list_servers(accepting_only=accepting_only)
    return ServerListResponse(servers=servers)


@router.get(
    "/{server_id}/queue",
    response_model=ServerView,
    summary="Server queue",
    description="Ordered waiting and serving entries with live positions and ETAs.",
)
async def server_queue(
    server_id: ServerId,
    current_user: CurrentUser,
    controller: Controller,
) -> ServerView:
    return await controller.get_server_view(server_id)


@router.post(
    "/{server_id}/advance",
    response_model=EntryResponse,
    summary="Call next",
    description="Move the oldest waiting entry into service.",
)
async def advance(
    server_id: ServerId,
    current_user: Advancer,
    controller: Controller,
) -> EntryResponse:
    """
    Call the next consumer.

    Fails with 409 if the server is already serving someone or nobody is waiting.
    """
    entry = await controller.advance(server_id, actor=current_user.subject)
    return EntryResponse(entry=entry, message=f"Now serving #{entry.sequence_number}")


@router.put(
    "/{server_id}/accepting",
    response_model=ServerSummary,
    summary="Open or close admission",
)
async def set_accepting(
    server_id: ServerId,
    request: SetAcceptingRequest,
    current_user: SessionManager,
    controller: Controller,
) -> ServerSummary:
    return await controller.set_accepting(
        server_id,
        request.is_accepting,
        actor=current_user.subject,
    )
