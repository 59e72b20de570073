"""
Queue entry routes: joining, status, and per-entry transitions.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from visitqueue.api.auth import CurrentUser
from visitqueue.api.dependencies import Completer, Controller, Joiner, Skipper
from visitqueue.constants import API_V1_PREFIX, Permission
from visitqueue.types.api import ConsumerStatusResponse, EntryResponse, JoinQueueRequest
from visitqueue.types.queue import AdmitResult, CompleteResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/queue", tags=["Queue"])


@router.post(
    "/entries",
    response_model=AdmitResult,
    status_code=status.HTTP_201_CREATED,
    summary="Join a queue",
    description="Join a server's queue as the authenticated consumer.",
)
async def join_queue(
    request: JoinQueueRequest,
    current_user: Joiner,
    controller: Controller,
) -> AdmitResult:
    """
    Admit the caller to the tail of the server's queue.

    A consumer may hold only one waiting or serving entry at a time.
    """
    return await controller.admit(
        consumer_id=current_user.subject,
        server_id=request.server_id,
        actor=current_user.subject,
    )


@router.get(
    "/me",
    response_model=ConsumerStatusResponse,
    summary="My queue status",
)
async def my_status(
    current_user: CurrentUser,
    controller: Controller,
) -> ConsumerStatusResponse:
    entry = await controller.get_consumer_status(current_user.subject)
    if entry is None:
        return ConsumerStatusResponse(entry=None, message="Not in any queue")
    return ConsumerStatusResponse(entry=entry)


@router.post(
    "/entries/{entry_id}/cancel",
    response_model=EntryResponse,
    summary="Cancel an entry",
    description="Withdraw a waiting or serving entry. Consumers may cancel only their own.",
)
async def cancel_entry(
    entry_id: UUID,
    current_user: CurrentUser,
    controller: Controller,
) -> EntryResponse:
    """
    Cancel an entry.

    Raises:
        HTTPException: 403 if the caller neither owns the entry nor may
            cancel other consumers' entries.
    """
    if not current_user.can(Permission.CANCEL_ANY):
        entry = await controller.get_entry(entry_id)
        if entry.consumer_id != current_user.subject or not current_user.can(
            Permission.CANCEL_OWN
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You can only cancel your own queue entry",
            )

    cancelled = await controller.cancel(entry_id, requested_by=current_user.subject)
    return EntryResponse(entry=cancelled, message="Entry cancelled")


@router.post(
    "/entries/{entry_id}/complete",
    response_model=CompleteResult,
    summary="Complete service",
)
async def complete_entry(
    entry_id: UUID,
    current_user: Completer,
    controller: Controller,
) -> CompleteResult:
    return await controller.complete(entry_id, actor=current_user.subject)


@router.post(
    "/entries/{entry_id}/skip",
    response_model=EntryResponse,
    summary="Skip an entry",
    description="Mark a waiting or serving consumer as not present.",
)
async def skip_entry(
    entry_id: UUID,
    current_user: Skipper,
    controller: Controller,
) -> EntryResponse:
    skipped = await controller.skip(entry_id, actor=current_user.subject)
    return EntryResponse(entry=skipped, message="Entry skipped")
