"""
Daily statistics route.
"""

from fastapi import APIRouter

from visitqueue.api.dependencies import Controller, StatsViewer
from visitqueue.constants import API_V1_PREFIX
from visitqueue.types.queue import DailyStats

router = APIRouter(prefix=f"{API_V1_PREFIX}/stats", tags=["Stats"])


@router.get(
    "/today",
    response_model=DailyStats,
    summary="Today's statistics",
    description="Counts by status, per-server totals and the latest audit records.",
)
async def today(
    current_user: StatsViewer,
    controller: Controller,
) -> DailyStats:
    return await controller.daily_stats()
