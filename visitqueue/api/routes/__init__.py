"""
API routes module.
"""

from visitqueue.api.routes.health import router as health_router
from visitqueue.api.routes.queue import router as queue_router
from visitqueue.api.routes.servers import router as servers_router
from visitqueue.api.routes.stats import router as stats_router

__all__ = ["health_router", "queue_router", "servers_router", "stats_router"]
