"""
API routes - combined router from all domain modules.

The shared rate limiter lives here; every sub-router imports it from this
package.
"""

import os

from fastapi import APIRouter
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
limiter = Limiter(key_func=get_remote_address)
if IS_TEST_ENV:

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = no_op_limit

# Score ingestion comes from the delivery mechanism, reads from clients
INGEST_RATE_LIMIT = os.getenv("INGEST_RATE_LIMIT", "600/minute")
READ_RATE_LIMIT = os.getenv("READ_RATE_LIMIT", "120/minute")

# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from lowman.api.routes.events import router as events_router  # noqa: E402
from lowman.api.routes.leaderboards import router as leaderboards_router  # noqa: E402
from lowman.api.routes.players import router as players_router  # noqa: E402
from lowman.api.routes.outings import router as outings_router  # noqa: E402
from lowman.api.routes.notifications import router as notifications_router  # noqa: E402

router = APIRouter()
router.include_router(events_router)
router.include_router(leaderboards_router)
router.include_router(players_router)
router.include_router(outings_router)
router.include_router(notifications_router)
