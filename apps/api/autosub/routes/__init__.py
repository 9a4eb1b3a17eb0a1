"""Route modules."""

from .billing import router as billing_router
from .credits import router as credits_router
from .jobs import router as jobs_router

__all__ = ["billing_router", "credits_router", "jobs_router"]
