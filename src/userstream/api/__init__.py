"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /users - User record reads, writes and the SSE page stream
- /metrics - Prometheus metrics
- /healthz, /readyz - Health checks
"""
from .healthz import router as healthz_router
from .metrics import router as metrics_router
from .users import router as users_router

__all__ = ["healthz_router", "metrics_router", "users_router"]
