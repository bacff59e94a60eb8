# SessionGate API routers
from sessiongate.api.auth import router as auth_router
from sessiongate.api.health import router as health_router
from sessiongate.api.pages import router as pages_router

__all__ = [
    "auth_router",
    "health_router",
    "pages_router",
]
