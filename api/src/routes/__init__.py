from api.src.routes.health import router as health_router
from api.src.routes.builds import router as builds_router

__all__ = ["health_router", "builds_router"]
