from fastapi import APIRouter, Request
from sqlalchemy import text

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check(request: Request):
    scheduler = request.app.state.runtime.scheduler
    return {
        "status": "healthy",
        "service": "vortexia-api",
        "active_builds": len(scheduler.active_build_ids()),
    }

@router.get("/health/db")
async def db_health_check(request: Request):
    try:
        async with request.app.state.runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}

@router.get("/health/redis")
async def redis_health_check(request: Request):
    status_cache = request.app.state.runtime.status_cache
    if status_cache is None:
        return {"status": "healthy", "redis": "disabled"}
    try:
        await status_cache.ping()
        return {"status": "healthy", "redis": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "redis": str(e)}
