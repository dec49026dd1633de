import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.src.config import Settings, get_settings
from api.src.routes import health_router, builds_router
from engine.src.exceptions import (
    ConcurrencyLimitError,
    ConfigError,
    EngineError,
    NotFoundError,
)
from engine.src.main import EngineRuntime, build_runtime, configure_logging

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ConfigError: 422,
    ConcurrencyLimitError: 409,
}

async def engine_error_handler(request: Request, exc: EngineError):
    status_code = next(
        (code for kind, code in ERROR_STATUS_CODES.items() if isinstance(exc, kind)),
        500,
    )
    if status_code == 500:
        logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )

def create_app(settings: Optional[Settings] = None, runtime: Optional[EngineRuntime] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting Vortexia API")
        app.state.runtime = runtime or build_runtime(settings)
        await app.state.runtime.start()
        yield
        # Shutdown
        logger.info("Shutting down Vortexia API")
        await app.state.runtime.stop()

    app = FastAPI(
        title="Vortexia",
        description="CI/CD build execution engine",
        version="0.1.0",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EngineError, engine_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(builds_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": "Vortexia",
            "version": "0.1.0",
            "docs": "/docs"
        }

    return app

def main():
    """Run the API server with the build engine in-process."""
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)

if __name__ == "__main__":
    main()
