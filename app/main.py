from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import health, recovery
from .config import settings
from .core.recovery.service import get_recovery_service
from .logging_config import setup_logging
from .middleware import RequestLoggingMiddleware


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    service = get_recovery_service()
    await service.start()
    try:
        yield
    finally:
        await service.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Error Recovery API",
    description="Automated error recovery orchestration",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(recovery.router)


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "Error Recovery API",
        "version": "0.1.0",
        "description": "Automated error recovery orchestration",
        "docs": "/docs",
        "health": "/healthz"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
