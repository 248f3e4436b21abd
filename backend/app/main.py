import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.redis_config import close_redis_connection, redis_health_check
from modules.bom.routes.bom_routes import router as bom_router
from modules.bom.tasks.bom_tasks import start_bom_scheduler, stop_bom_scheduler

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = FastAPI(
    title="BOM Stock Engine API",
    description="""
    Component stock consumption for products sold through a commerce platform.

    ## Features

    * **Order consumption** - Deducts BOM components once per order, with rollback on failure
    * **Reversal** - Restores components when an order is cancelled or refunded
    * **Recovery** - Periodic sweep for deductions interrupted mid-flight
    * **Effective stock** - Buildable units of BOM parents, pushed to the platform
    """,
    version="1.0.0",
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bom_router, prefix="/api/v1")


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup"""
    await start_bom_scheduler()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown"""
    await stop_bom_scheduler()
    close_redis_connection()


@app.get("/")
def read_root():
    return {"message": "BOM stock engine is running"}


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.environment, "redis": await redis_health_check()}
