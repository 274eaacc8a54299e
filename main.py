import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from api.routes import router as api_router
from api.admin_routes import router as admin_router
from db.session import create_state_tables
from services.config import settings
from services.cache_service import build_result_cache
from services.sync_job_manager import job_manager
from services.vector_store import vector_store

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logging.basicConfig(
    format="%(message)s",
    level=getattr(logging, settings.log_level.upper()),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Semantic Catalog Runtime", port=settings.port)
    # Initialize services
    app.state.result_cache = build_result_cache()
    await app.state.result_cache.connect()
    await create_state_tables()
    yield
    # Cleanup
    await job_manager.shutdown()
    await app.state.result_cache.close()
    await vector_store.close()
    logger.info("Shutting down Semantic Catalog Runtime")


app = FastAPI(
    title="Semantic Catalog Runtime",
    description="Semantic catalog sync and retrieval-augmented SQL generation for SQL Server",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")
app.include_router(admin_router, prefix="/api", tags=["Admin"])


@app.get("/")
async def root():
    return {
        "name": "Semantic Catalog Runtime",
        "version": "1.0.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.log_level.lower() == "debug"
    )
