import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from icm.core.config import settings
from icm.core.logging import configure_logging
import icm.models  # noqa: F401  # force model registration

from icm.api.v1.executions import router as executions_router
from icm.api.v1.health import router as health_router
from icm.core.directory import TenantDirectory
from icm.core.router import ConnectionRouter
from icm.db.base import Base
from icm.db.session import AsyncSessionLocal, engine
from icm.models.control_execution_log import CONTROL_EXECUTION_LOGS
from icm.services.execution_log_store import ExecutionLogStore
from icm.services.orchestrator import ExecutionOrchestrator
from icm.services.run_ids import RunIdGenerator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Composition root: one router and one orchestrator per process,
    torn down with the app.
    """
    configure_logging(settings.LOG_LEVEL)

    # Alembic owns the schema outside development
    if settings.ENVIRONMENT.strip().lower() == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    run_ids = RunIdGenerator()
    router = ConnectionRouter(TenantDirectory(AsyncSessionLocal))
    orchestrator = ExecutionOrchestrator(
        router,
        ExecutionLogStore(engine, CONTROL_EXECUTION_LOGS, run_ids),
        run_ids=run_ids,
    )
    app.state.router = router
    app.state.orchestrator = orchestrator
    logger.info("ICM engine started (environment=%s)", settings.ENVIRONMENT)
    try:
        yield
    finally:
        await orchestrator.aclose()
        await router.close_all()
        await engine.dispose()
        logger.info("ICM engine stopped")


def create_application() -> FastAPI:
    app = FastAPI(title="ICM Execution Engine", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"status": "ok", "service": "icm-engine"}

    # Routers
    app.include_router(executions_router, prefix="/api/v1")
    app.include_router(health_router, prefix="/api/v1")

    return app


app = create_application()
