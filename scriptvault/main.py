import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from scriptvault.core.config import settings
from scriptvault.db.engine import check_db_connection, init_db
from scriptvault.routers import approvals, history, versions
from scriptvault.services.cache_service import cache_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        if settings.DB_AUTO_INIT_ON_STARTUP:
            logger.info("Initializing database...")
            await init_db()
            logger.info("Database initialized successfully.")
        else:
            await check_db_connection()
            logger.info("Database connection verified.")
    except Exception:
        logger.exception("Startup failure")
        raise
    yield
    logger.info("Shutting down...")
    await cache_service.close()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    if process_time > 0.5:
        logger.warning("Slow Request: %s %s took %.4fs", request.method, request.url.path, process_time)

    return response


app.include_router(approvals.router, prefix=settings.API_V1_STR)
app.include_router(history.router, prefix=settings.API_V1_STR)
app.include_router(versions.router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    return {"status": "ok", "project": settings.PROJECT_NAME, "environment": settings.ENVIRONMENT}
