import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api.v1.router import api_router
from app.config import settings
from app.database import engine
from app.exceptions import GenerationQueueError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Generation Queue API [%s]", settings.APP_ENV)
    if settings.QUEUE_CLEANUP_INTERVAL_SECONDS > 0:
        from app.workers.cleanup import schedule_cleanup
        try:
            schedule_cleanup()
        except Exception:
            logger.warning("Could not schedule queue cleanup", exc_info=True)
    yield
    await engine.dispose()

app = FastAPI(
    title="Generation Queue API",
    description="Credit ledger and generation queue",
    version="1.0.0",
    docs_url="/docs" if settings.APP_DEBUG else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GenerationQueueError)
async def generation_queue_error_handler(request: Request, exc: GenerationQueueError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.detail or exc.message)
    body = {"ok": False, "code": exc.code, "error": exc.message}
    if settings.APP_DEBUG and exc.detail:
        body["detail"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}

app.include_router(api_router, prefix="/api/v1")
