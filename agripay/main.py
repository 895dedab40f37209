import importlib
import logging
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from sqlalchemy import text

from agripay.config import settings
from agripay.logging_setup import TRACE_ID_CTX, setup_logging
from agripay.services.mpesa_gateway import close_gateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_gateway()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"message": message})


# List of module names to include as routers
MODULES = [
    "payments",
    "admin",
]


for mod in MODULES:
    pkg = importlib.import_module(f"agripay.modules.{mod}.router")
    if hasattr(pkg, "router"):
        app.include_router(pkg.router, prefix=f"/{mod}")


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    from agripay.db.session import engine
    from agripay.redis_client import redis_client

    try:
        await redis_client.ping()
    except Exception:
        logger.warning("readiness: redis unavailable", exc_info=True)
        return Response(status_code=503, content="redis unavailable")
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("readiness: database unavailable", exc_info=True)
        return Response(status_code=503, content="database unavailable")
    return {"status": "ready"}
