import logging
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from reconciler.api.router import api_router
from reconciler.config import settings
from reconciler.core.database import init_db

# Libraries whose INFO chatter drowns out the reconcile log
QUIET_LOGGERS = ("httpx", "httpcore", "stripe", "apscheduler", "uvicorn.access")


def setup_logging() -> None:
    """Send application logs to stdout as `time | level | logger | message`."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def describe_outcome(request: Request) -> str:
    """
    Summary of the reconcile outcome a billing endpoint left on `request.state`.

    Empty for requests that didn't run the pipeline.
    """
    outcome = getattr(request.state, "reconcile_outcome", None)
    if outcome is None:
        return ""
    code = outcome.code.value if outcome.code else outcome.stage.value
    parts = [f"outcome={code}"]
    if outcome.deduped and outcome.code:
        parts.append("deduped")
    if outcome.entry_id is not None:
        parts.append(f"entry={outcome.entry_id}")
    return " [" + " ".join(parts) + "]"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    from reconciler.services.scheduler import scheduler

    setup_logging()
    logger.info("Billing reconciler starting up")
    if settings.debug:
        await init_db()
    scheduler.start()
    yield
    scheduler.stop()
    logger.info("Billing reconciler shutting down")


app = FastAPI(
    title="Billing Reconciler API",
    description="Reconciles Stripe billing state into workspace plans and dunning state",
    version="0.1.0",
    lifespan=lifespan,
)

# Stripe redirects and email links must come back as https behind the proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    One log line per request that ran the reconcile pipeline or failed.

    Pipeline requests carry the outcome code, so a 200 webhook that ended in
    WORKSPACE_RESOLUTION_FAILED still shows up as a failure.
    """
    if request.method == "OPTIONS" or request.url.path == "/health":
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000

    summary = describe_outcome(request)
    if not summary and response.status_code < 400:
        return response

    line = f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms){summary}"
    outcome = getattr(request.state, "reconcile_outcome", None)
    if response.status_code >= 500 or (outcome is not None and not outcome.ok):
        logger.warning(line)
    else:
        logger.info(line)
    return response


app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
