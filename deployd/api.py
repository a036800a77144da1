"""
FastAPI application. Receives GitHub push webhooks and queues deployments.

POST /{hook}   push event, signed with X-Hub-Signature-256
GET  /health   queue depth, worker and lock counts

The handler only verifies, validates and enqueues; the build itself runs
in the worker pool started by the lifespan. Callers get "OK" or a short
structured error, never build diagnostics.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from loguru import logger

from deployd import __version__
from deployd.api_errors import APIError, api_error_handler, translate_error
from deployd.api_models import HealthResponse
from deployd.config import get_settings
from deployd.errors import DeployError
from deployd.hooks import TaskAdmission, parse_push_event
from deployd.lock_manager import LockManager
from deployd.log import setup_logging
from deployd.notifier import notifier_from_settings
from deployd.runner import WorkerPool, runner_from_settings
from deployd.signature import SIGNATURE_HEADER, verify_signature
from deployd.task_queue import TaskQueue


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)
    if settings.webhook_secret is None:
        logger.error("ADM_WEBHOOK_SECRET is not set; every push will be rejected")

    queue = TaskQueue(settings.queue_size)
    notifier = notifier_from_settings(settings)
    if not notifier.enabled:
        logger.info("No notification destinations configured")
    lock_manager = LockManager(settings.lock_timeout)
    runner = runner_from_settings(settings, lock_manager, notifier)

    app.state.webhook_secret = (
        settings.webhook_secret.get_secret_value()
        if settings.webhook_secret is not None else None)
    app.state.queue = queue
    app.state.admission = TaskAdmission(queue, settings.target_branch)
    app.state.lock_manager = lock_manager
    app.state.pool = WorkerPool(runner, queue, settings.parallel_builds)
    app.state.pool.start()
    try:
        yield
    finally:
        await app.state.pool.stop()
        await notifier.aclose()


app = FastAPI(title="deployd", version=__version__, lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="draining" if app.state.queue.closed else "ok",
        queued=app.state.queue.qsize(),
        workers=len(app.state.pool),
        locks=len(app.state.lock_manager),
    )


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

@app.post("/{hook}")
async def push_hook(hook: str, request: Request) -> PlainTextResponse:
    """Verify, validate and queue a push event."""
    payload = await request.body()
    try:
        verify_signature(app.state.webhook_secret, payload,
                         request.headers.get(SIGNATURE_HEADER))
        event = parse_push_event(payload)
        app.state.admission.admit(event)
    except DeployError as e:
        logger.warning("Rejected webhook on /{}: {}", hook, e)
        raise translate_error(e)
    return PlainTextResponse("OK")
