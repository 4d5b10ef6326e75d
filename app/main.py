import time
import asyncio
import logging
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.logging import setup_logging, request_id_ctx
from app.core.errors import SchedulingError
from app.api.router import api_router
from app.core.db import init_models
from app.modules.events.outbox import run_outbox_relay
from app.modules.scheduler.worker import SchedulerWorker


setup_logging()
app = FastAPI(title=settings.APP_NAME)
logger = logging.getLogger(__name__)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", "-")
    token = request_id_ctx.set(rid)
    try:
        return await call_next(request)
    finally:
        request_id_ctx.reset(token)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000
    logger.info("Request: %s %s - Response: %s - Time: %.2fms", request.method, request.url.path, response.status_code, process_time)
    return response

@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical("Unhandled exception for request %s %s", request.method, request.url.path, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"code": "internal_error", "message": "An internal server error occurred.", "details": {}, "retryable": False},
    )


@app.on_event("startup")
async def on_startup():
    await init_models()
    app.state.outbox_task = asyncio.create_task(run_outbox_relay())
    app.state.scheduler = SchedulerWorker()
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler.start()

@app.on_event("shutdown")
async def on_shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        await scheduler.stop()
    task = getattr(app.state, "outbox_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app.include_router(api_router, prefix=settings.API_PREFIX)
