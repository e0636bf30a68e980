"""HTTP API for enqueueing jobs and checking broker health."""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from backq import __version__
from backq.adapters import build_adapter
from backq.config import settings
from backq.log import configure_logging
from backq.messages import AnyMessage
from backq.publishers import QueuePublisher

configure_logging(settings.log_level)

logger = structlog.get_logger()


class EnqueueRequest(BaseModel):
    """Request model for publishing a job."""
    queue: str
    message: AnyMessage
    priority: Optional[int] = None
    readywait: Optional[int] = None
    jobttr: Optional[int] = None


class EnqueueResponse(BaseModel):
    """Response model for a published job."""
    status: str
    queue: str
    job_id: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    broker: str


class QueueResponse(BaseModel):
    """Queue statistics response."""
    queue: str
    workers: Optional[int] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("backq_api_starting", version=__version__, broker=settings.broker)
    yield
    logger.info("backq_api_shutdown")


app = FastAPI(
    title="backq",
    description="Background job queue with process and forwarding workers",
    version=__version__,
    lifespan=lifespan,
)


async def run_bounded(func, *args):
    """Run a blocking broker call in a thread, waiting at most broker_timeout.

    greenstalk opens its socket without a connect timeout, so an
    unresponsive broker address would otherwise hang the request.

    Returns:
        The call's result, or None when it timed out
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=settings.broker_timeout)
    except asyncio.TimeoutError:
        logger.warning("broker_call_timed_out", call=func.__name__, timeout=settings.broker_timeout)
        return None


def _broker_alive() -> bool:
    adapter = build_adapter(settings)
    try:
        return adapter.connect(timeout=0) and bool(adapter.ping(reconnect=False))
    finally:
        adapter.disconnect()


def _publish(request: EnqueueRequest) -> tuple[bool, Optional[str]]:
    publisher = QueuePublisher(queue_name=request.queue)
    try:
        if not publisher.start():
            return False, None
        job_id = publisher.publish(
            request.message,
            {
                "priority": request.priority,
                "readywait": request.readywait,
                "jobttr": request.jobttr,
            },
        )
        return True, job_id
    finally:
        publisher.finish()


def _queue_workers(queue: str) -> tuple[bool, Optional[int]]:
    adapter = build_adapter(settings)
    try:
        if not adapter.connect(timeout=0):
            return False, None
        return True, adapter.has_workers(queue)
    finally:
        adapter.disconnect()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint, pinging the broker."""
    alive = await run_bounded(_broker_alive)

    if not alive:
        logger.warning("health_check_broker_unreachable", broker=settings.broker)
        raise HTTPException(status_code=503, detail="Broker unreachable")

    return HealthResponse(status="healthy", version=__version__, broker=settings.broker)


@app.post("/jobs", response_model=EnqueueResponse, status_code=201)
async def enqueue_job(request: EnqueueRequest):
    """Publish a message on a queue."""
    started, job_id = await run_bounded(_publish, request) or (False, None)

    if not started:
        raise HTTPException(status_code=503, detail="Broker unreachable")
    if job_id is None:
        raise HTTPException(status_code=503, detail="Broker rejected the job")

    return EnqueueResponse(status="queued", queue=request.queue, job_id=job_id)


@app.get("/queues/{queue}", response_model=QueueResponse)
async def queue_stats(queue: str):
    """Report how many workers watch a queue."""
    connected, workers = await run_bounded(_queue_workers, queue) or (False, None)

    if not connected:
        raise HTTPException(status_code=503, detail="Broker unreachable")

    return QueueResponse(queue=queue, workers=workers)


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "service": "backq",
        "version": __version__,
        "broker": settings.broker,
        "endpoints": {
            "health": "/health",
            "enqueue": "POST /jobs",
            "queue_stats": "/queues/{queue}",
            "docs": "/docs",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backq.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
