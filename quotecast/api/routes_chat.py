import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from quotecast.core.logger import get_logger
from quotecast.core.rate_limit import RateLimiter, RateLimitResult
from quotecast.schemas.chat import ErrorResponse
from quotecast.services.container import ServiceContainer
from quotecast.services.sse import KEEP_ALIVE, SSEEvent, encode_sse_event
from quotecast.services.validation import RequestValidationError, parse_chat_request

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = get_logger("quotecast.routes_chat")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

RATE_LIMIT_MESSAGE = "Too many requests. Please wait before trying again."

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def _container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _rate_limited(limiter: RateLimiter, result: RateLimitResult, message: str) -> JSONResponse:
    retry_after = result.retry_after(limiter.now())
    reset_iso = (
        datetime.fromtimestamp(result.reset_at, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(error=message, retry_after=retry_after).wire(),
        headers={
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": reset_iso,
            "Retry-After": str(retry_after),
        },
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).wire())


async def _event_stream(
    queue: "asyncio.Queue[Optional[SSEEvent]]", heartbeat_interval: float
) -> AsyncIterator[str]:
    # one get() outlives each heartbeat so a timeout can never swallow an event
    pending: Optional["asyncio.Task[Optional[SSEEvent]]"] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({pending}, timeout=heartbeat_interval)
            if not done:
                yield KEEP_ALIVE
                continue
            item = pending.result()
            pending = None
            if item is None:
                return
            yield encode_sse_event(item.event, item.data)
    finally:
        if pending is not None:
            pending.cancel()


@router.post("")
async def chat(request: Request):
    container = _container(request)
    client_ip = get_client_ip(request)

    limiter = container.chat_limiter
    limit = limiter.check(client_ip)
    if not limit.success:
        logger.warning("rate limit exceeded for %s", client_ip)
        return _rate_limited(limiter, limit, RATE_LIMIT_MESSAGE)

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Message is required and must be a string")

    try:
        chat_request = parse_chat_request(body, container.settings.validation)
    except RequestValidationError as exc:
        return _error(exc.status_code, exc.message)

    response_id = str(uuid.uuid4())
    logger.info("chat request from %s -> response %s", client_ip, response_id)
    queue = container.generator.start(chat_request, response_id)

    return StreamingResponse(
        _event_stream(queue, container.settings.heartbeat_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/recover")
def recover(request: Request, response_id: Optional[str] = Query(default=None, alias="id")):
    container = _container(request)

    limiter = container.recovery_limiter
    limit = limiter.check(get_client_ip(request))
    if not limit.success:
        return _rate_limited(limiter, limit, "Too many requests")

    if not response_id or not _UUID_PATTERN.match(response_id):
        return _error(400, "Invalid or missing id parameter")

    cached = container.cache.get(response_id)
    if cached is None:
        return _error(404, "Response not found")

    logger.info(
        "recovery for %s: %s events, complete=%s", response_id, len(cached.events), cached.complete
    )
    return cached.model_dump(mode="json")
