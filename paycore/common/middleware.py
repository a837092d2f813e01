from fastapi import Request
import uuid
import structlog

logger = structlog.get_logger()


async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())

    # Bind context vars for all downstream logs
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        client_ip=request.client.host if request.client else None
    )

    logger.info("Request received")
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    logger.info(f"Request completed - status_code = {response.status_code}")

    return response
