from dotenv import load_dotenv
load_dotenv()

from paycore.common.logger import configure_logging
configure_logging()

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_501_NOT_IMPLEMENTED,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from paycore.api import entitlements, payment_methods, payments, subscriptions, webhooks
from paycore.common.exception import (
    CapabilityUnsupported,
    GatewayNotConfigured,
    GatewayRejected,
    GatewayUnavailable,
    IntegrityException,
    InvalidPaymentState,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.messaging import rabbitmq_manager
from paycore.common.middleware import log_requests
from paycore.config.config import settings
from paycore.data import dbinit

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application is starting up...")
    await dbinit.init_db()
    if rabbitmq_manager is not None:
        await rabbitmq_manager.connect()
    try:
        yield
    finally:
        if rabbitmq_manager is not None:
            await rabbitmq_manager.disconnect()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update this for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(log_requests)

app.include_router(
    payments.router,
    prefix=f"{settings.API_V1_PREFIX}/payments",
    tags=["payments"]
)

app.include_router(
    subscriptions.router,
    prefix=f"{settings.API_V1_PREFIX}/subscriptions",
    tags=["subscriptions"]
)

app.include_router(
    payment_methods.router,
    prefix=f"{settings.API_V1_PREFIX}/payment-methods",
    tags=["payment-methods"]
)

app.include_router(
    entitlements.router,
    prefix=f"{settings.API_V1_PREFIX}/entitlements",
    tags=["entitlements"]
)

app.include_router(
    webhooks.router,
    prefix=f"{settings.API_V1_PREFIX}/webhooks",
    tags=["webhooks"]
)


def _error(request: Request, status_code: int, error: str, message: str, **extra):
    return JSONResponse(
        status_code=status_code,
        content={
            "status_code": status_code,
            "error": error,
            "message": message,
            "path": request.url.path,
            **extra,
        },
    )


@app.exception_handler(GatewayUnavailable)
async def gateway_unavailable_handler(request: Request, exc: GatewayUnavailable):
    logger.warning("Gateway unavailable", gateway=exc.gateway, reason=exc.reason)
    return _error(request, HTTP_503_SERVICE_UNAVAILABLE, "GatewayUnavailable", exc.reason, gateway=exc.gateway)


@app.exception_handler(GatewayRejected)
async def gateway_rejected_handler(request: Request, exc: GatewayRejected):
    return _error(request, HTTP_402_PAYMENT_REQUIRED, "GatewayRejected", exc.reason, gateway=exc.gateway, raw=exc.raw)


@app.exception_handler(CapabilityUnsupported)
async def capability_unsupported_handler(request: Request, exc: CapabilityUnsupported):
    return _error(request, HTTP_501_NOT_IMPLEMENTED, "CapabilityUnsupported", exc.reason,
                  gateway=exc.gateway, capability=exc.capability)


@app.exception_handler(GatewayNotConfigured)
async def gateway_not_configured_handler(request: Request, exc: GatewayNotConfigured):
    return _error(request, HTTP_501_NOT_IMPLEMENTED, "GatewayNotConfigured", exc.reason, gateway=exc.gateway)


@app.exception_handler(OwnershipMismatch)
async def ownership_mismatch_handler(request: Request, exc: OwnershipMismatch):
    return _error(request, HTTP_403_FORBIDDEN, "OwnershipMismatch", exc.reason, resource=exc.resource)


@app.exception_handler(RecordNotFoundException)
async def record_not_found_handler(request: Request, exc: RecordNotFoundException):
    return _error(request, HTTP_404_NOT_FOUND, "NotFound", exc.message, **exc.context)


@app.exception_handler(InvalidPaymentState)
async def invalid_payment_state_handler(request: Request, exc: InvalidPaymentState):
    return _error(request, HTTP_409_CONFLICT, "InvalidPaymentState", exc.reason)


@app.exception_handler(IntegrityException)
async def integrity_handler(request: Request, exc: IntegrityException):
    return _error(request, HTTP_409_CONFLICT, "Conflict", exc.message)


@app.get("/health")
def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", reload=True)
