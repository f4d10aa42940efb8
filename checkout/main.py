import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout.api import booking_router, document_router, job_router, payment_router
from checkout.config import Settings, configure_logging
from checkout.container import build_services
from checkout.errors import (
    AlreadyStagedError,
    FulfillmentError,
    GatewayError,
    NotFoundError,
    SignatureError,
    ValidationError,
)

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    GatewayError: 502,
    SignatureError: 400,
    FulfillmentError: 409,
    AlreadyStagedError: 409,
}


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        if status_code >= 500:
            logging.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    gateway=None,
    transport=None,
    alerts=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    services = build_services(
        settings,
        session_factory=session_factory,
        gateway=gateway,
        transport=transport,
        alerts=alerts,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.swish_test_mode:
            logging.warning("SWISH_TEST_MODE is enabled: callback signatures are NOT verified")

        stop = asyncio.Event()
        worker_task = None
        if settings.run_job_worker:
            worker_task = asyncio.create_task(services.worker.run(stop))
        try:
            yield
        finally:
            stop.set()
            if worker_task is not None:
                await worker_task
            await services.aclose()

    app = FastAPI(title="Studio Clay checkout", lifespan=lifespan)
    app.state.services = services

    for exc_class, status_code in ERROR_STATUS.items():
        app.add_exception_handler(exc_class, _error_handler(status_code))

    app.include_router(payment_router.router)
    app.include_router(booking_router.router)
    app.include_router(job_router.router)
    app.include_router(document_router.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
