import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from order_engine.config import get_settings
from order_engine.database import Base, engine
from order_engine.errors import EngineError
from order_engine.payments import PaymentService
from order_engine.routes import get_payment_service, router

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


configure_logging(get_settings().log_level)

app = FastAPI(title="Order Lifecycle & Payment Reconciliation Engine")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    x_signature: str = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    # Signature is computed over the raw bytes, never a re-serialized body.
    payload = await request.body()
    return await run_in_threadpool(service.handle_webhook, x_signature, payload)
