import json
from typing import Optional

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from checkout.bootstrap import Services, build_services
from checkout.config import Settings, load_settings
from checkout.exceptions import CheckoutError, OrderNotFoundError
from checkout.log import configure_logging
from checkout.notifier import order_status_events, status_message
from checkout.schemas import (
    ChargeResponse,
    OrderStatusRequest,
    OrderStatusResponse,
    PaymentRequest,
    PostbackResponse,
)

logger = structlog.get_logger(component="api")

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("/api/process-payment", response_model=ChargeResponse)
async def process_payment(payment: PaymentRequest, services: Services = Depends(get_services)):
    return await services.initiator.initiate(payment)


@router.post("/api/payment-postback", response_model=PostbackResponse)
async def payment_postback(request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    return await services.ingestor.ingest(body, dict(request.headers))


async def _order_status(order_id: str, services: Services) -> OrderStatusResponse:
    snapshot = await services.store.get_snapshot(order_id)
    if snapshot is None:
        raise OrderNotFoundError(order_id)
    return OrderStatusResponse(
        order_id=snapshot.order_id,
        status=snapshot.status.value,
        transaction_id=snapshot.transaction_id,
        auth_code=snapshot.auth_code,
        response_text=snapshot.response_text,
        message=status_message(snapshot),
    )


@router.post("/api/order-status", response_model=OrderStatusResponse)
async def order_status(body: OrderStatusRequest, services: Services = Depends(get_services)):
    return await _order_status(body.order_id, services)


@router.get("/api/orders/{order_id}", response_model=OrderStatusResponse)
async def get_order(order_id: str, services: Services = Depends(get_services)):
    return await _order_status(order_id, services)


@router.get("/api/orders/{order_id}/events")
async def order_events(order_id: str, services: Services = Depends(get_services)):
    if await services.store.get_snapshot(order_id) is None:
        raise OrderNotFoundError(order_id)

    async def stream():
        events = order_status_events(order_id, services.watcher(), timeout=services.settings.watch_timeout)
        async for event in events:
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services is not None else load_settings())
    configure_logging(settings.log_level, settings.log_format)
    services = services or build_services(settings)

    app = FastAPI(title="Checkout Service")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        await services.startup()

    @app.on_event("shutdown")
    async def shutdown_event():
        await services.shutdown()

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "validation_error",
                "field": field,
                "message": first.get("msg", "Invalid request"),
            },
        )

    return app


if __name__ == "__main__":
    uvicorn.run("checkout.main:create_app", factory=True, host="0.0.0.0", port=8000)
