from __future__ import annotations
import uuid
from dataclasses import asdict
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DATABASE_URL, EVENTLOG_BACKEND, REDIS_MAX_CONN, REDIS_URL
from .errors import (
    AuthorizationError,
    DomainError,
    ErrorCode,
    GatewayError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from .fulfillment import FulfillmentOrchestrator
from .gateway import MockPay, PaymentGateway, PaymentStatus, new_gateway
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit
from .logs import configure_logging
from .model.db import Base
from .model.eventlog import new_store
from .model.eventlog._sql import create_schema as create_eventlog_schema
from .reconciler import WebhookReconciler
from .schemas import (
    CheckoutRequest,
    ConfirmRequest,
    DiscountValidateRequest,
    MockEmitRequest,
    PricingRequest,
    RetryRequest,
    order_to_dict,
)

logger = structlog.get_logger(__name__)


def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)


def create_app(
    database_url: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    eventlog_backend: Optional[str] = None,
    resume_on_startup: bool = True,
) -> FastAPI:
    configure_logging()

    engine, SessionAsync, gated = make_async_engine(
        database_url or DATABASE_URL
    )
    gateway = gateway or new_gateway()
    eventlog_backend = eventlog_backend or EVENTLOG_BACKEND

    app = FastAPI(
        title="Klubtix",
        default_response_class=ORJSONResponse,
    )
    app.state.engine = engine
    app.state.gateway = gateway
    app.state.http = None
    app.state.redis = None

    # ---
    # dependencies
    # ---
    async def get_db() -> AsyncSession:
        async with SessionAsync() as session:
            yield session

    def fulfillment(
        db: AsyncSession = Depends(get_db),
    ) -> FulfillmentOrchestrator:
        return FulfillmentOrchestrator(db, gated, gateway)

    async def eventlog():
        if eventlog_backend == "redis":
            yield new_store(backend="redis", r=app.state.redis)
        else:
            async with SessionAsync() as session:
                yield new_store(backend="sql", db=session, gated=gated)

    def buyer(x_buyer_id: Optional[str] = Header(default=None)) -> str:
        if not x_buyer_id:
            raise AuthorizationError("Missing buyer identity",
                                     ErrorCode.UNAUTHENTICATED)
        return x_buyer_id

    # ---
    # request context + errors
    # ---
    @app.middleware("http")
    async def _bind_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.trace_id = trace_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id, path=request.url.path
        )
        response = await call_next(request)
        response.headers["x-request-id"] = trace_id
        return response

    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        body = exc.envelope()
        if isinstance(exc, InternalError):
            body["error"]["trace_id"] = _trace_id(request)
            logger.error("internal_error", code=exc.code.value,
                         exc_info=exc)
        elif isinstance(exc, GatewayError):
            logger.warning("payment_failed", transient=exc.transient,
                           **exc.audit())
        else:
            logger.info("request_rejected", code=exc.code.value,
                        status_code=exc.status_code, message=exc.message)
        return ORJSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())[1:])
            parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
        err = ValidationError("; ".join(parts) or "Invalid request")
        return ORJSONResponse(err.envelope(), status_code=err.status_code)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.error("unhandled_error", exc_info=exc)
        err = InternalError()
        body = err.envelope()
        body["error"]["trace_id"] = _trace_id(request)
        return ORJSONResponse(body, status_code=err.status_code)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        logger.info(
            "startup",
            gateway=gateway.name,
            eventlog=eventlog_backend,
            database=engine.url.render_as_string(hide_password=True),
        )

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if eventlog_backend == "sql":
                await create_eventlog_schema(conn)

    @app.on_event("startup")
    async def _http_client_start():
        if app.state.http is not None:
            return
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        if eventlog_backend == "redis":
            app.state.redis = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                max_connections=REDIS_MAX_CONN,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _resume_issuance():
        # paid orders left short of tickets by a crash
        if resume_on_startup:
            async with SessionAsync() as session:
                await FulfillmentOrchestrator(
                    session, gated, gateway
                ).resume_all()

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = app.state.http
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = app.state.redis
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _engine_stop():
        await gateway.aclose()
        await engine.dispose()

    # ----------------------------
    # API: pricing
    # ----------------------------
    @app.post("/api/pricing/calculate")
    async def calculate_price(
        payload: PricingRequest,
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        pricing = await f.quote(
            [s.to_selection() for s in payload.selections],
            payload.event_id, payload.discount_code, payload.currency,
        )
        return pricing.as_dict()

    @app.post("/api/discount-codes/validate")
    async def validate_discount_code(
        payload: DiscountValidateRequest,
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        result = await f.validate_discount_code(
            payload.event_id, payload.code, payload.tier_ids,
            payload.subtotal_cents,
        )
        return asdict(result)

    # ----------------------------
    # API: checkout
    # ----------------------------
    @app.post("/api/checkout")
    async def create_checkout(
        payload: CheckoutRequest,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        async with timeit("api.checkout"):
            checkout = await f.create_checkout(
                buyer_id,
                payload.event_id,
                [s.to_selection() for s in payload.selections],
                buyer_email=payload.buyer_email,
                buyer_name=payload.buyer_name,
                discount_code=payload.discount_code,
                currency=payload.currency,
            )
        return {
            "order_id": checkout.order.id,
            "status": checkout.order.status,
            "payment_ref": checkout.intent.payment_ref,
            "client_secret": checkout.intent.client_secret,
            "redirect_url": checkout.intent.redirect_url,
            "pricing": checkout.pricing.as_dict(),
        }

    @app.post("/api/checkout/confirm")
    async def confirm_payment(
        payload: ConfirmRequest,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        async with timeit("api.confirm"):
            result = await f.confirm_payment(buyer_id, payload.order_id)
        return order_to_dict(result.order, tickets=result.tickets)

    @app.post("/api/checkout/retry")
    async def retry_payment(
        payload: RetryRequest,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        async with timeit("api.retry"):
            result = await f.retry_payment(
                buyer_id, payload.order_id, payload.payment_method
            )
        return order_to_dict(result.order, tickets=result.tickets)

    # ----------------------------
    # API: orders (polled by the success page)
    # ----------------------------
    @app.get("/api/checkout/status")
    async def order_status(
        order_id: str,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        view = await f.order_status(buyer_id, order_id)
        return order_to_dict(view.order, view.items, view.tickets)

    @app.get("/api/orders")
    async def list_orders(
        limit: int = 100,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        orders = await f.list_orders(buyer_id, limit)
        return {"orders": [order_to_dict(o) for o in orders]}

    @app.post("/api/orders/{order_id}/resume")
    async def resume_issuance(
        order_id: str,
        buyer_id: str = Depends(buyer),
        f: FulfillmentOrchestrator = Depends(fulfillment),
    ):
        result = await f.resume_issuance(buyer_id, order_id)
        return order_to_dict(result.order, tickets=result.tickets)

    # ----------------------------
    # Webhook endpoint (shared for Mock/Stripe)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        f: FulfillmentOrchestrator = Depends(fulfillment),
        events=Depends(eventlog),
    ):
        payload = await request.body()
        async with timeit("api.webhook"):
            return await WebhookReconciler(gateway, events, f).handle(
                payload, dict(request.headers)
            )

    # ----------------------------
    # MockPay: play the buyer, then deliver the signed webhook
    # ----------------------------
    @app.post("/mockpay/{payment_id}/emit")
    async def mockpay_emit(payment_id: str, payload: MockEmitRequest):
        if not isinstance(gateway, MockPay):
            raise NotFoundError("MockPay is not enabled")
        payment = await gateway.simulate(
            payment_id, payload.outcome, payload.payment_method
        )
        if payment.status is PaymentStatus.SUCCEEDED:
            kind = "succeeded"
        elif payment.status is PaymentStatus.CANCELED:
            kind = "canceled"
        elif payment.error_code:
            kind = "failed"
        else:
            # e.g. requires_action: nothing to report yet
            kind = None

        webhook_status = None
        if kind is not None:
            try:
                webhook_status = await gateway.emit(
                    app.state.http, payment_id, kind
                )
            except httpx.HTTPError as e:
                # the buyer can still confirm synchronously
                logger.warning("mockpay_webhook_failed",
                               payment_ref=payment_id, error=str(e))
        return {
            "payment_id": payment_id,
            "payment_status": payment.status.value,
            "webhook_status": webhook_status,
        }

    # ----------------------------
    # Timings
    # ----------------------------
    @app.get("/api/timings")
    async def timings():
        return snapshot()

    return app


app = create_app()
