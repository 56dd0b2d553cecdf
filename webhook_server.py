"""
FastAPI server for token purchases and payment-provider webhooks

The caller identity comes from headers set by the upstream auth gateway
(X-User-Id, optional X-User-Email / X-User-Firstname / X-User-Lastname).
Every purchase endpoint answers with {"success", "message", "data"}.
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import orjson
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.notification_service import build_notification_sink
from services.payment_gateway import PaymentGatewayError, PaymentNotFoundError, WebhookVerificationError
from services.payment_state import PaymentStateValidator
from services.reconciliation_engine import (
    PaymentReconciliationEngine,
    PaymentRecordNotFoundError,
    PurchaseRequest,
    PurchaseValidationError,
)
from utils.background_task_runner import cleanup_background_tasks

logger = logging.getLogger(__name__)

PROVIDER_RETRY_MESSAGE = "Payment provider is temporarily unavailable. Please try again in a moment."


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.data = data


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {_camel(str(k)): _camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camelize(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def envelope(success: bool, message: str, data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        content={"success": success, "message": message, "data": _camelize(data)},
        status_code=status_code,
    )


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    try:
        data = orjson.loads(body) if body else {}
    except orjson.JSONDecodeError:
        raise ApiError(400, "Invalid JSON")
    if not isinstance(data, dict):
        raise ApiError(400, "Request body must be a JSON object")
    return data


def _caller(request: Request) -> Dict[str, Optional[str]]:
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise ApiError(401, "Authentication required")
    return {
        "user_id": user_id,
        "email": request.headers.get("x-user-email"),
        "first_name": request.headers.get("x-user-firstname"),
        "last_name": request.headers.get("x-user-lastname"),
    }


def _engine(request: Request) -> PaymentReconciliationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ApiError(503, "Service is starting, please retry")
    return engine


def create_app(engine: Optional[PaymentReconciliationEngine] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the app; tests pass their own engine and leave the scheduler off"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🔧 Worker {os.getpid()} starting...")
        if app.state.engine is None:
            app.state.engine = PaymentReconciliationEngine(notification_sink=build_notification_sink())
        if start_scheduler:
            from jobs.scheduler import get_token_scheduler_instance
            app.state.scheduler = get_token_scheduler_instance(app.state.engine)
            app.state.scheduler.start()
        app.state.started_at = time.time()
        logger.info(f"✅ Worker {os.getpid()} ready")

        yield

        logger.info(f"🔄 Worker {os.getpid()} shutting down...")
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
        await cleanup_background_tasks()

    app = FastAPI(
        title="Token Purchase Server",
        description="Token purchases, payment webhooks and reconciliation",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.scheduler = None
    app.state.started_at = time.time()

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return envelope(False, exc.message, exc.data, status_code=exc.status_code)

    @app.exception_handler(PurchaseValidationError)
    async def purchase_validation_handler(request: Request, exc: PurchaseValidationError):
        return envelope(False, exc.message, status_code=exc.status_code)

    @app.exception_handler(PaymentRecordNotFoundError)
    async def record_not_found_handler(request: Request, exc: PaymentRecordNotFoundError):
        return envelope(False, "Payment not found", status_code=404)

    @app.exception_handler(PaymentGatewayError)
    async def gateway_error_handler(request: Request, exc: PaymentGatewayError):
        if exc.retryable:
            logger.warning(f"⏳ PROVIDER_UNAVAILABLE on {request.url.path}: {exc.message}")
            return envelope(False, PROVIDER_RETRY_MESSAGE, {"retryable": True}, status_code=503)
        if isinstance(exc, PaymentNotFoundError):
            return envelope(False, "Payment not found", status_code=404)
        logger.warning(f"⚠️ PROVIDER_REJECTED on {request.url.path}: {exc.kind} {exc.message}")
        return envelope(False, exc.message, exc.to_dict(), status_code=400)

    @app.get("/health")
    async def health_check():
        scheduler = app.state.scheduler
        return {
            "status": "healthy",
            "service": "token-payments",
            "ready": app.state.engine is not None,
            "uptime_seconds": round(time.time() - app.state.started_at, 2),
            "scheduler": scheduler.get_status() if scheduler is not None else None,
        }

    @app.post("/api/payments/create-payment-intent")
    async def create_payment_intent(request: Request):
        caller = _caller(request)
        body = await _read_json(request)
        if body.get("gameId") is None or body.get("packageIndex") is None or not body.get("location"):
            raise ApiError(400, "gameId, packageIndex and location are required")
        try:
            game_id = int(body["gameId"])
        except (TypeError, ValueError):
            raise ApiError(400, "Invalid gameId")
        package_index = body["packageIndex"]
        if not isinstance(package_index, int) or isinstance(package_index, bool):
            raise ApiError(400, "Invalid token package")

        result = await _engine(request).initiate_purchase(PurchaseRequest(
            user_id=caller["user_id"],
            game_id=game_id,
            package_index=package_index,
            location=str(body["location"]),
            email=caller["email"],
            first_name=caller["first_name"],
            last_name=caller["last_name"],
        ))
        return envelope(
            True,
            "Existing payment intent reused" if result.reused else "Payment intent created",
            {
                "client_handle": result.client_handle,
                "payment_intent_id": result.external_ref,
                "reused": result.reused,
                "time_restriction": result.time_restriction,
                "payment": result.payment,
            },
        )

    @app.post("/api/payments/confirm-payment")
    async def confirm_payment(request: Request):
        caller = _caller(request)
        body = await _read_json(request)
        external_ref = body.get("paymentIntentId")
        if not external_ref:
            raise ApiError(400, "paymentIntentId is required")

        result = await _engine(request).confirm_payment(caller["user_id"], str(external_ref))
        if not result.found:
            raise ApiError(404, "Payment not found")

        payment = result.payment or {}
        data = {
            "status": PaymentStateValidator.display_status(result.status),
            "tokens_added": result.credited or bool(payment.get("tokens_added")),
            "tokens_scheduled_for": result.scheduled_for or payment.get("tokens_scheduled_for"),
            "payment": payment,
        }
        if result.status == "failed":
            return envelope(False, payment.get("failure_reason") or "Payment failed", data, status_code=400)
        if data["tokens_added"]:
            message = "Payment confirmed and tokens added"
        elif data["tokens_scheduled_for"]:
            message = "Payment confirmed; tokens will be added when the location reopens"
        else:
            message = f"Payment status: {data['status']}"
        return envelope(True, message, data)

    @app.get("/api/payments/user-payments")
    async def user_payments(request: Request, limit: int = 50):
        caller = _caller(request)
        payments = await _engine(request).list_user_payments(caller["user_id"], max(1, min(limit, 100)))
        return envelope(True, "Payments retrieved", payments)

    @app.get("/api/payments/by-ref/{external_ref}")
    async def payment_by_ref(external_ref: str, request: Request):
        caller = _caller(request)
        payment = await _engine(request).get_payment_for_user(caller["user_id"], external_ref)
        return envelope(True, "Payment retrieved", payment)

    @app.get("/api/payments/tokens")
    async def token_balances(request: Request):
        caller = _caller(request)
        balances = await _engine(request).get_token_balances(caller["user_id"])
        return envelope(True, "Token balances retrieved", balances)

    async def _provider_webhook(request: Request, provider: str):
        start_time = time.time()
        body = await request.body()
        try:
            result = await _engine(request).handle_webhook(provider, body, request.headers)
        except WebhookVerificationError as e:
            logger.warning(f"🚫 WEBHOOK_REJECTED: {provider}: {e}")
            return JSONResponse(content={"received": False, "error": str(e)}, status_code=400)

        processing_time = (time.time() - start_time) * 1000
        logger.info(
            f"✅ WEBHOOK ACK: {provider} {result.event_type} {result.event_id} "
            f"(duplicate={result.duplicate}, processed={result.processed}) in {processing_time:.1f}ms"
        )
        return JSONResponse(content={"received": True, "duplicate": result.duplicate}, status_code=200)

    @app.post("/api/payments/webhook/stripe")
    async def stripe_webhook(request: Request):
        return await _provider_webhook(request, "stripe")

    @app.post("/api/payments/webhook/paypal")
    async def paypal_webhook(request: Request):
        return await _provider_webhook(request, "paypal")

    return app


app = create_app()
