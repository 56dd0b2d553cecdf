"""
PayPal redirect/order-capture backend

Orders are created with intent CAPTURE; the purchaser approves on PayPal and the server
captures. Order status and capture status are two vocabularies: once an order is
COMPLETED the capture status is the authoritative one (a completed order can still hold
a PENDING or DECLINED capture).
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp
import orjson

from config import Config
from models import PaymentStatus
from services.payment_gateway import (
    AccessTokenCache,
    AlreadyCapturedError,
    CreatedIntent,
    InvalidRequestError,
    PaymentDeniedError,
    PaymentExpiredError,
    PaymentGateway,
    PaymentGatewayError,
    PaymentNotFoundError,
    ProviderReport,
    ProviderUnavailableError,
    WebhookEvent,
    WebhookVerificationError,
)
from utils.data_sanitizer import mask_api_key_safe
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

ORDER_EVENTS = {"CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED"}
CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.PENDING",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
    "PAYMENT.CAPTURE.REFUNDED",
    "PAYMENT.CAPTURE.REVERSED",
}

# issue code -> error class for 4xx responses
ISSUE_ERRORS = {
    "ORDER_ALREADY_CAPTURED": AlreadyCapturedError,
    "DUPLICATE_INVOICE_ID": AlreadyCapturedError,
    "ORDER_EXPIRED": PaymentExpiredError,
    "ORDER_NOT_APPROVED": InvalidRequestError,
    "INSTRUMENT_DECLINED": PaymentDeniedError,
    "PAYER_ACTION_REQUIRED": PaymentDeniedError,
    "TRANSACTION_REFUSED": PaymentDeniedError,
    "PAYEE_ACCOUNT_RESTRICTED": PaymentDeniedError,
    "RESOURCE_NOT_FOUND": PaymentNotFoundError,
    "INVALID_RESOURCE_ID": PaymentNotFoundError,
}


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2"""

    provider = "paypal"

    STATUS_MAP = {
        "CREATED": PaymentStatus.CREATED.value,
        "SAVED": PaymentStatus.CREATED.value,
        "PAYER_ACTION_REQUIRED": PaymentStatus.CREATED.value,
        "APPROVED": PaymentStatus.PROCESSING.value,
        "COMPLETED": PaymentStatus.SUCCEEDED.value,
        "VOIDED": PaymentStatus.CANCELED.value,
    }

    CAPTURE_STATUS_MAP = {
        "COMPLETED": PaymentStatus.SUCCEEDED.value,
        "PENDING": PaymentStatus.PROCESSING.value,
        "DECLINED": PaymentStatus.FAILED.value,
        "DENIED": PaymentStatus.FAILED.value,
        "FAILED": PaymentStatus.FAILED.value,
        "REFUNDED": PaymentStatus.REFUNDED.value,
        "PARTIALLY_REFUNDED": PaymentStatus.SUCCEEDED.value,
        "REVERSED": PaymentStatus.REFUNDED.value,
    }

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        webhook_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        token_cache: Optional[AccessTokenCache] = None,
        signature_bypass: Optional[bool] = None,
    ):
        super().__init__(timeout_seconds)
        self.client_id = client_id or Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or Config.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id or Config.PAYPAL_WEBHOOK_ID
        self.base_url = (base_url or Config.PAYPAL_BASE_URL).rstrip("/")
        self.token_cache = token_cache or AccessTokenCache()
        self.signature_bypass = Config.WEBHOOK_SIGNATURE_BYPASS if signature_bypass is None else signature_bypass

        if not self.client_id or not self.client_secret:
            logger.warning("PayPal credentials not configured - gateway calls will be rejected")
        else:
            logger.info(f"PayPal gateway initialized with client: {mask_api_key_safe(self.client_id)}")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        token = self.token_cache.get()
        if token:
            return token

        async with self.token_cache.lock:
            token = self.token_cache.get()
            if token:
                return token
            payload = await self._request(
                "POST",
                f"{self.base_url}/v1/oauth2/token",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials"},
                auth=aiohttp.BasicAuth(self.client_id or "", self.client_secret or ""),
            )
            token = payload.get("access_token")
            if not token:
                raise ProviderUnavailableError("PayPal returned no access token")
            self.token_cache.set(token, payload.get("expires_in", 300))
            logger.debug("🔑 PAYPAL_TOKEN_REFRESHED")
            return token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self.get_access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _error_from_response(self, status: int, payload: Dict[str, Any]) -> PaymentGatewayError:
        details = payload.get("details") or [{}]
        issue = details[0].get("issue") or payload.get("name")
        message = details[0].get("description") or payload.get("message") or f"PayPal rejected the request (HTTP {status})"
        if status == 401:
            # Token revoked or expired early; next call fetches a fresh one
            self.token_cache.clear()
            return ProviderUnavailableError("PayPal authentication expired", provider_code=issue)
        error_class = ISSUE_ERRORS.get(issue)
        if error_class is None:
            error_class = PaymentNotFoundError if status == 404 else InvalidRequestError
        return error_class(message, provider_code=issue)

    # ------------------------------------------------------------------
    # Status mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _first_capture(order: Mapping[str, Any]) -> Dict[str, Any]:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return {}

    def map_capture_status(self, capture_status: Optional[str]) -> str:
        mapped = self.CAPTURE_STATUS_MAP.get(capture_status or "")
        if mapped is None:
            logger.warning(f"⚠️ UNKNOWN_PROVIDER_STATUS: paypal capture status '{capture_status}' mapped to processing")
            return PaymentStatus.PROCESSING.value
        return mapped

    def _capture_failure(self, capture: Mapping[str, Any], fallback_code: str) -> Dict[str, Any]:
        reason = (capture.get("status_details") or {}).get("reason")
        return {
            "failure_reason": f"PayPal capture {str(capture.get('status') or 'failed').lower()}" + (f": {reason}" if reason else ""),
            "error_code": reason or fallback_code,
            "decline_code": reason,
            "failed_at": get_naive_utc_now().isoformat(),
        }

    def report_from_order(self, order: Mapping[str, Any]) -> ProviderReport:
        order_status = order.get("status") or ""
        status = self.map_status(order_status, order)
        capture = self._first_capture(order)
        provider_status = order_status

        if capture and order_status == "COMPLETED":
            provider_status = f"COMPLETED/{capture.get('status')}"
            status = self.map_capture_status(capture.get("status"))

        failure = None
        if status == PaymentStatus.FAILED.value:
            failure = self._capture_failure(capture, "capture_declined")

        payer = order.get("payer") or {}
        source = order.get("payment_source") or {}
        return ProviderReport(
            external_ref=order.get("id"),
            provider_status=provider_status,
            status=status,
            payer_ref=payer.get("payer_id"),
            receipt_ref=capture.get("id"),
            payment_method=next(iter(source.keys()), "paypal"),
            failure=failure,
            metadata={"paypal_capture_id": capture["id"]} if capture.get("id") else {},
        )

    def report_from_capture(self, order_id: str, capture: Mapping[str, Any], event_type: str) -> ProviderReport:
        capture_status = capture.get("status") or event_type.rsplit(".", 1)[-1]
        status = self.map_capture_status(capture_status)
        if event_type == "PAYMENT.CAPTURE.REVERSED":
            status = PaymentStatus.REFUNDED.value
        failure = None
        if status == PaymentStatus.FAILED.value:
            failure = self._capture_failure(capture, event_type.rsplit(".", 1)[-1].lower())
        return ProviderReport(
            external_ref=order_id,
            provider_status=f"CAPTURE/{capture_status}",
            status=status,
            receipt_ref=capture.get("id") if event_type != "PAYMENT.CAPTURE.REFUNDED" else None,
            payment_method="paypal",
            failure=failure,
            metadata={"paypal_capture_id": capture.get("id")} if capture.get("id") else {},
        )

    # ------------------------------------------------------------------
    # Gateway contract
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> CreatedIntent:
        body = {
            "intent": "CAPTURE",
            "application_context": {
                "return_url": f"{Config.FRONTEND_URL}/payment-success",
                "cancel_url": f"{Config.FRONTEND_URL}/checkout",
                "brand_name": Config.PAYPAL_BRAND_NAME,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
            "purchase_units": [{
                "amount": {"currency_code": currency.upper(), "value": f"{Decimal(amount):.2f}"},
                "custom_id": correlation_id,
                "description": description or f"{Config.PAYPAL_BRAND_NAME} Token Purchase",
            }],
        }
        order = await self._request(
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            headers=await self._headers(request_id=correlation_id),
            json_body=body,
        )
        if not order.get("id"):
            raise InvalidRequestError("PayPal returned an order without an id")

        approval_url = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(f"💳 PAYPAL_ORDER_CREATED: {order['id']} amount={amount} {currency.upper()}")
        return CreatedIntent(
            external_ref=order["id"],
            client_handle=approval_url,
            provider_status=order.get("status") or "CREATED",
            raw=order,
        )

    async def fetch_status(self, external_ref: str) -> ProviderReport:
        order = await self._request(
            "GET",
            f"{self.base_url}/v2/checkout/orders/{external_ref}",
            headers=await self._headers(),
        )
        return self.report_from_order(order)

    async def confirm_or_capture(self, external_ref: str) -> ProviderReport:
        order = await self._request(
            "POST",
            f"{self.base_url}/v2/checkout/orders/{external_ref}/capture",
            headers=await self._headers(request_id=f"capture-{external_ref}"),
            json_body={},
        )
        report = self.report_from_order(order)
        logger.info(f"💳 PAYPAL_ORDER_CAPTURED: {external_ref} status={report.provider_status}")
        return report

    async def _verify_signature(self, event: Dict[str, Any], headers: Mapping[str, str]) -> None:
        if self.signature_bypass:
            logger.warning("⚠️ WEBHOOK_SIGNATURE_BYPASS: PayPal signature not verified (development only)")
            return
        if not self.webhook_id:
            raise WebhookVerificationError("PayPal webhook id not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        required = (
            "paypal-auth-algo",
            "paypal-cert-url",
            "paypal-transmission-id",
            "paypal-transmission-sig",
            "paypal-transmission-time",
        )
        missing = [name for name in required if not lowered.get(name)]
        if missing:
            raise WebhookVerificationError(f"Missing PayPal transmission headers: {', '.join(missing)}")

        result = await self._request(
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            headers=await self._headers(),
            json_body={
                "auth_algo": lowered["paypal-auth-algo"],
                "cert_url": lowered["paypal-cert-url"],
                "transmission_id": lowered["paypal-transmission-id"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "transmission_time": lowered["paypal-transmission-time"],
                "webhook_id": self.webhook_id,
                "webhook_event": event,
            },
        )
        if result.get("verification_status") != "SUCCESS":
            raise WebhookVerificationError(
                f"PayPal signature verification status: {result.get('verification_status')}"
            )

    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        try:
            event = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise WebhookVerificationError(f"Unparseable PayPal payload: {e}")
        if not isinstance(event, dict) or not event.get("id") or not event.get("event_type"):
            raise WebhookVerificationError("PayPal payload is not an event")

        await self._verify_signature(event, headers)

        event_type = event["event_type"]
        resource = event.get("resource") or {}
        webhook = WebhookEvent(provider=self.provider, event_id=event["id"], event_type=event_type, external_ref=None)

        if event_type in ORDER_EVENTS:
            webhook.external_ref = resource.get("id")
            webhook.report = self.report_from_order(resource)
        elif event_type in CAPTURE_EVENTS:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            webhook.external_ref = related.get("order_id")
            if webhook.external_ref:
                webhook.report = self.report_from_capture(webhook.external_ref, resource, event_type)
            else:
                logger.warning(f"⚠️ PAYPAL_CAPTURE_WITHOUT_ORDER: {event_type} ({event['id']})")
        else:
            logger.info(f"ℹ️ PAYPAL_WEBHOOK_UNHANDLED: {event_type} ({event['id']})")

        return webhook
