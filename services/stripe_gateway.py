"""
Stripe card-intent backend

PaymentIntents are created and read over Stripe's form-encoded REST API with aiohttp.
The stripe SDK is used only for webhook signature verification.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

import orjson
import stripe

from config import Config
from models import PaymentStatus
from services.payment_gateway import (
    AlreadyCapturedError,
    CreatedIntent,
    InvalidRequestError,
    PaymentDeniedError,
    PaymentExpiredError,
    PaymentGateway,
    PaymentGatewayError,
    PaymentNotFoundError,
    ProviderReport,
    WebhookEvent,
    WebhookVerificationError,
)
from utils.data_sanitizer import mask_api_key_safe
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

# Events that carry a PaymentIntent whose status is reconciled directly
INTENT_STATUS_EVENTS = {
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.processing",
    "payment_intent.amount_capturable_updated",
}


def to_minor_units(amount: Decimal) -> int:
    """Dollars -> cents, rounding half up"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _flatten_form(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Nested dict -> Stripe bracket notation (metadata[game_id]=...)"""
    flat = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                flat[f"{name}[{index}]"] = str(item)
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents"""

    provider = "stripe"

    STATUS_MAP = {
        "requires_payment_method": PaymentStatus.CREATED.value,
        "requires_confirmation": PaymentStatus.CREATED.value,
        "requires_action": PaymentStatus.CREATED.value,
        "requires_capture": PaymentStatus.PROCESSING.value,
        "processing": PaymentStatus.PROCESSING.value,
        "succeeded": PaymentStatus.SUCCEEDED.value,
        "canceled": PaymentStatus.CANCELED.value,
    }

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        signature_bypass: Optional[bool] = None,
    ):
        super().__init__(timeout_seconds)
        self.secret_key = secret_key or Config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET
        self.api_base = (api_base or Config.STRIPE_API_BASE).rstrip("/")
        self.signature_bypass = Config.WEBHOOK_SIGNATURE_BYPASS if signature_bypass is None else signature_bypass

        if not self.secret_key:
            logger.warning("Stripe secret key not configured - gateway calls will be rejected")
        else:
            logger.info(f"Stripe gateway initialized with key: {mask_api_key_safe(self.secret_key)}")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def map_status(self, provider_status: Optional[str], resource: Optional[Mapping[str, Any]] = None) -> str:
        # A declined attempt drops the intent back to requires_payment_method with an error attached
        if provider_status == "requires_payment_method" and resource and resource.get("last_payment_error"):
            return PaymentStatus.FAILED.value
        return super().map_status(provider_status, resource)

    def _error_from_response(self, status: int, payload: Dict[str, Any]) -> PaymentGatewayError:
        error = payload.get("error") or {}
        code = error.get("code")
        message = error.get("message") or f"Stripe rejected the request (HTTP {status})"
        if status == 404 or code == "resource_missing":
            return PaymentNotFoundError(message, provider_code=code)
        if code == "payment_intent_unexpected_state":
            intent_status = (error.get("payment_intent") or {}).get("status")
            if intent_status == "succeeded":
                return AlreadyCapturedError(message, provider_code=code)
            if intent_status == "canceled":
                return PaymentExpiredError(message, provider_code=code)
        if error.get("type") == "card_error" or status == 402:
            return PaymentDeniedError(message, provider_code=error.get("decline_code") or code)
        return InvalidRequestError(message, provider_code=code)

    def report_from_intent(self, intent: Mapping[str, Any]) -> ProviderReport:
        """Normalize a PaymentIntent object (API response or webhook payload)"""
        provider_status = intent.get("status") or ""
        status = self.map_status(provider_status, intent)

        charge = intent.get("latest_charge")
        if not isinstance(charge, Mapping):
            charges = (intent.get("charges") or {}).get("data") or []
            charge = charges[0] if charges else {}

        payment_method = None
        details = charge.get("payment_method_details") or {}
        if details.get("type"):
            payment_method = details["type"]
        elif intent.get("payment_method_types"):
            payment_method = intent["payment_method_types"][0]

        failure = None
        if status == PaymentStatus.FAILED.value:
            error = intent.get("last_payment_error") or {}
            failure = {
                "failure_reason": error.get("message") or charge.get("failure_message") or "Payment failed",
                "error_code": error.get("code") or charge.get("failure_code") or "unknown_error",
                "decline_code": error.get("decline_code"),
                "failed_at": get_naive_utc_now().isoformat(),
            }

        metadata = {}
        outcome = charge.get("outcome") or {}
        if outcome.get("risk_level"):
            metadata["risk_level"] = outcome["risk_level"]
        if outcome.get("risk_score") is not None:
            metadata["risk_score"] = outcome["risk_score"]

        return ProviderReport(
            external_ref=intent.get("id"),
            provider_status=provider_status,
            status=status,
            payer_ref=intent.get("customer") or (charge.get("billing_details") or {}).get("email"),
            receipt_ref=charge.get("receipt_url"),
            payment_method=payment_method,
            failure=failure,
            metadata=metadata,
        )

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> CreatedIntent:
        form = _flatten_form({
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method_types": ["card"],
            "description": description,
            "receipt_email": (metadata or {}).get("user_email"),
            "metadata": {**(metadata or {}), "correlation_id": correlation_id},
        })
        intent = await self._request(
            "POST",
            f"{self.api_base}/v1/payment_intents",
            headers=self._headers(idempotency_key=correlation_id),
            data=form,
        )
        if not intent.get("id"):
            raise InvalidRequestError("Stripe returned a payment intent without an id")

        logger.info(f"💳 STRIPE_INTENT_CREATED: {intent['id']} amount={amount} {currency.upper()}")
        return CreatedIntent(
            external_ref=intent["id"],
            client_handle=intent.get("client_secret"),
            provider_status=intent.get("status") or "requires_payment_method",
            raw=intent,
        )

    async def fetch_status(self, external_ref: str) -> ProviderReport:
        intent = await self._request(
            "GET",
            f"{self.api_base}/v1/payment_intents/{external_ref}",
            headers=self._headers(),
            params=[("expand[]", "latest_charge")],
        )
        return self.report_from_intent(intent)

    async def confirm_or_capture(self, external_ref: str) -> ProviderReport:
        """
        Cards are confirmed client-side; the server re-reads the intent and captures it
        when it is waiting for capture.
        """
        report = await self.fetch_status(external_ref)
        if report.provider_status == "requires_capture":
            intent = await self._request(
                "POST",
                f"{self.api_base}/v1/payment_intents/{external_ref}/capture",
                headers=self._headers(idempotency_key=f"capture-{external_ref}"),
                params=[("expand[]", "latest_charge")],
            )
            report = self.report_from_intent(intent)
            logger.info(f"💳 STRIPE_INTENT_CAPTURED: {external_ref} status={report.provider_status}")
        return report

    def _verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        if self.signature_bypass:
            logger.warning("⚠️ WEBHOOK_SIGNATURE_BYPASS: Stripe signature not verified (development only)")
            return
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature or not self.webhook_secret:
            raise WebhookVerificationError("Missing Stripe signature or webhook secret")
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"), signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid Stripe signature: {e}")

    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        self._verify_signature(body, headers)
        try:
            event = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise WebhookVerificationError(f"Unparseable Stripe payload: {e}")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookVerificationError("Stripe payload is not an event")

        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}
        webhook = WebhookEvent(provider=self.provider, event_id=event["id"], event_type=event_type, external_ref=None)
        now_iso = get_naive_utc_now().isoformat()

        if event_type in INTENT_STATUS_EVENTS:
            webhook.external_ref = obj.get("id")
            webhook.report = self.report_from_intent(obj)
            if event_type == "payment_intent.canceled":
                webhook.metadata = {
                    "canceled_at": now_iso,
                    "cancellation_reason": obj.get("cancellation_reason") or "user_canceled",
                }
        elif event_type == "payment_intent.requires_action":
            webhook.external_ref = obj.get("id")
            webhook.metadata = {
                "requires_action": True,
                "action_type": (obj.get("next_action") or {}).get("type") or "unknown",
                "last_action_check": now_iso,
            }
        elif event_type == "charge.succeeded":
            webhook.external_ref = obj.get("payment_intent")
            webhook.receipt_ref = obj.get("receipt_url")
        elif event_type == "charge.failed":
            webhook.external_ref = obj.get("payment_intent")
            webhook.report = ProviderReport(
                external_ref=webhook.external_ref,
                provider_status="charge_failed",
                status=PaymentStatus.FAILED.value,
                failure={
                    "failure_reason": obj.get("failure_message") or "Charge failed",
                    "error_code": obj.get("failure_code") or "charge_failed",
                    "decline_code": (obj.get("outcome") or {}).get("reason"),
                    "failed_at": now_iso,
                },
                metadata={"charge_id": obj.get("id")},
            )
        elif event_type == "charge.refunded":
            webhook.external_ref = obj.get("payment_intent")
            webhook.report = ProviderReport(
                external_ref=webhook.external_ref,
                provider_status="refunded",
                status=PaymentStatus.REFUNDED.value,
                metadata={"refunded_at": now_iso, "amount_refunded": obj.get("amount_refunded")},
            )
        elif event_type == "charge.dispute.created":
            charge = obj.get("charge")
            webhook.external_ref = obj.get("payment_intent") or (
                charge.get("payment_intent") if isinstance(charge, dict) else None
            )
            webhook.metadata = {
                "dispute_id": obj.get("id"),
                "dispute_reason": obj.get("reason"),
                "dispute_amount": obj.get("amount"),
                "dispute_status": obj.get("status"),
                "disputed_at": now_iso,
            }
        else:
            logger.info(f"ℹ️ STRIPE_WEBHOOK_UNHANDLED: {event_type} ({event['id']})")

        return webhook
