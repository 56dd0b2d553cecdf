"""
Payment Provider Gateway - abstract contract shared by the Stripe and PayPal backends

Every backend exposes the same four operations (create_intent, confirm_or_capture,
fetch_status, parse_webhook) and owns a STATUS_MAP from its provider-native vocabulary
to the internal PaymentStatus values. Unrecognized provider statuses fall back to a
non-terminal status, never to a terminal one.

All HTTP goes through _request(), which bounds every call with an aiohttp ClientTimeout
and converts transport failures (timeouts, DNS, connection resets, 5xx, 429) into
ProviderUnavailableError so raw transport errors never reach the reconciliation engine.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import aiohttp

from config import Config
from models import PaymentStatus
from utils.data_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class PaymentGatewayError(Exception):
    """Base error for every provider interaction"""
    kind = "provider_error"
    retryable = False

    def __init__(self, message: str, provider_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.provider_code = provider_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "provider_code": self.provider_code,
            "retryable": self.retryable,
        }


class ProviderUnavailableError(PaymentGatewayError):
    """Timeout, network failure, 5xx or rate limiting; retried by the next sweep"""
    kind = "provider_unavailable"
    retryable = True


class InvalidRequestError(PaymentGatewayError):
    kind = "invalid_request"


class PaymentNotFoundError(PaymentGatewayError):
    kind = "not_found"


class AlreadyCapturedError(PaymentGatewayError):
    kind = "already_captured"


class PaymentExpiredError(PaymentGatewayError):
    kind = "expired"


class PaymentDeniedError(PaymentGatewayError):
    kind = "denied"


# ============================================================================
# RESULT SHAPES
# ============================================================================

@dataclass
class CreatedIntent:
    """A freshly created provider intent/order"""
    external_ref: str
    client_handle: Optional[str]
    provider_status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderReport:
    """
    Provider-reported state of one payment, already mapped to the internal vocabulary.

    `failure` is populated for failed payments: {reason, code, decline_code, failed_at}.
    `metadata` carries provider-specific extras merged into the record's metadata bag.
    """
    external_ref: str
    provider_status: str
    status: str
    payer_ref: Optional[str] = None
    receipt_ref: Optional[str] = None
    payment_method: Optional[str] = None
    failure: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """
    An authenticated provider webhook, normalized.

    `report` is None for informational events (requires_action, disputes, receipt
    backfill) that only touch metadata.
    """
    provider: str
    event_id: str
    event_type: str
    external_ref: Optional[str]
    report: Optional[ProviderReport] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    receipt_ref: Optional[str] = None


class WebhookVerificationError(Exception):
    """Webhook payload failed authenticity checks or could not be parsed"""
    pass


# ============================================================================
# ACCESS TOKEN CACHE
# ============================================================================

class AccessTokenCache:
    """
    OAuth access token with expiry, owned by one gateway instance.

    Tokens are treated as expired `skew_seconds` early so a request never starts with a
    token that lapses in flight.
    """

    def __init__(self, skew_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._skew = skew_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self._skew:
            return self._token
        return None

    def set(self, token: str, expires_in_seconds: float) -> None:
        self._token = token
        self._expires_at = self._clock() + float(expires_in_seconds)

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


# ============================================================================
# GATEWAY CONTRACT
# ============================================================================

class PaymentGateway(ABC):
    """Abstract payment provider capability"""

    provider: str = ""
    STATUS_MAP: Dict[str, str] = {}
    FALLBACK_STATUS = PaymentStatus.CREATED.value

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or Config.PROVIDER_TIMEOUT_SECONDS
        self._timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

    def map_status(self, provider_status: Optional[str], resource: Optional[Mapping[str, Any]] = None) -> str:
        """Provider-native status -> internal status; unknown values never map to a terminal state"""
        mapped = self.STATUS_MAP.get(provider_status or "")
        if mapped is None:
            logger.warning(
                f"⚠️ UNKNOWN_PROVIDER_STATUS: {self.provider} status '{provider_status}' "
                f"mapped to fallback '{self.FALLBACK_STATUS}'"
            )
            return self.FALLBACK_STATUS
        return mapped

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        correlation_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> CreatedIntent:
        """Create a charge intent/order; raises ProviderUnavailableError or InvalidRequestError"""

    @abstractmethod
    async def confirm_or_capture(self, external_ref: str) -> ProviderReport:
        """Confirm/capture a payment; raises NotFound, AlreadyCaptured, Expired, Denied or ProviderUnavailable"""

    @abstractmethod
    async def fetch_status(self, external_ref: str) -> ProviderReport:
        """Current provider state; raises PaymentNotFoundError or ProviderUnavailableError"""

    @abstractmethod
    async def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Authenticate and normalize a webhook; raises WebhookVerificationError"""

    def _error_from_response(self, status: int, payload: Dict[str, Any]) -> PaymentGatewayError:
        """Translate a 4xx response into a gateway error; backends refine this"""
        if status == 404:
            return PaymentNotFoundError(f"{self.provider} resource not found")
        return InvalidRequestError(f"{self.provider} rejected the request (HTTP {status})")

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        data: Any = None,
        json_body: Any = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        params: Any = None,
    ) -> Dict[str, Any]:
        """Single bounded HTTP call with transport error translation"""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(
                    method, url, headers=headers, data=data, json=json_body, auth=auth, params=params
                ) as response:
                    status = response.status
                    try:
                        payload = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        payload = {}
        except asyncio.TimeoutError:
            logger.error(f"⏱️ PROVIDER_TIMEOUT: {self.provider} {method} {url} exceeded {self.timeout_seconds}s")
            raise ProviderUnavailableError(f"{self.provider} did not respond in time")
        except aiohttp.ClientError as e:
            logger.error(f"🌐 PROVIDER_NETWORK_ERROR: {self.provider} {method} {url}: {e}")
            raise ProviderUnavailableError(f"{self.provider} is unreachable")

        payload = payload if isinstance(payload, dict) else {}
        if status >= 500 or status == 429:
            logger.error(f"❌ PROVIDER_UNAVAILABLE: {self.provider} {method} {url} returned HTTP {status}")
            raise ProviderUnavailableError(f"{self.provider} temporarily unavailable (HTTP {status})")
        if status >= 400:
            error = self._error_from_response(status, payload)
            logger.warning(
                f"⚠️ PROVIDER_REJECTED: {self.provider} {method} {url} HTTP {status} "
                f"kind={error.kind} code={error.provider_code}"
            )
            logger.debug(f"PROVIDER_REJECTED_BODY: {sanitize_for_log(payload)}")
            raise error
        return payload


def build_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    """Gateway for the configured (or explicitly named) provider"""
    provider = (provider or Config.PAYMENT_PROVIDER).lower()
    if provider == "stripe":
        from services.stripe_gateway import StripeGateway
        return StripeGateway()
    if provider == "paypal":
        from services.paypal_gateway import PayPalGateway
        return PayPalGateway()
    raise ValueError(f"Unsupported payment provider: {provider}")
