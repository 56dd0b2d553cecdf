"""
Purchase notifications (best-effort)

The reconciliation engine emits TokensScheduled / TokensCredited / PaymentFailed events
after the state change that produced them has committed. Delivery never blocks or rolls
back reconciliation: dispatch_notification() logs and swallows sink failures.

Transport is Brevo transactional email: one message to the purchaser and one to the
location's staff address when configured.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config
from utils.data_sanitizer import mask_email
from utils.datetime_helpers import to_business_time

logger = logging.getLogger(__name__)


# ============================================================================
# EVENTS
# ============================================================================

@dataclass
class TokensScheduled:
    payment: Dict[str, Any]
    release_at: datetime
    name: str = field(default="tokens_scheduled", init=False)


@dataclass
class TokensCredited:
    payment: Dict[str, Any]
    name: str = field(default="tokens_credited", init=False)


@dataclass
class PaymentFailed:
    payment: Dict[str, Any]
    reason: str
    code: Optional[str] = None
    name: str = field(default="payment_failed", init=False)


# ============================================================================
# SINKS
# ============================================================================

class NotificationSink:
    """Receives reconciliation events; the base sink only logs them"""

    async def send(self, event) -> None:
        payment = event.payment
        logger.info(
            f"📨 NOTIFICATION: {event.name} for payment {payment.get('external_ref')} "
            f"({payment.get('tokens')} tokens, {payment.get('location')})"
        )


class BrevoEmailNotificationSink(NotificationSink):
    """Purchaser and staff emails via Brevo"""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 30.0, max_retries: int = 3):
        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key or Config.BREVO_API_KEY
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)
        self.timeout = timeout
        self.max_retries = max_retries

    async def send(self, event) -> None:
        for message in self.build_messages(event):
            await self._send_email_with_retry(message)

    def build_messages(self, event) -> List[sib_api_v3_sdk.SendSmtpEmail]:
        payment = event.payment
        purchaser = payment.get("purchaser") or {}
        messages = []

        if isinstance(event, PaymentFailed):
            admin_subject = f"❌ Payment Failed - {payment.get('location')}"
            admin_body = self._admin_body(payment, f"Payment failed: {event.reason} (code: {event.code or 'unknown'})")
            user_subject = "Your HCCC Games payment did not go through"
            user_body = (
                f"<p>Hi {purchaser.get('first_name') or 'there'},</p>"
                f"<p>Your payment for {payment.get('tokens')} tokens for <b>{payment.get('game_name')}</b> "
                f"at {payment.get('location')} could not be completed.</p>"
                f"<p>Reason: {event.reason}</p><p>No tokens were added. You can try again at any time.</p>"
            )
        else:
            if isinstance(event, TokensScheduled):
                release_local = to_business_time(event.release_at)
                availability = f"Your tokens will be added on {release_local.strftime('%b %d, %Y at %I:%M %p')}."
                token_line = f"Scheduled for {release_local.strftime('%Y-%m-%d %H:%M %Z')}"
            else:
                availability = "Your tokens have been added to your account and are ready to use!"
                token_line = "Immediate"
            admin_subject = f"🎮 Token Purchase - {payment.get('location')}"
            admin_body = self._admin_body(payment, f"Token Addition: {token_line}")
            user_subject = "Thank you for your HCCC Games token purchase"
            user_body = (
                f"<p>Hi {purchaser.get('first_name') or 'there'},</p>"
                f"<p>Thank you for purchasing {payment.get('tokens')} tokens for <b>{payment.get('game_name')}</b> "
                f"at {payment.get('location')} (${payment.get('amount'):.2f}).</p>"
                f"<p>{availability}</p>"
            )

        admin_email = Config.admin_email_for_location(payment.get("location"))
        if admin_email:
            messages.append(self._message(admin_email, None, admin_subject, admin_body, ["admin", event.name]))
        if purchaser.get("email"):
            name = " ".join(filter(None, [purchaser.get("first_name"), purchaser.get("last_name")])) or None
            messages.append(self._message(purchaser["email"], name, user_subject, user_body, ["purchaser", event.name]))
        return messages

    @staticmethod
    def _admin_body(payment: Dict[str, Any], status_line: str) -> str:
        purchaser = payment.get("purchaser") or {}
        return (
            f"<p><b>User:</b> {purchaser.get('first_name') or ''} {purchaser.get('last_name') or ''} "
            f"({purchaser.get('email') or 'no email'})</p>"
            f"<p><b>Game:</b> {payment.get('game_name')}</p>"
            f"<p><b>Tokens:</b> {payment.get('tokens')}</p>"
            f"<p><b>Amount:</b> ${payment.get('amount'):.2f}</p>"
            f"<p><b>Location:</b> {payment.get('location')}</p>"
            f"<p><b>Status:</b> {payment.get('status')}</p>"
            f"<p>{status_line}</p>"
            f"<p>Payment ID: {payment.get('id')} / {payment.get('provider')} ref {payment.get('external_ref')}</p>"
        )

    @staticmethod
    def _message(to_email: str, to_name: Optional[str], subject: str, html: str, tags: List[str]) -> sib_api_v3_sdk.SendSmtpEmail:
        return sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_email, name=to_name)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(email=Config.FROM_EMAIL, name=Config.FROM_NAME),
            subject=subject,
            html_content=f"<div style=\"font-family: Arial, sans-serif; max-width: 520px; margin: auto;\">{html}</div>",
            tags=["token-purchase"] + tags,
        )

    async def _send_email_with_retry(self, message: sib_api_v3_sdk.SendSmtpEmail) -> None:
        recipient = mask_email(message.to[0].email)
        for attempt in range(self.max_retries):
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self.transactional_emails_api.send_transac_email, message),
                    timeout=self.timeout,
                )
                logger.info(f"📧 EMAIL_SENT: {message.subject} to {recipient} - Message ID: {response.message_id}")
                return
            except (asyncio.TimeoutError, ApiException) as e:
                logger.warning(f"Email send error (attempt {attempt + 1}/{self.max_retries}) for {recipient}: {e}")
                if attempt == self.max_retries - 1:
                    raise
            await asyncio.sleep((2 ** attempt) * 0.5)


def build_notification_sink() -> NotificationSink:
    if Config.BREVO_API_KEY and Config.EMAIL_NOTIFICATIONS_ENABLED:
        return BrevoEmailNotificationSink()
    logger.warning("BREVO_API_KEY not configured - purchase notifications will only be logged")
    return NotificationSink()


async def dispatch_notification(sink: Optional[NotificationSink], event) -> bool:
    """Deliver an event; any failure is logged and reported as False, never raised"""
    if sink is None:
        return False
    try:
        await sink.send(event)
        return True
    except Exception as e:
        logger.error(
            f"❌ NOTIFICATION_FAILED: {event.name} for payment {event.payment.get('external_ref')}: {e}",
            exc_info=True,
        )
        return False
