"""
Payment Reconciliation Engine

Drives PaymentRecords from intent creation to credited tokens. Three independent
triggers feed the same path:

    confirm_payment()    purchaser's client asks the server to confirm/capture
    handle_webhook()     provider pushes a status change
    reconcile_payment()  status sweep re-reads the provider (jobs.payment_sweeps)

Every trigger ends in apply_provider_report(), which:
1. locks the record row, applies the reported status if it moves forward, commits;
2. if the record is succeeded and uncredited, runs the crediting decision in a second
   transaction: schedule for the location's release time, or credit now through the
   tokens_added compare-and-set;
3. emits notifications after commit (best-effort).

A crediting failure after step 1 leaves a succeeded, uncredited record that the release
sweep picks up again; it never turns a successful payment into a failure.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import Game, GameStatus, PaymentRecord, PaymentStatus, ProviderWebhookEvent
from services import payment_records
from services.notification_service import (
    NotificationSink,
    PaymentFailed,
    TokensCredited,
    TokensScheduled,
    dispatch_notification,
)
from services.payment_gateway import (
    AlreadyCapturedError,
    PaymentDeniedError,
    PaymentExpiredError,
    PaymentGateway,
    PaymentNotFoundError,
    ProviderReport,
    WebhookEvent,
    build_payment_gateway,
)
from services.payment_state import PaymentStateValidator, TransitionOutcome
from services.time_restrictions import evaluate as evaluate_time_restriction
from services.time_restrictions import get_time_restriction_info
from services.token_balances import adjust_balance, credit_tokens, get_token_balances
from utils.atomic_transactions import (
    atomic_transaction,
    claim_tokens_added,
    lock_payment_record,
    payment_confirmation_transaction,
)
from utils.background_task_runner import run_background_task, run_io_task
from utils.datetime_helpers import ensure_aware_utc, ensure_naive_datetime

logger = logging.getLogger(__name__)


class PurchaseValidationError(Exception):
    """User-actionable rejection of a purchase request"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PaymentRecordNotFoundError(Exception):
    """No payment record with that reference belongs to the caller"""
    pass


@dataclass
class PurchaseRequest:
    user_id: str
    game_id: int
    package_index: int
    location: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class PurchaseResult:
    external_ref: str
    client_handle: Optional[str]
    payment: Dict[str, Any]
    reused: bool = False
    time_restriction: Optional[Dict[str, str]] = None


@dataclass
class ReconcileResult:
    external_ref: str
    found: bool = True
    outcome: Optional[TransitionOutcome] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    credited: bool = False
    scheduled_for: Optional[datetime] = None
    payment: Optional[Dict[str, Any]] = None


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    external_ref: Optional[str]
    duplicate: bool = False
    processed: bool = False
    result: Optional[ReconcileResult] = None


@dataclass
class _CreditDecision:
    kind: str  # credited | scheduled | noop
    release_at: Optional[datetime] = None
    payment: Optional[Dict[str, Any]] = None
    found: bool = True
    status: Optional[str] = None


@dataclass
class _Application:
    found: bool
    outcome: Optional[TransitionOutcome] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    needs_credit_decision: bool = False
    failure: Dict[str, Any] = field(default_factory=dict)
    payment: Optional[Dict[str, Any]] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_location_name(name: str) -> str:
    return "-".join((name or "").lower().split())


def _notification_payload(record: PaymentRecord) -> Dict[str, Any]:
    metadata = record.metadata_json or {}
    payload = payment_records.snapshot(record)
    payload["purchaser"] = {
        "email": metadata.get("purchaser_email"),
        "first_name": metadata.get("purchaser_first_name"),
        "last_name": metadata.get("purchaser_last_name"),
    }
    return payload


class PaymentReconciliationEngine:
    """Single entry point for purchase initiation and every reconciliation trigger"""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        gateways: Optional[Dict[str, PaymentGateway]] = None,
        duplicate_window_minutes: Optional[int] = None,
    ):
        self.gateway = gateway or build_payment_gateway()
        self.session_factory = session_factory or SessionLocal
        self.notification_sink = notification_sink
        self.clock = clock or _utc_now
        self.duplicate_window = timedelta(
            minutes=duplicate_window_minutes or Config.DUPLICATE_INTENT_WINDOW_MINUTES
        )
        self._gateways: Dict[str, PaymentGateway] = dict(gateways or {})
        self._gateways.setdefault(self.gateway.provider, self.gateway)
        # In-process serialization per record; the row lock covers other workers
        self._record_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # Same-purchase requests in this process run one at a time
        self._purchase_locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return ensure_aware_utc(self.clock())

    def gateway_for(self, provider: str) -> PaymentGateway:
        gateway = self._gateways.get(provider)
        if gateway is None:
            gateway = build_payment_gateway(provider)
            self._gateways[provider] = gateway
        return gateway

    def _record_lock(self, external_ref: str) -> asyncio.Lock:
        lock = self._record_locks.get(external_ref)
        if lock is None:
            lock = asyncio.Lock()
            self._record_locks[external_ref] = lock
        return lock

    def _purchase_lock(self, key: tuple) -> asyncio.Lock:
        lock = self._purchase_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._purchase_locks[key] = lock
        return lock

    async def _notify(self, event) -> None:
        await run_background_task(dispatch_notification(self.notification_sink, event))

    # ------------------------------------------------------------------
    # purchase initiation
    # ------------------------------------------------------------------

    def _load_purchase_context(self, request: PurchaseRequest) -> Dict[str, Any]:
        with self.session_factory() as session:
            game = session.get(Game, request.game_id)
            if game is None:
                raise PurchaseValidationError("Game not found", status_code=404)
            if game.status != GameStatus.ACTIVE.value:
                raise PurchaseValidationError("Game is not available for purchase")

            packages = game.token_packages or []
            index = request.package_index
            if not isinstance(index, int) or isinstance(index, bool) or index < 0 or index >= len(packages):
                raise PurchaseValidationError("Invalid token package")
            package = packages[index]

            wanted = normalize_location_name(request.location)
            location = next(
                (loc for loc in game.locations or [] if normalize_location_name(loc.get("name")) == wanted),
                None,
            )
            if location is None or not location.get("available"):
                raise PurchaseValidationError("Location is not available")

            try:
                price = Decimal(str(package["price"])).quantize(Decimal("0.01"))
                tokens = int(package["tokens"])
            except (KeyError, TypeError, ValueError, InvalidOperation):
                raise PurchaseValidationError("Invalid token package")
            if tokens <= 0 or price <= 0:
                raise PurchaseValidationError("Invalid token package")

            return {
                "game_id": game.id,
                "game_name": game.name,
                "package_index": index,
                "tokens": tokens,
                "price": price,
                "location": location["name"],
            }

    def _find_duplicate(self, request: PurchaseRequest, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        since = ensure_naive_datetime(self.now() - self.duplicate_window)
        with self.session_factory() as session:
            record = payment_records.find_duplicate_candidate(
                session,
                user_id=request.user_id,
                game_id=context["game_id"],
                token_quantity=context["tokens"],
                unit_price=context["price"],
                location=context["location"],
                since=since,
            )
            if record is None:
                return None
            return {
                "external_ref": record.external_ref,
                "provider": record.provider,
                "client_handle": record.client_handle,
                "payment": payment_records.snapshot(record),
            }

    async def _reuse_if_still_payable(self, candidate: Dict[str, Any]) -> bool:
        """
        True when the provider still reports the candidate as awaiting payment.

        Otherwise the fresh report is reconciled first; a candidate the provider no
        longer knows is expired. ProviderUnavailableError propagates (retryable).
        """
        ref = candidate["external_ref"]
        gateway = self.gateway_for(candidate["provider"])
        try:
            report = await gateway.fetch_status(ref)
        except PaymentNotFoundError:
            await self.expire_payment(ref, reason="provider_not_found")
            return False

        if report.status == PaymentStatus.CREATED.value:
            return True

        result = await self.apply_provider_report(report, trigger="duplicate_check")
        logger.info(
            f"🔁 DUPLICATE_CANDIDATE_SUPERSEDED: {ref} provider reports '{report.provider_status}', "
            f"record now '{result.status}'"
        )
        return False

    def _create_record(
        self,
        request: PurchaseRequest,
        context: Dict[str, Any],
        intent,
        time_info: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as session:
            record = PaymentRecord(
                external_ref=intent.external_ref,
                provider=self.gateway.provider,
                client_handle=intent.client_handle,
                user_id=request.user_id,
                game_id=context["game_id"],
                location=context["location"],
                token_quantity=context["tokens"],
                unit_price=context["price"],
                currency=Config.DEFAULT_CURRENCY,
                created_at=ensure_naive_datetime(self.now()),
                provider_status=intent.provider_status,
                status=PaymentStatus.CREATED.value,
                metadata_json={
                    "game_name": context["game_name"],
                    "package_index": context["package_index"],
                    "purchaser_email": request.email,
                    "purchaser_first_name": request.first_name,
                    "purchaser_last_name": request.last_name,
                    "time_restriction": time_info,
                },
            )
            session.add(record)
            session.flush()
            return payment_records.snapshot(record)

    async def initiate_purchase(self, request: PurchaseRequest) -> PurchaseResult:
        """
        Validate the purchase, suppress duplicates, create the provider intent and record.

        Raises:
            PurchaseValidationError: bad game, package or location
            ProviderUnavailableError: provider timeout/outage (retryable)
            InvalidRequestError: provider rejected the intent
        """
        context = await run_io_task(self._load_purchase_context, request)
        time_info = get_time_restriction_info(context["location"], self.now())

        purchase_key = (request.user_id, context["game_id"], context["package_index"], context["location"])
        async with self._purchase_lock(purchase_key):
            return await self._reuse_or_create(request, context, time_info)

    async def _reuse_or_create(
        self,
        request: PurchaseRequest,
        context: Dict[str, Any],
        time_info: Optional[Dict[str, str]],
    ) -> PurchaseResult:
        candidate = await run_io_task(self._find_duplicate, request, context)
        if candidate is not None and await self._reuse_if_still_payable(candidate):
            logger.info(
                f"♻️ DUPLICATE_INTENT_REUSED: user={request.user_id} game={context['game_id']} "
                f"location={context['location']} ref={candidate['external_ref']}"
            )
            return PurchaseResult(
                external_ref=candidate["external_ref"],
                client_handle=candidate["client_handle"],
                payment=candidate["payment"],
                reused=True,
                time_restriction=time_info,
            )

        correlation_id = f"purchase-{uuid.uuid4().hex}"
        intent = await self.gateway.create_intent(
            amount=context["price"],
            currency=Config.DEFAULT_CURRENCY,
            correlation_id=correlation_id,
            metadata={
                "game_id": str(context["game_id"]),
                "game_name": context["game_name"],
                "package_index": str(context["package_index"]),
                "tokens": str(context["tokens"]),
                "price": str(context["price"]),
                "location": context["location"],
                "user_id": request.user_id,
                "user_email": request.email,
            },
            description=f"{context['tokens']} tokens - {context['game_name']} ({context['location']})",
        )
        payment = await run_io_task(self._create_record, request, context, intent, time_info)
        logger.info(
            f"🆕 PAYMENT_CREATED: {intent.external_ref} user={request.user_id} game={context['game_id']} "
            f"tokens={context['tokens']} price={context['price']} location={context['location']}"
        )
        return PurchaseResult(
            external_ref=intent.external_ref,
            client_handle=intent.client_handle,
            payment=payment,
            time_restriction=time_info,
        )

    # ------------------------------------------------------------------
    # status application
    # ------------------------------------------------------------------

    def _apply_report_sync(
        self,
        external_ref: str,
        report: Optional[ProviderReport],
        trigger: str,
        extra_metadata: Optional[Dict[str, Any]],
        receipt_ref: Optional[str],
        mark_reconciled: bool,
    ) -> _Application:
        with payment_confirmation_transaction(trigger, external_ref, self.gateway.provider, self.session_factory) as session:
            record = lock_payment_record(session, external_ref)
            if record is None:
                return _Application(found=False)

            previous = record.status
            outcome = TransitionOutcome.UNCHANGED
            failure: Dict[str, Any] = {}

            if report is not None:
                outcome = PaymentStateValidator.evaluate(previous, report.status)
                if outcome is TransitionOutcome.IGNORED:
                    logger.warning(
                        f"⚠️ STATUS_REGRESSION_IGNORED: {external_ref} {previous} -> {report.status} "
                        f"(provider '{report.provider_status}', trigger {trigger})"
                    )
                else:
                    record.provider_status = report.provider_status
                    record.payment_method = report.payment_method or record.payment_method
                    record.receipt_ref = report.receipt_ref or record.receipt_ref
                    record.payer_ref = report.payer_ref or record.payer_ref
                    payment_records.merge_metadata(record, report.metadata)

                if outcome is TransitionOutcome.APPLIED:
                    record.status = report.status
                    if previous == PaymentStatus.FAILED.value:
                        payment_records.archive_failure(record)
                    if report.status == PaymentStatus.FAILED.value:
                        failure = {
                            "failure_reason": "Payment failed",
                            "error_code": "unknown_error",
                            "failed_at": ensure_naive_datetime(self.now()).isoformat(),
                        }
                        failure.update({k: v for k, v in (report.failure or {}).items() if v})
                        payment_records.merge_metadata(record, failure)
                    logger.info(
                        f"🔄 PAYMENT_STATUS_UPDATED: {external_ref} {previous} -> {record.status} "
                        f"(provider '{report.provider_status}', trigger {trigger})"
                    )

            payment_records.merge_metadata(record, extra_metadata)
            if receipt_ref and not record.receipt_ref:
                record.receipt_ref = receipt_ref
            if mark_reconciled:
                record.last_reconciled_at = ensure_naive_datetime(self.now())

            session.flush()
            needs_credit = (
                record.status == PaymentStatus.SUCCEEDED.value
                and not record.tokens_added
                and record.tokens_scheduled_for is None
            )
            return _Application(
                found=True,
                outcome=outcome,
                previous_status=previous,
                status=record.status,
                needs_credit_decision=needs_credit,
                failure=failure,
                payment=_notification_payload(record),
            )

    def _credit_decision_sync(self, external_ref: str, trigger: str) -> _CreditDecision:
        """
        Crediting decision for one succeeded record, under its row lock.

        Unscheduled: evaluate closing hours now and either schedule or credit.
        Scheduled: credit only once the release time has passed.
        """
        now = self.now()
        with payment_confirmation_transaction(f"{trigger}:credit", external_ref, self.gateway.provider, self.session_factory) as session:
            record = lock_payment_record(session, external_ref)
            if record is None:
                return _CreditDecision(kind="noop", found=False)
            if record.status != PaymentStatus.SUCCEEDED.value or record.tokens_added:
                return _CreditDecision(kind="noop", status=record.status)

            if record.tokens_scheduled_for is None:
                restriction = evaluate_time_restriction(record.location, now)
                if restriction.should_delay:
                    record.tokens_scheduled_for = ensure_naive_datetime(restriction.release_at)
                    session.flush()
                    logger.info(
                        f"⏰ TOKENS_SCHEDULED: {external_ref} {record.token_quantity} tokens for "
                        f"{record.location} at {restriction.release_at.isoformat()}"
                    )
                    return _CreditDecision(
                        kind="scheduled",
                        status=record.status,
                        release_at=restriction.release_at,
                        payment=_notification_payload(record),
                    )
            elif ensure_aware_utc(record.tokens_scheduled_for) > now:
                return _CreditDecision(kind="noop", status=record.status)

            if not claim_tokens_added(session, record.id):
                logger.warning(f"🛡️ DUPLICATE_CREDIT_PREVENTED: {external_ref} already credited (trigger {trigger})")
                return _CreditDecision(kind="noop", status=record.status)

            credit_tokens(session, record.user_id, record.game_id, record.location, record.token_quantity)
            record.tokens_added = True
            record.tokens_scheduled_for = None
            record.tokens_credited_at = ensure_naive_datetime(now)
            session.flush()
            logger.info(
                f"✅ TOKENS_CREDITED: {external_ref} +{record.token_quantity} tokens to user {record.user_id} "
                f"game {record.game_id} at {record.location} (trigger {trigger})"
            )
            return _CreditDecision(kind="credited", status=record.status, payment=_notification_payload(record))

    async def _run_credit_decision(self, external_ref: str, trigger: str) -> _CreditDecision:
        try:
            return await run_io_task(self._credit_decision_sync, external_ref, trigger)
        except Exception as e:
            # Record stays succeeded with tokens_added=false; the release sweep retries it
            logger.error(f"❌ CREDIT_DEFERRED: {external_ref} crediting failed (trigger {trigger}): {e}", exc_info=True)
            return _CreditDecision(kind="noop")

    async def apply_provider_report(
        self,
        report: Optional[ProviderReport],
        trigger: str,
        external_ref: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
        receipt_ref: Optional[str] = None,
        mark_reconciled: bool = False,
    ) -> ReconcileResult:
        """
        Apply a provider report (or metadata-only update) to its record and run the
        crediting decision when the record is succeeded and uncredited.
        """
        ref = external_ref or report.external_ref
        async with self._record_lock(ref):
            applied = await run_io_task(
                self._apply_report_sync, ref, report, trigger, extra_metadata, receipt_ref, mark_reconciled
            )
            if not applied.found:
                logger.warning(f"⚠️ PAYMENT_RECORD_NOT_FOUND: {ref} (trigger {trigger})")
                return ReconcileResult(external_ref=ref, found=False)

            decision = _CreditDecision(kind="noop")
            if applied.needs_credit_decision:
                decision = await self._run_credit_decision(ref, trigger)

        result = ReconcileResult(
            external_ref=ref,
            outcome=applied.outcome,
            previous_status=applied.previous_status,
            status=applied.status,
            credited=decision.kind == "credited",
            scheduled_for=decision.release_at,
            payment=decision.payment or applied.payment,
        )

        if applied.outcome is TransitionOutcome.APPLIED and applied.status == PaymentStatus.FAILED.value:
            await self._notify(PaymentFailed(
                payment=applied.payment,
                reason=applied.failure.get("failure_reason"),
                code=applied.failure.get("error_code"),
            ))
        if decision.kind == "scheduled":
            await self._notify(TokensScheduled(payment=decision.payment, release_at=decision.release_at))
        elif decision.kind == "credited":
            await self._notify(TokensCredited(payment=decision.payment))
        return result

    # ------------------------------------------------------------------
    # triggers
    # ------------------------------------------------------------------

    def _owned_record_provider(self, user_id: str, external_ref: str) -> str:
        with self.session_factory() as session:
            record = payment_records.get_by_ref(session, external_ref)
            if record is None or record.user_id != user_id:
                raise PaymentRecordNotFoundError(f"Payment record {external_ref} not found")
            return record.provider

    async def confirm_payment(self, user_id: str, external_ref: str) -> ReconcileResult:
        """
        Synchronous confirmation trigger.

        Provider-reported terminal failures (denied, expired) are reconciled into the
        record; ProviderUnavailableError and PaymentNotFoundError propagate.
        """
        provider = await run_io_task(self._owned_record_provider, user_id, external_ref)
        gateway = self.gateway_for(provider)
        try:
            report = await gateway.confirm_or_capture(external_ref)
        except AlreadyCapturedError:
            report = await gateway.fetch_status(external_ref)
        except PaymentDeniedError as e:
            report = ProviderReport(
                external_ref=external_ref,
                provider_status="denied",
                status=PaymentStatus.FAILED.value,
                failure={"failure_reason": e.message, "error_code": e.provider_code or e.kind},
            )
        except PaymentExpiredError as e:
            report = ProviderReport(
                external_ref=external_ref,
                provider_status="expired",
                status=PaymentStatus.EXPIRED.value,
                metadata={"expired_reason": e.provider_code or e.kind},
            )
        return await self.apply_provider_report(report, trigger="confirm")

    def _webhook_seen(self, provider: str, event_id: str) -> bool:
        with self.session_factory() as session:
            return (
                session.query(ProviderWebhookEvent.id)
                .filter(ProviderWebhookEvent.provider == provider, ProviderWebhookEvent.event_id == event_id)
                .first()
                is not None
            )

    def _record_webhook(self, event: WebhookEvent) -> bool:
        session = self.session_factory()
        try:
            session.add(ProviderWebhookEvent(
                provider=event.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                external_ref=event.external_ref,
            ))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        finally:
            session.close()

    async def handle_webhook(self, provider: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """
        Webhook trigger. Authentication failures raise WebhookVerificationError; anything
        after the event is parsed is logged and acknowledged, the sweeps converge it.
        """
        event = await self.gateway_for(provider).parse_webhook(body, headers)
        webhook = WebhookResult(event_id=event.event_id, event_type=event.event_type, external_ref=event.external_ref)

        if await run_io_task(self._webhook_seen, event.provider, event.event_id):
            logger.info(f"🔁 WEBHOOK_REPLAY_IGNORED: {event.provider} {event.event_type} {event.event_id}")
            webhook.duplicate = True
            return webhook

        logger.info(f"📥 WEBHOOK_RECEIVED: {event.provider} {event.event_type} {event.event_id} ref={event.external_ref}")
        try:
            if event.external_ref and (event.report or event.metadata or event.receipt_ref):
                webhook.result = await self.apply_provider_report(
                    event.report,
                    trigger=f"webhook:{event.event_type}",
                    external_ref=event.external_ref,
                    extra_metadata=event.metadata,
                    receipt_ref=event.receipt_ref,
                )
            webhook.processed = True
        except Exception as e:
            logger.error(
                f"❌ WEBHOOK_PROCESSING_FAILED: {event.provider} {event.event_type} {event.event_id}: {e}",
                exc_info=True,
            )
            return webhook

        if not await run_io_task(self._record_webhook, event):
            webhook.duplicate = True
        return webhook

    async def reconcile_payment(self, external_ref: str, provider: Optional[str] = None) -> ReconcileResult:
        """Status sweep trigger for one record: re-read the provider and apply"""
        gateway = self.gateway_for(provider or self.gateway.provider)
        try:
            report = await gateway.fetch_status(external_ref)
        except PaymentNotFoundError:
            logger.warning(f"⚠️ PROVIDER_LOST_PAYMENT: {external_ref} unknown to {gateway.provider}; expiring")
            await self.expire_payment(external_ref, reason="provider_not_found")
            return ReconcileResult(external_ref=external_ref, status=PaymentStatus.EXPIRED.value)
        return await self.apply_provider_report(report, trigger="sweep", mark_reconciled=True)

    async def release_scheduled_tokens(self, external_ref: str, trigger: str = "release") -> ReconcileResult:
        """Credit a succeeded record whose release time has arrived (or that never got a decision)"""
        async with self._record_lock(external_ref):
            decision = await run_io_task(self._credit_decision_sync, external_ref, trigger)
        if decision.kind == "scheduled":
            await self._notify(TokensScheduled(payment=decision.payment, release_at=decision.release_at))
        elif decision.kind == "credited":
            await self._notify(TokensCredited(payment=decision.payment))
        return ReconcileResult(
            external_ref=external_ref,
            found=decision.found,
            status=decision.status,
            credited=decision.kind == "credited",
            scheduled_for=decision.release_at,
            payment=decision.payment,
        )

    def _expire_sync(self, external_ref: str, reason: str) -> bool:
        with payment_confirmation_transaction("expire", external_ref, self.gateway.provider, self.session_factory) as session:
            record = lock_payment_record(session, external_ref)
            if record is None:
                return False
            if PaymentStateValidator.evaluate(record.status, PaymentStatus.EXPIRED.value) is not TransitionOutcome.APPLIED:
                return False
            record.status = PaymentStatus.EXPIRED.value
            payment_records.merge_metadata(record, {
                "expired_at": ensure_naive_datetime(self.now()).isoformat(),
                "expired_reason": reason,
            })
            return True

    async def expire_payment(self, external_ref: str, reason: str) -> bool:
        async with self._record_lock(external_ref):
            expired = await run_io_task(self._expire_sync, external_ref, reason)
        if expired:
            logger.info(f"⌛ PAYMENT_EXPIRED: {external_ref} ({reason})")
        return expired

    # ------------------------------------------------------------------
    # read models
    # ------------------------------------------------------------------

    def _list_user_payments(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            return [payment_records.snapshot(r) for r in payment_records.list_for_user(session, user_id, limit)]

    async def list_user_payments(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await run_io_task(self._list_user_payments, user_id, limit)

    def _get_payment_for_user(self, user_id: str, external_ref: str) -> Dict[str, Any]:
        with self.session_factory() as session:
            record = payment_records.get_by_ref(session, external_ref)
            if record is None or record.user_id != user_id:
                raise PaymentRecordNotFoundError(f"Payment record {external_ref} not found")
            return payment_records.snapshot(record)

    async def get_payment_for_user(self, user_id: str, external_ref: str) -> Dict[str, Any]:
        return await run_io_task(self._get_payment_for_user, user_id, external_ref)

    async def get_token_balances(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return await run_io_task(get_token_balances, user_id, self.session_factory)

    async def adjust_balance(self, user_id: str, game_id: int, location: str, delta: int) -> int:
        return await run_io_task(adjust_balance, user_id, game_id, location, delta, self.session_factory)
