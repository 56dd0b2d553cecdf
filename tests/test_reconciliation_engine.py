"""
Reconciliation engine: purchase initiation, confirmation, webhooks and crediting

Crediting must happen exactly once per succeeded payment no matter how many triggers
(confirm, webhook, sweep) race for it, and never before the location reopens.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import (
    TEST_USER,
    VALID_SIGNATURE,
    add_record,
    balance_of,
    load_record,
    local_time,
    webhook_body,
)
from jobs.payment_sweeps import run_scheduled_release
from models import PaymentStatus, ProviderWebhookEvent
from services.payment_gateway import (
    AlreadyCapturedError,
    PaymentDeniedError,
    PaymentExpiredError,
    ProviderUnavailableError,
    WebhookVerificationError,
)
from services.payment_state import TransitionOutcome
from services.reconciliation_engine import (
    PaymentReconciliationEngine,
    PaymentRecordNotFoundError,
    PurchaseRequest,
    PurchaseValidationError,
)


def purchase(game, location="Round Rock", package_index=0, user_id=TEST_USER, email="player@example.com"):
    return PurchaseRequest(
        user_id=user_id,
        game_id=game.id,
        package_index=package_index,
        location=location,
        email=email,
        first_name="Pat",
        last_name="Player",
    )


def ledger_size(session_factory) -> int:
    with session_factory() as session:
        return session.query(ProviderWebhookEvent).count()


class TestInitiatePurchase:
    """Validation, record creation and closing-hours info"""

    @pytest.mark.asyncio
    async def test_creates_intent_and_record(self, engine_service, fake_gateway, session_factory, game):
        result = await engine_service.initiate_purchase(purchase(game, package_index=1))

        assert result.reused is False
        assert result.external_ref == "pi_test_1"
        assert result.client_handle == "pi_test_1_secret"
        assert result.time_restriction is None
        assert result.payment["status"] == PaymentStatus.CREATED.value
        assert result.payment["display_status"] == "pending"
        assert result.payment["tokens"] == 120
        assert result.payment["price"] == 20.0

        record = load_record(session_factory, "pi_test_1")
        assert record.user_id == TEST_USER
        assert record.provider == "stripe"
        assert record.tokens_added is False
        assert record.metadata_json["purchaser_email"] == "player@example.com"
        assert record.metadata_json["game_name"] == "Golden Dragon"

    @pytest.mark.asyncio
    async def test_location_is_matched_loosely_and_stored_canonically(self, engine_service, session_factory, game):
        result = await engine_service.initiate_purchase(purchase(game, location="round  rock"))
        assert load_record(session_factory, result.external_ref).location == "Round Rock"

    @pytest.mark.asyncio
    async def test_unknown_game(self, engine_service, fake_gateway, game):
        request = purchase(game)
        request.game_id = game.id + 100
        with pytest.raises(PurchaseValidationError) as exc_info:
            await engine_service.initiate_purchase(request)
        assert exc_info.value.status_code == 404
        assert fake_gateway.calls["create_intent"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("package_index", [-1, 2, 99])
    async def test_invalid_package(self, engine_service, game, package_index):
        with pytest.raises(PurchaseValidationError) as exc_info:
            await engine_service.initiate_purchase(purchase(game, package_index=package_index))
        assert exc_info.value.message == "Invalid token package"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("location", ["Leander", "Georgetown"])
    async def test_unavailable_location(self, engine_service, fake_gateway, game, location):
        with pytest.raises(PurchaseValidationError) as exc_info:
            await engine_service.initiate_purchase(purchase(game, location=location))
        assert exc_info.value.message == "Location is not available"
        assert fake_gateway.calls["create_intent"] == 0

    @pytest.mark.asyncio
    async def test_closing_hours_info_is_returned(self, engine_service, clock, game):
        clock.set(local_time(4, 0))
        result = await engine_service.initiate_purchase(purchase(game, location="Cedar Park"))
        assert result.time_restriction["type"] == "cedar_park"
        assert result.time_restriction["cutoff_time"] == "3:00 AM - 11:00 AM"

    @pytest.mark.asyncio
    async def test_provider_outage_creates_no_record(self, engine_service, fake_gateway, session_factory, game):
        fake_gateway.create_error = ProviderUnavailableError("stripe did not respond in time")
        with pytest.raises(ProviderUnavailableError):
            await engine_service.initiate_purchase(purchase(game))
        assert await engine_service.list_user_payments(TEST_USER) == []


class TestDuplicateSuppression:
    """A second identical purchase inside the window reuses the open intent"""

    @pytest.mark.asyncio
    async def test_open_intent_is_reused(self, engine_service, fake_gateway, clock, game):
        first = await engine_service.initiate_purchase(purchase(game))
        clock.advance(minutes=10)
        second = await engine_service.initiate_purchase(purchase(game))

        assert second.reused is True
        assert second.external_ref == first.external_ref
        assert second.client_handle == first.client_handle
        assert fake_gateway.calls["create_intent"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_double_click_creates_one_intent(self, engine_service, fake_gateway, game):
        first, second = await asyncio.gather(
            engine_service.initiate_purchase(purchase(game)),
            engine_service.initiate_purchase(purchase(game)),
        )

        assert first.external_ref == second.external_ref
        assert sorted([first.reused, second.reused]) == [False, True]
        assert fake_gateway.calls["create_intent"] == 1

    @pytest.mark.asyncio
    async def test_different_package_is_not_a_duplicate(self, engine_service, fake_gateway, game):
        await engine_service.initiate_purchase(purchase(game, package_index=0))
        second = await engine_service.initiate_purchase(purchase(game, package_index=1))
        assert second.reused is False
        assert fake_gateway.calls["create_intent"] == 2

    @pytest.mark.asyncio
    async def test_window_expiry_creates_new_intent(self, engine_service, fake_gateway, clock, game):
        first = await engine_service.initiate_purchase(purchase(game))
        clock.advance(minutes=31)
        second = await engine_service.initiate_purchase(purchase(game))
        assert second.reused is False
        assert second.external_ref != first.external_ref

    @pytest.mark.asyncio
    async def test_paid_candidate_is_reconciled_not_reused(self, engine_service, fake_gateway, session_factory, game):
        first = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(first.external_ref, "succeeded")

        second = await engine_service.initiate_purchase(purchase(game))

        assert second.reused is False
        assert second.external_ref != first.external_ref
        paid = load_record(session_factory, first.external_ref)
        assert paid.status == PaymentStatus.SUCCEEDED.value
        assert paid.tokens_added is True
        assert balance_of(session_factory, game, "Round Rock") == 50

    @pytest.mark.asyncio
    async def test_processing_candidate_is_not_reused(self, engine_service, fake_gateway, session_factory, game):
        first = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(first.external_ref, "processing")

        second = await engine_service.initiate_purchase(purchase(game))

        assert second.reused is False
        assert load_record(session_factory, first.external_ref).status == PaymentStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_candidate_unknown_to_provider_is_expired(self, engine_service, fake_gateway, session_factory, game):
        first = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.forget(first.external_ref)

        second = await engine_service.initiate_purchase(purchase(game))

        assert second.reused is False
        expired = load_record(session_factory, first.external_ref)
        assert expired.status == PaymentStatus.EXPIRED.value
        assert expired.metadata_json["expired_reason"] == "provider_not_found"

    @pytest.mark.asyncio
    async def test_outage_during_duplicate_check_propagates(self, engine_service, fake_gateway, game):
        await engine_service.initiate_purchase(purchase(game))
        fake_gateway.fetch_error = ProviderUnavailableError("stripe is unreachable")
        with pytest.raises(ProviderUnavailableError):
            await engine_service.initiate_purchase(purchase(game))
        assert fake_gateway.calls["create_intent"] == 1


class TestConfirmPayment:
    """Client-triggered confirmation"""

    @pytest.mark.asyncio
    async def test_success_credits_immediately(self, engine_service, fake_gateway, session_factory, recording_sink, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.outcome is TransitionOutcome.APPLIED
        assert result.status == PaymentStatus.SUCCEEDED.value
        assert result.credited is True
        assert result.scheduled_for is None
        record = load_record(session_factory, created.external_ref)
        assert record.tokens_added is True
        assert record.tokens_credited_at is not None
        assert record.payment_method == "card"
        assert balance_of(session_factory, game, "Round Rock") == 50
        assert recording_sink.names() == ["tokens_credited"]

    @pytest.mark.asyncio
    async def test_repeated_confirm_credits_once(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        await engine_service.confirm_payment(TEST_USER, created.external_ref)
        again = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert again.outcome is TransitionOutcome.UNCHANGED
        assert again.credited is False
        assert balance_of(session_factory, game, "Round Rock") == 50

    @pytest.mark.asyncio
    async def test_still_processing(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "processing")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.PROCESSING.value
        assert result.credited is False
        assert balance_of(session_factory, game, "Round Rock") == 0

    @pytest.mark.asyncio
    async def test_failure_records_provider_reason(self, engine_service, fake_gateway, session_factory, recording_sink, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "payment_failed", failure={
            "failure_reason": "Your card was declined.",
            "error_code": "card_declined",
            "decline_code": "insufficient_funds",
        })

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.FAILED.value
        assert result.payment["failure_reason"] == "Your card was declined."
        metadata = load_record(session_factory, created.external_ref).metadata_json
        assert metadata["error_code"] == "card_declined"
        assert metadata["decline_code"] == "insufficient_funds"
        assert metadata["failed_at"]
        assert recording_sink.names() == ["payment_failed"]
        assert recording_sink.events[0].reason == "Your card was declined."

    @pytest.mark.asyncio
    async def test_failure_without_details_gets_defaults(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "payment_failed")

        await engine_service.confirm_payment(TEST_USER, created.external_ref)

        metadata = load_record(session_factory, created.external_ref).metadata_json
        assert metadata["failure_reason"] == "Payment failed"
        assert metadata["error_code"] == "unknown_error"

    @pytest.mark.asyncio
    async def test_denied_capture_fails_the_record(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.confirm_error = PaymentDeniedError("Card declined", provider_code="card_declined")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.FAILED.value
        metadata = load_record(session_factory, created.external_ref).metadata_json
        assert metadata["failure_reason"] == "Card declined"
        assert metadata["error_code"] == "card_declined"

    @pytest.mark.asyncio
    async def test_expired_order_expires_the_record(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.confirm_error = PaymentExpiredError("Order expired", provider_code="ORDER_EXPIRED")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.EXPIRED.value
        assert load_record(session_factory, created.external_ref).metadata_json["expired_reason"] == "ORDER_EXPIRED"

    @pytest.mark.asyncio
    async def test_already_captured_reads_current_status(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")
        fake_gateway.confirm_error = AlreadyCapturedError("Order already captured")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.credited is True
        assert fake_gateway.calls["fetch_status"] >= 1

    @pytest.mark.asyncio
    async def test_outage_propagates_and_leaves_record(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.confirm_error = ProviderUnavailableError("stripe temporarily unavailable (HTTP 503)")

        with pytest.raises(ProviderUnavailableError):
            await engine_service.confirm_payment(TEST_USER, created.external_ref)
        assert load_record(session_factory, created.external_ref).status == PaymentStatus.CREATED.value

    @pytest.mark.asyncio
    async def test_other_users_payment_is_not_found(self, engine_service, fake_gateway, game):
        created = await engine_service.initiate_purchase(purchase(game))
        with pytest.raises(PaymentRecordNotFoundError):
            await engine_service.confirm_payment("someone-else", created.external_ref)
        assert fake_gateway.calls["confirm_or_capture"] == 0


class TestClosingHours:
    """Purchases during a location's closing window are credited at reopening"""

    @pytest.mark.asyncio
    async def test_cedar_park_purchase_is_scheduled_then_released(
        self, engine_service, fake_gateway, session_factory, recording_sink, clock, game
    ):
        clock.set(local_time(4, 0))
        created = await engine_service.initiate_purchase(purchase(game, location="Cedar Park"))
        fake_gateway.set_status(created.external_ref, "succeeded")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.SUCCEEDED.value
        assert result.credited is False
        assert result.scheduled_for == local_time(11, 0, day=16)
        record = load_record(session_factory, created.external_ref)
        assert record.tokens_added is False
        assert record.tokens_scheduled_for is not None
        assert balance_of(session_factory, game, "Cedar Park") == 0
        assert recording_sink.names() == ["tokens_scheduled"]

        # Reopening the same day is not enough: release is at 11:00 the next day
        clock.set(local_time(12, 0))
        early = await engine_service.release_scheduled_tokens(created.external_ref)
        assert early.credited is False
        assert balance_of(session_factory, game, "Cedar Park") == 0

        clock.set(local_time(11, 0, day=16))
        released = await engine_service.release_scheduled_tokens(created.external_ref)
        assert released.credited is True
        assert balance_of(session_factory, game, "Cedar Park") == 50
        record = load_record(session_factory, created.external_ref)
        assert record.tokens_added is True
        assert record.tokens_scheduled_for is None
        assert recording_sink.names() == ["tokens_scheduled", "tokens_credited"]

    @pytest.mark.asyncio
    async def test_liberty_hill_night_purchase_waits_for_morning(
        self, engine_service, fake_gateway, session_factory, clock, game
    ):
        clock.set(local_time(23, 30))
        created = await engine_service.initiate_purchase(purchase(game, location="Liberty Hill"))
        fake_gateway.set_status(created.external_ref, "succeeded")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.scheduled_for == local_time(10, 0, day=16)
        assert balance_of(session_factory, game, "Liberty Hill") == 0

    @pytest.mark.asyncio
    async def test_decision_uses_confirmation_time_not_purchase_time(
        self, engine_service, fake_gateway, session_factory, clock, game
    ):
        clock.set(local_time(2, 50))
        created = await engine_service.initiate_purchase(purchase(game, location="Cedar Park"))
        assert created.time_restriction is None
        fake_gateway.set_status(created.external_ref, "succeeded")

        clock.set(local_time(3, 5))
        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.credited is False
        assert result.scheduled_for == local_time(11, 0, day=16)

    @pytest.mark.asyncio
    async def test_repeat_triggers_do_not_reschedule(self, engine_service, fake_gateway, session_factory, clock, game):
        clock.set(local_time(4, 0))
        created = await engine_service.initiate_purchase(purchase(game, location="Cedar Park"))
        fake_gateway.set_status(created.external_ref, "succeeded")
        await engine_service.confirm_payment(TEST_USER, created.external_ref)
        scheduled = load_record(session_factory, created.external_ref).tokens_scheduled_for

        clock.advance(hours=3)
        await engine_service.handle_webhook("stripe", webhook_body("evt_late", created.external_ref, "succeeded"), VALID_SIGNATURE)

        assert load_record(session_factory, created.external_ref).tokens_scheduled_for == scheduled
        assert balance_of(session_factory, game, "Cedar Park") == 0


class TestWebhooks:
    """Webhook trigger and the replay ledger"""

    @pytest.mark.asyncio
    async def test_succeeded_webhook_credits(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))

        webhook = await engine_service.handle_webhook(
            "stripe", webhook_body("evt_1", created.external_ref, "succeeded"), VALID_SIGNATURE
        )

        assert webhook.processed is True
        assert webhook.duplicate is False
        assert webhook.result.credited is True
        assert balance_of(session_factory, game, "Round Rock") == 50
        assert ledger_size(session_factory) == 1

    @pytest.mark.asyncio
    async def test_replayed_event_is_acknowledged_without_effect(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        body = webhook_body("evt_1", created.external_ref, "succeeded")

        await engine_service.handle_webhook("stripe", body, VALID_SIGNATURE)
        replay = await engine_service.handle_webhook("stripe", body, VALID_SIGNATURE)

        assert replay.duplicate is True
        assert replay.result is None
        assert balance_of(session_factory, game, "Round Rock") == 50
        assert ledger_size(session_factory) == 1

    @pytest.mark.asyncio
    async def test_distinct_events_for_same_payment_credit_once(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))

        await engine_service.handle_webhook("stripe", webhook_body("evt_1", created.external_ref, "succeeded"), VALID_SIGNATURE)
        second = await engine_service.handle_webhook(
            "stripe", webhook_body("evt_2", created.external_ref, "succeeded"), VALID_SIGNATURE
        )

        assert second.duplicate is False
        assert second.result.credited is False
        assert balance_of(session_factory, game, "Round Rock") == 50

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_before_any_change(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        with pytest.raises(WebhookVerificationError):
            await engine_service.handle_webhook(
                "stripe", webhook_body("evt_1", created.external_ref, "succeeded"), {"x-fake-signature": "forged"}
            )
        assert load_record(session_factory, created.external_ref).status == PaymentStatus.CREATED.value
        assert ledger_size(session_factory) == 0

    @pytest.mark.asyncio
    async def test_success_is_never_regressed(self, engine_service, session_factory, recording_sink, game):
        created = await engine_service.initiate_purchase(purchase(game))
        await engine_service.handle_webhook("stripe", webhook_body("evt_1", created.external_ref, "succeeded"), VALID_SIGNATURE)

        late = await engine_service.handle_webhook(
            "stripe", webhook_body("evt_0", created.external_ref, "processing"), VALID_SIGNATURE
        )
        failed = await engine_service.handle_webhook(
            "stripe", webhook_body("evt_x", created.external_ref, "payment_failed"), VALID_SIGNATURE
        )

        assert late.result.outcome is TransitionOutcome.IGNORED
        assert failed.result.outcome is TransitionOutcome.IGNORED
        record = load_record(session_factory, created.external_ref)
        assert record.status == PaymentStatus.SUCCEEDED.value
        assert record.tokens_added is True
        assert "payment_failed" not in recording_sink.names()

    @pytest.mark.asyncio
    async def test_refund_after_credit(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        await engine_service.handle_webhook("stripe", webhook_body("evt_1", created.external_ref, "succeeded"), VALID_SIGNATURE)

        refund = await engine_service.handle_webhook(
            "stripe", webhook_body("evt_2", created.external_ref, "refunded"), VALID_SIGNATURE
        )

        assert refund.result.status == PaymentStatus.REFUNDED.value
        record = load_record(session_factory, created.external_ref)
        assert record.tokens_added is True
        assert balance_of(session_factory, game, "Round Rock") == 50

    @pytest.mark.asyncio
    async def test_metadata_only_event(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))

        webhook = await engine_service.handle_webhook(
            "stripe",
            webhook_body("evt_d", created.external_ref, metadata={"dispute_id": "dp_1"}, receipt="https://receipt/1"),
            VALID_SIGNATURE,
        )

        assert webhook.processed is True
        assert webhook.result.outcome is TransitionOutcome.UNCHANGED
        record = load_record(session_factory, created.external_ref)
        assert record.status == PaymentStatus.CREATED.value
        assert record.metadata_json["dispute_id"] == "dp_1"
        assert record.metadata_json["game_name"] == "Golden Dragon"
        assert record.receipt_ref == "https://receipt/1"

    @pytest.mark.asyncio
    async def test_event_for_unknown_payment_is_acknowledged(self, engine_service, session_factory, game):
        webhook = await engine_service.handle_webhook("stripe", webhook_body("evt_9", "pi_elsewhere", "succeeded"), VALID_SIGNATURE)
        assert webhook.processed is True
        assert webhook.result.found is False
        assert ledger_size(session_factory) == 1

    @pytest.mark.asyncio
    async def test_processing_failure_leaves_event_replayable(self, engine_service, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        body = webhook_body("evt_1", created.external_ref, "succeeded")

        with patch.object(engine_service, "apply_provider_report", AsyncMock(side_effect=RuntimeError("db down"))):
            failed = await engine_service.handle_webhook("stripe", body, VALID_SIGNATURE)
        assert failed.processed is False
        assert ledger_size(session_factory) == 0

        retried = await engine_service.handle_webhook("stripe", body, VALID_SIGNATURE)
        assert retried.processed is True
        assert retried.result.credited is True
        assert balance_of(session_factory, game, "Round Rock") == 50


class TestConcurrentCrediting:
    """Racing triggers for one payment"""

    @pytest.mark.asyncio
    async def test_confirm_and_webhook_race(self, engine_service, fake_gateway, session_factory, recording_sink, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        results = await asyncio.gather(
            engine_service.confirm_payment(TEST_USER, created.external_ref),
            engine_service.handle_webhook("stripe", webhook_body("evt_1", created.external_ref, "succeeded"), VALID_SIGNATURE),
            engine_service.reconcile_payment(created.external_ref),
        )

        confirm, webhook, sweep = results
        assert [confirm.credited, webhook.result.credited, sweep.credited].count(True) == 1
        assert balance_of(session_factory, game, "Round Rock") == 50
        assert recording_sink.names().count("tokens_credited") == 1

    @pytest.mark.asyncio
    async def test_two_workers_share_the_database(
        self, engine_service, fake_gateway, session_factory, recording_sink, clock, game
    ):
        other_worker = PaymentReconciliationEngine(
            gateway=fake_gateway,
            session_factory=session_factory,
            notification_sink=recording_sink,
            clock=clock,
            duplicate_window_minutes=30,
        )
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        results = await asyncio.gather(
            engine_service.reconcile_payment(created.external_ref),
            other_worker.reconcile_payment(created.external_ref),
            engine_service.release_scheduled_tokens(created.external_ref),
            other_worker.release_scheduled_tokens(created.external_ref),
        )

        assert sum(1 for result in results if result.credited) == 1
        assert balance_of(session_factory, game, "Round Rock") == 50


class TestCreditRecovery:
    """A crediting failure never turns a paid record into a failure"""

    @pytest.mark.asyncio
    async def test_credit_failure_is_retried_by_release_sweep(self, engine_service, fake_gateway, session_factory, game):
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        with patch("services.reconciliation_engine.credit_tokens", side_effect=RuntimeError("balance table locked")):
            result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.status == PaymentStatus.SUCCEEDED.value
        assert result.credited is False
        record = load_record(session_factory, created.external_ref)
        assert record.status == PaymentStatus.SUCCEEDED.value
        assert record.tokens_added is False
        assert balance_of(session_factory, game, "Round Rock") == 0

        stats = await run_scheduled_release(engine_service)

        assert stats["credited"] == 1
        assert load_record(session_factory, created.external_ref).tokens_added is True
        assert balance_of(session_factory, game, "Round Rock") == 50

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block_credit(
        self, engine_service, fake_gateway, session_factory, recording_sink, game
    ):
        recording_sink.fail = True
        created = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(created.external_ref, "succeeded")

        result = await engine_service.confirm_payment(TEST_USER, created.external_ref)

        assert result.credited is True
        assert balance_of(session_factory, game, "Round Rock") == 50


class TestReconcileAndExpire:
    """Status sweep trigger for a single record"""

    @pytest.mark.asyncio
    async def test_reconcile_marks_record_checked(self, engine_service, fake_gateway, session_factory, game):
        add_record(session_factory, game, "pi_sweep")
        fake_gateway.set_status("pi_sweep", "processing")

        result = await engine_service.reconcile_payment("pi_sweep")

        assert result.outcome is TransitionOutcome.APPLIED
        record = load_record(session_factory, "pi_sweep")
        assert record.status == PaymentStatus.PROCESSING.value
        assert record.last_reconciled_at is not None

    @pytest.mark.asyncio
    async def test_payment_unknown_to_provider_expires(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_lost")

        result = await engine_service.reconcile_payment("pi_lost")

        assert result.status == PaymentStatus.EXPIRED.value
        assert load_record(session_factory, "pi_lost").status == PaymentStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_expire_never_touches_paid_records(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_paid", status=PaymentStatus.SUCCEEDED.value, tokens_added=True)
        assert await engine_service.expire_payment("pi_paid", reason="manual") is False
        assert load_record(session_factory, "pi_paid").status == PaymentStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_recovered_payment_keeps_failure_only_as_history(self, engine_service, fake_gateway, session_factory, game):
        add_record(session_factory, game, "pi_retry")
        fake_gateway.set_status("pi_retry", "payment_failed", failure={
            "failure_reason": "Your card was declined.",
            "error_code": "card_declined",
        })
        await engine_service.reconcile_payment("pi_retry")

        fake_gateway.set_status("pi_retry", "succeeded")
        result = await engine_service.reconcile_payment("pi_retry")

        assert result.status == PaymentStatus.SUCCEEDED.value
        assert result.credited is True
        assert result.payment["failure_reason"] is None
        assert result.payment["error_code"] is None
        metadata = load_record(session_factory, "pi_retry").metadata_json
        assert "failure_reason" not in metadata
        assert metadata["previous_failure"]["error_code"] == "card_declined"


class TestScheduledReleaseResult:
    """release_scheduled_tokens reports the record as it actually is"""

    @pytest.mark.asyncio
    async def test_missing_record(self, engine_service):
        result = await engine_service.release_scheduled_tokens("pi_nowhere")
        assert result.found is False
        assert result.status is None
        assert result.credited is False

    @pytest.mark.asyncio
    async def test_refunded_record_is_not_reported_as_succeeded(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_refunded", status=PaymentStatus.REFUNDED.value)

        result = await engine_service.release_scheduled_tokens("pi_refunded")

        assert result.found is True
        assert result.status == PaymentStatus.REFUNDED.value
        assert result.credited is False
        assert balance_of(session_factory, game, "Round Rock") == 0

    @pytest.mark.asyncio
    async def test_credited_record(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_orphan", status=PaymentStatus.SUCCEEDED.value)

        result = await engine_service.release_scheduled_tokens("pi_orphan")

        assert result.status == PaymentStatus.SUCCEEDED.value
        assert result.credited is True
        assert balance_of(session_factory, game, "Round Rock") == 50


class TestReadModels:
    """Payment history and balances"""

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_scoped_to_user(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_old", created_at=local_time(9).replace(tzinfo=None))
        add_record(session_factory, game, "pi_new", created_at=local_time(12).replace(tzinfo=None))
        add_record(session_factory, game, "pi_theirs", user_id="user-2")

        payments = await engine_service.list_user_payments(TEST_USER)

        assert [p["external_ref"] for p in payments] == ["pi_new", "pi_old"]
        assert payments[0]["game_name"] == "Golden Dragon"
        assert (await engine_service.list_user_payments(TEST_USER, limit=1))[0]["external_ref"] == "pi_new"

    @pytest.mark.asyncio
    async def test_get_payment_checks_ownership(self, engine_service, session_factory, game):
        add_record(session_factory, game, "pi_mine")
        payment = await engine_service.get_payment_for_user(TEST_USER, "pi_mine")
        assert payment["external_ref"] == "pi_mine"
        with pytest.raises(PaymentRecordNotFoundError):
            await engine_service.get_payment_for_user("user-2", "pi_mine")
        with pytest.raises(PaymentRecordNotFoundError):
            await engine_service.get_payment_for_user(TEST_USER, "pi_missing")

    @pytest.mark.asyncio
    async def test_balances_include_pending_tokens(self, engine_service, fake_gateway, clock, game):
        immediate = await engine_service.initiate_purchase(purchase(game))
        fake_gateway.set_status(immediate.external_ref, "succeeded")
        await engine_service.confirm_payment(TEST_USER, immediate.external_ref)

        clock.set(local_time(4, 0, day=16))
        delayed = await engine_service.initiate_purchase(purchase(game, location="Cedar Park", package_index=1))
        fake_gateway.set_status(delayed.external_ref, "succeeded")
        await engine_service.confirm_payment(TEST_USER, delayed.external_ref)

        balances = await engine_service.get_token_balances(TEST_USER)

        assert balances["balances"] == [{
            "game_id": game.id,
            "game_name": "Golden Dragon",
            "location": "Round Rock",
            "tokens": 50,
            "pending_tokens": 0,
            "tokens_scheduled_for": None,
            "updated_at": balances["balances"][0]["updated_at"],
        }]
        assert len(balances["pending"]) == 1
        pending = balances["pending"][0]
        assert pending["location"] == "Cedar Park"
        assert pending["tokens"] == 0
        assert pending["pending_tokens"] == 120
        assert pending["tokens_scheduled_for"] == "2026-01-17T17:00:00+00:00"

    @pytest.mark.asyncio
    async def test_adjust_balance_clamps_at_zero(self, engine_service, session_factory, game):
        assert await engine_service.adjust_balance(TEST_USER, game.id, "Round Rock", 30) == 30
        assert await engine_service.adjust_balance(TEST_USER, game.id, "Round Rock", -80) == 0
        assert await engine_service.adjust_balance(TEST_USER, game.id, "Round Rock", 5) == 5
        assert balance_of(session_factory, game, "Round Rock") == 5
