"""
Tests for the Stripe webhook reconciler.
"""

import json
import logging
import sqlite3
from unittest.mock import MagicMock

import pytest

from billing_reconciler.core.logging import OBSERVABILITY_LOGGER
from billing_reconciler.domain.catalog import DEFAULT_TIERS
from billing_reconciler.domain.errors import (
    InvalidBillingRequestError,
    InvalidSignatureError,
    MissingSignatureError,
)
from billing_reconciler.infrastructure.persistence.sqlite import SQLitePersistence
from billing_reconciler.services.idempotency import IdempotencyLedger
from billing_reconciler.services.stripe_webhook import StripeWebhookReconciler


def _invoice(event_id="in_1", payment_intent="pi_1", subscription="sub_1", amount=499):
    return {
        "id": event_id,
        "object": "invoice",
        "customer": "cus_1",
        "subscription": subscription,
        "payment_intent": payment_intent,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "billing_reason": "subscription_create",
    }


def _subscription(status="active", **extra):
    body = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "metadata": {"user_id": "user-1", "billing_cycle": "monthly"},
    }
    body.update(extra)
    return body


class TestSignatureGate:
    def test_missing_signature(self, reconciler, persistence, make_event):
        payload = make_event("evt_1", "invoice.payment_succeeded", _invoice())
        with pytest.raises(MissingSignatureError):
            reconciler.handle(payload, None)
        assert persistence.count_processed_events() == 0

    def test_invalid_signature_mutates_nothing(
        self, reconciler, persistence, stripe_record, make_event, sign_payload
    ):
        payload = make_event("evt_1", "customer.subscription.deleted", _subscription())
        bad_header = sign_payload(payload, secret="whsec_wrong")

        with pytest.raises(InvalidSignatureError) as exc_info:
            reconciler.handle(payload, bad_header)

        assert exc_info.value.status_code == 401
        record = persistence.get_record_by_id(stripe_record.id)
        assert record.status == "trialing"
        assert record.tier_id == "premium"
        assert persistence.count_processed_events() == 0
        assert persistence.list_transactions() == []

    def test_tampered_body_rejected(self, reconciler, make_event, sign_payload):
        payload = make_event("evt_1", "invoice.payment_succeeded", _invoice())
        header = sign_payload(payload)
        tampered = payload.replace(b"499", b"1")
        with pytest.raises(InvalidSignatureError):
            reconciler.handle(tampered, header)

    def test_stale_timestamp_rejected(self, reconciler, make_event, sign_payload):
        payload = make_event("evt_1", "invoice.payment_succeeded", _invoice())
        with pytest.raises(InvalidSignatureError):
            reconciler.handle(payload, sign_payload(payload, timestamp=1000))

    def test_event_without_id(self, reconciler, sign_payload):
        payload = json.dumps({"type": "invoice.payment_succeeded"}).encode("utf-8")
        with pytest.raises(InvalidBillingRequestError):
            reconciler.handle(payload, sign_payload(payload))


class TestIdempotency:
    def test_duplicate_delivery_records_one_transaction(self, deliver, persistence, stripe_record):
        first = deliver("evt_1", "invoice.payment_succeeded", _invoice())
        second = deliver("evt_1", "invoice.payment_succeeded", _invoice())

        assert first.to_response() == {"received": True}
        assert second.duplicate is True
        assert second.to_response() == {"received": True, "duplicate": True}
        assert len(persistence.list_transactions()) == 1

    def test_duplicate_does_not_remutate_record(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        persistence.update_record(stripe_record.id, status="past_due")

        deliver("evt_1", "invoice.payment_succeeded", _invoice())

        assert persistence.get_record_by_id(stripe_record.id).status == "past_due"

    def test_distinct_events_for_same_payment_share_one_row(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        deliver("evt_2", "invoice.payment_succeeded", _invoice())
        assert len(persistence.list_transactions()) == 1

    def test_duplicate_outcome_reports_first_delivery(self, deliver, stripe_record, caplog):
        caplog.set_level(logging.INFO, logger=OBSERVABILITY_LOGGER)

        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        deliver("evt_1", "invoice.payment_succeeded", _invoice())

        records = [r for r in caplog.records if r.name == OBSERVABILITY_LOGGER]
        assert records[1].outcome["event"] == "billing.webhook.duplicate"
        assert records[1].outcome["first_processed_at"] is not None


class TestOrderIndependence:
    def _apply(self, tmp_path, name, billing_config, order, make_event, sign_payload):
        store = SQLitePersistence(tmp_path / f"{name}.db")
        store.seed_tiers(DEFAULT_TIERS)
        store.upsert_record(
            "user-1",
            tier_id="premium",
            status="trialing",
            provider="stripe",
            provider_customer_id="cus_1",
            provider_subscription_id="sub_1",
        )
        reconciler = StripeWebhookReconciler(store, IdempotencyLedger(store), billing_config)
        events = {
            "intent": make_event(
                "evt_pi",
                "payment_intent.succeeded",
                {"id": "pi_1", "customer": "cus_1", "metadata": {"user_id": "user-1"}},
            ),
            "invoice": make_event("evt_in", "invoice.payment_succeeded", _invoice()),
        }
        for key in order:
            reconciler.handle(events[key], sign_payload(events[key]))
        record = store.get_record_by_user("user-1")
        transactions = store.list_transactions()
        store.close()
        return record, transactions

    def test_intent_and_invoice_converge(self, tmp_path, billing_config, make_event, sign_payload):
        forward, forward_tx = self._apply(
            tmp_path, "forward", billing_config, ("intent", "invoice"), make_event, sign_payload
        )
        reverse, reverse_tx = self._apply(
            tmp_path, "reverse", billing_config, ("invoice", "intent"), make_event, sign_payload
        )

        assert (forward.tier_id, forward.status) == ("premium", "active")
        assert (reverse.tier_id, reverse.status) == (forward.tier_id, forward.status)
        assert len(forward_tx) == len(reverse_tx) == 1


class TestSubscriptionEvents:
    def test_created_links_record_from_metadata(self, deliver, persistence):
        outcome = deliver("evt_1", "customer.subscription.created", _subscription(status="incomplete"))

        assert outcome.outcome == "processed"
        record = persistence.get_record_by_user("user-1")
        assert record.provider_subscription_id == "sub_1"
        assert record.provider_customer_id == "cus_1"
        assert record.status == "trialing"
        assert record.billing_cycle == "monthly"
        assert record.current_period_end is not None

    def test_created_reads_legacy_metadata_key(self, deliver, persistence):
        body = _subscription(metadata={"supabase_user_id": "user-9"})
        deliver("evt_1", "customer.subscription.created", body)
        assert persistence.get_record_by_user("user-9").provider_subscription_id == "sub_1"

    def test_created_without_user_is_logged(self, deliver, persistence):
        body = _subscription(metadata={}, customer="cus_unknown")
        outcome = deliver("evt_1", "customer.subscription.created", body)
        assert outcome.outcome == "processed"
        assert persistence.get_record_by_provider_subscription("sub_1") is None

    def test_cycle_from_price_interval(self, deliver, persistence, stripe_record):
        body = _subscription(
            metadata={},
            items={"data": [{"price": {"recurring": {"interval": "year"}}}]},
        )
        deliver("evt_1", "customer.subscription.updated", body)
        assert persistence.get_record_by_id(stripe_record.id).billing_cycle == "yearly"

    @pytest.mark.parametrize("provider_status", ["canceled", "unpaid", "incomplete_expired"])
    def test_updated_terminal_status_downgrades(self, deliver, persistence, stripe_record, provider_status):
        deliver("evt_1", "customer.subscription.updated", _subscription(status=provider_status))

        record = persistence.get_record_by_id(stripe_record.id)
        assert record.tier_id == "free"
        assert record.status == "canceled"
        assert record.canceled_at is not None

    def test_updated_cancel_at_period_end(self, deliver, persistence, stripe_record):
        deliver("evt_1", "customer.subscription.updated", _subscription(cancel_at_period_end=True))
        record = persistence.get_record_by_id(stripe_record.id)
        assert record.cancel_at_period_end is True
        assert record.status == "active"

    def test_deleted_downgrades_mid_upgrade(self, deliver, persistence, stripe_record):
        assert stripe_record.status == "trialing"

        deliver("evt_1", "customer.subscription.deleted", _subscription(status="canceled"))

        record = persistence.get_record_by_id(stripe_record.id)
        assert record.tier_id == "free"
        assert record.status == "canceled"
        assert record.cancel_at_period_end is False


class TestInvoiceEvents:
    def test_paid_activates_premium(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice())

        record = persistence.get_record_by_id(stripe_record.id)
        assert (record.tier_id, record.status) == ("premium", "active")
        [transaction] = persistence.list_transactions(stripe_record.id)
        assert str(transaction.amount) == "4.99"
        assert transaction.status == "succeeded"

    def test_paid_reads_subscription_from_parent_details(self, deliver, persistence, stripe_record):
        invoice = _invoice(subscription=None)
        invoice["parent"] = {"subscription_details": {"subscription": "sub_1"}}
        deliver("evt_1", "invoice.payment_succeeded", invoice)
        assert persistence.get_record_by_id(stripe_record.id).status == "active"

    def test_paid_without_subscription_only_logs_payment(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice(payment_intent=None, subscription=None))

        [transaction] = persistence.list_transactions()
        assert transaction.provider_payment_id == "invoice:in_1"
        assert persistence.get_record_by_id(stripe_record.id).status == "trialing"

    def test_failed_enters_grace_period(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        invoice = _invoice()
        invoice["attempt_count"] = 2
        deliver("evt_2", "invoice.payment_failed", invoice)

        record = persistence.get_record_by_id(stripe_record.id)
        assert record.status == "grace_period"
        assert record.tier_id == "premium"
        failed = [t for t in persistence.list_transactions() if t.status == "failed"]
        assert [t.provider_payment_id for t in failed] == ["pi_1:attempt-2"]


class TestRefundAndIntentEvents:
    def test_charge_refunded_downgrades_and_completes_request(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        payment = persistence.get_transaction_by_payment_id("pi_1")
        persistence.create_refund_request(
            stripe_record.id, "sub_1", payment.id, payment.amount, "reason", "approved"
        )

        deliver(
            "evt_2",
            "charge.refunded",
            {"id": "ch_1", "payment_intent": "pi_1", "refunds": {"data": [{"id": "re_1"}]}},
        )

        assert persistence.get_transaction_by_payment_id("pi_1").status == "refunded"
        record = persistence.get_record_by_id(stripe_record.id)
        assert (record.tier_id, record.status) == ("free", "canceled")
        request = persistence.get_open_refund_request(stripe_record.id, "sub_1")
        assert request.status == "completed"
        assert request.provider_refund_id == "re_1"

    def test_charge_refunded_by_invoice(self, deliver, persistence, stripe_record):
        deliver("evt_1", "invoice.payment_succeeded", _invoice(payment_intent=None))
        deliver("evt_2", "charge.refunded", {"id": "ch_1", "invoice": "in_1"})
        assert persistence.get_transaction_by_payment_id("invoice:in_1").status == "refunded"

    def test_payment_intent_failed_by_customer(self, deliver, persistence, stripe_record):
        deliver("evt_1", "payment_intent.payment_failed", {"id": "pi_1", "customer": "cus_1"})
        assert persistence.get_record_by_id(stripe_record.id).status == "payment_failed"

    def test_payment_intent_with_unknown_tier_grants_premium(self, deliver, persistence, stripe_record):
        intent = {"id": "pi_1", "metadata": {"user_id": "user-1", "tier": "gold"}}

        outcome = deliver("evt_1", "payment_intent.succeeded", intent)

        assert outcome.outcome == "processed"
        record = persistence.get_record_by_id(stripe_record.id)
        assert (record.tier_id, record.status) == ("premium", "active")


class TestAcknowledgement:
    def test_unknown_type_is_ignored_but_recorded(self, deliver, persistence):
        outcome = deliver("evt_1", "customer.created", {"id": "cus_1"})

        assert outcome.outcome == "ignored"
        assert outcome.to_response() == {"received": True}
        assert persistence.has_processed_event("stripe:evt_1")

    def test_handler_failure_is_still_acknowledged(
        self, persistence, ledger, billing_config, stripe_record, make_event, sign_payload
    ):
        locked = MagicMock(wraps=persistence)
        locked.update_record.side_effect = sqlite3.OperationalError("database is locked")
        reconciler = StripeWebhookReconciler(locked, ledger, billing_config)
        payload = make_event(
            "evt_1", "payment_intent.succeeded", {"id": "pi_1", "metadata": {"user_id": "user-1"}}
        )

        outcome = reconciler.handle(payload, sign_payload(payload))

        assert outcome.outcome == "failed"
        assert "database is locked" in outcome.error
        assert outcome.to_response() == {"received": True}
        assert persistence.has_processed_event("stripe:evt_1")
        assert persistence.get_record_by_id(stripe_record.id).status == "trialing"

    def test_outcome_reaches_observability_channel(self, deliver, stripe_record, caplog):
        caplog.set_level(logging.INFO, logger=OBSERVABILITY_LOGGER)

        deliver("evt_1", "invoice.payment_succeeded", _invoice())
        deliver("evt_2", "customer.subscription.deleted", {"object": "subscription"})

        records = [r for r in caplog.records if r.name == OBSERVABILITY_LOGGER]
        events = [r.outcome["event"] for r in records]
        assert events == ["billing.webhook.processed", "billing.webhook.failed"]
        assert records[1].levelno == logging.ERROR
        assert records[1].outcome["event_id"] == "evt_2"
