"""
Tests for the SQLite persistence gateway.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_reconciler.domain.models.payment import (
    REFUND_APPROVED,
    REFUND_COMPLETED,
    REFUND_REJECTED,
    TRANSACTION_FAILED,
    TRANSACTION_REFUNDED,
    TRANSACTION_SUCCEEDED,
)
from billing_reconciler.infrastructure.persistence.sqlite import SQLitePersistence


class TestTiers:
    def test_seeded_tiers_are_readable(self, persistence):
        premium = persistence.get_tier_by_name("premium")
        assert premium.tier_id == "premium"
        assert premium.monthly_price == Decimal("4.99")
        assert premium.is_unlimited

    def test_lookup_is_case_insensitive(self, persistence):
        assert persistence.get_tier_by_name("FREE").tier_id == "free"

    def test_seeding_twice_is_harmless(self, persistence):
        from billing_reconciler.domain.catalog import DEFAULT_TIERS

        persistence.seed_tiers(DEFAULT_TIERS)
        assert persistence.get_tier("free").subscription_item_limit == 5


class TestSubscriptionRecords:
    def test_new_record_defaults_to_free_active(self, persistence):
        record = persistence.upsert_record("user-1")
        assert record.tier_id == "free"
        assert record.status == "active"
        assert record.cancel_at_period_end is False

    def test_upsert_merges_into_existing_row(self, persistence):
        first = persistence.upsert_record("user-1", provider_customer_id="cus_1")
        second = persistence.upsert_record("user-1", billing_cycle="yearly")
        assert first.id == second.id
        assert second.provider_customer_id == "cus_1"
        assert second.billing_cycle == "yearly"

    def test_canceled_status_forces_free_tier(self, persistence, stripe_record):
        updated = persistence.update_record(stripe_record.id, status="canceled", tier_id="premium")
        assert updated.tier_id == "free"

    def test_stripe_record_requires_subscription_id(self, persistence):
        with pytest.raises(ValueError):
            persistence.upsert_record("user-1", provider="stripe", status="active")

    def test_rejects_unknown_status(self, persistence):
        with pytest.raises(ValueError):
            persistence.upsert_record("user-1", status="paused")

    def test_rejects_unknown_field(self, persistence):
        with pytest.raises(ValueError):
            persistence.upsert_record("user-1", plan="gold")

    def test_update_missing_record(self, persistence):
        with pytest.raises(ValueError):
            persistence.update_record(999, status="active")

    def test_datetimes_round_trip_as_utc(self, persistence):
        end = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
        record = persistence.upsert_record("user-1", current_period_end=end)
        assert persistence.get_record_by_id(record.id).current_period_end == end

    def test_lookups_by_provider_identifiers(self, persistence, stripe_record):
        assert persistence.get_record_by_provider_subscription("sub_1").id == stripe_record.id
        assert persistence.get_record_by_customer("cus_1").id == stripe_record.id
        assert persistence.get_record_by_user("nobody") is None

    def test_subscribed_at_follows_provider_subscription(self, persistence, monkeypatch):
        assert persistence.upsert_record("user-1").subscribed_at is None

        monkeypatch.setattr(SQLitePersistence, "_now", staticmethod(lambda: "2026-03-01T00:00:00+00:00"))
        linked = persistence.upsert_record("user-1", provider="stripe", provider_subscription_id="sub_1")
        assert linked.subscribed_at == datetime(2026, 3, 1, tzinfo=timezone.utc)

        monkeypatch.setattr(SQLitePersistence, "_now", staticmethod(lambda: "2026-04-01T00:00:00+00:00"))
        renewed = persistence.update_record(linked.id, status="active")
        assert renewed.subscribed_at == datetime(2026, 3, 1, tzinfo=timezone.utc)

        relinked = persistence.upsert_record("user-1", provider_subscription_id="sub_2")
        assert relinked.subscribed_at == datetime(2026, 4, 1, tzinfo=timezone.utc)


class TestTransactions:
    def test_duplicate_payment_id_is_not_inserted_twice(self, persistence, stripe_record):
        args = dict(
            subscription_record_id=stripe_record.id,
            provider_payment_id="pi_1",
            provider_invoice_id="in_1",
            amount=Decimal("4.99"),
            currency="usd",
            status=TRANSACTION_SUCCEEDED,
        )
        first, created = persistence.record_transaction(**args)
        second, created_again = persistence.record_transaction(**args)
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert len(persistence.list_transactions()) == 1

    def test_invoice_lookup_skips_failed_attempts(self, persistence, stripe_record):
        persistence.record_transaction(
            stripe_record.id, "pi_1:attempt-1", "in_1", Decimal("4.99"), "usd", TRANSACTION_FAILED
        )
        assert persistence.get_transaction_by_invoice("in_1") is None
        persistence.record_transaction(
            stripe_record.id, "pi_1", "in_1", Decimal("4.99"), "usd", TRANSACTION_SUCCEEDED
        )
        assert persistence.get_transaction_by_invoice("in_1").provider_payment_id == "pi_1"

    def test_latest_succeeded_and_refund_marking(self, persistence, stripe_record):
        tx, _ = persistence.record_transaction(
            stripe_record.id, "pi_1", "in_1", Decimal("4.99"), "usd", TRANSACTION_SUCCEEDED
        )
        assert persistence.get_latest_succeeded_transaction(stripe_record.id).id == tx.id
        persistence.mark_transaction_refunded(tx.id)
        assert persistence.get_transaction_by_payment_id("pi_1").status == TRANSACTION_REFUNDED
        assert persistence.get_latest_succeeded_transaction(stripe_record.id) is None

    def test_latest_succeeded_since(self, persistence, stripe_record):
        tx, _ = persistence.record_transaction(
            stripe_record.id, "pi_1", "in_1", Decimal("4.99"), "usd", TRANSACTION_SUCCEEDED
        )
        since_past = datetime(2000, 1, 1, tzinfo=timezone.utc)
        since_future = datetime(2999, 1, 1, tzinfo=timezone.utc)
        assert persistence.get_latest_succeeded_transaction(stripe_record.id, since=since_past).id == tx.id
        assert persistence.get_latest_succeeded_transaction(stripe_record.id, since=since_future) is None


class TestProcessedEvents:
    def test_record_once(self, persistence):
        assert persistence.record_processed_event("stripe:evt_1", "invoice.paid", {"id": "evt_1"})
        assert not persistence.record_processed_event("stripe:evt_1", "invoice.paid", {})
        assert persistence.has_processed_event("stripe:evt_1")
        assert persistence.count_processed_events() == 1


class TestAppleTransactions:
    def _record(self, persistence, transaction_id="1000", user_id="user-1"):
        return persistence.record_apple_transaction(
            user_id=user_id,
            transaction_id=transaction_id,
            original_transaction_id="orig-1",
            product_id="com.ronnie39.renvo.premium.monthly.v1",
            purchase_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
            expiration_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
            notification_type="PURCHASE",
        )

    def test_transaction_id_is_unique(self, persistence):
        assert self._record(persistence) is True
        assert self._record(persistence) is False
        assert persistence.count_apple_transactions() == 1

    def test_find_user_prefers_subscription_record(self, persistence):
        self._record(persistence, user_id="audit-user")
        assert persistence.find_user_by_original_transaction("orig-1") == "audit-user"
        persistence.upsert_record("record-user", provider="apple", provider_subscription_id="orig-1")
        assert persistence.find_user_by_original_transaction("orig-1") == "record-user"
        assert persistence.find_user_by_original_transaction("orig-missing") is None


class TestRefundRequests:
    def test_open_request_and_completion(self, persistence, stripe_record):
        request = persistence.create_refund_request(
            stripe_record.id, "sub_1", None, Decimal("4.99"), "changed my mind", REFUND_APPROVED
        )
        assert persistence.get_open_refund_request(stripe_record.id, "sub_1").id == request.id

        assert persistence.complete_approved_refunds(stripe_record.id, "re_1") == 1
        completed = persistence.get_open_refund_request(stripe_record.id, "sub_1")
        assert completed.status == REFUND_COMPLETED
        assert completed.provider_refund_id == "re_1"

    def test_rejected_request_is_not_open(self, persistence, stripe_record):
        request = persistence.create_refund_request(
            stripe_record.id, "sub_1", None, Decimal("4.99"), "reason", REFUND_APPROVED
        )
        persistence.update_refund_request(request.id, REFUND_REJECTED)
        assert persistence.get_open_refund_request(stripe_record.id, "sub_1") is None

    def test_open_request_is_scoped_to_provider_subscription(self, persistence, stripe_record):
        persistence.create_refund_request(
            stripe_record.id, "sub_1", None, Decimal("4.99"), "reason", REFUND_COMPLETED
        )
        assert persistence.get_open_refund_request(stripe_record.id, "sub_1") is not None
        assert persistence.get_open_refund_request(stripe_record.id, "sub_2") is None
