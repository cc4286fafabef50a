"""
Tests for the shared idempotency ledger.
"""

import pytest

from billing_reconciler.services.idempotency import (
    SOURCE_APPLE,
    SOURCE_APPLE_NOTIFICATION,
    SOURCE_STRIPE,
    ledger_key,
)


class TestLedgerKey:
    def test_keys_are_namespaced_by_source(self):
        assert ledger_key(SOURCE_STRIPE, "123") == "stripe:123"
        assert ledger_key(SOURCE_APPLE, "123") != ledger_key(SOURCE_STRIPE, "123")
        assert ledger_key(SOURCE_APPLE_NOTIFICATION, "123") != ledger_key(SOURCE_APPLE, "123")

    def test_empty_identifier_rejected(self):
        with pytest.raises(ValueError):
            ledger_key(SOURCE_STRIPE, "")


class TestIdempotencyLedger:
    def test_mark_then_has_processed(self, ledger):
        key = ledger_key(SOURCE_STRIPE, "evt_1")
        assert not ledger.has_processed(key)
        assert ledger.mark_processed(key, "invoice.payment_succeeded", {"id": "evt_1"}) is True
        assert ledger.has_processed(key)

    def test_second_mark_reports_existing(self, ledger):
        key = ledger_key(SOURCE_APPLE, "1000")
        ledger.mark_processed(key, "apple.receipt")
        assert ledger.mark_processed(key, "apple.receipt") is False

    def test_sources_do_not_collide(self, ledger):
        ledger.mark_processed(ledger_key(SOURCE_STRIPE, "1000"), "charge.refunded")
        assert not ledger.has_processed(ledger_key(SOURCE_APPLE, "1000"))

    def test_lookup_returns_first_delivery(self, ledger):
        key = ledger_key(SOURCE_STRIPE, "evt_1")
        assert ledger.lookup(key) is None

        ledger.mark_processed(key, "invoice.paid", {"id": "evt_1"})
        ledger.mark_processed(key, "invoice.paid", {"id": "evt_1", "retry": True})

        record = ledger.lookup(key)
        assert record.event_key == "stripe:evt_1"
        assert record.event_type == "invoice.paid"
        assert record.raw_payload == {"id": "evt_1"}
        assert record.processed_at.tzinfo is not None
