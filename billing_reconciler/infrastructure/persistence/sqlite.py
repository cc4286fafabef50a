import json
import sqlite3
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ...domain.catalog import FREE_TIER_NAME
from ...domain.models import (
    AppleTransaction,
    PaymentTransaction,
    ProcessedEvent,
    RefundRequest,
    SubscriptionRecord,
    Tier,
)
from ...domain.models.payment import (
    REFUND_APPROVED,
    REFUND_COMPLETED,
    REFUND_PENDING,
    TRANSACTION_REFUNDED,
)
from ...domain.models.subscription import (
    PROVIDER_STRIPE,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    SUBSCRIPTION_STATUSES,
)
from ...domain.ports.persistence import PersistenceGateway

_RECORD_FIELDS = (
    "tier_id",
    "status",
    "provider",
    "provider_customer_id",
    "provider_subscription_id",
    "billing_cycle",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "product_id",
)

_RECORD_DATETIME_FIELDS = ("current_period_start", "current_period_end", "canceled_at")


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS subscription_tiers (
                    tier_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    monthly_price TEXT NOT NULL,
                    annual_price TEXT NOT NULL,
                    subscription_item_limit INTEGER NOT NULL,
                    features TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS subscription_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL UNIQUE,
                    tier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider TEXT,
                    provider_customer_id TEXT,
                    provider_subscription_id TEXT UNIQUE,
                    billing_cycle TEXT,
                    current_period_start TEXT,
                    current_period_end TEXT,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    canceled_at TEXT,
                    product_id TEXT,
                    subscribed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(tier_id) REFERENCES subscription_tiers(tier_id)
                );

                CREATE INDEX IF NOT EXISTS idx_subscription_records_customer
                    ON subscription_records(provider_customer_id);

                CREATE TABLE IF NOT EXISTS payment_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_record_id INTEGER,
                    provider_payment_id TEXT NOT NULL UNIQUE,
                    provider_invoice_id TEXT,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(subscription_record_id)
                        REFERENCES subscription_records(id) ON DELETE SET NULL
                );

                CREATE INDEX IF NOT EXISTS idx_payment_transactions_record
                    ON payment_transactions(subscription_record_id, created_at DESC);

                CREATE INDEX IF NOT EXISTS idx_payment_transactions_invoice
                    ON payment_transactions(provider_invoice_id);

                CREATE TABLE IF NOT EXISTS processed_events (
                    event_key TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    raw_payload TEXT NOT NULL,
                    processed_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS apple_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    transaction_id TEXT NOT NULL UNIQUE,
                    original_transaction_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    purchase_date TEXT NOT NULL,
                    expiration_date TEXT,
                    notification_type TEXT NOT NULL,
                    environment TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_apple_transactions_original
                    ON apple_transactions(original_transaction_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS refund_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_record_id INTEGER NOT NULL,
                    provider_subscription_id TEXT,
                    transaction_id INTEGER,
                    amount TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider_refund_id TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(subscription_record_id)
                        REFERENCES subscription_records(id) ON DELETE CASCADE
                );
                """
            )

    def close(self) -> None:
        self._conn.close()

    # TierRepository API -----------------------------------------------------
    def seed_tiers(self, tiers: Iterable[Tier]) -> None:
        with self._lock, self._conn:
            for tier in tiers:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO subscription_tiers (
                        tier_id, name, monthly_price, annual_price,
                        subscription_item_limit, features, is_active
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tier.tier_id,
                        tier.name,
                        str(tier.monthly_price),
                        str(tier.annual_price),
                        tier.subscription_item_limit,
                        json.dumps(tier.features),
                        int(tier.is_active),
                    ),
                )

    def get_tier(self, tier_id: str) -> Optional[Tier]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM subscription_tiers WHERE tier_id = ?", (tier_id,))
            row = cur.fetchone()
        return self._row_to_tier(row) if row else None

    def get_tier_by_name(self, name: str) -> Optional[Tier]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM subscription_tiers WHERE name = ? AND is_active = 1",
                (name.lower(),),
            )
            row = cur.fetchone()
        return self._row_to_tier(row) if row else None

    # SubscriptionRecordRepository API ---------------------------------------
    def get_record_by_id(self, record_id: int) -> Optional[SubscriptionRecord]:
        return self._fetch_record("id", record_id)

    def get_record_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self._fetch_record("user_id", user_id)

    def get_record_by_provider_subscription(
        self, provider_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        return self._fetch_record("provider_subscription_id", provider_subscription_id)

    def get_record_by_customer(self, provider_customer_id: str) -> Optional[SubscriptionRecord]:
        return self._fetch_record("provider_customer_id", provider_customer_id)

    def upsert_record(self, user_id: str, **fields: Any) -> SubscriptionRecord:
        self._check_fields(fields)
        now = self._now()
        with self._lock, self._conn:
            cur = self._conn.execute("SELECT * FROM subscription_records WHERE user_id = ?", (user_id,))
            row = cur.fetchone()
            if row:
                values = self._merge(row, fields)
                self._write_record(row["id"], values, now, self._subscribed_at(row, values, now))
                record_id = row["id"]
            else:
                values: Dict[str, Any] = {
                    "tier_id": self._free_tier_id_locked(),
                    "status": STATUS_ACTIVE,
                    "provider": None,
                    "provider_customer_id": None,
                    "provider_subscription_id": None,
                    "billing_cycle": None,
                    "current_period_start": None,
                    "current_period_end": None,
                    "cancel_at_period_end": False,
                    "canceled_at": None,
                    "product_id": None,
                }
                values.update(self._serialize(fields))
                self._enforce_invariants(values)
                cur = self._conn.execute(
                    f"""
                    INSERT INTO subscription_records (
                        user_id, {', '.join(_RECORD_FIELDS)}, subscribed_at, created_at, updated_at
                    )
                    VALUES (?, {', '.join('?' for _ in _RECORD_FIELDS)}, ?, ?, ?)
                    """,
                    (
                        user_id,
                        *[values[name] for name in _RECORD_FIELDS],
                        self._subscribed_at(None, values, now),
                        now,
                        now,
                    ),
                )
                record_id = cur.lastrowid
            cur = self._conn.execute("SELECT * FROM subscription_records WHERE id = ?", (record_id,))
            stored = cur.fetchone()
        if not stored:
            raise RuntimeError("Failed to persist subscription record.")
        return self._row_to_record(stored)

    def update_record(self, record_id: int, **fields: Any) -> SubscriptionRecord:
        self._check_fields(fields)
        now = self._now()
        with self._lock, self._conn:
            cur = self._conn.execute("SELECT * FROM subscription_records WHERE id = ?", (record_id,))
            row = cur.fetchone()
            if not row:
                raise ValueError(f"Subscription record {record_id} not found.")
            values = self._merge(row, fields)
            self._write_record(record_id, values, now, self._subscribed_at(row, values, now))
            cur = self._conn.execute("SELECT * FROM subscription_records WHERE id = ?", (record_id,))
            stored = cur.fetchone()
        return self._row_to_record(stored)

    # PaymentTransactionRepository API ---------------------------------------
    def record_transaction(
        self,
        subscription_record_id: Optional[int],
        provider_payment_id: str,
        provider_invoice_id: Optional[str],
        amount: Decimal,
        currency: str,
        status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[PaymentTransaction, bool]:
        data = json.dumps(metadata or {}, default=str, ensure_ascii=False)
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO payment_transactions (
                    subscription_record_id, provider_payment_id, provider_invoice_id,
                    amount, currency, status, metadata, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_payment_id) DO NOTHING
                """,
                (
                    subscription_record_id,
                    provider_payment_id,
                    provider_invoice_id,
                    str(amount),
                    currency,
                    status,
                    data,
                    self._now(),
                ),
            )
            created = cur.rowcount == 1
            cur = self._conn.execute(
                "SELECT * FROM payment_transactions WHERE provider_payment_id = ?",
                (provider_payment_id,),
            )
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist payment transaction.")
        return self._row_to_transaction(row), created

    def get_transaction_by_payment_id(self, provider_payment_id: str) -> Optional[PaymentTransaction]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM payment_transactions WHERE provider_payment_id = ?",
                (provider_payment_id,),
            )
            row = cur.fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_invoice(self, provider_invoice_id: str) -> Optional[PaymentTransaction]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM payment_transactions
                WHERE provider_invoice_id = ? AND status != 'failed'
                ORDER BY id DESC LIMIT 1
                """,
                (provider_invoice_id,),
            )
            row = cur.fetchone()
        return self._row_to_transaction(row) if row else None

    def get_latest_succeeded_transaction(
        self, subscription_record_id: int, since: Optional[datetime] = None
    ) -> Optional[PaymentTransaction]:
        query = (
            "SELECT * FROM payment_transactions "
            "WHERE subscription_record_id = ? AND status = 'succeeded'"
        )
        params: List[Any] = [subscription_record_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(self._to_iso(since))
        with self._lock:
            cur = self._conn.execute(query + " ORDER BY id DESC LIMIT 1", params)
            row = cur.fetchone()
        return self._row_to_transaction(row) if row else None

    def list_transactions(self, subscription_record_id: Optional[int] = None) -> List[PaymentTransaction]:
        query = "SELECT * FROM payment_transactions"
        params: List[Any] = []
        if subscription_record_id is not None:
            query += " WHERE subscription_record_id = ?"
            params.append(subscription_record_id)
        query += " ORDER BY id ASC"
        with self._lock:
            cur = self._conn.execute(query, params)
            rows = cur.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def mark_transaction_refunded(self, transaction_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE payment_transactions SET status = ? WHERE id = ?",
                (TRANSACTION_REFUNDED, transaction_id),
            )

    # ProcessedEventRepository API -------------------------------------------
    def has_processed_event(self, event_key: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "SELECT 1 FROM processed_events WHERE event_key = ?", (event_key,)
            )
            return cur.fetchone() is not None

    def get_processed_event(self, event_key: str) -> Optional[ProcessedEvent]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM processed_events WHERE event_key = ?", (event_key,)
            )
            row = cur.fetchone()
        if not row:
            return None
        return ProcessedEvent(
            event_key=row["event_key"],
            event_type=row["event_type"],
            raw_payload=json.loads(row["raw_payload"]),
            processed_at=self._parse_datetime(row["processed_at"]),
        )

    def record_processed_event(
        self, event_key: str, event_type: str, raw_payload: Dict[str, Any]
    ) -> bool:
        data = json.dumps(raw_payload, default=str, ensure_ascii=False)
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO processed_events (event_key, event_type, raw_payload, processed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(event_key) DO NOTHING
                """,
                (event_key, event_type, data, self._now()),
            )
            return cur.rowcount == 1

    def count_processed_events(self) -> int:
        with self._lock:
            cur = self._conn.execute("SELECT COUNT(*) AS total FROM processed_events")
            return cur.fetchone()["total"]

    # AppleTransactionRepository API -----------------------------------------
    def record_apple_transaction(
        self,
        user_id: str,
        transaction_id: str,
        original_transaction_id: str,
        product_id: str,
        purchase_date: datetime,
        expiration_date: Optional[datetime],
        notification_type: str,
        environment: Optional[str] = None,
    ) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO apple_transactions (
                    user_id, transaction_id, original_transaction_id, product_id,
                    purchase_date, expiration_date, notification_type, environment, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_id) DO NOTHING
                """,
                (
                    user_id,
                    transaction_id,
                    original_transaction_id,
                    product_id,
                    self._to_iso(purchase_date),
                    self._to_iso(expiration_date),
                    notification_type,
                    environment,
                    self._now(),
                ),
            )
            return cur.rowcount == 1

    def get_apple_transaction(self, transaction_id: str) -> Optional[AppleTransaction]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM apple_transactions WHERE transaction_id = ?", (transaction_id,)
            )
            row = cur.fetchone()
        return self._row_to_apple_transaction(row) if row else None

    def count_apple_transactions(self) -> int:
        with self._lock:
            cur = self._conn.execute("SELECT COUNT(*) AS total FROM apple_transactions")
            return cur.fetchone()["total"]

    def find_user_by_original_transaction(self, original_transaction_id: str) -> Optional[str]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT user_id FROM subscription_records
                WHERE provider = 'apple' AND provider_subscription_id = ?
                """,
                (original_transaction_id,),
            )
            row = cur.fetchone()
            if row:
                return row["user_id"]
            cur = self._conn.execute(
                """
                SELECT user_id FROM apple_transactions
                WHERE original_transaction_id = ?
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (original_transaction_id,),
            )
            row = cur.fetchone()
        return row["user_id"] if row else None

    # RefundRequestRepository API --------------------------------------------
    def create_refund_request(
        self,
        subscription_record_id: int,
        provider_subscription_id: Optional[str],
        transaction_id: Optional[int],
        amount: Decimal,
        reason: str,
        status: str,
    ) -> RefundRequest:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO refund_requests (
                    subscription_record_id, provider_subscription_id, transaction_id,
                    amount, reason, status, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription_record_id,
                    provider_subscription_id,
                    transaction_id,
                    str(amount),
                    reason,
                    status,
                    self._now(),
                ),
            )
            cur = self._conn.execute("SELECT * FROM refund_requests WHERE id = ?", (cur.lastrowid,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist refund request.")
        return self._row_to_refund(row)

    def get_open_refund_request(
        self, subscription_record_id: int, provider_subscription_id: Optional[str]
    ) -> Optional[RefundRequest]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM refund_requests
                WHERE subscription_record_id = ? AND provider_subscription_id IS ?
                    AND status IN (?, ?, ?)
                ORDER BY id DESC LIMIT 1
                """,
                (
                    subscription_record_id,
                    provider_subscription_id,
                    REFUND_PENDING,
                    REFUND_APPROVED,
                    REFUND_COMPLETED,
                ),
            )
            row = cur.fetchone()
        return self._row_to_refund(row) if row else None

    def update_refund_request(
        self,
        refund_request_id: int,
        status: str,
        provider_refund_id: Optional[str] = None,
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE refund_requests
                SET status = ?, provider_refund_id = COALESCE(?, provider_refund_id), processed_at = ?
                WHERE id = ?
                """,
                (status, provider_refund_id, self._now(), refund_request_id),
            )

    def complete_approved_refunds(
        self, subscription_record_id: int, provider_refund_id: Optional[str]
    ) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE refund_requests
                SET status = ?, provider_refund_id = COALESCE(?, provider_refund_id), processed_at = ?
                WHERE subscription_record_id = ? AND status = ?
                """,
                (
                    REFUND_COMPLETED,
                    provider_refund_id,
                    self._now(),
                    subscription_record_id,
                    REFUND_APPROVED,
                ),
            )
            return cur.rowcount

    # Helpers ----------------------------------------------------------------
    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).replace(microsecond=0).isoformat()

    @staticmethod
    def _to_iso(value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        result = datetime.fromisoformat(value)
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    @staticmethod
    def _check_fields(fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(_RECORD_FIELDS)
        if unknown:
            raise ValueError(f"Unknown subscription record fields: {', '.join(sorted(unknown))}")
        status = fields.get("status")
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Invalid subscription status: {status}")

    def _serialize(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(fields)
        for name in _RECORD_DATETIME_FIELDS:
            if name in values and isinstance(values[name], datetime):
                values[name] = self._to_iso(values[name])
        if "cancel_at_period_end" in values:
            values["cancel_at_period_end"] = bool(values["cancel_at_period_end"])
        return values

    def _merge(self, row: sqlite3.Row, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = {name: row[name] for name in _RECORD_FIELDS}
        values["cancel_at_period_end"] = bool(values["cancel_at_period_end"])
        values.update(self._serialize(fields))
        self._enforce_invariants(values)
        return values

    def _enforce_invariants(self, values: Dict[str, Any]) -> None:
        if values["status"] == STATUS_CANCELED:
            values["tier_id"] = self._free_tier_id_locked()
        elif values["provider"] == PROVIDER_STRIPE and not values["provider_subscription_id"]:
            raise ValueError("Stripe subscription records require a provider subscription id.")

    def _free_tier_id_locked(self) -> str:
        cur = self._conn.execute(
            "SELECT tier_id FROM subscription_tiers WHERE name = ?", (FREE_TIER_NAME,)
        )
        row = cur.fetchone()
        return row["tier_id"] if row else FREE_TIER_NAME

    @staticmethod
    def _subscribed_at(
        row: Optional[sqlite3.Row], values: Dict[str, Any], now: str
    ) -> Optional[str]:
        # Restamped whenever the record is linked to a different provider subscription.
        subscription_id = values["provider_subscription_id"]
        if subscription_id and (row is None or row["provider_subscription_id"] != subscription_id):
            return now
        return row["subscribed_at"] if row else None

    def _write_record(
        self, record_id: int, values: Dict[str, Any], now: str, subscribed_at: Optional[str]
    ) -> None:
        assignments = ", ".join(f"{name} = ?" for name in _RECORD_FIELDS)
        self._conn.execute(
            f"UPDATE subscription_records SET {assignments}, subscribed_at = ?, updated_at = ? WHERE id = ?",
            (
                *[
                    int(values[name]) if name == "cancel_at_period_end" else values[name]
                    for name in _RECORD_FIELDS
                ],
                subscribed_at,
                now,
                record_id,
            ),
        )

    def _fetch_record(self, column: str, value: Any) -> Optional[SubscriptionRecord]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT * FROM subscription_records WHERE {column} = ?", (value,)
            )
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def _row_to_tier(self, row: sqlite3.Row) -> Tier:
        return Tier(
            tier_id=row["tier_id"],
            name=row["name"],
            monthly_price=Decimal(row["monthly_price"]),
            annual_price=Decimal(row["annual_price"]),
            subscription_item_limit=row["subscription_item_limit"],
            features=json.loads(row["features"]),
            is_active=bool(row["is_active"]),
        )

    def _row_to_record(self, row: sqlite3.Row) -> SubscriptionRecord:
        return SubscriptionRecord(
            id=row["id"],
            user_id=row["user_id"],
            tier_id=row["tier_id"],
            status=row["status"],
            provider=row["provider"],
            provider_customer_id=row["provider_customer_id"],
            provider_subscription_id=row["provider_subscription_id"],
            billing_cycle=row["billing_cycle"],
            current_period_start=self._parse_datetime(row["current_period_start"]),
            current_period_end=self._parse_datetime(row["current_period_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            canceled_at=self._parse_datetime(row["canceled_at"]),
            product_id=row["product_id"],
            subscribed_at=self._parse_datetime(row["subscribed_at"]),
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _row_to_transaction(self, row: sqlite3.Row) -> PaymentTransaction:
        return PaymentTransaction(
            id=row["id"],
            subscription_record_id=row["subscription_record_id"],
            provider_payment_id=row["provider_payment_id"],
            provider_invoice_id=row["provider_invoice_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            status=row["status"],
            metadata=json.loads(row["metadata"]),
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_apple_transaction(self, row: sqlite3.Row) -> AppleTransaction:
        return AppleTransaction(
            id=row["id"],
            user_id=row["user_id"],
            transaction_id=row["transaction_id"],
            original_transaction_id=row["original_transaction_id"],
            product_id=row["product_id"],
            purchase_date=self._parse_datetime(row["purchase_date"]),
            expiration_date=self._parse_datetime(row["expiration_date"]),
            notification_type=row["notification_type"],
            environment=row["environment"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_refund(self, row: sqlite3.Row) -> RefundRequest:
        return RefundRequest(
            id=row["id"],
            subscription_record_id=row["subscription_record_id"],
            provider_subscription_id=row["provider_subscription_id"],
            transaction_id=row["transaction_id"],
            amount=Decimal(row["amount"]),
            reason=row["reason"],
            status=row["status"],
            provider_refund_id=row["provider_refund_id"],
            processed_at=self._parse_datetime(row["processed_at"]),
            created_at=self._parse_datetime(row["created_at"]),
        )
