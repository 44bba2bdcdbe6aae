"""
Seat Fulfillment — Order Store

All SQL the engine runs lives here. Each method is one statement (or one
read), so the only atomicity it relies on is single-statement atomicity;
invariants spanning statements are held by conditional UPDATEs, the
allocator's exclusion filters and the lock manager.

Tables:
  credit_orders     — paid orders and their fulfillment action state
  gpt_accounts      — shared accounts (seat pool)
  redemption_codes  — codes bound to an account, reservable per order
  linuxdo_users     — buyer profiles (fallback email, current-account pointer)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from fulfillment.allocator import parse_expire_at
from fulfillment.db import DatabaseBackend
from fulfillment.types import (
    DEFAULT_STORAGE_TZ,
    ActionPayload,
    FulfillmentStatus,
    Order,
    RedemptionCode,
    SeatCandidate,
    SharedAccount,
    format_timestamp,
    normalize_email,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger("seat_fulfillment.store")

ORDER_SCENE = "open_accounts_board"
_PENDING_PAGE_SIZE = 200

SCHEMA = """
CREATE TABLE IF NOT EXISTS credit_orders (
    order_no TEXT PRIMARY KEY,
    uid TEXT NOT NULL,
    username TEXT DEFAULT '',
    scene TEXT NOT NULL DEFAULT 'open_accounts_board',
    status TEXT NOT NULL DEFAULT 'created',
    target_account_id INTEGER,
    order_email TEXT,
    service_days INTEGER,
    action_status TEXT,
    action_message TEXT,
    action_payload TEXT,
    action_result TEXT,
    created_at TEXT,
    paid_at TEXT,
    refunded_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS gpt_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL,
    token TEXT,
    chatgpt_account_id TEXT,
    user_count INTEGER DEFAULT 0,
    invite_count INTEGER DEFAULT 0,
    is_open INTEGER DEFAULT 0,
    is_banned INTEGER DEFAULT 0,
    expire_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS redemption_codes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    account_email TEXT,
    channel TEXT DEFAULT 'common',
    is_redeemed INTEGER DEFAULT 0,
    redeemed_at TEXT,
    redeemed_by TEXT,
    reserved_for_order_no TEXT,
    reserved_for_order_email TEXT,
    reserved_for_uid TEXT,
    reserved_for_entry_id INTEGER,
    reserved_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS linuxdo_users (
    uid TEXT PRIMARY KEY,
    username TEXT,
    email TEXT,
    current_open_account_id INTEGER,
    current_open_account_email TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_credit_orders_sweep ON credit_orders(scene, status, action_status);
CREATE INDEX IF NOT EXISTS idx_codes_account ON redemption_codes(account_email);
CREATE INDEX IF NOT EXISTS idx_codes_order ON redemption_codes(reserved_for_order_no)
"""

_ORDER_COLUMNS = """
    order_no, uid, username, status, target_account_id, order_email, service_days,
    action_status, action_message, action_payload, created_at, paid_at, refunded_at
"""

_ACCOUNT_COLUMNS = """
    id, email, token, chatgpt_account_id, user_count, invite_count,
    is_open, is_banned, expire_at, created_at
"""


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class OrderStore:
    """Reads and single-statement writes for the fulfillment engine."""

    def __init__(
        self,
        db: DatabaseBackend,
        storage_tz: timezone = DEFAULT_STORAGE_TZ,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.storage_tz = storage_tz
        self._clock = clock

    def ensure_schema(self) -> None:
        self.db.executescript(SCHEMA)

    def commit(self) -> None:
        self.db.commit()

    def _now(self) -> str:
        return format_timestamp(self._clock())

    # ── Orders ───────────────────────────────────────────────────

    def _row_to_order(self, row: dict[str, Any]) -> Order:
        service_days = row.get("service_days")
        return Order(
            order_no=str(row.get("order_no") or "").strip(),
            uid=str(row.get("uid") or "").strip(),
            target_account_id=_to_int(row.get("target_account_id")),
            status=str(row.get("status") or ""),
            username=str(row.get("username") or "").strip(),
            order_email=normalize_email(row.get("order_email")) or None,
            fulfillment_status=FulfillmentStatus.from_db(row.get("action_status")),
            action_message=row.get("action_message"),
            payload=ActionPayload.from_raw(row.get("action_payload")),
            paid_at=parse_timestamp(row.get("paid_at"), self.storage_tz),
            created_at=parse_timestamp(row.get("created_at"), self.storage_tz),
            refunded_at=parse_timestamp(row.get("refunded_at"), self.storage_tz),
            service_days=_to_int(service_days) if service_days not in (None, "") else None,
        )

    def load_pending_orders(self, limit: int = 50, now: datetime | None = None) -> list[Order]:
        """
        Up to ``limit`` paid, unrefunded, non-terminal orders that are due
        at ``now``, newest payment first.

        ``next_retry_at`` and ``stop_retry`` live in the JSON payload, so
        rows are paged and filtered here until ``limit`` due orders are
        collected. Orders waiting out a backoff never take a batch slot.
        """
        limit = max(1, int(limit))
        now = now or self._clock()
        page_size = max(limit, _PENDING_PAGE_SIZE)
        due: list[Order] = []
        offset = 0
        while len(due) < limit:
            rows = self.db.fetchall(
                f"""
                SELECT {_ORDER_COLUMNS}
                FROM credit_orders
                WHERE scene = ?
                  AND status = 'paid'
                  AND refunded_at IS NULL
                  AND (action_status IS NULL
                       OR action_status = ''
                       OR action_status NOT IN ('fulfilled', 'failed'))
                ORDER BY paid_at DESC, created_at DESC, order_no ASC
                LIMIT ? OFFSET ?
                """,
                (ORDER_SCENE, page_size, offset),
            )
            for row in rows:
                order = self._row_to_order(row)
                if order.is_due(now):
                    due.append(order)
                    if len(due) >= limit:
                        break
            if len(rows) < page_size:
                break
            offset += page_size
        return due

    def load_order(self, order_no: str) -> Order | None:
        row = self.db.fetchone(
            f"SELECT {_ORDER_COLUMNS} FROM credit_orders WHERE order_no = ?",
            (order_no,),
        )
        return self._row_to_order(row) if row else None

    def load_action_result(self, order_no: str) -> dict[str, Any] | None:
        row = self.db.fetchone(
            "SELECT action_result FROM credit_orders WHERE order_no = ?", (order_no,)
        )
        if not row or not row.get("action_result"):
            return None
        try:
            result = json.loads(row["action_result"])
        except ValueError:
            return None
        return result if isinstance(result, dict) else None

    def persist_action_state(
        self,
        order_no: str,
        status: FulfillmentStatus,
        message: str,
        payload: ActionPayload,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Write status, message, payload and result in one statement.

        Rows already fulfilled or failed are never rewritten. Returns
        False when the guard matched nothing.
        """
        affected = self.db.execute(
            """
            UPDATE credit_orders
            SET action_status = ?,
                action_message = ?,
                action_payload = ?,
                action_result = ?,
                updated_at = ?
            WHERE order_no = ?
              AND (action_status IS NULL
                   OR action_status NOT IN ('fulfilled', 'failed'))
            """,
            (
                status.value,
                message,
                payload.to_json(),
                json.dumps(result, ensure_ascii=False) if result is not None else None,
                self._now(),
                order_no,
            ),
        )
        return affected > 0

    def ensure_order_email(self, order_no: str, email: str) -> None:
        """Back-fill the order's email if it is still empty."""
        normalized = normalize_email(email)
        if not normalized:
            return
        self.db.execute(
            """
            UPDATE credit_orders
            SET order_email = COALESCE(NULLIF(order_email, ''), ?),
                updated_at = ?
            WHERE order_no = ?
            """,
            (normalized, self._now(), order_no),
        )

    # ── Buyer identity ───────────────────────────────────────────

    def load_reserved_order_email(self, order_no: str) -> str:
        row = self.db.fetchone(
            """
            SELECT reserved_for_order_email
            FROM redemption_codes
            WHERE reserved_for_order_no = ?
            ORDER BY reserved_at DESC, updated_at DESC
            LIMIT 1
            """,
            (order_no,),
        )
        return normalize_email(row.get("reserved_for_order_email")) if row else ""

    def load_user_email(self, uid: str) -> str:
        row = self.db.fetchone("SELECT email FROM linuxdo_users WHERE uid = ?", (uid,))
        return normalize_email(row.get("email")) if row else ""

    def update_user_current_account(self, uid: str, account_id: int | None, email: str) -> None:
        stored_email = (normalize_email(email) or None) if account_id else None
        self.db.execute(
            """
            UPDATE linuxdo_users
            SET current_open_account_id = ?,
                current_open_account_email = ?,
                updated_at = ?
            WHERE uid = ?
            """,
            (account_id, stored_email, self._now(), uid),
        )

    # ── Accounts ─────────────────────────────────────────────────

    def _row_to_account(self, row: dict[str, Any], prefix: str = "") -> SharedAccount:
        def get(key: str) -> Any:
            return row.get(prefix + key)

        return SharedAccount(
            id=_to_int(get("id")),
            email=str(get("email") or "").strip(),
            user_count=_to_int(get("user_count")),
            invite_count=_to_int(get("invite_count")),
            expire_at=parse_expire_at(get("expire_at"), self.storage_tz),
            is_open=_to_int(get("is_open")) == 1,
            is_banned=_to_int(get("is_banned")) == 1,
            token=str(get("token") or ""),
            chatgpt_account_id=str(get("chatgpt_account_id") or ""),
            created_at=parse_timestamp(get("created_at"), self.storage_tz),
        )

    def load_account(self, account_id: int) -> SharedAccount | None:
        row = self.db.fetchone(
            f"SELECT {_ACCOUNT_COLUMNS} FROM gpt_accounts WHERE id = ?", (account_id,)
        )
        return self._row_to_account(row) if row else None

    def update_account_counts(
        self,
        account_id: int,
        user_count: int | None = None,
        invite_count: int | None = None,
    ) -> None:
        if user_count is None and invite_count is None:
            return
        self.db.execute(
            """
            UPDATE gpt_accounts
            SET user_count = COALESCE(?, user_count),
                invite_count = COALESCE(?, invite_count),
                updated_at = ?
            WHERE id = ?
            """,
            (user_count, invite_count, self._now(), account_id),
        )

    def increment_invite_count(self, account_id: int) -> None:
        self.db.execute(
            """
            UPDATE gpt_accounts
            SET invite_count = COALESCE(invite_count, 0) + 1,
                updated_at = ?
            WHERE id = ?
            """,
            (self._now(), account_id),
        )

    # ── Codes ────────────────────────────────────────────────────

    def load_code_pool(self, account_email: str, limit: int = 200) -> list[SeatCandidate]:
        """
        Unredeemed ``common`` codes bound to ``account_email``, joined with
        the account. Reservation, occupancy, eligibility and expiry are
        judged by the allocator.
        """
        rows = self.db.fetchall(
            """
            SELECT
                rc.id AS code_id, rc.code AS code_code, rc.account_email AS code_account_email,
                rc.channel AS code_channel, rc.reserved_for_order_no AS code_order_no,
                rc.reserved_for_uid AS code_uid, rc.reserved_for_entry_id AS code_entry_id,
                ga.id AS acct_id, ga.email AS acct_email, ga.token AS acct_token,
                ga.chatgpt_account_id AS acct_chatgpt_account_id,
                ga.user_count AS acct_user_count, ga.invite_count AS acct_invite_count,
                ga.is_open AS acct_is_open, ga.is_banned AS acct_is_banned,
                ga.expire_at AS acct_expire_at, ga.created_at AS acct_created_at
            FROM redemption_codes rc
            JOIN gpt_accounts ga ON lower(ga.email) = lower(rc.account_email)
            WHERE lower(rc.account_email) = lower(?)
              AND COALESCE(rc.is_redeemed, 0) = 0
              AND COALESCE(NULLIF(lower(trim(rc.channel)), ''), 'common') = 'common'
            ORDER BY rc.id ASC
            LIMIT ?
            """,
            (account_email.strip(), max(1, min(500, int(limit)))),
        )
        pool = []
        for row in rows:
            code = RedemptionCode(
                id=_to_int(row.get("code_id")),
                code=str(row.get("code_code") or "").strip(),
                account_email=str(row.get("code_account_email") or "").strip(),
                channel="common",
                reserved_for_order_no=(str(row.get("code_order_no") or "").strip() or None),
                reserved_for_uid=(str(row.get("code_uid") or "").strip() or None),
                reserved_for_entry_id=_to_int(row.get("code_entry_id")) or None,
            )
            pool.append(SeatCandidate(code=code, account=self._row_to_account(row, "acct_")))
        return pool

    def reserve_code(self, code_id: int, order_no: str, uid: str, email: str) -> bool:
        """
        Reserve a code for ``order_no`` unless someone else holds it.
        Idempotent for the same order. Returns whether the reservation holds.
        """
        affected = self.db.execute(
            """
            UPDATE redemption_codes
            SET reserved_for_order_no = ?,
                reserved_for_uid = ?,
                reserved_for_order_email = ?,
                reserved_at = COALESCE(reserved_at, ?),
                updated_at = ?
            WHERE id = ?
              AND COALESCE(is_redeemed, 0) = 0
              AND (reserved_for_entry_id IS NULL OR reserved_for_entry_id = 0)
              AND (reserved_for_order_no IS NULL OR reserved_for_order_no = '' OR reserved_for_order_no = ?)
              AND (reserved_for_uid IS NULL OR reserved_for_uid = '' OR reserved_for_uid = ?)
            """,
            (order_no, uid, normalize_email(email), self._now(), self._now(),
             code_id, order_no, uid),
        )
        return affected > 0

    def release_order_codes(self, order_no: str) -> int:
        """Drop every unredeemed reservation held by ``order_no``. Returns how many."""
        return self.db.execute(
            """
            UPDATE redemption_codes
            SET reserved_for_order_no = NULL,
                reserved_for_uid = NULL,
                reserved_for_order_email = NULL,
                reserved_at = NULL,
                updated_at = ?
            WHERE reserved_for_order_no = ? AND COALESCE(is_redeemed, 0) = 0
            """,
            (self._now(), order_no),
        )

    def mark_code_redeemed(self, code_id: int, order_no: str, email: str) -> bool:
        affected = self.db.execute(
            """
            UPDATE redemption_codes
            SET is_redeemed = 1,
                redeemed_at = ?,
                redeemed_by = ?,
                updated_at = ?
            WHERE id = ? AND COALESCE(is_redeemed, 0) = 0 AND reserved_for_order_no = ?
            """,
            (self._now(), normalize_email(email), self._now(), code_id, order_no),
        )
        return affected > 0

    def find_redeemed_code_for_order(self, order_no: str) -> dict[str, Any] | None:
        return self.db.fetchone(
            """
            SELECT id, code, account_email, redeemed_at
            FROM redemption_codes
            WHERE reserved_for_order_no = ? AND COALESCE(is_redeemed, 0) = 1
            ORDER BY id ASC
            LIMIT 1
            """,
            (order_no,),
        )
