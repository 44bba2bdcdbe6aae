"""
Seat Fulfillment — shared test doubles

In-memory SQLite stores with seed helpers, a scriptable account-sync
client and a recording alert notifier. No network.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fulfillment.account_sync import AccountSyncClient, InviteResult
from fulfillment.alerts import AlertNotifier
from fulfillment.db import SQLiteBackend
from fulfillment.store import OrderStore
from fulfillment.types import format_timestamp

NOW = datetime(2026, 10, 18, 4, 0, tzinfo=timezone.utc)


def ts(dt):
    return format_timestamp(dt)


def make_store(now=NOW):
    store = OrderStore(SQLiteBackend(":memory:"), clock=lambda: now)
    store.ensure_schema()
    return store


def seed_account(
    store,
    account_id=1,
    email="pool1@example.com",
    user_count=0,
    invite_count=0,
    expire_at=NOW + timedelta(days=40),
    is_open=1,
    is_banned=0,
    token="tok",
    chatgpt_account_id="acct-1",
    created_at=NOW - timedelta(days=10),
):
    store.db.execute(
        """
        INSERT INTO gpt_accounts
            (id, email, token, chatgpt_account_id, user_count, invite_count,
             is_open, is_banned, expire_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (account_id, email, token, chatgpt_account_id, user_count, invite_count,
         is_open, is_banned, ts(expire_at) if expire_at else None,
         ts(created_at) if created_at else None),
    )


def seed_code(store, code_id, account_email="pool1@example.com", reserved_for_order_no=None,
              reserved_for_uid=None, is_redeemed=0, channel="common"):
    store.db.execute(
        """
        INSERT INTO redemption_codes
            (id, code, account_email, channel, is_redeemed,
             reserved_for_order_no, reserved_for_uid)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (code_id, f"CODE-{code_id}", account_email, channel, is_redeemed,
         reserved_for_order_no, reserved_for_uid),
    )


def seed_order(store, order_no="C1", uid="u1", account_id=1, email="buyer@example.com",
               paid_at=NOW - timedelta(hours=1), status="paid", action_status=None,
               action_payload=None, refunded_at=None, service_days=None):
    store.db.execute(
        """
        INSERT INTO credit_orders
            (order_no, uid, username, scene, status, target_account_id, order_email,
             service_days, action_status, action_payload, created_at, paid_at, refunded_at)
        VALUES (?, ?, ?, 'open_accounts_board', ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (order_no, uid, f"user-{uid}", status, account_id, email, service_days,
         action_status, action_payload, ts(paid_at) if paid_at else None,
         ts(paid_at) if paid_at else None, ts(refunded_at) if refunded_at else None),
    )


def seed_user(store, uid="u1", email="profile@example.com"):
    store.db.execute(
        "INSERT INTO linuxdo_users (uid, username, email) VALUES (?, ?, ?)",
        (uid, f"user-{uid}", email),
    )


class FakeSyncClient(AccountSyncClient):
    """
    Scriptable account provider.

    ``counts`` maps account id → [members, invites]; a successful invite
    bumps the invite count. Exceptions queued in ``invite_failures`` are
    raised by the next invite() calls, in order.
    """

    def __init__(self, counts=None, members=None, invites=None):
        self.counts = {k: list(v) for k, v in (counts or {}).items()}
        self.members = {k: list(v) for k, v in (members or {}).items()}
        self.invites = {k: list(v) for k, v in (invites or {}).items()}
        self.invite_failures = []
        self.sync_failures = []
        self.calls = []

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    async def sync_member_count(self, account_id):
        self.calls.append(("sync_member_count", account_id))
        await asyncio.sleep(0)
        if self.sync_failures:
            raise self.sync_failures.pop(0)
        return self.counts.setdefault(account_id, [0, 0])[0]

    async def sync_invite_count(self, account_id):
        self.calls.append(("sync_invite_count", account_id))
        return self.counts.setdefault(account_id, [0, 0])[1]

    async def list_members(self, account_id, query="", limit=25):
        self.calls.append(("list_members", account_id, query))
        return [m for m in self.members.get(account_id, []) if query in m]

    async def list_invites(self, account_id, query="", limit=25):
        self.calls.append(("list_invites", account_id, query))
        return [i for i in self.invites.get(account_id, []) if query in i]

    async def invite(self, account_id, email):
        self.calls.append(("invite", account_id, email))
        await asyncio.sleep(0)
        if self.invite_failures:
            raise self.invite_failures.pop(0)
        self.invites.setdefault(account_id, []).append(email)
        counts = self.counts.setdefault(account_id, [0, 0])
        counts[1] += 1
        return InviteResult(sent=True, message="sent", invite_count=counts[1])


class RecordingNotifier(AlertNotifier):
    def __init__(self, fail=False):
        super().__init__()
        self.sent = []
        self.fail = fail

    async def send(self, subject, body):
        if self.fail:
            raise RuntimeError("alert transport down")
        self.sent.append((subject, body))
