"""
Seat Fulfillment — Capacity Allocator Tests

Tests:
  - Scenario: account 4/5 expiring in 10 days satisfies a 7-day minimum
  - Same pool, 30-day minimum → nothing
  - Occupancy ceiling, eligibility, credentials, reservation filters
  - Soonest expiry wins, then emptiest account, then lowest code id
  - Accounts created today are used only when nothing older qualifies
  - Minimum validity measured from payment, not from now
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fulfillment.allocator import (
    PreferNonToday,
    build_preference,
    compute_min_valid_until,
    no_preference,
    rejection_reason,
    resolve_service_days,
    select_resource,
)
from fulfillment.types import (
    ActionPayload,
    Order,
    RedemptionCode,
    SeatCandidate,
    SharedAccount,
)

NOW = datetime(2026, 10, 18, 4, 0, tzinfo=timezone.utc)


def candidate(code_id, account_id=1, users=0, invites=0, expire_days=40,
              created_days_ago=10, reserved_for=None, reserved_uid=None,
              is_open=True, is_banned=False, token="tok"):
    account = SharedAccount(
        id=account_id,
        email=f"pool{account_id}@example.com",
        user_count=users,
        invite_count=invites,
        expire_at=NOW + timedelta(days=expire_days) if expire_days is not None else None,
        is_open=is_open,
        is_banned=is_banned,
        token=token,
        chatgpt_account_id=f"acct-{account_id}",
        created_at=NOW - timedelta(days=created_days_ago),
    )
    code = RedemptionCode(
        id=code_id,
        code=f"CODE-{code_id}",
        account_email=account.email,
        reserved_for_order_no=reserved_for,
        reserved_for_uid=reserved_uid,
    )
    return SeatCandidate(code=code, account=account)


class TestScenarios(unittest.TestCase):
    def setUp(self):
        self.pool = [candidate(1, users=3, invites=1, expire_days=10)]

    def test_scenario_a_selected(self):
        picked = select_resource(self.pool, NOW + timedelta(days=7), 5, now=NOW)
        self.assertIsNotNone(picked)
        self.assertEqual(picked.code_id, 1)

    def test_scenario_b_expires_too_soon(self):
        self.assertIsNone(select_resource(self.pool, NOW + timedelta(days=30), 5, now=NOW))

    def test_none_minimum_means_now(self):
        expired = [candidate(1, expire_days=-1)]
        self.assertIsNone(select_resource(expired, None, 5, now=NOW))
        self.assertIsNotNone(select_resource(self.pool, None, 5, now=NOW))

    def test_past_minimum_floored_at_now(self):
        expired = [candidate(1, expire_days=-1)]
        self.assertIsNone(select_resource(expired, NOW - timedelta(days=5), 5, now=NOW))

    def test_empty_pool(self):
        self.assertIsNone(select_resource([], None, 5, now=NOW))


class TestFilters(unittest.TestCase):
    def test_at_capacity_rejected(self):
        c = candidate(1, users=4, invites=1)
        self.assertEqual(rejection_reason(c, NOW, 5), "at_capacity")
        self.assertIsNone(rejection_reason(c, NOW, 6))

    def test_ineligible_accounts_rejected(self):
        self.assertEqual(rejection_reason(candidate(1, is_open=False), NOW, 5), "account_ineligible")
        self.assertEqual(rejection_reason(candidate(1, is_banned=True), NOW, 5), "account_ineligible")
        self.assertEqual(rejection_reason(candidate(1, token=" "), NOW, 5), "missing_credentials")
        self.assertEqual(rejection_reason(candidate(1, expire_days=None), NOW, 5), "missing_expiry")

    def test_reserved_for_other_order_rejected(self):
        c = candidate(1, reserved_for="C9")
        self.assertEqual(rejection_reason(c, NOW, 5, "C1"), "reserved_or_redeemed")
        self.assertIsNone(rejection_reason(c, NOW, 5, "C9"))

    def test_reserved_for_uid_rejected(self):
        c = candidate(1, reserved_uid="someone")
        self.assertEqual(rejection_reason(c, NOW, 5, "C1"), "reserved_or_redeemed")

    def test_redeemed_code_rejected(self):
        c = candidate(1)
        c.code.is_redeemed = True
        self.assertEqual(rejection_reason(c, NOW, 5), "reserved_or_redeemed")


class TestOrdering(unittest.TestCase):
    def test_soonest_expiry_wins(self):
        pool = [candidate(1, 1, expire_days=60), candidate(2, 2, expire_days=35)]
        self.assertEqual(select_resource(pool, None, 5, now=NOW).code_id, 2)

    def test_emptiest_account_breaks_expiry_tie(self):
        pool = [candidate(1, 1, users=3), candidate(2, 2, users=1)]
        self.assertEqual(select_resource(pool, None, 5, now=NOW).code_id, 2)

    def test_lowest_code_id_breaks_full_tie(self):
        pool = [candidate(7), candidate(3), candidate(5)]
        self.assertEqual(select_resource(pool, None, 5, now=NOW).code_id, 3)

    def test_deterministic_across_input_order(self):
        pool = [candidate(i, account_id=i % 3 + 1, users=i % 2, expire_days=30 + i % 4)
                for i in range(1, 13)]
        first = select_resource(pool, None, 5, now=NOW).code_id
        for _ in range(5):
            pool = pool[1:] + pool[:1]
            self.assertEqual(select_resource(pool, None, 5, now=NOW).code_id, first)


class TestPreference(unittest.TestCase):
    def test_older_account_preferred(self):
        fresh = candidate(1, 1, expire_days=31, created_days_ago=0)
        older = candidate(2, 2, expire_days=50, created_days_ago=3)
        self.assertEqual(select_resource([fresh, older], None, 5, now=NOW).code_id, 2)

    def test_fallback_to_fresh_accounts(self):
        fresh = candidate(1, 1, created_days_ago=0)
        self.assertEqual(select_resource([fresh], None, 5, now=NOW).code_id, 1)

    def test_preference_can_be_disabled(self):
        fresh = candidate(1, 1, expire_days=31, created_days_ago=0)
        older = candidate(2, 2, expire_days=50, created_days_ago=3)
        picked = select_resource([fresh, older], None, 5, now=NOW, preference=no_preference)
        self.assertEqual(picked.code_id, 1)
        self.assertIs(build_preference(False), no_preference)
        self.assertIsInstance(build_preference(True), PreferNonToday)

    def test_today_judged_in_storage_timezone(self):
        # 2026-10-17 20:00 UTC is already 2026-10-18 in UTC+8
        c = candidate(1)
        c.account.created_at = datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc)
        self.assertTrue(PreferNonToday().created_today(c.account, NOW))
        self.assertFalse(PreferNonToday(timezone.utc).created_today(c.account, NOW))


class TestMinValidUntil(unittest.TestCase):
    def order(self, **kw):
        defaults = dict(order_no="C1", uid="u1", target_account_id=1)
        defaults.update(kw)
        return Order(**defaults)

    def test_later_of_paid_and_created(self):
        o = self.order(created_at=NOW - timedelta(days=2), paid_at=NOW - timedelta(days=1))
        self.assertEqual(compute_min_valid_until(o, 30), NOW + timedelta(days=29))

    def test_order_service_days_override(self):
        o = self.order(paid_at=NOW, service_days=7)
        self.assertEqual(compute_min_valid_until(o, 30), NOW + timedelta(days=7))

    def test_no_warranty_duration(self):
        o = self.order(paid_at=NOW, payload=ActionPayload(order_type="no_warranty"))
        self.assertEqual(resolve_service_days(o, 30, 15), 15)
        self.assertEqual(resolve_service_days(self.order(), 30, 15), 30)

    def test_no_timestamps(self):
        self.assertIsNone(compute_min_valid_until(self.order(), 30))


if __name__ == "__main__":
    unittest.main()
