"""
Seat Fulfillment — Code Redemption Tests

Tests:
  - Reservation race lost once → next candidate
  - Reservation race lost twice → AllocationExhausted
  - Empty pool → AllocationExhausted
  - Invite result counts written back to the account
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import NOW, FakeSyncClient, make_store, seed_account, seed_code, seed_order

from fulfillment.account_sync import InviteResult
from fulfillment.config import SweeperSettings
from fulfillment.errors import AllocationExhausted
from fulfillment.redemption import CodeRedeemer
from fulfillment.store import OrderStore


class RacingStore(OrderStore):
    """Another order grabs the chosen code right before each of our first ``losses`` reservations."""

    def __init__(self, db, losses=1, **kw):
        super().__init__(db, **kw)
        self.losses = losses
        self.attempted = []

    def reserve_code(self, code_id, order_no, uid, email):
        self.attempted.append(code_id)
        if self.losses > 0:
            self.losses -= 1
            super().reserve_code(code_id, f"RIVAL-{code_id}", f"rival-{code_id}", "rival@example.com")
        return super().reserve_code(code_id, order_no, uid, email)


class RedeemCase(unittest.IsolatedAsyncioTestCase):
    def build(self, losses=0, codes=(10, 11, 12)):
        base = make_store()
        self.store = RacingStore(base.db, losses=losses, clock=lambda: NOW)
        seed_account(self.store, user_count=1)
        for code_id in codes:
            seed_code(self.store, code_id)
        seed_order(self.store)
        self.sync = FakeSyncClient(counts={1: [1, 0]})
        self.redeemer = CodeRedeemer(self.store, self.sync, SweeperSettings())

    async def redeem(self, **kw):
        order = self.store.load_order("C1")
        account = self.store.load_account(1)
        args = dict(already_member=False, already_invited=False, now=NOW)
        args.update(kw)
        return await self.redeemer.redeem(order, "buyer@example.com", account, 5, **args)


class TestReservationRace(RedeemCase):
    async def test_single_loss_takes_next_candidate(self):
        self.build(losses=1)
        outcome = await self.redeem()
        self.assertEqual(self.store.attempted, [10, 11])
        self.assertEqual(outcome.code_id, 11)
        self.assertEqual(outcome.invite_status, "sent")

    async def test_double_loss_exhausts(self):
        self.build(losses=2)
        with self.assertRaises(AllocationExhausted):
            await self.redeem()
        self.assertEqual(self.store.attempted, [10, 11])
        self.assertEqual(self.sync.calls_to("invite"), [])

    async def test_empty_pool(self):
        self.build(codes=())
        with self.assertRaises(AllocationExhausted):
            await self.redeem()


class TestInviteBookkeeping(RedeemCase):
    async def test_counts_from_invite_result(self):
        self.build()
        outcome = await self.redeem()
        self.assertEqual(outcome.invite_count, 1)
        self.assertEqual(self.store.load_account(1).invite_count, 1)

    async def test_increment_when_provider_omits_counts(self):
        self.build()

        async def bare_invite(account_id, email):
            return InviteResult(sent=True, message="sent")

        self.sync.invite = bare_invite
        outcome = await self.redeem()
        self.assertEqual(outcome.invite_count, 1)

    async def test_unsent_invite_still_redeems(self):
        self.build()

        async def manual(account_id, email):
            return InviteResult(sent=False, message="manual_required")

        self.sync.invite = manual
        outcome = await self.redeem()
        self.assertFalse(outcome.invite_sent)
        self.assertEqual(self.store.load_account(1).invite_count, 0)
        self.assertIsNotNone(self.store.find_redeemed_code_for_order("C1"))


if __name__ == "__main__":
    unittest.main()
