"""
Seat Fulfillment — Code Redemption (allocate + invite)

The one non-idempotent step of fulfillment, written so that repeating it
after a partial failure is safe:

  1. A code already redeemed for this order short-circuits allocation.
  2. Otherwise a code already reserved for this order is preferred; failing
     that, the allocator picks from the account's pool and the code is
     reserved with a conditional UPDATE. Losing that race to another
     reservation means one more pick, then AllocationExhausted.
  3. The buyer is invited unless the account already lists them as a
     member or pending invite.
  4. The code is marked redeemed and the account's invite count bumped.

A failed invite keeps the reservation, so the next attempt reuses the
same code instead of taking a second one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from fulfillment.account_sync import AccountSyncClient
from fulfillment.allocator import (
    PreferencePolicy,
    build_preference,
    compute_min_valid_until,
    select_resource,
)
from fulfillment.config import SweeperSettings
from fulfillment.errors import AllocationExhausted
from fulfillment.store import OrderStore
from fulfillment.types import Order, SeatCandidate, SharedAccount

logger = logging.getLogger("seat_fulfillment.redemption")

RESERVATION_ATTEMPTS = 2


@dataclass
class RedemptionOutcome:
    code_id: int
    code: str
    account_id: int
    invite_sent: bool
    invite_status: str
    user_count: int
    invite_count: int


class CodeRedeemer:
    def __init__(
        self,
        store: OrderStore,
        sync: AccountSyncClient,
        settings: SweeperSettings,
        preference: PreferencePolicy | None = None,
    ):
        self.store = store
        self.sync = sync
        self.settings = settings
        self.preference = preference or build_preference(
            settings.prefer_non_today, settings.storage_tz,
        )

    def _pick(
        self,
        order: Order,
        account: SharedAccount,
        capacity_limit: int,
        now: datetime,
    ) -> SeatCandidate | None:
        pool = self.store.load_code_pool(account.email)
        min_valid_until = compute_min_valid_until(
            order,
            self.settings.service_days_warranty,
            self.settings.service_days_no_warranty,
        )
        ours = [c for c in pool if c.code.reserved_for_order_no == order.order_no]
        for candidates in (ours, pool):
            if not candidates:
                continue
            picked = select_resource(
                candidates,
                min_valid_until,
                capacity_limit,
                now=now,
                order_no=order.order_no,
                preference=self.preference,
            )
            if picked is not None:
                return picked
        return None

    def _reserve(
        self,
        order: Order,
        email: str,
        account: SharedAccount,
        capacity_limit: int,
        now: datetime,
    ) -> SeatCandidate:
        for attempt in range(1, RESERVATION_ATTEMPTS + 1):
            candidate = self._pick(order, account, capacity_limit, now)
            if candidate is None:
                raise AllocationExhausted()
            if self.store.reserve_code(candidate.code_id, order.order_no, order.uid, email):
                return candidate
            logger.info(
                "Lost reservation of code %d for order %s (attempt %d/%d)",
                candidate.code_id, order.order_no, attempt, RESERVATION_ATTEMPTS,
            )
        raise AllocationExhausted("seat reservation contended; will retry")

    async def redeem(
        self,
        order: Order,
        email: str,
        account: SharedAccount,
        capacity_limit: int,
        *,
        already_member: bool,
        already_invited: bool,
        now: datetime,
    ) -> RedemptionOutcome:
        redeemed = self.store.find_redeemed_code_for_order(order.order_no)
        if redeemed:
            logger.info("Order %s already holds redeemed code %s", order.order_no, redeemed["id"])
            current = self.store.load_account(account.id) or account
            return RedemptionOutcome(
                code_id=int(redeemed["id"]),
                code=str(redeemed["code"]),
                account_id=account.id,
                invite_sent=already_invited or already_member,
                invite_status="already_redeemed",
                user_count=current.user_count,
                invite_count=current.invite_count,
            )

        candidate = self._reserve(order, email, account, capacity_limit, now)

        if already_member:
            invite_sent, invite_status = True, "already_member"
            result = None
        elif already_invited:
            invite_sent, invite_status = True, "already_invited"
            result = None
        else:
            result = await self.sync.invite(account.id, email)
            invite_sent, invite_status = result.sent, result.message or ("sent" if result.sent else "not_sent")

        self.store.mark_code_redeemed(candidate.code_id, order.order_no, email)
        if result is not None:
            if result.invite_count is not None or result.user_count is not None:
                self.store.update_account_counts(account.id, result.user_count, result.invite_count)
            elif result.sent:
                self.store.increment_invite_count(account.id)

        current = self.store.load_account(account.id) or account
        logger.info(
            "Redeemed code %d for order %s on account %d (invite=%s)",
            candidate.code_id, order.order_no, account.id, invite_status,
        )
        return RedemptionOutcome(
            code_id=candidate.code_id,
            code=candidate.code.code,
            account_id=account.id,
            invite_sent=invite_sent,
            invite_status=invite_status,
            user_count=current.user_count,
            invite_count=current.invite_count,
        )
