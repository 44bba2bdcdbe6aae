"""
Seat Fulfillment — Capacity Allocator

Chooses which code (and therefore which shared account seat) satisfies an
order.

Selection:
  1. Filter: code unredeemed and not reserved for anyone else; account
     occupancy (members + pending invites) below the ceiling; account open,
     not banned, with credentials; account expiry at or after the order's
     minimum validity (and never in the past).
  2. Preference: a pluggable policy narrows the survivors. The default
     keeps accounts not created today and falls back to everything when
     that leaves nothing.
  3. Order by expiry (soonest first), then occupancy (emptiest first), then
     code id. The first entry wins.

The result depends only on the pool snapshot, ``now`` and the arguments,
so the same snapshot always yields the same seat.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from fulfillment.types import (
    DEFAULT_STORAGE_TZ,
    Order,
    OrderType,
    SeatCandidate,
    SharedAccount,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger("seat_fulfillment.allocator")

PreferencePolicy = Callable[[list[SeatCandidate], datetime], list[SeatCandidate]]


# ═══════════════════════════════════════════════════════════════════
# Preference Policies
# ═══════════════════════════════════════════════════════════════════

def no_preference(candidates: list[SeatCandidate], now: datetime) -> list[SeatCandidate]:
    return candidates


class PreferNonToday:
    """
    Prefer accounts created before today (in the storage timezone).
    Freshly created accounts get banned more often, so they are used last.
    """

    def __init__(self, tz: timezone = DEFAULT_STORAGE_TZ):
        self.tz = tz

    def created_today(self, account: SharedAccount, now: datetime) -> bool:
        if account.created_at is None:
            return False
        return account.created_at.astimezone(self.tz).date() == now.astimezone(self.tz).date()

    def __call__(self, candidates: list[SeatCandidate], now: datetime) -> list[SeatCandidate]:
        older = [c for c in candidates if not self.created_today(c.account, now)]
        return older or candidates


def build_preference(prefer_non_today: bool = True, tz: timezone = DEFAULT_STORAGE_TZ) -> PreferencePolicy:
    return PreferNonToday(tz) if prefer_non_today else no_preference


# ═══════════════════════════════════════════════════════════════════
# Selection
# ═══════════════════════════════════════════════════════════════════

def rejection_reason(
    candidate: SeatCandidate,
    floor: datetime,
    max_occupancy: int,
    order_no: str | None = None,
) -> str | None:
    """Why ``candidate`` cannot be used, or None if it can."""
    if not candidate.code.is_available_to(order_no):
        return "reserved_or_redeemed"
    account = candidate.account
    if account.occupancy >= max_occupancy:
        return "at_capacity"
    if not account.is_eligible:
        return "account_ineligible"
    if not account.has_credentials:
        return "missing_credentials"
    if account.expire_at is None:
        return "missing_expiry"
    if account.expire_at < floor:
        return "expires_too_soon"
    return None


def select_resource(
    pool: Sequence[SeatCandidate],
    min_valid_until: datetime | None,
    max_occupancy: int,
    *,
    now: datetime | None = None,
    order_no: str | None = None,
    preference: PreferencePolicy | None = None,
) -> SeatCandidate | None:
    """
    Pick the best candidate from ``pool`` or None.

    Args:
        pool:            Codes joined with their accounts.
        min_valid_until: Earliest acceptable account expiry. None means "now".
        max_occupancy:   Occupancy must be strictly below this.
        now:             Reference time (injectable for tests).
        order_no:        Codes already reserved for this order stay eligible.
        preference:      Narrowing policy; defaults to PreferNonToday().
    """
    now = now or utcnow()
    floor = max(now, min_valid_until) if min_valid_until else now
    preference = preference or PreferNonToday()

    survivors: list[SeatCandidate] = []
    rejected: dict[str, int] = {}
    for candidate in pool:
        reason = rejection_reason(candidate, floor, max_occupancy, order_no)
        if reason is None:
            survivors.append(candidate)
        else:
            rejected[reason] = rejected.get(reason, 0) + 1

    if not survivors:
        logger.debug(
            "No seat candidate (pool=%d, floor=%s, max_occupancy=%d, rejected=%s)",
            len(pool), floor.isoformat(), max_occupancy, rejected,
        )
        return None

    narrowed = preference(survivors, now)
    best = min(narrowed, key=lambda c: (c.expire_at, c.occupancy, c.code_id))
    logger.debug(
        "Selected code %d on account %d (expire_at=%s, occupancy=%d, survivors=%d)",
        best.code_id, best.account.id, best.expire_at.isoformat(), best.occupancy, len(survivors),
    )
    return best


# ═══════════════════════════════════════════════════════════════════
# Expiry Window
# ═══════════════════════════════════════════════════════════════════

def parse_expire_at(value: Any, tz: timezone = DEFAULT_STORAGE_TZ) -> datetime | None:
    """Parse a stored account expiry (local storage time unless an offset is given)."""
    return parse_timestamp(value, tz)


def resolve_service_days(
    order: Order,
    warranty_days: int = 30,
    no_warranty_days: int | None = None,
) -> int:
    if order.service_days and order.service_days >= 1:
        return order.service_days
    if order.order_type == OrderType.NO_WARRANTY:
        return max(1, no_warranty_days or warranty_days)
    return max(1, warranty_days)


def compute_min_valid_until(
    order: Order,
    warranty_days: int = 30,
    no_warranty_days: int | None = None,
) -> datetime | None:
    """
    The expiry an account must reach to honor the order's promised service.

    Measured from the later of the order's paid and created timestamps,
    never from the time of the fulfillment attempt. None when the order
    carries neither timestamp.
    """
    starts = [ts for ts in (order.paid_at, order.created_at) if ts is not None]
    if not starts:
        logger.warning("Order %s has no paid/created timestamp; expiry floor is now", order.order_no)
        return None
    days = resolve_service_days(order, warranty_days, no_warranty_days)
    return max(starts) + timedelta(days=days)
