"""
Seat Fulfillment — Type Definitions

Data structures shared by the allocator, the state machine, the store
and the sweeper: orders and their fulfillment lifecycle, shared accounts,
redemption codes, the versioned action payload persisted on every order,
and the typed results the fulfillment pipeline hands between stages.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fulfillment.errors import InvalidTransition


# ─── Timestamps ─────────────────────────────────────────────────────

# Account expiry and order timestamps are written by the admin side in
# Asia/Shanghai local time without an offset.
DEFAULT_STORAGE_TZ = timezone(timedelta(hours=8))

_DB_TIMESTAMP = re.compile(
    r"(\d{4})[/-](\d{1,2})[/-](\d{1,2})[ T](\d{1,2}):(\d{2})(?::(\d{2}))?"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, default_tz: timezone = timezone.utc) -> datetime | None:
    """
    Parse a stored timestamp into an aware datetime.

    Accepts datetimes, epoch seconds, ISO-8601 strings and the
    ``YYYY-MM-DD HH:MM[:SS]`` form (``/`` separators allowed). Naive
    values are interpreted in ``default_tz``. Returns None for blanks
    and anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=default_tz)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    raw = str(value).strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        m = _DB_TIMESTAMP.fullmatch(raw)
        if not m:
            return None
        try:
            parsed = datetime(*(int(g) if g else 0 for g in m.groups()))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


# ─── Order Lifecycle ────────────────────────────────────────────────

class FulfillmentStatus(str, enum.Enum):
    """Lifecycle states for an order's fulfillment action."""
    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    RETRYING = "retrying"
    FULFILLED = "fulfilled"
    FAILED = "failed"

    @classmethod
    def from_db(cls, value: Any) -> FulfillmentStatus:
        """NULL/blank (never attempted) and unknown values map to UNPROCESSED."""
        raw = str(value or "").strip().lower()
        try:
            return cls(raw)
        except ValueError:
            return cls.UNPROCESSED

    @property
    def is_terminal(self) -> bool:
        return self in (FulfillmentStatus.FULFILLED, FulfillmentStatus.FAILED)


# processing -> processing is the re-entry after a crash left the row mid-flight.
_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.UNPROCESSED: frozenset({
        FulfillmentStatus.PROCESSING, FulfillmentStatus.FAILED,
    }),
    FulfillmentStatus.RETRYING: frozenset({
        FulfillmentStatus.PROCESSING, FulfillmentStatus.FAILED,
    }),
    FulfillmentStatus.PROCESSING: frozenset({
        FulfillmentStatus.PROCESSING, FulfillmentStatus.RETRYING,
        FulfillmentStatus.FULFILLED, FulfillmentStatus.FAILED,
    }),
    FulfillmentStatus.FULFILLED: frozenset(),
    FulfillmentStatus.FAILED: frozenset(),
}


def check_transition(current: FulfillmentStatus, target: FulfillmentStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


class OrderType(str, enum.Enum):
    """Order variant; drives the default service duration."""
    WARRANTY = "warranty"
    NO_WARRANTY = "no_warranty"
    ANTI_BAN = "anti_ban"

    @classmethod
    def normalize(cls, value: Any) -> OrderType:
        raw = str(value or "").strip().lower()
        try:
            return cls(raw)
        except ValueError:
            return cls.WARRANTY


# ─── Action Payload ─────────────────────────────────────────────────

ACTION_PAYLOAD_VERSION = 1

# Older rows were written with camelCase keys.
_LEGACY_KEYS = {
    "lastError": "last_error",
    "lastAttemptAt": "last_attempt_at",
    "nextRetryAt": "next_retry_at",
    "stopRetry": "stop_retry",
    "alertSentAt": "alert_sent_at",
    "orderType": "order_type",
    "accountId": "account_id",
}


def _as_int(value: Any, default: int | None, minimum: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class ActionPayload:
    """
    Structured fulfillment state persisted with every order.

    Read with ``from_raw`` which validates each field on its own: a bad
    field falls back to its default instead of poisoning the whole
    payload, and unknown keys are dropped.
    """
    version: int = ACTION_PAYLOAD_VERSION
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    stop_retry: bool = False
    alert_sent_at: datetime | None = None
    order_type: str | None = None

    # Descriptive, for operators reading the row
    uid: str | None = None
    username: str | None = None
    email: str | None = None
    account_id: int | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> ActionPayload:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except ValueError:
                raw = {}
        if not isinstance(raw, dict):
            return cls()

        data = {_LEGACY_KEYS.get(k, k): v for k, v in raw.items()}
        order_type = _as_str(data.get("order_type"))
        return cls(
            version=_as_int(data.get("version"), ACTION_PAYLOAD_VERSION, minimum=1),
            attempts=_as_int(data.get("attempts"), 0, minimum=0),
            last_error=_as_str(data.get("last_error")),
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
            next_retry_at=parse_timestamp(data.get("next_retry_at")),
            stop_retry=_as_bool(data.get("stop_retry")),
            alert_sent_at=parse_timestamp(data.get("alert_sent_at")),
            order_type=OrderType.normalize(order_type).value if order_type else None,
            uid=_as_str(data.get("uid")),
            username=_as_str(data.get("username")),
            email=_as_str(data.get("email")),
            account_id=_as_int(data.get("account_id"), None, minimum=1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": format_timestamp(self.last_attempt_at),
            "next_retry_at": format_timestamp(self.next_retry_at),
            "stop_retry": self.stop_retry,
            "alert_sent_at": format_timestamp(self.alert_sent_at),
            "order_type": self.order_type,
            "uid": self.uid,
            "username": self.username,
            "email": self.email,
            "account_id": self.account_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


# ─── Orders ─────────────────────────────────────────────────────────

@dataclass
class Order:
    """A paid purchase awaiting (or past) fulfillment."""
    order_no: str
    uid: str
    target_account_id: int
    status: str = "paid"
    username: str = ""
    order_email: str | None = None
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNPROCESSED
    action_message: str | None = None
    payload: ActionPayload = field(default_factory=ActionPayload)
    paid_at: datetime | None = None
    created_at: datetime | None = None
    refunded_at: datetime | None = None
    service_days: int | None = None

    @property
    def order_type(self) -> OrderType:
        return OrderType.normalize(self.payload.order_type)

    @property
    def is_addressable(self) -> bool:
        """Enough identity to lock and fulfill the order at all."""
        return bool(self.order_no and self.uid and self.target_account_id > 0)

    def is_due(self, now: datetime) -> bool:
        """Not stopped and outside any backoff window."""
        if self.payload.stop_retry:
            return False
        return self.payload.next_retry_at is None or now >= self.payload.next_retry_at


# ─── Shared Accounts & Codes ────────────────────────────────────────

@dataclass
class SharedAccount:
    """A capacity-limited shared account that orders are fulfilled into."""
    id: int
    email: str = ""
    user_count: int = 0
    invite_count: int = 0
    expire_at: datetime | None = None
    is_open: bool = False
    is_banned: bool = False
    token: str = ""
    chatgpt_account_id: str = ""
    created_at: datetime | None = None

    @property
    def occupancy(self) -> int:
        """Members plus pending invites; over-counts rather than under-counts."""
        return max(0, self.user_count) + max(0, self.invite_count)

    @property
    def has_credentials(self) -> bool:
        return bool(self.token.strip() and self.chatgpt_account_id.strip())

    @property
    def is_eligible(self) -> bool:
        return self.is_open and not self.is_banned


@dataclass
class RedemptionCode:
    """A consumable grant bound to one shared account."""
    id: int
    code: str
    account_email: str
    channel: str = "common"
    reserved_for_order_no: str | None = None
    reserved_for_uid: str | None = None
    reserved_for_entry_id: int | None = None
    is_redeemed: bool = False

    def is_available_to(self, order_no: str | None = None) -> bool:
        """Unredeemed and either unreserved or reserved for ``order_no`` itself."""
        if self.is_redeemed:
            return False
        if self.reserved_for_entry_id:
            return False
        if self.reserved_for_order_no:
            return bool(order_no) and self.reserved_for_order_no == order_no
        return not self.reserved_for_uid


@dataclass
class SeatCandidate:
    """One code joined with the account it is bound to."""
    code: RedemptionCode
    account: SharedAccount

    @property
    def code_id(self) -> int:
        return self.code.id

    @property
    def expire_at(self) -> datetime | None:
        return self.account.expire_at

    @property
    def occupancy(self) -> int:
        return self.account.occupancy


# ─── Pipeline Results ───────────────────────────────────────────────

@dataclass
class StageResult:
    """Output of one fulfillment stage; ``stop`` ends the pipeline early."""
    stage: str
    ok: bool = True
    stop: bool = False
    data: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


@dataclass
class FulfillmentOutcome:
    """What one fulfillment attempt did to one order."""
    order_no: str
    status: FulfillmentStatus
    skipped: bool = False
    retryable: bool = False
    message: str = ""
    attempts: int = 0
    skip_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_no": self.order_no,
            "status": self.status.value,
            "skipped": self.skipped,
            "retryable": self.retryable,
            "message": self.message,
            "attempts": self.attempts,
            "skip_reason": self.skip_reason,
        }
