"""
Seat Fulfillment — Error Taxonomy

  FulfillmentDataError  — missing email, ineligible account, missing config.
                          Terminal, never retried, alerted once.
  AccountSyncError      — status-coded failure from the account API.
                          Retryable or terminal per fulfillment.retry.classify.
  AllocationExhausted   — no eligible seat right now. Retryable.
  InvalidTransition     — a status change the order lifecycle forbids.
  ConfigError           — settings that cannot be interpreted.

AccountSyncError carries an explicit ``kind`` set where it is raised, so
nothing downstream needs to look inside the message text.
"""

from __future__ import annotations

import enum


class FulfillmentError(Exception):
    """Base class for every error raised by the fulfillment engine."""


class FulfillmentDataError(FulfillmentError):
    """The order or its target account is unusable as stored."""

    def __init__(self, message: str, code: str = "data_error"):
        self.code = code
        super().__init__(message)


class SyncErrorKind(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    TRANSPORT = "transport"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"

    @classmethod
    def for_status(cls, status: int) -> SyncErrorKind:
        if status == 401:
            return cls.UNAUTHORIZED
        if status == 403:
            return cls.FORBIDDEN
        if status == 404:
            return cls.NOT_FOUND
        if status == 429:
            return cls.RATE_LIMITED
        if 500 <= status <= 599:
            return cls.SERVER_ERROR
        if 400 <= status <= 499:
            return cls.BAD_REQUEST
        return cls.UNKNOWN


class AccountSyncError(FulfillmentError):
    """Failure reported by the account-sync collaborator."""

    def __init__(self, message: str, status: int = 0, kind: SyncErrorKind | None = None):
        self.status = int(status or 0)
        self.kind = kind or SyncErrorKind.for_status(self.status)
        super().__init__(message)

    def __repr__(self) -> str:
        return f"AccountSyncError({str(self)!r}, status={self.status}, kind={self.kind.value})"


class AllocationExhausted(FulfillmentError):
    """No unreserved code on an eligible account satisfies the order."""

    status = 409

    def __init__(self, message: str = "no seat available on the target account right now"):
        super().__init__(message)


class InvalidTransition(FulfillmentError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid fulfillment transition: {current} -> {target}")


class ConfigError(FulfillmentError):
    pass
