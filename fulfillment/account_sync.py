"""
Seat Fulfillment — Account-Sync Collaborator

The engine talks to the shared-account provider through AccountSyncClient:

    sync_member_count(account_id)        → current member count
    sync_invite_count(account_id)        → current pending-invite count
    list_members(account_id, query)      → member emails matching query
    list_invites(account_id, query)      → invited emails matching query
    invite(account_id, email)            → InviteResult

Every failure is raised as AccountSyncError with an explicit HTTP-like
status and a SyncErrorKind chosen here, at the throw site, from the
response status and the body's error code.

HttpAccountSyncClient is the production implementation (httpx, async).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from fulfillment.errors import AccountSyncError, ConfigError, SyncErrorKind
from fulfillment.types import normalize_email

logger = logging.getLogger("seat_fulfillment.account_sync")


@dataclass
class InviteResult:
    sent: bool
    message: str = ""
    invite_count: int | None = None
    user_count: int | None = None


class AccountSyncClient:
    """Abstract account-sync interface."""

    async def sync_member_count(self, account_id: int) -> int:
        raise NotImplementedError

    async def sync_invite_count(self, account_id: int) -> int:
        raise NotImplementedError

    async def list_members(self, account_id: int, query: str = "", limit: int = 25) -> list[str]:
        raise NotImplementedError

    async def list_invites(self, account_id: int, query: str = "", limit: int = 25) -> list[str]:
        raise NotImplementedError

    async def invite(self, account_id: int, email: str) -> InviteResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


def _error_code(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("code") or "").strip().lower()
    return str(body.get("code") or error or "").strip().lower()


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return fallback


class HttpAccountSyncClient(AccountSyncClient):
    """
    REST client for the account provider.

    Endpoints (relative to base_url):
        GET  /accounts/{id}/users?offset=&limit=&query=    → {"items": [{"email"}], "total"}
        GET  /accounts/{id}/invites?offset=&limit=&query=  → {"items": [{"email_address"}], "total"}
        POST /accounts/{id}/invites  {"email"}             → {"invite_status", "invite_count"}
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
        )

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> HttpAccountSyncClient:
        section = cfg.get("account_sync", {}) or {}
        base_url = str(section.get("base_url") or "").strip()
        if not base_url:
            raise ConfigError("account_sync.base_url is not configured")
        return cls(
            base_url=base_url,
            token=str(section.get("token") or ""),
            timeout_seconds=float(section.get("timeout_seconds", 15.0)),
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise AccountSyncError(f"account API unreachable: {e}", 503, SyncErrorKind.TRANSPORT) from e

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            code = _error_code(body)
            kind = (
                SyncErrorKind.ACCOUNT_DEACTIVATED
                if code == "account_deactivated"
                else SyncErrorKind.for_status(resp.status_code)
            )
            message = _error_message(body, f"account API {method} {path} returned {resp.status_code}")
            logger.warning(
                "Account API error %s %s → %d (%s)", method, path, resp.status_code, kind.value,
            )
            raise AccountSyncError(message, resp.status_code, kind)

        return body if isinstance(body, dict) else {}

    async def _page(self, account_id: int, resource: str, query: str, limit: int) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/accounts/{account_id}/{resource}",
            params={"offset": 0, "limit": limit, "query": query},
        )

    async def sync_member_count(self, account_id: int) -> int:
        body = await self._page(account_id, "users", "", 1)
        return int(body.get("total") or 0)

    async def sync_invite_count(self, account_id: int) -> int:
        body = await self._page(account_id, "invites", "", 1)
        return int(body.get("total") or 0)

    async def list_members(self, account_id: int, query: str = "", limit: int = 25) -> list[str]:
        body = await self._page(account_id, "users", query, limit)
        return [normalize_email(item.get("email")) for item in body.get("items") or []
                if isinstance(item, dict)]

    async def list_invites(self, account_id: int, query: str = "", limit: int = 25) -> list[str]:
        body = await self._page(account_id, "invites", query, limit)
        return [normalize_email(item.get("email_address")) for item in body.get("items") or []
                if isinstance(item, dict)]

    async def invite(self, account_id: int, email: str) -> InviteResult:
        body = await self._request("POST", f"/accounts/{account_id}/invites", json={"email": email})
        status = str(body.get("invite_status") or "").strip().lower()
        invite_count = body.get("invite_count")
        user_count = body.get("user_count")
        return InviteResult(
            sent=status in ("sent", "pending", "invited"),
            message=status,
            invite_count=int(invite_count) if isinstance(invite_count, int) else None,
            user_count=int(user_count) if isinstance(user_count, int) else None,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
