"""
Seat Fulfillment — Fulfillment State Machine

Moves one order through its fulfillment lifecycle:

    unprocessed ──► processing ──► fulfilled
                        │   ▲
                        ▼   │
                     retrying ──► failed

One attempt is a sequential pipeline of named stages. Each stage returns a
StageResult; ``stop`` ends the pipeline, ``ok=False`` routes to the
failure path:

    gate              — skip orders that are unaddressable, terminal,
                        stopped, or still inside their backoff window
    resolve_buyer     — find the buyer email (reservation → order → profile)
    validate_target   — the target account exists, is open, has an email
    begin_attempt     — attempts += 1, persist ``processing``, commit
    sync_account      — refresh counts, check membership and invites
    allocate_and_invite — reserve a seat, invite, mark the code redeemed
    record_success    — persist ``fulfilled`` with a result snapshot

Data problems found before begin_attempt fail the order terminally
without counting an attempt. Errors from sync_account and
allocate_and_invite are classified by the retry policy. Anything else
propagates to the caller (the sweeper's per-order boundary) with the
order left as it was last persisted.

The caller must hold the order's locks for the whole call.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from fulfillment.account_sync import AccountSyncClient
from fulfillment.alerts import AlertNotifier
from fulfillment.config import SweeperSettings
from fulfillment.errors import FulfillmentDataError
from fulfillment.logging import log_event
from fulfillment.redemption import CodeRedeemer, RedemptionOutcome
from fulfillment.retry import RetryPolicy
from fulfillment.store import OrderStore
from fulfillment.types import (
    ActionPayload,
    FulfillmentOutcome,
    FulfillmentStatus,
    Order,
    SharedAccount,
    StageResult,
    check_transition,
    normalize_email,
    utcnow,
)

logger = logging.getLogger("seat_fulfillment.fulfiller")

MSG_INVITE_SENT = "seat assigned, invite sent"
MSG_INVITE_NOT_SENT = "seat assigned, invite not sent (manual add needed)"

# Stages whose failures go through retry classification
_CLASSIFIED_STAGES = frozenset({"sync_account", "allocate_and_invite"})


@dataclass
class _Attempt:
    """Working state for one pass through the pipeline."""
    order: Order
    now: datetime
    payload: ActionPayload
    email: str = ""
    account: SharedAccount | None = None
    already_member: bool = False
    already_invited: bool = False
    redemption: RedemptionOutcome | None = None
    started: bool = False
    results: list[StageResult] = field(default_factory=list)


class OrderFulfiller:
    """Runs the fulfillment pipeline for one order at a time."""

    STAGES = (
        "gate",
        "resolve_buyer",
        "validate_target",
        "begin_attempt",
        "sync_account",
        "allocate_and_invite",
        "record_success",
    )

    def __init__(
        self,
        store: OrderStore,
        sync: AccountSyncClient,
        notifier: AlertNotifier,
        policy: RetryPolicy,
        settings: SweeperSettings,
        redeemer: CodeRedeemer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sync = sync
        self.notifier = notifier
        self.policy = policy
        self.settings = settings
        self.redeemer = redeemer or CodeRedeemer(store, sync, settings)
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════
    # Pipeline
    # ═══════════════════════════════════════════════════════════════

    async def fulfill(self, order: Order, now: datetime | None = None) -> FulfillmentOutcome:
        ctx = _Attempt(
            order=order,
            now=now or self._clock(),
            payload=dataclasses.replace(order.payload),
        )

        for name in self.STAGES:
            stage = getattr(self, f"_stage_{name}")
            try:
                result = await stage(ctx)
            except Exception as e:
                if name not in _CLASSIFIED_STAGES:
                    raise
                result = StageResult(stage=name, ok=False, stop=True, error=e)
            ctx.results.append(result)

            if not result.ok:
                return self._record_failure(ctx, result)
            if result.stop:
                return result.data["outcome"]

        # record_success always stops; reaching here means STAGES was edited
        raise RuntimeError(f"fulfillment pipeline for {order.order_no} did not finish")

    def _skip(self, ctx: _Attempt, stage: str, reason: str) -> StageResult:
        logger.debug("Skipping order %s: %s", ctx.order.order_no, reason)
        outcome = FulfillmentOutcome(
            order_no=ctx.order.order_no,
            status=ctx.order.fulfillment_status,
            skipped=True,
            message=ctx.order.action_message or "",
            attempts=ctx.order.payload.attempts,
            skip_reason=reason,
        )
        return StageResult(stage=stage, stop=True, data={"outcome": outcome})

    # ── Stage 0: gate ────────────────────────────────────────────

    async def _stage_gate(self, ctx: _Attempt) -> StageResult:
        order = ctx.order
        if not order.is_addressable:
            return self._skip(ctx, "gate", "unaddressable")
        if order.fulfillment_status.is_terminal:
            return self._skip(ctx, "gate", order.fulfillment_status.value)
        if order.status != "paid" or order.refunded_at is not None:
            return self._skip(ctx, "gate", "not_paid")
        if order.payload.stop_retry:
            return self._skip(ctx, "gate", "stop_retry")
        if order.payload.next_retry_at and ctx.now < order.payload.next_retry_at:
            return self._skip(ctx, "gate", "backoff")
        return StageResult(stage="gate")

    # ── Stage 1: resolve_buyer ───────────────────────────────────

    async def _stage_resolve_buyer(self, ctx: _Attempt) -> StageResult:
        order = ctx.order
        email = (
            self.store.load_reserved_order_email(order.order_no)
            or normalize_email(order.order_email)
            or self.store.load_user_email(order.uid)
        )
        if not email:
            return StageResult(
                stage="resolve_buyer", ok=False, stop=True,
                error=FulfillmentDataError("missing buyer email", "missing_email"),
            )
        if not order.order_email:
            self.store.ensure_order_email(order.order_no, email)
        ctx.email = email
        return StageResult(stage="resolve_buyer", data={"email": email})

    # ── Stage 2: validate_target ─────────────────────────────────

    async def _stage_validate_target(self, ctx: _Attempt) -> StageResult:
        account_id = ctx.order.target_account_id
        account = self.store.load_account(account_id)
        if account is None or not account.is_eligible:
            return StageResult(
                stage="validate_target", ok=False, stop=True,
                error=FulfillmentDataError(
                    f"target account {account_id} is missing, closed or banned",
                    "account_ineligible",
                ),
            )
        if not account.email.strip():
            return StageResult(
                stage="validate_target", ok=False, stop=True,
                error=FulfillmentDataError(
                    f"target account {account_id} has no email", "account_missing_email",
                ),
            )
        if not account.has_credentials:
            return StageResult(
                stage="validate_target", ok=False, stop=True,
                error=FulfillmentDataError(
                    f"target account {account_id} has no credentials", "missing_credentials",
                ),
            )
        ctx.account = account
        return StageResult(stage="validate_target", data={"account_id": account.id})

    # ── Stage 3: begin_attempt ───────────────────────────────────

    async def _stage_begin_attempt(self, ctx: _Attempt) -> StageResult:
        order = ctx.order
        check_transition(order.fulfillment_status, FulfillmentStatus.PROCESSING)

        payload = self._describe(ctx)
        payload.attempts += 1
        payload.last_attempt_at = ctx.now
        payload.next_retry_at = None
        ctx.payload = payload

        message = f"processing (attempt {payload.attempts})"
        if not self.store.persist_action_state(
            order.order_no, FulfillmentStatus.PROCESSING, message, payload,
        ):
            logger.warning("Order %s became terminal before attempt start", order.order_no)
            return self._skip(ctx, "begin_attempt", "concurrently_finished")
        self.store.commit()
        ctx.started = True

        log_event(
            logger, logging.INFO, "Fulfillment attempt started",
            order_no=order.order_no, attempt=payload.attempts,
            account_id=order.target_account_id,
        )
        return StageResult(stage="begin_attempt", data={"attempt": payload.attempts})

    # ── Stage 4: sync_account ────────────────────────────────────

    async def _stage_sync_account(self, ctx: _Attempt) -> StageResult:
        account_id = ctx.account.id
        user_count = await self.sync.sync_member_count(account_id)
        invite_count = await self.sync.sync_invite_count(account_id)
        self.store.update_account_counts(account_id, user_count, invite_count)

        members = await self.sync.list_members(account_id, ctx.email)
        invites = await self.sync.list_invites(account_id, ctx.email)
        ctx.already_member = ctx.email in {normalize_email(m) for m in members}
        ctx.already_invited = ctx.email in {normalize_email(i) for i in invites}

        ctx.account = self.store.load_account(account_id) or ctx.account
        return StageResult(stage="sync_account", data={
            "user_count": user_count,
            "invite_count": invite_count,
            "already_member": ctx.already_member,
            "already_invited": ctx.already_invited,
        })

    # ── Stage 5: allocate_and_invite ─────────────────────────────

    async def _stage_allocate_and_invite(self, ctx: _Attempt) -> StageResult:
        capacity = self.settings.seat_capacity
        if ctx.already_member or ctx.already_invited:
            capacity += 1
        ctx.redemption = await self.redeemer.redeem(
            ctx.order,
            ctx.email,
            ctx.account,
            capacity,
            already_member=ctx.already_member,
            already_invited=ctx.already_invited,
            now=ctx.now,
        )
        return StageResult(stage="allocate_and_invite", data={"code_id": ctx.redemption.code_id})

    # ── Stage 6: record_success ──────────────────────────────────

    async def _stage_record_success(self, ctx: _Attempt) -> StageResult:
        order, redemption = ctx.order, ctx.redemption
        check_transition(FulfillmentStatus.PROCESSING, FulfillmentStatus.FULFILLED)

        message = MSG_INVITE_SENT if redemption.invite_sent else MSG_INVITE_NOT_SENT
        payload = ctx.payload
        payload.last_error = None
        payload.next_retry_at = None
        result = {
            "message": message,
            "current_open_account_id": redemption.account_id,
            "code_id": redemption.code_id,
            "invite_status": redemption.invite_status,
            "account": {
                "id": redemption.account_id,
                "user_count": redemption.user_count,
                "invite_count": redemption.invite_count,
            },
        }
        self.store.persist_action_state(
            order.order_no, FulfillmentStatus.FULFILLED, message, payload, result,
        )
        self.store.update_user_current_account(order.uid, redemption.account_id, ctx.email)
        self.store.commit()

        log_event(
            logger, logging.INFO, "Order fulfilled",
            order_no=order.order_no, attempt=payload.attempts,
            account_id=redemption.account_id, code_id=redemption.code_id,
            invite_status=redemption.invite_status,
        )
        outcome = FulfillmentOutcome(
            order_no=order.order_no,
            status=FulfillmentStatus.FULFILLED,
            message=message,
            attempts=payload.attempts,
        )
        return StageResult(stage="record_success", stop=True, data={"outcome": outcome})

    # ═══════════════════════════════════════════════════════════════
    # Failure Path
    # ═══════════════════════════════════════════════════════════════

    def _describe(self, ctx: _Attempt) -> ActionPayload:
        """Copy of the payload with the descriptive fields filled in."""
        order = ctx.order
        return dataclasses.replace(
            ctx.payload,
            order_type=ctx.payload.order_type or order.order_type.value,
            uid=order.uid,
            username=order.username or ctx.payload.username,
            email=ctx.email or ctx.payload.email,
            account_id=order.target_account_id,
        )

    def _record_failure(self, ctx: _Attempt, result: StageResult) -> FulfillmentOutcome:
        error = result.error
        payload = ctx.payload if ctx.started else self._describe(ctx)
        payload.last_error = str(error) or type(error).__name__
        payload.last_attempt_at = ctx.now

        if ctx.started and not isinstance(error, FulfillmentDataError):
            decision = self.policy.decide(error, payload.attempts)
            if decision.retry:
                return self._record_retry(ctx, payload, result.stage, decision.delay_seconds)
            message = payload.last_error
            if decision.exhausted:
                message = f"{message} (max retries {self.policy.max_retries} reached)"
            return self._record_terminal(ctx, payload, result.stage, message, retryable=True)

        return self._record_terminal(ctx, payload, result.stage, payload.last_error, retryable=False)

    def _record_retry(
        self,
        ctx: _Attempt,
        payload: ActionPayload,
        stage: str,
        delay_seconds: float,
    ) -> FulfillmentOutcome:
        order = ctx.order
        check_transition(FulfillmentStatus.PROCESSING, FulfillmentStatus.RETRYING)
        payload.next_retry_at = self.policy.next_retry_at(payload.attempts, ctx.now)
        message = f"retrying after attempt {payload.attempts}: {payload.last_error}"
        self.store.persist_action_state(order.order_no, FulfillmentStatus.RETRYING, message, payload)
        self.store.commit()

        log_event(
            logger, logging.WARNING, "Fulfillment attempt failed; will retry",
            order_no=order.order_no, stage=stage, attempt=payload.attempts,
            delay_seconds=delay_seconds, error=payload.last_error,
        )
        return FulfillmentOutcome(
            order_no=order.order_no,
            status=FulfillmentStatus.RETRYING,
            retryable=True,
            message=message,
            attempts=payload.attempts,
        )

    def _record_terminal(
        self,
        ctx: _Attempt,
        payload: ActionPayload,
        stage: str,
        message: str,
        retryable: bool,
    ) -> FulfillmentOutcome:
        order = ctx.order
        current = FulfillmentStatus.PROCESSING if ctx.started else order.fulfillment_status
        check_transition(current, FulfillmentStatus.FAILED)

        payload.stop_retry = True
        payload.next_retry_at = None
        should_alert = payload.alert_sent_at is None
        if should_alert:
            payload.alert_sent_at = ctx.now
        self.store.persist_action_state(order.order_no, FulfillmentStatus.FAILED, message, payload)
        released = self.store.release_order_codes(order.order_no)
        self.store.commit()
        if released:
            logger.info("Released %d code reservation(s) held by failed order %s", released, order.order_no)

        log_event(
            logger, logging.ERROR, "Order fulfillment failed",
            order_no=order.order_no, stage=stage, attempt=payload.attempts, error=message,
        )
        if should_alert:
            self.notifier.dispatch(*self._alert_text(ctx, payload, stage, message))
        return FulfillmentOutcome(
            order_no=order.order_no,
            status=FulfillmentStatus.FAILED,
            retryable=retryable,
            message=message,
            attempts=payload.attempts,
        )

    def _alert_text(
        self,
        ctx: _Attempt,
        payload: ActionPayload,
        stage: str,
        message: str,
    ) -> tuple[str, str]:
        order = ctx.order
        fields: dict[str, Any] = {
            "order_no": order.order_no,
            "uid": order.uid,
            "username": order.username or "-",
            "email": ctx.email or "-",
            "account_id": order.target_account_id,
            "stage": stage,
            "attempts": payload.attempts,
            "error": message,
        }
        subject = f"[seat-fulfillment] order {order.order_no} failed"
        body = "\n".join(f"{key}={value}" for key, value in fields.items())
        return subject, body
