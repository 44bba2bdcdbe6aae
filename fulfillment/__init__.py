"""
Seat Fulfillment — Order Reconciliation Engine

Periodically sweeps paid orders and fulfills each one by reserving a seat
on a capacity-limited shared account and inviting the buyer. Transient
failures back off exponentially; permanent ones fail the order and alert
an operator once.

Usage:
    from fulfillment.cli import build_engine
    from fulfillment.config import load_config

    engine = build_engine(load_config("fulfillment.yaml"))
    stop = engine.sweeper.start()
    ...
    await stop()
"""

from fulfillment.types import (
    ActionPayload,
    FulfillmentOutcome,
    FulfillmentStatus,
    Order,
    OrderType,
    RedemptionCode,
    SeatCandidate,
    SharedAccount,
)
from fulfillment.errors import (
    AccountSyncError,
    AllocationExhausted,
    ConfigError,
    FulfillmentDataError,
    FulfillmentError,
    InvalidTransition,
    SyncErrorKind,
)
from fulfillment.allocator import select_resource, compute_min_valid_until
from fulfillment.locks import LockManager, lock_keys_for
from fulfillment.retry import RetryPolicy, classify
from fulfillment.state_machine import OrderFulfiller
from fulfillment.sweeper import Sweeper, SweepReport
