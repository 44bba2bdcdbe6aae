"""
Seat Fulfillment — Feature Flags

Runtime-toggleable switches the sweeper polls once per cycle. Turning a
flag off stops new sweep cycles without touching any persisted order
state; turning it back on resumes where the orders left off.

Flags are seeded from the ``features`` config section and can be flipped
at runtime (operator CLI, tests):

    flags = FeatureFlags.from_config(cfg)
    flags.disable("open_accounts", "provider incident", by="ops")
    if not flags.is_enabled("open_accounts"):
        ...
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("seat_fulfillment.flags")


@dataclass
class FlagState:
    enabled: bool = True
    reason: str = ""
    toggled_by: str = ""
    toggled_at: float = 0.0

    def set(self, enabled: bool, reason: str = "", by: str = "system"):
        self.enabled = enabled
        self.reason = reason
        self.toggled_by = by
        self.toggled_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "reason": self.reason,
            "toggled_by": self.toggled_by,
            "toggled_at": self.toggled_at,
        }


class FeatureFlags:
    """Thread-safe named feature flags. Unknown flags read as ``default``."""

    def __init__(self, initial: dict[str, bool] | None = None, default: bool = True):
        self._lock = threading.Lock()
        self._default = default
        self._flags: dict[str, FlagState] = {
            name: FlagState(enabled=bool(value), toggled_by="config")
            for name, value in (initial or {}).items()
        }

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> FeatureFlags:
        section = cfg.get("features", {}) or {}
        initial = {}
        for name, value in section.items():
            if isinstance(value, str):
                value = value.strip().lower() not in ("0", "false", "off", "no")
            initial[str(name)] = bool(value)
        return cls(initial)

    def is_enabled(self, name: str) -> bool:
        with self._lock:
            state = self._flags.get(name)
            return self._default if state is None else state.enabled

    def enable(self, name: str, by: str = "system"):
        with self._lock:
            self._flags.setdefault(name, FlagState()).set(True, "", by)
        logger.info("Feature '%s' enabled (by %s)", name, by)

    def disable(self, name: str, reason: str = "", by: str = "system"):
        with self._lock:
            self._flags.setdefault(name, FlagState()).set(False, reason, by)
        logger.warning("Feature '%s' DISABLED: %s (by %s)", name, reason, by)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {name: state.to_dict() for name, state in self._flags.items()}
