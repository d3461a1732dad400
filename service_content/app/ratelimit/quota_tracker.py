"""
Remote request quota tracking.

The remote store exposes two independently-budgeted interfaces: per-resource
REST calls and batched GraphQL queries. The tracker keeps the last known
budget for each, refuses calls when the budget sits at or below a safety
floor before its reset, and decrements predictively on every call so
concurrent requests cannot overshoot while waiting for the response headers.
"""

import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger


class InterfaceKind(str, Enum):
    """Remote interfaces with separate request budgets."""

    REST = "rest"
    BATCHED = "batched"


@dataclass
class QuotaState:
    """Last known budget for one interface."""

    interface_kind: InterfaceKind
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    used: Optional[int] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["interface_kind"] = self.interface_kind.value
        return data


@dataclass
class Admission:
    """Result of an admission check."""

    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[float] = None

    def __bool__(self) -> bool:
        return self.allowed


class QuotaTracker:
    """Thread-safe tracker of the remote budgets."""

    def __init__(
        self,
        rest_floor: int = 10,
        batched_floor: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.clock = clock
        self.floors = {
            InterfaceKind.REST: rest_floor,
            InterfaceKind.BATCHED: batched_floor,
        }
        self.logger = get_logger("content.quota")
        self._states = {kind: QuotaState(interface_kind=kind) for kind in InterfaceKind}
        self._locks = {kind: threading.Lock() for kind in InterfaceKind}

    def admit(self, kind: InterfaceKind) -> Admission:
        """
        Decide whether a call on ``kind`` may be issued now.

        Unknown budgets are admitted; the first response establishes the state.
        Once the reset time has passed the budget is assumed replenished.
        """
        kind = InterfaceKind(kind)
        with self._locks[kind]:
            state = self._states[kind]
            if state.remaining is None:
                return Admission(True)

            now = self.clock()
            if state.reset_at is not None and now >= state.reset_at:
                return Admission(True)

            floor = self.floors[kind]
            if state.remaining <= floor:
                retry_after = max(0.0, state.reset_at - now) if state.reset_at is not None else None
                return Admission(
                    False,
                    reason=f"{kind.value} quota at or below floor ({state.remaining} <= {floor})",
                    retry_after=retry_after,
                )
            return Admission(True)

    def consume(self, kind: InterfaceKind, amount: int = 1) -> None:
        """Predictively spend ``amount`` from the known budget."""
        kind = InterfaceKind(kind)
        with self._locks[kind]:
            state = self._states[kind]
            if state.remaining is None:
                return
            if state.reset_at is not None and self.clock() >= state.reset_at:
                # Window rolled over; the next response will tell us the new budget
                return
            state.remaining = max(0, state.remaining - amount)

    def record(
        self,
        kind: InterfaceKind,
        remaining: int,
        reset_at: Optional[float],
        limit: Optional[int] = None,
        used: Optional[int] = None,
    ) -> bool:
        """
        Record the budget reported by the remote.

        Reports for an older window are ignored, and within the same window a
        report never raises ``remaining`` above what is already known, since
        responses can arrive out of order. Returns True when the state changed.
        """
        kind = InterfaceKind(kind)
        remaining = max(0, int(remaining))
        with self._locks[kind]:
            state = self._states[kind]

            if state.remaining is not None and state.reset_at is not None and reset_at is not None:
                if reset_at < state.reset_at:
                    return False
                if reset_at == state.reset_at and remaining > state.remaining:
                    return False

            state.remaining = remaining
            state.reset_at = reset_at
            if limit is not None:
                state.limit = int(limit)
            if used is not None:
                state.used = int(used)
            state.updated_at = self.clock()

        if remaining <= self.floors[kind]:
            self.logger.warning(
                "Remote quota low",
                interface=kind.value,
                remaining=remaining,
                reset_at=reset_at,
            )
        return True

    def record_exhausted(self, kind: InterfaceKind, reset_at: Optional[float]) -> None:
        """Mark the budget spent until ``reset_at`` after the remote refused a call."""
        kind = InterfaceKind(kind)
        with self._locks[kind]:
            state = self._states[kind]
            state.remaining = 0
            if reset_at is not None and (state.reset_at is None or reset_at > state.reset_at):
                state.reset_at = reset_at
            elif state.reset_at is None:
                state.reset_at = self.clock() + 60
            state.updated_at = self.clock()
        self.logger.warning("Remote quota exhausted", interface=kind.value, reset_at=reset_at)

    def status(self, kind: InterfaceKind) -> QuotaState:
        """Copy of the current state for ``kind``."""
        kind = InterfaceKind(kind)
        with self._locks[kind]:
            return QuotaState(**asdict(self._states[kind]))

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Status of both interfaces, keyed by interface name."""
        return {kind.value: self.status(kind).to_dict() for kind in InterfaceKind}
