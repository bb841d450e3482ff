"""Rolling-window spending caps per (network, asset)."""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Deque, Dict, Optional, Tuple, Union

from .errors import ConfigError, InvalidAmount, SpendingLimitExceeded

__all__ = [
    "LimitDecision",
    "Reservation",
    "SpendingLimitTracker",
    "SpendingLimits",
]

AmountLike = Union[Decimal, str, int]
LedgerKey = Tuple[str, str]

PER_TRANSACTION = "per_transaction"
WINDOW_TOTAL = "window_total"

_ZERO = Decimal(0)


def _to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (float, bool)):
        raise InvalidAmount(value, "amounts must be decimal strings, not floats")
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(value) from exc
    if not result.is_finite():
        raise InvalidAmount(value, "amount must be finite")
    return result


def _optional_cap(value: Optional[AmountLike], name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        cap = _to_decimal(value)
    except InvalidAmount as exc:
        raise ConfigError(f"{name} is not a valid amount: {value!r}") from exc
    if cap < 0:
        raise ConfigError(f"{name} must be non-negative", details={name: str(value)})
    return cap


@dataclass(frozen=True)
class SpendingLimits:
    """Spending caps; ``None`` means unlimited."""

    max_per_request: Optional[Decimal] = None
    max_window_total: Optional[Decimal] = None
    window_seconds: float = 3600.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_per_request", _optional_cap(self.max_per_request, "max_per_request"))
        object.__setattr__(self, "max_window_total", _optional_cap(self.max_window_total, "max_window_total"))
        if self.window_seconds <= 0:
            raise ConfigError("window_seconds must be positive", details={"windowSeconds": self.window_seconds})


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    violated: Optional[str]
    cap: Optional[Decimal]
    requested: Decimal
    window_total: Decimal

    def to_error(self, network: str, asset: str) -> SpendingLimitExceeded:
        return SpendingLimitExceeded(
            limit=self.violated or WINDOW_TOTAL,
            cap=self.cap if self.cap is not None else _ZERO,
            requested=self.requested,
            window_total=self.window_total,
            network=network,
            asset=asset,
        )


@dataclass(frozen=True)
class Reservation:
    reservation_id: int
    network: str
    asset: str
    amount: Decimal


class SpendingLimitTracker:
    """Ledger of authorized payments, pruned lazily on every call.

    Each (network, asset) pair has its own lock. ``reserve`` evaluates the caps
    against recorded events plus outstanding reservations and holds the amount
    until ``commit`` records it or ``release`` drops it, so concurrent payments
    cannot jointly exceed the window cap. Reservations never show up in
    ``current_window_total``.
    """

    def __init__(self, limits: Optional[SpendingLimits] = None, *, clock=time.time) -> None:
        self._limits = limits or SpendingLimits()
        self._clock = clock
        self._events: Dict[LedgerKey, Deque[Tuple[float, Decimal]]] = {}
        self._reserved: Dict[LedgerKey, Dict[int, Decimal]] = {}
        self._locks: Dict[LedgerKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def limits(self) -> SpendingLimits:
        return self._limits

    def update_limits(self, limits: SpendingLimits) -> None:
        self._limits = limits

    @staticmethod
    def _key(network: str, asset: str) -> LedgerKey:
        return network.strip().lower(), asset.strip().lower()

    def _lock(self, key: LedgerKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def _window_total(self, key: LedgerKey, now: float) -> Decimal:
        events = self._events.get(key)
        if not events:
            return _ZERO
        cutoff = now - self._limits.window_seconds
        if any(ts < cutoff for ts, _ in events):
            events = self._events[key] = deque(e for e in events if e[0] >= cutoff)
        return sum((amount for ts, amount in events if ts <= now), _ZERO)

    def _decide(self, key: LedgerKey, amount: Decimal, now: float, include_reserved: bool) -> LimitDecision:
        limits = self._limits
        total = self._window_total(key, now)
        pending = sum(self._reserved.get(key, {}).values(), _ZERO) if include_reserved else _ZERO

        if limits.max_per_request is not None and amount > limits.max_per_request:
            return LimitDecision(False, PER_TRANSACTION, limits.max_per_request, amount, total + pending)
        if limits.max_window_total is not None and total + pending + amount > limits.max_window_total:
            return LimitDecision(False, WINDOW_TOTAL, limits.max_window_total, amount, total + pending)
        return LimitDecision(True, None, None, amount, total + pending)

    def evaluate(self, network: str, asset: str, amount: AmountLike, now: Optional[float] = None) -> LimitDecision:
        """Like :meth:`check_allowed` but reports which cap was violated."""
        key = self._key(network, asset)
        value = _to_decimal(amount)
        with self._lock(key):
            return self._decide(key, value, self._now(now), include_reserved=True)

    def check_allowed(self, network: str, asset: str, amount: AmountLike, now: Optional[float] = None) -> bool:
        try:
            return self.evaluate(network, asset, amount, now).allowed
        except InvalidAmount:
            return False

    def record(self, network: str, asset: str, amount: AmountLike, now: Optional[float] = None) -> None:
        key = self._key(network, asset)
        value = _to_decimal(amount)
        with self._lock(key):
            ts = self._now(now)
            self._window_total(key, ts)
            self._events.setdefault(key, deque()).append((ts, value))

    def current_window_total(self, network: str, asset: str, now: Optional[float] = None) -> Decimal:
        key = self._key(network, asset)
        with self._lock(key):
            return self._window_total(key, self._now(now))

    def remaining_allowance(self, network: str, asset: str, now: Optional[float] = None) -> Optional[Decimal]:
        """Largest amount a single payment could spend right now, ``None`` if uncapped."""
        key = self._key(network, asset)
        limits = self._limits
        with self._lock(key):
            total = self._window_total(key, self._now(now))
            pending = sum(self._reserved.get(key, {}).values(), _ZERO)
        caps = []
        if limits.max_per_request is not None:
            caps.append(limits.max_per_request)
        if limits.max_window_total is not None:
            caps.append(max(limits.max_window_total - total - pending, _ZERO))
        return min(caps) if caps else None

    def reserve(self, network: str, asset: str, amount: AmountLike, now: Optional[float] = None) -> Reservation:
        """Check the caps and hold ``amount``; raise :class:`SpendingLimitExceeded` otherwise."""
        key = self._key(network, asset)
        value = _to_decimal(amount)
        with self._lock(key):
            decision = self._decide(key, value, self._now(now), include_reserved=True)
            if not decision.allowed:
                raise decision.to_error(network, asset)
            reservation = Reservation(next(self._ids), network, asset, value)
            self._reserved.setdefault(key, {})[reservation.reservation_id] = value
            return reservation

    def commit(self, reservation: Reservation, now: Optional[float] = None) -> None:
        """Turn a reservation into a recorded spending event."""
        key = self._key(reservation.network, reservation.asset)
        with self._lock(key):
            self._reserved.get(key, {}).pop(reservation.reservation_id, None)
            ts = self._now(now)
            self._window_total(key, ts)
            self._events.setdefault(key, deque()).append((ts, reservation.amount))

    def release(self, reservation: Reservation) -> None:
        key = self._key(reservation.network, reservation.asset)
        with self._lock(key):
            self._reserved.get(key, {}).pop(reservation.reservation_id, None)

    def clear(self, network: Optional[str] = None, asset: Optional[str] = None) -> None:
        """Forget recorded events for one pair, or for every pair when no pair is given."""
        if network is None or asset is None:
            with self._locks_guard:
                keys = list(self._events)
            for key in keys:
                with self._lock(key):
                    self._events.pop(key, None)
            return
        key = self._key(network, asset)
        with self._lock(key):
            self._events.pop(key, None)
