"""
Debt ledger: net unsettled debt per receiver over a trailing window of days.

Receipts and hourly rollups add to the fees of the (receiver, day) bucket of
the message. Settlement vouchers are cumulative per (signer, receiver), so
only the increase over the last value seen for that pair is applied, as a
settled amount on the day the voucher arrived. Net debt for a receiver is
fees minus settled over the buckets inside the window, floored at zero.

The ledger has a single writer (the stream fusion loop). Readers get an
immutable LedgerSnapshot instead of touching buckets directly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 28
CHECKPOINT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def day_of(ts: datetime) -> date:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).date()


def day_of_ms(timestamp_ms: int) -> date:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()


class Position(NamedTuple):
    """Where a message came from: a partition key and its offset."""

    partition: str
    offset: int


@dataclass
class DebtBucket:
    day: date
    fees: int = 0
    settled: int = 0


@dataclass(frozen=True)
class LedgerSnapshot:
    taken_at: datetime
    debts: Mapping[str, int]

    def net_debt(self, receiver: str) -> int:
        return self.debts.get(receiver, 0)

    def total(self) -> int:
        return sum(self.debts.values())

    @staticmethod
    def empty() -> "LedgerSnapshot":
        return LedgerSnapshot(taken_at=utcnow(), debts=MappingProxyType({}))


@dataclass
class Checkpoint:
    written_at: datetime
    window_days: int
    buckets: Dict[str, List[DebtBucket]] = field(default_factory=dict)
    voucher_offsets: Dict[Tuple[str, str], int] = field(default_factory=dict)
    positions: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        # amounts as strings, they do not fit in a JSON double
        return {
            "version": CHECKPOINT_VERSION,
            "written_at": self.written_at.isoformat(),
            "window_days": self.window_days,
            "buckets": {
                receiver: {
                    b.day.isoformat(): {"fees": str(b.fees), "settled": str(b.settled)}
                    for b in buckets
                }
                for receiver, buckets in self.buckets.items()
            },
            "voucher_offsets": {
                f"{signer}:{receiver}": str(value)
                for (signer, receiver), value in self.voucher_offsets.items()
            },
            "positions": dict(self.positions),
        }

    @staticmethod
    def from_dict(data: dict) -> "Checkpoint":
        if not isinstance(data, dict):
            raise ValueError(f"checkpoint must be an object, got {type(data).__name__}")
        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise ValueError(f"unsupported checkpoint version {version!r}")
        buckets: Dict[str, List[DebtBucket]] = {}
        for receiver, days in data.get("buckets", {}).items():
            buckets[receiver] = sorted(
                (
                    DebtBucket(day=date.fromisoformat(day), fees=int(v["fees"]), settled=int(v["settled"]))
                    for day, v in days.items()
                ),
                key=lambda b: b.day,
            )
        offsets: Dict[Tuple[str, str], int] = {}
        for key, value in data.get("voucher_offsets", {}).items():
            signer, receiver = key.split(":", 1)
            offsets[(signer, receiver)] = int(value)
        return Checkpoint(
            written_at=datetime.fromisoformat(data["written_at"]),
            window_days=int(data["window_days"]),
            buckets=buckets,
            voucher_offsets=offsets,
            positions={k: int(v) for k, v in data.get("positions", {}).items()},
        )


class DebtLedger:
    def __init__(self, window_days: int = DEFAULT_WINDOW_DAYS, clock: Callable[[], datetime] = utcnow):
        if window_days < 1:
            raise ValueError("window_days must be positive")
        self.window_days = window_days
        self.clock = clock
        self._buckets: Dict[str, Dict[date, DebtBucket]] = {}
        self._offsets: Dict[Tuple[str, str], int] = {}
        self._positions: Dict[str, int] = {}
        self.voucher_regressions = 0

    def _in_window(self, day: date, today: date) -> bool:
        return (today - day).days < self.window_days

    def _bucket(self, receiver: str, day: date) -> DebtBucket:
        days = self._buckets.setdefault(receiver, {})
        bucket = days.get(day)
        if bucket is None:
            bucket = days[day] = DebtBucket(day=day)
        return bucket

    def mark_applied(self, position: Optional[Position]) -> None:
        if position is None:
            return
        if position.offset > self._positions.get(position.partition, -1):
            self._positions[position.partition] = position.offset

    def already_applied(self, position: Position) -> bool:
        return position.offset <= self._positions.get(position.partition, -1)

    @property
    def positions(self) -> Dict[str, int]:
        return dict(self._positions)

    def record_receipt(self, receiver: str, day: date, amount: int, position: Optional[Position] = None) -> bool:
        """Add `amount` to the receiver's bucket for `day`. Returns False if dropped."""
        try:
            if amount <= 0:
                return False
            today = day_of(self.clock())
            if not self._in_window(day, today):
                logger.warning({
                    "event": "receipt_outside_window",
                    "receiver": receiver,
                    "day": day.isoformat(),
                    "hint": "consumer position is behind the retention window",
                })
                return False
            self._bucket(receiver, day).fees += amount
            return True
        finally:
            self.mark_applied(position)

    def record_voucher(
        self,
        signer: str,
        receiver: str,
        cumulative_amount: int,
        day: Optional[date] = None,
        position: Optional[Position] = None,
    ) -> int:
        """Apply a cumulative voucher value. Returns the amount newly settled."""
        try:
            key = (signer, receiver)
            previous = self._offsets.get(key, 0)
            if cumulative_amount < previous:
                self.voucher_regressions += 1
                logger.warning({
                    "event": "voucher_regression",
                    "signer": signer,
                    "receiver": receiver,
                    "previous": str(previous),
                    "value": str(cumulative_amount),
                })
                return 0
            delta = cumulative_amount - previous
            self._offsets[key] = cumulative_amount
            if delta == 0:
                return 0
            today = day_of(self.clock())
            if day is None:
                day = today
            elif not self._in_window(day, today):
                # settles fees that already left the window
                logger.debug({"event": "voucher_outside_window", "receiver": receiver, "day": day.isoformat()})
                return 0
            self._bucket(receiver, day).settled += delta
            return delta
        finally:
            self.mark_applied(position)

    def voucher_offset(self, signer: str, receiver: str) -> int:
        return self._offsets.get((signer, receiver), 0)

    def net_debt(self, receiver: str) -> int:
        today = day_of(self.clock())
        fees = settled = 0
        for bucket in self._buckets.get(receiver, {}).values():
            if self._in_window(bucket.day, today):
                fees += bucket.fees
                settled += bucket.settled
        return max(0, fees - settled)

    def receivers(self) -> Iterator[str]:
        return iter(list(self._buckets))

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop whole-day buckets that fell out of the window. Returns the count dropped."""
        today = day_of(now or self.clock())
        dropped = 0
        for receiver in list(self._buckets):
            days = self._buckets[receiver]
            for day in [d for d in days if not self._in_window(d, today)]:
                del days[day]
                dropped += 1
            if not days:
                del self._buckets[receiver]
        if dropped:
            logger.debug({"event": "evicted", "buckets": dropped, "today": today.isoformat()})
        return dropped

    def snapshot(self, now: Optional[datetime] = None) -> LedgerSnapshot:
        now = now or self.clock()
        self.evict_expired(now)
        debts = {r: self.net_debt(r) for r in self._buckets}
        return LedgerSnapshot(taken_at=now, debts=MappingProxyType({r: d for r, d in debts.items() if d > 0}))

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(
            written_at=self.clock(),
            window_days=self.window_days,
            buckets={
                receiver: [DebtBucket(b.day, b.fees, b.settled) for b in sorted(days.values(), key=lambda b: b.day)]
                for receiver, days in self._buckets.items()
            },
            voucher_offsets=dict(self._offsets),
            positions=dict(self._positions),
        )

    def restore(self, checkpoint: Checkpoint) -> None:
        self._buckets = {
            receiver: {b.day: DebtBucket(b.day, b.fees, b.settled) for b in buckets}
            for receiver, buckets in checkpoint.buckets.items()
        }
        self._offsets = dict(checkpoint.voucher_offsets)
        self._positions = dict(checkpoint.positions)
        if checkpoint.window_days != self.window_days:
            logger.warning({
                "event": "checkpoint_window_changed",
                "checkpoint": checkpoint.window_days,
                "configured": self.window_days,
            })
        self.evict_expired()
        logger.info({
            "event": "ledger_restored",
            "written_at": checkpoint.written_at.isoformat(),
            "receivers": len(self._buckets),
            "voucher_pairs": len(self._offsets),
            "partitions": len(self._positions),
        })
