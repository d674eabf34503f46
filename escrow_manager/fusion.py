from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from .checkpoint_store import CheckpointStore
from .errors import MalformedMessage
from .ledger import DebtLedger, LedgerSnapshot, day_of, utcnow
from .messages import RawMessage, ReceiptRecord, RollupRecord, VoucherRecord, decode_message
from .snapshots import SnapshotCell

logger = logging.getLogger(__name__)


class StreamFusion:
    """Folds receipts, hourly rollups and vouchers into the debt ledger.

    Owns the ledger as its only writer. Checkpoints are written when the
    calendar day changes or the flush interval elapses, and the positions
    they contain are the only ones handed back for committing upstream.
    """

    def __init__(
        self,
        ledger: DebtLedger,
        store: CheckpointStore,
        signers: Iterable[str] = (),
        graph_env: Optional[str] = None,
        flush_interval_seconds: int = 30,
        receipts_cutoff_ms: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.signers = frozenset(signers)
        self.graph_env = graph_env
        self.flush_interval_seconds = flush_interval_seconds
        self.receipts_cutoff_ms = receipts_cutoff_ms
        self.clock = clock
        self.snapshots: SnapshotCell[LedgerSnapshot] = SnapshotCell(LedgerSnapshot.empty())
        self.stats: Counter = Counter()
        self._last_flush = clock()
        self._last_message_ms: Optional[int] = None
        self.latest_rollup_hour_ms: Optional[int] = None

    def restore(self) -> bool:
        checkpoint = self.store.load()
        if checkpoint is None:
            return False
        self.ledger.restore(checkpoint)
        self.publish()
        return True

    def _signer_ok(self, signer: Optional[str]) -> bool:
        if not self.signers or signer is None:
            return True
        return signer in self.signers

    def apply(self, raw: RawMessage) -> bool:
        """Fold one message into the ledger. Returns True if it changed the ledger."""
        position = raw.position
        if position is not None and self.ledger.already_applied(position):
            self.stats["replayed"] += 1
            return False
        if raw.timestamp_ms is not None:
            self._last_message_ms = max(self._last_message_ms or 0, raw.timestamp_ms)

        try:
            record = decode_message(raw)
        except MalformedMessage as exc:
            self.stats["malformed"] += 1
            logger.warning({
                "event": "malformed_message",
                "role": raw.role.value,
                "position": position._asdict() if position else None,
                "error": str(exc),
            })
            self.ledger.mark_applied(position)
            return False

        if self.receipts_cutoff_ms is not None and raw.timestamp_ms is not None \
                and not isinstance(record, VoucherRecord) and raw.timestamp_ms < self.receipts_cutoff_ms:
            self.stats["before_cutoff"] += 1
            self.ledger.mark_applied(position)
            return False

        if isinstance(record, ReceiptRecord):
            if record.legacy_scalar or (self.graph_env is not None and record.graph_env != self.graph_env) \
                    or not self._signer_ok(record.signer):
                self.stats["filtered"] += 1
                self.ledger.mark_applied(position)
                return False
            self.stats["receipts"] += 1
            return self.ledger.record_receipt(record.receiver, record.day, record.amount, position=position)

        if isinstance(record, RollupRecord):
            changed = False
            self.latest_rollup_hour_ms = max(self.latest_rollup_hour_ms or 0, record.hour_ms)
            for entry in record.entries:
                if not self._signer_ok(entry.signer):
                    self.stats["filtered"] += 1
                    continue
                changed |= self.ledger.record_receipt(entry.receiver, record.day, entry.amount)
            self.stats["rollups"] += 1
            self.ledger.mark_applied(position)
            return changed

        if not self._signer_ok(record.signer):
            self.stats["filtered"] += 1
            self.ledger.mark_applied(position)
            return False
        self.stats["vouchers"] += 1
        delta = self.ledger.record_voucher(
            record.signer, record.receiver, record.value, day=record.day, position=position,
        )
        return delta > 0

    def publish(self, now: Optional[datetime] = None) -> LedgerSnapshot:
        snapshot = self.ledger.snapshot(now or self.clock())
        self.snapshots.set(snapshot)
        return snapshot

    def flush_due(self, now: datetime) -> bool:
        if day_of(now) != day_of(self._last_flush):
            return True
        return (now - self._last_flush).total_seconds() >= self.flush_interval_seconds

    def maybe_flush(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        now = now or self.clock()
        if not self.flush_due(now):
            return None
        return self.flush(now)

    def flush(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        """Checkpoint the ledger. Returns the positions safe to commit, or None if the write failed."""
        now = now or self.clock()
        rolled_over = day_of(now) != day_of(self._last_flush)
        self.ledger.evict_expired(now)
        checkpoint = self.ledger.checkpoint()
        try:
            self.store.save(checkpoint)
        except OSError as exc:
            logger.error({"event": "checkpoint_failed", "path": self.store.path, "error": str(exc)})
            return None
        elapsed = max((now - self._last_flush).total_seconds(), 1.0)
        snapshot = self.publish(now)
        logger.info({
            "event": "flush",
            "day_rollover": rolled_over,
            "latest_message_ms": self._last_message_ms,
            "msg_hz": round(sum(self.stats[k] for k in ("receipts", "rollups", "vouchers")) / elapsed, 2),
            "receivers": len(snapshot.debts),
            "stats": dict(self.stats),
        })
        self.stats.clear()
        self._last_flush = now
        return checkpoint.positions
