from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Callable, FrozenSet, List, Mapping, Optional

from web3.exceptions import ContractLogicError

from .amounts import GRT, MAX_ADJUSTMENT, MIN_DEPOSIT, wei_to_grt
from .contracts import EscrowContracts, TxStatus
from .errors import ConfirmationTimeout, InsufficientAllowance, TransactionReverted
from .ledger import LedgerSnapshot, utcnow
from .poller import AllocationSnapshot, BalanceSnapshot, PollSnapshot
from .snapshots import SnapshotCell
from .subgraph import SubgraphClient

logger = logging.getLogger(__name__)

CAP_STEP = 100 * GRT


@dataclass(frozen=True)
class FundingDecision:
    receiver: str
    debt: int
    threshold: int
    balance: int
    raw_adjustment: int
    deposit: int

    @property
    def clamped(self) -> bool:
        return self.raw_adjustment > self.deposit


def compute_decisions(
    debts: LedgerSnapshot,
    allocations: AllocationSnapshot,
    balances: BalanceSnapshot,
    min_debts: Optional[Mapping[str, int]] = None,
) -> List[FundingDecision]:
    """Deposit decisions for every receiver with an active allocation.

    `min_debts` maps receiver to a threshold in wei that is forgiven before
    the receiver's balance is compared with its debt.
    """
    min_debts = min_debts or {}
    decisions: List[FundingDecision] = []
    for receiver in sorted(allocations.receivers):
        debt = debts.net_debt(receiver)
        threshold = min_debts.get(receiver, 0)
        effective = max(0, debt - threshold)
        balance = balances.get(receiver, 0)
        raw = effective - balance
        if raw <= 0:
            continue
        if raw < MIN_DEPOSIT:
            logger.debug({"event": "below_min_deposit", "receiver": receiver, "adjustment": str(raw)})
            continue
        decision = FundingDecision(
            receiver=receiver,
            debt=debt,
            threshold=threshold,
            balance=balance,
            raw_adjustment=raw,
            deposit=min(raw, MAX_ADJUSTMENT),
        )
        if decision.clamped:
            logger.warning({
                "event": "adjustment_clamped",
                "receiver": receiver,
                "adjustment_grt": str(wei_to_grt(raw)),
                "deposit_grt": str(wei_to_grt(decision.deposit)),
            })
        logger.info({
            "event": "funding_decision",
            "receiver": receiver,
            "balance_grt": str(wei_to_grt(balance)),
            "debt_grt": str(wei_to_grt(debt)),
            "deposit_grt": str(wei_to_grt(decision.deposit)),
        })
        decisions.append(decision)
    return decisions


def cap_batch(decisions: List[FundingDecision], max_total: Optional[int]) -> List[FundingDecision]:
    """Shrink a batch whose total exceeds `max_total`.

    Every receiver keeps at least MIN_DEPOSIT, then receivers are raised in
    turn by 100 GRT (never past their own decision) until the cap is reached.
    """
    total = sum(d.deposit for d in decisions)
    if max_total is None or total <= max_total:
        return decisions
    amounts = {d.receiver: MIN_DEPOSIT for d in decisions}
    while sum(amounts.values()) < max_total:
        raised = False
        for d in decisions:
            if amounts[d.receiver] < d.deposit:
                amounts[d.receiver] = min(d.deposit, amounts[d.receiver] + CAP_STEP)
                raised = True
            if sum(amounts.values()) >= max_total:
                break
        if not raised:
            break
    capped = [replace(d, deposit=amounts[d.receiver]) for d in decisions]
    logger.warning({
        "event": "batch_capped",
        "requested_grt": str(wei_to_grt(total)),
        "capped_grt": str(wei_to_grt(sum(d.deposit for d in capped))),
    })
    return capped


@dataclass(frozen=True)
class PendingBatch:
    tx_hash: str
    receivers: FrozenSet[str]
    submitted_at: datetime


@dataclass
class CycleReport:
    at: datetime
    status: str
    deposits: int = 0
    total_grt: str = "0"
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    receivers: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["at"] = self.at.isoformat()
        return out


class Rebalancer:
    """One reconciliation cycle per call, reading the latest published snapshots."""

    def __init__(
        self,
        contracts: EscrowContracts,
        ledger_snapshots: SnapshotCell[LedgerSnapshot],
        poll_snapshots: SnapshotCell[Optional[PollSnapshot]],
        escrow_subgraph: SubgraphClient,
        min_debts: Optional[Mapping[str, int]] = None,
        max_batch_total: Optional[int] = None,
        is_ready: Callable[[], bool] = lambda: True,
        on_deposit: Callable[[int], None] = lambda block: None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.contracts = contracts
        self.ledger_snapshots = ledger_snapshots
        self.poll_snapshots = poll_snapshots
        self.escrow_subgraph = escrow_subgraph
        self.min_debts = dict(min_debts or {})
        self.max_batch_total = max_batch_total
        self.is_ready = is_ready
        self.on_deposit = on_deposit
        self.clock = clock
        self.pending: Optional[PendingBatch] = None
        self.required_block = 0
        self.last_report: Optional[CycleReport] = None

    def _report(self, now: datetime, status: str, **kwargs) -> CycleReport:
        self.last_report = CycleReport(at=now, status=status, **kwargs)
        return self.last_report

    def _landed(self, block_number: int) -> None:
        self.required_block = max(self.required_block, block_number)
        self.escrow_subgraph.require_block(block_number)
        self.on_deposit(block_number)

    def resolve_pending(self) -> bool:
        """Settle a batch whose confirmation timed out. Returns True once nothing is pending."""
        if self.pending is None:
            return True
        outcome = self.contracts.transaction_status(self.pending.tx_hash)
        log = {"event": "pending_batch", "tx": self.pending.tx_hash, "status": outcome.status.value}
        if outcome.status is TxStatus.PENDING:
            logger.warning(log)
            return False
        if outcome.status is TxStatus.CONFIRMED:
            logger.info({**log, "block": outcome.block_number})
            self._landed(outcome.block_number)
        else:
            logger.error({**log, "receivers": sorted(self.pending.receivers)})
        self.pending = None
        return True

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        now = now or self.clock()
        if not self.is_ready():
            logger.warning({"event": "cycle_skipped", "reason": "signers or ledger not ready"})
            return self._report(now, "not_ready")
        if not self.resolve_pending():
            return self._report(now, "pending", tx_hash=self.pending.tx_hash)

        poll = self.poll_snapshots.get()
        if poll is None:
            logger.warning({"event": "cycle_skipped", "reason": "no poll snapshot yet"})
            return self._report(now, "no_snapshot")
        if poll.balances.block_number < self.required_block:
            logger.warning({
                "event": "cycle_skipped",
                "reason": "escrow balances older than last deposit",
                "snapshot_block": poll.balances.block_number,
                "required_block": self.required_block,
            })
            self.on_deposit(self.required_block)
            return self._report(now, "stale_snapshot")

        decisions = compute_decisions(self.ledger_snapshots.get(), poll.allocations, poll.balances, self.min_debts)
        decisions = cap_batch(decisions, self.max_batch_total)
        total = sum(d.deposit for d in decisions)
        receivers = [d.receiver for d in decisions]
        logger.info({"event": "cycle", "deposits": len(decisions), "total_grt": str(wei_to_grt(total))})
        if not decisions:
            return self._report(now, "idle")

        allowance = self.contracts.allowance()
        if allowance < total:
            self._report(now, "insufficient_allowance", deposits=len(decisions), total_grt=str(wei_to_grt(total)))
            raise InsufficientAllowance(allowance, total)

        summary = dict(deposits=len(decisions), total_grt=str(wei_to_grt(total)), receivers=receivers)
        try:
            block = self.contracts.deposit_many([(d.receiver, d.deposit) for d in decisions])
        except ConfirmationTimeout as exc:
            self.pending = PendingBatch(exc.tx_hash, frozenset(receivers), now)
            logger.warning({"event": "deposit_unconfirmed", "tx": exc.tx_hash, "receivers": receivers})
            return self._report(now, "unknown_outcome", tx_hash=exc.tx_hash, **summary)
        except TransactionReverted as exc:
            logger.error({"event": "deposit_reverted", "tx": exc.tx_hash, "block": exc.block_number})
            return self._report(now, "reverted", tx_hash=exc.tx_hash, block_number=exc.block_number, **summary)
        except ContractLogicError as exc:
            logger.error({"event": "deposit_rejected", "error": str(exc)})
            return self._report(now, "rejected", **summary)

        self._landed(block)
        logger.info({"event": "deposits_complete", "block": block, "total_grt": summary["total_grt"]})
        return self._report(now, "deposited", block_number=block, **summary)
