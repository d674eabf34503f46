from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Set

from eth_utils import to_checksum_address

from .errors import SubgraphError
from .ledger import utcnow
from .snapshots import SnapshotCell
from .subgraph import SubgraphClient

logger = logging.getLogger(__name__)

ACTIVE_ALLOCATIONS_QUERY = """
allocations(
    block: $block
    orderBy: id
    orderDirection: asc
    first: $first
    where: {
        id_gt: $last
        status: Active
    }
) {
    id
    indexer { id }
}
"""

ESCROW_ACCOUNTS_QUERY = """
escrowAccounts(
    block: $block
    orderBy: id
    orderDirection: asc
    first: $first
    where: {
        id_gt: $last
        sender: "%s"
    }
) {
    id
    balance
    receiver { id }
}
"""

AUTHORIZED_SIGNERS_QUERY = '{ sender(id: "%s") { signers { id } } }'


@dataclass(frozen=True)
class AllocationSnapshot:
    allocations: Mapping[str, FrozenSet[str]]
    block_number: int

    @property
    def receivers(self) -> FrozenSet[str]:
        return frozenset(self.allocations)


@dataclass(frozen=True)
class BalanceSnapshot:
    balances: Mapping[str, int]
    block_number: int

    def get(self, receiver: str, default: int = 0) -> int:
        return self.balances.get(receiver, default)


@dataclass(frozen=True)
class PollSnapshot:
    allocations: AllocationSnapshot
    balances: BalanceSnapshot
    fetched_at: datetime


def active_allocations(client: SubgraphClient) -> AllocationSnapshot:
    page = client.paginated_query(ACTIVE_ALLOCATIONS_QUERY)
    by_receiver: Dict[str, Set[str]] = {}
    for row in page.rows:
        receiver = to_checksum_address(row["indexer"]["id"])
        by_receiver.setdefault(receiver, set()).add(row["id"])
    return AllocationSnapshot(
        allocations=MappingProxyType({r: frozenset(ids) for r, ids in by_receiver.items()}),
        block_number=page.block_number,
    )


def escrow_balances(client: SubgraphClient, payer: str) -> BalanceSnapshot:
    page = client.paginated_query(ESCROW_ACCOUNTS_QUERY % payer.lower())
    balances = {to_checksum_address(row["receiver"]["id"]): int(row["balance"]) for row in page.rows}
    return BalanceSnapshot(balances=MappingProxyType(balances), block_number=page.block_number)


def authorized_signers(client: SubgraphClient, payer: str) -> FrozenSet[str]:
    data = client.query(AUTHORIZED_SIGNERS_QUERY % payer.lower())
    sender = data.get("sender") or {}
    return frozenset(to_checksum_address(s["id"]) for s in sender.get("signers", []))


class StatePoller:
    """Refreshes allocations and escrow balances together on a fixed interval.

    A cycle only replaces the published snapshot when both queries succeed,
    so readers never see allocations and balances from different cycles.
    """

    def __init__(
        self,
        network: SubgraphClient,
        escrow: SubgraphClient,
        payer: str,
        interval_seconds: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.network = network
        self.escrow = escrow
        self.payer = payer
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.snapshots: SnapshotCell[Optional[PollSnapshot]] = SnapshotCell(None)
        self._wake = threading.Event()

    def poll_once(self) -> bool:
        try:
            allocations = active_allocations(self.network)
            balances = escrow_balances(self.escrow, self.payer)
        except SubgraphError as exc:
            log = logger.warning if exc.is_missing_block else logger.error
            log({"event": "poll_failed", "error": str(exc)})
            return False
        except (KeyError, TypeError, ValueError) as exc:
            logger.error({"event": "poll_failed", "error": f"unexpected response shape: {exc!r}"})
            return False
        self.snapshots.set(PollSnapshot(allocations=allocations, balances=balances, fetched_at=self.clock()))
        logger.info({
            "event": "polled",
            "receivers": len(allocations.allocations),
            "escrow_accounts": len(balances.balances),
            "escrow_block": balances.block_number,
        })
        return True

    def request_refresh(self) -> None:
        self._wake.set()

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.poll_once()
            self._wake.wait(self.interval_seconds)
            self._wake.clear()
