from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

import requests
from confluent_kafka import Consumer
from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from . import __version__
from .amounts import grt_to_wei, wei_to_grt
from .authorization import AuthorizationManager
from .checkpoint_store import CheckpointStore
from .config import Config, load_config
from .contracts import EscrowContracts, connect
from .errors import EscrowManagerError, InsufficientAllowance
from .fusion import StreamFusion
from .kafka_source import KafkaSource
from .ledger import DebtLedger, LedgerSnapshot
from .poller import StatePoller
from .reconciler import Rebalancer
from .status_api import create_app
from .subgraph import SubgraphClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JOIN_TIMEOUT = 30.0


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())
    # per-request noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


class EscrowManagerService:
    """Wires the consumer, the poller and the reconciliation loop together.

    The consumer and poller run on daemon threads; reconciliation runs on the
    calling thread. They only meet through published snapshots.
    """

    def __init__(
        self,
        config: Config,
        w3: Optional[Web3] = None,
        consumer_factory: Callable[[dict], Consumer] = Consumer,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.stop = threading.Event()
        self.payer = Account.from_key(config.secret_key.get_secret_value())
        self.signers = [Account.from_key(k.get_secret_value()) for k in config.signers]

        query_auth = config.query_auth.get_secret_value() if config.query_auth else None
        self.network_subgraph = SubgraphClient(config.network_subgraph, query_auth, config.page_size, session=session)
        self.escrow_subgraph = SubgraphClient(config.escrow_subgraph, query_auth, config.page_size, session=session)
        self.contracts = EscrowContracts(
            w3 or connect(config.rpc_url.get_secret_value()),
            self.payer,
            token=config.token_contract,
            escrow=config.escrow_contract,
            collector=config.collector_contract,
            chain_id=config.chain_id,
        )

        self.ledger = DebtLedger(config.window_days)
        self.fusion = StreamFusion(
            self.ledger,
            CheckpointStore(config.kafka.checkpoint_path),
            signers=[s.address for s in self.signers],
            graph_env=config.graph_env,
            flush_interval_seconds=config.flush_interval_seconds,
            receipts_cutoff_ms=config.kafka.receipts_cutoff_timestamp,
        )
        self.source = KafkaSource(config.kafka, self.fusion, config.window_days, consumer_factory=consumer_factory)
        self.poller = StatePoller(
            self.network_subgraph, self.escrow_subgraph, self.payer.address, config.poll_interval_seconds,
        )
        self.authorization = AuthorizationManager(
            self.contracts, self.escrow_subgraph, self.signers, config.proof_deadline_seconds,
        )
        self.rebalancer = Rebalancer(
            self.contracts,
            self.fusion.snapshots,
            self.poller.snapshots,
            self.escrow_subgraph,
            min_debts={r: grt_to_wei(v) for r, v in config.min_debts.items()},
            max_batch_total=grt_to_wei(config.max_batch_deposit_grt) if config.max_batch_deposit_grt else None,
            is_ready=self.ready,
            on_deposit=lambda block: self.poller.request_refresh(),
        )
        self._threads: List[threading.Thread] = []
        self.failed: Optional[str] = None

    def ready(self) -> bool:
        if self.config.authorize_signers and not self.authorization.ready:
            return False
        return self.source.ready.is_set()

    def ensure_allowance(self) -> int:
        expected = grt_to_wei(self.config.grt_allowance)
        allowance = self.contracts.allowance()
        logger.info({"event": "allowance", "grt": str(wei_to_grt(allowance))})
        if allowance < expected:
            self.contracts.approve(expected)
            allowance = self.contracts.allowance()
            logger.info({"event": "allowance_approved", "grt": str(wei_to_grt(allowance))})
        return allowance

    def startup(self) -> None:
        if not self.fusion.restore():
            logger.info({"event": "cold_start", "checkpoint": self.config.kafka.checkpoint_path})
        if self.config.authorize_signers:
            self.authorization.ensure_authorized()
        self.ensure_allowance()

    def _spawn(self, name: str, target: Callable[[], Any]) -> threading.Thread:
        def guarded():
            try:
                target()
            except Exception:
                logger.exception("%s stopped", name)
                self.failed = name
                self.stop.set()

        t = threading.Thread(target=guarded, name=name, daemon=True)
        t.start()
        self._threads.append(t)
        return t

    def status(self) -> Dict[str, Any]:
        poll = self.poller.snapshots.get()
        ledger = self.fusion.snapshots.get()
        report = self.rebalancer.last_report
        pending = self.rebalancer.pending
        return {
            "version": __version__,
            "payer": self.payer.address,
            "ready": self.ready(),
            "signers": {a: s.value for a, s in self.authorization.states.items()},
            "ledger": {
                "taken_at": ledger.taken_at.isoformat(),
                "receivers": len(ledger.debts),
                "total_grt": str(wei_to_grt(ledger.total())),
                "voucher_regressions": self.ledger.voucher_regressions,
            },
            "poll": None if poll is None else {
                "fetched_at": poll.fetched_at.isoformat(),
                "allocations_block": poll.allocations.block_number,
                "escrow_block": poll.balances.block_number,
                "receivers": len(poll.allocations.allocations),
            },
            "last_cycle": report.to_dict() if report else None,
            "pending_tx": pending.tx_hash if pending else None,
        }

    def debts(self) -> LedgerSnapshot:
        return self.fusion.snapshots.get()

    def reconcile_once(self) -> None:
        try:
            self.rebalancer.run_cycle()
        except InsufficientAllowance as exc:
            logger.error({
                "event": "insufficient_allowance",
                "allowance_grt": str(wei_to_grt(exc.allowance)),
                "required_grt": str(wei_to_grt(exc.required)),
            })
        except (EscrowManagerError, requests.RequestException, Web3Exception) as exc:
            logger.error({"event": "cycle_failed", "error": str(exc)})

    def _install_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, lambda signum, frame: self.stop.set())

    def run(self) -> int:
        self._install_signals()
        self.startup()
        consumer = self._spawn("consumer", lambda: self.source.run(self.stop))
        self._spawn("poller", lambda: self.poller.run(self.stop))
        if self.config.status_port:
            app = create_app(self.status, self.debts)
            self._spawn("status_api", lambda: app.run(host="0.0.0.0", port=self.config.status_port, use_reloader=False))
        logger.info({"event": "started", "version": __version__, "payer": self.payer.address})

        while not self.stop.is_set():
            self.reconcile_once()
            self.stop.wait(self.config.update_interval_seconds)

        logger.info({"event": "stopping"})
        self.poller.request_refresh()
        consumer.join(JOIN_TIMEOUT)
        if self.failed:
            logger.error({"event": "worker_failed", "worker": self.failed})
            return 1
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        config = load_config(argv[0] if argv else None)
    except (OSError, ValueError) as exc:
        logger.error({"event": "bad_config", "error": str(exc)})
        return 2
    try:
        return EscrowManagerService(config).run()
    except EscrowManagerError as exc:
        logger.error({"event": "startup_failed", "error": str(exc), "kind": type(exc).__name__})
        return 1
