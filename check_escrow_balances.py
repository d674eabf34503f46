from __future__ import annotations

import sys

from dotenv import load_dotenv
from eth_account import Account

from escrow_manager.amounts import wei_to_grt
from escrow_manager.checkpoint_store import CheckpointStore
from escrow_manager.config import load_config
from escrow_manager.errors import CheckpointError, SubgraphError
from escrow_manager.ledger import DebtLedger
from escrow_manager.poller import escrow_balances
from escrow_manager.subgraph import SubgraphClient


def main() -> int:
    load_dotenv()
    try:
        cfg = load_config(sys.argv[1] if len(sys.argv) > 1 else None)
    except (OSError, ValueError) as exc:
        print("❌ bad config:", exc)
        return 2
    payer = Account.from_key(cfg.secret_key.get_secret_value()).address
    auth = cfg.query_auth.get_secret_value() if cfg.query_auth else None
    client = SubgraphClient(cfg.escrow_subgraph, auth, cfg.page_size)
    try:
        balances = escrow_balances(client, payer)
    except SubgraphError as exc:
        print("❌ escrow subgraph:", exc)
        return 1

    # debts as of the last checkpoint, if the service has written one
    ledger = DebtLedger(cfg.window_days)
    try:
        checkpoint = CheckpointStore(cfg.kafka.checkpoint_path).load()
    except CheckpointError as exc:
        print("⚠️ checkpoint unreadable:", exc)
        checkpoint = None
    if checkpoint is not None:
        ledger.restore(checkpoint)
    debts = ledger.snapshot()

    print({"payer": payer, "block": balances.block_number})
    for receiver in sorted(set(balances.balances) | set(debts.debts)):
        balance = balances.get(receiver)
        debt = debts.net_debt(receiver)
        print({
            "receiver": receiver,
            "balance_grt": str(wei_to_grt(balance)),
            "debt_grt": str(wei_to_grt(debt)),
            "shortfall_grt": str(wei_to_grt(max(0, debt - balance))),
        })
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
