from __future__ import annotations

import os
import sys

from dotenv import load_dotenv
from eth_account import Account

from escrow_manager.amounts import grt_to_wei, wei_to_grt
from escrow_manager.config import load_config
from escrow_manager.contracts import EscrowContracts, connect
from escrow_manager.errors import EscrowManagerError


def main() -> int:
    load_dotenv()
    try:
        cfg = load_config(sys.argv[1] if len(sys.argv) > 1 else None)
    except (OSError, ValueError) as exc:
        print("❌ bad config:", exc)
        return 2
    amount_grt = os.getenv("APPROVE_GRT") or cfg.grt_allowance
    contracts = EscrowContracts(
        connect(cfg.rpc_url.get_secret_value()),
        Account.from_key(cfg.secret_key.get_secret_value()),
        token=cfg.token_contract,
        escrow=cfg.escrow_contract,
        collector=cfg.collector_contract,
        chain_id=cfg.chain_id,
    )
    before = contracts.allowance()
    print({"payer": contracts.payer, "allowance_grt": str(wei_to_grt(before))})
    try:
        tx = contracts.approve(grt_to_wei(amount_grt))
    except EscrowManagerError as exc:
        print("❌ approve failed:", exc)
        return 1
    print({"approve_tx": tx, "allowance_grt": str(wei_to_grt(contracts.allowance()))})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
