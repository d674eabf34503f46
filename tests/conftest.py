import pytest
from eth_account import Account

from escrow_manager.checkpoint_store import CheckpointStore
from escrow_manager.fusion import StreamFusion
from escrow_manager.ledger import DebtLedger

from fakes import PAYER_KEY, SIGNER_KEY, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return DebtLedger(window_days=28, clock=clock)


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(str(tmp_path / "ledger.json"))


@pytest.fixture
def fusion(ledger, store, clock):
    return StreamFusion(ledger, store, graph_env="test", flush_interval_seconds=30, clock=clock)


@pytest.fixture
def payer():
    return Account.from_key(PAYER_KEY)


@pytest.fixture
def signer():
    return Account.from_key(SIGNER_KEY)
