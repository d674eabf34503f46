import pytest

from escrow_manager.amounts import GRT
from escrow_manager.poller import StatePoller, active_allocations, authorized_signers, escrow_balances
from escrow_manager.retry import NO_RETRY
from escrow_manager.subgraph import SubgraphClient

from fakes import RECEIVER_A, RECEIVER_B, StubSession, paged_handler

PAYER = "0x" + "9a" * 20


def _client(handler, page_size=500):
    return SubgraphClient("http://graph.test", None, page_size, retry_policy=NO_RETRY, session=StubSession(handler))


ALLOCATIONS = [
    {"id": "0x01", "indexer": {"id": RECEIVER_A.lower()}},
    {"id": "0x02", "indexer": {"id": RECEIVER_A.lower()}},
    {"id": "0x03", "indexer": {"id": RECEIVER_B.lower()}},
]

ACCOUNTS = [
    {"id": "0xe1", "balance": str(7 * GRT), "receiver": {"id": RECEIVER_A.lower()}},
]


def test_allocations_are_grouped_by_receiver():
    snapshot = active_allocations(_client(paged_handler(ALLOCATIONS, block_number=50), page_size=2))

    assert snapshot.allocations == {RECEIVER_A: frozenset({"0x01", "0x02"}), RECEIVER_B: frozenset({"0x03"})}
    assert snapshot.receivers == {RECEIVER_A, RECEIVER_B}
    assert snapshot.block_number == 50


def test_escrow_balances_query_is_scoped_to_payer():
    client = _client(paged_handler(ACCOUNTS, block_number=77))
    snapshot = escrow_balances(client, "0x" + "9A" * 20)

    assert snapshot.get(RECEIVER_A) == 7 * GRT
    assert snapshot.get(RECEIVER_B) == 0
    assert snapshot.block_number == 77
    assert f'sender: "{PAYER}"' in client.session.requests[0]["query"]


def test_authorized_signers_are_checksummed():
    signer = "0x" + "ab" * 20
    client = _client(lambda payload: {"data": {"sender": {"signers": [{"id": signer}]}}})

    assert {s.lower() for s in authorized_signers(client, PAYER)} == {signer}


def test_unknown_payer_has_no_signers():
    client = _client(lambda payload: {"data": {"sender": None}})

    assert authorized_signers(client, PAYER) == frozenset()


@pytest.fixture
def routes():
    return {"network": paged_handler(ALLOCATIONS, block_number=10), "escrow": paged_handler(ACCOUNTS, block_number=11)}


def _poller(routes, clock):
    network = _client(lambda payload: routes["network"](payload))
    escrow = _client(lambda payload: routes["escrow"](payload))
    return StatePoller(network, escrow, PAYER, interval_seconds=1, clock=clock)


def test_poll_swaps_in_both_snapshots_together(routes, clock):
    poller = _poller(routes, clock)

    assert poller.poll_once()
    snapshot = poller.snapshots.get()

    assert snapshot.allocations.block_number == 10
    assert snapshot.balances.block_number == 11
    assert snapshot.fetched_at == clock()


def test_failed_poll_keeps_previous_snapshot(routes, clock):
    poller = _poller(routes, clock)
    poller.poll_once()
    before = poller.snapshots.get()

    routes["escrow"] = lambda payload: {"errors": [{"message": "missing block: 0x5"}]}
    assert poller.poll_once() is False
    routes["escrow"] = lambda payload: {"data": {"meta": {"block": {"number": 12, "hash": "0x1"}}}}
    routes["network"] = lambda payload: {"data": {"results": []}}
    assert poller.poll_once() is False

    assert poller.snapshots.get() is before
    assert poller.snapshots.version == 1
