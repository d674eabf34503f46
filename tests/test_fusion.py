from datetime import timedelta

from eth_utils import to_checksum_address

from escrow_manager.amounts import GRT
from escrow_manager.fusion import StreamFusion
from escrow_manager.ledger import DebtLedger, Position
from escrow_manager.messages import RawMessage, TopicRole

from fakes import NOW, RECEIVER_A, RECEIVER_B, ms, receipt_payload, rollup_payload, voucher_key, voucher_value

SIGNER = "0x" + "5e" * 20


def _receipt(offset, receiver=RECEIVER_A, grt=1, ts=NOW, **kwargs):
    return RawMessage(TopicRole.RECEIPTS, None, receipt_payload(receiver, grt, ts, **kwargs), ms(ts),
                      Position("queries/0", offset))


def _voucher(offset, grt, receiver=RECEIVER_A, signer=SIGNER, ts=NOW):
    return RawMessage(TopicRole.VOUCHERS, voucher_key(signer, receiver), voucher_value(grt), ms(ts),
                      Position("ravs/0", offset))


def test_receipts_and_vouchers_fold_into_debt(fusion, ledger):
    for offset in range(12):
        assert fusion.apply(_receipt(offset))
    fusion.apply(_voucher(0, 5))

    assert ledger.net_debt(RECEIVER_A) == 7 * GRT
    assert fusion.stats["receipts"] == 12
    assert fusion.stats["vouchers"] == 1


def test_replayed_position_is_skipped(fusion, ledger):
    fusion.apply(_receipt(0, grt=3))

    assert fusion.apply(_receipt(0, grt=3)) is False
    assert ledger.net_debt(RECEIVER_A) == 3 * GRT
    assert fusion.stats["replayed"] == 1


def test_malformed_message_is_skipped_but_consumed(fusion, ledger):
    bad = RawMessage(TopicRole.RECEIPTS, None, b"{oops", ms(NOW), Position("queries/0", 4))

    assert fusion.apply(bad) is False
    assert fusion.stats["malformed"] == 1
    assert ledger.positions == {"queries/0": 4}
    assert fusion.apply(_receipt(5, grt=2))
    assert ledger.net_debt(RECEIVER_A) == 2 * GRT


def test_receipts_from_other_environments_and_legacy_are_filtered(fusion, ledger):
    fusion.apply(_receipt(0, graph_env="mainnet"))
    fusion.apply(_receipt(1, legacy_scalar=True))
    fusion.apply(_receipt(2))

    assert ledger.net_debt(RECEIVER_A) == GRT
    assert fusion.stats["filtered"] == 2
    assert ledger.positions == {"queries/0": 2}


def test_only_configured_signers_count(ledger, store, clock):
    fusion = StreamFusion(ledger, store, signers=[to_checksum_address(SIGNER)], clock=clock)
    other = "0x" + "77" * 20

    fusion.apply(_voucher(0, 1, signer=other))
    fusion.apply(_receipt(0, grt=4, signer=other))
    fusion.apply(_receipt(1, grt=4, signer=SIGNER))

    assert ledger.net_debt(RECEIVER_A) == 4 * GRT
    assert ledger.voucher_offset(to_checksum_address(other), RECEIVER_A) == 0


def test_rollups_add_every_entry_and_track_latest_hour(fusion, ledger):
    hour = NOW.replace(minute=0) - timedelta(hours=2)
    fusion.apply(RawMessage(TopicRole.ROLLUPS, None, rollup_payload(hour, [
        (SIGNER, RECEIVER_A, 3),
        (SIGNER, RECEIVER_B, 1),
    ]), ms(hour), Position("rollups/0", 0)))
    fusion.apply(RawMessage(TopicRole.ROLLUPS, None, rollup_payload(hour - timedelta(hours=1), [
        (SIGNER, RECEIVER_A, 2),
    ]), ms(hour), Position("rollups/0", 1)))

    assert ledger.net_debt(RECEIVER_A) == 5 * GRT
    assert ledger.net_debt(RECEIVER_B) == GRT
    assert fusion.latest_rollup_hour_ms == ms(hour)
    assert ledger.positions == {"rollups/0": 1}


def test_receipts_before_cutoff_are_ignored(ledger, store, clock):
    fusion = StreamFusion(ledger, store, receipts_cutoff_ms=ms(NOW), clock=clock)

    fusion.apply(_receipt(0, ts=NOW - timedelta(minutes=1)))
    fusion.apply(_receipt(1, ts=NOW))
    fusion.apply(_voucher(0, 0.5, ts=NOW - timedelta(days=1)))

    assert ledger.net_debt(RECEIVER_A) == GRT // 2
    assert fusion.stats["before_cutoff"] == 1


def test_flush_writes_checkpoint_and_publishes_snapshot(fusion, store, clock):
    fusion.apply(_receipt(0, grt=6))
    assert fusion.snapshots.get().net_debt(RECEIVER_A) == 0

    assert fusion.maybe_flush() is None
    clock.advance(seconds=31)
    positions = fusion.maybe_flush()

    assert positions == {"queries/0": 0}
    assert fusion.snapshots.get().net_debt(RECEIVER_A) == 6 * GRT
    assert store.load().positions == {"queries/0": 0}
    assert fusion.stats == {}


def test_flush_is_due_when_the_day_changes(fusion, clock):
    clock.now = clock.now.replace(hour=23, minute=59, second=55)
    fusion._last_flush = clock.now
    clock.advance(seconds=10)

    assert fusion.flush_due(clock())


def test_failed_checkpoint_write_returns_nothing_to_commit(fusion, store, monkeypatch):
    fusion.apply(_receipt(0))

    def fail(checkpoint):
        raise OSError("disk full")

    monkeypatch.setattr(store, "save", fail)
    assert fusion.flush() is None


def test_restart_resumes_from_checkpoint(fusion, store, clock):
    fusion.apply(_receipt(0, grt=2))
    fusion.apply(_receipt(1, grt=3))
    fusion.apply(_voucher(0, 1))
    fusion.flush()

    restarted = StreamFusion(DebtLedger(28, clock=clock), store, clock=clock)
    assert restarted.restore()
    assert restarted.apply(_receipt(1, grt=3)) is False
    assert restarted.snapshots.get().net_debt(RECEIVER_A) == 4 * GRT
    assert restarted.ledger.voucher_offset(to_checksum_address(SIGNER), RECEIVER_A) == GRT


def test_restore_without_checkpoint_is_cold(fusion):
    assert fusion.restore() is False

def test_cold_replay_of_old_voucher_keeps_current_debt(fusion, ledger):
    fusion.apply(_voucher(0, 1000, ts=NOW - timedelta(days=100)))
    for offset in range(50):
        fusion.apply(_receipt(offset))

    assert ledger.net_debt(RECEIVER_A) == 50 * GRT

    fusion.apply(_voucher(1, 1020))
    assert ledger.net_debt(RECEIVER_A) == 30 * GRT
