import itertools
import random

from dlmm_tracker.models.schemas import EventKind
from dlmm_tracker.services.ledger import PositionLedger, build_ledger
from factories import classified

OPEN = EventKind.POSITION_OPEN
CLOSE = EventKind.POSITION_CLOSE


def test_multiplicity_is_opens_minus_closes():
    snapshot = build_ledger([
        classified(OPEN, "P1"),
        classified(OPEN, "P1"),
        classified(CLOSE, "P1"),
        classified(OPEN, "P2"),
        classified(CLOSE, "P2"),
    ])

    assert snapshot.active_positions == {"P1": 1}
    assert snapshot.entries["P1"].open_count == 2
    assert snapshot.entries["P1"].close_count == 1
    assert not snapshot.entries["P2"].is_active


def test_more_closes_than_opens_is_inactive_with_zero_multiplicity():
    snapshot = build_ledger([classified(CLOSE, "P1"), classified(CLOSE, "P1"), classified(OPEN, "P1")])

    entry = snapshot.entries["P1"]
    assert entry.multiplicity == 0
    assert not entry.is_active


def test_fold_is_order_independent():
    txs = [
        classified(OPEN, "P1"),
        classified(CLOSE, "P1"),
        classified(OPEN, "P1"),
        classified(OPEN, "P2"),
        classified(EventKind.FEE_CLAIM, "P2"),
        classified(OPEN, None),
    ]
    expected = build_ledger(txs)

    for perm in itertools.permutations(txs):
        snapshot = build_ledger(perm)
        assert snapshot.active_positions == expected.active_positions
        assert snapshot.unidentified_opens == expected.unidentified_opens


def test_counters_are_monotone():
    rng = random.Random(7)
    ledger = PositionLedger()
    previous = ledger.snapshot()

    for _ in range(200):
        kind = rng.choice([OPEN, CLOSE, EventKind.REBALANCE])
        ledger.add(classified(kind, rng.choice(["P1", "P2", "P3"])))
        current = ledger.snapshot()

        for pid, entry in current.entries.items():
            before = previous.entries.get(pid)
            before_open = before.open_count if before else 0
            before_close = before.close_count if before else 0
            before_mult = before.multiplicity if before else 0

            assert entry.open_count >= before_open
            assert entry.close_count >= before_close
            if kind == OPEN:
                assert entry.multiplicity >= before_mult
            elif kind == CLOSE:
                assert entry.multiplicity <= before_mult
            assert entry.multiplicity == max(0, entry.open_count - entry.close_count)

        previous = current


def test_unidentified_opens_are_counted_separately():
    snapshot = build_ledger([
        classified(OPEN, None),
        classified(OPEN, None),
        classified(CLOSE, None),
        classified(OPEN, "P1"),
    ])

    assert snapshot.unidentified_opens == 2
    assert snapshot.active_positions == {"P1": 1}
    assert snapshot.active_count == 3


def test_pool_ids_are_collected():
    snapshot = build_ledger([
        classified(OPEN, "P1", pool_id="POOL1"),
        classified(EventKind.UNKNOWN, None, pool_id="POOL2"),
        classified(CLOSE, "P1", pool_id="POOL1"),
    ])

    assert snapshot.pool_ids == ["POOL1", "POOL2"]
    assert snapshot.entries["P1"].pool_id == "POOL1"


def test_snapshot_is_detached_from_ledger():
    ledger = PositionLedger()
    ledger.add(classified(OPEN, "P1"))
    snapshot = ledger.snapshot()

    ledger.add(classified(CLOSE, "P1"))

    assert snapshot.active_positions == {"P1": 1}
