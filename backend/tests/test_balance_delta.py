import pytest

from dlmm_tracker.services.balance_delta import BalanceDeltaAnalyzer
from factories import MINT_A, MINT_B, WALLET, key, make_record, tb, addr


@pytest.fixture
def analyzer():
    return BalanceDeltaAnalyzer()


def test_one_change_per_mint_with_largest_magnitude(analyzer):
    record = make_record(
        pre=[tb(1, MINT_A, 10), tb(2, MINT_A, 3), tb(4, MINT_B, 5)],
        post=[tb(1, MINT_A, 4), tb(2, MINT_A, 2), tb(3, MINT_B, 250), tb(4, MINT_B, 4)],
    )

    changes = analyzer.token_changes(record)

    assert [(c.mint, c.delta) for c in changes] == [(MINT_A, pytest.approx(-6)), (MINT_B, pytest.approx(250))]
    assert changes[0].account_index == 1
    assert changes[1].account_index == 3


def test_closed_account_counts_as_full_outflow(analyzer):
    record = make_record(pre=[tb(2, MINT_A, 7.5)], post=[])

    changes = analyzer.token_changes(record)

    assert len(changes) == 1
    assert changes[0].delta == pytest.approx(-7.5)


def test_dust_and_unchanged_balances_are_ignored(analyzer):
    record = make_record(
        pre=[tb(1, MINT_A, 5), tb(2, MINT_B, 0.0000001)],
        post=[tb(1, MINT_A, 5.0000005)],
    )

    assert analyzer.token_changes(record) == []


def test_unparseable_amount_counts_as_zero(analyzer):
    record = make_record(post=[tb(1, MINT_A, "abc")])

    assert analyzer.token_changes(record) == []


def test_mints_keep_first_discovery_order(analyzer):
    record = make_record(
        pre=[tb(3, MINT_A, 2)],
        post=[tb(1, MINT_B, 1), tb(3, MINT_A, 100)],
    )

    assert [c.mint for c in analyzer.token_changes(record)] == [MINT_B, MINT_A]


def test_native_delta_for_wallet(analyzer):
    record = make_record(
        pre_native=[2_000_000_000, 0],
        post_native=[1_500_000_000, 0],
    )

    assert analyzer.native_delta(record, WALLET) == pytest.approx(-0.5)


def test_native_delta_zero_when_wallet_absent(analyzer):
    record = make_record(
        keys=[key(addr(1), signer=True, writable=True)],
        pre_native=[10],
        post_native=[5],
    )

    assert analyzer.native_delta(record, WALLET) == 0.0
