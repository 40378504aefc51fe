"""
Tests for per-chain balance reconciliation.
"""
import math

import pytest

from vaultsync.core.errors import InvariantViolationError
from vaultsync.ledger.events import DepositEvent, MoveEvent, WithdrawEvent
from vaultsync.ledger.reconciler import ChainBalance, active_chain_only, check_invariants, reconcile

CHAINS = ["Arc", "Ethereum"]


def dep(amount, block=1):
    return DepositEvent(account="0x1", amount=amount, block_number=block)


def wd(amount, block=1):
    return WithdrawEvent(account="0x1", amount=amount, block_number=block)


def move(src, dst, amount, block=1):
    return MoveEvent(source_chain=src, dest_chain=dst, amount=amount, block_number=block, timestamp=0)


def as_map(balances):
    return {b.chain: b.balance for b in balances}


class TestScenarios:
    def test_single_deposit(self):
        out = reconcile([dep(100)], CHAINS, 100, "Arc", include_zero=True)
        assert out == [
            ChainBalance("Arc", 100.0, 100.0),
            ChainBalance("Ethereum", 0.0, 0.0),
        ]

    def test_single_deposit_hides_zero_chains_by_default(self):
        out = reconcile([dep(100)], CHAINS, 100, "Arc")
        assert [b.chain for b in out] == ["Arc"]

    def test_move_between_chains(self):
        out = reconcile([dep(100), move("Arc", "Ethereum", 40)], CHAINS, 100, "Arc")
        assert out == [
            ChainBalance("Arc", 60.0, 60.0),
            ChainBalance("Ethereum", 40.0, 40.0),
        ]

    def test_undercount_goes_to_active_chain(self):
        out = reconcile([dep(100), move("Arc", "Ethereum", 40)], CHAINS, 150, "Arc")
        assert as_map(out) == {"Arc": 110.0, "Ethereum": 40.0}
        assert sum(b.balance for b in out) == pytest.approx(150)


class TestAccumulation:
    def test_withdraw_floors_at_zero(self):
        out = reconcile([dep(10), wd(50)], CHAINS, 0, "Arc")
        assert as_map(out) == {"Arc": 0.0}
        assert out[0].percentage == 0.0

    def test_move_with_unknown_chain_ignored(self):
        out = reconcile([dep(100), move("Arc", "Solana", 30)], CHAINS, 100, "Arc")
        assert as_map(out) == {"Arc": 100.0}

    def test_move_floors_source_at_zero(self):
        out = reconcile([move("Ethereum", "Arc", 25)], CHAINS, 25, "Arc")
        assert as_map(out) == {"Arc": 25.0}

    def test_active_chain_tracked_even_if_unsupported(self):
        out = reconcile([dep(5)], CHAINS, 5, "Base")
        assert as_map(out) == {"Base": 5.0}

    def test_overcount_taken_from_largest_holder(self):
        events = [dep(100), move("Arc", "Ethereum", 70)]
        out = reconcile(events, CHAINS, 80, "Arc")
        # Ethereum (70) is the largest holder and absorbs the 20 excess
        assert as_map(out) == {"Ethereum": 50.0, "Arc": 30.0}

    def test_overcount_spills_to_next_holder(self):
        events = [dep(100), move("Arc", "Ethereum", 60)]
        out = reconcile(events, CHAINS, 10, "Arc", include_zero=True)
        assert sum(b.balance for b in out) == pytest.approx(10)
        assert all(b.balance >= 0 for b in out)


class TestInvariants:
    @pytest.mark.parametrize("total", [0, 0.5, 100, 150, 1234.567891])
    def test_sum_matches_total(self, total):
        events = [dep(100), move("Arc", "Ethereum", 40), wd(10)]
        out = reconcile(events, ["Arc", "Ethereum", "Base"], total, "Arc", include_zero=True)
        check_invariants(out, total)
        assert sum(b.balance for b in out) == pytest.approx(total, abs=1e-6)

    def test_percentages_sum_to_100(self):
        out = reconcile([dep(30), move("Arc", "Ethereum", 10)], CHAINS, 30, "Arc")
        assert sum(b.percentage for b in out) == pytest.approx(100.0)

    def test_idempotent(self):
        events = [dep(100), move("Arc", "Ethereum", 40)]
        assert reconcile(events, CHAINS, 120, "Arc") == reconcile(events, CHAINS, 120, "Arc")

    def test_sorted_descending_with_stable_ties(self):
        events = [dep(100), move("Arc", "Ethereum", 50)]
        out = reconcile(events, ["Ethereum", "Arc"], 100, "Arc")
        assert [b.chain for b in out] == ["Ethereum", "Arc"]

    def test_empty_events_zero_total(self):
        out = reconcile([], CHAINS, 0, "Arc")
        assert out == [ChainBalance("Arc", 0.0, 0.0)]

    def test_invalid_inputs(self):
        with pytest.raises(ValueError):
            reconcile([], CHAINS, -1, "Arc")
        with pytest.raises(ValueError):
            reconcile([], CHAINS, math.nan, "Arc")
        with pytest.raises(ValueError):
            reconcile([], CHAINS, 10, "")

    def test_check_invariants_detects_mismatch(self):
        with pytest.raises(InvariantViolationError):
            check_invariants([ChainBalance("Arc", 90.0, 100.0)], 100.0)
        with pytest.raises(InvariantViolationError):
            check_invariants([ChainBalance("Arc", -1.0, 0.0), ChainBalance("Base", 101.0, 100.0)], 100.0)

    def test_active_chain_only(self):
        assert active_chain_only(42.0, "Arc") == [ChainBalance("Arc", 42.0, 100.0)]
        assert active_chain_only(0.0, "Arc") == [ChainBalance("Arc", 0.0, 0.0)]
