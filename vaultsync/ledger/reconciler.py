"""
Per-chain balance reconciliation.

Replayed events give a partial picture (bounded window, possibly missed logs);
totalDeposits() is the one trusted aggregate. reconcile() accumulates the
events and then forces the per-chain balances to sum to the trusted total.

Deposits and withdrawals carry no chain tag, so they are attributed to the
chain active at reconciliation time. Drift from that approximation is absorbed
by the convergence steps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from vaultsync.core.errors import InvariantViolationError
from vaultsync.ledger.events import DepositEvent, LedgerEvent, MoveEvent, WithdrawEvent

EPSILON = 1e-6


@dataclass(frozen=True)
class ChainBalance:
    chain: str
    balance: float
    percentage: float


def _accumulate(
    events: Iterable[LedgerEvent],
    balances: Dict[str, float],
    active_chain: str,
) -> None:
    for ev in events:
        if isinstance(ev, DepositEvent):
            balances[active_chain] += ev.amount
        elif isinstance(ev, WithdrawEvent):
            balances[active_chain] = max(0.0, balances[active_chain] - ev.amount)
        elif isinstance(ev, MoveEvent):
            if ev.source_chain in balances and ev.dest_chain in balances:
                balances[ev.source_chain] = max(0.0, balances[ev.source_chain] - ev.amount)
                balances[ev.dest_chain] += ev.amount


def _converge(balances: Dict[str, float], total: float, active_chain: str, epsilon: float) -> None:
    calculated = sum(balances.values())
    if total > calculated:
        balances[active_chain] += total - calculated
    elif calculated > total:
        # Take the excess from the largest holder; if that one empties, move on to the next.
        excess = calculated - total
        while excess > epsilon:
            largest = max(balances, key=lambda c: balances[c])
            if balances[largest] <= 0:
                break
            take = min(excess, balances[largest])
            balances[largest] -= take
            excess -= take

    residual = total - sum(balances.values())
    if abs(residual) > 0:
        balances[active_chain] = max(0.0, balances[active_chain] + residual)


def reconcile(
    events: Sequence[LedgerEvent],
    supported_chains: Sequence[str],
    authoritative_total: float,
    active_chain: str,
    epsilon: float = EPSILON,
    include_zero: bool = False,
) -> List[ChainBalance]:
    """
    Build the per-chain balance breakdown.

    Args:
        events: Replayed ledger events, in arrival order
        supported_chains: Chains to track (the active chain is always tracked)
        authoritative_total: Trusted vault total, >= 0
        active_chain: Chain that receives deposits, withdrawals and residuals
        epsilon: Sum tolerance
        include_zero: Keep zero-balance supported chains in the output

    Returns:
        New list of ChainBalance sorted by balance descending; ties keep the
        supported-chains order.
    """
    if not active_chain:
        raise ValueError("active_chain is required")
    total = float(authoritative_total)
    if math.isnan(total) or total < 0:
        raise ValueError(f"authoritative_total must be >= 0, got {authoritative_total!r}")

    order: List[str] = []
    for chain in [*supported_chains, active_chain]:
        if chain and chain not in order:
            order.append(chain)
    balances: Dict[str, float] = {chain: 0.0 for chain in order}

    _accumulate(events, balances, active_chain)
    _converge(balances, total, active_chain, epsilon)

    grand = sum(balances.values())
    out = []
    for chain in order:
        bal = balances[chain]
        if bal <= 0 and chain != active_chain and not include_zero:
            continue
        pct = (bal / grand * 100.0) if grand > 0 else 0.0
        out.append(ChainBalance(chain=chain, balance=bal, percentage=pct))

    rank = {chain: i for i, chain in enumerate(order)}
    out.sort(key=lambda cb: (-cb.balance, rank[cb.chain]))
    return out


def active_chain_only(total: float, active_chain: str) -> List[ChainBalance]:
    """Degraded breakdown: everything attributed to the active chain."""
    total = max(0.0, float(total))
    return [ChainBalance(chain=active_chain, balance=total, percentage=100.0 if total > 0 else 0.0)]


def check_invariants(balances: Sequence[ChainBalance], total: float, epsilon: float = EPSILON) -> None:
    """Raise InvariantViolationError if balances are negative or do not sum to ``total``."""
    negative = [b.chain for b in balances if b.balance < 0]
    if negative:
        raise InvariantViolationError(f"negative balance on {negative}")
    summed = sum(b.balance for b in balances)
    if abs(summed - total) > epsilon:
        raise InvariantViolationError(f"sum {summed:.6f} != total {total:.6f}")
    pct = sum(b.percentage for b in balances)
    if summed > 0 and abs(pct - 100.0) > 1e-6:
        raise InvariantViolationError(f"percentages sum to {pct:.6f}")
