"""
Typed reads of vault, oracle and cross-chain router state.

Every read goes through the shared RetryPolicy so rate-limited providers are
backed off uniformly. Values are converted to float units on the way out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from vaultsync.infra.retry import FailureKind, RetryPolicy
from vaultsync.infra.rpc_client import AsyncRpc
from vaultsync.ledger.abi import PRICE_DECIMALS, USDC_DECIMALS, from_units

log = logging.getLogger("vaultsync")

RISK_PROFILES = {0: "Conservative", 1: "Balanced", 2: "Aggressive"}


def risk_profile_name(profile: int) -> str:
    return RISK_PROFILES.get(int(profile), f"Profile{int(profile)}")


@dataclass(frozen=True)
class ContractAddresses:
    vault: str
    oracle: str
    cross_chain: str


class VaultReader:
    def __init__(
        self,
        rpc: AsyncRpc,
        addresses: ContractAddresses,
        retry: Optional[RetryPolicy] = None,
        log_event: Optional[Callable[..., None]] = None,
        on_retry: Optional[Callable[[FailureKind], None]] = None,
    ) -> None:
        self.rpc = rpc
        self.addresses = addresses
        self.retry = retry or RetryPolicy()
        self._log_event = log_event
        self._on_retry = on_retry

    async def _read(self, label: str, address: str, signature: str, args=(), returns=("uint256",)):
        return await self.retry.run(
            lambda: self.rpc.read_value(address, signature, args, returns),
            label=label,
            log_event=self._log_event,
            on_retry=self._on_retry,
        )

    async def block_number(self) -> int:
        return await self.retry.run(
            self.rpc.block_number, label="block_number", log_event=self._log_event, on_retry=self._on_retry
        )

    # -- vault --------------------------------------------------------------

    async def total_deposits(self) -> float:
        """Authoritative vault total in USDC units."""
        raw = await self._read("total_deposits", self.addresses.vault, "totalDeposits()")
        return from_units(raw, USDC_DECIMALS)

    async def mode(self) -> int:
        return int(await self._read("mode", self.addresses.vault, "getMode()"))

    async def risk_profile(self, user: str) -> int:
        return int(await self._read("risk_profile", self.addresses.vault, "userRiskProfile(address)", (user,)))

    # -- cross-chain router -------------------------------------------------

    async def active_chain(self) -> str:
        return await self._read("active_chain", self.addresses.cross_chain, "activeChain()", returns=("string",))

    async def best_chain(self) -> str:
        return await self._read("best_chain", self.addresses.cross_chain, "bestChain()", returns=("string",))

    async def supported_chains(self) -> List[str]:
        chains = await self._read(
            "supported_chains", self.addresses.cross_chain, "getSupportedChains()", returns=("string[]",)
        )
        return [c for c in chains if c]

    async def chain_price(self, chain: str) -> float:
        raw = await self._read("chain_price", self.addresses.cross_chain, "chainPrices(string)", (chain,))
        return from_units(raw, PRICE_DECIMALS)

    # -- oracle -------------------------------------------------------------

    async def oracle_price(self) -> float:
        raw = await self._read("oracle_price", self.addresses.oracle, "getPrice()")
        return from_units(raw, PRICE_DECIMALS)
