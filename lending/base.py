#!/usr/bin/env python3
"""
Shared lending adapter interface and dataclasses.

Each lending protocol (Venus, Morpho, Burrow, ...) implements
``LendingAdapter``. The workers and the executor only talk to this
interface:
- market reads (rates, listing status, prices)
- account position reads (supply / borrow / idle wallet rows)
- unsigned calldata builders; signing is the signer's job
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class LendingMarket:
    """One lending market with live rates."""
    protocol: str
    network: str
    market_address: str             # vToken / aToken / market id
    underlying_address: str         # address(0) for the native asset
    underlying_symbol: str
    underlying_decimals: int
    supply_apy: float               # 0..100 scale (3.5 = 3.5%)
    borrow_apy: float               # 0..100 scale
    total_supply: str = "0"         # raw units
    total_borrow: str = "0"         # raw units
    collateral_factor: float = 0.0  # 0..1
    is_collateral: bool = False
    is_listed: bool = True
    underlying_price_usd: float = 0.0  # 0 = unknown


@dataclass
class PositionAsset:
    """One supply, borrow or wallet row of an account."""
    market_address: str
    underlying_address: str
    underlying_symbol: str
    underlying_decimals: int
    balance_raw: str
    balance_formatted: str = ""
    value_usd: float = 0.0

    @property
    def balance_int(self) -> int:
        return parse_raw(self.balance_raw)


@dataclass
class LendingPosition:
    protocol: str
    network: str
    account: str
    supplies: List[PositionAsset] = field(default_factory=list)
    borrows: List[PositionAsset] = field(default_factory=list)
    total_collateral_value_usd: str = "0"
    total_borrow_value_usd: str = "0"
    current_ltv: float = 0.0
    liquidation_ltv: float = 0.0
    health_factor: float = float("inf")
    # Idle (not supplied) token balances held by the account.
    wallet: List[PositionAsset] = field(default_factory=list)


@dataclass
class CallData:
    """Unsigned transaction step."""
    to: str
    data: str
    value: str = "0"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"to": self.to, "data": self.data, "value": self.value, "description": self.description}


@dataclass
class SupplyParams:
    network: str
    account: str
    token_address: str
    amount_raw: str


@dataclass
class BorrowParams:
    network: str
    account: str
    market_address: str
    amount_raw: str


@dataclass
class RepayParams:
    network: str
    account: str
    token_address: str
    amount_raw: str


@dataclass
class WithdrawParams:
    network: str
    account: str
    token_address: str
    amount_raw: str


@dataclass
class EnterMarketParams:
    network: str
    account: str
    market_addresses: List[str]


@dataclass
class SwapParams:
    network: str
    account: str
    from_token: str
    to_token: str
    amount_raw: str
    slippage_bps: int = 50


class LendingAdapter(abc.ABC):
    """Base class for lending protocol adapters."""

    protocol_id: str = ""

    @property
    def name(self) -> str:
        return self.protocol_id or self.__class__.__name__

    @abc.abstractmethod
    async def get_markets(self, network: str) -> List[LendingMarket]:
        """List markets with live rate data."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_account_position(self, network: str, account: str) -> LendingPosition:
        """Full lending position for one account."""
        raise NotImplementedError

    @abc.abstractmethod
    async def build_supply_calldata(self, params: SupplyParams) -> List[CallData]:
        """Supply (deposit). May include an ERC-20 approve step first."""
        raise NotImplementedError

    @abc.abstractmethod
    async def build_enter_market_calldata(self, params: EnterMarketParams) -> CallData:
        raise NotImplementedError

    @abc.abstractmethod
    async def build_borrow_calldata(self, params: BorrowParams) -> CallData:
        raise NotImplementedError

    @abc.abstractmethod
    async def build_repay_calldata(self, params: RepayParams) -> List[CallData]:
        """Repay. May include an ERC-20 approve step first."""
        raise NotImplementedError

    @abc.abstractmethod
    async def build_withdraw_calldata(self, params: WithdrawParams) -> CallData:
        raise NotImplementedError

    async def build_swap_calldata(self, params: SwapParams) -> List[CallData]:
        """Swap between underlying tokens (used by stablecoin rebalances).

        Default: unsupported. Adapters backed by a DEX router override this.
        """
        raise NotImplementedError(f"{self.name} adapter does not support token swaps")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_raw(value: Any) -> int:
    """Raw integer balance; malformed values count as 0."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def parse_usd(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    if out != out:
        return 0.0
    return out


def largest_row(rows: Sequence[PositionAsset]) -> Optional[PositionAsset]:
    """Row with the largest raw balance (the later row wins ties)."""
    best: Optional[PositionAsset] = None
    for row in rows:
        if best is None or row.balance_int >= best.balance_int:
            best = row
    return best


def usd_to_raw(amount_usd: float, decimals: int, price_usd: float = 0.0) -> int:
    """Convert a USD amount into raw token units (price 1.0 when unknown)."""
    if amount_usd <= 0:
        return 0
    price = price_usd if price_usd and price_usd > 0 else 1.0
    raw = Decimal(str(amount_usd)) / Decimal(str(price)) * (Decimal(10) ** int(decimals))
    return int(raw.to_integral_value(rounding=ROUND_DOWN))


def rescale_raw(amount_raw: int, from_decimals: int, to_decimals: int) -> int:
    if to_decimals >= from_decimals:
        return amount_raw * (10 ** (to_decimals - from_decimals))
    return amount_raw // (10 ** (from_decimals - to_decimals))
