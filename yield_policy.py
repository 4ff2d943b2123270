#!/usr/bin/env python3
"""
Stable-yield policy: keep supplied stablecoins in the best-paying market.

Pure decision engine, no I/O. APRs are on the 0..100 scale (4.0 = 4%),
as reported by the lending markets.

Rules (first match wins):
a. paused                      -> hold
b. no eligible candidate       -> hold (withdraw if the current market was delisted)
c. nothing supplied yet        -> supply best
d. current is already the best -> hold
e. best - current >= minAprDelta -> rebalance current -> best
f. otherwise                   -> hold, reason shows delta vs threshold
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from actions import Action, AprMetrics, Hold, Rebalance, Supply, Withdraw
from lending.base import LendingMarket, LendingPosition, PositionAsset, largest_row

DEFAULT_STABLE_SYMBOLS: Tuple[str, ...] = ("USDC", "USDT", "USDt", "DAI", "USDC.e", "FRAX")


@dataclass
class YieldConfig:
    """Thresholds for the stable-yield worker."""
    min_apr_delta: float = 0.5
    stable_symbols: Tuple[str, ...] = DEFAULT_STABLE_SYMBOLS
    top_n: int = 5
    paused: bool = False

    def symbol_set(self) -> frozenset:
        return frozenset(s.upper() for s in self.stable_symbols)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_apr_delta": self.min_apr_delta,
            "stable_symbols": list(self.stable_symbols),
            "top_n": self.top_n,
            "paused": self.paused,
        }


@dataclass(frozen=True)
class YieldCandidate:
    token: str                # underlying token address / id
    symbol: str
    apr: float
    market_address: str = ""
    decimals: int = 18
    listed: bool = True


@dataclass(frozen=True)
class CurrentSupply:
    candidate: YieldCandidate
    balance_raw: int = 0


@dataclass(frozen=True)
class YieldInput:
    current: Optional[CurrentSupply]
    candidates: Tuple[YieldCandidate, ...] = field(default_factory=tuple)

    @property
    def best(self) -> Optional[YieldCandidate]:
        return self.candidates[0] if self.candidates else None


def _candidate_from_market(market: LendingMarket) -> YieldCandidate:
    return YieldCandidate(
        token=market.underlying_address,
        symbol=market.underlying_symbol,
        apr=float(market.supply_apy or 0.0),
        market_address=market.market_address,
        decimals=int(market.underlying_decimals),
        listed=bool(market.is_listed),
    )


def rank_candidates(markets: Sequence[LendingMarket], config: YieldConfig) -> List[YieldCandidate]:
    """Listed stablecoin markets, best supply APR first, limited to top_n."""
    symbols = config.symbol_set()
    eligible = [
        _candidate_from_market(m)
        for m in markets
        if m.is_listed and (m.underlying_symbol or "").upper() in symbols
    ]
    eligible.sort(key=lambda c: c.apr, reverse=True)
    return eligible[: max(0, int(config.top_n))]


def _current_supply(
    markets: Sequence[LendingMarket],
    position: LendingPosition,
    config: YieldConfig,
) -> Optional[CurrentSupply]:
    symbols = config.symbol_set()
    stable_rows: List[PositionAsset] = [
        row for row in position.supplies
        if (row.underlying_symbol or "").upper() in symbols and row.balance_int > 0
    ]
    row = largest_row(stable_rows)
    if row is None:
        return None
    addr = row.market_address.lower()
    market = next((m for m in markets if m.market_address.lower() == addr), None)
    if market is None:
        # Market vanished from the listing: keep the row, treat it as delisted.
        candidate = YieldCandidate(
            token=row.underlying_address,
            symbol=row.underlying_symbol,
            apr=0.0,
            market_address=row.market_address,
            decimals=int(row.underlying_decimals),
            listed=False,
        )
    else:
        candidate = _candidate_from_market(market)
    return CurrentSupply(candidate=candidate, balance_raw=row.balance_int)


def build_yield_input(
    markets: Sequence[LendingMarket],
    position: LendingPosition,
    config: YieldConfig,
) -> YieldInput:
    return YieldInput(
        current=_current_supply(markets, position, config),
        candidates=tuple(rank_candidates(markets, config)),
    )


def decide_yield_action(inp: YieldInput, config: YieldConfig) -> Action:
    current = inp.current.candidate if inp.current else None
    best = inp.best
    current_apr = current.apr if current else None
    best_apr = best.apr if best else None
    apr_delta = (best_apr or 0.0) - (current_apr or 0.0)
    metrics = AprMetrics(
        current_token=current.token if current else None,
        current_symbol=current.symbol if current else None,
        current_apr=current_apr,
        best_token=best.token if best else None,
        best_symbol=best.symbol if best else None,
        best_apr=best_apr,
        apr_delta=apr_delta,
    )

    if config.paused:
        return Hold(reason="paused by config", metrics=metrics)

    if best is None:
        if current is not None and not current.listed:
            return Withdraw(
                from_token=current.token,
                reason=f"{current.symbol} market is no longer listed and no eligible candidate remains",
                metrics=metrics,
            )
        return Hold(reason="no eligible candidate", metrics=metrics)

    if current is None:
        return Supply(
            to_token=best.token,
            reason=f"No current stablecoin supply. Best candidate: {best.symbol} at {best.apr:.2f}% APR",
            metrics=metrics,
        )

    if current.token.lower() == best.token.lower():
        return Hold(
            reason=f"already optimal: {current.symbol} at {current.apr:.2f}% APR",
            metrics=metrics,
        )

    if apr_delta >= config.min_apr_delta:
        return Rebalance(
            from_token=current.token,
            to_token=best.token,
            reason=(
                f"Better APR available: {best.symbol} at {best.apr:.2f}% vs current "
                f"{current.symbol} at {current.apr:.2f}% (delta +{apr_delta:.2f}%)"
            ),
            metrics=metrics,
        )

    return Hold(
        reason=(
            f"APR delta {apr_delta:.2f}% below threshold {config.min_apr_delta}% "
            f"(current {current.symbol} {current.apr:.2f}%, best {best.symbol} {best.apr:.2f}%)"
        ),
        metrics=metrics,
    )
