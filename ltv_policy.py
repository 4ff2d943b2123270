#!/usr/bin/env python3
"""
LTV risk policy for lending positions.

Pure decision engine: (position snapshot, config) -> action. No I/O.

Priority (first match wins):
1. paused             -> hold
2. no active position -> hold
3. LTV > maxLTV       -> repay down to maxLTV
4. LTV < targetLTV and spread >= minYieldSpread -> borrow up to targetLTV
5. otherwise          -> hold

Rates are fractions (0.035 = 3.5%). Lending markets report APY on a
0..100 scale; ``build_ltv_input`` converts.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from actions import Action, Hold, LtvMetrics, Optimize, Repay
from lending.base import LendingMarket, LendingPosition, PositionAsset, largest_row, parse_usd


@dataclass
class LtvConfig:
    """Thresholds for the lending worker."""
    max_ltv: float = 0.75
    target_ltv: float = 0.60
    min_yield_spread: float = 0.02
    paused: bool = False
    # ltv_critical alert fires above max_ltv * critical_ltv_ratio
    critical_ltv_ratio: float = 0.95

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LtvInput:
    collateral_value_usd: float
    borrow_value_usd: float
    supply_apy: float
    borrow_apr: float


def compute_ltv(collateral_value_usd: float, borrow_value_usd: float) -> float:
    """Borrow / collateral, 0 when there is no collateral."""
    if collateral_value_usd <= 0:
        return 0.0
    return borrow_value_usd / collateral_value_usd


def compute_yield_spread(supply_apy: float, borrow_apr: float) -> float:
    return supply_apy - borrow_apr


def calculate_repay_amount(collateral_value_usd: float, borrow_value_usd: float, max_ltv: float) -> float:
    """USD to repay so LTV falls back to max_ltv."""
    return max(0.0, borrow_value_usd - max_ltv * collateral_value_usd)


def calculate_optimize_amount(collateral_value_usd: float, borrow_value_usd: float, target_ltv: float) -> float:
    """Additional USD that can be borrowed before LTV reaches target_ltv."""
    return max(0.0, target_ltv * collateral_value_usd - borrow_value_usd)


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def decide_ltv_action(inp: LtvInput, config: LtvConfig) -> Action:
    current_ltv = compute_ltv(inp.collateral_value_usd, inp.borrow_value_usd)
    yield_spread = compute_yield_spread(inp.supply_apy, inp.borrow_apr)
    metrics = LtvMetrics(current_ltv=current_ltv, yield_spread=yield_spread)

    if config.paused:
        return Hold(reason="paused by config", metrics=metrics)

    if inp.collateral_value_usd <= 0 and inp.borrow_value_usd <= 0:
        return Hold(reason="no active position", metrics=metrics)

    if current_ltv > config.max_ltv:
        repay = calculate_repay_amount(inp.collateral_value_usd, inp.borrow_value_usd, config.max_ltv)
        return Repay(
            repay_amount_usd=repay,
            reason=(
                f"LTV {_pct(current_ltv)} exceeds max {_pct(config.max_ltv)}. "
                f"Repay ${repay:.2f} to return to max."
            ),
            metrics=metrics,
        )

    if current_ltv < config.target_ltv and yield_spread >= config.min_yield_spread:
        borrow_more = calculate_optimize_amount(inp.collateral_value_usd, inp.borrow_value_usd, config.target_ltv)
        return Optimize(
            borrow_more_usd=borrow_more,
            reason=(
                f"LTV {_pct(current_ltv)} below target {_pct(config.target_ltv)} with spread "
                f"{_pct(yield_spread)} >= {_pct(config.min_yield_spread)}. Borrow ${borrow_more:.2f} more."
            ),
            metrics=metrics,
        )

    return Hold(
        reason=(
            f"within target range: LTV {_pct(current_ltv)} "
            f"[target {_pct(config.target_ltv)} .. max {_pct(config.max_ltv)}], spread {_pct(yield_spread)}"
        ),
        metrics=metrics,
    )


# ---------------------------------------------------------------------------
# Position -> policy input
# ---------------------------------------------------------------------------

def _market_for(row: Optional[PositionAsset], markets: Sequence[LendingMarket]) -> Optional[LendingMarket]:
    if row is None:
        return None
    addr = row.market_address.lower()
    for market in markets:
        if market.market_address.lower() == addr:
            return market
    return None


def build_ltv_input(markets: Sequence[LendingMarket], position: LendingPosition) -> LtvInput:
    """Reduce (markets, position) to the numbers the LTV policy needs.

    The supply rate comes from the market of the largest supply row and the
    borrow rate from the market of the largest borrow row. Without such a row
    the best listed supply APY / cheapest listed borrow APY is used.
    """
    listed: List[LendingMarket] = [m for m in markets if m.is_listed]

    supply_apy = max((m.supply_apy for m in listed), default=0.0)
    borrow_apy = min((m.borrow_apy for m in listed), default=0.0)

    supply_market = _market_for(largest_row(position.supplies), markets)
    if supply_market is not None:
        supply_apy = supply_market.supply_apy

    borrow_market = _market_for(largest_row(position.borrows), markets)
    if borrow_market is not None:
        borrow_apy = borrow_market.borrow_apy

    return LtvInput(
        collateral_value_usd=parse_usd(position.total_collateral_value_usd),
        borrow_value_usd=parse_usd(position.total_borrow_value_usd),
        supply_apy=supply_apy / 100.0,
        borrow_apr=borrow_apy / 100.0,
    )
