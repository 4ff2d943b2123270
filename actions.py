#!/usr/bin/env python3
"""
Decision actions produced by the position policies.

One frozen dataclass per action kind. Every action carries the metrics that
drove it: ``LtvMetrics`` for the lending policy, ``AprMetrics`` for the
stable-yield policy.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

ACTION_HOLD = "hold"
ACTION_REPAY = "repay"
ACTION_OPTIMIZE = "optimize"
ACTION_SUPPLY = "supply"
ACTION_REBALANCE = "rebalance"
ACTION_WITHDRAW = "withdraw"


@dataclass(frozen=True)
class LtvMetrics:
    current_ltv: float = 0.0
    yield_spread: float = 0.0


@dataclass(frozen=True)
class AprMetrics:
    current_token: Optional[str] = None
    current_symbol: Optional[str] = None
    current_apr: Optional[float] = None
    best_token: Optional[str] = None
    best_symbol: Optional[str] = None
    best_apr: Optional[float] = None
    apr_delta: float = 0.0


Metrics = Union[LtvMetrics, AprMetrics]


@dataclass(frozen=True)
class Hold:
    kind: ClassVar[str] = ACTION_HOLD
    reason: str
    metrics: Metrics = field(default_factory=LtvMetrics)


@dataclass(frozen=True)
class Repay:
    kind: ClassVar[str] = ACTION_REPAY
    repay_amount_usd: float
    reason: str
    metrics: LtvMetrics = field(default_factory=LtvMetrics)


@dataclass(frozen=True)
class Optimize:
    kind: ClassVar[str] = ACTION_OPTIMIZE
    borrow_more_usd: float
    reason: str
    metrics: LtvMetrics = field(default_factory=LtvMetrics)


@dataclass(frozen=True)
class Supply:
    kind: ClassVar[str] = ACTION_SUPPLY
    to_token: str
    reason: str
    metrics: AprMetrics = field(default_factory=AprMetrics)


@dataclass(frozen=True)
class Rebalance:
    kind: ClassVar[str] = ACTION_REBALANCE
    from_token: str
    to_token: str
    reason: str
    metrics: AprMetrics = field(default_factory=AprMetrics)


@dataclass(frozen=True)
class Withdraw:
    kind: ClassVar[str] = ACTION_WITHDRAW
    from_token: str
    reason: str
    metrics: AprMetrics = field(default_factory=AprMetrics)


Action = Union[Hold, Repay, Optimize, Supply, Rebalance, Withdraw]


def is_hold(action: Action) -> bool:
    return action.kind == ACTION_HOLD


def action_to_dict(action: Action) -> Dict[str, Any]:
    """Flatten an action into a JSON-friendly dict (kind + fields + metrics)."""
    out: Dict[str, Any] = {"action": action.kind}
    for key, value in asdict(action).items():
        if key == "metrics":
            continue
        out[key] = value
    out.update(asdict(action.metrics))
    return out
