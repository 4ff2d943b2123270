"""Lending adapter contract and registry."""

from .base import (
    BorrowParams,
    CallData,
    EnterMarketParams,
    LendingAdapter,
    LendingMarket,
    LendingPosition,
    PositionAsset,
    RepayParams,
    SupplyParams,
    SwapParams,
    WithdrawParams,
)
from .registry import (
    DEFAULT_PROTOCOL,
    UnsupportedProtocolError,
    register_adapter,
    register_from_config,
    registered_protocols,
    resolve_adapter,
)

__all__ = [
    "BorrowParams",
    "CallData",
    "EnterMarketParams",
    "LendingAdapter",
    "LendingMarket",
    "LendingPosition",
    "PositionAsset",
    "RepayParams",
    "SupplyParams",
    "SwapParams",
    "WithdrawParams",
    "DEFAULT_PROTOCOL",
    "UnsupportedProtocolError",
    "register_adapter",
    "register_from_config",
    "registered_protocols",
    "resolve_adapter",
]
