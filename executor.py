#!/usr/bin/env python3
"""
Executor: turn a non-hold action into calldata steps and submit them.

Two phases:
1. plan   - ask the lending adapter for every calldata step of the action
            (approve before supply/repay, withdraw before swap before supply).
            A build failure submits nothing.
2. submit - send the steps strictly in order through the signer. The first
            failure aborts the rest; hashes already collected are kept.

Execution failures are reported in ``ExecutionResult.error`` and never
raised; they do not count toward the worker's read/decide error threshold.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from actions import (
    ACTION_OPTIMIZE,
    ACTION_REBALANCE,
    ACTION_REPAY,
    ACTION_SUPPLY,
    ACTION_WITHDRAW,
    Action,
    Optimize,
    Rebalance,
    Repay,
    Supply,
    Withdraw,
)
from lending.base import (
    BorrowParams,
    CallData,
    LendingAdapter,
    LendingMarket,
    LendingPosition,
    PositionAsset,
    RepayParams,
    SupplyParams,
    SwapParams,
    WithdrawParams,
    largest_row,
    rescale_raw,
    usd_to_raw,
)
from logging_utils import get_logger
from signers import SignerProvider
from worker_state import ExecutionResult

DEFAULT_SLIPPAGE_BPS = 50


@dataclass
class ExecutionContext:
    """The reads of the cycle that produced the action."""
    network: str
    account: str
    markets: Sequence[LendingMarket] = field(default_factory=list)
    position: Optional[LendingPosition] = None


def _same(a: str, b: str) -> bool:
    return str(a or "").lower() == str(b or "").lower()


def _as_steps(built: Union[CallData, Sequence[CallData], None]) -> List[CallData]:
    if built is None:
        return []
    if isinstance(built, CallData):
        return [built]
    return list(built)


def _market_by_address(markets: Sequence[LendingMarket], market_address: str) -> Optional[LendingMarket]:
    return next((m for m in markets if _same(m.market_address, market_address)), None)


def _market_by_token(markets: Sequence[LendingMarket], token: str) -> Optional[LendingMarket]:
    listed = [m for m in markets if _same(m.underlying_address, token)]
    return next((m for m in listed if m.is_listed), listed[0] if listed else None)


def _rows_for_token(rows: Sequence[PositionAsset], token: str) -> List[PositionAsset]:
    return [r for r in rows if _same(r.underlying_address, token)]


class ActionExecutor:
    def __init__(
        self,
        adapter: LendingAdapter,
        signer: SignerProvider,
        *,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        log: Optional[logging.Logger] = None,
    ):
        self.adapter = adapter
        self.signer = signer
        self.slippage_bps = int(slippage_bps)
        self.log = log or get_logger("executor")

    # ------------------------------------------------------------------ plan

    async def plan(self, action: Action, ctx: ExecutionContext) -> List[CallData]:
        """All calldata steps for ``action``, in submission order."""
        if action.kind == ACTION_REPAY:
            return await self._plan_repay(action, ctx)
        if action.kind == ACTION_OPTIMIZE:
            return await self._plan_borrow(action, ctx)
        if action.kind == ACTION_SUPPLY:
            return await self._plan_supply(action, ctx)
        if action.kind == ACTION_REBALANCE:
            return await self._plan_rebalance(action, ctx)
        if action.kind == ACTION_WITHDRAW:
            return await self._plan_withdraw(action, ctx)
        return []

    async def _plan_repay(self, action: Repay, ctx: ExecutionContext) -> List[CallData]:
        position = ctx.position
        row = largest_row(position.borrows) if position else None
        if row is None:
            return []
        market = _market_by_address(ctx.markets, row.market_address)
        price = market.underlying_price_usd if market else 0.0
        amount = min(row.balance_int, usd_to_raw(action.repay_amount_usd, row.underlying_decimals, price))
        if amount <= 0:
            return []
        params = RepayParams(
            network=ctx.network,
            account=ctx.account,
            token_address=row.underlying_address,
            amount_raw=str(amount),
        )
        return _as_steps(await self.adapter.build_repay_calldata(params))

    async def _plan_borrow(self, action: Optimize, ctx: ExecutionContext) -> List[CallData]:
        position = ctx.position
        row = largest_row(position.borrows) if position else None
        market = _market_by_address(ctx.markets, row.market_address) if row else None
        if market is None:
            listed = [m for m in ctx.markets if m.is_listed]
            market = min(listed, key=lambda m: m.borrow_apy) if listed else None
        if market is None:
            return []
        amount = usd_to_raw(action.borrow_more_usd, market.underlying_decimals, market.underlying_price_usd)
        if amount <= 0:
            return []
        params = BorrowParams(
            network=ctx.network,
            account=ctx.account,
            market_address=market.market_address,
            amount_raw=str(amount),
        )
        return _as_steps(await self.adapter.build_borrow_calldata(params))

    async def _plan_supply(self, action: Supply, ctx: ExecutionContext) -> List[CallData]:
        wallet = ctx.position.wallet if ctx.position else []
        amount = sum(r.balance_int for r in _rows_for_token(wallet, action.to_token))
        if amount <= 0:
            self.log.info(f"No idle {action.metrics.best_symbol or action.to_token} balance to supply")
            return []
        return await self._supply_steps(ctx, action.to_token, amount)

    async def _supply_steps(self, ctx: ExecutionContext, token: str, amount: int) -> List[CallData]:
        params = SupplyParams(
            network=ctx.network,
            account=ctx.account,
            token_address=token,
            amount_raw=str(amount),
        )
        return _as_steps(await self.adapter.build_supply_calldata(params))

    def _supplied_row(self, ctx: ExecutionContext, token: str) -> Optional[PositionAsset]:
        supplies = ctx.position.supplies if ctx.position else []
        return largest_row(_rows_for_token(supplies, token))

    async def _withdraw_step(self, ctx: ExecutionContext, row: PositionAsset) -> List[CallData]:
        params = WithdrawParams(
            network=ctx.network,
            account=ctx.account,
            token_address=row.underlying_address,
            amount_raw=str(row.balance_int),
        )
        return _as_steps(await self.adapter.build_withdraw_calldata(params))

    async def _plan_withdraw(self, action: Withdraw, ctx: ExecutionContext) -> List[CallData]:
        row = self._supplied_row(ctx, action.from_token)
        if row is None or row.balance_int <= 0:
            return []
        return await self._withdraw_step(ctx, row)

    async def _plan_rebalance(self, action: Rebalance, ctx: ExecutionContext) -> List[CallData]:
        row = self._supplied_row(ctx, action.from_token)
        if row is None or row.balance_int <= 0:
            return []
        amount = row.balance_int
        steps = await self._withdraw_step(ctx, row)

        swap = SwapParams(
            network=ctx.network,
            account=ctx.account,
            from_token=row.underlying_address,
            to_token=action.to_token,
            amount_raw=str(amount),
            slippage_bps=self.slippage_bps,
        )
        steps.extend(_as_steps(await self.adapter.build_swap_calldata(swap)))

        target = _market_by_token(ctx.markets, action.to_token)
        to_decimals = target.underlying_decimals if target else row.underlying_decimals
        # Supply the swap's minimum output so the step cannot overdraw.
        expected = rescale_raw(amount, row.underlying_decimals, to_decimals)
        min_out = expected * (10_000 - self.slippage_bps) // 10_000
        if min_out > 0:
            steps.extend(await self._supply_steps(ctx, action.to_token, min_out))
        return steps

    # ---------------------------------------------------------------- submit

    async def execute(self, action: Action, ctx: ExecutionContext) -> Optional[ExecutionResult]:
        """Plan and submit. ``None`` when the action needs no transaction."""
        try:
            steps = await self.plan(action, ctx)
        except Exception as exc:
            self.log.warning(f"Could not build {action.kind} calldata: {type(exc).__name__}: {exc}")
            return ExecutionResult(error=f"build {action.kind} calldata failed: {exc}")

        if not steps:
            return None

        result = ExecutionResult()
        for idx, step in enumerate(steps, start=1):
            try:
                sent = await self.signer.sign_and_send(ctx.network, step.to, step.data, step.value)
            except Exception as exc:
                label = step.description or step.to
                result.error = f"step {idx}/{len(steps)} ({label}) failed: {exc}"
                self.log.warning(f"{action.kind} aborted: {result.error}")
                break
            result.tx_hashes.append(sent.tx_hash)
            self.log.info(f"{action.kind} step {idx}/{len(steps)} sent: {sent.tx_hash}")
        return result
