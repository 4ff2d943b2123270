#!/usr/bin/env python3
"""
Position worker: one long-lived asyncio task per (network, account).

Each cycle:
1. cycle_count += 1, last_cycle_at = now
2. read markets + position concurrently
3. reduce to policy input and decide (pure)
4. execute the action when it is not a hold, the worker is live and a
   signer is configured
5. append the cycle log, fire webhooks

Read/decide failures become a hold whose reason carries the error and count
toward ``max_consecutive_errors``; reaching it moves the worker to ``error``
for good. Execution failures only land in the cycle log. Nothing raised
inside a cycle escapes the loop.

Cycles of one worker never overlap: the next one is only scheduled after
the previous one has fully finished. ``stop()`` does not interrupt an
in-flight cycle; the loop notices the status change once that cycle ends.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from actions import (
    ACTION_REBALANCE,
    ACTION_SUPPLY,
    ACTION_WITHDRAW,
    Action,
    AprMetrics,
    Hold,
    LtvMetrics,
    action_to_dict,
    is_hold,
)
from executor import ActionExecutor, ExecutionContext
from lending.base import LendingAdapter, LendingMarket, LendingPosition
from logging_utils import get_logger, worker_logger
from ltv_policy import LtvConfig, build_ltv_input, decide_ltv_action
from networks import WORKER_KIND_LENDING, WORKER_KIND_YIELD
from notifier import (
    EVENT_ACTION_EXECUTED,
    EVENT_ERROR_PAUSE,
    EVENT_LTV_CRITICAL,
    EVENT_WORKER_STOPPED,
    EVENT_YIELD_HOLD,
    EVENT_YIELD_REBALANCE,
    EVENT_YIELD_SUPPLY,
    WebhookNotifier,
    WebhookPayload,
)
from signers import SignerProvider
from worker_state import CycleLog, ExecutionResult, WorkerState, WorkerStatus, now_ms
from yield_policy import YieldConfig, build_yield_input, decide_yield_action

_base_log = get_logger("position_worker")


class PositionWorker:
    """Cycle loop shared by the lending and yield workers."""

    kind = ""

    def __init__(
        self,
        state: WorkerState,
        adapter: LendingAdapter,
        *,
        signer: Optional[SignerProvider] = None,
        notifier: Optional[WebhookNotifier] = None,
        executor: Optional[ActionExecutor] = None,
    ):
        self.state = state
        self.adapter = adapter
        self.signer = signer
        self.log = worker_logger(_base_log, state.id)
        self.notifier = notifier or WebhookNotifier(state.webhook_url, log=_base_log)
        if executor is None and signer is not None:
            executor = ActionExecutor(adapter, signer, log=_base_log)
        self.executor = executor
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def id(self) -> str:
        return self.state.id

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    # ------------------------------------------------------------- policy

    def evaluate(self, markets: List[LendingMarket], position: LendingPosition) -> Action:
        raise NotImplementedError

    def error_hold(self, reason: str) -> Hold:
        return Hold(reason=reason)

    def on_decision(self, action: Action) -> None:
        """Notifications that depend only on the decision (dry-run included)."""

    def on_executed(self, action: Action, result: ExecutionResult) -> None:
        """Notifications after a submission produced at least one tx hash."""

    # ------------------------------------------------------------- events

    def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.notifier.notify(WebhookPayload(
            event=event,
            worker_id=self.state.id,
            network=self.state.network,
            account=self.state.account,
            timestamp=now_ms(),
            cycle_number=self.state.cycle_count,
            data=data or {},
        ))

    # -------------------------------------------------------------- cycle

    async def _read(self) -> Tuple[List[LendingMarket], LendingPosition]:
        markets, position = await asyncio.gather(
            self.adapter.get_markets(self.state.network),
            self.adapter.get_account_position(self.state.network, self.state.account),
        )
        return list(markets or []), position

    async def run_cycle(self) -> CycleLog:
        state = self.state
        state.cycle_count += 1
        state.last_cycle_at = now_ms()
        cycle_number = state.cycle_count
        started = time.monotonic()

        executed = False
        execution_result: Optional[ExecutionResult] = None
        try:
            markets, position = await self._read()
            action = self.evaluate(markets, position)
        except Exception as exc:
            state.consecutive_errors += 1
            action = self.error_hold(f"Cycle error: {exc}")
            self.log.warning(
                f"Cycle #{cycle_number} read/decide failed "
                f"({state.consecutive_errors}/{state.max_consecutive_errors}): {type(exc).__name__}: {exc}"
            )
        else:
            state.consecutive_errors = 0
            self.on_decision(action)
            if not is_hold(action) and not state.dry_run:
                if self.executor is None:
                    self.log.warning(f"Cycle #{cycle_number} {action.kind} skipped: no signer configured")
                else:
                    ctx = ExecutionContext(
                        network=state.network,
                        account=state.account,
                        markets=markets,
                        position=position,
                    )
                    execution_result = await self.executor.execute(action, ctx)
                    if execution_result is not None and execution_result.tx_hashes:
                        executed = True
                        self.on_executed(action, execution_result)

        entry = CycleLog(
            timestamp=now_ms(),
            cycle_number=cycle_number,
            decision=action,
            executed=executed,
            execution_result=execution_result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        state.append_log(entry)

        mode = "DRY" if state.dry_run else "LIVE"
        self.log.info(
            f"Cycle #{cycle_number} [{mode}] {action.kind}: {action.reason} "
            f"(executed={executed}, {entry.duration_ms}ms)"
        )

        if state.consecutive_errors >= state.max_consecutive_errors and state.is_running:
            self._pause_on_errors()
        return entry

    def _pause_on_errors(self) -> None:
        state = self.state
        state.status = WorkerStatus.ERROR
        state.stopped_at = now_ms()
        self._stop_event.set()
        self.log.warning(
            f"Paused after {state.consecutive_errors} consecutive errors (cycle #{state.cycle_count})"
        )
        last = state.last_log()
        self.emit(EVENT_ERROR_PAUSE, {
            "consecutiveErrors": state.consecutive_errors,
            "lastError": last.decision.reason if last else None,
        })

    # -------------------------------------------------------------- loop

    async def _run_loop(self) -> None:
        interval = self.state.interval_ms / 1000.0
        while self.state.is_running:
            try:
                await self.run_cycle()
            except Exception as exc:
                # hook or logging failure after read/decide
                self.state.consecutive_errors += 1
                self.log.error(f"Cycle #{self.state.cycle_count} aborted: {type(exc).__name__}: {exc}", exc_info=True)
                if self.state.consecutive_errors >= self.state.max_consecutive_errors and self.state.is_running:
                    self._pause_on_errors()
            if not self.state.is_running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        self.log.info(f"Loop exited with status={self.state.status.value} after {self.state.cycle_count} cycles")

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name=f"position-worker:{self.state.id}"
        )
        self.log.info(
            f"Started {self.kind} worker on {self.state.network} "
            f"(dry_run={self.state.dry_run}, interval={self.state.interval_ms // 1000}s)"
        )
        return self._task

    def stop(self) -> int:
        """Graceful stop. Returns the number of cycles completed."""
        state = self.state
        if state.is_running:
            state.status = WorkerStatus.STOPPED
            state.stopped_at = now_ms()
            self._stop_event.set()
            self.log.info(f"Stopped after {state.cycle_count} cycles")
            self.emit(EVENT_WORKER_STOPPED, {"cyclesCompleted": state.cycle_count})
        return state.cycle_count

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit. False if it is still running after ``timeout``."""
        task = self._task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return task in done

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class LendingWorker(PositionWorker):
    """LTV risk management for one borrowing account."""

    kind = WORKER_KIND_LENDING

    @property
    def config(self) -> LtvConfig:
        return self.state.config

    def evaluate(self, markets: List[LendingMarket], position: LendingPosition) -> Action:
        return decide_ltv_action(build_ltv_input(markets, position), self.config)

    def error_hold(self, reason: str) -> Hold:
        return Hold(reason=reason, metrics=LtvMetrics())

    def on_decision(self, action: Action) -> None:
        metrics = action.metrics
        threshold = self.config.max_ltv * self.config.critical_ltv_ratio
        if isinstance(metrics, LtvMetrics) and metrics.current_ltv > threshold:
            self.emit(EVENT_LTV_CRITICAL, {
                "currentLTV": metrics.current_ltv,
                "maxLTV": self.config.max_ltv,
                "threshold": threshold,
                "action": action.kind,
                "dryRun": self.state.dry_run,
            })

    def on_executed(self, action: Action, result: ExecutionResult) -> None:
        self.emit(EVENT_ACTION_EXECUTED, {
            "decision": action_to_dict(action),
            "txHashes": list(result.tx_hashes),
            "error": result.error,
        })


class YieldWorker(PositionWorker):
    """Keeps supplied stablecoins in the best-paying market."""

    kind = WORKER_KIND_YIELD

    @property
    def config(self) -> YieldConfig:
        return self.state.config

    def evaluate(self, markets: List[LendingMarket], position: LendingPosition) -> Action:
        return decide_yield_action(build_yield_input(markets, position, self.config), self.config)

    def error_hold(self, reason: str) -> Hold:
        return Hold(reason=reason, metrics=AprMetrics())

    def on_decision(self, action: Action) -> None:
        if is_hold(action):
            self.emit(EVENT_YIELD_HOLD, {"decision": action_to_dict(action)})

    def on_executed(self, action: Action, result: ExecutionResult) -> None:
        if action.kind == ACTION_SUPPLY:
            event = EVENT_YIELD_SUPPLY
        elif action.kind in (ACTION_REBALANCE, ACTION_WITHDRAW):
            event = EVENT_YIELD_REBALANCE
        else:
            return
        self.emit(event, {
            "decision": action_to_dict(action),
            "txHashes": list(result.tx_hashes),
            "error": result.error,
        })


WORKER_CLASSES = {
    WORKER_KIND_LENDING: LendingWorker,
    WORKER_KIND_YIELD: YieldWorker,
}
