#!/usr/bin/env python3
"""Position worker cycle: error threshold, reset, dry-run, webhooks."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lending.base import CallData, LendingAdapter, LendingMarket, LendingPosition, PositionAsset
from ltv_policy import LtvConfig
from notifier import WebhookNotifier
from position_worker import LendingWorker, YieldWorker
from signers import SendResult, SignerProvider
from worker_state import WorkerState, WorkerStatus
from yield_policy import YieldConfig

ACCOUNT = "0x" + "b" * 40
USDT = "0xusdt"
USDC = "0xusdc"


def _market(addr: str, token: str, symbol: str, supply: float, borrow: float) -> LendingMarket:
    return LendingMarket(
        protocol="fake",
        network="bsc",
        market_address=addr,
        underlying_address=token,
        underlying_symbol=symbol,
        underlying_decimals=18,
        supply_apy=supply,
        borrow_apy=borrow,
        underlying_price_usd=1.0,
    )


class ScriptedAdapter(LendingAdapter):
    """Returns the next scripted position (an Exception entry is raised)."""

    protocol_id = "fake"

    def __init__(self, positions: list, markets: Optional[List[LendingMarket]] = None):
        self.positions = list(positions)
        self.markets = markets if markets is not None else [
            _market("0xvusdt", USDT, "USDT", supply=3.0, borrow=5.0),
            _market("0xvusdc", USDC, "USDC", supply=4.0, borrow=6.0),
        ]
        self.reads = 0

    async def get_markets(self, network):
        return self.markets

    async def get_account_position(self, network, account):
        self.reads += 1
        item = self.positions[0] if len(self.positions) == 1 else self.positions.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def build_supply_calldata(self, params):
        return [CallData(to="0xvusdc", data="0xmint")]

    async def build_enter_market_calldata(self, params):
        return CallData(to="0xcomptroller", data="0xenter")

    async def build_borrow_calldata(self, params):
        return CallData(to=params.market_address, data="0xborrow")

    async def build_repay_calldata(self, params):
        return [CallData(to=USDT, data="0xapprove"), CallData(to="0xvusdt", data="0xrepay")]

    async def build_withdraw_calldata(self, params):
        return CallData(to="0xvusdt", data="0xredeem")

    async def build_swap_calldata(self, params):
        return [CallData(to="0xrouter", data="0xswap")]


class RecordingSigner(SignerProvider):
    id = "recording"

    def __init__(self):
        self.sent: List[str] = []

    async def get_address(self, network):
        return ACCOUNT

    async def sign_and_send(self, network, to, data, value="0"):
        self.sent.append(data)
        return SendResult(tx_hash=f"0x{len(self.sent)}", from_address=ACCOUNT)


class RecordingNotifier(WebhookNotifier):
    def __init__(self):
        super().__init__("https://hooks.example/worker")
        self.events: list = []

    def notify(self, payload):
        self.events.append(payload)
        return None


def _lending_position(collateral: float, borrow: float) -> LendingPosition:
    return LendingPosition(
        protocol="fake",
        network="bsc",
        account=ACCOUNT,
        supplies=[PositionAsset("0xvusdc", USDC, "USDC", 18, str(int(collateral) * 10**18))],
        borrows=[PositionAsset("0xvusdt", USDT, "USDT", 18, str(int(borrow) * 10**18))],
        total_collateral_value_usd=str(collateral),
        total_borrow_value_usd=str(borrow),
    )


def _lending_worker(adapter, *, dry_run=True, max_errors=3, signer=None, config=None, interval_ms=10):
    state = WorkerState(
        id=f"bsc:{ACCOUNT}",
        kind="lending",
        network="bsc",
        account=ACCOUNT,
        config=config or LtvConfig(max_ltv=0.8, target_ltv=0.6),
        dry_run=dry_run,
        interval_ms=interval_ms,
        max_consecutive_errors=max_errors,
    )
    notifier = RecordingNotifier()
    return LendingWorker(state, adapter, signer=signer, notifier=notifier), notifier


@pytest.mark.asyncio
async def test_error_threshold_moves_to_error_at_kth_failure() -> None:
    adapter = ScriptedAdapter([RuntimeError("rpc down")])
    worker, notifier = _lending_worker(adapter, max_errors=3)

    worker.start()
    assert await worker.join(timeout=5.0)

    state = worker.state
    assert state.status == WorkerStatus.ERROR
    assert state.cycle_count == 3
    assert state.consecutive_errors == 3
    assert state.stopped_at is not None
    assert all(log.decision.reason == "Cycle error: rpc down" for log in state.recent_logs)
    assert [p.event for p in notifier.events] == ["error_pause"]

    await asyncio.sleep(0.05)
    assert adapter.reads == 3


@pytest.mark.asyncio
async def test_success_after_failure_resets_error_counter() -> None:
    adapter = ScriptedAdapter([RuntimeError("timeout"), _lending_position(1000, 850)])
    worker, _ = _lending_worker(adapter, max_errors=5)

    await worker.run_cycle()
    assert worker.state.consecutive_errors == 1

    entry = await worker.run_cycle()
    assert worker.state.consecutive_errors == 0
    assert entry.decision.kind == "repay"
    assert worker.state.cycle_count == 2


@pytest.mark.asyncio
async def test_dry_run_never_signs() -> None:
    signer = RecordingSigner()
    adapter = ScriptedAdapter([_lending_position(1000, 850)])
    worker, notifier = _lending_worker(adapter, dry_run=True, signer=signer)

    entry = await worker.run_cycle()

    assert entry.decision.kind == "repay"
    assert entry.executed is False
    assert entry.execution_result is None
    assert signer.sent == []
    # 0.85 > 0.8 * 0.95: the critical alert still fires in dry-run
    assert [p.event for p in notifier.events] == ["ltv_critical"]


@pytest.mark.asyncio
async def test_live_cycle_executes_and_notifies() -> None:
    signer = RecordingSigner()
    adapter = ScriptedAdapter([_lending_position(1000, 850)])
    worker, notifier = _lending_worker(adapter, dry_run=False, signer=signer)

    entry = await worker.run_cycle()

    assert signer.sent == ["0xapprove", "0xrepay"]
    assert entry.executed is True
    assert entry.execution_result.tx_hashes == ["0x1", "0x2"]
    events = [p.event for p in notifier.events]
    assert events == ["ltv_critical", "action_executed"]
    assert notifier.events[1].data["txHashes"] == ["0x1", "0x2"]
    assert notifier.events[1].cycle_number == 1


@pytest.mark.asyncio
async def test_execution_failure_does_not_count_as_cycle_error() -> None:
    class BrokenSigner(RecordingSigner):
        async def sign_and_send(self, network, to, data, value="0"):
            raise RuntimeError("insufficient funds")

    adapter = ScriptedAdapter([_lending_position(1000, 850)])
    worker, notifier = _lending_worker(adapter, dry_run=False, signer=BrokenSigner(), max_errors=1)

    entry = await worker.run_cycle()

    assert worker.state.consecutive_errors == 0
    assert worker.state.status == WorkerStatus.RUNNING
    assert entry.executed is False
    assert "insufficient funds" in entry.execution_result.error
    assert "action_executed" not in [p.event for p in notifier.events]


@pytest.mark.asyncio
async def test_hold_within_range_sends_nothing() -> None:
    signer = RecordingSigner()
    adapter = ScriptedAdapter([_lending_position(1000, 700)])
    worker, notifier = _lending_worker(adapter, dry_run=False, signer=signer)

    entry = await worker.run_cycle()

    assert entry.decision.kind == "hold"
    assert signer.sent == []
    assert notifier.events == []


@pytest.mark.asyncio
async def test_stop_is_graceful_and_notifies_once() -> None:
    adapter = ScriptedAdapter([_lending_position(1000, 700)])
    worker, notifier = _lending_worker(adapter, interval_ms=60_000)

    worker.start()
    while worker.state.cycle_count == 0:
        await asyncio.sleep(0.01)

    assert worker.stop() == 1
    assert worker.stop() == 1
    assert await worker.join(timeout=1.0)
    assert worker.state.status == WorkerStatus.STOPPED
    assert [p.event for p in notifier.events] == ["worker_stopped"]
    assert notifier.events[0].data == {"cyclesCompleted": 1}


@pytest.mark.asyncio
async def test_stop_during_inflight_cycle_lets_it_finish() -> None:
    gate = asyncio.Event()

    class SlowAdapter(ScriptedAdapter):
        async def get_account_position(self, network, account):
            await gate.wait()
            return await super().get_account_position(network, account)

    adapter = SlowAdapter([_lending_position(1000, 700)])
    worker, _ = _lending_worker(adapter, interval_ms=10)

    worker.start()
    await asyncio.sleep(0.02)
    worker.stop()
    gate.set()
    assert await worker.join(timeout=1.0)

    assert worker.state.cycle_count == 1
    assert len(worker.state.recent_logs) == 1
    assert worker.state.status == WorkerStatus.STOPPED


def _yield_worker(adapter, *, dry_run=True, signer=None):
    state = WorkerState(
        id=f"yield:bsc:{ACCOUNT}",
        kind="yield",
        network="bsc",
        account=ACCOUNT,
        config=YieldConfig(min_apr_delta=0.5),
        dry_run=dry_run,
        interval_ms=30_000,
    )
    notifier = RecordingNotifier()
    return YieldWorker(state, adapter, signer=signer, notifier=notifier), notifier


def _yield_position(token: str, addr: str, symbol: str) -> LendingPosition:
    return LendingPosition(
        protocol="fake",
        network="bsc",
        account=ACCOUNT,
        supplies=[PositionAsset(addr, token, symbol, 18, str(10**18))],
    )


@pytest.mark.asyncio
async def test_yield_rebalance_executes_and_reports() -> None:
    signer = RecordingSigner()
    adapter = ScriptedAdapter([_yield_position(USDT, "0xvusdt", "USDT")])
    worker, notifier = _yield_worker(adapter, dry_run=False, signer=signer)

    entry = await worker.run_cycle()

    assert entry.decision.kind == "rebalance"
    assert signer.sent == ["0xredeem", "0xswap", "0xmint"]
    assert [p.event for p in notifier.events] == ["yield_rebalance"]


@pytest.mark.asyncio
async def test_yield_hold_is_reported() -> None:
    adapter = ScriptedAdapter([_yield_position(USDC, "0xvusdc", "USDC")])
    worker, notifier = _yield_worker(adapter)

    entry = await worker.run_cycle()

    assert entry.decision.kind == "hold"
    assert [p.event for p in notifier.events] == ["yield_hold"]
    assert notifier.events[0].data["decision"]["reason"].startswith("already optimal")


@pytest.mark.asyncio
async def test_unreachable_webhook_does_not_disturb_cycle() -> None:
    signer = RecordingSigner()
    adapter = ScriptedAdapter([_lending_position(1000, 850)])
    state = WorkerState(
        id=f"bsc:{ACCOUNT}",
        kind="lending",
        network="bsc",
        account=ACCOUNT,
        config=LtvConfig(max_ltv=0.8, target_ltv=0.6),
        dry_run=False,
        webhook_url="http://127.0.0.1:1/hook",
    )
    worker = LendingWorker(state, adapter, signer=signer)

    entry = await worker.run_cycle()
    await worker.notifier.drain(timeout=5.0)

    assert entry.executed is True
    assert state.consecutive_errors == 0
    assert state.status == WorkerStatus.RUNNING
    assert len(state.recent_logs) == 1


@pytest.mark.asyncio
async def test_hook_failure_does_not_kill_loop() -> None:
    class FlakyNotifier(RecordingNotifier):
        def notify(self, payload):
            if payload.event == "ltv_critical":
                raise RuntimeError("sink exploded")
            return super().notify(payload)

    adapter = ScriptedAdapter([_lending_position(1000, 850)])
    state = WorkerState(
        id=f"bsc:{ACCOUNT}",
        kind="lending",
        network="bsc",
        account=ACCOUNT,
        config=LtvConfig(max_ltv=0.8, target_ltv=0.6),
        interval_ms=10,
        max_consecutive_errors=5,
    )
    notifier = FlakyNotifier()
    worker = LendingWorker(state, adapter, notifier=notifier)

    worker.start()
    while state.cycle_count < 3:
        await asyncio.sleep(0.01)

    assert not worker.task.done()
    assert state.status == WorkerStatus.RUNNING
    assert state.consecutive_errors == 1
    worker.stop()
    assert await worker.join(timeout=1.0)
    assert [p.event for p in notifier.events] == ["worker_stopped"]
