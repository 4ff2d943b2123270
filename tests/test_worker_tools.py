#!/usr/bin/env python3
"""Start / stop / status tool surface: validation and result shapes."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import DEFAULT_CONFIG, _merge
from lending.base import CallData, LendingAdapter, LendingPosition
from lending.registry import UnsupportedProtocolError
from signers import SendResult, SignerProvider, SignerUnavailableError, resolve_signer
from worker_manager import AlreadyRunningError, WorkerManager, WorkerNotFoundError
from worker_tools import InvalidParamsError, WorkerTools

ACCOUNT = "0x" + "d" * 40
TEST_KEY = "0x" + "11" * 32


class EmptyAdapter(LendingAdapter):
    protocol_id = "venus"

    async def get_markets(self, network):
        return []

    async def get_account_position(self, network, account):
        return LendingPosition(protocol="venus", network=network, account=account)

    async def build_supply_calldata(self, params):
        return []

    async def build_enter_market_calldata(self, params):
        return CallData(to="0x0", data="0x")

    async def build_borrow_calldata(self, params):
        return CallData(to="0x0", data="0x")

    async def build_repay_calldata(self, params):
        return []

    async def build_withdraw_calldata(self, params):
        return CallData(to="0x0", data="0x")


class StubSigner(SignerProvider):
    id = "local-key"

    async def get_address(self, network):
        return ACCOUNT

    async def sign_and_send(self, network, to, data, value="0"):
        return SendResult(tx_hash="0x1", from_address=ACCOUNT)


def _resolve_adapter(protocol):
    if protocol != "venus":
        raise UnsupportedProtocolError(f"Unsupported protocol: {protocol}")
    return EmptyAdapter()


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "AGENT_MAX_LTV", "AGENT_TARGET_LTV", "AGENT_MIN_YIELD_SPREAD", "AGENT_PAUSED",
        "VENUS_AGENT_MAX_LTV", "VENUS_AGENT_TARGET_LTV", "VENUS_AGENT_MIN_YIELD_SPREAD", "VENUS_AGENT_PAUSED",
        "AGENT_WORKER_WEBHOOK_URL", "YIELD_WORKER_WEBHOOK_URL", "EVM_PRIVATE_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


def _tools(signer_resolver=None) -> WorkerTools:
    return WorkerTools(
        WorkerManager(shutdown_timeout=1.0),
        adapter_resolver=_resolve_adapter,
        signer_resolver=signer_resolver or (lambda network, key: StubSigner()),
        file_config=_merge(DEFAULT_CONFIG, {}),
    )


@pytest.mark.asyncio
async def test_start_lending_defaults(clean_env) -> None:
    tools = _tools()

    out = await tools.start_lending({"network": "bsc", "account": ACCOUNT})

    details = out["details"]
    assert details["schema"] == "evm.agent.worker.start.v1"
    assert details["workerId"] == f"bsc:{ACCOUNT}"
    assert details["dryRun"] is True
    assert details["intervalSeconds"] == 300
    assert details["signerBackend"] == "none"
    assert details["config"]["max_ltv"] == 0.75
    assert details["config"]["target_ltv"] == 0.6
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_duplicate_start_raises_before_signer_lookup(clean_env) -> None:
    calls = []

    def resolver(network, key):
        calls.append(network)
        return StubSigner()

    tools = _tools(resolver)
    await tools.start_lending({"network": "bsc", "account": ACCOUNT})

    with pytest.raises(AlreadyRunningError):
        await tools.start_lending({"network": "bsc", "account": ACCOUNT, "dryRun": False})
    assert calls == []
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_live_start_without_key_is_rejected(clean_env) -> None:
    tools = _tools(resolve_signer)

    with pytest.raises(SignerUnavailableError):
        await tools.start_lending({"network": "bsc", "account": ACCOUNT, "dryRun": False})
    assert len(tools.manager) == 0


@pytest.mark.asyncio
async def test_live_start_reports_signer_backend(clean_env) -> None:
    tools = _tools(resolve_signer)

    out = await tools.start_lending({
        "network": "bsc",
        "account": ACCOUNT,
        "dryRun": False,
        "fromPrivateKey": TEST_KEY,
    })

    assert out["details"]["signerBackend"] == "local-key"
    assert out["details"]["dryRun"] is False
    tools.manager.stop()
    tools.manager.clear()


@pytest.mark.parametrize(
    "params",
    [
        {"network": "bsc", "account": "0x123"},
        {"network": "solana", "account": ACCOUNT},
        {"network": "bsc"},
        {"network": "bsc", "account": ACCOUNT, "maxLTV": 1.5},
        {"network": "bsc", "account": ACCOUNT, "targetLTV": 0.0},
        {"network": "bsc", "account": ACCOUNT, "minYieldSpread": -0.1},
        {"network": "bsc", "account": ACCOUNT, "intervalSeconds": 5},
        {"network": "bsc", "account": ACCOUNT, "intervalSeconds": 90_000},
        {"network": "bsc", "account": ACCOUNT, "maxConsecutiveErrors": 0},
        {"network": "bsc", "account": ACCOUNT, "dryRun": "no"},
        {"network": "bsc", "account": ACCOUNT, "paused": "false"},
        {"network": "bsc", "account": ACCOUNT, "maxLTV": 0.5, "targetLTV": 0.6},
        {"network": "bsc", "account": ACCOUNT, "protocol": "aave"},
    ],
)
@pytest.mark.asyncio
async def test_start_lending_rejects_bad_params(clean_env, params) -> None:
    tools = _tools()

    with pytest.raises(InvalidParamsError):
        await tools.start_lending(params)
    assert len(tools.manager) == 0


@pytest.mark.asyncio
async def test_yield_interval_floor_is_thirty_seconds(clean_env) -> None:
    tools = _tools()

    with pytest.raises(InvalidParamsError):
        await tools.start_yield({"network": "bsc", "account": ACCOUNT, "intervalSeconds": 20})

    out = await tools.start_yield({
        "network": "bsc",
        "account": ACCOUNT,
        "intervalSeconds": 30,
        "minAprDelta": 1.0,
        "topN": 3,
        "stableSymbols": ["USDC", "USDT"],
    })
    details = out["details"]
    assert details["workerId"] == f"yield:bsc:{ACCOUNT}"
    assert details["config"] == {
        "min_apr_delta": 1.0,
        "stable_symbols": ["USDC", "USDT"],
        "top_n": 3,
        "paused": False,
    }
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_lending_and_yield_workers_coexist_for_one_account(clean_env) -> None:
    tools = _tools()

    await tools.start_lending({"network": "bsc", "account": ACCOUNT})
    await tools.start_yield({"network": "bsc", "account": ACCOUNT})

    assert tools.manager.running_count() == 2
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_and_status_round(clean_env) -> None:
    tools = _tools()
    started = await tools.start_lending({"network": "bsc", "account": ACCOUNT})
    worker_id = started["details"]["workerId"]
    worker = tools.manager.worker(worker_id)
    while worker.state.cycle_count == 0:
        await asyncio.sleep(0.01)

    status = await tools.status({"workerId": worker_id, "logLimit": 1})
    assert status["details"]["worker"]["status"] == "running"
    assert len(status["details"]["worker"]["recent_logs"]) == 1
    assert "last: hold" in status["text"]

    stopped = await tools.stop({"workerId": worker_id})
    assert stopped["details"]["cyclesCompleted"] == 1

    summary = await tools.status()
    assert summary["details"]["totalWorkers"] == 1
    assert summary["details"]["runningCount"] == 0

    with pytest.raises(WorkerNotFoundError):
        await tools.stop({"workerId": "bsc:0xnope"})
    with pytest.raises(InvalidParamsError):
        await tools.status({"logLimit": 51})
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_stop_all_with_nothing_running(clean_env) -> None:
    out = await _tools().stop()

    assert out["text"] == "No running workers"
    assert out["details"]["stopped"] == []


@pytest.mark.asyncio
async def test_yield_paused_must_be_boolean(clean_env) -> None:
    tools = _tools()

    with pytest.raises(InvalidParamsError):
        await tools.start_yield({"network": "bsc", "account": ACCOUNT, "paused": "false"})
    assert len(tools.manager) == 0

    out = await tools.start_yield({"network": "bsc", "account": ACCOUNT, "paused": True})
    assert out["details"]["config"]["paused"] is True
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_yield_top_n_uses_validated_integer(clean_env) -> None:
    tools = _tools()

    out = await tools.start_yield({"network": "bsc", "account": ACCOUNT, "topN": "5.0"})

    assert out["details"]["config"]["top_n"] == 5
    await tools.manager.shutdown()


@pytest.mark.asyncio
async def test_yield_evm_account_case_maps_to_one_worker(clean_env) -> None:
    tools = _tools()
    mixed = "0x" + "D" * 40

    out = await tools.start_yield({"network": "bsc", "account": mixed})
    assert out["details"]["workerId"] == f"yield:bsc:{ACCOUNT}"

    with pytest.raises(AlreadyRunningError):
        await tools.start_yield({"network": "bsc", "account": ACCOUNT})
    assert tools.manager.running_count() == 1
    await tools.manager.shutdown()
