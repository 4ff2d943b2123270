#!/usr/bin/env python3
"""
Start / stop / status request surface for position workers.

Parameters arrive as camelCase dicts (as a tool host would send them).
Every control-plane failure raises before any worker is created or touched:
``InvalidParamsError`` for bad input, ``AlreadyRunningError`` for a
duplicate start, ``SignerUnavailableError`` for a live start without
credentials, ``WorkerNotFoundError`` for an unknown id.

Each call returns ``{"text": <human summary>, "details": <structured>}``.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from config_env import (
    load_worker_config,
    notifier_timeout,
    resolve_ltv_config,
    resolve_webhook_url,
    resolve_yield_config,
    worker_defaults,
)
from lending.base import LendingAdapter
from lending.registry import DEFAULT_PROTOCOL, UnsupportedProtocolError, resolve_adapter
from logging_utils import get_logger
from networks import (
    WORKER_KIND_LENDING,
    WORKER_KIND_YIELD,
    is_evm_address,
    make_worker_id,
    normalize_network,
    parse_evm_network,
)
from notifier import WebhookNotifier
from position_worker import LendingWorker, PositionWorker, YieldWorker
from signers import SignerProvider, resolve_signer
from worker_manager import WorkerManager
from worker_state import MAX_RECENT_LOGS, WorkerState

SCHEMA_LENDING_START = "evm.agent.worker.start.v1"
SCHEMA_YIELD_START = "yield.worker.start.v1"
SCHEMA_STOP = "agent.worker.stop.v1"
SCHEMA_STATUS = "agent.worker.status.v1"

INTERVAL_BOUNDS = {
    WORKER_KIND_LENDING: (10, 86_400),
    WORKER_KIND_YIELD: (30, 86_400),
}

AdapterResolver = Callable[[Optional[str]], LendingAdapter]
SignerResolver = Callable[[str, Optional[str]], SignerProvider]


class InvalidParamsError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Param helpers
# ---------------------------------------------------------------------------

def _number(params: Mapping[str, Any], key: str, default: Optional[float], lo: float, hi: float) -> Optional[float]:
    raw = params.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise InvalidParamsError(f"{key} must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidParamsError(f"{key} must be a number, got {raw!r}") from None
    if value != value or value < lo or value > hi:
        raise InvalidParamsError(f"{key} must be between {lo:g} and {hi:g}, got {raw!r}")
    return value


def _integer(params: Mapping[str, Any], key: str, default: int, lo: int, hi: int) -> int:
    value = _number(params, key, default, lo, hi)
    if value != int(value):
        raise InvalidParamsError(f"{key} must be an integer, got {params.get(key)!r}")
    return int(value)


def _flag(params: Mapping[str, Any], key: str, default: bool) -> bool:
    raw = params.get(key)
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise InvalidParamsError(f"{key} must be true or false, got {raw!r}")
    return raw


def _text(params: Mapping[str, Any], key: str) -> str:
    raw = params.get(key)
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raise InvalidParamsError(f"{key} must be a string")
    return raw.strip()


def _reject_missing(params: Mapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not _text(params, k)]
    if missing:
        raise InvalidParamsError(f"Missing required parameter(s): {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class WorkerTools:
    def __init__(
        self,
        manager: WorkerManager,
        *,
        adapter_resolver: AdapterResolver = resolve_adapter,
        signer_resolver: SignerResolver = resolve_signer,
        file_config: Optional[Dict[str, Any]] = None,
    ):
        self.manager = manager
        self.adapter_resolver = adapter_resolver
        self.signer_resolver = signer_resolver
        self.file_config = file_config if file_config is not None else load_worker_config()
        self.log = get_logger("worker_tools")

    # ------------------------------------------------------------- start

    async def start_lending(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        _reject_missing(params, "network", "account")
        try:
            network = parse_evm_network(_text(params, "network"))
        except ValueError as exc:
            raise InvalidParamsError(str(exc)) from None
        account = _text(params, "account")
        if not is_evm_address(account):
            raise InvalidParamsError(f"Invalid EVM account address: {account!r}")

        _number(params, "maxLTV", None, 0.01, 0.99)
        _number(params, "targetLTV", None, 0.01, 0.99)
        _number(params, "minYieldSpread", None, 0.0, 1.0)
        _flag(params, "paused", False)
        config = resolve_ltv_config(params, self.file_config)
        if config.target_ltv >= config.max_ltv:
            raise InvalidParamsError(
                f"targetLTV ({config.target_ltv}) must be below maxLTV ({config.max_ltv})"
            )

        worker_id = make_worker_id(WORKER_KIND_LENDING, network, account.lower())
        return await self._start(
            WORKER_KIND_LENDING, LendingWorker, SCHEMA_LENDING_START, worker_id, network, account, config, params
        )

    async def start_yield(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        _reject_missing(params, "network", "account")
        network = normalize_network(_text(params, "network"))
        account = _text(params, "account")
        if is_evm_address(account):
            account = account.lower()

        _number(params, "minAprDelta", None, 0.0, 50.0)
        top_n = _integer(params, "topN", 5, 1, 20)
        _flag(params, "paused", False)
        symbols = params.get("stableSymbols")
        if symbols is not None and (
            not isinstance(symbols, (list, tuple)) or not all(isinstance(s, str) and s.strip() for s in symbols)
        ):
            raise InvalidParamsError("stableSymbols must be a list of non-empty strings")
        overrides = dict(params)
        if params.get("topN") is not None:
            overrides["topN"] = top_n
        config = resolve_yield_config(overrides, self.file_config)

        worker_id = make_worker_id(WORKER_KIND_YIELD, network, account)
        return await self._start(
            WORKER_KIND_YIELD, YieldWorker, SCHEMA_YIELD_START, worker_id, network, account, config, params
        )

    async def _start(
        self,
        kind: str,
        worker_cls: type,
        schema: str,
        worker_id: str,
        network: str,
        account: str,
        config: Any,
        params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        defaults = worker_defaults(self.file_config)
        lo, hi = INTERVAL_BOUNDS[kind]
        default_interval = min(max(int(defaults.get("interval_seconds", 300)), lo), hi)
        interval_seconds = _integer(params, "intervalSeconds", default_interval, lo, hi)
        max_errors = _integer(params, "maxConsecutiveErrors", int(defaults.get("max_consecutive_errors", 5)), 1, 100)
        dry_run = _flag(params, "dryRun", bool(defaults.get("dry_run", True)))
        protocol = _text(params, "protocol") or DEFAULT_PROTOCOL

        self.manager.ensure_not_running(worker_id)

        try:
            adapter = self.adapter_resolver(protocol)
        except UnsupportedProtocolError as exc:
            raise InvalidParamsError(str(exc)) from None

        signer: Optional[SignerProvider] = None
        if not dry_run:
            try:
                signer = self.signer_resolver(network, _text(params, "fromPrivateKey") or None)
            except ValueError as exc:
                raise InvalidParamsError(str(exc)) from None
        signer_backend = signer.id if signer is not None else "none"

        webhook_url = resolve_webhook_url(kind, _text(params, "webhookUrl"))
        state = WorkerState(
            id=worker_id,
            kind=kind,
            network=network,
            account=account,
            config=config,
            dry_run=dry_run,
            interval_ms=interval_seconds * 1000,
            max_consecutive_errors=max_errors,
            protocol=protocol,
            webhook_url=webhook_url,
            signer_backend=signer_backend,
        )
        notifier = WebhookNotifier(webhook_url, timeout_seconds=notifier_timeout(self.file_config))
        worker: PositionWorker = worker_cls(state, adapter, signer=signer, notifier=notifier)
        self.manager.start(worker)

        mode = "dry-run" if dry_run else f"LIVE via {signer_backend}"
        return {
            "text": (
                f"Started {kind} worker {worker_id} ({mode}) on {protocol}, "
                f"cycle every {interval_seconds}s"
            ),
            "details": {
                "schema": schema,
                "workerId": worker_id,
                "kind": kind,
                "network": network,
                "account": account,
                "protocol": protocol,
                "dryRun": dry_run,
                "intervalSeconds": interval_seconds,
                "maxConsecutiveErrors": max_errors,
                "config": config.to_dict(),
                "signerBackend": signer_backend,
                "webhookConfigured": bool(webhook_url),
            },
        }

    # -------------------------------------------------------------- stop

    async def stop(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        params = params or {}
        worker_id = _text(params, "workerId") or None
        stopped = self.manager.stop(worker_id)

        if worker_id is not None:
            cycles = stopped[worker_id]
            return {
                "text": f"Stopped worker {worker_id} after {cycles} cycles",
                "details": {"schema": SCHEMA_STOP, "workerId": worker_id, "cyclesCompleted": cycles},
            }

        if not stopped:
            text = "No running workers"
        else:
            text = f"Stopped {len(stopped)} worker(s): " + ", ".join(
                f"{wid} ({cycles} cycles)" for wid, cycles in stopped.items()
            )
        return {
            "text": text,
            "details": {
                "schema": SCHEMA_STOP,
                "stopped": list(stopped),
                "cyclesCompleted": dict(stopped),
            },
        }

    # ------------------------------------------------------------ status

    async def status(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        params = params or {}
        log_limit = _integer(params, "logLimit", 10, 1, MAX_RECENT_LOGS)
        worker_id = _text(params, "workerId") or None

        if worker_id is not None:
            snapshot = self.manager.get(worker_id, log_limit=log_limit)
            return {
                "text": _status_line(snapshot),
                "details": {"schema": SCHEMA_STATUS, "worker": snapshot},
            }

        workers = self.manager.list(log_limit=log_limit)
        running = sum(1 for w in workers if w["status"] == "running")
        lines: List[str] = [f"{len(workers)} worker(s), {running} running"]
        lines.extend(_status_line(w) for w in workers)
        return {
            "text": "\n".join(lines),
            "details": {
                "schema": SCHEMA_STATUS,
                "totalWorkers": len(workers),
                "runningCount": running,
                "workers": workers,
            },
        }


def _status_line(snapshot: Mapping[str, Any]) -> str:
    mode = "dry-run" if snapshot["dry_run"] else "live"
    line = (
        f"{snapshot['id']}: {snapshot['status']} ({mode}), "
        f"{snapshot['cycle_count']} cycles, {snapshot['consecutive_errors']} consecutive errors"
    )
    logs = snapshot.get("recent_logs") or []
    if logs:
        last = logs[-1]["decision"]
        line += f" | last: {last['action']} - {last['reason']}"
    return line
