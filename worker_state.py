#!/usr/bin/env python3
"""
In-memory worker state: lifecycle status, counters and the cycle log ring.

Nothing here is persisted. A fresh ``start`` always builds a new
``WorkerState`` (cycle_count 0, empty history).
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Union

from actions import Action, action_to_dict
from ltv_policy import LtvConfig
from yield_policy import YieldConfig

MAX_RECENT_LOGS = 50

WorkerConfig = Union[LtvConfig, YieldConfig]


class WorkerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    # Reserved; config.paused only turns every cycle into a hold.
    PAUSED = "paused"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ExecutionResult:
    tx_hashes: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"tx_hashes": list(self.tx_hashes)}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class CycleLog:
    timestamp: int
    cycle_number: int
    decision: Action
    executed: bool = False
    execution_result: Optional[ExecutionResult] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cycle_number": self.cycle_number,
            "decision": action_to_dict(self.decision),
            "executed": self.executed,
            "execution_result": self.execution_result.to_dict() if self.execution_result else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkerState:
    id: str
    kind: str
    network: str
    account: str
    config: WorkerConfig
    dry_run: bool = True
    interval_ms: int = 300_000
    max_consecutive_errors: int = 5
    protocol: str = ""
    status: WorkerStatus = WorkerStatus.RUNNING
    started_at: int = field(default_factory=now_ms)
    stopped_at: Optional[int] = None
    cycle_count: int = 0
    consecutive_errors: int = 0
    last_cycle_at: Optional[int] = None
    recent_logs: Deque[CycleLog] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_LOGS))
    webhook_url: Optional[str] = None
    signer_backend: str = "none"

    @property
    def is_running(self) -> bool:
        return self.status == WorkerStatus.RUNNING

    def append_log(self, entry: CycleLog) -> None:
        # deque(maxlen) drops the oldest entry.
        self.recent_logs.append(entry)

    def last_log(self) -> Optional[CycleLog]:
        return self.recent_logs[-1] if self.recent_logs else None

    def snapshot(self, log_limit: int = 10) -> Dict[str, Any]:
        """Read-only view, most recent ``log_limit`` logs, oldest first."""
        limit = max(0, min(int(log_limit), MAX_RECENT_LOGS))
        logs = list(self.recent_logs)[-limit:] if limit else []
        return {
            "id": self.id,
            "kind": self.kind,
            "network": self.network,
            "account": self.account,
            "protocol": self.protocol,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "dry_run": self.dry_run,
            "interval_ms": self.interval_ms,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "cycle_count": self.cycle_count,
            "consecutive_errors": self.consecutive_errors,
            "max_consecutive_errors": self.max_consecutive_errors,
            "last_cycle_at": self.last_cycle_at,
            "signer_backend": self.signer_backend,
            "webhook_configured": bool(self.webhook_url),
            "recent_logs": [entry.to_dict() for entry in logs],
        }
