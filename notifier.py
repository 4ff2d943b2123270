#!/usr/bin/env python3
"""
Best-effort webhook notifications for worker lifecycle and decision events.

Delivery is at-most-once: a POST that fails, times out or gets a non-2xx
reply is logged at WARNING and dropped. ``notify`` never raises and never
blocks the cycle; the POST runs in a detached task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import aiohttp

from logging_utils import get_logger

WEBHOOK_TIMEOUT_SECONDS = 5.0

EVENT_ACTION_EXECUTED = "action_executed"
EVENT_LTV_CRITICAL = "ltv_critical"
EVENT_ERROR_PAUSE = "error_pause"
EVENT_WORKER_STOPPED = "worker_stopped"
EVENT_YIELD_REBALANCE = "yield_rebalance"
EVENT_YIELD_SUPPLY = "yield_supply"
EVENT_YIELD_HOLD = "yield_hold"

LENDING_EVENTS = frozenset({
    EVENT_ACTION_EXECUTED,
    EVENT_LTV_CRITICAL,
    EVENT_ERROR_PAUSE,
    EVENT_WORKER_STOPPED,
})
YIELD_EVENTS = frozenset({
    EVENT_YIELD_REBALANCE,
    EVENT_YIELD_SUPPLY,
    EVENT_YIELD_HOLD,
    EVENT_ERROR_PAUSE,
    EVENT_WORKER_STOPPED,
})


@dataclass
class WebhookPayload:
    event: str
    worker_id: str
    network: str
    account: str
    timestamp: int
    cycle_number: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "workerId": self.worker_id,
            "network": self.network,
            "account": self.account,
            "timestamp": self.timestamp,
            "cycleNumber": self.cycle_number,
            "data": self.data,
        }


class WebhookNotifier:
    """POSTs JSON payloads to one URL. Disabled when no URL is configured."""

    def __init__(
        self,
        url: Optional[str],
        *,
        timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS,
        log: Optional[logging.Logger] = None,
    ):
        self.url = str(url or "").strip() or None
        self.timeout_seconds = float(timeout_seconds)
        self.log = log or get_logger("notifier")
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return self.url is not None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify(self, payload: WebhookPayload) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        if not self.enabled:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.log.warning(f"Webhook {payload.event} for {payload.worker_id} dropped: no running event loop")
            return None
        task = loop.create_task(self.deliver(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, payload: WebhookPayload) -> bool:
        if not self.enabled:
            return False
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload.to_dict()) as resp:
                    if 200 <= resp.status < 300:
                        self.sent += 1
                        return True
                    self.failed += 1
                    self.log.warning(
                        f"Webhook {payload.event} for {payload.worker_id} got HTTP {resp.status}"
                    )
                    return False
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            self.failed += 1
            self.log.warning(
                f"Webhook {payload.event} for {payload.worker_id} failed: {type(exc).__name__}: {exc}"
            )
            return False

    async def drain(self, timeout: float = WEBHOOK_TIMEOUT_SECONDS) -> None:
        """Wait for in-flight deliveries, cancelling what is left after ``timeout``."""
        if not self._pending:
            return
        tasks = list(self._pending)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.log.warning(f"Dropped {len(pending)} webhook deliveries still pending after {timeout}s")
            await asyncio.gather(*pending, return_exceptions=True)
