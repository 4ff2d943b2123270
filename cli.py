#!/usr/bin/env python3
"""
CLI for the position workers.

Commands:
- run:    run one lending or yield worker in the foreground until Ctrl-C
          (or a single cycle with --once), then print its status as JSON
- config: print the resolved worker configuration
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Dict

from config_env import load_worker_config, resolve_ltv_config, resolve_yield_config, worker_defaults
from lending.registry import DEFAULT_PROTOCOL, load_factory, register_adapter, register_from_config
from logging_utils import get_logger, setup_cli_logging
from networks import WORKER_KIND_LENDING, WORKER_KIND_YIELD
from worker_manager import WorkerManager
from worker_tools import WorkerTools

log = get_logger("cli")


def _start_params(args: argparse.Namespace) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "network": args.network,
        "account": args.account,
        "dryRun": not args.live,
        "protocol": args.protocol,
    }
    if args.interval is not None:
        params["intervalSeconds"] = args.interval
    if args.max_errors is not None:
        params["maxConsecutiveErrors"] = args.max_errors
    if args.webhook_url:
        params["webhookUrl"] = args.webhook_url
    return params


async def cmd_run(args: argparse.Namespace) -> int:
    file_cfg = load_worker_config(args.config)
    register_from_config(file_cfg.get("adapters"))
    if args.adapter:
        register_adapter(args.protocol, load_factory(args.adapter))

    defaults = worker_defaults(file_cfg)
    manager = WorkerManager(shutdown_timeout=float(defaults.get("shutdown_timeout_seconds", 30)))
    tools = WorkerTools(manager, file_config=file_cfg)

    params = _start_params(args)
    if args.kind == WORKER_KIND_YIELD:
        started = await tools.start_yield(params)
    else:
        started = await tools.start_lending(params)
    print(started["text"])
    worker = manager.worker(started["details"]["workerId"])

    stop_event = asyncio.Event()

    def _stop() -> None:
        manager.stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    try:
        if args.once:
            while not worker.state.recent_logs and worker.state.is_running:
                await asyncio.sleep(0.05)
            _stop()
        else:
            finished = asyncio.ensure_future(worker.join())
            stopped = asyncio.ensure_future(stop_event.wait())
            await asyncio.wait({finished, stopped}, return_when=asyncio.FIRST_COMPLETED)
            for fut in (finished, stopped):
                fut.cancel()
    finally:
        await manager.shutdown()

    status = await tools.status({"workerId": worker.id, "logLimit": args.log_limit})
    print(json.dumps(status["details"]["worker"], indent=2, default=str))
    return 0 if worker.state.status.value != "error" else 2


def cmd_config(args: argparse.Namespace) -> int:
    file_cfg = load_worker_config(args.config)
    resolved = {
        "lending": resolve_ltv_config({}, file_cfg).to_dict(),
        "yield": resolve_yield_config({}, file_cfg).to_dict(),
        "worker": worker_defaults(file_cfg),
        "adapters": file_cfg.get("adapters") or {},
    }
    print(json.dumps(resolved, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Autonomous lending / stable-yield position workers',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', default=None, help='Path to worker.yaml (default: $POSWORKER_CONFIG)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run one worker in the foreground')
    run_parser.add_argument('--kind', choices=[WORKER_KIND_LENDING, WORKER_KIND_YIELD],
                            default=WORKER_KIND_LENDING, help='Worker kind (default: lending)')
    run_parser.add_argument('--network', required=True, help='Network, e.g. bsc, base, arbitrum')
    run_parser.add_argument('--account', required=True, help='Account to manage')
    run_parser.add_argument('--protocol', default=DEFAULT_PROTOCOL, help=f'Protocol id (default: {DEFAULT_PROTOCOL})')
    run_parser.add_argument('--adapter', default=None, metavar='MODULE:FACTORY',
                            help='Adapter factory to register under --protocol')
    run_parser.add_argument('--live', action='store_true', help='Submit transactions (default: dry run)')
    run_parser.add_argument('--interval', type=int, default=None, help='Seconds between cycles')
    run_parser.add_argument('--max-errors', type=int, default=None, help='Consecutive errors before pausing')
    run_parser.add_argument('--webhook-url', default=None, help='Webhook for worker events')
    run_parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    run_parser.add_argument('--log-limit', type=int, default=10, help='Cycle logs in the final status (1-50)')

    subparsers.add_parser('config', help='Print the resolved configuration')
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)

    if args.command == 'run':
        try:
            return asyncio.run(cmd_run(args))
        except KeyboardInterrupt:
            return 0
        except (ValueError, RuntimeError) as exc:
            log.error(str(exc))
            return 1
    elif args.command == 'config':
        return cmd_config(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
