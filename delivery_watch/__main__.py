from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Sequence

from delivery_watch.common.json_logger import JsonLogger, get_logger, log_event
from delivery_watch.config import ConfigError, get_config


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Some environments (e.g. Windows) do not support custom signal handlers.
            pass


async def _serve(logger: JsonLogger, *, autostart: bool) -> int:
    import uvicorn

    from delivery_watch.monitor.service import build_service
    from delivery_watch.server import create_app

    config = get_config()
    service = build_service(config, logger=logger)
    app = create_app(
        service,
        tokens=config.control_api_tokens,
        base_path=config.control_api_base_path,
        logger=logger,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.control_api_host, port=config.control_api_port, log_level="info")
    )
    log_event(
        logger=logger,
        phase="startup",
        message="control API listening",
        host=config.control_api_host,
        port=config.control_api_port,
        base_path=config.control_api_base_path,
    )
    if autostart:
        await service.start()
    await server.serve()
    return 0


async def _monitor(logger: JsonLogger) -> int:
    from delivery_watch.monitor.service import build_service

    service = build_service(get_config(), logger=logger)
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    await service.start()
    waiter = asyncio.create_task(service.wait())
    stopper = asyncio.create_task(stop_event.wait())
    await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()
    log_event(logger=logger, phase="shutdown", message="stopping monitor")
    await service.close()
    return 0


async def _run_once(logger: JsonLogger) -> int:
    from delivery_watch.monitor.service import build_service

    service = build_service(get_config(), logger=logger)
    try:
        summary = await service.run_once()
    finally:
        await service.close()
    print(json.dumps(summary, indent=2, default=str), flush=True)
    return 0 if summary["outcome"] == "completed" else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="delivery-watch", description="Delivery dashboard monitor")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP control API (monitor idle until started)")
    serve_parser.add_argument(
        "--autostart", action="store_true", help="Start the monitor loop immediately"
    )
    subparsers.add_parser("monitor", help="Run the monitor loop in the foreground until interrupted")
    subparsers.add_parser("run-once", help="Run a single cycle, print its summary and exit")
    parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    parsed = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])

    try:
        get_config()
    except ConfigError as exc:
        print(f"[delivery-watch] configuration error: {exc}", file=sys.stderr, flush=True)
        return 2

    logger = get_logger(run_id=parsed.run_id)
    try:
        if parsed.command == "serve":
            return asyncio.run(_serve(logger, autostart=parsed.autostart))
        if parsed.command == "monitor":
            return asyncio.run(_monitor(logger))
        if parsed.command == "run-once":
            return asyncio.run(_run_once(logger))
    finally:
        logger.close()

    parser.error("Unknown command")
    return 1


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":  # pragma: no cover
    run()
