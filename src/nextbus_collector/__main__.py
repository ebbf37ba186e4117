"""Run the collector until signalled: ``python -m nextbus_collector``."""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any

import uvicorn

from nextbus_collector.config import MIN_FETCH_INTERVAL_SEC, Settings, get_settings
from nextbus_collector.logging import bind_log_context, get_logger, setup_logging
from nextbus_collector.services.pipeline.controller import FetchAndArchiveController

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)


def _interval(value: str) -> float:
    interval = float(value)
    if 0 < interval < MIN_FETCH_INTERVAL_SEC:
        msg = f"must be 0 (derived) or at least {MIN_FETCH_INTERVAL_SEC:g} seconds"
        raise argparse.ArgumentTypeError(msg)
    return interval


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nextbus-collector",
        description=(
            "Poll NextBus vehicleLocations, archiving raw responses and writing "
            "aggregated locations to daily CSV files."
        ),
    )
    parser.add_argument("--agency", help="NextBus agency tag (default: AGENCY env or 'mbta').")
    parser.add_argument(
        "--storage-root",
        type=Path,
        help="Directory under which <agency>/locations/{raw,processed} are written.",
    )
    parser.add_argument(
        "--interval",
        type=_interval,
        help="Seconds between fetches; 0 derives it from --extra-seconds.",
    )
    parser.add_argument(
        "--extra-seconds",
        type=int,
        help="Seconds of overlap to request before the last lastTime.",
    )
    parser.add_argument(
        "--debug-archiving",
        action="store_true",
        default=None,
        help="Rotate archives every minute or two instead of daily.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the status API with uvicorn; the pipeline starts with it.",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Status API host (with --serve).")
    parser.add_argument("--port", type=int, default=8000, help="Status API port (with --serve).")
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {
        "agency": args.agency,
        "storage_root": args.storage_root,
        "fetch_interval_sec": args.interval,
        "extra_seconds": args.extra_seconds,
        "debug_archiving": args.debug_archiving,
    }
    update = {key: value for key, value in overrides.items() if value is not None}
    if not update:
        return settings
    return settings.model_copy(update=update)


async def run(settings: Settings) -> int:
    """Run the pipeline until a shutdown signal arrives; returns exit status."""
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def on_signal(signum: signal.Signals) -> None:
        if stop_requested.is_set():
            logger.warning("Second signal during shutdown, exiting now", signal=signum.name)
            raise SystemExit(1)
        logger.info("Shutdown signal received", signal=signum.name)
        stop_requested.set()

    for signum in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(signum, on_signal, signum)

    controller = FetchAndArchiveController(settings)
    controller.start()
    await stop_requested.wait()
    report = await controller.shutdown()
    return 0 if report.clean else 1


def serve(args: argparse.Namespace) -> None:
    """Serve ``nextbus_collector.main:app``, which reads settings itself."""
    environ = {
        "AGENCY": args.agency,
        "STORAGE_ROOT": args.storage_root,
        "FETCH_INTERVAL_SEC": args.interval,
        "EXTRA_SECONDS": args.extra_seconds,
        "DEBUG_ARCHIVING": args.debug_archiving,
    }
    for key, value in environ.items():
        if value is not None:
            os.environ[key] = str(value)
    os.environ["PIPELINE_AUTO_START"] = "true"
    get_settings.cache_clear()
    uvicorn.run("nextbus_collector.main:app", host=args.host, port=args.port, log_config=None)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.serve:
        serve(args)
        return
    settings = apply_overrides(get_settings(), args)
    setup_logging(settings)
    bind_log_context(agency=settings.agency)
    logger.info("Starting collector", app=settings.app_name, version=settings.app_version)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
