"""
Command line runner.

Loads settings from the environment (and `.env`), restores every persisted
session through the given socket factory, starts the reminder scheduler and
runs until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import logging
import signal
from collections.abc import Sequence
from typing import cast

from .gateway import Gateway
from .log import setup_logging
from .protocol import SocketFactory
from .settings import Settings

logger = logging.getLogger(__name__)


def load_factory(spec: str) -> SocketFactory:
    """Resolve `package.module:callable` to the protocol socket factory."""

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"expected module:callable, got {spec!r}")
    obj: object = importlib.import_module(module_name)
    for part in attr.split("."):
        obj = getattr(obj, part)
    if not callable(obj):
        raise ValueError(f"{spec!r} is not callable")
    return cast(SocketFactory, obj)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="wagateway", description="multi-tenant WhatsApp gateway")
    ap.add_argument(
        "--socket-factory",
        required=True,
        help="protocol socket factory as module:callable",
    )
    ap.add_argument("--log-level", default=None, help="override LOG_LEVEL (default: INFO)")
    ap.add_argument(
        "--no-scheduler", action="store_true", help="don't run the appointment reminder loop"
    )
    ap.add_argument(
        "--no-restore", action="store_true", help="don't restart persisted sessions on boot"
    )
    return ap


async def run(args: argparse.Namespace, settings: Settings) -> None:
    gateway = Gateway.from_settings(settings, load_factory(args.socket_factory))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform; Ctrl+C still raises KeyboardInterrupt there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        if not args.no_restore:
            restored = await gateway.restore_sessions()
            logger.info("%d sessions restored", restored)
        if not args.no_scheduler:
            gateway.start()
        await stop.wait()
    finally:
        logger.info("shutting down")
        await gateway.close()


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = Settings()
    setup_logging(args.log_level or settings.LOG_LEVEL)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(args, settings))
