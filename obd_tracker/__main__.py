"""CLI entry point: ``python -m obd_tracker [--dry-run] [--once] ...``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="obd_tracker",
        description="OBD-II telemetry tracker for ELM327 adapters",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Format upload lines and log them; never contact the collector",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single collection cycle then exit",
    )
    parser.add_argument(
        "--transport",
        choices=["auto", "wifi", "bluetooth", "sim"],
        default=None,
        help="Override OBD_TRANSPORT",
    )
    parser.add_argument(
        "--check-collector",
        action="store_true",
        default=False,
        help="Test the collector connection then exit",
    )
    parser.add_argument(
        "--test-upload",
        action="store_true",
        default=False,
        help="Upload one fixed test sample then exit",
    )
    args = parser.parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from obd_tracker.config import TrackerSettings

    settings = TrackerSettings()
    if args.dry_run is True:
        settings.dry_run = True
    if args.transport is not None:
        settings.obd_transport = args.transport

    _configure_logging(settings.log_level, settings.log_format)

    logger = structlog.get_logger("obd_tracker")
    logger.info(
        "tracker_starting",
        version=__import__("obd_tracker").__version__,
        transport=settings.obd_transport,
        dry_run=settings.dry_run,
        once=args.once,
        collector=f"{settings.collector_host}:{settings.collector_port}",
    )

    from obd_tracker.agent_loop import run_agent

    try:
        ok = asyncio.run(
            run_agent(
                settings,
                once=args.once,
                check_collector=args.check_collector,
                test_upload=args.test_upload,
            )
        )
    except KeyboardInterrupt:
        logger.info("tracker_interrupted")
        sys.exit(0)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
