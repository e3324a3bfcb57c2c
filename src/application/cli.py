"""
Command Line Entry Point

STAGE-L: Process lifecycle

    resilient-api --config /etc/resilient-api/.env

Serves the application with uvicorn. The first SIGINT/SIGTERM stops
accepting connections and drains in-flight requests for up to
DRAIN_DEADLINE_SECONDS before the lifespan teardown runs; a second signal
exits immediately without teardown.

Author: System Architect
Date: 2025-12-15
"""

import argparse
import signal
import sys

import uvicorn

from src.core.config.constants import Stage
from src.core.config.settings import Settings, load_settings
from src.core.logging.logger import flush_logging, get_logger, setup_logging

logger = get_logger(__name__)


class GracefulServer(uvicorn.Server):
    """uvicorn server where any repeated shutdown signal forces the exit."""

    def handle_exit(self, sig: int, frame) -> None:
        if self.should_exit:
            logger.warning(
                "Second shutdown signal received, forcing exit",
                stage=Stage.SHUTDOWN.value,
                signal=signal.Signals(sig).name,
            )
            self.force_exit = True
            return
        logger.info(
            "Shutdown signal received, draining connections",
            stage=Stage.SHUTDOWN.value,
            signal=signal.Signals(sig).name,
            deadline_seconds=self.config.timeout_graceful_shutdown,
        )
        self.should_exit = True


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="resilient-api", description="Run the API server")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an env file with settings (environment variables still win)",
    )
    return parser.parse_args(argv)


def build_server(settings: Settings) -> GracefulServer:
    # Imported after settings are loaded so the app picks them up
    from src.application.app import create_app

    config = uvicorn.Config(
        create_app(settings),
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
        access_log=False,
        timeout_graceful_shutdown=int(settings.app.DRAIN_DEADLINE_SECONDS),
    )
    return GracefulServer(config)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting server",
        stage=Stage.STARTUP.value,
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        config=args.config,
    )
    server = build_server(settings)
    server.run()

    flush_logging()
    if server.force_exit:
        return 1
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(main())
