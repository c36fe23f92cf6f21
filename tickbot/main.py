"""
tickbot - Main Entry Point

Usage:
    python -m tickbot.main --config config/default.yaml
    python -m tickbot.main --config config/default.yaml --clean --metrics
"""

# Load .env FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import sys

from pydantic import ValidationError

from tickbot import __version__
from tickbot.core.orchestrator import TradingSession
from tickbot.infrastructure.alerts import TelegramNotifier
from tickbot.infrastructure.config import AppConfig, SecretsConfig, init_config
from tickbot.infrastructure.graceful_shutdown import GracefulShutdown
from tickbot.infrastructure.logging import bind_context, configure_logging, get_logger
from tickbot.infrastructure.metrics import metrics
from tickbot.ingestion.errors import ProtocolError, TransportError
from tickbot.ingestion.ws_client import ReconnectPolicy, SessionTransport


def build_session(config: AppConfig, secrets: SecretsConfig) -> TradingSession:
    """Wire transport, notifier and session from resolved configuration."""
    api = config.api
    if secrets.deriv_app_id:
        api = api.model_copy(update={"app_id": secrets.deriv_app_id})

    transport = SessionTransport(
        url=api.endpoint,
        api_token=secrets.deriv_api_token or None,
        reconnect_policy=ReconnectPolicy.from_config(config.execution),
        connect_timeout=config.execution.connect_timeout_s,
        request_timeout=config.execution.request_timeout_s,
    )

    notifier = None
    if config.observability.telegram_enabled:
        notifier = TelegramNotifier(
            bot_token=secrets.telegram_bot_token,
            chat_id=secrets.telegram_chat_id,
        )

    return TradingSession(config, transport, notifier=notifier)


async def run_session(config: AppConfig, secrets: SecretsConfig, enable_metrics: bool) -> int:
    """Run one session until it stops; returns the process exit code."""
    logger = get_logger(__name__)

    if enable_metrics or config.observability.metrics_enabled:
        metrics.start_server(port=config.observability.metrics_port)
        metrics.set_bot_info(version=__version__, environment=config.environment)

    session = build_session(config, secrets)

    shutdown = GracefulShutdown()
    shutdown.register_cleanup("session", lambda: session.stop("signal received"), priority=10)
    shutdown.install_signal_handlers()

    try:
        await session.start()
    except ProtocolError as e:
        logger.critical("Session start refused", code=e.code, message=e.message)
        await session.stop(f"start refused: {e.code}")
        return 1
    except TransportError as e:
        logger.critical("Session start failed", error=str(e))
        await session.stop(f"start failed: {e}")
        return 1

    await session.wait_stopped()
    return 0


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Digit-class signal trading client"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/default.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Use clean, minimal log format for easier terminal reading",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Expose Prometheus metrics on observability.metrics_port",
    )
    return parser.parse_args()


async def async_main() -> int:
    """Async entry point."""
    args = parse_args()

    try:
        config, secrets = init_config(args.config)
    except (FileNotFoundError, ValidationError) as e:
        print(f"ERROR: invalid configuration: {e}")
        return 2

    log_format = "clean" if args.clean else config.observability.log_format
    log_level = "DEBUG" if args.verbose else config.observability.log_level
    configure_logging(log_level=log_level, log_format=log_format)
    bind_context(environment=config.environment)

    logger = get_logger(__name__)
    logger.info(
        "tickbot starting",
        version=__version__,
        environment=config.environment,
        config_file=args.config,
        customized=list(config.diff_from_defaults()),
    )

    if config.is_production and not secrets.deriv_api_token:
        logger.critical("Production config requires DERIV_API_TOKEN")
        return 1

    return await run_session(config, secrets, args.metrics)


def main() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
