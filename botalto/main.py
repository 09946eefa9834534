"""Main entry point for botalto.

Initializes logging in two phases (defaults then config-driven),
builds the BotManager with the Telegram provider and the sandbox, and
serves the control API until SIGTERM/SIGINT. On shutdown every running
bot is stopped.

Key functions:
    main: Async entry point.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal
import sys

import structlog
from aiohttp import web

from .exceptions import ConfigurationError
from .logging_config import setup_logging


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Event-loop exception handler: log and keep the host alive."""
    logger = structlog.get_logger("botalto")
    exc = context.get("exception")
    logger.error(
        "unhandled_loop_exception",
        message=context.get("message", ""),
        error=str(exc) if exc else None,
        exc_type=type(exc).__name__ if exc else None,
    )


async def main():
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("botalto")

    from . import __version__
    logger.info("botalto_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .api import create_app
    from .config import get_config
    from .manager import BotManager
    from .providers.telegram import TelegramProvider
    from .sandbox import SandboxConfig, SandboxExecutor

    config = get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_loop_exception)

    manager = BotManager(
        provider=TelegramProvider.from_config(config),
        executor=SandboxExecutor(SandboxConfig.from_config(config)),
        config=config,
    )
    app = create_app(manager)
    runner = web.AppRunner(app)

    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            # Fall back to signal.signal for SIGINT (Ctrl+C).
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    try:
        await runner.setup()
        site = web.TCPSite(runner, config.api_host, config.api_port)
        await site.start()
        logger.info("control_api_listening", host=config.api_host, port=config.api_port)

        await shutdown_event.wait()
    except Exception as e:
        logger.error("host_error", error=str(e))
        raise
    finally:
        # runner.cleanup() fires on_shutdown, which stops every bot
        await runner.cleanup()
        logger.info("botalto_stopped")


def run():
    """Synchronous entry point for the ``botalto`` console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except ConfigurationError as e:
        print(f"botalto: {e}", file=sys.stderr)
        sys.exit(78)  # EX_CONFIG


if __name__ == "__main__":
    run()
