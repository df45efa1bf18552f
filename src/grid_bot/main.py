"""Long-running orchestrator entrypoint for the grid bot."""

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Optional

from grid_bot import APP_VERSION
from grid_bot.bootstrap import CredentialBootstrapError, bootstrap
from grid_bot.bot import GridBot
from grid_bot.connection.exceptions import ExchangeError
from grid_bot.logging_config import configure_logging, get_log_environment, structured_log_extra

logger = logging.getLogger(__name__)

STATUS_LOG_INTERVAL_SEC = 60.0


def _shutdown(
    bot: GridBot,
    stop_event: threading.Event,
    *,
    reason: str = "exit",
    signal_number: Optional[int] = None,
) -> None:
    """Signal the main loop to stop and tear down streams and the engine."""

    first_shutdown = not stop_event.is_set()
    stop_event.set()
    if not first_shutdown:
        logger.info(
            "Shutdown already in progress",
            extra=structured_log_extra(event="shutdown", reason=reason, signal_number=signal_number),
        )
        return

    logger.info(
        "Initiating shutdown",
        extra=structured_log_extra(
            event="shutdown",
            reason=reason,
            signal_number=signal_number,
            metrics=bot.metrics.snapshot(),
        ),
    )
    try:
        bot.shutdown()
    except Exception as exc:  # pragma: no cover
        logger.error("Error during shutdown: %s", exc)

    logger.info("Shutdown complete", extra=structured_log_extra(event="shutdown_complete", reason=reason))


def _log_status(bot: GridBot) -> None:
    status = bot.status()
    wallet = status["wallet"]
    logger.info(
        "Grid bot status",
        extra=structured_log_extra(
            event="status",
            symbol=bot.symbol,
            engine_running=status["engine_running"],
            price_state=status["price_stream"].state.value,
            user_state=status["user_stream"].state.value,
            wallet_total=getattr(wallet, "total_value", None),
            pnl_percent=getattr(wallet, "pnl_percent", None),
            **{k: v for k, v in status["metrics"].items() if k != "recent_errors"},
        ),
    )


def run(config_path: Optional[Path] = None, env: Optional[str] = None) -> int:
    """Bootstrap the client, start the streams and the grid engine, and wait for a stop signal."""

    configure_logging(level=logging.INFO, env=env)
    stop_event = threading.Event()

    try:
        client, config = bootstrap(config_path=config_path, env=env)
    except CredentialBootstrapError as exc:
        logger.error("%s", exc, extra=structured_log_extra(event="bootstrap_failed"))
        return 1

    bot = GridBot(client, config)

    logger.info(
        "Starting grid bot",
        extra=structured_log_extra(
            event="startup",
            env=get_log_environment(),
            app_version=APP_VERSION,
            symbol=config.grid.symbol,
            testnet=config.exchange.use_testnet,
        ),
    )

    def _signal_handler(signum, _frame) -> None:  # pragma: no cover - signal driven
        _shutdown(bot, stop_event, reason="signal", signal_number=signum)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        bot.start()
        bot.start_bot()
    except ExchangeError as exc:
        logger.error("Startup failed: %s", exc, extra=structured_log_extra(event="startup_failed"))
        _shutdown(bot, stop_event, reason="startup_failed")
        return 1

    try:
        while not stop_event.is_set():
            stop_event.wait(STATUS_LOG_INTERVAL_SEC)
            if not stop_event.is_set():
                _log_status(bot)
    finally:
        _shutdown(bot, stop_event, reason="loop_exit")

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    run()
