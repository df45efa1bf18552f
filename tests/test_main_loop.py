import threading
from unittest.mock import MagicMock

from grid_bot import main
from grid_bot.bootstrap import CredentialBootstrapError
from grid_bot.connection.exceptions import MetadataUnavailable


def test_run_returns_error_when_credentials_missing(monkeypatch):
    monkeypatch.setattr(main, "configure_logging", lambda **kwargs: None)

    def _fail(**kwargs):
        raise CredentialBootstrapError("missing")

    monkeypatch.setattr(main, "bootstrap", _fail)

    assert main.run() == 1


def test_run_shuts_down_when_startup_fails(monkeypatch):
    monkeypatch.setattr(main, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(main.signal, "signal", lambda *args: None)
    config = MagicMock()
    monkeypatch.setattr(main, "bootstrap", lambda **kwargs: (MagicMock(), config))
    bot = MagicMock()
    bot.start.side_effect = MetadataUnavailable("BNBUSDT")
    monkeypatch.setattr(main, "GridBot", lambda client, cfg: bot)

    assert main.run() == 1
    bot.shutdown.assert_called_once()


def test_shutdown_runs_once():
    bot = MagicMock()
    bot.metrics.snapshot.return_value = {}
    stop_event = threading.Event()

    main._shutdown(bot, stop_event, reason="signal", signal_number=15)
    main._shutdown(bot, stop_event, reason="loop_exit")

    assert stop_event.is_set()
    bot.shutdown.assert_called_once()
