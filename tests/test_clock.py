from unittest.mock import MagicMock

from grid_bot.connection.clock import ServerClock


def test_sync_stores_offset_and_corrects_timestamps(clock):
    fetch = MagicMock(return_value=2_000_250)
    server_clock = ServerClock(fetch, local_ms=lambda: 2_000_000, monotonic=clock)

    assert server_clock.needs_sync()
    assert server_clock.sync() == 250
    assert server_clock.offset_ms == 250
    assert server_clock.timestamp() == 2_000_250
    assert not server_clock.needs_sync()


def test_offset_expires_after_max_age(clock):
    fetch = MagicMock(return_value=1_000)
    server_clock = ServerClock(fetch, max_age_seconds=600, local_ms=lambda: 1_000, monotonic=clock)

    server_clock.ensure_synced()
    clock.advance(599)
    server_clock.ensure_synced()
    assert fetch.call_count == 1

    clock.advance(1)
    server_clock.ensure_synced()
    assert fetch.call_count == 2


def test_unsynced_clock_uses_local_time():
    server_clock = ServerClock(MagicMock(), local_ms=lambda: 5_000)

    assert server_clock.offset_ms is None
    assert server_clock.timestamp() == 5_000
