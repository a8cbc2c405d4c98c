from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from bulletproof.core.lib import relay_stats
from bulletproof.core.lib.relay_stats import BANDWIDTH_WINDOW, RelayStats
from bulletproof.core.types import ConnectRequest, Status, StatusHolder
from bulletproof.core.utils.utils import first_non_empty, format_bytes, format_duration


def test_stats_counters() -> None:
    stats = RelayStats()
    stats.connection_started()
    stats.connection_started()
    stats.connection_ended()
    stats.record_route(chained=True)
    stats.record_route(chained=False)
    stats.record_failure()
    stats.update_bytes(sent=1000, received=4000)

    snapshot = stats.snapshot()

    assert snapshot.active_connections == 1
    assert (snapshot.chained_connections, snapshot.direct_connections, snapshot.failed_connections) == (1, 1, 1)
    assert (snapshot.bytes_sent, snapshot.bytes_received) == (1000, 4000)
    assert snapshot.bandwidth == pytest.approx(5000 / BANDWIDTH_WINDOW)


def test_request_options_are_frozen_and_derived() -> None:
    request = ConnectRequest("warp", options={"bind": "127.0.0.1:8088", "dns": ""})

    derived = request.with_options(state_dir="/tmp/state")

    with pytest.raises(TypeError):
        request.options["bind"] = "x"  # type: ignore[index]
    assert request.option("dns", "fallback") == "fallback"
    assert "state_dir" not in request.options
    assert derived.option("state_dir") == "/tmp/state"
    assert derived.option("bind") == "127.0.0.1:8088"


def test_status_holder_updates_whole_snapshots() -> None:
    holder = StatusHolder()
    before = holder.get()

    holder.update(connected=True, message="warming")

    assert before == Status.empty()
    assert holder.get().message == "warming"
    assert not holder.update_if(lambda status: not status.connected, message="ignored")
    assert holder.update_if(lambda status: status.connected, message="ready")
    assert holder.get().message == "ready"


def test_status_as_dict() -> None:
    since = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

    data = Status(connected=True, provider_kind="warp", since=since).as_dict()

    assert data["since"] == "2026-01-02T03:04:05+00:00"
    assert data["provider_kind"] == "warp"
    assert Status.empty().as_dict()["since"] is None


def test_formatting_helpers() -> None:
    assert format_bytes(512) == "512.0 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_duration(3723) == "1h02m03s"
    assert format_duration(65) == "1m05s"
    assert format_duration(-3) == "0s"
    assert first_non_empty(None, "", "x", "y") == "x"
    assert first_non_empty(None) == ""


def test_bandwidth_counts_every_update_in_the_window() -> None:
    stats = RelayStats()

    for _ in range(2000):
        stats.update_bytes(sent=100, received=400)

    assert stats.get_bandwidth() == pytest.approx(2000 * 500 / BANDWIDTH_WINDOW)
    assert len(stats.bandwidth_history) <= BANDWIDTH_WINDOW + 1


def test_bandwidth_forgets_seconds_outside_the_window(monkeypatch) -> None:
    clock = [1000.0]
    monkeypatch.setattr(relay_stats, "time", SimpleNamespace(monotonic=lambda: clock[0]))
    stats = RelayStats()

    stats.update_bytes(sent=5000, received=0)
    clock[0] += BANDWIDTH_WINDOW + 1
    stats.update_bytes(sent=1000, received=0)

    assert stats.get_bandwidth() == pytest.approx(1000 / BANDWIDTH_WINDOW)
