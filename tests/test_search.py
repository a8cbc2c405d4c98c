import threading
import time

import pytest
from conftest import FakeRunner, LoopbackServer, free_address, wait_for

from bulletproof.core.config import Settings
from bulletproof.core.engine.scan import Endpoint, parse_scan_output
from bulletproof.core.engine.tunnel import TunnelConfig, TunnelEngine
from bulletproof.core.exceptions import ProcessExit, ReadinessTimeout, SearchCancelled, SearchExhausted, SpawnFailed
from bulletproof.core.search import DEFAULT_TEST_URLS, CandidateSearch, candidate_test_urls, wait_engine_port


class FakeEngine:
    def __init__(self, config: TunnelConfig) -> None:
        self.config = config
        self.bind = config.bind
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class Recorder:
    """Engine factory plus readiness check driven by a predicate on the config."""

    def __init__(self, ready=lambda config: False) -> None:
        self.ready = ready
        self.engines: list[FakeEngine] = []

    def factory(self, config: TunnelConfig) -> FakeEngine:
        engine = FakeEngine(config)
        self.engines.append(engine)
        return engine

    def wait(self, engine: FakeEngine, test_url, timeout: float, cancel: threading.Event) -> None:
        if not self.ready(engine.config):
            raise ReadinessTimeout(engine.bind, timeout)


def _search(recorder: Recorder, urls, **kwargs) -> CandidateSearch:
    kwargs.setdefault("scan", lambda binary, cancel: [])
    return CandidateSearch(
        TunnelConfig(binary="warp-plus"),
        urls,
        engine_factory=recorder.factory,
        wait_ready=recorder.wait,
        **kwargs,
    )


def test_second_url_wins_after_two_starts() -> None:
    recorder = Recorder(ready=lambda config: config.test_url == "b")

    result = _search(recorder, ["a", "b"]).run()

    assert result.test_url == "b"
    assert result.endpoint is None
    assert result.attempts == 2
    assert result.describe() == "probe=b"
    first, second = recorder.engines
    assert first.stopped
    assert second.started and not second.stopped
    assert result.engine is second


def test_scan_phase_combines_endpoints_with_first_urls() -> None:
    recorder = Recorder(ready=lambda config: config.endpoint == "ep2" and config.test_url == "u1")
    scans: list[str | None] = []

    def scan(binary, cancel):
        scans.append(binary)
        return [Endpoint("ep1"), Endpoint("ep2")]

    result = _search(recorder, ["u1", "u2", "u3", "u4", "u5"], scan=scan).run()

    assert scans == ["warp-plus"]
    assert result.endpoint == "ep2"
    assert result.attempts == 5 + 3 + 1
    assert [e.config.test_url for e in recorder.engines[5:8]] == ["u1", "u2", "u3"]
    assert result.describe() == "probe=u1, ep=ep2"


def test_scan_phase_tries_at_most_fifteen_endpoints() -> None:
    recorder = Recorder()
    endpoints = [Endpoint(f"10.0.0.{i}:2408") for i in range(20)]

    with pytest.raises(SearchExhausted) as excinfo:
        _search(recorder, ["only"], scan=lambda binary, cancel: endpoints).run()

    assert len(recorder.engines) == 1 + 15
    assert isinstance(excinfo.value.last_error, ReadinessTimeout)
    assert all(engine.stopped for engine in recorder.engines)


def test_exhausted_without_scan_results_reports_last_error() -> None:
    recorder = Recorder()

    with pytest.raises(SearchExhausted) as excinfo:
        _search(recorder, ["a", "b"]).run()

    assert isinstance(excinfo.value.last_error, ReadinessTimeout)
    assert len(recorder.engines) == 2


def test_scan_failure_ends_the_search() -> None:
    recorder = Recorder()

    def broken_scan(binary, cancel):
        raise SpawnFailed("warp-plus", "not found")

    with pytest.raises(SearchExhausted):
        _search(recorder, ["a"], scan=broken_scan).run()

    assert len(recorder.engines) == 1


def test_spawn_failure_moves_on_to_next_candidate() -> None:
    class FlakyEngine(FakeEngine):
        def start(self) -> None:
            if self.config.test_url == "a":
                raise SpawnFailed("warp-plus", "busy")
            super().start()

    engines: list[FakeEngine] = []

    def factory(config):
        engine = FlakyEngine(config)
        engines.append(engine)
        return engine

    search = CandidateSearch(
        TunnelConfig(),
        ["a", "b"],
        engine_factory=factory,
        wait_ready=lambda engine, url, timeout, cancel: None,
        scan=lambda binary, cancel: [],
    )

    result = search.run()

    assert result.test_url == "b"
    assert result.attempts == 2


def test_cancel_aborts_a_waiting_search() -> None:
    waiting = threading.Event()
    engines: list[FakeEngine] = []

    def factory(config):
        engine = FakeEngine(config)
        engines.append(engine)
        return engine

    def wait(engine, test_url, timeout, cancel):
        waiting.set()
        cancel.wait(5.0)
        raise ReadinessTimeout(engine.bind, timeout)

    search = CandidateSearch(TunnelConfig(), ["a", "b"], engine_factory=factory, wait_ready=wait)
    outcome: list[BaseException] = []

    def run() -> None:
        try:
            search.run()
        except BaseException as e:  # noqa: BLE001 - handed back to the test thread
            outcome.append(e)

    thread = threading.Thread(target=run)
    thread.start()
    assert waiting.wait(2.0)
    search.cancel()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert isinstance(outcome[0], SearchCancelled)
    assert len(engines) == 1
    assert engines[0].stopped


def test_candidate_urls_ordering_and_dedup() -> None:
    settings = Settings(test_url="http://env/", test_urls=("http://list/", "http://env/", DEFAULT_TEST_URLS[0]))

    urls = candidate_test_urls("http://explicit/", settings)

    assert urls[:3] == ("http://explicit/", "http://env/", "http://list/")
    assert urls[3:] == DEFAULT_TEST_URLS
    assert len(set(urls)) == len(urls)


def test_candidate_urls_defaults_only() -> None:
    assert candidate_test_urls(None, Settings()) == DEFAULT_TEST_URLS


def test_parse_scan_output_keeps_order_and_skips_noise() -> None:
    output = "\n".join(
        [
            "scanning...",
            "162.159.192.10:2408 120",
            "[2606:4700:d0::a29f:c001]:878",
            "162.159.192.10:2408 90",
            "done",
        ]
    )

    assert parse_scan_output(output) == [
        Endpoint("162.159.192.10:2408", 120),
        Endpoint("[2606:4700:d0::a29f:c001]:878", 0),
    ]


def test_scan_sees_the_search_cancel_event() -> None:
    scanning = threading.Event()
    released: list[bool] = []

    def scan(binary, cancel):
        scanning.set()
        released.append(cancel.wait(5.0))
        return [Endpoint("10.0.0.1:2408")]

    search = _search(Recorder(), ["a"], scan=scan)
    outcome: list[BaseException] = []

    def run() -> None:
        try:
            search.run()
        except BaseException as e:  # noqa: BLE001 - handed back to the test thread
            outcome.append(e)

    thread = threading.Thread(target=run)
    thread.start()
    assert scanning.wait(2.0)
    search.cancel()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert released == [True]
    assert isinstance(outcome[0], SearchCancelled)


def test_wait_engine_port_gives_up_when_the_engine_exits() -> None:
    runner = FakeRunner()
    engine = TunnelEngine(TunnelConfig(binary="warp-plus", bind=free_address()), runner)
    engine.start()
    threading.Timer(0.3, runner.processes[0].exit, args=(1,)).start()
    began = time.monotonic()

    with pytest.raises(ProcessExit) as excinfo:
        wait_engine_port(engine, None, 30.0, threading.Event())

    assert time.monotonic() - began < 5.0
    assert excinfo.value.returncode == 1


def test_wait_engine_port_ignores_a_port_held_by_someone_else(echo_server: LoopbackServer) -> None:
    runner = FakeRunner()
    engine = TunnelEngine(TunnelConfig(binary="warp-plus", bind=echo_server.address), runner)
    engine.start()
    runner.processes[0].exit(1)
    assert wait_for(lambda: not engine.active)

    with pytest.raises(ProcessExit):
        wait_engine_port(engine, None, 5.0, threading.Event())


def test_wait_engine_port_accepts_a_live_engine(echo_server: LoopbackServer) -> None:
    engine = TunnelEngine(TunnelConfig(binary="warp-plus", bind=echo_server.address), FakeRunner())
    engine.start()
    try:
        wait_engine_port(engine, None, 5.0, threading.Event())
    finally:
        engine.stop()
