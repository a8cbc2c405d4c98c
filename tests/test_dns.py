from collections import OrderedDict

import pytest

from bulletproof.core.lib import dns_handler
from bulletproof.core.lib.dns_handler import DNSResolver


@pytest.fixture(autouse=True)
def empty_cache(monkeypatch) -> None:
    monkeypatch.setattr(DNSResolver, "_resolve_cache", OrderedDict())


def test_system_answers_are_cached(monkeypatch) -> None:
    answers = iter(["10.1.1.1", "10.9.9.9"])
    monkeypatch.setattr(dns_handler.socket, "gethostbyname", lambda domain: next(answers))
    resolver = DNSResolver()

    assert resolver.resolve("cached.test") == "10.1.1.1"
    assert resolver.resolve("cached.test") == "10.1.1.1"


def test_cache_keeps_only_the_most_recent_names(monkeypatch) -> None:
    monkeypatch.setattr(dns_handler, "CACHE_SIZE", 2)
    resolver = DNSResolver()
    resolver._remember("a.test", "10.0.0.1")
    resolver._remember("b.test", "10.0.0.2")

    assert resolver.resolve("a.test") == "10.0.0.1"
    resolver._remember("c.test", "10.0.0.3")

    assert list(DNSResolver._resolve_cache) == ["a.test", "c.test"]
