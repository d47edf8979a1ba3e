"""Shared fixtures: fake clock and scripted observation sources."""
import pytest

from data_models import ObservationSample


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted():
    """Build an observe() that replays samples, then repeats the last one."""

    def factory(samples):
        items = iter(samples)
        last = {"sample": ObservationSample()}
        calls = {"count": 0}

        def observe():
            calls["count"] += 1
            item = next(items, None)
            if item is not None:
                if isinstance(item, Exception):
                    raise item
                last["sample"] = item
            return last["sample"]

        observe.calls = calls
        return observe

    return factory


@pytest.fixture(autouse=True)
def no_pauses(monkeypatch):
    """Adapters pace their UI actions with short sleeps; tests never wait."""
    from adapters import BackendAdapter

    monkeypatch.setattr(BackendAdapter, "_pause", lambda self, key: None)
