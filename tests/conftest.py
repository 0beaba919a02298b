"""pytest configuration and shared fakes for discoveryd tests."""

import pytest

from discoveryd.browser import BrowseError, BrowseStream


class FakeBrowser:
    """Stands in for ZeroconfBrowser; tests push events into its streams."""

    def __init__(self, fail_types=()):
        self.streams: dict[str, BrowseStream] = {}
        self.subscribe_calls: list[str] = []
        self.fail_types = set(fail_types)
        self.closed = False

    def browse(self, service_type: str) -> BrowseStream:
        self.subscribe_calls.append(service_type)
        if service_type in self.fail_types:
            raise BrowseError(f"cannot browse {service_type}")
        stream = BrowseStream(service_type)
        self.streams[service_type] = stream
        return stream

    def close(self) -> None:
        self.closed = True
        for stream in self.streams.values():
            stream.close()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def clock():
    return FakeClock()
