"""Tests for BrowseStream and the zeroconf adapter."""

import socket
import threading

import pytest
from zeroconf import BadTypeInNameException, ServiceInfo

import discoveryd.browser as browser_mod
from discoveryd.browser import (
    META_SERVICE_TYPE,
    BrowseError,
    BrowseStream,
    DiscoveryInitError,
    ZeroconfBrowser,
    _StreamListener,
    resolved_from_info,
)
from discoveryd.events import SearchStopped, ServiceFound, ServiceRemoved, ServiceResolved

HTTP = "_http._tcp.local."
PRINTER = "printer1._http._tcp.local."


def _printer_info(**kw):
    params = dict(
        port=80,
        properties={"path": "/"},
        server="printer1.local.",
        addresses=[socket.inet_aton("192.168.1.5")],
    )
    params.update(kw)
    return ServiceInfo(HTTP, PRINTER, **params)


class FakeZc:
    def __init__(self, info=None):
        self.info = info
        self.lookups: list[tuple[str, str, int]] = []

    def get_service_info(self, type_, name, timeout=3000):
        self.lookups.append((type_, name, timeout))
        return self.info


def _drain(stream: BrowseStream) -> list:
    stream.close()
    return list(stream)


class TestBrowseStream:
    def test_delivers_in_order_then_stops(self):
        stream = BrowseStream(HTTP)
        stream.put(ServiceFound(HTTP, "a"))
        stream.put(ServiceRemoved(HTTP, "a"))
        assert _drain(stream) == [
            ServiceFound(HTTP, "a"),
            ServiceRemoved(HTTP, "a"),
            SearchStopped(HTTP),
        ]

    def test_put_after_close_is_dropped(self):
        stream = BrowseStream(HTTP)
        stream.close()
        stream.put(ServiceFound(HTTP, "late"))
        stream.close()
        assert stream.closed
        assert list(stream) == [SearchStopped(HTTP)]

    def test_iteration_blocks_until_event(self):
        stream = BrowseStream(HTTP)
        received = []
        consumer = threading.Thread(target=lambda: received.extend(stream))
        consumer.start()
        consumer.join(0.1)
        assert consumer.is_alive()

        stream.put(ServiceFound(HTTP, "a"))
        stream.close()
        consumer.join(5)
        assert received[0] == ServiceFound(HTTP, "a")


class TestResolvedFromInfo:
    def test_converts_service_info(self):
        event = resolved_from_info(HTTP, _printer_info())
        assert event == ServiceResolved(
            service_type=HTTP,
            fullname=PRINTER,
            hostname="printer1.local.",
            port=80,
            addresses=("192.168.1.5",),
            attributes={"path": "/"},
        )

    def test_valueless_attribute_becomes_empty_string(self):
        event = resolved_from_info(HTTP, _printer_info(properties={"flag": None, "k": b"v"}))
        assert event.attributes == {"flag": "", "k": "v"}

    def test_undecodable_bytes_are_replaced(self):
        event = resolved_from_info(HTTP, _printer_info(properties={b"bin": b"\xff\xfe"}))
        assert event.attributes == {"bin": "\ufffd\ufffd"}


class TestStreamListener:
    def test_instance_add_emits_found_then_resolved(self):
        stream = BrowseStream(HTTP)
        zc = FakeZc(_printer_info())
        _StreamListener(stream, resolve=True, resolve_timeout=1.5).add_service(zc, HTTP, PRINTER)

        events = _drain(stream)
        assert events[0] == ServiceFound(HTTP, PRINTER)
        assert isinstance(events[1], ServiceResolved)
        assert events[1].port == 80
        assert zc.lookups == [(HTTP, PRINTER, 1500)]

    def test_update_re_resolves(self):
        stream = BrowseStream(HTTP)
        zc = FakeZc(_printer_info(port=8080))
        _StreamListener(stream, resolve=True, resolve_timeout=1).update_service(zc, HTTP, PRINTER)
        [resolved, _] = _drain(stream)
        assert resolved.port == 8080

    def test_unresolvable_instance_only_emits_found(self):
        stream = BrowseStream(HTTP)
        _StreamListener(stream, resolve=True, resolve_timeout=1).add_service(FakeZc(None), HTTP, PRINTER)
        assert _drain(stream) == [ServiceFound(HTTP, PRINTER), SearchStopped(HTTP)]

    def test_meta_type_is_not_resolved(self):
        stream = BrowseStream(META_SERVICE_TYPE)
        zc = FakeZc(_printer_info())
        _StreamListener(stream, resolve=False, resolve_timeout=1).add_service(zc, META_SERVICE_TYPE, HTTP)
        assert _drain(stream) == [
            ServiceFound(META_SERVICE_TYPE, HTTP),
            SearchStopped(META_SERVICE_TYPE),
        ]
        assert zc.lookups == []

    def test_remove_emits_removed(self):
        stream = BrowseStream(HTTP)
        _StreamListener(stream, resolve=True, resolve_timeout=1).remove_service(FakeZc(), HTTP, PRINTER)
        assert _drain(stream)[0] == ServiceRemoved(HTTP, PRINTER)


class _FakeZeroconf:
    instances: list = []

    def __init__(self, interfaces=None, ip_version=None):
        self.interfaces = interfaces
        self.ip_version = ip_version
        self.closed = False
        _FakeZeroconf.instances.append(self)

    def close(self):
        self.closed = True


class _FakeServiceBrowser:
    def __init__(self, zc, type_, listener=None):
        if type_.startswith("bad"):
            raise BadTypeInNameException(type_)
        self.type_ = type_
        self.listener = listener
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def fake_zeroconf(monkeypatch):
    _FakeZeroconf.instances = []
    monkeypatch.setattr(browser_mod, "Zeroconf", _FakeZeroconf)
    monkeypatch.setattr(browser_mod, "ServiceBrowser", _FakeServiceBrowser)
    return _FakeZeroconf


class TestZeroconfBrowser:
    def test_interfaces_and_ip_version_are_passed_through(self, fake_zeroconf):
        ZeroconfBrowser(interfaces=["192.168.1.2"], ip_version="v4")
        [zc] = fake_zeroconf.instances
        assert zc.interfaces == ["192.168.1.2"]
        assert zc.ip_version == browser_mod.IPVersion.V4Only

    def test_default_uses_all_interfaces(self, fake_zeroconf):
        ZeroconfBrowser()
        [zc] = fake_zeroconf.instances
        assert zc.interfaces == browser_mod.InterfaceChoice.All
        assert zc.ip_version == browser_mod.IPVersion.All

    def test_unknown_ip_version(self, fake_zeroconf):
        with pytest.raises(DiscoveryInitError):
            ZeroconfBrowser(ip_version="v5")

    def test_socket_failure_is_init_error(self, monkeypatch):
        def broken(**kwargs):
            raise OSError("Address already in use")

        monkeypatch.setattr(browser_mod, "Zeroconf", broken)
        with pytest.raises(DiscoveryInitError, match="Address already in use"):
            ZeroconfBrowser()

    def test_bad_type_raises_browse_error(self, fake_zeroconf):
        browser = ZeroconfBrowser()
        with pytest.raises(BrowseError):
            browser.browse("bad type")

    def test_close_ends_streams_and_cancels_browsers(self, fake_zeroconf):
        browser = ZeroconfBrowser()
        meta = browser.browse(META_SERVICE_TYPE)
        http = browser.browse(HTTP)
        browser.close()
        browser.close()

        assert list(meta) == [SearchStopped(META_SERVICE_TYPE)]
        assert list(http) == [SearchStopped(HTTP)]
        assert fake_zeroconf.instances[0].closed
        with pytest.raises(BrowseError):
            browser.browse(HTTP)
