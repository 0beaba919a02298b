"""
Browse subscriptions over zeroconf

This module provides:
- BrowseStream: a blocking, iterable queue of discovery events for one
  browse subscription
- ZeroconfBrowser: wraps zeroconf's callback-driven ServiceBrowser so that
  each browse returns a BrowseStream
- the exception types raised by the discovery layer
"""

import logging
import queue
import threading
from typing import Iterator, Optional

from zeroconf import (
    Error as ZeroconfError,
    InterfaceChoice,
    IPVersion,
    ServiceBrowser,
    ServiceInfo,
    ServiceListener,
    Zeroconf,
)

from .events import (
    DiscoveryEvent,
    SearchStopped,
    ServiceFound,
    ServiceRemoved,
    ServiceResolved,
)

logger = logging.getLogger(__name__)

META_SERVICE_TYPE = "_services._dns-sd._udp.local."

_IP_VERSIONS = {
    "all": IPVersion.All,
    "v4": IPVersion.V4Only,
    "v6": IPVersion.V6Only,
}


class DiscoveryError(Exception):
    """Base class for discovery failures."""


class DiscoveryInitError(DiscoveryError):
    """The discovery subsystem or the meta-type browse could not be started."""


class BrowseError(DiscoveryError):
    """A browse subscription for a single service type could not be created."""


_CLOSED = object()


class BrowseStream:
    """Queue of events for one browse subscription.

    Iterating blocks until the next event arrives and stops once the
    stream has been closed and every queued event has been delivered.
    """

    def __init__(self, service_type: str):
        self.service_type = service_type
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: DiscoveryEvent) -> None:
        with self._lock:
            if self._closed:
                return
            self._queue.put(event)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(SearchStopped(self.service_type))
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[DiscoveryEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def resolved_from_info(service_type: str, info: ServiceInfo) -> ServiceResolved:
    """Build a ServiceResolved event from a zeroconf ServiceInfo."""
    attributes: dict[str, str] = {}
    for key, value in info.properties.items():
        attributes[_decode(key)] = _decode(value)
    return ServiceResolved(
        service_type=service_type,
        fullname=info.name,
        hostname=info.server or "",
        port=info.port or 0,
        addresses=tuple(info.parsed_addresses()),
        attributes=attributes,
    )


class _StreamListener(ServiceListener):
    """Feeds zeroconf browser callbacks into a BrowseStream.

    Callbacks run on the ServiceBrowser's own thread, so blocking on
    get_service_info here only delays this one subscription.
    """

    def __init__(self, stream: BrowseStream, resolve: bool, resolve_timeout: float):
        self._stream = stream
        self._resolve_instances = resolve
        self._timeout_ms = int(resolve_timeout * 1000)

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self._stream.put(ServiceFound(type_, name))
        self._resolve(zc, type_, name)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self._resolve(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self._stream.put(ServiceRemoved(type_, name))

    def _resolve(self, zc: Zeroconf, type_: str, name: str) -> None:
        if not self._resolve_instances:
            return
        info = zc.get_service_info(type_, name, timeout=self._timeout_ms)
        if info is None:
            logger.debug("Could not resolve %s within %d ms", name, self._timeout_ms)
            return
        self._stream.put(resolved_from_info(type_, info))


class ZeroconfBrowser:
    """Owns a Zeroconf instance and the ServiceBrowsers created from it."""

    def __init__(
        self,
        interfaces: Optional[list[str]] = None,
        ip_version: str = "all",
        resolve_timeout: float = 3.0,
    ):
        if ip_version not in _IP_VERSIONS:
            raise DiscoveryInitError(
                f"Unknown ip_version {ip_version!r} (expected one of: {', '.join(_IP_VERSIONS)})"
            )
        self._resolve_timeout = resolve_timeout
        self._lock = threading.Lock()
        self._subscriptions: list[tuple[ServiceBrowser, BrowseStream]] = []
        self._closed = False
        try:
            self._zc = Zeroconf(
                interfaces=list(interfaces) if interfaces else InterfaceChoice.All,
                ip_version=_IP_VERSIONS[ip_version],
            )
        except (OSError, ZeroconfError) as exc:
            raise DiscoveryInitError(f"Failed to create mDNS daemon: {exc}") from exc

    def browse(self, service_type: str) -> BrowseStream:
        """Subscribe to *service_type* and return its event stream."""
        stream = BrowseStream(service_type)
        listener = _StreamListener(
            stream,
            resolve=service_type != META_SERVICE_TYPE,
            resolve_timeout=self._resolve_timeout,
        )
        with self._lock:
            if self._closed:
                raise BrowseError(f"Cannot browse {service_type}: browser is closed")
            try:
                browser = ServiceBrowser(self._zc, service_type, listener=listener)
            except (ZeroconfError, OSError, RuntimeError) as exc:
                raise BrowseError(f"Failed to browse {service_type}: {exc}") from exc
            self._subscriptions.append((browser, stream))
        return stream

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for browser, stream in subscriptions:
            browser.cancel()
            stream.close()
        self._zc.close()
