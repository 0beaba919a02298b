"""
Discovery engine

A TypeWatcher follows the DNS-SD meta-type browse and starts one
InstanceWatcher per newly seen service type. Every InstanceWatcher writes
resolutions and removals for its type straight into the shared registry.

Each watcher runs on its own daemon thread and blocks on its browse
stream; threads are never joined and exit when their stream is closed.

The browser passed in (or built by *browser_factory*) must provide
``browse(service_type)`` returning an iterable of discovery events and
raising BrowseError on failure, plus ``close()`` which ends every stream.
"""

import logging
import threading
import time
from typing import Callable, Iterable, Optional

from .browser import (
    META_SERVICE_TYPE,
    BrowseError,
    DiscoveryInitError,
    ZeroconfBrowser,
)
from .events import DiscoveryEvent, ServiceFound, ServiceRemoved, ServiceResolved
from .registry import InMemoryRegistry, ServiceRecord

logger = logging.getLogger(__name__)


class InstanceWatcher:
    """Translates one service type's browse stream into registry writes."""

    def __init__(
        self,
        service_type: str,
        stream: Iterable[DiscoveryEvent],
        registry: InMemoryRegistry,
        clock: Callable[[], float] = time.time,
    ):
        self.service_type = service_type
        self._stream = stream
        self._registry = registry
        self._clock = clock
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.thread = threading.Thread(
            target=self.run, name=f"watch:{self.service_type}", daemon=True,
        )
        self.thread.start()

    def run(self) -> None:
        for event in self._stream:
            if isinstance(event, ServiceResolved):
                self._on_resolved(event)
            elif isinstance(event, ServiceRemoved):
                logger.info("Service removed: %s (%s)", event.fullname, event.service_type)
                self._registry.remove(event.fullname)
            else:
                logger.debug("Ignoring %r on %s", event, self.service_type)
        logger.debug("Browse stream for %s closed", self.service_type)

    def _on_resolved(self, event: ServiceResolved) -> None:
        logger.info("Resolved service: %s", event.fullname)
        record = ServiceRecord(
            service_type=self.service_type,
            fullname=event.fullname,
            hostname=event.hostname,
            port=event.port,
            addresses=tuple(event.addresses),
            attributes=dict(event.attributes),
            last_seen=int(self._clock()),
        )
        self._registry.upsert(record)


class TypeWatcher:
    """Follows the meta-type stream and fans out InstanceWatchers."""

    def __init__(
        self,
        browser,
        stream: Iterable[DiscoveryEvent],
        registry: InMemoryRegistry,
        clock: Callable[[], float] = time.time,
    ):
        self._browser = browser
        self._stream = stream
        self._registry = registry
        self._clock = clock
        # Only mutated from the watcher's own thread; the lock covers readers.
        self._known_lock = threading.Lock()
        self._known: set[str] = set()
        self.watchers: dict[str, InstanceWatcher] = {}
        self.thread: Optional[threading.Thread] = None

    @property
    def known_types(self) -> list[str]:
        with self._known_lock:
            return sorted(self._known)

    def start(self) -> None:
        self.thread = threading.Thread(target=self.run, name="watch-types", daemon=True)
        self.thread.start()

    def run(self) -> None:
        logger.info("Starting mDNS discovery loop...")
        for event in self._stream:
            if isinstance(event, ServiceFound):
                logger.info(
                    "Found service type candidate: %s (type: %s)",
                    event.fullname, event.service_type,
                )
                self._on_type_found(event.fullname)
        logger.info("Service type browse stream closed")

    def _on_type_found(self, candidate: str) -> None:
        with self._known_lock:
            if candidate in self._known:
                return
            self._known.add(candidate)

        logger.info("Browsing for instances of type: %s", candidate)
        try:
            stream = self._browser.browse(candidate)
        except BrowseError as exc:
            # Stays in the known set; not retried.
            logger.warning("Not watching %s: %s", candidate, exc)
            return
        except Exception:
            logger.exception("Unexpected error browsing %s; not watching it", candidate)
            return

        watcher = InstanceWatcher(candidate, stream, self._registry, clock=self._clock)
        self.watchers[candidate] = watcher
        watcher.start()


class DiscoveryEngine:
    """Entry point for running discovery against a registry.

    ``start`` performs the fallible setup (creating the mDNS daemon and
    subscribing to the meta-type) on the caller's thread, so those errors
    surface as DiscoveryInitError, and then returns while the watchers run
    in the background.
    """

    def __init__(
        self,
        browser_factory: Optional[Callable[[], object]] = None,
        meta_type: str = META_SERVICE_TYPE,
        clock: Callable[[], float] = time.time,
    ):
        self._browser_factory = browser_factory or ZeroconfBrowser
        self._meta_type = meta_type
        self._clock = clock
        self._browser = None
        self._type_watcher: Optional[TypeWatcher] = None
        self._started = False

    @property
    def type_watcher(self) -> Optional[TypeWatcher]:
        return self._type_watcher

    @property
    def known_types(self) -> list[str]:
        if self._type_watcher is None:
            return []
        return self._type_watcher.known_types

    def start(self, registry: InMemoryRegistry) -> None:
        if self._started:
            raise RuntimeError("Discovery engine already started")
        self._started = True

        browser = self._browser_factory()
        try:
            meta_stream = browser.browse(self._meta_type)
        except BrowseError as exc:
            browser.close()
            raise DiscoveryInitError(f"Failed to browse {self._meta_type}: {exc}") from exc

        self._browser = browser
        self._type_watcher = TypeWatcher(browser, meta_stream, registry, clock=self._clock)
        self._type_watcher.start()

    def stop(self) -> None:
        """Close every browse stream; watcher threads then exit on their own."""
        if self._browser is None:
            return
        browser, self._browser = self._browser, None
        browser.close()
        logger.info("Discovery stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the type watcher and every instance watcher to exit."""
        if self._type_watcher is None:
            return
        if self._type_watcher.thread is not None:
            self._type_watcher.thread.join(timeout)
        for watcher in list(self._type_watcher.watchers.values()):
            if watcher.thread is not None:
                watcher.thread.join(timeout)


def start_discovery(registry: InMemoryRegistry, **kwargs) -> DiscoveryEngine:
    """Create a DiscoveryEngine, start it against *registry* and return it."""
    engine = DiscoveryEngine(**kwargs)
    engine.start(registry)
    return engine
