#!/usr/bin/env python3
"""
In-process Service Registry

This module provides:
- ServiceRecord: an immutable description of one discovered service instance
- InMemoryRegistry: a lock-guarded registry written by the discovery watchers
- start_registry_server: launches a ThreadingHTTPServer in a daemon thread
- ServiceRegistryClient: thin HTTP client matching the query API shape
"""

import json
import threading
import types
import urllib.parse
import urllib.request
import urllib.error
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Mapping, Optional, Any
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ServiceRecord:
    """One resolved service instance, keyed by fullname."""
    service_type: str
    fullname: str
    hostname: str
    port: int
    addresses: tuple[str, ...] = ()
    attributes: Mapping[str, str] = field(default_factory=dict)
    last_seen: int = 0

    def __post_init__(self):
        # Read-only view over a private copy, so readers cannot edit stored records
        object.__setattr__(self, 'attributes', types.MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, 'addresses', tuple(self.addresses))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return {
            'service_type': self.service_type,
            'fullname': self.fullname,
            'hostname': self.hostname,
            'port': self.port,
            'addresses': list(self.addresses),
            'attributes': dict(self.attributes),
            'last_seen': self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceRecord':
        """Create from dictionary."""
        return cls(
            service_type=data['service_type'],
            fullname=data['fullname'],
            hostname=data['hostname'],
            port=int(data['port']),
            addresses=tuple(data.get('addresses', ())),
            attributes=dict(data.get('attributes', {})),
            last_seen=int(data['last_seen']),
        )


# ---------------------------------------------------------------------------
# In-memory registry (shared by the watcher threads and the HTTP handlers)
# ---------------------------------------------------------------------------

class InMemoryRegistry:
    """Thread-safe, dict-backed registry of discovered services.

    Records are never mutated in place; an upsert swaps in a whole new
    record, so readers only ever see complete records.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._services: Dict[str, ServiceRecord] = {}

    def upsert(self, record: ServiceRecord) -> None:
        with self._lock:
            self._services[record.fullname] = record

    def remove(self, fullname: str) -> None:
        with self._lock:
            self._services.pop(fullname, None)

    def snapshot(self) -> List[ServiceRecord]:
        with self._lock:
            return list(self._services.values())

    def get_all_services(self) -> List[ServiceRecord]:
        """Every known record, in no particular order."""
        return self.snapshot()

    def get_service(self, fullname: str) -> Optional[ServiceRecord]:
        with self._lock:
            return self._services.get(fullname)

    def list_services(self, service_type: Optional[str] = None) -> List[ServiceRecord]:
        services = self.snapshot()
        if service_type:
            services = [s for s in services if s.service_type == service_type]
        return services

    def get_service_count(self, service_type: Optional[str] = None) -> int:
        if service_type:
            return len(self.list_services(service_type=service_type))
        with self._lock:
            return len(self._services)

    def list_service_types(self) -> List[str]:
        return sorted({s.service_type for s in self.snapshot()})


# ---------------------------------------------------------------------------
# HTTP handler (read-only query API)
# ---------------------------------------------------------------------------

def _make_handler(registry: InMemoryRegistry):
    """Create a handler class bound to the given registry instance."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            # Silence default stderr logging
            pass

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path.rstrip("/")
            qs = urllib.parse.parse_qs(parsed.query)

            if path == "":
                services = registry.get_all_services()
                self._json_response([s.to_dict() for s in services])

            elif path == "/services":
                stype = qs.get("type", [None])[0]
                services = registry.list_services(service_type=stype)
                self._json_response([s.to_dict() for s in services])

            elif path == "/services/count":
                stype = qs.get("type", [None])[0]
                count = registry.get_service_count(service_type=stype)
                self._json_response({"count": count})

            elif path == "/services/types":
                self._json_response(registry.list_service_types())

            elif path.startswith("/services/"):
                fullname = urllib.parse.unquote(path[len("/services/"):])
                record = registry.get_service(fullname)
                if record:
                    self._json_response(record.to_dict())
                else:
                    self._json_response({"error": "not found"}, status=404)

            elif path == "/health":
                self._json_response({
                    "status": "ok",
                    "services": registry.get_service_count(),
                })

            else:
                self._json_response({"error": "not found"}, status=404)

    return RegistryHTTPHandler


def start_registry_server(
    registry: InMemoryRegistry,
    host: str = "0.0.0.0",
    port: int = 5380,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(registry)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


# ---------------------------------------------------------------------------
# HTTP client (used by external callers to query a running daemon)
# ---------------------------------------------------------------------------

class ServiceRegistryClient:
    """Thin HTTP client that queries the registry HTTP API."""

    def __init__(self, host: str = "localhost", port: int = 5380):
        self._base = f"http://{host}:{port}"
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _get(self, path: str) -> Any:
        url = f"{self._base}{path}"
        with self._opener.open(url, timeout=10) as resp:
            return json.loads(resp.read().decode())

    def get_service(self, fullname: str) -> Optional[ServiceRecord]:
        quoted = urllib.parse.quote(fullname, safe="")
        try:
            data = self._get(f"/services/{quoted}")
            if "error" in data:
                return None
            return ServiceRecord.from_dict(data)
        except (urllib.error.URLError, OSError):
            return None

    def list_services(self, service_type: Optional[str] = None) -> List[ServiceRecord]:
        params = {}
        if service_type:
            params["type"] = service_type
        qs = urllib.parse.urlencode(params)
        path = f"/services?{qs}" if qs else "/services"
        try:
            data = self._get(path)
            return [ServiceRecord.from_dict(d) for d in data]
        except (urllib.error.URLError, OSError):
            return []

    def list_service_types(self) -> List[str]:
        try:
            return list(self._get("/services/types"))
        except (urllib.error.URLError, OSError):
            return []

    def get_service_count(self, service_type: Optional[str] = None) -> int:
        params = {}
        if service_type:
            params["type"] = service_type
        qs = urllib.parse.urlencode(params)
        path = f"/services/count?{qs}" if qs else "/services/count"
        try:
            data = self._get(path)
            return data.get("count", 0)
        except (urllib.error.URLError, OSError):
            return 0
