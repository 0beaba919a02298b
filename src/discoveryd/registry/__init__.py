"""
In-process Service Registry

This package provides:
1. ServiceRecord: immutable description of one discovered instance
2. InMemoryRegistry: lock-guarded registry written by the discovery engine
3. ServiceRegistryClient: HTTP client for querying a running daemon
4. start_registry_server: launches an HTTP query API in a daemon thread
"""

from .service_registry import (
    InMemoryRegistry,
    ServiceRecord,
    ServiceRegistryClient,
    start_registry_server,
)

__all__ = [
    'InMemoryRegistry',
    'ServiceRecord',
    'ServiceRegistryClient',
    'start_registry_server',
]
