"""Events yielded by a browse stream."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ServiceFound:
    """A name was seen under *service_type*.

    When browsing the meta-type, *fullname* is itself a service type.
    """
    service_type: str
    fullname: str


@dataclass(frozen=True)
class ServiceResolved:
    """Connection details for an instance are now known."""
    service_type: str
    fullname: str
    hostname: str
    port: int
    addresses: tuple[str, ...] = ()
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceRemoved:
    """An instance is no longer advertised."""
    service_type: str
    fullname: str


@dataclass(frozen=True)
class SearchStopped:
    service_type: str


DiscoveryEvent = ServiceFound | ServiceResolved | ServiceRemoved | SearchStopped
