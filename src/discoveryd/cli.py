"""CLI entry point for discoveryd."""

import argparse
import functools
import json
import logging
import signal
import sys
import threading

from .browser import DiscoveryInitError, ZeroconfBrowser
from .config import (
    DiscoveryConfig,
    ConfigError,
    IP_VERSIONS,
    LOG_LEVELS,
    load_config,
    merge_cli_args,
)
from .engine import DiscoveryEngine
from .registry import InMemoryRegistry, ServiceRegistryClient, start_registry_server
from .service_mgmt import (
    ServiceInstallError,
    install_service,
    render_unit,
    uninstall_service,
    unit_path,
    detect_platform,
    CONFIG_DIR,
)

logger = logging.getLogger(__name__)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by run, install and uninstall."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Bind address for the HTTP API (default: 0.0.0.0)")
    parser.add_argument("-p", "--port", type=int, help="Port for the HTTP API (default: 5380)")
    parser.add_argument(
        "--interface", action="append", dest="interfaces", metavar="ADDR",
        help="Interface address to use for mDNS; repeat for several (default: all)",
    )
    parser.add_argument(
        "--ip-version", choices=IP_VERSIONS, dest="ip_version",
        help="IP family for mDNS (default: all)",
    )
    parser.add_argument(
        "--resolve-timeout", type=float, dest="resolve_timeout",
        help="Seconds to wait for an instance to resolve (default: 3.0)",
    )
    parser.add_argument(
        "--log-level", type=str.upper, choices=LOG_LEVELS, dest="log_level",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--service-name", type=str, dest="service_name",
        help="systemd unit / launchd label name (default: discoveryd)",
    )


def _build_config(args) -> DiscoveryConfig:
    """Build a DiscoveryConfig from a config file + CLI overrides."""
    try:
        if args.config:
            config = load_config(args.config)
        else:
            config = DiscoveryConfig()
        return merge_cli_args(config, args)
    except (OSError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if level != "DEBUG":
        logging.getLogger("zeroconf").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# discoveryd run
# ---------------------------------------------------------------------------

def cmd_run(args) -> None:
    """Start discovery and the HTTP query API, then block until signalled."""
    config = _build_config(args)
    _setup_logging(config.log_level)

    registry = InMemoryRegistry()
    engine = DiscoveryEngine(
        browser_factory=functools.partial(
            ZeroconfBrowser,
            interfaces=config.interfaces,
            ip_version=config.ip_version,
            resolve_timeout=config.resolve_timeout,
        ),
    )
    try:
        engine.start(registry)
    except DiscoveryInitError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        server = start_registry_server(registry, host=config.host, port=config.port)
    except OSError as exc:
        engine.stop()
        print(f"Error: cannot listen on {config.host}:{config.port}: {exc}", file=sys.stderr)
        sys.exit(1)
    logger.info("HTTP Server listening on http://%s:%d", config.host, config.port)

    stop = threading.Event()

    def _on_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        stop.wait()
    finally:
        server.shutdown()
        server.server_close()
        engine.stop()


# ---------------------------------------------------------------------------
# discoveryd install / uninstall
# ---------------------------------------------------------------------------

def cmd_install(args) -> None:
    config = _build_config(args)
    try:
        if args.dry_run:
            platform = detect_platform()
            config_path = CONFIG_DIR / f"{config.service_name}.yaml"
            print(f"# {unit_path(config, platform)}")
            print(render_unit(config, config_path, platform), end="")
            return
        install_service(config)
    except ServiceInstallError as exc:
        print(f"Error: Failed to install service: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_uninstall(args) -> None:
    config = _build_config(args)
    try:
        uninstall_service(config)
    except ServiceInstallError as exc:
        print(f"Error: Failed to uninstall service: {exc}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# discoveryd services subcommand
# ---------------------------------------------------------------------------

def _format_record(s) -> str:
    addresses = ",".join(s.addresses) or "-"
    return f"{s.fullname}  {s.hostname}:{s.port}  {addresses}  last_seen={s.last_seen}"


def _format_services(services, fmt: str) -> str:
    """Format a list of ServiceRecord objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in services], indent=2)
    lines = [_format_record(s) for s in sorted(services, key=lambda s: s.fullname)]
    return "\n".join(lines) if lines else "(no services)"


def _client(args) -> ServiceRegistryClient:
    return ServiceRegistryClient(host=args.registry_host, port=args.registry_port)


def cmd_services_list(args) -> None:
    services = _client(args).list_services(service_type=args.type)
    print(_format_services(services, args.format))


def cmd_services_get(args) -> None:
    record = _client(args).get_service(args.fullname)
    if record is None:
        print(f"Service '{args.fullname}' not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(record.to_dict(), indent=2))
    else:
        print(_format_record(record))
        for key, value in sorted(record.attributes.items()):
            print(f"  {key}={value}")


def cmd_services_count(args) -> None:
    print(_client(args).get_service_count(service_type=args.type))


def cmd_services_types(args) -> None:
    types = _client(args).list_service_types()
    if args.format == "json":
        print(json.dumps(types, indent=2))
    else:
        print("\n".join(types) if types else "(no service types)")


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host and --registry-port to a services sub-parser."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the running discoveryd (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=5380,
        help="Port of the discoveryd HTTP API (default: 5380)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="discoveryd",
        description="discoveryd: republish mDNS / DNS-SD services over HTTP",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser(
        "run", help="Start discovery and the HTTP server (default)",
    )
    _add_common_args(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # install
    install_parser = subparsers.add_parser("install", help="Install as a system service")
    _add_common_args(install_parser)
    install_parser.add_argument(
        "--dry-run", action="store_true", dest="dry_run",
        help="Print the service unit without installing it",
    )
    install_parser.set_defaults(func=cmd_install)

    # uninstall
    uninstall_parser = subparsers.add_parser("uninstall", help="Uninstall the system service")
    _add_common_args(uninstall_parser)
    uninstall_parser.set_defaults(func=cmd_uninstall)

    # services
    services_parser = subparsers.add_parser(
        "services", help="Query a running discoveryd",
    )
    services_sub = services_parser.add_subparsers(dest="services_command")

    def _services_help(args) -> None:
        services_parser.print_help()
        sys.exit(1)

    services_parser.set_defaults(func=_services_help)

    svc_list = services_sub.add_parser("list", help="List discovered services")
    _add_registry_args(svc_list)
    svc_list.add_argument("--type", type=str, default=None, help="Filter by service type")
    svc_list.set_defaults(func=cmd_services_list)

    svc_get = services_sub.add_parser("get", help="Get a single service by full name")
    _add_registry_args(svc_get)
    svc_get.add_argument("fullname", type=str, help="Fully-qualified instance name")
    svc_get.set_defaults(func=cmd_services_get)

    svc_count = services_sub.add_parser("count", help="Count discovered services")
    _add_registry_args(svc_count)
    svc_count.add_argument("--type", type=str, default=None, help="Filter by service type")
    svc_count.set_defaults(func=cmd_services_count)

    svc_types = services_sub.add_parser("types", help="List service types with live instances")
    _add_registry_args(svc_types)
    svc_types.set_defaults(func=cmd_services_types)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    # No subcommand means "run", with any flags passed through to it
    if not argv or (argv[0].startswith("-") and argv[0] not in ("-h", "--help")):
        argv = ["run", *argv]

    return build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    args.func(args)
