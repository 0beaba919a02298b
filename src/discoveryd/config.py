"""Configuration loading and merging for discoveryd."""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


DEFAULT_PORT = 5380
IP_VERSIONS = ("all", "v4", "v6")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class DiscoveryConfig:
    # HTTP query API bind address
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    # mDNS: interface addresses to join (empty means all) and IP family
    interfaces: list[str] = field(default_factory=list)
    ip_version: str = "all"

    # Seconds to wait for an instance to resolve before dropping the event
    resolve_timeout: float = 3.0

    log_level: str = "INFO"

    # Name of the systemd unit / launchd label used by install and uninstall
    service_name: str = "discoveryd"


class ConfigError(ValueError):
    """Raised when a config file or override holds an invalid value."""


def validate_config(config: DiscoveryConfig) -> DiscoveryConfig:
    """Normalise and check a config in place; return it for chaining."""
    try:
        config.ip_version = str(config.ip_version).lower()
        config.log_level = str(config.log_level).upper()
        config.port = int(config.port)
        config.resolve_timeout = float(config.resolve_timeout)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config value: {exc}") from exc

    if config.ip_version not in IP_VERSIONS:
        raise ConfigError(
            f"ip_version must be one of {', '.join(IP_VERSIONS)}, got {config.ip_version!r}"
        )
    if config.log_level not in LOG_LEVELS:
        raise ConfigError(
            f"log_level must be one of {', '.join(LOG_LEVELS)}, got {config.log_level!r}"
        )
    if not 0 <= config.port <= 65535:
        raise ConfigError(f"port must be between 0 and 65535, got {config.port}")
    if config.resolve_timeout <= 0:
        raise ConfigError(f"resolve_timeout must be positive, got {config.resolve_timeout}")
    return config


def load_config(path: str | Path) -> DiscoveryConfig:
    """Load a DiscoveryConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    # Ignore keys that are not DiscoveryConfig fields
    valid_fields = {f.name for f in fields(DiscoveryConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    if isinstance(filtered.get("interfaces"), str):
        filtered["interfaces"] = [filtered["interfaces"]]

    return validate_config(DiscoveryConfig(**filtered))


def merge_cli_args(config: DiscoveryConfig, args) -> DiscoveryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(DiscoveryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return validate_config(config)


def config_to_yaml(config: DiscoveryConfig) -> str:
    """Serialize a DiscoveryConfig to YAML."""
    data: dict = {
        "host": config.host,
        "port": config.port,
    }
    if config.interfaces:
        data["interfaces"] = list(config.interfaces)
    data["ip_version"] = config.ip_version
    data["resolve_timeout"] = config.resolve_timeout
    data["log_level"] = config.log_level
    data["service_name"] = config.service_name

    return yaml.dump(data, default_flow_style=False, sort_keys=False)
