"""Install or remove discoveryd as a system service (systemd or launchd)."""

import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, PackageLoader

from .config import DiscoveryConfig, config_to_yaml


SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")
LAUNCHD_DIR = Path("/Library/LaunchDaemons")
CONFIG_DIR = Path("/etc/discoveryd")

Runner = Callable[[list[str]], subprocess.CompletedProcess]


class ServiceInstallError(Exception):
    """Installing or removing the system service failed."""


def _get_template_env() -> Environment:
    return Environment(
        loader=PackageLoader("discoveryd", "templates"),
        keep_trailing_newline=True,
    )


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True)


def _check(runner: Runner, cmd: list[str]) -> None:
    result = runner(cmd)
    if result.returncode != 0:
        raise ServiceInstallError(f"{' '.join(cmd)} failed: {(result.stderr or '').strip()}")


def detect_platform(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return "linux"
    if platform == "darwin":
        return "darwin"
    raise ServiceInstallError(f"Installing as a service is not supported on {platform}")


def _require_root() -> None:
    if os.geteuid() != 0:
        raise ServiceInstallError(
            "Access denied. Please run this command as root (for example with sudo)."
        )


def launchd_label(config: DiscoveryConfig) -> str:
    return f"local.{config.service_name}"


def unit_path(config: DiscoveryConfig, platform: str, unit_dir: Optional[Path] = None) -> Path:
    """Where the unit (Linux) or property list (macOS) for *config* lives."""
    if platform == "darwin":
        return Path(unit_dir or LAUNCHD_DIR) / f"{launchd_label(config)}.plist"
    return Path(unit_dir or SYSTEMD_UNIT_DIR) / f"{config.service_name}.service"


def render_unit(
    config: DiscoveryConfig,
    config_path: Path,
    platform: str,
    python: str = sys.executable,
) -> str:
    """Render the systemd unit or launchd plist that runs the daemon."""
    env = _get_template_env()
    name = "launchd.plist.j2" if platform == "darwin" else "discoveryd.service.j2"
    template = env.get_template(name)
    return template.render(
        config=config,
        label=launchd_label(config),
        python=python,
        config_path=str(config_path),
    )


def install_service(
    config: DiscoveryConfig,
    platform: Optional[str] = None,
    unit_dir: Optional[Path] = None,
    config_dir: Optional[Path] = None,
    runner: Runner = _run,
    require_root: bool = True,
) -> Path:
    """Write the effective config and service unit, then enable and start it.

    Returns the path of the unit file.
    """
    platform = detect_platform(platform)
    if require_root:
        _require_root()

    config_path = Path(config_dir or CONFIG_DIR) / f"{config.service_name}.yaml"
    unit_file = unit_path(config, platform, unit_dir)
    unit_text = render_unit(config, config_path, platform)
    config_text = config_to_yaml(config)

    if (
        unit_file.exists() and unit_file.read_text() == unit_text
        and config_path.exists() and config_path.read_text() == config_text
    ):
        print(f"Service '{config.service_name}' is already installed.", file=sys.stderr)
        return unit_file

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(config_text)
    unit_file.parent.mkdir(parents=True, exist_ok=True)
    unit_file.write_text(unit_text)
    print(f"Wrote {unit_file}", file=sys.stderr)

    if platform == "darwin":
        _check(runner, ["launchctl", "load", "-w", str(unit_file)])
    else:
        _check(runner, ["systemctl", "daemon-reload"])
        _check(runner, ["systemctl", "enable", "--now", config.service_name])

    print(
        f"Service '{config.service_name}' installed and started successfully.",
        file=sys.stderr,
    )
    return unit_file


def uninstall_service(
    config: DiscoveryConfig,
    platform: Optional[str] = None,
    unit_dir: Optional[Path] = None,
    config_dir: Optional[Path] = None,
    runner: Runner = _run,
    require_root: bool = True,
) -> None:
    """Stop and disable the service, then remove its unit and config file."""
    platform = detect_platform(platform)
    if require_root:
        _require_root()

    unit_file = unit_path(config, platform, unit_dir)
    if not unit_file.exists():
        raise ServiceInstallError(
            f"Service '{config.service_name}' is not installed ({unit_file} not found)"
        )

    if platform == "darwin":
        _check(runner, ["launchctl", "unload", "-w", str(unit_file)])
        unit_file.unlink()
    else:
        _check(runner, ["systemctl", "disable", "--now", config.service_name])
        unit_file.unlink()
        _check(runner, ["systemctl", "daemon-reload"])

    config_path = Path(config_dir or CONFIG_DIR) / f"{config.service_name}.yaml"
    config_path.unlink(missing_ok=True)

    print(f"Service '{config.service_name}' uninstalled successfully.", file=sys.stderr)
