"""Shared helpers for ensuring host tooling is available.

The flashing workflow targets a Fedora host.  Missing commands are installed
on demand through ``dnf`` using the package mappings below; hosts without
``dnf`` get an actionable error message instead.  These helpers also pick the
container runtime used when ``apply_binaries.sh`` cannot run natively.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Iterable, Mapping, Sequence

LOG = logging.getLogger("l4t_flash.bootstrap")

_bootstrap_enabled = True

DNF_PACKAGE_MAP: dict[str, Sequence[str]] = {
    "tar": ["tar"],
    "bzip2": ["bzip2"],
    "lbzip2": ["lbzip2"],
    "dpkg-deb": ["dpkg"],
    "exportfs": ["nfs-utils"],
    "systemctl": ["systemd"],
    "podman": ["podman"],
}

DEPENDENCY_HINTS: dict[str, str] = {
    command: f"sudo dnf install {' '.join(packages)}" for command, packages in DNF_PACKAGE_MAP.items()
}
DEPENDENCY_HINTS["dnf"] = "run this tool on a Fedora host"

DEVELOPMENT_GROUP = "Development Tools"
VIRTUALIZATION_GROUP = "virtualization"

FLASHING_PACKAGES = [
    "qemu",
    "qemu-user",
    "qemu-user-static",
    "qemu-user-binfmt",
    "abootimg",
    "dtc",
    "dosfstools",
    "lbzip2",
    "libxml2",
    "nfs-utils",
    "libnfsidmap",
    "sssd-nfs-idmap",
    "python3-yaml",
    "sshpass",
    "udev",
    "util-linux",
    "whois",
    "openssl",
    "cpio",
    "lz4",
    "bzip2",
    "xz",
    "unzip",
    "parted",
    "gdisk",
    "pv",
    "dpkg",
]

CONTAINER_RUNTIMES = ["podman", "docker"]


class MissingToolError(RuntimeError):
    """Raised when a required host command cannot be found or installed."""


def set_bootstrap_enabled(enabled: bool) -> None:
    """Globally enable or disable automatic dependency installation."""

    global _bootstrap_enabled
    _bootstrap_enabled = enabled


def ensure_commands(
    commands: Iterable[str],
    *,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Ensure all *commands* are available, attempting installation if allowed.

    Returns a list of commands that remain missing after any attempted
    bootstrapping efforts.
    """

    logger = logger or LOG
    commands = list(dict.fromkeys(commands))
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if not missing:
        return []

    if not _bootstrap_enabled:
        return missing

    if not shutil.which("dnf"):
        logger.debug("dnf not found; cannot install missing commands automatically.")
        return missing

    packages = _collect_packages(missing)
    if not packages:
        logger.debug("No package mapping available for missing commands: %s", ", ".join(missing))
        return missing

    try:
        install_packages(packages, logger=logger)
    except PermissionError:
        logger.warning(
            "Automatic installation skipped because elevated privileges are required and sudo is unavailable."
        )
        return missing
    except subprocess.CalledProcessError as exc:
        logger.warning("Automatic installation via dnf failed with exit code %s.", exc.returncode)

    return [cmd for cmd in commands if shutil.which(cmd) is None]


def ensure_tool(
    command: str,
    *,
    hints: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Ensure a single *command* exists or raise :class:`MissingToolError`."""

    ensure_tools([command], hints=hints, logger=logger)


def ensure_tools(
    commands: Iterable[str],
    *,
    hints: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Ensure every command in *commands* exists or raise :class:`MissingToolError`."""

    hints = DEPENDENCY_HINTS if hints is None else hints
    remaining = ensure_commands(commands, logger=logger)
    if not remaining:
        return

    lines = []
    for command in remaining:
        hint = hints.get(command)
        if hint:
            lines.append(f"Required command '{command}' is not available. Install it and re-run, e.g.: {hint}")
        else:
            lines.append(f"Required command '{command}' is not available. Install it and re-run.")
    raise MissingToolError("\n".join(lines))


def pick_container_runtime() -> str | None:
    """Return the first available container runtime, preferring podman."""

    for runtime in CONTAINER_RUNTIMES:
        if shutil.which(runtime):
            return runtime
    return None


def install_packages(packages: Sequence[str], *, logger: logging.Logger | None = None) -> None:
    """Install *packages* with ``dnf install -y``."""

    logger = logger or LOG
    logger.info("Installing packages via dnf: %s", ", ".join(packages))
    _run(_privilege_prefix() + ["dnf", "install", "-y", *packages], logger)


def _collect_packages(commands: Sequence[str]) -> list[str]:
    packages: set[str] = set()
    for command in commands:
        for package in DNF_PACKAGE_MAP.get(command, []):
            packages.add(package)
    return sorted(packages)


def _privilege_prefix() -> list[str]:
    if os.geteuid() == 0:
        return []
    sudo = shutil.which("sudo")
    if not sudo:
        raise PermissionError
    return [sudo]


def _run(command: Sequence[str], logger: logging.Logger) -> None:
    logger.info("$ %s", " ".join(str(part) for part in command))
    subprocess.run(command, check=True)
