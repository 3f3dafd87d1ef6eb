#!/usr/bin/env python3
"""Install the Jetson performance boot service into an L4T root filesystem.

The service runs :mod:`power_modes` once per boot on the Orin Nano: it picks
the ``nvpmodel`` mode with the highest wattage (15 W / "Super" on Orin Nano
with JetPack 6) and pins the clocks with ``jetson_clocks``.

The full pipeline in ``l4t_flash.py`` calls :func:`install_boot_service`
after preparing the rootfs; running this module directly re-injects the
service into an already prepared tree.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from textwrap import dedent

import power_modes

SERVICE_NAME = "jetson-super-setup.service"
HELPER_PATH = "usr/local/sbin/jetson-super-setup"
UNIT_DIR = "etc/systemd/system"
WANTS_DIR = f"{UNIT_DIR}/multi-user.target.wants"

UNIT_TEMPLATE = """
[Unit]
Description=Enable Jetson Super (highest nvpmodel + performance tuning) at boot
Wants=network-online.target
After=network-online.target

[Service]
Type=oneshot
ExecStart=/{helper}

[Install]
WantedBy=multi-user.target
"""

LOG = logging.getLogger("l4t_flash.boot_service")


@dataclass(frozen=True)
class InstalledService:
    """Locations written into the rootfs by :func:`install_boot_service`."""

    helper: Path
    unit: Path
    wants_link: Path


def render_helper_script() -> str:
    """Return the source of the on-device helper script."""

    return Path(power_modes.__file__).read_text()


def render_unit() -> str:
    return dedent(UNIT_TEMPLATE).lstrip("\n").format(helper=HELPER_PATH)


def install_boot_service(rootfs_dir: Path) -> InstalledService:
    """Write the helper, its unit file and the multi-user wants link under *rootfs_dir*."""

    if not rootfs_dir.is_dir():
        raise FileNotFoundError(f"Root filesystem not found at {rootfs_dir}")

    helper = rootfs_dir / HELPER_PATH
    helper.parent.mkdir(parents=True, exist_ok=True)
    helper.write_text(render_helper_script())
    helper.chmod(0o755)
    LOG.info("Wrote %s", helper.relative_to(rootfs_dir))

    unit = rootfs_dir / UNIT_DIR / SERVICE_NAME
    unit.parent.mkdir(parents=True, exist_ok=True)
    unit.write_text(render_unit())
    LOG.info("Wrote %s", unit.relative_to(rootfs_dir))

    wants_link = rootfs_dir / WANTS_DIR / SERVICE_NAME
    wants_link.parent.mkdir(parents=True, exist_ok=True)
    if wants_link.is_symlink() or wants_link.exists():
        wants_link.unlink()
    # Absolute target: resolved inside the rootfs once booted on the device.
    os.symlink(f"/{UNIT_DIR}/{SERVICE_NAME}", wants_link)
    LOG.info("Enabled %s for multi-user.target", SERVICE_NAME)

    return InstalledService(helper=helper, unit=unit, wants_link=wants_link)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Install the highest-nvpmodel + jetson_clocks boot service into an L4T rootfs"
    )
    parser.add_argument(
        "rootfs",
        nargs="?",
        default="Linux_for_Tegra/rootfs",
        help="Path to the root filesystem tree (default: %(default)s).",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        install_boot_service(Path(args.rootfs))
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
