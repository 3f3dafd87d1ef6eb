#!/usr/bin/env python3
"""Boot-time performance tuning for Jetson Orin Nano.

This module is installed verbatim into the target root filesystem as
``/usr/local/sbin/jetson-super-setup`` and executed once per boot by
``jetson-super-setup.service``.  It queries the available ``nvpmodel`` power
modes, switches to the one with the highest wattage rating and pins the clocks
with ``jetson_clocks``.

It must only depend on the Python standard library because it runs on the
device's stock interpreter.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Sequence

LOG = logging.getLogger("jetson_super_setup")

LOG_PATH = "/var/log/jetson-super-setup.log"

_MODE_HEADER_RE = re.compile(r"^\s*Mode\s+(\d+)")
_MODE_ANYWHERE_RE = re.compile(r"Mode\s+(\d+)")
_WATTAGE_RE = re.compile(r"(\d+)W")

TOOL_PACKAGES: dict[str, list[str]] = {
    "nvpmodel": ["nvidia-l4t-nvpmodel", "nvidia-l4t-nvfancontrol"],
    "jetson_clocks": ["nvidia-l4t-utils"],
}


@dataclass(frozen=True)
class PowerMode:
    """An ``nvpmodel`` mode identifier with its wattage rating, if known."""

    mode_id: int
    watts: int | None = None


def select_highest_mode(query_output: str, verbose_output: str | None = None) -> PowerMode | None:
    """Return the highest-wattage mode listed in *query_output*.

    Wattage figures on a ``Mode <id>`` line belong to that mode; figures on
    the following lines are attributed to the most recent mode header.  Ties
    are resolved in favour of the mode listed last.  When no wattage can be
    parsed the last mode id from *verbose_output* (or *query_output* when no
    verbose listing is supplied) is returned without a rating.
    """

    last_seen_id: int | None = None
    best: PowerMode | None = None
    best_watts = 0

    for line in query_output.splitlines():
        header = _MODE_HEADER_RE.match(line)
        wattage = _WATTAGE_RE.search(line)
        if header:
            last_seen_id = int(header.group(1))
            candidate_id = last_seen_id
        elif last_seen_id is not None:
            candidate_id = last_seen_id
        else:
            continue
        if wattage:
            watts = int(wattage.group(1))
            if watts >= best_watts:
                best_watts = watts
                best = PowerMode(candidate_id, watts)

    if best is not None:
        return best

    fallback_source = verbose_output if verbose_output is not None else query_output
    fallback_id = last_listed_mode(fallback_source)
    if fallback_id is None:
        return None
    return PowerMode(fallback_id)


def last_listed_mode(text: str) -> int | None:
    """Return the id of the last ``Mode <id>`` occurrence in *text*."""

    mode_id: int | None = None
    for line in text.splitlines():
        match = _MODE_ANYWHERE_RE.search(line)
        if match:
            mode_id = int(match.group(1))
    return mode_id


def _run(command: Sequence[str]) -> subprocess.CompletedProcess:
    LOG.info("$ %s", " ".join(command))
    try:
        completed = subprocess.run(
            list(command),
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as exc:
        LOG.warning("Unable to run %s: %s", command[0], exc)
        return subprocess.CompletedProcess(list(command), 127, "")
    for line in (completed.stdout or "").splitlines():
        LOG.info("  %s", line)
    if completed.returncode != 0:
        LOG.warning("%s exited with status %s (ignored)", command[0], completed.returncode)
    return completed


def ensure_device_tools() -> None:
    """Install ``nvpmodel``/``jetson_clocks`` from the L4T apt repository if missing."""

    for tool, packages in TOOL_PACKAGES.items():
        if shutil.which(tool):
            continue
        LOG.info("%s not found; installing %s", tool, ", ".join(packages))
        _run(["apt-get", "update"])
        _run(["apt-get", "install", "-y", *packages])


def query_modes() -> PowerMode | None:
    query = _run(["nvpmodel", "-q"]).stdout or ""
    selected = select_highest_mode(query, verbose_output="")
    if selected is not None:
        return selected
    verbose = _run(["nvpmodel", "-q", "--verbose"]).stdout or ""
    return select_highest_mode(query, verbose_output=verbose)


def apply_performance_profile() -> PowerMode | None:
    ensure_device_tools()

    selected = query_modes()
    if selected is None:
        LOG.warning("Could not determine nvpmodel mode automatically.")
    else:
        rating = f"{selected.watts}W" if selected.watts is not None else "wattage unknown"
        LOG.info("Setting nvpmodel to mode %s (%s)", selected.mode_id, rating)
        _run(["nvpmodel", "-m", str(selected.mode_id)])

    if shutil.which("jetson_clocks"):
        LOG.info("Running jetson_clocks")
        _run(["jetson_clocks"])
    else:
        LOG.warning("jetson_clocks not available; clocks left unpinned")
    return selected


def setup_logging(log_path: str = LOG_PATH) -> None:
    LOG.setLevel(logging.INFO)
    LOG.handlers.clear()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    try:
        handler: logging.Handler = logging.FileHandler(log_path, mode="a")
    except OSError:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    LOG.addHandler(handler)


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    os.environ.setdefault("DEBIAN_FRONTEND", "noninteractive")
    LOG.info("[jetson-super-setup] start")
    apply_performance_profile()
    LOG.info("[jetson-super-setup] done.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
