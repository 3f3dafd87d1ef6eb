"""Utilities for parsing and formatting command progress output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

__all__ = [
    "ProgressUpdate",
    "ProgressParser",
    "TarListingProgressParser",
    "DnfProgressParser",
    "get_progress_parser",
    "format_progress_message",
]


@dataclass
class ProgressUpdate:
    """Structured representation of an incremental progress update."""

    label: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None
    size_bytes: float | None = None
    total_size_bytes: float | None = None
    speed_bytes_per_sec: float | None = None


class ProgressParser:
    """Base class for command-specific progress parsers."""

    def prepare(self, command: list[str]) -> list[str]:
        """Return ``command`` potentially augmented for progress output."""

        return command

    def parse(self, text: str) -> list[ProgressUpdate] | None:
        """Return progress updates extracted from *text*.

        ``None`` means *text* is ordinary output that should be logged as-is;
        an empty list means the line was consumed without a new update.
        """

        raise NotImplementedError

    def summary(self) -> ProgressUpdate | None:
        """Return a final update once the command has finished, if any."""

        return None


class TarListingProgressParser(ProgressParser):
    """Condense the per-file listing of ``tar -v`` into periodic entry counts.

    Sample rootfs tarballs contain well over a hundred thousand entries, so
    only every ``interval``-th entry produces an update.
    """

    _WARNING_RE = re.compile(r"^(?:/\S*/)?(?:bs)?tar: ")

    def __init__(self, label: str = "Extracting", interval: int = 5000) -> None:
        self.label = label
        self.interval = interval
        self.count = 0

    def parse(self, text: str) -> list[ProgressUpdate] | None:
        stripped = text.strip()
        if not stripped or self._WARNING_RE.match(stripped):
            return None
        self.count += 1
        if self.count % self.interval:
            return []
        return [ProgressUpdate(label=self.label, current=self.count)]

    def summary(self) -> ProgressUpdate:
        return ProgressUpdate(label=f"{self.label} complete", current=self.count)


class DnfProgressParser(ProgressParser):
    """Parse package download and transaction lines emitted by ``dnf``."""

    _DOWNLOAD_RE = re.compile(
        r"^\((?P<current>\d+)/(?P<total>\d+)\):\s+\S+\s+"
        r"(?P<speed>[\d.]+\s*[kMG]?B/s)\s+\|\s+(?P<size>[\d.]+\s*[kMG]?B)"
    )
    _TRANSACTION_RE = re.compile(
        r"^(?P<label>Installing|Upgrading|Verifying|Running scriptlet|Preparing)\s*:"
        r".*?\s(?P<current>\d+)/(?P<total>\d+)$"
    )

    def parse(self, text: str) -> list[ProgressUpdate] | None:
        stripped = text.strip()
        match = self._DOWNLOAD_RE.match(stripped)
        if match:
            current = _parse_int(match.group("current"))
            total = _parse_int(match.group("total"))
            return [
                ProgressUpdate(
                    label="Downloading packages",
                    percent=current / total * 100 if total else None,
                    current=current,
                    total=total,
                    size_bytes=_parse_size(match.group("size")),
                    speed_bytes_per_sec=_parse_rate(match.group("speed")),
                )
            ]
        match = self._TRANSACTION_RE.match(stripped)
        if match:
            current = _parse_int(match.group("current"))
            total = _parse_int(match.group("total"))
            return [
                ProgressUpdate(
                    label=match.group("label"),
                    percent=current / total * 100 if total else None,
                    current=current,
                    total=total,
                )
            ]
        return None


def get_progress_parser(command: Sequence[str]) -> tuple[ProgressParser | None, list[str]]:
    """Return a parser suitable for *command* alongside the prepared command."""

    if not command:
        return None, list(command)

    program = Path(command[0]).name
    if program == "tar" and _looks_like_verbose_extraction(command[1:]):
        return TarListingProgressParser(), list(command)
    if program == "dnf":
        return DnfProgressParser(), list(command)
    return None, list(command)


def format_progress_message(update: ProgressUpdate) -> str:
    """Return a human-readable string representing *update*."""

    parts: list[str] = [update.label]
    if update.percent is not None:
        parts.append(f"{update.percent:.0f}%")
    if update.current is not None:
        if update.total is not None:
            parts.append(f"({update.current}/{update.total})")
        else:
            parts.append(f"({update.current})")
    if update.size_bytes is not None:
        size_text = _format_bytes(update.size_bytes)
        if update.total_size_bytes is not None:
            total_text = _format_bytes(update.total_size_bytes)
            parts.append(f"{size_text} / {total_text}")
        else:
            parts.append(size_text)
    if update.speed_bytes_per_sec is not None:
        parts.append(f"@ {_format_bytes(update.speed_bytes_per_sec)}/s")
    return " ".join(part for part in parts if part)


def _looks_like_verbose_extraction(arguments: Sequence[str]) -> bool:
    for arg in arguments:
        if arg.startswith("-") and not arg.startswith("--") and "x" in arg and "v" in arg:
            return True
    return "--extract" in arguments and "--verbose" in arguments


def _parse_int(value: str) -> int:
    return int(value.replace(",", ""))


_SIZE_RE = re.compile(r"^(?P<number>[\d.,]+)\s*(?P<unit>[A-Za-z/]+)$")


def _parse_size(value: str) -> float | None:
    match = _SIZE_RE.match(value.strip())
    if not match:
        return None
    number_text = match.group("number").replace(",", "")
    try:
        number = float(number_text)
    except ValueError:
        return None
    unit = match.group("unit")
    if unit.endswith("/s"):
        unit = unit[:-2]
    unit_multipliers = {
        "B": 1,
        "kB": 1000,
        "KB": 1000,
        "MB": 1000**2,
        "GB": 1000**3,
        "TB": 1000**4,
        "KiB": 1024,
        "MiB": 1024**2,
        "GiB": 1024**3,
        "TiB": 1024**4,
    }
    multiplier = unit_multipliers.get(unit)
    if multiplier is None:
        return None
    return number * multiplier


def _parse_rate(value: str) -> float | None:
    cleaned = value.strip()
    if cleaned.endswith("/s"):
        cleaned = cleaned[:-2].strip()
    return _parse_size(cleaned)


def _format_bytes(value: float) -> str:
    units = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    abs_value = abs(value)
    unit_index = 0
    while abs_value >= 1024 and unit_index < len(units) - 1:
        abs_value /= 1024
        value /= 1024
        unit_index += 1
    if abs_value >= 10 or unit_index == 0:
        formatted = f"{value:.0f}"
    else:
        formatted = f"{value:.1f}"
    return f"{formatted} {units[unit_index]}"
