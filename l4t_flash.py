#!/usr/bin/env python3
"""Prepare and flash Jetson Linux (L4T) to NVMe on a Jetson Orin Nano.

This script runs on a Fedora host and drives NVIDIA's initrd-based external
storage workflow end to end.  The work is split into two stage groups:

* ``-g`` (get) – download the BSP and sample rootfs for ``-v <version>``,
  extract them, apply an optional overlay tarball, install the host packages
  required for flashing, run ``apply_binaries.sh`` (natively, or inside an
  Ubuntu 22.04 container when that fails), make sure kernel modules exist in
  the rootfs and install the ``jetson-super-setup`` boot service.
* ``-f`` (flash) – verify the board is in forced-recovery mode, export the
  rootfs and flashing images over NFS and run ``l4t_initrd_flash.sh`` over the
  ``usb0`` gadget interface.  QSPI boot firmware is updated on-module; no SD
  card is required.

Both groups may be requested in one invocation.  All console output is also
written to ``l4t-flash.log`` inside the working directory.

Example::

    sudo ./l4t_flash.py -g -v 36.4.4
    sudo ./l4t_flash.py -f
"""

from __future__ import annotations

import argparse
import contextlib
import email.utils
import logging
import os
import platform
import re
import shutil
import subprocess
import sys
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from textwrap import dedent
from typing import Callable, Iterator

from boot_service import install_boot_service
from host_bootstrap import (
    DEVELOPMENT_GROUP,
    FLASHING_PACKAGES,
    VIRTUALIZATION_GROUP,
    MissingToolError,
    ensure_tool,
    ensure_tools,
    pick_container_runtime,
    set_bootstrap_enabled,
)
from l4t_release import ReleaseVersion
from progress import ProgressUpdate, format_progress_message, get_progress_parser

__version__ = "1.6.0"

LOG = logging.getLogger("l4t_flash")

L4T_DIR_NAME = "Linux_for_Tegra"
LOG_FILE_NAME = "l4t-flash.log"

MIN_FREE_DISK_BYTES = 20 * 1024 * 1024 * 1024  # 20 GiB

# The devkit box is not labelled "Super"; both ids flash with the base config.
BOARD = "jetson-orin-nano-devkit"
SUPPORTED_BOARD_IDS = ("jetson-orin-nano-devkit", "jetson-orin-nano-devkit-super")
# nvautoflash.sh appends a fixed-width status annotation (" found.") to the id.
BOARD_ID_ANNOTATION_LENGTH = 7

FLASH_INTERFACE = "usb0"
EXTERNAL_DEVICE = "nvme0n1p1"
EXTERNAL_LAYOUT = "tools/kernel_flash/flash_l4t_t234_nvme.xml"
QSPI_LAYOUT = "bootloader/generic/cfg/flash_t234_qspi.xml"
IMAGES_DIR = "tools/kernel_flash/images"

EXPORTS_PATH = Path("/etc/exports")
EXPORT_OPTIONS = "rw,sync,insecure,no_root_squash"

SYSTEMD_UNIT_DIR = Path("/usr/lib/systemd/system")
NFS_SERVER_UNIT = "nfs-server.service"
# NVIDIA's scripts restart the Debian service name.
NFS_KERNEL_SERVER_ALIAS = "nfs-kernel-server.service"

CONTAINER_IMAGE = "ubuntu:22.04"
CONTAINER_SCRIPT = dedent(
    """
    set -e
    export DEBIAN_FRONTEND=noninteractive
    apt update
    apt install -y qemu-user-static binfmt-support bzip2 xz-utils ca-certificates sudo
    update-binfmts --enable qemu-aarch64 || true
    ./apply_binaries.sh
    """
).strip()

KERNEL_PACKAGE_RE = re.compile(r"nvidia-l4t-(kernel(-image|-dtbs)?|initrd).*_arm64\.deb$")

FETCH_TOOLS = ["tar", "bzip2"]
FLASH_TOOLS = ["systemctl", "exportfs"]


class ConfigurationError(ValueError):
    """Raised for invalid or incomplete command-line options."""


class StageError(RuntimeError):
    """Raised when a pipeline stage fails or a precondition is not met."""


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable options for one run, built once from the command line."""

    fetch: bool = False
    flash: bool = False
    force_container: bool = False
    overlay: Path | None = None
    version: ReleaseVersion | None = None
    work_dir: Path = field(default_factory=Path.cwd)
    bootstrap: bool = True

    def __post_init__(self) -> None:
        if not (self.fetch or self.flash):
            raise ConfigurationError("Please specify whether to get (-g) and/or flash (-f) L4T.")
        if self.fetch and self.version is None:
            raise ConfigurationError("No L4T release version supplied (-v), required with -g.")

    @property
    def l4t_dir(self) -> Path:
        return self.work_dir / L4T_DIR_NAME

    @property
    def rootfs_dir(self) -> Path:
        return self.l4t_dir / "rootfs"

    @property
    def images_dir(self) -> Path:
        return self.l4t_dir / IMAGES_DIR


@dataclass(frozen=True)
class StageArtefact:
    """Description of an artefact fetched or produced by a stage."""

    description: str
    estimated_size_mb: int | None = None


@dataclass
class CommandResult:
    """Light-weight wrapper representing the output of ``run_command``."""

    args: list[str]
    returncode: int
    output: str = ""


@dataclass(frozen=True)
class BestEffortOutcome:
    """Result of a command whose failure is logged and deliberately ignored."""

    label: str
    args: list[str]
    returncode: int

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


def format_size(estimated_mb: int | None) -> str:
    """Return a human-readable approximation for *estimated_mb*."""

    if estimated_mb is None:
        return "unknown size"
    if estimated_mb >= 1024:
        gib = estimated_mb / 1024
        return f"~{gib:.1f} GiB ({estimated_mb} MiB)"
    return f"~{estimated_mb} MiB"


def planned_artefacts(config: PipelineConfig) -> list[StageArtefact]:
    artefacts: list[StageArtefact] = []
    if config.fetch and config.version is not None:
        artefacts.extend(
            [
                StageArtefact(f"{config.version.bsp_tarball} (BSP)", 750),
                StageArtefact(f"{config.version.rootfs_tarball} (sample rootfs)", 1800),
                StageArtefact(f"{L4T_DIR_NAME}/ tree with prepared rootfs", 7000),
            ]
        )
    if config.flash:
        artefacts.append(StageArtefact(f"{IMAGES_DIR}/ flashing images", 10000))
    return artefacts


def log_stage_summary(config: PipelineConfig) -> None:
    """Emit a human-readable summary of the stages and artefacts of this run."""

    LOG.info("Planned stages: %s", ", ".join(planned_stages(config)))
    total_mb = 0
    for artefact in planned_artefacts(config):
        LOG.info("  - %s (%s)", artefact.description, format_size(artefact.estimated_size_mb))
        total_mb += artefact.estimated_size_mb or 0
    if total_mb:
        LOG.info("Estimated disk usage: %s", format_size(total_mb))


def setup_logging(log_path: Path) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)

    LOG.setLevel(logging.INFO)
    LOG.handlers.clear()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(log_path, mode="w")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    LOG.addHandler(file_handler)
    LOG.addHandler(console_handler)


def run_command(
    command: list[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    capture_output: bool = False,
) -> CommandResult:
    """Run *command* while mirroring its output to the logger."""

    parser, prepared_command = get_progress_parser(list(command))
    LOG.info("$ %s", " ".join(prepared_command))

    output_lines: list[str] = []

    def emit_line(message: str) -> None:
        LOG.info(message)
        output_lines.append(message + "\n")

    def emit_progress(update: ProgressUpdate) -> None:
        LOG.info(format_progress_message(update))

    def handle_segment(segment: str) -> None:
        updates = parser.parse(segment) if parser else None
        if updates is None:
            # Captured output keeps trailing blanks; callers may slice by width.
            LOG.info(segment.rstrip())
            output_lines.append(segment + "\n")
            return
        output_lines.append(segment + "\n")
        for update in updates:
            emit_progress(update)

    download_returncode = _maybe_run_python_download(
        prepared_command,
        cwd=cwd,
        emit_line=emit_line,
        emit_progress=emit_progress,
        capture_output=capture_output,
    )
    if download_returncode is not None:
        if check and download_returncode != 0:
            raise subprocess.CalledProcessError(
                download_returncode,
                prepared_command,
                output="".join(output_lines),
            )
        return CommandResult(prepared_command, download_returncode, "".join(output_lines))

    if capture_output:
        completed = subprocess.run(
            prepared_command,
            cwd=cwd,
            env=env,
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        for segment in _iter_output_segments(completed.stdout or ""):
            handle_segment(segment)
        returncode = completed.returncode
    else:
        process = subprocess.Popen(
            prepared_command,
            cwd=cwd,
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        assert process.stdout is not None  # For type-checkers.

        for raw_line in process.stdout:
            for segment in _iter_output_segments(raw_line):
                handle_segment(segment)

        process.stdout.close()
        returncode = process.wait()

    summary = parser.summary() if parser else None
    if summary is not None:
        emit_progress(summary)

    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, prepared_command, output="".join(output_lines))

    return CommandResult(prepared_command, returncode, "".join(output_lines))


def run_stage_command(description: str, command: list[str], **kwargs) -> CommandResult:
    """Run *command* and convert a non-zero exit into :class:`StageError`."""

    try:
        return run_command(command, **kwargs)
    except subprocess.CalledProcessError as exc:
        raise StageError(f"{description} failed (exit code {exc.returncode}).") from exc
    except OSError as exc:
        raise StageError(f"{description} could not be started: {exc}") from exc


def run_best_effort(
    label: str,
    command: list[str],
    *,
    log_failure: bool = True,
    **kwargs,
) -> BestEffortOutcome:
    """Run an optional *command*; a failure is logged and never raised."""

    try:
        result = run_command(command, check=False, **kwargs)
        returncode = result.returncode
    except OSError as exc:
        LOG.debug("Could not start %s: %s", command[0], exc)
        returncode = 127
    outcome = BestEffortOutcome(label=label, args=list(command), returncode=returncode)
    if not outcome.succeeded and log_failure:
        LOG.warning("%s failed (exit code %s); continuing.", label, returncode)
    return outcome


def require_linux() -> None:
    if platform.system() != "Linux":
        raise RuntimeError("L4T flashing must be executed on a Linux host.")


def require_root_privileges() -> None:
    if os.geteuid() != 0:
        raise RuntimeError("Please run as root (sudo).")


def _iter_output_segments(text: str) -> list[str]:
    """Return sanitized output *text* split into logical display segments."""

    if not text:
        return []
    return text.replace("\r", "\n").splitlines()


@dataclass(frozen=True)
class DownloadRequest:
    url: str
    output: str
    timestamping: bool = False


def _maybe_run_python_download(
    command: list[str],
    *,
    cwd: Path | None,
    emit_line: Callable[[str], None],
    emit_progress: Callable[[ProgressUpdate], None],
    capture_output: bool,
) -> int | None:
    """Intercept ``wget`` downloads and perform them with progress reporting."""

    if capture_output or not command:
        return None

    request = _parse_download_command(command)
    if not request:
        return None

    destination = Path(request.output)
    if not destination.is_absolute():
        base_dir = cwd if cwd is not None else Path.cwd()
        destination = base_dir / destination

    emit_line(f"Downloading {request.url} -> {destination}")
    try:
        downloaded = _download_with_progress(
            request.url,
            destination,
            emit_progress,
            timestamping=request.timestamping,
        )
    except Exception as exc:  # noqa: BLE001
        emit_line(f"Download failed: {exc}")
        return 1

    if downloaded:
        emit_line(f"Download complete: {destination}")
    else:
        emit_line(f"Local file {destination} is up to date; not retrieving.")
    return 0


def _parse_download_command(command: list[str]) -> DownloadRequest | None:
    """Return a :class:`DownloadRequest` if *command* is a ``wget`` invocation."""

    if Path(command[0]).name != "wget":
        return None

    url: str | None = None
    output: str | None = None
    timestamping = False
    iterator = iter(command[1:])
    for token in iterator:
        if token in {"-N", "--timestamping"}:
            timestamping = True
            continue
        if token in {"-O", "--output-document"}:
            output = next(iterator, None)
            continue
        if token.startswith("--output-document="):
            output = token.split("=", 1)[1]
            continue
        if token.startswith("-"):
            continue
        if url is None:
            url = token

    if url and output is None:
        path = urllib.parse.urlparse(url).path
        output = Path(path).name or "download"
    if url and output:
        return DownloadRequest(url, output, timestamping)
    return None


def _is_up_to_date(destination: Path, remote_size: int | None, remote_mtime: float | None) -> bool:
    if not destination.exists():
        return False
    stat = destination.stat()
    if remote_size is not None and stat.st_size != remote_size:
        return False
    if remote_mtime is not None and stat.st_mtime < remote_mtime:
        return False
    return True


def _parse_http_date(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError):
        return None


def _download_with_progress(
    url: str,
    destination: Path,
    emit_progress: Callable[[ProgressUpdate], None],
    *,
    timestamping: bool = False,
) -> bool:
    """Download *url* to *destination* while emitting progress updates.

    With *timestamping* an existing file of the same size that is not older
    than the remote copy is kept, mirroring ``wget -N``.  Data is streamed
    into a ``.part`` file that only replaces *destination* once complete.
    Returns ``False`` when the download was skipped.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)

    start_time = time.monotonic()
    downloaded = 0
    last_report_time = start_time
    last_percent: int | None = None

    with contextlib.closing(urllib.request.urlopen(url)) as response:
        total_header = response.getheader("Content-Length")
        try:
            total_bytes = int(total_header) if total_header is not None else None
        except (TypeError, ValueError):
            total_bytes = None
        remote_mtime = _parse_http_date(response.getheader("Last-Modified"))

        if timestamping and _is_up_to_date(destination, total_bytes, remote_mtime):
            return False

        chunk_size = 64 * 1024
        # Only complete downloads may carry the final name; -N trusts it.
        partial = destination.with_name(destination.name + ".part")
        try:
            with partial.open("wb") as file_obj:
                while True:
                    chunk = response.read(chunk_size)
                    if not chunk:
                        break
                    file_obj.write(chunk)
                    downloaded += len(chunk)
                    now = time.monotonic()
                    percent = None
                    if total_bytes:
                        percent = (downloaded / total_bytes) * 100
                    elapsed = max(now - start_time, 1e-6)
                    speed = downloaded / elapsed
                    should_emit = False
                    if percent is not None:
                        percent_int = int(percent)
                        if percent_int != last_percent and now - last_report_time >= 1.0:
                            last_percent = percent_int
                            should_emit = True
                    elif now - last_report_time >= 5.0:
                        should_emit = True
                    if should_emit:
                        emit_progress(
                            ProgressUpdate(
                                label="download",
                                percent=percent,
                                size_bytes=downloaded,
                                total_size_bytes=total_bytes,
                                speed_bytes_per_sec=speed,
                            )
                        )
                        last_report_time = now
            if remote_mtime is not None:
                os.utime(partial, (remote_mtime, remote_mtime))
            os.replace(partial, destination)
        finally:
            partial.unlink(missing_ok=True)

    elapsed_total = max(time.monotonic() - start_time, 1e-6)
    emit_progress(
        ProgressUpdate(
            label="download",
            percent=100.0 if downloaded and total_bytes else None,
            size_bytes=downloaded,
            total_size_bytes=total_bytes,
            speed_bytes_per_sec=downloaded / elapsed_total if downloaded else None,
        )
    )
    return True


def _ensure_sufficient_disk_space(path: Path, *, required_bytes: int = MIN_FREE_DISK_BYTES) -> None:
    """Validate that *path* has at least *required_bytes* of free space."""

    usage = shutil.disk_usage(path)
    if usage.free < required_bytes:
        required_gib = required_bytes / (1024**3)
        available_gib = usage.free / (1024**3)
        message = (
            f"Insufficient disk space in {path}. "
            f"{available_gib:.2f} GiB available but {required_gib:.2f} GiB required. "
            "Free disk space or choose another working directory with -w."
        )
        LOG.error(message)
        raise StageError(message)


def release_version(config: PipelineConfig) -> ReleaseVersion:
    if config.version is None:
        raise StageError("No L4T release version configured; the fetch stages need -v.")
    return config.version


def fetch_release(config: PipelineConfig) -> None:
    """Remove any previous tree, download both tarballs and extract the BSP."""

    version = release_version(config)
    ensure_tools(FETCH_TOOLS)
    LOG.info("Jetson release version: %s", version)

    if config.l4t_dir.exists():
        LOG.info("Removing old L4T files: %s", config.l4t_dir)
        shutil.rmtree(config.l4t_dir)

    _ensure_sufficient_disk_space(config.work_dir)

    LOG.info("Downloading L4T release tarballs...")
    run_stage_command("Downloading the BSP", ["wget", "-N", version.bsp_url], cwd=config.work_dir)
    run_stage_command("Downloading the sample rootfs", ["wget", "-N", version.rootfs_url], cwd=config.work_dir)

    LOG.info("Extracting L4T release tarball...")
    run_stage_command(
        "Extracting the BSP",
        ["tar", "-xpvf", version.bsp_tarball],
        cwd=config.work_dir,
    )
    if not config.l4t_dir.is_dir():
        raise StageError(f"{version.bsp_tarball} did not contain a {L4T_DIR_NAME} directory.")


def setup_rootfs(config: PipelineConfig) -> None:
    """Extract the sample rootfs and lay the optional overlay over the work directory."""

    version = release_version(config)
    LOG.info("Extracting sample rootfs...")
    config.rootfs_dir.mkdir(parents=True, exist_ok=True)
    run_stage_command(
        "Extracting the sample rootfs",
        ["tar", "-xpvf", str(config.work_dir / version.rootfs_tarball), "-C", str(config.rootfs_dir)],
        cwd=config.work_dir,
    )

    if config.overlay is not None:
        LOG.info("Overlaying L4T directory with: %s", config.overlay)
        run_stage_command(
            "Extracting the overlay tarball",
            ["tar", "-xpvf", str(config.overlay), "-C", str(config.work_dir)],
            cwd=config.work_dir,
        )


def install_flashing_packages(_: PipelineConfig) -> None:
    """Install the Fedora packages NVIDIA's flashing scripts rely on."""

    ensure_tool("dnf")
    LOG.info("Installing RPM packages for flashing...")
    run_stage_command(
        f"Installing the '{DEVELOPMENT_GROUP}' group",
        ["dnf", "groupinstall", "-y", DEVELOPMENT_GROUP],
    )
    run_best_effort(
        f"Installing the optional '{VIRTUALIZATION_GROUP}' group",
        ["dnf", "group", "install", "--with-optional", "-y", VIRTUALIZATION_GROUP],
    )
    run_stage_command("Installing flashing packages", ["dnf", "install", "-y", *FLASHING_PACKAGES])
    link_nfs_kernel_server_alias()


def link_nfs_kernel_server_alias(unit_dir: Path | None = None) -> Path:
    """Alias Debian's ``nfs-kernel-server`` unit name to Fedora's ``nfs-server``."""

    unit_dir = SYSTEMD_UNIT_DIR if unit_dir is None else unit_dir
    alias = unit_dir / NFS_KERNEL_SERVER_ALIAS
    if alias.is_symlink() or alias.exists():
        alias.unlink()
    alias.symlink_to(unit_dir / NFS_SERVER_UNIT)
    LOG.info("Linked %s -> %s", alias, NFS_SERVER_UNIT)
    return alias


def apply_binaries(config: PipelineConfig) -> None:
    """Run ``apply_binaries.sh`` natively, falling back to a container."""

    LOG.info("Applying NVIDIA binaries...")
    if config.force_container:
        LOG.info("(Forced container mode)")
        run_apply_binaries_in_container(config)
        return

    script = config.l4t_dir / "apply_binaries.sh"
    if not script.exists():
        raise StageError(f"{script} not found. Was the BSP extracted correctly?")

    run_best_effort("Restarting systemd-binfmt", ["systemctl", "restart", "systemd-binfmt"])
    try:
        result = run_command(["./apply_binaries.sh"], cwd=config.l4t_dir, check=False)
        returncode = result.returncode
    except OSError as exc:
        LOG.warning("Could not execute apply_binaries.sh natively: %s", exc)
        returncode = 126

    if returncode == 0:
        LOG.info("apply_binaries.sh completed natively.")
        return

    LOG.warning(
        "Native apply_binaries failed (rc=%s). Falling back to %s container...",
        returncode,
        CONTAINER_IMAGE,
    )
    run_apply_binaries_in_container(config)


def container_command(runtime: str, config: PipelineConfig) -> list[str]:
    return [
        runtime,
        "run",
        "--rm",
        "--privileged",
        "-v",
        f"{config.work_dir}:/work",
        "-w",
        f"/work/{L4T_DIR_NAME}",
        CONTAINER_IMAGE,
        "bash",
        "-lc",
        CONTAINER_SCRIPT,
    ]


def run_apply_binaries_in_container(config: PipelineConfig) -> None:
    runtime = pick_container_runtime()
    if runtime is None:
        raise MissingToolError(
            "No container runtime found (podman/docker). Install one (sudo dnf install podman) "
            "or fix the native apply_binaries.sh run."
        )

    LOG.info("Running apply_binaries.sh inside %s container (%s)...", CONTAINER_IMAGE, runtime)
    run_stage_command("apply_binaries.sh in container", container_command(runtime, config))
    LOG.info("apply_binaries.sh completed in container.")


def kernel_modules_present(rootfs_dir: Path) -> bool:
    modules_dir = rootfs_dir / "lib" / "modules"
    return modules_dir.is_dir() and any(modules_dir.iterdir())


def find_kernel_packages(l4t_dir: Path) -> list[Path]:
    """Return NVIDIA kernel, kernel image, dtbs and initrd packages under ``nv_tegra``."""

    package_root = l4t_dir / "nv_tegra"
    if not package_root.is_dir():
        return []
    return sorted(path for path in package_root.rglob("*") if path.is_file() and KERNEL_PACKAGE_RE.search(path.name))


def ensure_kernel_modules_present(config: PipelineConfig) -> None:
    """Guarantee a non-empty ``lib/modules`` by unpacking kernel packages if needed."""

    LOG.info("Verifying kernel modules in rootfs...")
    if kernel_modules_present(config.rootfs_dir):
        LOG.info("Kernel modules present.")
        return

    LOG.warning("Kernel modules missing. Extracting kernel packages directly into rootfs...")
    modules_dir = config.rootfs_dir / "lib" / "modules"
    if modules_dir.is_symlink():
        modules_dir.unlink()
    elif modules_dir.exists():
        shutil.rmtree(modules_dir)

    packages = find_kernel_packages(config.l4t_dir)
    if not packages:
        raise StageError(f"Could not locate kernel packages under {config.l4t_dir / 'nv_tegra'}.")

    ensure_tool("dpkg-deb")
    for package in packages:
        LOG.info("Extracting %s", package.name)
        run_stage_command(
            f"Extracting {package.name}",
            ["dpkg-deb", "-x", str(package), f"{config.rootfs_dir}/"],
        )

    if not kernel_modules_present(config.rootfs_dir):
        raise StageError("Kernel modules still not present after extraction.")
    LOG.info("Kernel modules extracted.")


def install_performance_service(config: PipelineConfig) -> None:
    LOG.info("Installing performance boot service (highest nvpmodel + jetson_clocks) into rootfs...")
    install_boot_service(config.rootfs_dir)


def parse_board_id(output: str) -> str | None:
    """Return the board id reported by ``nvautoflash.sh --print_boardid``.

    The last output line carries the id followed by a fixed-width status
    annotation (``jetson-orin-nano-devkit found.``).  The annotation is cut
    by length; callers compare the remainder against the allow-list.
    """

    lines = [line for line in output.splitlines() if line.strip()]
    if not lines or len(lines[-1]) <= BOARD_ID_ANNOTATION_LENGTH:
        return None
    return lines[-1][:-BOARD_ID_ANNOTATION_LENGTH]


def check_forced_recovery_mode(config: PipelineConfig) -> str:
    """Abort unless a supported Orin Nano devkit is attached in recovery mode."""

    LOG.info("Checking if board is in Forced Recovery Mode...")
    script = config.l4t_dir / "nvautoflash.sh"
    if not script.exists():
        raise StageError(f"{script} not found. Prepare the L4T tree with -g first.")

    try:
        result = run_command([str(script), "--print_boardid"], cwd=config.l4t_dir, check=False, capture_output=True)
    except OSError as exc:
        raise StageError(f"{script.name} could not be started: {exc}") from exc
    board_id = parse_board_id(result.output)
    if board_id not in SUPPORTED_BOARD_IDS:
        raise StageError(
            "Board not detected or not in recovery"
            + (f" (reported '{board_id}')" if board_id else "")
            + ". Check USB-C cable/port and FC REC jumper."
        )
    LOG.info("Detected %s", board_id)
    return board_id


def warn_if_firewalld_active(_: PipelineConfig) -> None:
    result = run_command(["systemctl", "is-active", "--quiet", "firewalld"], check=False, capture_output=True)
    if result.returncode == 0:
        LOG.warning(
            "firewalld is active. NVIDIA initrd flashing uses NFS, which may be blocked. Consider: "
            "sudo systemctl stop firewalld && sudo systemctl disable firewalld && sudo reboot "
            "(re-enable the firewall after flashing if you like)."
        )


def render_exports(config: PipelineConfig) -> str:
    return "".join(
        f"{directory} *({EXPORT_OPTIONS})\n" for directory in (config.rootfs_dir, config.images_dir)
    )


def configure_nfs_exports(config: PipelineConfig) -> None:
    LOG.info("Preparing NFS exports...")
    # exportfs fails on a missing directory.
    config.images_dir.mkdir(parents=True, exist_ok=True)
    EXPORTS_PATH.write_text(render_exports(config))
    LOG.info("Wrote %s", EXPORTS_PATH)

    run_stage_command("Exporting NFS shares", ["exportfs", "-avr"])
    run_stage_command("Starting nfs-server", ["systemctl", "enable", "--now", "nfs-server"])


@contextlib.contextmanager
def udisks_suspended() -> Iterator[None]:
    """Keep udisks2 from grabbing the device's mass-storage gadget while flashing."""

    run_best_effort("Stopping udisks2", ["systemctl", "stop", "udisks2.service"])
    try:
        yield
    finally:
        run_best_effort("Restarting udisks2", ["systemctl", "start", "udisks2.service"])


def flash_command() -> list[str]:
    return [
        "./tools/kernel_flash/l4t_initrd_flash.sh",
        "--external-device",
        EXTERNAL_DEVICE,
        "-c",
        EXTERNAL_LAYOUT,
        "-p",
        f"-c {QSPI_LAYOUT}",
        "--showlogs",
        "--network",
        FLASH_INTERFACE,
        BOARD,
        "internal",
    ]


def flash_nvme(config: PipelineConfig) -> None:
    """Export the rootfs over NFS and flash the NVMe drive over ``usb0``."""

    ensure_tools(FLASH_TOOLS)
    with udisks_suspended():
        configure_nfs_exports(config)
        LOG.info("Flashing NVMe SSD via interface %s ...", FLASH_INTERFACE)
        run_stage_command("l4t_initrd_flash.sh", flash_command(), cwd=config.l4t_dir)

    log_first_boot_instructions()


def log_first_boot_instructions() -> None:
    LOG.info("Flash complete. On first boot from NVMe:")
    LOG.info("    sudo apt update && sudo apt full-upgrade -y")
    LOG.info("    # jetson-super-setup.service selects the highest nvpmodel (15 W on Orin Nano)")
    LOG.info("    # and runs jetson_clocks. Logs: /var/log/jetson-super-setup.log")
    LOG.info("    # Verify:")
    LOG.info("    which nvpmodel && sudo nvpmodel -q")
    LOG.info("    sudo tegrastats   # optional: watch clocks/power")


FETCH_STAGES = ["fetch", "rootfs", "packages", "binaries", "modules", "boot-service"]
FLASH_STAGES = ["recovery", "firewall", "flash"]

STAGE_EXECUTORS: dict[str, Callable[[PipelineConfig], object]] = {
    "fetch": fetch_release,
    "rootfs": setup_rootfs,
    "packages": install_flashing_packages,
    "binaries": apply_binaries,
    "modules": ensure_kernel_modules_present,
    "boot-service": install_performance_service,
    "recovery": check_forced_recovery_mode,
    "firewall": warn_if_firewalld_active,
    "flash": flash_nvme,
}


def planned_stages(config: PipelineConfig) -> list[str]:
    stages: list[str] = []
    if config.fetch:
        stages.extend(FETCH_STAGES)
    if config.flash:
        stages.extend(FLASH_STAGES)
    return stages


def run_pipeline(config: PipelineConfig) -> None:
    for stage in planned_stages(config):
        LOG.info("==> %s", stage)
        STAGE_EXECUTORS[stage](config)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        description="Prepare & flash a specified Jetson Linux (L4T) release on Orin Nano (Fedora host).",
    )
    parser.add_argument("-g", "--get", dest="fetch", action="store_true", help="Get the L4T release and prepare for flashing.")
    parser.add_argument("-f", "--flash", action="store_true", help="Flash the prepared L4T release to NVMe.")
    parser.add_argument("-o", "--overlay", metavar="PATH", help="Overlay L4T dir with a specified tarball.")
    parser.add_argument("-v", "--l4t-version", metavar="VERSION", help="L4T release version, e.g. 36.4.4 (required with -g).")
    parser.add_argument(
        "-C",
        "--force-container",
        action="store_true",
        help="Force container for apply_binaries (skip native attempt).",
    )
    parser.add_argument(
        "-w",
        "--work-dir",
        default=".",
        help="Directory holding the tarballs and Linux_for_Tegra tree (default: current directory).",
    )
    parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Skip automatic installation of missing host dependencies.",
    )
    return parser


def build_config(args: argparse.Namespace, work_dir: Path) -> PipelineConfig:
    """Validate parsed arguments and freeze them into a :class:`PipelineConfig`."""

    version = None
    if args.l4t_version and not args.fetch:
        LOG.warning("Release version %s is only used together with -g; ignoring it.", args.l4t_version)
    elif args.l4t_version:
        version = ReleaseVersion.parse(args.l4t_version)

    overlay = None
    if args.overlay:
        overlay = Path(args.overlay).expanduser().resolve()
        if not args.fetch:
            LOG.warning("Overlay %s is only applied together with -g; ignoring it.", overlay)
            overlay = None
        elif not overlay.is_file():
            raise ConfigurationError(f"Overlay tarball not found: {overlay}")

    return PipelineConfig(
        fetch=args.fetch,
        flash=args.flash,
        force_container=args.force_container,
        overlay=overlay,
        version=version,
        work_dir=work_dir,
        bootstrap=not args.no_bootstrap,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    work_dir = Path(args.work_dir).expanduser().resolve()
    setup_logging(work_dir / LOG_FILE_NAME)
    LOG.info("Orin Nano L4T prepare-and-flash %s", __version__)

    try:
        config = build_config(args, work_dir)
        set_bootstrap_enabled(config.bootstrap)
        require_linux()
        require_root_privileges()
        log_stage_summary(config)
        run_pipeline(config)
    except (RuntimeError, ValueError, OSError) as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
