"""Jetson Linux (L4T) release naming helpers.

NVIDIA publishes every L4T release under a predictable URL scheme, so the
download locations and tarball names can be derived from the dotted release
version alone (for example ``36.4.4``).
"""

from __future__ import annotations

from dataclasses import dataclass

L4T_DOWNLOADS_URL = "https://developer.nvidia.com/downloads/embedded/l4t"
L4T_ARCH = "aarch64"


class InvalidVersion(ValueError):
    """Raised when a release version string is malformed."""


def validate_version_string(text: str) -> str:
    """Return *text* if it only contains digits once the dots are removed."""

    digits = text.replace(".", "")
    if not digits or not digits.isdecimal() or not digits.isascii():
        raise InvalidVersion(
            f"L4T release version should contain digits only (e.g., 36.4.4), got '{text}'."
        )
    return text


@dataclass(frozen=True)
class ReleaseVersion:
    """A ``major.minor.patch`` L4T release version."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> "ReleaseVersion":
        validate_version_string(text)
        components = text.split(".")
        if len(components) != 3 or not all(components):
            raise InvalidVersion(
                f"L4T release version must have exactly three components (e.g., 36.4.4), got '{text}'."
            )
        major, minor, patch = (int(component) for component in components)
        return cls(major, minor, patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def release_url(self) -> str:
        return f"{L4T_DOWNLOADS_URL}/r{self.major}_release_v{self.minor}.{self.patch}/release"

    @property
    def bsp_tarball(self) -> str:
        return f"jetson_linux_r{self}_{L4T_ARCH}.tbz2"

    @property
    def rootfs_tarball(self) -> str:
        return f"tegra_linux_sample-root-filesystem_r{self}_{L4T_ARCH}.tbz2"

    @property
    def bsp_url(self) -> str:
        return f"{self.release_url}/{self.bsp_tarball}"

    @property
    def rootfs_url(self) -> str:
        return f"{self.release_url}/{self.rootfs_tarball}"
