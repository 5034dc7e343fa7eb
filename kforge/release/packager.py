"""Assemble the flashable AnyKernel3 zip.

The compiled ``Image`` is dropped into the AnyKernel3 template, git metadata
is stripped from the template, and the template's contents are zipped as
``<prefix>-<YYYYMMDD>-<version>.zip`` (UTC date) before being moved into the
release-keyed builds directory.
"""

from __future__ import annotations

import shutil
import zipfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from kforge.release.version import VersionToken
from kforge.utils import print_info


class PackagingFailure(Exception):
    """Raised when the archive cannot be produced."""


def utc_date_stamp(now: datetime | None = None) -> str:
    """Day-granularity UTC stamp, e.g. ``20250115``."""
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%d")


def archive_name(prefix: str, date_stamp: str, version: str | VersionToken) -> str:
    """``<prefix>-<date>-<version>.zip``."""
    return f"{prefix}-{date_stamp}-{version}.zip"


def _archive_members(root: Path) -> list[Path]:
    """Files under *root*'s non-hidden top-level entries (``zip -r x ./*``)."""
    members: list[Path] = []
    for entry in sorted(root.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            members.extend(p for p in sorted(entry.rglob("*")) if p.is_file())
        else:
            members.append(entry)
    return members


class ArtifactPackager:
    """Builds the distributable zip from a packaging root.

    Args:
        packaging_root: AnyKernel3 template directory.
        builds_dir: Directory receiving finished archives.
        prefix: Archive name prefix.
        clock: Returns "now"; injectable for deterministic names.
    """

    def __init__(
        self,
        packaging_root: str | Path,
        builds_dir: str | Path,
        prefix: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.packaging_root = Path(packaging_root)
        self.builds_dir = Path(builds_dir)
        self.prefix = prefix
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def archive_name(self, version: str | VersionToken) -> str:
        return archive_name(self.prefix, utc_date_stamp(self._clock()), version)

    def package(self, image_path: str | Path, version: str | VersionToken) -> Path:
        """Produce the archive and return its final location.

        Raises:
            PackagingFailure: If the image or packaging root is missing, or
                the archive cannot be written or moved.
        """
        image = Path(image_path)
        if not image.is_file():
            raise PackagingFailure(f"Kernel image not found: {image}")
        if not self.packaging_root.is_dir():
            raise PackagingFailure(f"Packaging root not found: {self.packaging_root}")

        copied_image = self.packaging_root / image.name
        try:
            shutil.copy2(image, copied_image)
            shutil.rmtree(self.packaging_root / ".git", ignore_errors=True)

            name = self.archive_name(version)
            staging = self.packaging_root.parent / name
            print_info(f"Creating zip: {name}")
            self._write_zip(staging)

            self.builds_dir.mkdir(parents=True, exist_ok=True)
            destination = self.builds_dir / name
            shutil.move(str(staging), str(destination))
        except OSError as exc:
            raise PackagingFailure(f"Packaging failed: {exc}") from exc
        finally:
            copied_image.unlink(missing_ok=True)

        print_info(f"Output: {destination}")
        return destination

    def _write_zip(self, archive_path: Path) -> None:
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for member in _archive_members(self.packaging_root):
                archive.write(member, member.relative_to(self.packaging_root).as_posix())
