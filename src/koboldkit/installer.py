#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Backend installer and installed-version registry.

An install goes through three stages, each leaving nothing behind on failure:

1. Download the asset to `<install_dir>/<asset>.packed`, reporting percent
   progress.
2. Extract into a staging folder `<folder>.partial`. Zip and tar.gz archives
   are unpacked with the standard archive modules. Bare KoboldCpp binaries
   are PyInstaller bundles that unpack themselves with `--unpack <dir>`;
   when that yields no launcher the binary itself becomes the launcher.
3. Swap the staging folder into place as `<asset-stem>-<version>` and write
   a `koboldkit-install.json` record beside the launcher.

Until step 3 succeeds a previous install of the same version stays usable.
"""

import json
import logging
import os
import shutil
import subprocess
import sys
import tarfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field

from .catalog import ReleaseAsset
from .constants import (
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT_S,
    INSTALL_METADATA_FILE,
    LAUNCHER_NAME,
    UNPACK_TIMEOUT_S,
    VERSION_PROBE_TIMEOUT_S,
)
from .exceptions import AmbiguousVersion, DownloadFailed, ExtractFailed
from .notifications import Channel, NotificationBus
from .versioning import parse_version_output, strip_asset_extensions, version_from_folder_name, version_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PROGRESS_FAILED = -1
UNKNOWN_VERSION = "unknown"


class InstalledVersion(BaseModel):
    """A backend build that was downloaded and extracted successfully."""
    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Backend version, e.g. 1.97")
    install_path: str = Field(..., description="Absolute path of the launcher binary")
    download_date: str = Field(..., description="ISO-8601 time the install completed")
    filename: str = Field(..., description="Name of the release asset this came from")

    @property
    def folder(self) -> Path:
        return Path(self.install_path).parent


# ============================================================================
# LAUNCHER DISCOVERY
# ============================================================================

def _launcher_names() -> List[str]:
    if sys.platform == "win32":
        return [f"{LAUNCHER_NAME}.exe", LAUNCHER_NAME]
    return [LAUNCHER_NAME, f"{LAUNCHER_NAME}.exe"]


def find_launcher(directory: Union[str, Path]) -> Optional[Path]:
    """Return the launcher binary directly inside `directory`, if present."""
    directory = Path(directory)
    for name in _launcher_names():
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def make_executable(path: Path) -> None:
    if sys.platform == "win32":
        return
    os.chmod(path, 0o755)


def detect_binary_version(binary_path: Union[str, Path]) -> Optional[str]:
    """
    Ask a backend binary for its version with `--version`.

    Best effort: returns None if the binary cannot be run, times out or
    prints nothing that looks like a version.
    """
    try:
        result = subprocess.run(
            [str(binary_path), "--version"],
            capture_output=True,
            text=True,
            timeout=VERSION_PROBE_TIMEOUT_S,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version probe failed for {binary_path}: {e}")
        return None
    return parse_version_output(result.stdout or "") or parse_version_output(result.stderr or "")


# ============================================================================
# INSTALLER
# ============================================================================

class _ProgressReporter:
    """Forwards strictly increasing percentages to a callback and the bus."""

    def __init__(self, notifier: Optional[NotificationBus], callback: Optional[ProgressCallback]):
        self.notifier = notifier
        self.callback = callback
        self.last = None

    def _emit(self, value: int) -> None:
        if self.callback:
            try:
                self.callback(value)
            except Exception:
                logger.exception("Progress callback failed")
        if self.notifier:
            self.notifier.publish(Channel.DOWNLOAD_PROGRESS, value)

    def report(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if self.last is not None and percent <= self.last:
            return
        self.last = percent
        self._emit(percent)

    def fail(self) -> None:
        self._emit(PROGRESS_FAILED)


class Installer:
    """
    Download and install backend builds.

    Args:
        install_dir: Directory holding one folder per installed build
        session: requests.Session used for downloads
        notifier: Bus for DOWNLOAD_PROGRESS and VERSIONS_UPDATED

    Example:
        >>> installer = Installer("~/.local/share/koboldkit")
        >>> installed = installer.install(asset, version="1.97", on_progress=print)
        0
        ...
        100
    """

    def __init__(
        self,
        install_dir: Union[str, Path],
        session: Optional[requests.Session] = None,
        notifier: Optional[NotificationBus] = None,
    ):
        self.install_dir = Path(install_dir).expanduser()
        self.session = session if session is not None else requests.Session()
        self.notifier = notifier

    def install(
        self,
        asset: ReleaseAsset,
        version: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> InstalledVersion:
        """
        Download, extract and register one asset.

        Download progress runs from 0 to 99; 100 is reported only once the
        install is complete. Any failure reports -1 and re-raises.

        Args:
            asset: The release asset to install
            version: Version of the release the asset belongs to; probed
                from the binary when omitted
            on_progress: Called with each new percentage

        Raises:
            DownloadFailed: The asset could not be fetched or written
            ExtractFailed: The download could not be unpacked into a launcher
        """
        reporter = _ProgressReporter(self.notifier, on_progress)
        stem = strip_asset_extensions(asset.name)
        packed_path = self.install_dir / f"{asset.name}.packed"
        staging_dir = self.install_dir / f"{stem}.partial"

        try:
            try:
                self.install_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DownloadFailed(f"Cannot create install directory {self.install_dir}: {e}", asset.name)

            self._download(asset, packed_path, reporter)
            launcher = self._extract(asset.name, packed_path, staging_dir)
            version = version or detect_binary_version(launcher) or UNKNOWN_VERSION
            installed = self._commit(asset, stem, version, staging_dir, launcher.name)
        except Exception:
            reporter.fail()
            raise
        finally:
            _remove_path(packed_path)
            _remove_path(staging_dir)

        reporter.report(100)
        logger.info(f"Installed {asset.name} {installed.version} at {installed.install_path}")
        if self.notifier:
            self.notifier.publish(Channel.VERSIONS_UPDATED, None)
        return installed

    def _download(self, asset: ReleaseAsset, destination: Path, reporter: _ProgressReporter) -> None:
        reporter.report(0)
        try:
            response = self.session.get(asset.download_url, stream=True, timeout=DOWNLOAD_TIMEOUT_S)
        except requests.RequestException as e:
            raise DownloadFailed(f"Network error: {e}", asset.name)

        try:
            if not 200 <= response.status_code < 300:
                raise DownloadFailed(f"Download failed with HTTP {response.status_code}", asset.name)

            total = int(response.headers.get("content-length") or 0) or asset.size_bytes
            downloaded = 0
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    if total:
                        reporter.report(min(99, downloaded * 100 // total))
        except requests.RequestException as e:
            raise DownloadFailed(f"Network error: {e}", asset.name)
        except OSError as e:
            raise DownloadFailed(f"Could not write {destination}: {e}", asset.name)
        finally:
            response.close()
        logger.debug(f"Downloaded {downloaded} bytes to {destination}")

    def _extract(self, asset_name: str, packed_path: Path, staging_dir: Path) -> Path:
        _remove_path(staging_dir)
        lowered = asset_name.lower()
        try:
            staging_dir.mkdir(parents=True)
            if lowered.endswith(".zip"):
                with zipfile.ZipFile(packed_path) as archive:
                    archive.extractall(staging_dir)
            elif lowered.endswith(".tar.gz"):
                with tarfile.open(packed_path, "r:gz") as archive:
                    archive.extractall(staging_dir, members=_checked_tar_members(archive, staging_dir, asset_name))
            elif lowered.endswith(".dmg"):
                raise ExtractFailed("Disk images are not supported, choose a bare binary asset", asset_name)
            else:
                self._unpack_binary(asset_name, packed_path, staging_dir)

            launcher = find_launcher(staging_dir)
            if launcher is None:
                raise ExtractFailed("No launcher found after extraction", asset_name)
            make_executable(launcher)
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
            raise ExtractFailed(f"Could not extract: {e}", asset_name)
        return launcher

    def _unpack_binary(self, asset_name: str, packed_path: Path, staging_dir: Path) -> None:
        make_executable(packed_path)
        try:
            subprocess.run(
                [str(packed_path), "--unpack", str(staging_dir)],
                capture_output=True,
                timeout=UNPACK_TIMEOUT_S,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Self-unpack of {asset_name} failed, using the binary directly: {e}")

        if find_launcher(staging_dir) is None:
            launcher_name = _launcher_names()[0]
            os.replace(packed_path, staging_dir / launcher_name)

    def _commit(
        self,
        asset: ReleaseAsset,
        stem: str,
        version: str,
        staging_dir: Path,
        launcher_name: str,
    ) -> InstalledVersion:
        target_dir = self.install_dir / f"{stem}-{version}"
        installed = InstalledVersion(
            version=version,
            install_path=str(target_dir / launcher_name),
            download_date=datetime.now(timezone.utc).isoformat(),
            filename=asset.name,
        )
        retired_dir = self.install_dir / f"{stem}-{version}.old"
        try:
            with open(staging_dir / INSTALL_METADATA_FILE, "w", encoding="utf-8") as f:
                json.dump(installed.model_dump(), f, indent=2)
            _remove_path(retired_dir)
            if target_dir.exists():
                os.replace(target_dir, retired_dir)
            os.replace(staging_dir, target_dir)
        except OSError as e:
            if retired_dir.exists() and not target_dir.exists():
                os.replace(retired_dir, target_dir)
            raise ExtractFailed(f"Could not move install into place: {e}", asset.name)
        _remove_path(retired_dir)
        return installed


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _checked_tar_members(archive: tarfile.TarFile, destination: Path, asset_name: str) -> List[tarfile.TarInfo]:
    """
    Regular files, directories and links that stay inside `destination`.

    Raises:
        ExtractFailed: An entry or link target resolves outside `destination`
    """
    root = destination.resolve()
    members = []
    for member in archive.getmembers():
        target = (root / member.name).resolve()
        if not _is_within(target, root):
            raise ExtractFailed(f"Archive entry escapes the install folder: {member.name}", asset_name)
        if member.issym() or member.islnk():
            base = target.parent if member.issym() else root
            if os.path.isabs(member.linkname) or not _is_within((base / member.linkname).resolve(), root):
                raise ExtractFailed(f"Archive link escapes the install folder: {member.name}", asset_name)
        elif not (member.isfile() or member.isdir()):
            logger.debug(f"Skipping special archive entry {member.name}")
            continue
        members.append(member)
    return members


def _remove_path(path: Path) -> None:
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


# ============================================================================
# REGISTRY
# ============================================================================

class InstalledVersionRegistry:
    """
    Read-side view of the install directory.

    Folders with a metadata record are listed from it. Folders without one
    (builds copied in by hand) are listed when they contain a launcher,
    taking the version from the folder name.
    """

    def __init__(self, install_dir: Union[str, Path], notifier: Optional[NotificationBus] = None):
        self.install_dir = Path(install_dir).expanduser()
        self.notifier = notifier

    def _read_record(self, folder: Path) -> Optional[InstalledVersion]:
        record_path = folder / INSTALL_METADATA_FILE
        if record_path.is_file():
            try:
                with open(record_path, "r", encoding="utf-8") as f:
                    record = InstalledVersion.model_validate(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable install record {record_path}: {e}")
                return None
            # Records move with their folder, so trust the launcher name only
            launcher = folder / Path(record.install_path).name
            if not launcher.is_file():
                return None
            return record.model_copy(update={"install_path": str(launcher)})

        launcher = find_launcher(folder)
        if launcher is None:
            return None
        modified = datetime.fromtimestamp(launcher.stat().st_mtime, timezone.utc)
        return InstalledVersion(
            version=version_from_folder_name(folder.name) or UNKNOWN_VERSION,
            install_path=str(launcher),
            download_date=modified.isoformat(),
            filename=launcher.name,
        )

    def list(self) -> List[InstalledVersion]:
        """Installed builds, newest version first."""
        if not self.install_dir.is_dir():
            return []
        versions = []
        for folder in sorted(self.install_dir.iterdir()):
            if not folder.is_dir() or folder.name.endswith((".partial", ".old")):
                continue
            record = self._read_record(folder)
            if record is not None:
                versions.append(record)
        return sorted(versions, key=lambda v: version_key(v.version), reverse=True)

    def get(self, key: str) -> Optional[InstalledVersion]:
        """
        Look up an installed build by folder name or by version.

        A folder name always identifies one build. A version may match
        several builds of the same release (say standard and rocm).

        Raises:
            AmbiguousVersion: `key` is a version shared by several builds
        """
        installed = self.list()
        for candidate in installed:
            if candidate.folder.name == key:
                return candidate
        matches = [candidate for candidate in installed if candidate.version == key]
        if len(matches) > 1:
            raise AmbiguousVersion(key, [candidate.folder.name for candidate in matches])
        return matches[0] if matches else None

    def find_by_binary(self, binary_path: Union[str, Path]) -> Optional[InstalledVersion]:
        resolved = Path(binary_path).resolve()
        for installed in self.list():
            if Path(installed.install_path).resolve() == resolved:
                return installed
        return None

    def remove(self, key: str) -> bool:
        """
        Delete an installed build's folder, chosen like `get`.

        Returns False if nothing matches.
        """
        installed = self.get(key)
        if installed is None:
            return False
        folder = installed.folder
        if folder.parent.resolve() != self.install_dir.resolve():
            return False
        shutil.rmtree(folder)
        logger.info(f"Removed {installed.filename} {installed.version}")
        if self.notifier:
            self.notifier.publish(Channel.VERSIONS_UPDATED, None)
        return True

    def find_launcher(self, directory: Union[str, Path]) -> Optional[Path]:
        return find_launcher(directory)

    def detect_binary_version(self, binary_path: Union[str, Path]) -> Optional[str]:
        return detect_binary_version(binary_path)
