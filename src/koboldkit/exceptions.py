"""
Exception taxonomy for koboldkit.

Catalog, install and spawn failures are raised to the caller. Hardware
detection and process termination failures are only logged; their types
exist so the log records and warnings carry a stable category.
"""

from typing import List, Optional


class KoboldKitError(Exception):
    """Base class for all koboldkit errors."""


class DetectionDegraded(UserWarning):
    """Hardware probing failed and conservative defaults were used instead."""


class CatalogUnavailable(KoboldKitError):
    """Raised when the release host cannot be queried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """
        Initialize CatalogUnavailable.

        Args:
            message: Description of the network or HTTP failure
            status_code: HTTP status returned by the host, if one was received
        """
        self.status_code = status_code
        full_message = f"Release catalog unavailable: {message}"
        if status_code is not None:
            full_message += f" (HTTP {status_code})"
        super().__init__(full_message)


class InstallError(KoboldKitError):
    """Base class for installer failures. No partial install survives one."""

    def __init__(self, message: str, asset_name: Optional[str] = None):
        self.asset_name = asset_name
        full_message = message
        if asset_name:
            full_message += f" (asset: {asset_name})"
        super().__init__(full_message)


class DownloadFailed(InstallError):
    """Raised when an asset cannot be fetched or written to disk."""


class ExtractFailed(InstallError):
    """Raised when a downloaded asset cannot be unpacked or made executable."""


class SpawnFailed(KoboldKitError):
    """Raised when the backend process could not be started."""

    def __init__(self, message: str, binary_path: Optional[str] = None):
        self.binary_path = binary_path
        full_message = f"Failed to start backend: {message}"
        if binary_path:
            full_message += f" (binary: {binary_path})"
        super().__init__(full_message)


class TerminationError(KoboldKitError):
    """A signal could not be delivered while stopping the backend."""


class AmbiguousVersion(KoboldKitError):
    """A version string matches several installed builds."""

    def __init__(self, version: str, folders: List[str]):
        self.version = version
        self.folders = folders
        super().__init__(f"Version {version} is installed as several builds, choose one of: {', '.join(folders)}")
