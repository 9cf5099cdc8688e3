"""
koboldkit - Release selection, installation and process lifecycle for KoboldCpp.

Submodules:
    - koboldkit.hardware: CPU/GPU capability detection
    - koboldkit.assets: Build selection for the detected hardware
    - koboldkit.catalog: GitHub release catalog client
    - koboldkit.acceleration: Compute backends bundled with a build
    - koboldkit.installer: Download, extraction and installed versions
    - koboldkit.config_store: Persisted launcher settings
    - koboldkit.orchestrator: Backend spawn, monitoring and termination
"""

__version__ = "0.3.0"

# Import submodules for namespace access (kk.hardware.detect())
from . import hardware

# Top-level convenience exports (most common operations)
from .hardware import detect, HardwareProfile, GPUDevice
from .versioning import compare_versions, version_key
from .assets import (
    AssetVariant,
    AssetChoice,
    classify_asset,
    is_asset_recommended,
    select_assets,
    format_download_size,
    format_device_summary,
)
from .acceleration import (
    AccelerationOption,
    AccelerationSupport,
    available_accelerations,
    detect_acceleration_support,
)
from .catalog import ReleaseCatalog, Release, ReleaseAsset, UpdateInfo
from .installer import Installer, InstalledVersion, InstalledVersionRegistry
from .config_store import ConfigStore, BackendConfig
from .orchestrator import (
    BackendOrchestrator,
    ProcessHandle,
    ProcessState,
    LaunchInfo,
    parse_kobold_config,
    terminate_process,
)
from .notifications import Channel, NotificationBus
from .context import LauncherContext
from .exceptions import (
    KoboldKitError,
    AmbiguousVersion,
    DetectionDegraded,
    CatalogUnavailable,
    InstallError,
    DownloadFailed,
    ExtractFailed,
    SpawnFailed,
    TerminationError,
)

__all__ = [
    # Submodules
    "hardware",

    # Hardware
    "detect",
    "HardwareProfile",
    "GPUDevice",

    # Selection
    "compare_versions",
    "version_key",
    "AssetVariant",
    "AssetChoice",
    "classify_asset",
    "is_asset_recommended",
    "select_assets",
    "format_download_size",
    "format_device_summary",

    # Acceleration
    "AccelerationOption",
    "AccelerationSupport",
    "available_accelerations",
    "detect_acceleration_support",

    # Releases & installs
    "ReleaseCatalog",
    "Release",
    "ReleaseAsset",
    "UpdateInfo",
    "Installer",
    "InstalledVersion",
    "InstalledVersionRegistry",

    # Settings
    "ConfigStore",
    "BackendConfig",

    # Process lifecycle
    "BackendOrchestrator",
    "ProcessHandle",
    "ProcessState",
    "LaunchInfo",
    "parse_kobold_config",
    "terminate_process",
    "Channel",
    "NotificationBus",
    "LauncherContext",

    # Errors
    "KoboldKitError",
    "AmbiguousVersion",
    "DetectionDegraded",
    "CatalogUnavailable",
    "InstallError",
    "DownloadFailed",
    "ExtractFailed",
    "SpawnFailed",
    "TerminationError",
]
