"""
Application context.

One object owns every long-lived component of the launcher and wires them
together: settings, hardware profile, release catalog, installer, registry
and the backend orchestrator. Front ends (the CLI, a GUI) create a context,
call `initialize()`, and `shutdown()` when done; shutdown also runs at
interpreter exit so a backend is never left orphaned.
"""

import atexit
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import requests

from .acceleration import AccelerationOption, AccelerationSupport, available_accelerations, detect_acceleration_support
from .assets import AssetChoice, current_platform, select_assets
from .catalog import Release, ReleaseAsset, ReleaseCatalog, UpdateInfo
from .config_store import ConfigStore
from .exceptions import SpawnFailed
from .hardware import CapabilityProbe, HardwareProfile, detect
from .installer import InstalledVersion, InstalledVersionRegistry, Installer
from .notifications import Channel, NotificationBus
from .orchestrator import BackendOrchestrator, ProcessHandle

logger = logging.getLogger(__name__)


class LauncherContext:
    """
    Composition root for the launcher.

    Args:
        config_path: Config file location (per-OS default when omitted)
        probe: Hardware probe override, mainly for tests
        session: requests.Session shared by the catalog and installer
        notifier: Notification bus shared by all components

    Example:
        >>> with LauncherContext() as ctx:
        ...     choices = ctx.available_assets()
        ...     ctx.install(choices[0].asset, version="1.97")
        ...     ctx.launch("llama-8b")
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        probe: Optional[CapabilityProbe] = None,
        session: Optional[requests.Session] = None,
        notifier: Optional[NotificationBus] = None,
    ):
        self.notifier = notifier if notifier is not None else NotificationBus()
        self.config = ConfigStore(config_path, notifier=self.notifier)
        self.session = session if session is not None else requests.Session()
        self.catalog = ReleaseCatalog(session=self.session)
        self.orchestrator = BackendOrchestrator(notifier=self.notifier)
        self.profile: Optional[HardwareProfile] = None
        self.installer: Optional[Installer] = None
        self.registry: Optional[InstalledVersionRegistry] = None

        self._probe = probe
        self._unsubscribe = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> "LauncherContext":
        if self._initialized:
            return self
        self.profile = detect(self._probe)
        self._bind_install_dir(str(self.config.install_dir))
        self._unsubscribe = self.notifier.subscribe(Channel.INSTALL_DIR_CHANGED, self._bind_install_dir)
        atexit.register(self.shutdown)
        self._initialized = True
        logger.info("Launcher context initialized")
        return self

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        atexit.unregister(self.shutdown)
        self.orchestrator.eject()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self.session.close()
        logger.info("Launcher context shut down")

    def __enter__(self) -> "LauncherContext":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _bind_install_dir(self, install_dir: str) -> None:
        self.installer = Installer(install_dir, session=self.session, notifier=self.notifier)
        self.registry = InstalledVersionRegistry(install_dir, notifier=self.notifier)
        logger.debug(f"Using install directory {install_dir}")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("LauncherContext.initialize() has not been called")

    # ------------------------------------------------------------------
    # Releases and installs
    # ------------------------------------------------------------------

    def available_assets(self, release: Optional[Release] = None, platform: Optional[str] = None) -> List[AssetChoice]:
        """Ranked downloads for this machine from `release` (the latest by default)."""
        self._require_initialized()
        release = release or self.catalog.latest()
        return select_assets(release.assets, self.profile, platform or current_platform())

    def install(self, asset: ReleaseAsset, version: Optional[str] = None, on_progress=None) -> InstalledVersion:
        """Install an asset and make it the backend used by `launch`."""
        self._require_initialized()
        installed = self.installer.install(asset, version=version, on_progress=on_progress)
        self.config.set_current_binary(installed.install_path)
        return installed

    def installed_versions(self) -> List[InstalledVersion]:
        self._require_initialized()
        return self.registry.list()

    def current_version(self) -> Optional[InstalledVersion]:
        self._require_initialized()
        binary = self.config.current_binary
        if not binary:
            return None
        return self.registry.find_by_binary(binary)

    def check_for_update(self) -> Optional[UpdateInfo]:
        """Compare the current backend with the latest release, None if nothing is installed."""
        current = self.current_version()
        if current is None:
            return None
        return self.catalog.check_for_update(current.version)

    def acceleration_support(self) -> Optional[AccelerationSupport]:
        """Backend libraries bundled with the current build, None if nothing is installed."""
        self._require_initialized()
        binary = self.config.current_binary
        if not binary:
            return None
        return detect_acceleration_support(binary)

    def available_accelerations(self, include_disabled: bool = False) -> List[AccelerationOption]:
        return available_accelerations(self.profile, self.acceleration_support(), include_disabled=include_disabled)

    # ------------------------------------------------------------------
    # Backend process
    # ------------------------------------------------------------------

    def launch(self, config_name: Optional[str] = None, extra_args: Sequence[str] = ()) -> ProcessHandle:
        """
        Launch the current backend with a saved argument set.

        Args:
            config_name: Saved config to use; the selected config when omitted
            extra_args: Arguments appended after the saved ones

        Raises:
            SpawnFailed: No backend is installed, the config does not exist,
                or the process could not be started
        """
        self._require_initialized()
        binary = self.config.current_binary
        if not binary:
            raise SpawnFailed("no backend installed")

        args: List[str] = []
        name = config_name or self.config.selected_config
        if name:
            saved = self.config.load_config(name)
            if saved is None:
                raise SpawnFailed(f"unknown config '{name}'", binary)
            args.extend(saved.args)
            self.config.set_selected_config(name)
        args.extend(extra_args)
        return self.orchestrator.launch(binary, args)

    def eject(self) -> None:
        self.orchestrator.eject()
