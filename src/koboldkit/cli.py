"""
Command-line entry point.

    koboldkit --version             print the koboldkit version
    koboldkit --cli <backend args>  run the current backend in the foreground
    koboldkit                       interactive session

Headless mode hands the terminal to the backend, forwards SIGINT/SIGTERM to
it and exits with the backend's exit code, or 128 + signal number when
stopped by a signal.
"""

import argparse
import cmd
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__
from .assets import AssetChoice, format_device_summary, format_download_size
from .config_store import BackendConfig, ConfigStore
from .constants import LOG_FILE_NAME
from .context import LauncherContext
from .exceptions import KoboldKitError
from .notifications import Channel
from .orchestrator import ProcessState, terminate_process, watch_exit
from .paths import config_dir

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "KOBOLDKIT_LOG_LEVEL"
FORWARDED_SIGNALS = ("SIGINT", "SIGTERM")


def setup_logging() -> None:
    """Log to stderr at KOBOLDKIT_LOG_LEVEL (default WARNING) and to koboldkit.log at DEBUG."""
    level_name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setLevel(level)
    try:
        log_dir = config_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)
    except OSError as e:
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


# ============================================================================
# HEADLESS MODE
# ============================================================================

def run_headless(backend_args: Sequence[str], config: Optional[ConfigStore] = None) -> int:
    """
    Run the current backend with inherited stdio until it exits.

    Returns:
        The process exit status for koboldkit itself
    """
    config = config or ConfigStore()
    binary = config.current_binary
    if not binary or not Path(binary).is_file():
        print("No backend installed. Run koboldkit and use 'install' first.", file=sys.stderr)
        return 1

    command = [binary, *backend_args]
    try:
        proc = subprocess.Popen(command, cwd=str(Path(binary).parent))
    except OSError as e:
        logger.error(f"Failed to start backend {binary}: {e}")
        print(f"Failed to start backend: {e}", file=sys.stderr)
        return 1

    exited = watch_exit(proc)
    received: List[int] = []

    def _forward(signum, frame):
        if not received:
            received.append(signum)
            threading.Thread(target=terminate_process, args=(proc, exited), daemon=True).start()

    previous = {}
    for name in FORWARDED_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is not None:
            previous[signum] = signal.signal(signum, _forward)
    try:
        # Short waits keep the main thread responsive to signals
        while not exited.wait(0.2):
            pass
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if received:
        return 128 + received[0]
    return_code = proc.returncode
    return 128 - return_code if return_code < 0 else return_code


# ============================================================================
# INTERACTIVE MODE
# ============================================================================

class LauncherShell(cmd.Cmd):
    intro = f"koboldkit {__version__}. Type 'help' for commands."
    prompt = "koboldkit> "

    def __init__(self, context: LauncherContext, stdout=None):
        super().__init__(stdout=stdout)
        self.context = context
        self._choices: List[AssetChoice] = []
        self._release_version: Optional[str] = None
        context.notifier.subscribe(Channel.BACKEND_OUTPUT, self._print)

    def _print(self, text: str = "") -> None:
        self.stdout.write(f"{text}\n")
        self.stdout.flush()

    def onecmd(self, line: str) -> bool:
        try:
            return super().onecmd(line)
        except KoboldKitError as e:
            self._print(f"Error: {e}")
            return False

    def emptyline(self) -> bool:
        return False

    def do_status(self, arg: str) -> None:
        """status: show detected hardware and the installed backend"""
        profile = self.context.profile
        self._print(f"CPU: {', '.join(profile.cpu.info)} (AVX: {profile.cpu.avx}, AVX2: {profile.cpu.avx2})")
        self._print(f"GPU: {format_device_summary(profile.gpus) or 'none detected'}")
        current = self.context.current_version()
        self._print(f"Backend: {f'{current.filename} {current.version}' if current else 'not installed'}")
        accelerations = self.context.available_accelerations()
        self._print(f"Acceleration: {', '.join(option.label for option in accelerations)}")
        self._print(f"Install directory: {self.context.config.install_dir}")
        orchestrator = self.context.orchestrator
        self._print(f"State: {orchestrator.state.value}")
        if orchestrator.state in (ProcessState.SPAWNING, ProcessState.RUNNING):
            self._print(f"Server: {orchestrator.launch_info.server_url}")

    def do_releases(self, arg: str) -> None:
        """releases: list downloads from the latest release, recommended first"""
        release = self.context.catalog.latest()
        self._choices = self.context.available_assets(release)
        self._print(f"Release {release.tag}")
        for i, choice in enumerate(self._choices, 1):
            marker = "*" if choice.recommended else " "
            size = format_download_size(choice.asset.size_bytes, choice.asset.download_url)
            self._print(f"{marker} {i}. {choice.asset.name} {size}  {choice.description}")
        self._release_version = release.version

    def do_install(self, arg: str) -> None:
        """install [n]: install entry n from 'releases' (the recommended one by default)"""
        if not self._choices:
            self.do_releases("")
        if not self._choices:
            self._print("No downloads available for this platform.")
            return
        try:
            index = int(arg) - 1 if arg.strip() else 0
            if index < 0:
                raise IndexError(index)
            choice = self._choices[index]
        except (ValueError, IndexError):
            self._print(f"Choose a number between 1 and {len(self._choices)}.")
            return

        def _progress(percent: int) -> None:
            if percent >= 0:
                self.stdout.write(f"\rDownloading {choice.asset.name}: {percent}%")
                self.stdout.flush()

        installed = self.context.install(choice.asset, version=self._release_version, on_progress=_progress)
        self._print()
        self._print(f"Installed {installed.version} at {installed.install_path}")

    def do_versions(self, arg: str) -> None:
        """versions: list installed backends"""
        current = self.context.config.current_binary
        for installed in self.context.installed_versions():
            marker = "*" if installed.install_path == current else " "
            self._print(
                f"{marker} {installed.version}  {installed.folder.name}  {installed.filename}  {installed.download_date[:10]}"
            )

    def do_use(self, arg: str) -> None:
        """use <version|folder>: make an installed backend the current one"""
        installed = self.context.registry.get(arg.strip())
        if installed is None:
            self._print(f"Version {arg.strip()!r} is not installed.")
            return
        self.context.config.set_current_binary(installed.install_path)
        self._print(f"Using {installed.version} ({installed.folder.name})")

    def do_remove(self, arg: str) -> None:
        """remove <version|folder>: delete an installed backend"""
        if self.context.registry.remove(arg.strip()):
            self._print(f"Removed {arg.strip()}")
        else:
            self._print(f"Version {arg.strip()!r} is not installed.")

    def do_update(self, arg: str) -> None:
        """update: check whether a newer backend release exists"""
        info = self.context.check_for_update()
        if info is None:
            self._print("No backend installed.")
        elif info.has_update:
            self._print(f"Update available: {info.current_version} -> {info.latest_version}")
        else:
            self._print(f"Up to date ({info.current_version}).")

    def do_installdir(self, arg: str) -> None:
        """installdir [path]: show or change the install directory"""
        if arg.strip():
            self.context.config.set_install_dir(arg.strip())
        self._print(str(self.context.config.install_dir))

    def do_configs(self, arg: str) -> None:
        """configs: list saved launch configurations"""
        selected = self.context.config.selected_config
        for name in self.context.config.list_configs():
            saved = self.context.config.load_config(name)
            marker = "*" if name == selected else " "
            self._print(f"{marker} {name}: {shlex.join(saved.args) if saved else ''}")

    def do_save(self, arg: str) -> None:
        """save <name> <backend args...>: save a launch configuration"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: save <name> <backend args...>")
            return
        self.context.config.save_config(BackendConfig(name=parts[0], args=parts[1:]))
        self._print(f"Saved {parts[0]}")

    def do_delete(self, arg: str) -> None:
        """delete <name>: delete a launch configuration"""
        if not self.context.config.delete_config(arg.strip()):
            self._print(f"No config named {arg.strip()!r}.")

    def do_launch(self, arg: str) -> None:
        """launch [config]: start the backend with a saved configuration"""
        handle = self.context.launch(arg.strip() or None)
        self._print(f"Started pid {handle.pid}, server will listen on {handle.server_url}")

    def do_eject(self, arg: str) -> None:
        """eject: stop the running backend"""
        self.context.eject()
        self._print("Backend stopped.")

    def do_quit(self, arg: str) -> bool:
        """quit: stop the backend and exit"""
        return True

    do_exit = do_quit

    def do_EOF(self, arg: str) -> bool:
        self._print()
        return True


def run_interactive() -> int:
    with LauncherContext() as context:
        shell = LauncherShell(context)
        try:
            shell.cmdloop()
        except KeyboardInterrupt:
            shell._print()
    return 0


# ============================================================================
# ENTRY POINT
# ============================================================================

def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="koboldkit",
        description="Install, launch and manage KoboldCpp backends.",
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--version",
        action="store_true",
        help="Print the koboldkit version and exit",
    )
    mode_group.add_argument(
        "--cli",
        nargs=argparse.REMAINDER,
        metavar="ARGS",
        help="Run the current backend headless with the given arguments",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = create_argument_parser().parse_args(argv)
    if args.version:
        print(__version__)
        return 0

    setup_logging()
    if args.cli is not None:
        return run_headless(args.cli)
    return run_interactive()


if __name__ == "__main__":
    sys.exit(main())
