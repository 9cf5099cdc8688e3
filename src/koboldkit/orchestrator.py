#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Backend process orchestration.

The orchestrator owns at most one live KoboldCpp process. It spawns the
binary, pumps stdout/stderr line by line onto the BACKEND_OUTPUT channel,
watches for the ready banner and the exit, and stops the process with a
graceful-then-forced protocol:

    IDLE -> SPAWNING -> RUNNING -> TERMINATING -> EXITED

SPAWNING becomes RUNNING on the first line of output. EXITED is reached on
the child's own exit or once a forced kill has been issued after the
termination timeout.

Callers only ever receive immutable ProcessHandle snapshots; the Popen
object and the helper threads stay private.
"""

import logging
import signal
import subprocess
import sys
import threading
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Tuple, Union

import psutil
from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_HOST, DEFAULT_PORT, SERVER_READY_SIGNAL, TERMINATE_TIMEOUT_MS
from .events import CancellableTimer, OneShot, first_completed
from .exceptions import SpawnFailed, TerminationError
from .notifications import Channel, NotificationBus

logger = logging.getLogger(__name__)

# Time to wait for a killed process before a relaunch gives up
KILL_GRACE_S = 5.0
# Time the exit watcher waits for the output pumps to drain
OUTPUT_DRAIN_S = 1.0
RECENT_OUTPUT_LINES = 200


class ProcessState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


class LaunchInfo(BaseModel):
    """Runtime details inferred from a backend argument list."""
    model_config = ConfigDict(frozen=True)

    host: str = Field(DEFAULT_HOST, description="Host the server binds to")
    port: int = Field(DEFAULT_PORT, description="Port the server listens on")
    is_image_mode: bool = Field(False, description="An image generation model was given (--sdmodel)")
    is_text_mode: bool = Field(False, description="A text model was given (--model)")
    debug_mode: bool = Field(False, description="--debugmode was passed")
    remote_tunnel: bool = Field(False, description="--remotetunnel was passed")

    @property
    def server_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ProcessHandle(BaseModel):
    """Snapshot of the orchestrator's backend process."""
    model_config = ConfigDict(frozen=True)

    pid: int = Field(..., description="Operating system process id")
    spawn_args: Tuple[str, ...] = Field(..., description="Full command line, binary first")
    state: ProcessState = Field(..., description="Lifecycle state when the snapshot was taken")
    resolved_host: str = Field(DEFAULT_HOST, description="Host inferred from the arguments")
    resolved_port: int = Field(DEFAULT_PORT, description="Port inferred from the arguments")
    is_image_mode: bool = Field(False, description="Whether an image model was requested")
    is_text_mode: bool = Field(False, description="Whether a text model was requested")
    ready: bool = Field(False, description="Whether the ready banner has been seen")
    return_code: Optional[int] = Field(None, description="Exit status once the process has exited")

    @property
    def server_url(self) -> str:
        return f"http://{self.resolved_host}:{self.resolved_port}"


# ============================================================================
# ARGUMENT PARSING
# ============================================================================

def parse_kobold_config(args: Sequence[str]) -> LaunchInfo:
    """
    Infer host, port and mode flags from backend arguments.

    Informational only: the arguments passed to the backend are never
    changed. An unparsable --port value is ignored.

    Example:
        >>> info = parse_kobold_config(["--port", "8081", "--sdmodel"])
        >>> info.host, info.port, info.is_image_mode, info.is_text_mode
        ('localhost', 8081, True, False)
    """
    host = DEFAULT_HOST
    port = DEFAULT_PORT
    for i, arg in enumerate(args[:-1]):
        value = args[i + 1]
        if arg in ("--hostname", "--host"):
            host = value
        elif arg == "--port":
            try:
                port = int(value)
            except ValueError:
                logger.debug(f"Ignoring non-numeric port {value!r}")

    return LaunchInfo(
        host=host,
        port=port,
        is_image_mode="--sdmodel" in args,
        is_text_mode="--model" in args,
        debug_mode="--debugmode" in args,
        remote_tunnel="--remotetunnel" in args,
    )


def exit_message(return_code: int) -> str:
    """Describe a Popen return code the way the launcher's log shows it."""
    if return_code < 0 and sys.platform != "win32":
        try:
            name = signal.Signals(-return_code).name
        except ValueError:
            name = str(-return_code)
        return f"[INFO] Process terminated with signal {name}"
    if return_code == 0:
        return "[INFO] Process exited successfully"
    if return_code > 1 or return_code < 0:
        return f"[ERROR] Process exited with code {return_code}"
    return f"[INFO] Process exited with code {return_code}"


# ============================================================================
# TERMINATION
# ============================================================================

def watch_exit(proc: subprocess.Popen, on_exit: Optional[Callable[[int], None]] = None) -> OneShot:
    """
    Start a daemon thread that waits for `proc` and fires the returned OneShot.

    `on_exit` runs on that thread with the return code before the event fires.
    """
    exited = OneShot(f"exit:{proc.pid}")

    def _wait():
        return_code = proc.wait()
        try:
            if on_exit:
                on_exit(return_code)
        finally:
            exited.fire()

    threading.Thread(target=_wait, name=f"exit-watcher-{proc.pid}", daemon=True).start()
    return exited


def _log_termination_error(error: TerminationError) -> None:
    logger.error(str(error))


def _kill_children(pid: int, on_error: Callable[[TerminationError], None]) -> None:
    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.Error as e:
        logger.debug(f"Could not list children of {pid}: {e}")
        return
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            on_error(TerminationError(f"Failed to kill child process {child.pid}: {e}"))


def terminate_process(
    proc: Optional[subprocess.Popen],
    exited: OneShot,
    timeout_ms: int = TERMINATE_TIMEOUT_MS,
    on_error: Optional[Callable[[TerminationError], None]] = None,
) -> None:
    """
    Stop a process gracefully, then forcefully. Never raises.

    Sends the platform's graceful stop (SIGTERM on POSIX, TerminateProcess on
    Windows) and races `exited` against a `timeout_ms` timer. If the timer
    wins and the process is still alive, its children and then the process
    itself are killed. Returns as soon as the process is gone or the kill
    has been issued.

    Args:
        proc: Process to stop; None or an already-exited process is a no-op
        exited: Fires when the process exits (see `watch_exit`)
        timeout_ms: Grace period before the forced kill
        on_error: Receives signal delivery failures (logged by default)
    """
    on_error = on_error or _log_termination_error
    if proc is None or exited.is_set() or proc.poll() is not None:
        return

    try:
        proc.terminate()
    except OSError as e:
        on_error(TerminationError(f"Graceful stop of {proc.pid} failed: {e}"))

    deadline = CancellableTimer(timeout_ms / 1000.0, name="terminate-timeout").start()
    winner = first_completed(exited, deadline)
    if winner is exited or proc.poll() is not None:
        logger.debug(f"Process {proc.pid} exited after graceful stop")
        return

    logger.warning(f"Process {proc.pid} ignored graceful stop for {timeout_ms} ms, killing")
    _kill_children(proc.pid, on_error)
    try:
        proc.kill()
    except OSError as e:
        on_error(TerminationError(f"Forced kill of {proc.pid} failed: {e}"))


def _popen_platform_kwargs() -> dict:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class BackendOrchestrator:
    """
    Spawn, observe and stop a single backend process.

    A second `launch` while a backend is alive first terminates the running
    one and waits for it to be gone, so two backends never overlap.

    Args:
        notifier: Bus that receives BACKEND_OUTPUT lines
        ready_signal: Output substring that marks the server as ready
        terminate_timeout_ms: Default grace period for `terminate`

    Example:
        >>> orchestrator = BackendOrchestrator(bus)
        >>> handle = orchestrator.launch(binary, ["--model", "llama.gguf"])
        >>> orchestrator.wait_until_ready(timeout=120)
        True
        >>> orchestrator.eject()
    """

    def __init__(
        self,
        notifier: Optional[NotificationBus] = None,
        ready_signal: str = SERVER_READY_SIGNAL,
        terminate_timeout_ms: int = TERMINATE_TIMEOUT_MS,
    ):
        self.notifier = notifier
        self.ready_signal = ready_signal
        self.terminate_timeout_ms = terminate_timeout_ms

        self._lifecycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._state = ProcessState.IDLE
        self._spawn_args: Tuple[str, ...] = ()
        self._launch_info = LaunchInfo()
        self._return_code: Optional[int] = None
        self._ready = OneShot("ready")
        self._exited = OneShot("exit")
        self._recent: Deque[str] = deque(maxlen=RECENT_OUTPUT_LINES)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def handle(self) -> Optional[ProcessHandle]:
        """Snapshot of the current or most recent process, None when idle."""
        with self._state_lock:
            if self._proc is None:
                return None
            return ProcessHandle(
                pid=self._proc.pid,
                spawn_args=self._spawn_args,
                state=self._state,
                resolved_host=self._launch_info.host,
                resolved_port=self._launch_info.port,
                is_image_mode=self._launch_info.is_image_mode,
                is_text_mode=self._launch_info.is_text_mode,
                ready=self._ready.is_set(),
                return_code=self._return_code,
            )

    @property
    def launch_info(self) -> LaunchInfo:
        return self._launch_info

    def is_running(self) -> bool:
        return self._proc is not None and not self._exited.is_set()

    def recent_output(self) -> List[str]:
        """The last lines the backend printed, oldest first."""
        return list(self._recent)

    def _set_state(self, state: ProcessState, only_from: Tuple[ProcessState, ...] = ()) -> None:
        with self._state_lock:
            if only_from and self._state not in only_from:
                return
            self._state = state
        logger.debug(f"Backend state: {state.value}")

    def _publish(self, line: str) -> None:
        self._recent.append(line)
        if self.notifier:
            self.notifier.publish(Channel.BACKEND_OUTPUT, line)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch(self, binary_path: Union[str, Path], args: Sequence[str] = ()) -> ProcessHandle:
        """
        Start the backend.

        Raises:
            SpawnFailed: The binary is missing, the previous backend would not
                exit, or the OS refused to start the process
        """
        with self._lifecycle_lock:
            if self.is_running():
                logger.info("Backend already running, stopping it before relaunch")
                self._terminate_locked(self.terminate_timeout_ms)
                if not self._exited.wait(KILL_GRACE_S):
                    raise SpawnFailed("previous backend did not exit", str(binary_path))

            binary = Path(binary_path)
            if not binary.is_file():
                raise SpawnFailed("binary not found", str(binary))

            command = (str(binary), *[str(arg) for arg in args])
            self._launch_info = parse_kobold_config(list(command[1:]))
            self._ready = OneShot("ready")
            self._recent.clear()
            self._set_state(ProcessState.SPAWNING)
            self._publish(" ".join(command))

            try:
                proc = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    cwd=str(binary.parent),
                    **_popen_platform_kwargs(),
                )
            except OSError as e:
                with self._state_lock:
                    self._state = ProcessState.IDLE
                    self._proc = None
                raise SpawnFailed(str(e), str(binary))

            with self._state_lock:
                self._proc = proc
                self._spawn_args = command
                self._return_code = None

            logger.info(f"Started backend pid={proc.pid}: {' '.join(command)}")
            pumps = [
                self._start_pump(proc, proc.stdout, f"stdout-{proc.pid}"),
                self._start_pump(proc, proc.stderr, f"stderr-{proc.pid}"),
            ]
            self._exited = watch_exit(proc, lambda return_code: self._on_exit(proc, pumps, return_code))
            return self.handle

    def _is_current(self, proc: subprocess.Popen) -> bool:
        return self._proc is proc

    def _start_pump(self, proc: subprocess.Popen, stream, name: str) -> threading.Thread:
        thread = threading.Thread(target=self._pump, args=(proc, stream, self._ready), name=name, daemon=True)
        thread.start()
        return thread

    def _pump(self, proc: subprocess.Popen, stream, ready: OneShot) -> None:
        for raw_line in iter(stream.readline, ""):
            line = raw_line.rstrip("\r\n")
            if self._is_current(proc):
                self._set_state(ProcessState.RUNNING, only_from=(ProcessState.SPAWNING,))
            if self.ready_signal in line and ready.fire():
                logger.info("Backend reported ready")
            self._publish(line)
        stream.close()

    def _on_exit(self, proc: subprocess.Popen, pumps: List[threading.Thread], return_code: int) -> None:
        for pump in pumps:
            pump.join(OUTPUT_DRAIN_S)
        if self._is_current(proc):
            with self._state_lock:
                self._return_code = return_code
            self._set_state(ProcessState.EXITED)
        message = exit_message(return_code)
        log = logger.error if message.startswith("[ERROR]") else logger.info
        log(f"Backend pid={proc.pid}: {message}")
        self._publish(message)

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the ready banner appears.

        Returns:
            True if the backend reported ready; False if it exited first or
            `timeout` elapsed
        """
        if self._proc is None:
            return False
        first_completed(self._ready, self._exited, timeout=timeout)
        return self._ready.is_set()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _terminate_locked(self, timeout_ms: int) -> None:
        proc = self._proc
        if proc is None or self._exited.is_set():
            return
        self._set_state(ProcessState.TERMINATING, only_from=(ProcessState.SPAWNING, ProcessState.RUNNING))
        logger.info(f"Stopping backend pid={proc.pid}")
        terminate_process(proc, self._exited, timeout_ms)
        self._set_state(ProcessState.EXITED)

    def terminate(self, timeout_ms: Optional[int] = None) -> None:
        """Stop the backend if one is running. Never raises."""
        with self._lifecycle_lock:
            try:
                self._terminate_locked(timeout_ms if timeout_ms is not None else self.terminate_timeout_ms)
            except Exception:
                logger.exception("Unexpected error while stopping backend")
                self._set_state(ProcessState.EXITED)

    def eject(self) -> None:
        """Stop the backend and forget it, returning to IDLE."""
        self.terminate()
        with self._lifecycle_lock:
            with self._state_lock:
                self._proc = None
                self._spawn_args = ()
                self._return_code = None
                self._state = ProcessState.IDLE
            self._launch_info = LaunchInfo()
