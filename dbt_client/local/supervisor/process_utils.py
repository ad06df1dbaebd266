import sys
import psutil
import logging
import threading
import subprocess
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from dbt_client.local.supervisor.shutdown import terminate_process_tree

log = logging.getLogger(__name__)


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific keyword arguments for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def _read_pipe(pipe, process_name: str, level: int) -> None:
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            proc_logger.log(level, line)
    except Exception as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str) -> None:
    """
    Starts a background thread that drains the process's stderr into the trace logger.

    stdout and stdin stay untouched; they carry the protocol channel.
    """
    if process.stderr:
        threading.Thread(
            target=_read_pipe,
            args=(process.stderr, name, logging.DEBUG),
            daemon=True,
            name=f"{name}-trace",
        ).start()


class ProcessHandle:
    """
    A handle on one launched analyzer process.

    Exposes the process's stdio, readiness and exit notifications, and a
    forced `terminate()` that takes the whole process tree down.
    """

    def __init__(self, popen: subprocess.Popen, name: str, kill_timeout: float = 3) -> None:
        self.name = name
        self.kill_timeout = kill_timeout
        self._popen = popen
        try:
            self._proc: Optional[psutil.Process] = psutil.Process(popen.pid)
        except psutil.NoSuchProcess:
            self._proc = None

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._exited = threading.Event()
        self._ready_callbacks: List[Callable[[], None]] = []
        self._exit_callbacks: List[Callable[[Optional[int]], None]] = []

        self._waiter = threading.Thread(target=self._wait_for_exit, daemon=True, name=f"{name}-waiter")
        self._waiter.start()

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def stdin(self):
        return self._popen.stdin

    @property
    def stdout(self):
        return self._popen.stdout

    @property
    def returncode(self) -> Optional[int]:
        return self._popen.returncode

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def _wait_for_exit(self) -> None:
        returncode = self._popen.wait()
        log.info(f"Process '{self.name}' (PID: {self.pid}) exited with code {returncode}.")
        with self._lock:
            self._exited.set()
            callbacks = list(self._exit_callbacks)
            self._exit_callbacks.clear()
        for callback in callbacks:
            self._run_callback(callback, returncode)

    def _run_callback(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            log.error(f"Error in callback for process '{self.name}': {e}", exc_info=True)

    def on_ready(self, callback: Callable[[], None]) -> None:
        """Registers a callback fired once the protocol layer acknowledges start."""
        with self._lock:
            if not self._ready.is_set():
                self._ready_callbacks.append(callback)
                return
        self._run_callback(callback)

    def on_exit(self, callback: Callable[[Optional[int]], None]) -> None:
        """Registers a callback fired once with the exit code when the process ends."""
        with self._lock:
            if not self._exited.is_set():
                self._exit_callbacks.append(callback)
                return
        self._run_callback(callback, self.returncode)

    def mark_ready(self) -> None:
        with self._lock:
            if self._ready.is_set():
                return
            self._ready.set()
            callbacks = list(self._ready_callbacks)
            self._ready_callbacks.clear()
        log.debug(f"Process '{self.name}' signalled readiness.")
        for callback in callbacks:
            self._run_callback(callback)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Waits for the process to exit.

        :param timeout: Seconds to wait, or None to wait forever.
        :return: True if the process has exited.
        """
        return self._exited.wait(timeout)

    def terminate(self) -> None:
        """Forcibly stops the process and its children. Safe to call repeatedly."""
        if self.has_exited:
            return
        log.warning(f"Terminating process '{self.name}' (PID: {self.pid}).")
        terminate_process_tree(self._proc, self.kill_timeout)
        self._exited.wait(self.kill_timeout)


def get_process_args(command: str, arguments: Sequence[str] = ()) -> List[str]:
    """Returns the argument vector for launching the analyzer."""
    return [str(command), *[str(a) for a in arguments]]


def launch_process(
    command: str,
    environment: Mapping[str, str],
    arguments: Sequence[str] = (),
    name: str = "analyzer",
    kill_timeout: float = 3,
) -> ProcessHandle:
    """
    Launches the analyzer with piped stdio and returns a handle on it.

    :param command: The executable to run.
    :param environment: The complete environment for the child.
    :param arguments: Extra command-line arguments.
    :param name: The logical name of the process for logging context.
    :param kill_timeout: Seconds granted to SIGTERM before SIGKILL on terminate().
    :raises OSError: If the executable cannot be launched.
    """
    args = get_process_args(command, arguments)
    log.info(f"Starting process: {name} ({' '.join(args)})...")
    p = subprocess.Popen(
        args,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=dict(environment),
        **_get_popen_creation_flags(),
    )
    log_process_output(p, name)
    log.info(f"{name} started with PID: {p.pid}")
    return ProcessHandle(p, name, kill_timeout=kill_timeout)
