import time
import logging
import threading
from typing import Any, Callable, List, Optional

from lsprotocol.types import FileEvent

from dbt_client.local.config import effective_settings
from .connection import ConnectionConfig, ConnectionState, build_connection_config
from .errors import InvalidState, LaunchFailure, ShutdownTimeout
from .host import HostContext
from .process_utils import ProcessHandle, launch_process
from .protocol import ProcessLivenessProtocol, ProtocolLayer, StdioChannel
from .watchers import FileWatcher

log = logging.getLogger(__name__)


class LanguageClientSupervisor:
    """
    Manages the one connection between the editor and the external analyzer.

    The host runtime calls `activate()` and `deactivate()`; the supervisor turns
    those calls into launching, readiness tracking, graceful shutdown and
    forced termination of the analyzer process, and forwards workspace file
    changes matching the configured globs to the protocol layer.

    State machine::

        STOPPED --activate()--> STARTING --(ready)--> RUNNING
        RUNNING | STARTING --deactivate()--> STOPPING --(ack | timeout)--> STOPPED
    """

    def __init__(
        self,
        settings: Any = None,
        protocol: Optional[ProtocolLayer] = None,
        launcher: Callable[..., ProcessHandle] = launch_process,
        debug: bool = False,
        ready_timeout: Optional[float] = None,
        shutdown_timeout: Optional[float] = None,
    ) -> None:
        self.settings = settings if settings is not None else effective_settings
        self.protocol = protocol if protocol is not None else ProcessLivenessProtocol(
            getattr(self.settings, "READY_SETTLE_SECONDS", 1)
        )
        self.launcher = launcher
        self.debug = debug
        self.ready_timeout = ready_timeout if ready_timeout is not None else self.settings.READY_TIMEOUT
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else self.settings.GRACEFUL_SHUTDOWN_TIMEOUT
        )
        self.kill_timeout = getattr(self.settings, "FORCED_KILL_TIMEOUT", 3)
        self.poll_interval = getattr(self.settings, "READY_POLL_INTERVAL", 0.05)

        self.config: Optional[ConnectionConfig] = None
        self.process: Optional[ProcessHandle] = None
        self.channel: Optional[StdioChannel] = None
        self.watchers: List[FileWatcher] = []

        self._host: Optional[HostContext] = None
        self._state = ConnectionState.STOPPED
        # Every transition and every hand-over of process/channel/watchers happens
        # under this lock. Plain reads of `_state` are single attribute loads and skip it.
        self._state_lock = threading.Lock()
        # Guards event ordering between the watcher threads and the RUNNING transition.
        self._events_lock = threading.Lock()
        self._pending_events: List[FileEvent] = []
        # Wakes the readiness wait on ready, exit or deactivate().
        self._wakeup = threading.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, target: ConnectionState) -> None:
        with self._state_lock:
            if self._state is not target:
                log.info(f"Connection state: {self._state.value} -> {target.value}")
            self._state = target

    def _is_starting(self) -> bool:
        with self._state_lock:
            return self._state is ConnectionState.STARTING

    def in_scope(self, uri: str, language_id: str) -> bool:
        """Checks whether an open document should be routed to the analyzer."""
        config = self.config
        return config is not None and config.in_scope(uri, language_id)

    #* --- Activation ---
    def activate(self, host: HostContext) -> None:
        """
        Launches the analyzer and waits for the protocol layer to acknowledge start.

        If deactivate() interrupts the activation, everything acquired so far is
        released and activate() returns without raising.

        :param host: The host runtime's registration surface.
        :raises InvalidState: If the connection is not stopped.
        :raises LaunchFailure: If the analyzer could not be started; the state stays STOPPED.
        """
        with self._state_lock:
            if self._state is not ConnectionState.STOPPED:
                raise InvalidState("activate", self._state)
            try:
                config = build_connection_config(self.settings, debug=self.debug)
            except ValueError as e:
                config, config_error = None, e
            else:
                config_error = None
                log.info(f"Connection state: {self._state.value} -> {ConnectionState.STARTING.value}")
                self._state = ConnectionState.STARTING
                self._wakeup.clear()

        self._host = host
        if config is None:
            self._fail_activation(f"Invalid language client configuration: {config_error}", None, config_error)

        self.config = config
        log.info(f"Activating {config.client_name}...")
        start_time = time.time()

        try:
            process = self.launcher(
                config.executable,
                config.merged_environment(),
                arguments=config.arguments,
                name=config.client_id,
                kill_timeout=self.kill_timeout,
            )
        except Exception as e:
            if self._cancel_if_stopping(config):
                return
            self._cleanup_after_failure()
            self._fail_activation(
                f"Failed to launch {config.client_name} from '{config.executable}': {e}", config.executable, e
            )

        with self._state_lock:
            cancelled = self._state is not ConnectionState.STARTING
            if not cancelled:
                self.process = process
                self.channel = StdioChannel(process)
        if cancelled:
            self._cancel_if_stopping(config, process)
            return
        channel = self.channel
        process.on_ready(self._wakeup.set)
        process.on_exit(lambda returncode: self._on_process_exit(process, returncode))

        watchers: List[FileWatcher] = []
        try:
            self._register_watchers(host, config, watchers)
            with self._state_lock:
                cancelled = self._state is not ConnectionState.STARTING
                if not cancelled:
                    self.watchers = watchers
            if not cancelled:
                self.protocol.start(channel, config)
        except Exception as e:
            if self._cancel_if_stopping(config, process, watchers):
                return
            log.error(f"Activation of {config.client_name} failed: {e}", exc_info=True)
            self._cleanup_after_failure(process, watchers)
            self._fail_activation(f"Failed to start {config.client_name}: {e}", config.executable, e)
        if cancelled:
            self._cancel_if_stopping(config, process, watchers)
            return

        if not self._await_ready(process):
            if self._cancel_if_stopping(config, process, watchers):
                return
            if process.has_exited:
                reason = f"exited with code {process.returncode} before signalling readiness"
            else:
                reason = f"did not signal readiness within {self.ready_timeout} seconds"
            self._cleanup_after_failure(process, watchers)
            self._fail_activation(f"{config.client_name} {reason}.", config.executable)

        with self._events_lock:
            with self._state_lock:
                cancelled = self._state is not ConnectionState.STARTING
                if not cancelled:
                    log.info(f"Connection state: {self._state.value} -> {ConnectionState.RUNNING.value}")
                    self._state = ConnectionState.RUNNING
            if not cancelled:
                pending, self._pending_events = self._pending_events, []
                if pending:
                    log.debug(f"Forwarding {len(pending)} file events queued during startup.")
                    self._forward_file_events(pending)
        if cancelled:
            self._cancel_if_stopping(config, process, watchers)
            return

        log.info(f"{config.client_name} is running (PID: {process.pid}), ready in {time.time() - start_time:.2f} seconds.")

    def _register_watchers(self, host: HostContext, config: ConnectionConfig, watchers: List[FileWatcher]) -> None:
        for pattern in config.watched_file_patterns:
            watcher = host.create_file_watcher(pattern)
            watchers.append(watcher)
            watcher.on_change(self._on_file_events)
            log.debug(f"Registered file watcher for '{pattern}'.")

    def _await_ready(self, process: ProcessHandle) -> bool:
        """
        Waits for the start acknowledgement, bounded by the ready timeout.

        :return: True once ready; False on timeout, process exit or cancellation.
        """
        deadline = time.monotonic() + self.ready_timeout
        while True:
            if self._state is not ConnectionState.STARTING:
                return False
            if process.is_ready:
                return True
            remaining = deadline - time.monotonic()
            if process.has_exited or remaining <= 0:
                return False
            self._wakeup.wait(remaining)
            self._wakeup.clear()

    def _fail_activation(self, message: str, command: Optional[str], cause: Optional[BaseException] = None) -> None:
        """Reports a LaunchFailure to the host and raises it."""
        log.critical(message)
        if self._host is not None:
            self._host.report_error(message)
        raise LaunchFailure(message, command=command) from cause

    def _release(self, process: Optional[ProcessHandle], watchers: List[FileWatcher]) -> None:
        """Disposes the given watchers and terminates the given process."""
        for watcher in watchers:
            try:
                watcher.dispose()
            except Exception as e:
                log.error(f"Failed to dispose file watcher for '{watcher.pattern}': {e}", exc_info=True)
        if process is not None:
            self._terminate(process)

    def _cancel_if_stopping(
        self,
        config: ConnectionConfig,
        process: Optional[ProcessHandle] = None,
        watchers: Optional[List[FileWatcher]] = None,
    ) -> bool:
        """
        Releases what this activation acquired once deactivate() has taken over.
        The state is left to deactivate().

        :return: True if the activation was cancelled.
        """
        if self._is_starting():
            return False
        log.info(f"Activation of {config.client_name} was cancelled by deactivate().")
        self._release(process, watchers or [])
        return True

    def _cleanup_after_failure(
        self, process: Optional[ProcessHandle] = None, watchers: Optional[List[FileWatcher]] = None
    ) -> None:
        """Releases whatever a failed activation acquired and returns to STOPPED."""
        log.warning("Cleaning up after a failed activation.")
        self._release(process, watchers or [])
        with self._events_lock:
            self._pending_events.clear()
        with self._state_lock:
            if self.process is process:
                self.process = None
                self.channel = None
            if self.watchers is watchers:
                self.watchers = []
            if self._state is ConnectionState.STARTING:
                log.info(f"Connection state: {self._state.value} -> {ConnectionState.STOPPED.value}")
                self._state = ConnectionState.STOPPED

    #* --- Deactivation ---
    def deactivate(self) -> None:
        """
        Stops the analyzer gracefully, forcing termination after the shutdown timeout.
        A no-op when already stopped.

        :raises InvalidState: If a previous deactivate() is still in progress.
        """
        with self._state_lock:
            if self._state is ConnectionState.STOPPED:
                log.debug("Connection already stopped. Nothing to deactivate.")
                return
            if self._state is ConnectionState.STOPPING:
                raise InvalidState("deactivate", self._state)
            log.info(f"Connection state: {self._state.value} -> {ConnectionState.STOPPING.value}")
            self._state = ConnectionState.STOPPING
            self._wakeup.set()
            process, channel = self.process, self.channel
            watchers, self.watchers = self.watchers, []

        name = self.config.client_name if self.config else "language client"
        log.info(f"Initiating graceful shutdown of {name}...")
        with self._events_lock:
            self._pending_events.clear()

        try:
            self._release(None, watchers)
            if process is not None:
                self._shutdown(process, channel)
        finally:
            self.process = None
            self.channel = None
            self._set_state(ConnectionState.STOPPED)
        log.info(f"{name} stopped.")

    def _shutdown(self, process: ProcessHandle, channel: Optional[StdioChannel]) -> None:
        try:
            if not process.has_exited and channel is not None:
                self.protocol.stop(channel)
                self._await_shutdown(process, channel)
        except ShutdownTimeout as e:
            log.warning(f"{e} Forcing termination.")
        except Exception as e:
            log.error(f"Error during graceful shutdown of '{process.name}': {e}", exc_info=True)
        finally:
            if channel is not None:
                channel.close()
            self._terminate(process)

    def _await_shutdown(self, process: ProcessHandle, channel: StdioChannel) -> None:
        """
        Waits for the shutdown acknowledgement, then for the process to exit.

        :raises ShutdownTimeout: If neither arrives within the shutdown timeout.
        """
        deadline = time.monotonic() + self.shutdown_timeout
        while not (channel.shutdown_acknowledged.is_set() or process.has_exited):
            if time.monotonic() >= deadline:
                raise ShutdownTimeout(
                    f"'{process.name}' did not acknowledge shutdown within {self.shutdown_timeout} seconds."
                )
            time.sleep(self.poll_interval)
        process.wait(max(0.0, deadline - time.monotonic()))

    def _terminate(self, process: ProcessHandle) -> None:
        try:
            process.terminate()
        except Exception as e:
            log.error(f"Failed to terminate '{process.name}' (PID: {process.pid}): {e}", exc_info=True)

    #* --- Event Routing ---
    def _on_file_events(self, events: List[FileEvent]) -> None:
        with self._events_lock:
            state = self._state
            if state is ConnectionState.STARTING:
                self._pending_events.extend(events)
            elif state is ConnectionState.RUNNING:
                self._forward_file_events(events)
            else:
                log.debug(f"Dropping {len(events)} file events while {state.value}.")

    def _forward_file_events(self, events: List[FileEvent]) -> None:
        try:
            self.protocol.notify_file_changes(self.channel, events)
        except Exception as e:
            log.error(f"Failed to forward file events: {e}", exc_info=True)

    def _on_process_exit(self, process: ProcessHandle, returncode: Optional[int]) -> None:
        self._wakeup.set()
        if process is not self.process or self._state is not ConnectionState.RUNNING:
            return
        message = f"{process.name} exited unexpectedly with code {returncode}."
        log.error(message)
        if self._host is not None:
            self._host.report_error(message)
