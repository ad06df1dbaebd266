"""
The seam between the supervisor and the wire-protocol layer.

The supervisor never frames or parses messages. It hands a StdioChannel and the
ConnectionConfig to a ProtocolLayer and waits for the layer to acknowledge start
and shutdown on that channel.
"""
import logging
import threading
from typing import TYPE_CHECKING, List, Optional, Protocol

from lsprotocol.types import FileEvent

if TYPE_CHECKING:
    from .connection import ConnectionConfig
    from .process_utils import ProcessHandle

log = logging.getLogger(__name__)


class StdioChannel:
    """A full-duplex byte channel over the analyzer's stdin/stdout."""

    def __init__(self, handle: "ProcessHandle") -> None:
        self.handle = handle
        self.shutdown_acknowledged = threading.Event()

    @property
    def reader(self):
        return self.handle.stdout

    @property
    def writer(self):
        return self.handle.stdin

    def acknowledge_start(self) -> None:
        self.handle.mark_ready()

    def acknowledge_shutdown(self) -> None:
        self.shutdown_acknowledged.set()

    def close(self) -> None:
        """Closes the writing side, signalling EOF to the analyzer."""
        writer = self.writer
        if writer is None or writer.closed:
            return
        try:
            writer.close()
        except OSError as e:
            log.debug(f"Closing the stdin of '{self.handle.name}' failed: {e}")


class ProtocolLayer(Protocol):
    """Entry points the supervisor needs from the wire-protocol layer."""

    def start(self, channel: StdioChannel, config: "ConnectionConfig") -> None:
        """Begins the handshake; must eventually call `channel.acknowledge_start()`."""

    def stop(self, channel: StdioChannel) -> None:
        """Requests a graceful stop; should call `channel.acknowledge_shutdown()`."""

    def notify_file_changes(self, channel: StdioChannel, events: List[FileEvent]) -> None:
        """Forwards workspace file changes to the analyzer."""


class ProcessLivenessProtocol:
    """
    A protocol layer that exchanges no messages.

    The analyzer counts as started once it has stayed alive for `settle_seconds`,
    and as shut down once it exits after its stdin is closed. Used by the
    standalone host when no real protocol engine is plugged in.
    """

    def __init__(self, settle_seconds: float = 1) -> None:
        self.settle_seconds = settle_seconds
        self._timer: Optional[threading.Timer] = None

    def start(self, channel: StdioChannel, config: "ConnectionConfig") -> None:
        handle = channel.handle
        handle.on_exit(lambda _code: channel.acknowledge_shutdown())
        self._drain_output(channel)

        def settle():
            if not handle.has_exited:
                channel.acknowledge_start()

        self._timer = threading.Timer(self.settle_seconds, settle)
        self._timer.daemon = True
        self._timer.start()
        log.debug(f"Waiting {self.settle_seconds}s for '{config.client_name}' to settle.")

    def stop(self, channel: StdioChannel) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        channel.close()

    def notify_file_changes(self, channel: StdioChannel, events: List[FileEvent]) -> None:
        for event in events:
            log.debug(f"File change for '{channel.handle.name}': {event.uri} ({event.type.name})")

    def _drain_output(self, channel: StdioChannel) -> None:
        """Consumes stdout so the analyzer never blocks on a full pipe."""
        reader = channel.reader
        if reader is None:
            return
        proc_logger = logging.getLogger(f"proc.{channel.handle.name}")

        def drain():
            try:
                for line in iter(reader.readline, b""):
                    proc_logger.debug(line.decode("utf-8", errors="replace").rstrip())
            except (OSError, ValueError) as e:
                proc_logger.debug(f"stdout reader for {channel.handle.name} exited: {e}")

        threading.Thread(target=drain, daemon=True, name=f"{channel.handle.name}-stdout").start()
