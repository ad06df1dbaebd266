import logging
from pathlib import Path
from typing import List, Protocol, Union

from .watchers import FileSystemWatcher, FileWatcher

log = logging.getLogger(__name__)


class HostContext(Protocol):
    """What the supervisor needs from the surrounding editor runtime."""

    def create_file_watcher(self, pattern: str) -> FileWatcher:
        ...

    def report_error(self, message: str) -> None:
        ...


class WorkspaceHost:
    """
    A host context for running the client outside an editor.

    File watchers observe the workspace root on disk and errors go to the log.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).resolve()
        self.errors: List[str] = []

    def create_file_watcher(self, pattern: str) -> FileWatcher:
        return FileSystemWatcher(self.root, pattern)

    def report_error(self, message: str) -> None:
        log.error(message)
        self.errors.append(message)
