import os
import logging
import threading
from pathlib import Path
from typing import Callable, List, Union

from lsprotocol.types import FileChangeType, FileEvent
from pathspec import PathSpec
from watchdog.observers import Observer
from watchdog.events import FileSystemEvent, FileSystemEventHandler

log = logging.getLogger(__name__)

FileEventCallback = Callable[[List[FileEvent]], None]

_EVENT_TYPES = {
    "created": FileChangeType.Created,
    "modified": FileChangeType.Changed,
    "deleted": FileChangeType.Deleted,
}


#* --- Glob Matching ---
def compile_pattern(pattern: str) -> PathSpec:
    """
    Compiles a workspace glob with gitignore-style wildcards.

    `**/` spans any number of directories and `*` stays inside one path segment.
    A pattern without a slash matches the file name at any depth.
    """
    return PathSpec.from_lines("gitwildmatch", [pattern])


def matches_pattern(path: Union[str, Path], pattern: str) -> bool:
    """Checks a workspace-relative path against a glob."""
    return compile_pattern(pattern).match_file(Path(path).as_posix())


#* --- Watchers ---
class FileWatcher:
    """
    A file-change subscription for a single glob.

    Subscribers receive lists of FileEvents. Once disposed, the watcher
    delivers nothing more.
    """

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._callbacks: List[FileEventCallback] = []
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_change(self, callback: FileEventCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def emit(self, events: List[FileEvent]) -> None:
        """Delivers events to every subscriber."""
        with self._lock:
            if self._disposed or not events:
                return
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(events)
            except Exception as e:
                log.error(f"Error while delivering file events for '{self.pattern}': {e}", exc_info=True)

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            self._callbacks.clear()


class _PatternEventHandler(FileSystemEventHandler):
    """A watchdog event handler that turns matching file events into FileEvents."""

    def __init__(self, watcher: "FileSystemWatcher"):
        super().__init__()
        self.watcher = watcher
        self.spec = compile_pattern(watcher.pattern)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        if event.event_type == "moved":
            events = [
                self._to_file_event(os.fsdecode(event.src_path), FileChangeType.Deleted),
                self._to_file_event(os.fsdecode(event.dest_path), FileChangeType.Created),
            ]
        elif event.event_type in _EVENT_TYPES:
            events = [self._to_file_event(os.fsdecode(event.src_path), _EVENT_TYPES[event.event_type])]
        else:
            return

        events = [e for e in events if e is not None]
        if events:
            log.debug(f"Watchdog event: {event.event_type} on {event.src_path}")
            self.watcher.emit(events)

    def _to_file_event(self, path_str: str, change_type: FileChangeType):
        path = Path(path_str)
        try:
            relative = path.relative_to(self.watcher.root)
        except ValueError:
            return None
        if not self.spec.match_file(relative.as_posix()):
            return None
        return FileEvent(uri=path.as_uri(), type=change_type)


class FileSystemWatcher(FileWatcher):
    """A FileWatcher backed by a watchdog observer on the workspace root."""

    def __init__(self, root: Union[str, Path], pattern: str) -> None:
        super().__init__(pattern)
        self.root = Path(root).resolve()
        self.observer = Observer()
        self.observer.schedule(_PatternEventHandler(self), str(self.root), recursive=True)
        self.observer.start()
        log.debug(f"Watching '{pattern}' under {self.root}")

    def dispose(self) -> None:
        if self.disposed:
            return
        super().dispose()
        self.observer.stop()
        self.observer.join(timeout=5)
        log.debug(f"Stopped watching '{self.pattern}' under {self.root}")
