from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest

from dbt_client.local.supervisor.watchers import FileWatcher


class FakeProcess:
    """Stands in for ProcessHandle without spawning anything."""

    def __init__(self, command, environment, arguments=(), name="analyzer", kill_timeout=3):
        self.command = command
        self.environment = dict(environment)
        self.arguments = tuple(arguments)
        self.name = name
        self.pid = 4242
        self.stdin = None
        self.stdout = None
        self.returncode = None
        self.terminated = 0
        self._ready = threading.Event()
        self._exited = threading.Event()
        self._ready_callbacks = []
        self._exit_callbacks = []

    @property
    def is_ready(self):
        return self._ready.is_set()

    @property
    def has_exited(self):
        return self._exited.is_set()

    def mark_ready(self):
        self._ready.set()
        for callback in self._ready_callbacks:
            callback()

    def on_ready(self, callback):
        if self.is_ready:
            callback()
        else:
            self._ready_callbacks.append(callback)

    def on_exit(self, callback):
        self._exit_callbacks.append(callback)

    def exit(self, returncode=0):
        self.returncode = returncode
        self._exited.set()
        for callback in self._exit_callbacks:
            callback(returncode)

    def wait(self, timeout=None):
        return self._exited.wait(timeout)

    def terminate(self):
        if self.has_exited:
            return
        self.terminated += 1
        self.exit(-15)


class FakeLauncher:
    def __init__(self, error=None):
        self.error = error
        self.launched = []

    def __call__(self, command, environment, **kwargs):
        if self.error is not None:
            raise self.error
        process = FakeProcess(command, environment, **kwargs)
        self.launched.append(process)
        return process


class FakeProtocol:
    """Acknowledges start and shutdown on demand."""

    def __init__(self, ready=True, ack_shutdown=True):
        self.ready = ready
        self.ack_shutdown = ack_shutdown
        self.started = []
        self.stopped = []
        self.file_events = []

    def start(self, channel, config):
        self.started.append((channel, config))
        if self.ready:
            channel.acknowledge_start()

    def stop(self, channel):
        self.stopped.append(channel)
        if self.ack_shutdown:
            channel.acknowledge_shutdown()
            channel.handle.exit(0)

    def notify_file_changes(self, channel, events):
        self.file_events.extend(events)


class FakeHost:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.watchers = []
        self.errors = []

    def create_file_watcher(self, pattern):
        if pattern == self.fail_on:
            raise OSError(f"cannot watch {pattern}")
        watcher = FileWatcher(pattern)
        self.watchers.append(watcher)
        return watcher

    def report_error(self, message):
        self.errors.append(message)

    @property
    def active_watchers(self):
        return [w for w in self.watchers if not w.disposed]


def make_settings(**overrides):
    values = dict(
        CLIENT_ID="dbt-language-server",
        CLIENT_NAME="DBT Language Server",
        SERVER_EXECUTABLE="analyzer",
        SERVER_DEBUG_EXECUTABLE="analyzer-debug",
        SERVER_ARGS=[],
        SERVER_ENV_OVERRIDES={"LOG_LEVEL": "debug"},
        DOCUMENT_SELECTOR=[("file", "sql")],
        WATCHED_FILE_PATTERNS=["**/.clientrc"],
        READY_TIMEOUT=2,
        READY_SETTLE_SECONDS=0.1,
        GRACEFUL_SHUTDOWN_TIMEOUT=2,
        FORCED_KILL_TIMEOUT=2,
        READY_POLL_INTERVAL=0.01,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def protocol():
    return FakeProtocol()


@pytest.fixture
def host():
    return FakeHost()
