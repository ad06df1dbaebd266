from __future__ import annotations

import os
import threading
import time

import pytest
from lsprotocol.types import FileChangeType, FileEvent

from conftest import FakeHost, FakeLauncher, FakeProtocol, make_settings
from dbt_client.local.supervisor import (
    ConnectionState,
    InvalidState,
    LanguageClientSupervisor,
    LaunchFailure,
)


def _supervisor(settings, protocol, launcher, **kwargs):
    return LanguageClientSupervisor(settings, protocol=protocol, launcher=launcher, **kwargs)


def test_activate_launches_with_merged_environment_and_watchers(settings, protocol, launcher, host, monkeypatch):
    monkeypatch.setenv("INHERITED_VAR", "kept")
    supervisor = _supervisor(settings, protocol, launcher)

    supervisor.activate(host)

    assert supervisor.state is ConnectionState.RUNNING
    assert len(launcher.launched) == 1
    process = launcher.launched[0]
    assert process.command == "analyzer"
    assert process.environment["LOG_LEVEL"] == "debug"
    assert process.environment["INHERITED_VAR"] == "kept"
    assert process.name == "dbt-language-server"
    assert [w.pattern for w in host.watchers] == ["**/.clientrc"]
    assert supervisor.watchers == host.watchers
    assert len(protocol.started) == 1


def test_environment_override_wins_over_inherited_value(settings, protocol, launcher, host, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "info")
    supervisor = _supervisor(settings, protocol, launcher)

    supervisor.activate(host)

    assert launcher.launched[0].environment["LOG_LEVEL"] == "debug"
    assert os.environ["LOG_LEVEL"] == "info"


def test_debug_mode_launches_debug_executable(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher, debug=True)

    supervisor.activate(host)

    assert launcher.launched[0].command == "analyzer-debug"


def test_second_activate_is_invalid_and_spawns_nothing(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)

    with pytest.raises(InvalidState) as excinfo:
        supervisor.activate(host)

    assert excinfo.value.state is ConnectionState.RUNNING
    assert len(launcher.launched) == 1
    assert supervisor.state is ConnectionState.RUNNING


def test_launch_failure_reports_once_and_stays_stopped(settings, protocol, host):
    launcher = FakeLauncher(error=FileNotFoundError(2, "No such file or directory"))
    supervisor = _supervisor(settings, protocol, launcher)

    with pytest.raises(LaunchFailure) as excinfo:
        supervisor.activate(host)

    assert excinfo.value.command == "analyzer"
    assert supervisor.state is ConnectionState.STOPPED
    assert len(host.errors) == 1
    assert host.active_watchers == []
    assert protocol.started == []


def test_permission_denied_is_a_launch_failure(settings, protocol, host):
    launcher = FakeLauncher(error=PermissionError(13, "Permission denied"))
    supervisor = _supervisor(settings, protocol, launcher)

    with pytest.raises(LaunchFailure):
        supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED


def test_empty_executable_is_rejected_without_launching(protocol, launcher, host):
    supervisor = _supervisor(make_settings(SERVER_EXECUTABLE="  "), protocol, launcher)

    with pytest.raises(LaunchFailure):
        supervisor.activate(host)

    assert launcher.launched == []
    assert supervisor.state is ConnectionState.STOPPED
    assert len(host.errors) == 1


def test_ready_timeout_cleans_up(settings, launcher, host):
    protocol = FakeProtocol(ready=False)
    supervisor = _supervisor(settings, protocol, launcher, ready_timeout=0.05)

    with pytest.raises(LaunchFailure, match="did not signal readiness"):
        supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED
    assert launcher.launched[0].terminated == 1
    assert host.active_watchers == []
    assert len(host.errors) == 1


def test_process_exit_before_ready_is_a_launch_failure(settings, launcher, host):
    class ExitingProtocol(FakeProtocol):
        def start(self, channel, config):
            channel.handle.exit(3)

    supervisor = _supervisor(settings, ExitingProtocol(), launcher)

    with pytest.raises(LaunchFailure, match="exited with code 3"):
        supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED
    assert host.active_watchers == []
    assert len(host.errors) == 1


def test_watcher_registration_failure_cleans_up(settings, protocol, launcher):
    host = FakeHost(fail_on="**/*.yml")
    supervisor = _supervisor(
        make_settings(WATCHED_FILE_PATTERNS=["**/.clientrc", "**/*.yml"]), protocol, launcher
    )

    with pytest.raises(LaunchFailure):
        supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED
    assert launcher.launched[0].terminated == 1
    assert host.active_watchers == []


def test_deactivate_without_activate_is_a_noop(settings, protocol, launcher):
    supervisor = _supervisor(settings, protocol, launcher)

    supervisor.deactivate()

    assert supervisor.state is ConnectionState.STOPPED
    assert protocol.stopped == []


def test_deactivate_is_idempotent(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)

    supervisor.deactivate()
    supervisor.deactivate()

    assert supervisor.state is ConnectionState.STOPPED
    assert len(launcher.launched) == 1
    assert len(protocol.stopped) == 1
    assert launcher.launched[0].terminated == 0
    assert host.active_watchers == []
    assert supervisor.watchers == []


def test_deactivate_forces_termination_on_shutdown_timeout(settings, launcher, host):
    protocol = FakeProtocol(ack_shutdown=False)
    supervisor = _supervisor(settings, protocol, launcher, shutdown_timeout=0.05)
    supervisor.activate(host)

    supervisor.deactivate()

    assert supervisor.state is ConnectionState.STOPPED
    assert launcher.launched[0].terminated == 1
    assert host.active_watchers == []


def test_reactivate_after_deactivate(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)
    supervisor.deactivate()

    supervisor.activate(host)

    assert supervisor.state is ConnectionState.RUNNING
    assert len(launcher.launched) == 2


def test_deactivate_while_starting_cancels_activation(settings, launcher, host):
    protocol = FakeProtocol(ready=False)
    supervisor = _supervisor(settings, protocol, launcher, ready_timeout=5)
    errors = []

    def activate():
        try:
            supervisor.activate(host)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=activate)
    thread.start()
    deadline = time.monotonic() + 2
    while supervisor.state is not ConnectionState.STARTING or not protocol.started:
        assert time.monotonic() < deadline
        time.sleep(0.01)

    supervisor.deactivate()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert errors == []
    assert supervisor.state is ConnectionState.STOPPED
    assert len(protocol.stopped) == 1
    assert host.active_watchers == []


def test_file_events_are_forwarded_while_running(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)
    event = FileEvent(uri="file:///ws/.clientrc", type=FileChangeType.Changed)

    host.watchers[0].emit([event])

    assert protocol.file_events == [event]


def test_file_events_during_startup_are_flushed_in_order(settings, launcher, host):
    early = FileEvent(uri="file:///ws/.clientrc", type=FileChangeType.Created)
    late = FileEvent(uri="file:///ws/.clientrc", type=FileChangeType.Changed)

    class EventfulProtocol(FakeProtocol):
        def start(self, channel, config):
            host.watchers[0].emit([early])
            super().start(channel, config)

    protocol = EventfulProtocol()
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)
    host.watchers[0].emit([late])

    assert protocol.file_events == [early, late]


def test_file_events_after_deactivate_are_dropped(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)
    watcher = host.watchers[0]
    supervisor.deactivate()

    watcher.emit([FileEvent(uri="file:///ws/.clientrc", type=FileChangeType.Deleted)])

    assert protocol.file_events == []


def test_unexpected_exit_while_running_is_reported(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    supervisor.activate(host)

    launcher.launched[0].exit(101)

    assert host.errors == ["dbt-language-server exited unexpectedly with code 101."]
    assert supervisor.state is ConnectionState.RUNNING

    supervisor.deactivate()
    assert supervisor.state is ConnectionState.STOPPED
    assert protocol.stopped == []


def test_in_scope_uses_document_filter(settings, protocol, launcher, host):
    supervisor = _supervisor(settings, protocol, launcher)
    assert not supervisor.in_scope("file:///ws/model.sql", "sql")

    supervisor.activate(host)

    assert supervisor.in_scope("file:///ws/model.sql", "sql")
    assert not supervisor.in_scope("untitled:Untitled-1", "sql")
    assert not supervisor.in_scope("file:///ws/schema.yml", "yaml")


class BlockingLauncher(FakeLauncher):
    """Holds the launch until released, leaving a window for deactivate()."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, command, environment, **kwargs):
        self.entered.set()
        assert self.release.wait(5)
        return super().__call__(command, environment, **kwargs)


def test_deactivate_during_launch_leaves_no_process_behind(settings, protocol, host):
    launcher = BlockingLauncher()
    supervisor = _supervisor(settings, protocol, launcher)
    thread = threading.Thread(target=supervisor.activate, args=(host,))
    thread.start()
    assert launcher.entered.wait(2)

    supervisor.deactivate()
    assert supervisor.state is ConnectionState.STOPPED
    launcher.release.set()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert [p.has_exited for p in launcher.launched] == [True]
    assert launcher.launched[0].terminated == 1
    assert host.active_watchers == []
    assert protocol.started == []
    assert supervisor.process is None
    assert supervisor.state is ConnectionState.STOPPED


def test_deactivate_during_watcher_registration_disposes_them(protocol, launcher):
    class DeactivatingHost(FakeHost):
        supervisor = None

        def create_file_watcher(self, pattern):
            watcher = super().create_file_watcher(pattern)
            if len(self.watchers) == 1:
                self.supervisor.deactivate()
            return watcher

    host = DeactivatingHost()
    supervisor = _supervisor(
        make_settings(WATCHED_FILE_PATTERNS=["**/.clientrc", "**/dbt_project.yml"]), protocol, launcher
    )
    host.supervisor = supervisor

    supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED
    assert len(host.watchers) == 2
    assert host.active_watchers == []
    assert supervisor.watchers == []
    assert protocol.started == []
    assert launcher.launched[0].has_exited


def test_non_oserror_from_launcher_is_a_launch_failure(settings, protocol, host):
    launcher = FakeLauncher(error=ValueError("embedded null byte"))
    supervisor = _supervisor(settings, protocol, launcher)

    with pytest.raises(LaunchFailure, match="embedded null byte"):
        supervisor.activate(host)

    assert supervisor.state is ConnectionState.STOPPED
    assert len(host.errors) == 1

    launcher.error = None
    supervisor.activate(host)
    assert supervisor.state is ConnectionState.RUNNING


def test_late_ready_signal_wakes_activation(settings, launcher, host):
    class LateProtocol(FakeProtocol):
        def start(self, channel, config):
            self.started.append((channel, config))
            threading.Timer(0.05, channel.acknowledge_start).start()

    supervisor = _supervisor(settings, LateProtocol(), launcher, ready_timeout=5)
    started = time.monotonic()

    supervisor.activate(host)

    assert supervisor.state is ConnectionState.RUNNING
    assert time.monotonic() - started < 2
