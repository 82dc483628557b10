"""Unit tests for the deploy-and-debug lifecycle controller."""

import threading
from contextlib import contextmanager
from pathlib import PurePosixPath

import pytest

from pideploy.file_lock_manager import LockTimeoutError
from pideploy.lifecycle_controller import (
    CONNECTION_ERROR_TITLE,
    DEBUGGER_ERROR_TITLE,
    REGISTRY_ERROR_TITLE,
    LaunchState,
    SessionDecision,
    SessionLifecycleController,
)
from pideploy.modules.debugger import DebuggerAttachError, JdbDebugSessionService
from pideploy.modules.file_transfer import TransferError
from pideploy.modules.notifications import Severity
from pideploy.modules.ssh_connector import SSHConnectionError
from pideploy.run_parameters import ConfigurationError, RunConfiguration
from pideploy.session_registry import InMemorySessionRegistry, SessionRegistryError

from ..mocks.session_mock import make_descriptor

SESSION = "PI Debugger (5005)"


@pytest.fixture
def registry():
    return InMemorySessionRegistry()


@pytest.fixture
def controller(mock_uploader, registry, fake_debugger, mock_notifier):
    return SessionLifecycleController(
        uploader=mock_uploader,
        registry=registry,
        debugger=fake_debugger,
        notifier=mock_notifier,
    )


class TestPrepareLaunch:
    """Tests for building launch parameters without network access."""

    def test_debug_launch_parameters(
        self, controller, run_configuration, mock_uploader, fake_debugger
    ):
        launch = controller.prepare_launch(run_configuration, debug=True)

        assert launch.command.tokens == (
            "java",
            "-agentlib:jdwp=transport=dt_socket,address=5005,server=y,suspend=n",
            "-cp",
            "app.jar",
            "com.example.Main",
            "--flag",
        )
        assert launch.session_name == SESSION
        assert launch.job.remote_directory == PurePosixPath("pideploy")
        assert launch.job.stop_pattern == "com.example.Main"
        assert launch.ssh_config.host == "192.168.1.5"
        assert launch.ssh_config.port == 22
        assert launch.debug_configuration.name == SESSION
        assert launch.debug_configuration.port == 5005
        assert fake_debugger.validated == [launch.debug_configuration]
        mock_uploader.upload.assert_not_called()

    def test_keep_previous(self, controller, run_configuration):
        run_configuration.stop_previous = False

        launch = controller.prepare_launch(run_configuration, debug=False)

        assert launch.job.stop_pattern is None
        assert not any(t.startswith("-agentlib:jdwp") for t in launch.command.tokens)

    def test_invalid_configuration_raises_before_upload(
        self, controller, artifact, mock_uploader, mock_notifier
    ):
        configuration = RunConfiguration(
            artifact_path=artifact, main_class="", hostname="192.168.1.5"
        )

        with pytest.raises(ConfigurationError, match="Main entry point"):
            controller.run(configuration, debug=True)

        mock_uploader.upload.assert_not_called()
        mock_notifier.notify.assert_not_called()

    def test_debugger_settings_checked_before_upload(
        self, controller, run_configuration, mock_uploader, registry
    ):
        controller.debugger = JdbDebugSessionService(command_template="jdb {address}")

        with pytest.raises(ConfigurationError, match="Invalid debugger command template"):
            controller.run(run_configuration, debug=True)

        mock_uploader.upload.assert_not_called()
        assert registry.list_sessions() == []

    def test_debugger_settings_unused_without_debug(
        self, controller, run_configuration, fake_debugger
    ):
        launch = controller.prepare_launch(run_configuration, debug=False)

        assert launch.debug_configuration is None
        assert fake_debugger.validated == []


class TestRunWithoutDebug:
    """Plain deploys never touch the session registry."""

    def test_deployed(self, controller, run_configuration, registry, fake_debugger):
        outcome = controller.run(run_configuration, debug=False)

        assert outcome.state == LaunchState.DEPLOYED
        assert outcome.history == [
            LaunchState.BUILDING_PARAMETERS,
            LaunchState.UPLOADING,
            LaunchState.DEPLOYED,
        ]
        assert outcome.succeeded
        assert outcome.decision is None
        assert registry.list_sessions() == []
        assert fake_debugger.launched == []

    def test_connection_error(self, controller, run_configuration, mock_uploader, mock_notifier):
        mock_uploader.upload.side_effect = SSHConnectionError("Connection refused")

        outcome = controller.run(run_configuration, debug=False)

        assert outcome.state == LaunchState.TERMINAL
        assert outcome.error == "Connection refused"
        mock_notifier.notify.assert_called_once_with(
            CONNECTION_ERROR_TITLE, "Connection refused", Severity.ERROR
        )


class TestRunWithDebug:
    """Session decision: reuse, tear down and relaunch, or launch fresh."""

    def test_fresh_launch(self, controller, run_configuration, registry, fake_debugger):
        """No session yet: exactly one is launched and registered."""
        outcome = controller.run(run_configuration, debug=True)

        assert outcome.state == LaunchState.ATTACHED
        assert outcome.decision == SessionDecision.LAUNCHING_FRESH
        assert outcome.history == [
            LaunchState.BUILDING_PARAMETERS,
            LaunchState.UPLOADING,
            LaunchState.LOCATING_SESSION,
            LaunchState.LAUNCHING_FRESH,
            LaunchState.ATTACHED,
        ]

        assert len(fake_debugger.launched) == 1
        debug_configuration = fake_debugger.launched[0]
        assert debug_configuration.name == SESSION
        assert debug_configuration.host == "192.168.1.5"
        assert debug_configuration.port == 5005
        assert debug_configuration.use_socket_transport is True
        assert debug_configuration.server_mode is False

        sessions = registry.get_by_name(SESSION)
        assert len(sessions) == 1
        assert sessions[0] is outcome.descriptor

    def test_reuses_live_session(self, controller, run_configuration, registry, fake_debugger):
        existing = make_descriptor(SESSION, alive=True)
        registry.add(existing)

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.decision == SessionDecision.REUSING
        assert outcome.state == LaunchState.ATTACHED
        assert LaunchState.REUSING in outcome.history
        assert LaunchState.LAUNCHING_FRESH not in outcome.history
        assert fake_debugger.launched == []
        assert fake_debugger.activated == [existing]
        assert registry.list_sessions() == [existing]

    def test_replaces_terminated_session(
        self, controller, run_configuration, registry, fake_debugger
    ):
        stale = make_descriptor(SESSION, alive=False)
        registry.add(stale)

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.decision == SessionDecision.TEARING_DOWN_THEN_LAUNCHING
        assert outcome.history[-3:] == [
            LaunchState.TEARING_DOWN_THEN_LAUNCHING,
            LaunchState.LAUNCHING_FRESH,
            LaunchState.ATTACHED,
        ]
        sessions = registry.get_by_name(SESSION)
        assert len(sessions) == 1
        assert sessions[0] is not stale
        assert sessions[0].process_alive
        assert fake_debugger.activated == []

    def test_replaces_session_without_ui_handle(
        self, controller, run_configuration, registry, fake_debugger
    ):
        registry.add(make_descriptor(SESSION, alive=True, ui_handle=None))

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.decision == SessionDecision.TEARING_DOWN_THEN_LAUNCHING
        assert len(fake_debugger.launched) == 1
        assert len(registry.get_by_name(SESSION)) == 1
        assert registry.get_by_name(SESSION)[0].ui_handle == "debugger-window-1"

    def test_other_ports_are_ignored(self, controller, run_configuration, registry):
        other = make_descriptor("PI Debugger (6006)", alive=True)
        registry.add(other)

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.decision == SessionDecision.LAUNCHING_FRESH
        assert len(registry.list_sessions()) == 2
        assert registry.get_by_name("PI Debugger (6006)") == [other]

    def test_duplicate_names_first_wins(self, controller, run_configuration, fake_debugger):
        first = make_descriptor(SESSION, alive=True, ui_handle="first")
        second = make_descriptor(SESSION, alive=True, ui_handle="second")

        class DuplicateRegistry(InMemorySessionRegistry):
            def get_by_name(self, session_name):
                return [first, second]

        controller.registry = DuplicateRegistry()

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.decision == SessionDecision.REUSING
        assert fake_debugger.activated == [first]

    def test_upload_error_skips_session_handling(
        self, controller, run_configuration, registry, mock_uploader, fake_debugger, mock_notifier
    ):
        existing = make_descriptor(SESSION, alive=True)
        registry.add(existing)
        mock_uploader.upload.side_effect = TransferError("scp: Permission denied")

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.state == LaunchState.TERMINAL
        assert LaunchState.LOCATING_SESSION not in outcome.history
        assert outcome.decision is None
        assert fake_debugger.launched == []
        assert fake_debugger.activated == []
        assert registry.list_sessions() == [existing]
        assert mock_notifier.notify.call_count == 1
        title, message, severity = mock_notifier.notify.call_args.args
        assert title == CONNECTION_ERROR_TITLE
        assert "Permission denied" in message
        assert severity == Severity.ERROR

    def test_debugger_attach_error(
        self, controller, run_configuration, registry, fake_debugger, mock_notifier
    ):
        fake_debugger.error = DebuggerAttachError("Debug port 5005 did not open")

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.state == LaunchState.TERMINAL
        assert outcome.decision == SessionDecision.LAUNCHING_FRESH
        assert registry.list_sessions() == []
        mock_notifier.notify.assert_called_once_with(
            DEBUGGER_ERROR_TITLE, "Debug port 5005 did not open", Severity.ERROR
        )

    def test_registry_failure_stops_debugger(
        self, controller, run_configuration, fake_debugger, mock_notifier
    ):
        class FullDiskRegistry(InMemorySessionRegistry):
            def add(self, descriptor):
                raise SessionRegistryError("Failed to save sessions: disk full")

        controller.registry = FullDiskRegistry()

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.state == LaunchState.TERMINAL
        assert outcome.descriptor is None
        assert len(fake_debugger.launched) == 1
        assert len(fake_debugger.terminated) == 1
        assert fake_debugger.terminated[0].session_name == SESSION
        mock_notifier.notify.assert_called_once_with(
            REGISTRY_ERROR_TITLE, "Failed to save sessions: disk full", Severity.ERROR
        )

    def test_upload_happens_before_attach(
        self, controller, run_configuration, mock_uploader, fake_debugger
    ):
        calls = []
        mock_uploader.upload.side_effect = lambda job, ssh_config: calls.append("upload")
        original_launch = fake_debugger.launch

        def launch(configuration):
            calls.append("attach")
            return original_launch(configuration)

        fake_debugger.launch = launch

        controller.run(run_configuration, debug=True)

        assert calls == ["upload", "attach"]

    def test_busy_session(self, controller, run_configuration, mock_uploader, mock_notifier):
        class BusyRegistry(InMemorySessionRegistry):
            @contextmanager
            def lock(self, session_name):
                raise LockTimeoutError("Failed to acquire file lock")
                yield

        controller.registry = BusyRegistry()

        outcome = controller.run(run_configuration, debug=True)

        assert outcome.state == LaunchState.TERMINAL
        mock_uploader.upload.assert_not_called()
        assert mock_notifier.notify.call_args.args[0] == "Debug Session Busy"

    def test_concurrent_launches_create_one_session(
        self, run_configuration, registry, fake_debugger, mock_uploader, mock_notifier
    ):
        """Two debug launches on one port end with a single session."""
        outcomes = []

        def launch():
            controller = SessionLifecycleController(
                uploader=mock_uploader,
                registry=registry,
                debugger=fake_debugger,
                notifier=mock_notifier,
            )
            outcomes.append(controller.run(run_configuration, debug=True))

        threads = [threading.Thread(target=launch) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(registry.get_by_name(SESSION)) == 1
        assert len(fake_debugger.launched) == 1
        assert sorted(o.decision.value for o in outcomes) == ["launching_fresh", "reusing"]


class TestExampleScenario:
    """Deploy to 192.168.1.5 with a live session, then after it exits."""

    def test_reuse_then_replace(self, controller, run_configuration, registry, fake_debugger):
        first = controller.run(run_configuration, debug=True)
        assert first.decision == SessionDecision.LAUNCHING_FRESH

        second = controller.run(run_configuration, debug=True)
        assert second.decision == SessionDecision.REUSING
        assert second.descriptor is first.descriptor

        first.descriptor.process.alive = False

        third = controller.run(run_configuration, debug=True)
        assert third.decision == SessionDecision.TEARING_DOWN_THEN_LAUNCHING
        assert len(registry.get_by_name(SESSION)) == 1
        assert len(fake_debugger.launched) == 2
