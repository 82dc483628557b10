"""Deploy-and-debug orchestration for a single run request.

State machine:

    BUILDING_PARAMETERS -> UPLOADING -> DEPLOYED                  (run)
    BUILDING_PARAMETERS -> UPLOADING -> LOCATING_SESSION -> ...   (debug)
        REUSING                                    -> ATTACHED
        TEARING_DOWN_THEN_LAUNCHING -> LAUNCHING_FRESH -> ATTACHED
        LAUNCHING_FRESH                            -> ATTACHED
    any network failure                            -> TERMINAL

Configuration errors propagate to the caller before any network action.
Network/deploy errors are reported through the notifier and end the run in
TERMINAL; they never propagate.

Debug launches for the same session name are serialized: the registry lock
for that name is held from UPLOADING until the session decision is applied,
so a second launch waits and then finds the first one's live session.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from pideploy.command_builder import RemoteCommand, RemoteCommandBuilder, session_name_for
from pideploy.file_lock_manager import LockTimeoutError
from pideploy.modules.debugger import DebugSessionService, RemoteDebugConfiguration
from pideploy.modules.file_transfer import ArtifactUploader, DeployError, UploadJob, UploadResult
from pideploy.modules.notifications import NotificationHandler, Severity
from pideploy.modules.ssh_connector import SSHConfig, SSHConnectionError
from pideploy.run_parameters import RunConfiguration, RunParameters
from pideploy.session_registry import (
    DebugSessionDescriptor,
    SessionRegistry,
    SessionRegistryError,
)

logger = logging.getLogger(__name__)

CONNECTION_ERROR_TITLE = "SSH Connection Error"
DEBUGGER_ERROR_TITLE = "Debugger Attach Error"
REGISTRY_ERROR_TITLE = "Debug Session Error"


class LaunchState(Enum):
    """States of a single run request."""

    BUILDING_PARAMETERS = "building_parameters"
    UPLOADING = "uploading"
    LOCATING_SESSION = "locating_session"
    REUSING = "reusing"
    TEARING_DOWN_THEN_LAUNCHING = "tearing_down_then_launching"
    LAUNCHING_FRESH = "launching_fresh"
    DEPLOYED = "deployed"
    ATTACHED = "attached"
    TERMINAL = "terminal"


class SessionDecision(Enum):
    """The one decision taken per debug launch."""

    REUSING = "reusing"
    TEARING_DOWN_THEN_LAUNCHING = "tearing_down_then_launching"
    LAUNCHING_FRESH = "launching_fresh"


@dataclass(frozen=True)
class LaunchParameters:
    """Everything needed to launch, computed without touching the network."""

    parameters: RunParameters
    command: RemoteCommand
    job: UploadJob
    ssh_config: SSHConfig
    debug_configuration: RemoteDebugConfiguration | None = None  # Only in debug mode

    @property
    def session_name(self) -> str:
        return session_name_for(self.parameters.debug_port)


@dataclass
class LaunchOutcome:
    """What happened during one run request."""

    history: list[LaunchState] = field(default_factory=list)
    launch: LaunchParameters | None = None
    upload: UploadResult | None = None
    decision: SessionDecision | None = None
    descriptor: DebugSessionDescriptor | None = None
    error: str | None = None

    @property
    def state(self) -> LaunchState | None:
        """Current (after run: final) state."""
        return self.history[-1] if self.history else None

    @property
    def succeeded(self) -> bool:
        return self.state in (LaunchState.DEPLOYED, LaunchState.ATTACHED)

    def transition(self, state: LaunchState) -> None:
        logger.debug(f"{self.state.name if self.state else 'START'} -> {state.name}")
        self.history.append(state)


class SessionLifecycleController:
    """Orchestrate upload, launch and debug-session handling.

    All collaborators are injected; none are looked up globally.
    """

    def __init__(
        self,
        uploader: ArtifactUploader,
        registry: SessionRegistry,
        debugger: DebugSessionService,
        notifier: NotificationHandler,
    ):
        self.uploader = uploader
        self.registry = registry
        self.debugger = debugger
        self.notifier = notifier

    def prepare_launch(self, configuration: RunConfiguration, debug: bool) -> LaunchParameters:
        """Produce launch parameters for a run configuration.

        Pure: no network access, no registry access. In debug mode the
        debugger settings are checked here too.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        parameters = RunParameters.from_configuration(configuration, is_debugging=debug)
        command = RemoteCommandBuilder.build(parameters)

        job = UploadJob(
            local_artifact_path=configuration.artifact_path,
            remote_command=command,
            remote_directory=PurePosixPath(parameters.working_directory),
            stop_pattern=parameters.main_entry_point if configuration.stop_previous else None,
        )
        ssh_config = SSHConfig(
            host=parameters.hostname,
            user=configuration.username,
            key_path=configuration.key_path,
            port=int(parameters.port),
        )
        debug_configuration = None
        if debug:
            debug_configuration = RemoteDebugConfiguration(
                name=session_name_for(parameters.debug_port),
                host=parameters.hostname,
                port=parameters.debug_port_number,
                use_socket_transport=True,
                server_mode=False,
            )
            self.debugger.validate(debug_configuration)

        return LaunchParameters(
            parameters=parameters,
            command=command,
            job=job,
            ssh_config=ssh_config,
            debug_configuration=debug_configuration,
        )

    def run(self, configuration: RunConfiguration, debug: bool = False) -> LaunchOutcome:
        """Deploy, launch and (in debug mode) attach or reuse a debugger.

        Returns:
            LaunchOutcome; its state is DEPLOYED, ATTACHED or TERMINAL

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        outcome = LaunchOutcome()
        outcome.transition(LaunchState.BUILDING_PARAMETERS)
        outcome.launch = self.prepare_launch(configuration, debug)

        if not debug:
            if self._deploy(outcome):
                outcome.transition(LaunchState.DEPLOYED)
            return outcome

        session_name = outcome.launch.session_name
        try:
            with self.registry.lock(session_name):
                if not self._deploy(outcome):
                    return outcome
                outcome.transition(LaunchState.LOCATING_SESSION)
                self._locate_and_attach(outcome, session_name)
        except LockTimeoutError as e:
            self._fail(outcome, "Debug Session Busy", str(e))

        return outcome

    def _deploy(self, outcome: LaunchOutcome) -> bool:
        launch = outcome.launch
        outcome.transition(LaunchState.UPLOADING)
        try:
            outcome.upload = self.uploader.upload(launch.job, launch.ssh_config)
        except (DeployError, SSHConnectionError, OSError) as e:
            self._fail(outcome, CONNECTION_ERROR_TITLE, str(e))
            return False
        return True

    def _locate_and_attach(self, outcome: LaunchOutcome, session_name: str) -> None:
        descriptors = self.registry.get_by_name(session_name)

        if not descriptors:
            outcome.decision = SessionDecision.LAUNCHING_FRESH
            self._launch_fresh(outcome, session_name)
            return

        if len(descriptors) > 1:
            logger.warning(
                f"{len(descriptors)} sessions named '{session_name}', using the first"
            )
        existing = descriptors[0]

        if existing.process_alive and existing.ui_handle is not None:
            outcome.decision = SessionDecision.REUSING
            outcome.transition(LaunchState.REUSING)
            self.debugger.activate(existing)
            outcome.descriptor = existing
            outcome.transition(LaunchState.ATTACHED)
            return

        # Terminated, or alive but its UI surface is gone: replace it
        if existing.process_alive:
            logger.warning(f"Session '{session_name}' has no UI handle, replacing it")
        outcome.decision = SessionDecision.TEARING_DOWN_THEN_LAUNCHING
        outcome.transition(LaunchState.TEARING_DOWN_THEN_LAUNCHING)
        for stale in descriptors:
            self.registry.remove(stale)
        self._launch_fresh(outcome, session_name)

    def _launch_fresh(self, outcome: LaunchOutcome, session_name: str) -> None:
        parameters = outcome.launch.parameters
        outcome.transition(LaunchState.LAUNCHING_FRESH)

        try:
            descriptor = self.debugger.launch(outcome.launch.debug_configuration)
        except DeployError as e:
            self._fail(outcome, DEBUGGER_ERROR_TITLE, str(e))
            return

        try:
            self.registry.add(descriptor)
        except SessionRegistryError as e:
            self.debugger.terminate(descriptor)
            self._fail(outcome, REGISTRY_ERROR_TITLE, str(e))
            return

        outcome.descriptor = descriptor
        outcome.transition(LaunchState.ATTACHED)
        logger.info(f"Attached '{session_name}' to {parameters.hostname}:{parameters.debug_port}")

    def _fail(self, outcome: LaunchOutcome, title: str, message: str) -> None:
        outcome.error = message
        outcome.transition(LaunchState.TERMINAL)
        self.notifier.notify(title, message, Severity.ERROR)


__all__ = [
    "LaunchOutcome",
    "LaunchParameters",
    "LaunchState",
    "SessionDecision",
    "SessionLifecycleController",
]
