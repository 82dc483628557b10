"""
Remote Debugger Module

Attach a local debugger to the JDWP listener of the program started on the
target, and bring an already attached debugger back to the user's attention.

The debugger command is a template (see DEFAULT_DEBUGGER_COMMAND) so any
JDWP client can be used; {host} and {port} are substituted before the
command is split with shlex and run without a shell.
"""

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass

from rich.console import Console

from pideploy.config_manager import DEFAULT_DEBUGGER_COMMAND
from pideploy.modules.file_transfer.exceptions import DeployError
from pideploy.modules.ssh_connector import SSHConnector
from pideploy.run_parameters import ConfigurationError
from pideploy.session_registry import DebugSessionDescriptor, PidProcess, TerminalHandle

logger = logging.getLogger(__name__)

SOCKET_LISTEN_COMMAND = "jdb -listen {port}"


class DebuggerAttachError(DeployError):
    """Raised when the debugger cannot attach to the remote listener."""

    pass


@dataclass(frozen=True)
class RemoteDebugConfiguration:
    """Remote debug run configuration.

    server_mode=False means this side is the client: it connects to the
    listener the remote JVM opened (address=<port>,server=y).
    """

    name: str
    host: str
    port: int
    use_socket_transport: bool = True
    server_mode: bool = False


class DebugSessionService(ABC):
    """Create and activate remote debug sessions."""

    @abstractmethod
    def launch(self, configuration: RemoteDebugConfiguration) -> DebugSessionDescriptor:
        """Start a debug session for configuration and return its descriptor.

        Raises:
            DebuggerAttachError: The debugger could not be started or attached
        """

    @abstractmethod
    def activate(self, descriptor: DebugSessionDescriptor) -> None:
        """Bring an existing session's UI surface to the foreground."""

    @abstractmethod
    def terminate(self, descriptor: DebugSessionDescriptor) -> None:
        """Stop a session this service launched."""

    def validate(self, configuration: RemoteDebugConfiguration) -> None:
        """Check configuration before anything is deployed.

        Raises:
            ConfigurationError: The session could never be launched
        """


class JdbDebugSessionService(DebugSessionService):
    """
    Run a command-line JDWP client (jdb by default) against the target.

    Features:
    - Waits for the remote JDWP port before attaching
    - Configurable debugger command template
    - No shell involved in spawning the debugger
    """

    def __init__(
        self,
        command_template: str = DEFAULT_DEBUGGER_COMMAND,
        attach_timeout: float = 30,
        console: Console | None = None,
    ):
        self.command_template = command_template
        self.attach_timeout = attach_timeout
        self.console = console or Console(stderr=True)

    def build_command(self, configuration: RemoteDebugConfiguration) -> list[str]:
        """Expand the command template for configuration.

        Raises:
            ConfigurationError: Transport is not socket, or the template is invalid
        """
        if not configuration.use_socket_transport:
            raise ConfigurationError("Only socket transport (dt_socket) is supported")

        template = SOCKET_LISTEN_COMMAND if configuration.server_mode else self.command_template
        try:
            args = shlex.split(template.format(host=configuration.host, port=configuration.port))
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(f"Invalid debugger command template: {template!r}") from e

        if not args:
            raise ConfigurationError("Debugger command is empty")
        return args

    def validate(self, configuration: RemoteDebugConfiguration) -> None:
        self.build_command(configuration)

    def launch(self, configuration: RemoteDebugConfiguration) -> DebugSessionDescriptor:
        args = self.build_command(configuration)

        if not configuration.server_mode:
            logger.info(
                f"Waiting for debug listener on {configuration.host}:{configuration.port}..."
            )
            if not SSHConnector.wait_for_port(
                configuration.host, configuration.port, timeout=self.attach_timeout
            ):
                raise DebuggerAttachError(
                    f"Debug port {configuration.port} on {configuration.host} did not open "
                    f"within {self.attach_timeout}s. Is the program running?"
                )

        logger.debug(f"Starting debugger: {shlex.join(args)}")
        try:
            popen = subprocess.Popen(args)
        except OSError as e:
            raise DebuggerAttachError(f"Failed to start debugger '{args[0]}': {e}") from e

        return DebugSessionDescriptor(
            session_name=configuration.name,
            process=PidProcess(pid=popen.pid, popen=popen, command=shlex.join(args)),
            ui_handle=TerminalHandle(
                pid=popen.pid,
                command=shlex.join(args),
                host=configuration.host,
                port=str(configuration.port),
            ),
        )

    def activate(self, descriptor: DebugSessionDescriptor) -> None:
        handle = descriptor.ui_handle
        where = handle.describe() if isinstance(handle, TerminalHandle) else str(handle)
        self.console.print(
            f"[bold green]{descriptor.session_name}[/bold green] is already attached: {where}"
        )

    def terminate(self, descriptor: DebugSessionDescriptor) -> None:
        process = descriptor.process
        if not isinstance(process, PidProcess) or process.popen is None:
            return

        logger.debug(f"Terminating debugger {process.pid} for '{descriptor.session_name}'")
        process.popen.terminate()
        try:
            process.popen.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.popen.kill()
            process.popen.wait()


__all__ = [
    "DebugSessionService",
    "DebuggerAttachError",
    "JdbDebugSessionService",
    "RemoteDebugConfiguration",
]
