"""Remote command construction.

Builds the exact command line the target executes from RunParameters.
The result is a plain token list: token 0 is the runtime invocation
(``sudo`` precedes it when root is required), then the JDWP agent flag when
debugging, VM options, classpath, the main class and its arguments.

Example:
    >>> params = RunParameters(
    ...     main_entry_point="com.example.Main",
    ...     hostname="192.168.1.5",
    ...     arguments=("--flag",),
    ...     is_debugging=True,
    ...     debug_port="5005",
    ... )
    >>> RemoteCommandBuilder.build(params).tokens
    ('java', '-agentlib:jdwp=transport=dt_socket,address=5005,server=y,suspend=n',
     'com.example.Main', '--flag')
"""

import shlex
from dataclasses import dataclass

from pideploy.run_parameters import RunParameters

SESSION_NAME_PATTERN = "PI Debugger ({port})"
# A bare port: JDK 9+ binds the listener to loopback only
DEBUG_AGENT_TEMPLATE = "-agentlib:jdwp=transport=dt_socket,address={port},server=y,suspend=n"


def session_name_for(debug_port: str | int) -> str:
    """Name of the debug session attached to the given debug port."""
    return SESSION_NAME_PATTERN.format(port=str(debug_port).strip())


@dataclass(frozen=True)
class RemoteCommand:
    """Ordered tokens of the command executed on the remote host."""

    tokens: tuple[str, ...]

    def __iter__(self):
        return iter(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)

    def to_shell(self) -> str:
        """Render as a single shell-safe string for ssh."""
        return shlex.join(self.tokens)


class RemoteCommandBuilder:
    """Build remote launch commands. Pure and deterministic."""

    @classmethod
    def debug_agent_flag(cls, debug_port: str | int) -> str:
        """JDWP agent flag listening on debug_port without suspending."""
        return DEBUG_AGENT_TEMPLATE.format(port=str(debug_port).strip())

    @classmethod
    def build(cls, parameters: RunParameters) -> RemoteCommand:
        """Build the remote command for the given parameters.

        Args:
            parameters: Validated launch parameters

        Returns:
            RemoteCommand with tokens in launch order
        """
        tokens: list[str] = []

        if parameters.use_sudo:
            tokens.append("sudo")
        tokens.append(parameters.runtime)

        if parameters.is_debugging:
            tokens.append(cls.debug_agent_flag(parameters.debug_port_number))

        tokens.extend(parameters.vm_options)

        if parameters.classpath:
            tokens.extend(["-cp", ":".join(parameters.classpath)])

        tokens.append(parameters.main_entry_point)
        tokens.extend(parameters.arguments)

        return RemoteCommand(tokens=tuple(tokens))


__all__ = [
    "DEBUG_AGENT_TEMPLATE",
    "SESSION_NAME_PATTERN",
    "RemoteCommand",
    "RemoteCommandBuilder",
    "session_name_for",
]
