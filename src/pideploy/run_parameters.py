"""Run configuration and launch parameters.

A RunConfiguration is what the user configured (CLI flags layered over
~/.pideploy/config.toml). RunParameters is the immutable, validated snapshot
built from it once per launch request. Configuration errors are raised here,
before any network action is attempted.
"""

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from pideploy.config_manager import PiDeployConfig

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


class ConfigurationError(Exception):
    """Raised when a run configuration cannot produce a valid launch."""

    pass


def parse_port(value: str | int, what: str = "port") -> int:
    """Parse a TCP port given as a string or integer.

    Raises:
        ConfigurationError: If the value is not an integer in 1..65535
    """
    try:
        port = int(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid {what}: {value!r} is not an integer") from e

    if not (MIN_PORT <= port <= MAX_PORT):
        raise ConfigurationError(f"Invalid {what}: {port} (must be {MIN_PORT}-{MAX_PORT})")

    return port


@dataclass
class RunConfiguration:
    """User-facing settings for one deploy target and program."""

    artifact_path: Path
    main_class: str
    hostname: str
    username: str = "pi"
    key_path: Path = Path("~/.ssh/id_rsa")
    ssh_port: int = 22
    deploy_path: str = "pideploy"
    debug_port: str = "5005"
    program_arguments: tuple[str, ...] = ()
    classpath: tuple[str, ...] = ()
    vm_options: tuple[str, ...] = ()
    runtime: str = "java"
    use_sudo: bool = False
    stop_previous: bool = True

    @classmethod
    def from_config(
        cls, config: PiDeployConfig, artifact_path: Path, **overrides: Any
    ) -> "RunConfiguration":
        """Layer explicit overrides (None means "not given") over saved config.

        Raises:
            ConfigurationError: If hostname or main class is missing from both
        """
        values: dict[str, Any] = {
            "main_class": config.main_class,
            "hostname": config.hostname,
            "username": config.username,
            "key_path": Path(config.key_path),
            "ssh_port": config.ssh_port,
            "deploy_path": config.deploy_path,
            "debug_port": config.debug_port,
            "runtime": config.runtime,
            "use_sudo": config.use_sudo,
            "stop_previous": config.stop_previous,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})

        if not values.get("hostname"):
            raise ConfigurationError(
                "No target host configured. Pass --host or run: pideploy config set hostname <ip>"
            )
        if not values.get("main_class"):
            raise ConfigurationError(
                "No main class configured. "
                "Pass --main or run: pideploy config set main_class <fqcn>"
            )

        return cls(artifact_path=Path(artifact_path), **values)


@dataclass(frozen=True)
class RunParameters:
    """Immutable launch parameters, built once per launch request."""

    main_entry_point: str
    hostname: str
    arguments: tuple[str, ...] = ()
    working_directory: PurePosixPath = PurePosixPath("pideploy")
    port: str = "22"
    debug_port: str = "5005"
    is_debugging: bool = False
    classpath: tuple[str, ...] = ()
    vm_options: tuple[str, ...] = ()
    runtime: str = "java"
    use_sudo: bool = False

    def __post_init__(self) -> None:
        # Normalize sequences so equal inputs always compare (and build) equal
        object.__setattr__(self, "arguments", tuple(self.arguments))
        object.__setattr__(self, "classpath", tuple(self.classpath))
        object.__setattr__(self, "vm_options", tuple(self.vm_options))
        object.__setattr__(self, "working_directory", PurePosixPath(self.working_directory))

        if not self.main_entry_point or not self.main_entry_point.strip():
            raise ConfigurationError("Main entry point cannot be empty")
        if not self.hostname or not self.hostname.strip():
            raise ConfigurationError("Target hostname cannot be empty")
        if not self.runtime:
            raise ConfigurationError("Runtime command cannot be empty")
        if self.is_debugging:
            parse_port(self.debug_port, "debug port")

    @property
    def debug_port_number(self) -> int:
        """Debug port as an integer."""
        return parse_port(self.debug_port, "debug port")

    @classmethod
    def from_configuration(
        cls, configuration: RunConfiguration, is_debugging: bool
    ) -> "RunParameters":
        """Build launch parameters from a run configuration.

        When no classpath is configured the uploaded artifact itself (as it
        lands in the remote working directory) is the classpath.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        parse_port(configuration.ssh_port, "SSH port")

        classpath = configuration.classpath or (configuration.artifact_path.name,)

        parameters = cls(
            main_entry_point=configuration.main_class,
            hostname=configuration.hostname,
            arguments=configuration.program_arguments,
            working_directory=PurePosixPath(configuration.deploy_path),
            port=str(configuration.ssh_port),
            debug_port=str(configuration.debug_port),
            is_debugging=is_debugging,
            classpath=classpath,
            vm_options=configuration.vm_options,
            runtime=configuration.runtime,
            use_sudo=configuration.use_sudo,
        )
        logger.debug(f"Built run parameters for {parameters.main_entry_point}")
        return parameters


__all__ = [
    "ConfigurationError",
    "RunConfiguration",
    "RunParameters",
    "parse_port",
]
