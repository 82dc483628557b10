"""
SSH Connector Module

Build ssh/scp invocations for the deploy target and probe remote ports.

Security Requirements:
- SSH key-based authentication only
- No password authentication (BatchMode)
- Strict host key checking (configurable)
- Timeout enforcement
- No credential logging
"""

import logging
import socket
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class SSHConfig:
    """SSH connection configuration."""

    host: str
    user: str
    key_path: Path
    port: int = 22
    strict_host_key_checking: bool = False  # Freshly flashed boards rotate host keys
    connect_timeout: int = 10

    @property
    def destination(self) -> str:
        """user@host destination."""
        return f"{self.user}@{self.host}"


class SSHConnectionError(Exception):
    """Raised when SSH connection fails."""

    pass


class SSHConnector:
    """
    Build and run SSH commands against the deploy target.

    Security:
    - Key-based authentication only
    - No password prompts
    - Timeout enforcement
    - Argument lists only (no shell=True locally)
    """

    DEFAULT_USER = "pi"
    DEFAULT_PORT = 22

    @classmethod
    def _common_options(cls, config: SSHConfig) -> list[str]:
        options = [
            "-i",
            str(config.key_path.expanduser()),
            "-o",
            "BatchMode=yes",  # No password prompts
            "-o",
            f"ConnectTimeout={config.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
        ]

        if not config.strict_host_key_checking:
            options.extend(
                ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
            )

        return options

    @classmethod
    def build_ssh_command(cls, config: SSHConfig, remote_command: str | None = None) -> list[str]:
        """
        Build SSH command with proper flags.

        Args:
            config: SSH configuration
            remote_command: Optional command to execute on remote

        Returns:
            list: SSH command arguments

        Example:
            >>> config = SSHConfig(
            ...     host="192.168.1.5",
            ...     user="pi",
            ...     key_path=Path("~/.ssh/id_rsa")
            ... )
            >>> args = SSHConnector.build_ssh_command(config, "uname -a")
            >>> args[0], args[-2], args[-1]
            ('ssh', 'pi@192.168.1.5', 'uname -a')
        """
        args = ["ssh", "-p", str(config.port), *cls._common_options(config)]
        args.append(config.destination)

        if remote_command:
            args.append(remote_command)

        return args

    @classmethod
    def build_scp_command(cls, config: SSHConfig, local_path: Path, remote_path: str) -> list[str]:
        """
        Build recursive scp command copying local_path to remote_path.

        scp takes the port as -P (uppercase), unlike ssh.
        """
        return [
            "scp",
            "-r",
            "-P",
            str(config.port),
            *cls._common_options(config),
            str(local_path),
            f"{config.destination}:{remote_path}",
        ]

    @classmethod
    def validate_config(cls, config: SSHConfig) -> None:
        """
        Validate SSH configuration.

        Args:
            config: SSH configuration to validate

        Raises:
            SSHConnectionError: If configuration is invalid
        """
        if not config.host:
            raise SSHConnectionError("SSH host cannot be empty")

        if not config.user:
            raise SSHConnectionError("SSH user cannot be empty")

        if not (1 <= config.port <= 65535):
            raise SSHConnectionError(f"Invalid SSH port: {config.port}")

        key_path = config.key_path.expanduser()
        if not key_path.exists():
            raise SSHConnectionError(f"SSH key not found: {key_path}")

        mode = key_path.stat().st_mode
        if mode & 0o077:
            logger.warning(
                f"SSH key has insecure permissions: {oct(mode & 0o777)}\n"
                f"Expected: 0600 (-rw-------)\n"
                f"File: {key_path}"
            )

    @classmethod
    def check_port_open(cls, host: str, port: int, timeout: float = 2.0) -> bool:
        """
        Check if TCP port is open.

        Args:
            host: Hostname or IP
            port: Port number
            timeout: Connection timeout in seconds

        Returns:
            bool: True if port is open
        """
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    @classmethod
    def wait_for_port(
        cls, host: str, port: int, timeout: float = 30, interval: float = 1.0
    ) -> bool:
        """
        Wait for a TCP port on host to accept connections.

        Returns:
            bool: True once the port is open, False if timed out

        Raises:
            ValueError: If timeout is negative
        """
        if timeout < 0:
            raise ValueError("timeout must be positive (non-negative)")

        start_time = time.time()
        attempt = 0

        while True:
            attempt += 1
            if cls.check_port_open(host, port):
                elapsed = time.time() - start_time
                logger.debug(
                    f"Port {port} open on {host} (after {elapsed:.1f}s, {attempt} attempts)"
                )
                return True

            if (time.time() - start_time) >= timeout:
                break

            time.sleep(interval)

        logger.warning(f"Port {port} not open on {host} after {timeout}s ({attempt} attempts)")
        return False
