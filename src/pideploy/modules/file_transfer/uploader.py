"""Upload a build artifact to the target and start it there.

Security:
    - Uses argument arrays locally (no shell=True)
    - Every remote path and token is shell-quoted before it reaches the
      remote shell
    - Key-based SSH only
"""

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from pideploy.command_builder import RemoteCommand
from pideploy.modules.ssh_connector import SSHConfig, SSHConnectionError, SSHConnector

from .exceptions import InvalidArtifactError, RemoteLaunchError, TransferError

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own (connection/auth) failures
SSH_CONNECTION_FAILURE = 255

DEFAULT_LOG_FILE = "pideploy.log"


def quote_remote_path(path: PurePosixPath | str) -> str:
    """Shell-quote a remote path, keeping a leading ~/ expandable."""
    text = str(path)
    if text == "~":
        return "~"
    if text.startswith("~/"):
        return "~/" + shlex.quote(text[2:])
    return shlex.quote(text)


def process_match_pattern(main_entry_point: str) -> str:
    """pkill -f pattern for the main class that cannot match the invoking shell.

    The first character is wrapped in a bracket expression so the pattern
    text itself (present in the remote shell's command line) does not match.
    """
    return f"[{main_entry_point[0]}]{re.escape(main_entry_point[1:])}"


@dataclass(frozen=True)
class UploadJob:
    """One artifact upload plus the command that starts it. Consumed once."""

    local_artifact_path: Path
    remote_command: RemoteCommand
    remote_directory: PurePosixPath = PurePosixPath("pideploy")
    stop_pattern: str | None = None  # Main class of a previous instance to stop
    log_file: str = DEFAULT_LOG_FILE

    @property
    def remote_artifact_path(self) -> PurePosixPath:
        return self.remote_directory / self.local_artifact_path.name

    @property
    def remote_log_path(self) -> PurePosixPath:
        return self.remote_directory / self.log_file


@dataclass
class UploadResult:
    """Result of a completed upload and launch."""

    remote_artifact_path: PurePosixPath
    remote_log_path: PurePosixPath
    remote_pid: int | None
    duration_seconds: float


class ArtifactUploader:
    """Deploy an artifact over ssh/scp and launch it detached on the target.

    The launch returns as soon as the remote process has been started, so a
    debugger can attach to its JDWP listener right afterwards. Program output
    goes to a log file next to the artifact (see RemoteLogStreamer).
    """

    def __init__(
        self,
        transfer_timeout: int = 300,
        command_timeout: int = 60,
    ):
        self.transfer_timeout = transfer_timeout
        self.command_timeout = command_timeout

    def upload(self, job: UploadJob, ssh_config: SSHConfig) -> UploadResult:
        """Upload job.local_artifact_path and run job.remote_command.

        Args:
            job: Artifact and command to deploy
            ssh_config: Connection to the target

        Returns:
            UploadResult with remote paths and the started process id

        Raises:
            InvalidArtifactError: Artifact missing or unreadable
            SSHConnectionError: Target unreachable or authentication failed
            TransferError: Copy failed
            RemoteLaunchError: Program could not be started
        """
        start_time = time.time()

        self._validate_artifact(job.local_artifact_path)
        SSHConnector.validate_config(ssh_config)

        remote_dir = quote_remote_path(job.remote_directory)
        logger.info(f"Deploying {job.local_artifact_path.name} to {ssh_config.host}:{remote_dir}")

        self._run_remote(
            ssh_config, f"mkdir -p {remote_dir}", TransferError, "Creating deploy directory"
        )

        if job.stop_pattern:
            self._stop_previous(job, ssh_config)

        # Replace, don't merge, a previously uploaded classes directory
        self._run_remote(
            ssh_config,
            f"rm -rf {quote_remote_path(job.remote_artifact_path)}",
            TransferError,
            "Removing previous artifact",
        )

        scp_args = SSHConnector.build_scp_command(
            ssh_config, job.local_artifact_path, f"{job.remote_directory}/"
        )
        self._run(scp_args, self.transfer_timeout, TransferError, "Artifact transfer", ssh_config)
        logger.debug(f"Uploaded {job.local_artifact_path} to {job.remote_artifact_path}")

        remote_pid = self._launch(job, ssh_config)

        duration = time.time() - start_time
        logger.info(f"Started remote process {remote_pid} on {ssh_config.host} in {duration:.1f}s")

        return UploadResult(
            remote_artifact_path=job.remote_artifact_path,
            remote_log_path=job.remote_log_path,
            remote_pid=remote_pid,
            duration_seconds=duration,
        )

    def stop(self, ssh_config: SSHConfig, main_entry_point: str, use_sudo: bool = False) -> bool:
        """Stop a running instance of main_entry_point on the target.

        Returns:
            bool: True if a process was signalled
        """
        prefix = "sudo " if use_sudo else ""
        pattern = shlex.quote(process_match_pattern(main_entry_point))
        args = SSHConnector.build_ssh_command(ssh_config, f"{prefix}pkill -f {pattern}")
        result = self._run(
            args,
            self.command_timeout,
            RemoteLaunchError,
            "Stopping program",
            ssh_config,
            allowed_codes=(0, 1),  # pkill exits 1 when nothing matched
        )
        return result.returncode == 0

    def _validate_artifact(self, path: Path) -> None:
        if not path.exists():
            raise InvalidArtifactError(f"Artifact not found: {path}")
        if not os.access(path, os.R_OK):
            raise InvalidArtifactError(f"Artifact is not readable: {path}")

    def _stop_previous(self, job: UploadJob, ssh_config: SSHConfig) -> None:
        use_sudo = bool(job.remote_command.tokens) and job.remote_command.tokens[0] == "sudo"
        if self.stop(ssh_config, job.stop_pattern, use_sudo=use_sudo):
            logger.info(f"Stopped previous instance of {job.stop_pattern}")

    def _launch(self, job: UploadJob, ssh_config: SSHConfig) -> int | None:
        # Only nohup may be backgrounded: a backgrounded `cd && nohup` list keeps
        # ssh's stdout open under bash until the program exits
        command = (
            f"cd {quote_remote_path(job.remote_directory)} || exit 1; "
            f"nohup {job.remote_command.to_shell()} > {shlex.quote(job.log_file)} 2>&1 "
            f"< /dev/null & echo $!"
        )
        result = self._run_remote(ssh_config, command, RemoteLaunchError, "Remote launch")

        pid_text = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if pid_text.isdigit():
            return int(pid_text)

        logger.debug(f"Could not read remote pid from: {result.stdout!r}")
        return None

    def _run_remote(
        self,
        ssh_config: SSHConfig,
        command: str,
        error_cls: type[Exception],
        what: str,
    ) -> subprocess.CompletedProcess:
        args = SSHConnector.build_ssh_command(ssh_config, command)
        logger.debug(f"Executing on {ssh_config.host}: {command}")
        return self._run(args, self.command_timeout, error_cls, what, ssh_config)

    def _run(
        self,
        args: list[str],
        timeout: int,
        error_cls: type[Exception],
        what: str,
        ssh_config: SSHConfig,
        allowed_codes: tuple[int, ...] = (0,),
    ) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,  # Handle returncode manually
            )
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"{what} timed out after {timeout}s") from e
        except OSError as e:
            raise error_cls(f"{what} failed: {e}") from e

        if result.returncode in allowed_codes:
            return result

        stderr = (result.stderr or "").strip()
        if result.returncode == SSH_CONNECTION_FAILURE:
            raise SSHConnectionError(
                f"Connection to {ssh_config.destination}:{ssh_config.port} failed: "
                f"{stderr or 'ssh exited with 255'}"
            )

        raise error_cls(f"{what} failed (exit {result.returncode}): {stderr}")


__all__ = [
    "DEFAULT_LOG_FILE",
    "ArtifactUploader",
    "UploadJob",
    "UploadResult",
    "process_match_pattern",
    "quote_remote_path",
]
