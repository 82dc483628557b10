"""Process lifecycle events and remote log streaming.

Supervising a local process (here: the ssh client tailing the program's log
on the target) is expressed as an explicit set of handler functions instead
of a listener object with empty overrides.

Example:
    >>> events = ProcessEvents(on_output=lambda line, stream: print(line))
    >>> RemoteLogStreamer.follow(ssh_config, PurePosixPath("pideploy/pideploy.log"), events)
"""

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath

from pideploy.modules.file_transfer.uploader import quote_remote_path
from pideploy.modules.ssh_connector import SSHConfig, SSHConnector

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"


def _ignore(*_args) -> None:
    return None


@dataclass
class ProcessEvents:
    """Lifecycle handlers for a supervised process. All default to no-ops."""

    on_start: Callable[[int], None] = _ignore
    on_output: Callable[[str, str], None] = _ignore
    on_will_terminate: Callable[[bool], None] = _ignore
    on_terminated: Callable[[int], None] = _ignore


class RemoteLogStreamer:
    """Stream a remote log file through ssh, dispatching ProcessEvents."""

    @classmethod
    def build_tail_command(
        cls, log_path: PurePosixPath, lines: int | None = None, follow: bool = True
    ) -> str:
        """Remote tail invocation for log_path (whole file when lines is None)."""
        start = f"-n {int(lines)}" if lines is not None else "-n +1"
        follow_flag = " -F" if follow else ""
        return f"tail {start}{follow_flag} {quote_remote_path(log_path)}"

    @classmethod
    def follow(
        cls,
        ssh_config: SSHConfig,
        log_path: PurePosixPath,
        events: ProcessEvents,
        lines: int | None = None,
        follow: bool = True,
    ) -> int:
        """
        Tail log_path on the target until the ssh process ends.

        Ctrl+C stops streaming (on_will_terminate(True) is dispatched and the
        ssh client is terminated); the remote program keeps running.

        Returns:
            int: Exit code of the ssh client
        """
        args = SSHConnector.build_ssh_command(
            ssh_config, cls.build_tail_command(log_path, lines, follow)
        )
        logger.debug(f"Streaming {log_path} from {ssh_config.host}")

        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        events.on_start(process.pid)

        # Drain stderr in the background so a chatty stderr cannot block stdout
        stderr_thread = threading.Thread(
            target=cls._pump, args=(process.stderr, STDERR, events), daemon=True
        )
        stderr_thread.start()

        try:
            cls._pump(process.stdout, STDOUT, events)
            returncode = process.wait()
        except KeyboardInterrupt:
            events.on_will_terminate(True)
            process.terminate()
            try:
                returncode = process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                returncode = process.wait()

        stderr_thread.join(timeout=1)
        events.on_terminated(returncode)
        return returncode

    @classmethod
    def _pump(cls, pipe, stream: str, events: ProcessEvents) -> None:
        try:
            for line in pipe:
                events.on_output(line.rstrip("\n"), stream)
        except (OSError, ValueError):
            # Pipe closed during termination
            pass


__all__ = ["STDERR", "STDOUT", "ProcessEvents", "RemoteLogStreamer"]
