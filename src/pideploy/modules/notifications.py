"""
Notification Handler Module

Show (title, message, severity) notifications: always on the terminal, and
through an optional desktop notification command such as notify-send.

Security Requirements:
- Safe subprocess execution (argument list, timeout)
- Graceful degradation if the notification command is not available
- Never raises: notifications are fire-and-forget
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Notification severity."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


SEVERITY_STYLES = {
    Severity.INFO: "cyan",
    Severity.WARNING: "yellow",
    Severity.ERROR: "bold red",
}


@dataclass
class NotificationResult:
    """Notification send result."""

    displayed: bool
    sent: bool  # Delivered through the external command
    error: str | None = None


class NotificationHandler:
    """
    Display notifications to the user.

    Features:
    - Severity-colored terminal output via rich
    - Optional external command, invoked as: <command> <title> <message>
    - No errors if the command is missing or fails
    """

    def __init__(self, command: str | None = None, console: Console | None = None):
        self.command = command
        self.console = console or Console(stderr=True)

    def is_command_available(self) -> bool:
        """
        Check if the notification command is installed.

        Returns:
            bool: True if a command is configured and on PATH
        """
        if not self.command:
            return False

        result = shutil.which(self.command)
        if result is None:
            logger.debug(f"{self.command} not found in PATH")
            return False

        logger.debug(f"{self.command} found at {result}")
        return True

    def notify(
        self, title: str, message: str, severity: Severity = Severity.INFO
    ) -> NotificationResult:
        """
        Show a notification.

        Args:
            title: Short title, e.g. "SSH Connection Error"
            message: Underlying message
            severity: Notification severity

        Returns:
            NotificationResult: What was delivered

        Example:
            >>> handler = NotificationHandler()
            >>> handler.notify("SSH Connection Error", "Connection refused", Severity.ERROR)
        """
        logger.debug(f"[{severity.value}] {title}: {message}")

        displayed = True
        try:
            style = SEVERITY_STYLES[severity]
            self.console.print(
                f"[{style}]{escape(title)}[/{style}]: {escape(message)}", highlight=False
            )
        except Exception as e:
            logger.debug(f"Failed to render notification: {e}")
            displayed = False

        if not self.is_command_available():
            return NotificationResult(displayed=displayed, sent=False)

        return self._send_external(title, message, displayed)

    def _send_external(self, title: str, message: str, displayed: bool) -> NotificationResult:
        try:
            subprocess.run(
                [self.command, title, message],
                capture_output=True,
                text=True,
                timeout=10,
                check=True,
            )
            logger.debug("Notification sent successfully")
            return NotificationResult(displayed=displayed, sent=True)

        except subprocess.CalledProcessError as e:
            error_msg = e.stderr if e.stderr else str(e)
            logger.warning(f"Failed to send notification: {error_msg}")
            return NotificationResult(displayed=displayed, sent=False, error=error_msg)

        except subprocess.TimeoutExpired:
            logger.warning("Notification timed out")
            return NotificationResult(displayed=displayed, sent=False, error="Timeout")

        except OSError as e:
            logger.warning(f"Notification failed: {type(e).__name__}: {e}")
            return NotificationResult(displayed=displayed, sent=False, error=str(e))


__all__ = ["NotificationHandler", "NotificationResult", "Severity"]
