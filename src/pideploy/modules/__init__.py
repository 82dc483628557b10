"""pideploy modules - Self-contained bricks following the brick philosophy

Each module is a self-contained component with clear contracts:
- SSH Connector: Build ssh/scp invocations and probe remote ports
- File Transfer: Upload the build artifact and start it on the target
- Debugger: Attach a remote debugger to the JDWP listener
- Notification Handler: Report deploy failures to the user
"""

from . import (
    debugger,
    file_transfer,
    notifications,
    ssh_connector,
)

__all__ = [
    "debugger",
    "file_transfer",
    "notifications",
    "ssh_connector",
]
