"""pideploy - deploy JVM applications to a Raspberry Pi and attach a debugger

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Key-based SSH only, no credentials in code
- Report deploy failures, never crash on them

pideploy uploads a build artifact to a remote single-board computer over SSH,
starts it there and, in debug mode, attaches (or refocuses) a remote debugger
so re-running never leaves duplicate or orphaned debug sessions.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
