"""Registry of remote debug sessions.

Debug sessions are looked up by their display name (``PI Debugger (<port>)``),
never by identity. The registry must never hold two descriptors with the same
name: callers hold ``registry.lock(name)`` while deciding whether to reuse,
replace or create the session for that name.

Two implementations:
- InMemorySessionRegistry: process-wide, thread-safe
- FileSessionRegistry: persists spawned debugger processes to
  ~/.pideploy/sessions.toml so separate CLI invocations share one registry
"""

import logging
import os
import re
import shlex
import threading
import tomllib
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import tomli_w

from pideploy.file_lock_manager import acquire_file_lock

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")


class SessionRegistryError(Exception):
    """Raised when session registry operations fail."""

    pass


class ProcessHandle(Protocol):
    """Anything that can report whether its process is still running."""

    def is_alive(self) -> bool: ...


@dataclass
class PidProcess:
    """Process handle backed by a local pid (and the Popen object when we own it).

    A pid read back from disk may have been reused by another program. When
    the command line is known and /proc is available, it must still match.
    """

    pid: int
    popen: Any = None
    command: str | None = None

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None

        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else
            pass
        except OSError:
            return False
        return self._command_matches()

    def _command_matches(self) -> bool:
        if not self.command or not PROC_ROOT.is_dir():
            return True

        try:
            raw = (PROC_ROOT / str(self.pid) / "cmdline").read_bytes()
        except FileNotFoundError:
            return False
        except OSError:
            return True

        args = [part.decode(errors="replace") for part in raw.split(b"\0") if part]
        if shlex.join(args) != self.command:
            logger.debug(f"pid {self.pid} now runs {shlex.join(args)!r}, not the debugger")
            return False
        return True


@dataclass
class TerminalHandle:
    """Where a debugger runs, for bringing it back to the user's attention."""

    pid: int
    command: str
    host: str | None = None
    port: str | None = None

    def describe(self) -> str:
        target = f" attached to {self.host}:{self.port}" if self.host else ""
        return f"pid {self.pid}{target} ({self.command})"


@dataclass
class DebugSessionDescriptor:
    """Run-time record of an attached/attachable remote debug session."""

    session_name: str
    process: ProcessHandle | None = None
    ui_handle: Any = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def process_alive(self) -> bool:
        """True while the debugger process behind this session runs."""
        return self.process is not None and self.process.is_alive()


class SessionRegistry(ABC):
    """Query/mutate interface over running debug sessions."""

    @abstractmethod
    def get_by_name(self, session_name: str) -> list[DebugSessionDescriptor]:
        """All descriptors whose name equals session_name (normally 0 or 1)."""

    @abstractmethod
    def list_sessions(self) -> list[DebugSessionDescriptor]:
        """All descriptors, in insertion order."""

    @abstractmethod
    def add(self, descriptor: DebugSessionDescriptor) -> None:
        """Register a descriptor.

        Raises:
            SessionRegistryError: A descriptor with the same name exists
        """

    @abstractmethod
    def remove(self, descriptor: DebugSessionDescriptor) -> bool:
        """Remove a descriptor by name. Returns True if one was removed."""

    @abstractmethod
    def lock(self, session_name: str):
        """Context manager granting exclusive access to one session name."""

    def prune(self) -> list[DebugSessionDescriptor]:
        """Remove every descriptor whose process has terminated."""
        removed = []
        for descriptor in self.list_sessions():
            with self.lock(descriptor.session_name):
                if not descriptor.process_alive and self.remove(descriptor):
                    removed.append(descriptor)
        return removed


class InMemorySessionRegistry(SessionRegistry):
    """Thread-safe registry held in process memory."""

    def __init__(self) -> None:
        self._sessions: list[DebugSessionDescriptor] = []
        self._guard = threading.Lock()
        self._name_locks: dict[str, threading.RLock] = {}

    def get_by_name(self, session_name: str) -> list[DebugSessionDescriptor]:
        with self._guard:
            return [d for d in self._sessions if d.session_name == session_name]

    def list_sessions(self) -> list[DebugSessionDescriptor]:
        with self._guard:
            return list(self._sessions)

    def add(self, descriptor: DebugSessionDescriptor) -> None:
        with self._guard:
            if any(d.session_name == descriptor.session_name for d in self._sessions):
                raise SessionRegistryError(
                    f"Debug session '{descriptor.session_name}' is already registered"
                )
            self._sessions.append(descriptor)
        logger.debug(f"Registered debug session '{descriptor.session_name}'")

    def remove(self, descriptor: DebugSessionDescriptor) -> bool:
        with self._guard:
            before = len(self._sessions)
            self._sessions = [
                d for d in self._sessions if d.session_name != descriptor.session_name
            ]
            removed = len(self._sessions) != before
        if removed:
            logger.debug(f"Removed debug session '{descriptor.session_name}'")
        return removed

    @contextmanager
    def lock(self, session_name: str) -> Iterator[None]:
        with self._guard:
            name_lock = self._name_locks.setdefault(session_name, threading.RLock())
        with name_lock:
            yield


def _lock_file_name(session_name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", session_name.lower()).strip("-")
    return f"{slug or 'session'}.lock"


class FileSessionRegistry(SessionRegistry):
    """Registry persisted in ~/.pideploy/sessions.toml.

    Only sessions backed by a local process (a PidProcess) can be persisted;
    after a reload their liveness is checked through the pid.

    File format:
        ["PI Debugger (5005)"]
        pid = 4242
        command = "jdb -connect ..."
        host = "192.168.1.5"
        port = "5005"
        started_at = "2026-01-01T10:00:00+00:00"
    """

    DEFAULT_DIR = Path.home() / ".pideploy"
    DEFAULT_FILE = DEFAULT_DIR / "sessions.toml"

    def __init__(self, path: Path | None = None, lock_timeout: float = 600.0):
        self.path = path or self.DEFAULT_FILE
        self.lock_dir = self.path.parent / "locks"
        self.lock_timeout = lock_timeout
        self._memory = InMemorySessionRegistry()
        self._depth = threading.local()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load sessions file {self.path}: {e}")
            return {}

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        temp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            os.chmod(self.path.parent, 0o700)
            temp_path = self.path.with_suffix(".tmp")

            with open(temp_path, "wb") as f:
                tomli_w.dump(data, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(self.path)

        except OSError as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise SessionRegistryError(f"Failed to save sessions: {e}") from e

    def _to_descriptor(self, name: str, data: dict[str, Any]) -> DebugSessionDescriptor:
        pid = int(data["pid"])
        started_at = datetime.fromisoformat(data["started_at"]) if "started_at" in data else None
        command = data.get("command", "")
        handle = TerminalHandle(
            pid=pid,
            command=command,
            host=data.get("host"),
            port=data.get("port"),
        )
        descriptor = DebugSessionDescriptor(
            session_name=name,
            process=PidProcess(pid=pid, command=command or None),
            ui_handle=handle,
        )
        if started_at:
            descriptor.started_at = started_at
        return descriptor

    def _from_descriptor(self, descriptor: DebugSessionDescriptor) -> dict[str, Any]:
        if not isinstance(descriptor.process, PidProcess):
            raise SessionRegistryError(
                f"Session '{descriptor.session_name}' has no local process and cannot be persisted"
            )

        record: dict[str, Any] = {
            "pid": descriptor.process.pid,
            "started_at": descriptor.started_at.isoformat(),
        }
        handle = descriptor.ui_handle
        if isinstance(handle, TerminalHandle):
            record["command"] = handle.command
            if handle.host:
                record["host"] = handle.host
            if handle.port:
                record["port"] = handle.port
        return record

    def get_by_name(self, session_name: str) -> list[DebugSessionDescriptor]:
        # Prefer the live in-memory descriptor (it owns the Popen object)
        in_memory = self._memory.get_by_name(session_name)
        if in_memory:
            return in_memory

        data = self._load()
        if session_name not in data:
            return []
        try:
            return [self._to_descriptor(session_name, data[session_name])]
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed session record '{session_name}': {e}")
            return []

    def list_sessions(self) -> list[DebugSessionDescriptor]:
        sessions = []
        for name, record in self._load().items():
            in_memory = self._memory.get_by_name(name)
            if in_memory:
                sessions.extend(in_memory)
                continue
            try:
                sessions.append(self._to_descriptor(name, record))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Ignoring malformed session record '{name}': {e}")
        return sessions

    def add(self, descriptor: DebugSessionDescriptor) -> None:
        with self.lock(descriptor.session_name):
            data = self._load()
            if descriptor.session_name in data:
                raise SessionRegistryError(
                    f"Debug session '{descriptor.session_name}' is already registered"
                )
            data[descriptor.session_name] = self._from_descriptor(descriptor)
            self._save(data)
            self._memory.remove(descriptor)
            self._memory.add(descriptor)
        logger.debug(f"Persisted debug session '{descriptor.session_name}'")

    def remove(self, descriptor: DebugSessionDescriptor) -> bool:
        with self.lock(descriptor.session_name):
            removed = self._memory.remove(descriptor)
            data = self._load()
            if descriptor.session_name in data:
                del data[descriptor.session_name]
                self._save(data)
                removed = True
        return removed

    @contextmanager
    def lock(self, session_name: str) -> Iterator[None]:
        depths: dict[str, int] = self._depth.__dict__.setdefault("by_name", {})
        with self._memory.lock(session_name):
            if depths.get(session_name, 0):
                # Re-entrant use from the same thread already holds the file lock
                depths[session_name] += 1
                try:
                    yield
                finally:
                    depths[session_name] -= 1
                return

            lock_path = self.lock_dir / _lock_file_name(session_name)
            with acquire_file_lock(
                lock_path, timeout=self.lock_timeout, operation=f"debug session '{session_name}'"
            ):
                depths[session_name] = 1
                try:
                    yield
                finally:
                    depths[session_name] = 0


__all__ = [
    "DebugSessionDescriptor",
    "FileSessionRegistry",
    "InMemorySessionRegistry",
    "PidProcess",
    "ProcessHandle",
    "SessionRegistry",
    "SessionRegistryError",
    "TerminalHandle",
]
