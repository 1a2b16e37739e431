"""Value types used by the command executor."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..error_handling import ExternalServiceError


@dataclass
class Command:
    """An external program invocation."""

    program: str
    args: list[str] = field(default_factory=list)
    cwd: Path | str | None = None
    env: dict[str, str] | None = None  # overrides merged over os.environ
    stdin: bytes | None = None
    timeout: float | None = None  # None or 0 uses the executor default

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return " ".join(self.argv)


@dataclass
class Result:
    """Outcome of the last attempt of an executed command."""

    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    duration: float = 0.0
    error: Exception | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode(errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode(errors="replace")

    def check(self, service: str, message: str = "command failed") -> "Result":
        """Raise ExternalServiceError unless the command succeeded."""
        if not self.ok:
            raise ExternalServiceError(
                service,
                message,
                exit_code=self.exit_code,
                stderr=self.stderr_text.strip() or None,
                original_error=self.error,
            )
        return self


class OutputType(Enum):
    """Tag of a streamed output chunk."""

    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"
    ERROR = "error"


@dataclass
class Output:
    """A chunk of streamed process output."""

    type: OutputType
    data: bytes = b""
    timestamp: float = field(default_factory=time.time)
    exit_code: int | None = None
    error: Exception | None = None


class ProcessState(Enum):
    """State of a detached process tracked in the process table."""

    RUNNING = "running"
    STOPPED = "stopped"
    EXITED = "exited"
    ZOMBIE = "zombie"


@dataclass
class ProcessInfo:
    """Snapshot of a process table entry."""

    pid: int
    command: str
    args: list[str]
    start_time: datetime
    state: ProcessState
