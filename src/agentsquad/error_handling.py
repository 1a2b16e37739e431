"""Error taxonomy and user-facing error display for agentsquad."""

import logging
import shutil
from enum import Enum
from pathlib import Path

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console(stderr=True)


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PRECONDITION = "precondition"
    EXTERNAL_SERVICE = "external_service"
    PERSISTENCE = "persistence"
    TIMEOUT = "timeout"
    CONCURRENCY = "concurrency"
    SYSTEM = "system"


class SquadError(Exception):
    """Base exception for agentsquad with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Display error to user with helpful context."""
        category_styles = {
            ErrorCategory.CONFIGURATION: ("⚙️", "yellow"),
            ErrorCategory.DEPENDENCY: ("📦", "red"),
            ErrorCategory.VALIDATION: ("⌨️", "yellow"),
            ErrorCategory.NOT_FOUND: ("🔍", "yellow"),
            ErrorCategory.PRECONDITION: ("⏸️", "yellow"),
            ErrorCategory.EXTERNAL_SERVICE: ("🔧", "red"),
            ErrorCategory.PERSISTENCE: ("💾", "red"),
            ErrorCategory.TIMEOUT: ("⏱️", "orange3"),
            ErrorCategory.CONCURRENCY: ("🚦", "orange3"),
            ErrorCategory.SYSTEM: ("💻", "red"),
        }

        emoji, color = category_styles.get(self.category, ("❌", "red"))
        title = self.category.value.replace("_", " ").title()

        console.print(f"\n{emoji} [{color} bold]{title} Error[/{color} bold]")
        console.print(f"[{color}]{self.message}[/{color}]")

        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")

        if self.solution:
            console.print(f"\n[green]💡 Solution:[/green] {self.solution}")

        if self.recoverable:
            console.print(
                "\n[dim]This error may be temporary. You can try again.[/dim]",
            )
        else:
            console.print(
                "\n[dim]This error requires intervention before continuing.[/dim]",
            )

        if self.original_error:
            logger.log(
                self.log_level,
                "%s: %s",
                self.category.value,
                self.message,
                exc_info=self.original_error,
            )
        else:
            logger.log(self.log_level, "%s: %s", self.category.value, self.message)


class ValidationError(SquadError):
    """Malformed request."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            ErrorCategory.VALIDATION,
            log_level=kwargs.pop("log_level", logging.WARNING),
            **kwargs,
        )


class NotFoundError(SquadError):
    """Unknown session ID or title, or any other missing entity."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop("solution", "Run 'agentsquad list' to see known sessions")
        super().__init__(
            message,
            ErrorCategory.NOT_FOUND,
            solution=solution,
            log_level=kwargs.pop("log_level", logging.WARNING),
            **kwargs,
        )


class PreconditionError(SquadError):
    """Operation is not valid for the current state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            ErrorCategory.PRECONDITION,
            log_level=kwargs.pop("log_level", logging.WARNING),
            **kwargs,
        )


class ExternalServiceError(SquadError):
    """A workspace or process backend call failed."""

    def __init__(
        self,
        service: str,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
        **kwargs,
    ):
        full_message = f"{service}: {message}"
        if exit_code is not None:
            full_message += f" (exit code {exit_code})"

        details = kwargs.pop("details", stderr)
        solution = kwargs.pop(
            "solution",
            f"Check {service} is properly installed and configured",
        )
        super().__init__(
            full_message,
            ErrorCategory.EXTERNAL_SERVICE,
            details=details,
            solution=solution,
            **kwargs,
        )
        self.service = service
        self.exit_code = exit_code


class PersistenceError(SquadError):
    """Session storage I/O failure."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Check the data directory is writable, or run 'agentsquad reset'",
        )
        super().__init__(
            message,
            ErrorCategory.PERSISTENCE,
            solution=solution,
            **kwargs,
        )


class ExecutionTimeoutError(SquadError, TimeoutError):
    """A deadline expired; the external process was terminated."""

    def __init__(self, message: str, *, timeout: float | None = None, **kwargs):
        super().__init__(message, ErrorCategory.TIMEOUT, **kwargs)
        self.timeout = timeout


class ConcurrencyLimitError(SquadError):
    """Gave up waiting for an execution slot."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Raise max_concurrent in the configuration or retry later",
        )
        super().__init__(
            message,
            ErrorCategory.CONCURRENCY,
            solution=solution,
            **kwargs,
        )


class ConfigurationError(SquadError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            **kwargs,
        )


class DependencyError(SquadError):
    """Missing or broken dependency errors."""

    def __init__(
        self,
        dependency: str,
        *,
        install_command: str | None = None,
        **kwargs,
    ):
        message = f"Required dependency '{dependency}' is not available"
        solution = kwargs.pop("solution", None)
        if not solution and install_command:
            solution = f"Install with: {install_command}"
        super().__init__(
            message,
            ErrorCategory.DEPENDENCY,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Convert generic exceptions to SquadError and display to user."""
    if isinstance(error, SquadError):
        error.display_to_user()
        return

    if category is None:
        if isinstance(error, TimeoutError):
            category = ErrorCategory.TIMEOUT
        else:
            category = ErrorCategory.SYSTEM

    squad_error = SquadError(
        message=str(error) or "An unexpected error occurred",
        category=category,
        original_error=error,
        **kwargs,
    )
    squad_error.display_to_user()


def check_dependencies() -> list[DependencyError]:
    """Check for missing external programs and return list of errors."""
    errors = []

    if not shutil.which("git"):
        errors.append(
            DependencyError(
                "git",
                solution="Install git from https://git-scm.com/ or your package manager",
                details="git worktrees isolate each session's workspace",
            ),
        )

    if not shutil.which("tmux"):
        errors.append(
            DependencyError(
                "tmux",
                solution="Install tmux with your package manager (e.g. 'apt install tmux')",
                details="tmux hosts the long-running program of every session",
            ),
        )

    return errors

