"""Configuration management for agentsquad."""

from pathlib import Path

import tomli
from pydantic import BaseModel, Field, field_validator

DEFAULT_MAX_CONCURRENT = 10


class SquadConfig(BaseModel):
    """Main configuration for agentsquad."""

    # Paths
    data_dir: Path = Field(default=Path("~/.local/share/agentsquad"))
    log_dir: Path = Field(default=Path("~/.local/share/agentsquad/logs"))
    workspace_dir: Path = Field(default=Path("~/.local/share/agentsquad/worktrees"))

    # Sessions
    default_program: str = Field(default="claude")
    auto_yes: bool = Field(default=False)
    session_prefix: str = Field(default="agentsquad_")
    default_width: int = Field(default=200)
    default_height: int = Field(default=50)

    # Command execution
    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT)
    default_timeout: float = Field(default=120.0)  # seconds
    retry_count: int = Field(default=0)
    retry_delay: float = Field(default=1.0)  # seconds
    retry_exit_codes: list[int] = Field(default_factory=list)
    stream_buffer: int = Field(default=100)  # chunks
    tmux_command_timeout: float = Field(default=10.0)  # seconds

    # Orchestration
    loading_grace_period: float = Field(default=2.0)  # seconds before Loading -> Ready

    # Auto-accept daemon
    daemon_poll_interval: float = Field(default=1.0)  # seconds between ticks
    daemon_log_window: float = Field(default=60.0)  # at most one repeated warning per window

    @field_validator("data_dir", "log_dir", "workspace_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: Path | str) -> Path:
        """Expand user home directory in paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @field_validator("max_concurrent", mode="after")
    @classmethod
    def concurrency_floor(cls, v: int) -> int:
        """Non-positive limits fall back to the default limit."""
        return v if v > 0 else DEFAULT_MAX_CONCURRENT

    @field_validator("retry_count", mode="after")
    @classmethod
    def clamp_retries(cls, v: int) -> int:
        return max(v, 0)

    @field_validator("default_timeout", "tmux_command_timeout", mode="after")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "timeouts must be greater than zero"
            raise ValueError(msg)
        return v

    @property
    def database_path(self) -> Path:
        """SQLite file holding session records."""
        return self.data_dir / "sessions.db"

    @property
    def git_binary(self) -> str:
        return "git"

    @property
    def tmux_binary(self) -> str:
        return "tmux"

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.data_dir, self.log_dir, self.workspace_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


def default_config_paths() -> list[Path]:
    """Config locations checked in order when none is given."""
    return [
        Path.home() / ".config" / "agentsquad" / "config.toml",  # User config
        Path.cwd() / "agentsquad.toml",  # Current directory
    ]


def load_config(config_path: Path | None = None) -> SquadConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        for path in default_config_paths():
            if path.exists():
                config_path = path
                break

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        return SquadConfig(**config_data)
    # Use defaults
    return SquadConfig()


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# agentsquad Configuration
# =======================

# ============================================================================
# COMMONLY CUSTOMIZED SETTINGS
# ============================================================================

default_program = "claude"                        # Program launched in every new session
auto_yes = false                                  # Start the auto-accept daemon for new sessions

# Directory paths
data_dir = "~/.local/share/agentsquad"            # Auto-created: session database
log_dir = "~/.local/share/agentsquad/logs"        # Auto-created: log files and daemon lock
workspace_dir = "~/.local/share/agentsquad/worktrees"  # Auto-created: isolated git worktrees

# Terminal size for new sessions
default_width = 200
default_height = 50

# ============================================================================
# ADVANCED SETTINGS - Most users can leave these as defaults
# ============================================================================

session_prefix = "agentsquad_"                    # Prefix of tmux session names

# Command execution
max_concurrent = 10                               # Max external commands running at once
default_timeout = 120                             # Default command timeout (seconds)
retry_count = 0                                   # Retries for commands failing with a retryable exit code
retry_delay = 1.0                                 # Delay between retries (seconds)
retry_exit_codes = []                             # Exit codes that trigger a retry
stream_buffer = 100                               # Buffered chunks per streaming command
tmux_command_timeout = 10                         # Timeout for individual tmux calls (seconds)

# Orchestration
loading_grace_period = 2.0                        # Seconds before a new session is marked ready

# Auto-accept daemon
daemon_poll_interval = 1.0                        # Seconds between prompt checks
daemon_log_window = 60                            # Seconds between repeated warnings per session
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(sample_config)
