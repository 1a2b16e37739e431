"""Daemon management for the auto-accept loop."""

import asyncio
import logging
import subprocess
import sys
from pathlib import Path

import daemon

from ..config import SquadConfig
from ..error_handling import PreconditionError
from ..process_lock import ProcessLock
from .autoaccept import AutoAcceptLoop
from .orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)


class SquadDaemon:
    """Manages the auto-accept daemon lifecycle."""

    def __init__(self, config: SquadConfig):
        self.config = config
        self.auto_accept: AutoAcceptLoop | None = None
        self.lock: ProcessLock | None = None

    @property
    def log_file_path(self) -> Path:
        return self.config.log_dir / "daemon.log"

    def running_pid(self) -> int | None:
        return ProcessLock(self.config).running_pid()

    def start_daemon(self) -> None:
        """Detach from the terminal and run the loop in the background."""
        self.config.ensure_directories()

        pid = self.running_pid()
        if pid:
            msg = f"Auto-accept daemon is already running (PID {pid})"
            raise PreconditionError(msg, solution="Stop it with 'agentsquad daemon stop'")

        logger.info("Starting auto-accept daemon...")
        logger.info("Log file: %s", self.log_file_path)

        daemon_context = daemon.DaemonContext(
            working_directory=Path.cwd(),
            umask=0o002,
        )

        with daemon_context:
            self._run_daemon(self.log_file_path)

    def start_foreground(self) -> None:
        """Run in the foreground, logging to the caller's handlers."""
        self._run_daemon(None)

    def _run_daemon(self, log_file_path: Path | None) -> None:
        """Run the actual daemon process."""
        if log_file_path:
            self._setup_daemon_logging(log_file_path)

        self.lock = ProcessLock(self.config)
        if not self.lock.acquire():
            logger.error("Failed to acquire process lock - another daemon may be running")
            sys.exit(1)

        try:
            asyncio.run(self._serve())
        except Exception as e:
            logger.exception("Error in daemon: %s", e)
            sys.exit(1)
        finally:
            self.lock.release()

    async def _serve(self) -> None:
        orchestrator = SessionOrchestrator.from_config(self.config)
        self.auto_accept = AutoAcceptLoop(
            orchestrator,
            poll_interval=self.config.daemon_poll_interval,
            log_window=self.config.daemon_log_window,
        )
        try:
            await orchestrator.recover_stuck_sessions()
            await self.auto_accept.run()
        finally:
            await orchestrator.aclose()

    def stop(self) -> None:
        """Stop the loop and release the lock."""
        if self.auto_accept:
            self.auto_accept.stop()
        if self.lock:
            self.lock.release()

    def _setup_daemon_logging(self, log_file_path: Path) -> None:
        """Set up logging for daemon mode."""
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.INFO)

        file_handler = logging.FileHandler(log_file_path)
        file_handler.setLevel(logging.INFO)
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def launch_background_daemon(config_path: Path | None = None) -> subprocess.Popen:
    """Spawn ``agentsquad daemon start`` as an independent process."""
    args = [sys.executable, "-m", "agentsquad"]
    if config_path:
        args += ["--config", str(config_path)]
    args += ["daemon", "start"]

    return subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
