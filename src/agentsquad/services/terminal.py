"""Persistent terminal sessions backed by tmux."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..error_handling import ExternalServiceError
from ..executor import Command, CommandExecutor, Result

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class TerminalSession:
    """A tmux session as reported by ``list-sessions``."""

    name: str
    windows: int = 1
    attached: bool = False
    width: int = 0
    height: int = 0


class ProcessBackend(Protocol):
    """Capabilities the orchestrator needs from the terminal backend."""

    async def create_session(
        self,
        name: str,
        work_dir: Path,
        command: str,
        *,
        width: int = 0,
        height: int = 0,
    ) -> TerminalSession: ...

    async def kill_session(self, name: str) -> None: ...

    async def session_exists(self, name: str) -> bool: ...

    async def send_keys(self, name: str, text: str) -> None: ...

    async def capture_pane(self, name: str) -> str: ...

    async def capture_scrollback(self, name: str) -> str: ...

    async def attach_session(self, name: str) -> int: ...

    async def list_sessions(self) -> list[TerminalSession]: ...

    async def cleanup_sessions(self) -> int: ...


class TmuxBackend:
    """ProcessBackend implemented with the tmux command line.

    Session names are sanitised and prefixed so every session agentsquad owns
    can be found again by prefix.
    """

    service_name = "tmux"

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        prefix: str = "agentsquad_",
        command_timeout: float = 10.0,
        tmux_binary: str = "tmux",
    ):
        self.executor = executor
        self.prefix = prefix
        self.command_timeout = command_timeout
        self.tmux_binary = tmux_binary

    def session_name(self, name: str) -> str:
        """tmux-safe session name for a session ID."""
        if name.startswith(self.prefix):
            return name
        name = _WHITESPACE_RE.sub("", name)
        name = name.replace(".", "_").replace(":", "_")  # tmux target separators
        return f"{self.prefix}{name}"

    async def _tmux(self, *args: str) -> Result:
        return await self.executor.execute(
            Command(program=self.tmux_binary, args=list(args), timeout=self.command_timeout),
        )

    async def _tmux_checked(self, *args: str, message: str) -> str:
        result = await self._tmux(*args)
        result.check(self.service_name, message)
        return result.stdout_text

    async def session_exists(self, name: str) -> bool:
        result = await self._tmux("has-session", "-t", f"={self.session_name(name)}")
        return result.ok

    async def create_session(
        self,
        name: str,
        work_dir: Path,
        command: str,
        *,
        width: int = 0,
        height: int = 0,
    ) -> TerminalSession:
        target = self.session_name(name)
        if await self.session_exists(target):
            raise ExternalServiceError(
                self.service_name,
                f"session already exists: {target}",
                solution=f"Kill it with 'tmux kill-session -t {target}'",
            )

        args = ["new-session", "-d", "-s", target, "-c", str(work_dir)]
        if width > 0 and height > 0:
            args += ["-x", str(width), "-y", str(height)]
        if command:
            args.append(command)

        await self._tmux_checked(*args, message=f"failed to create session {target}")
        logger.info("Started tmux session %s in %s", target, work_dir)
        return TerminalSession(name=target, width=width, height=height)

    async def kill_session(self, name: str) -> None:
        target = self.session_name(name)
        await self._tmux_checked(
            "kill-session",
            "-t",
            f"={target}",
            message=f"failed to kill session {target}",
        )
        logger.info("Killed tmux session %s", target)

    async def send_keys(self, name: str, text: str) -> None:
        """Type ``text`` into the session; newlines are sent as Enter."""
        target = self.session_name(name)
        lines = text.split("\n")
        for index, line in enumerate(lines):
            if line:
                await self._tmux_checked(
                    "send-keys",
                    "-t",
                    target,
                    "-l",
                    line,
                    message=f"failed to send keys to {target}",
                )
            if index < len(lines) - 1:
                await self._tmux_checked(
                    "send-keys",
                    "-t",
                    target,
                    "Enter",
                    message=f"failed to send keys to {target}",
                )

    async def capture_pane(self, name: str) -> str:
        target = self.session_name(name)
        return await self._tmux_checked(
            "capture-pane",
            "-p",
            "-t",
            target,
            message=f"failed to capture pane of {target}",
        )

    async def capture_scrollback(self, name: str) -> str:
        target = self.session_name(name)
        return await self._tmux_checked(
            "capture-pane",
            "-p",
            "-S",
            "-",
            "-E",
            "-",
            "-t",
            target,
            message=f"failed to capture scrollback of {target}",
        )

    async def attach_session(self, name: str) -> int:
        """Attach the current terminal; returns once the user detaches."""
        target = self.session_name(name)
        if not await self.session_exists(target):
            raise ExternalServiceError(self.service_name, f"session does not exist: {target}")

        async with await self.executor.start(
            Command(program=self.tmux_binary, args=["attach-session", "-t", target]),
            inherit_stdio=True,
        ) as handle:
            result = await handle.wait()
        return result.exit_code

    async def list_sessions(self) -> list[TerminalSession]:
        result = await self._tmux(
            "list-sessions",
            "-F",
            "#{session_name}|#{session_windows}|#{session_attached}|#{session_width}|#{session_height}",
        )
        if not result.ok:
            # tmux exits non-zero when no server is running
            if "no server running" in result.stderr_text or "no sessions" in result.stderr_text:
                return []
            result.check(self.service_name, "failed to list sessions")

        sessions = []
        for line in result.stdout_text.splitlines():
            parts = line.split("|")
            if len(parts) != 5 or not parts[0].startswith(self.prefix):
                continue
            name, windows, attached, width, height = parts
            sessions.append(
                TerminalSession(
                    name=name,
                    windows=int(windows or 0),
                    attached=attached not in ("", "0"),
                    width=int(width or 0),
                    height=int(height or 0),
                ),
            )
        return sessions

    async def cleanup_sessions(self) -> int:
        """Kill every session carrying our prefix."""
        killed = 0
        for session in await self.list_sessions():
            try:
                await self.kill_session(session.name)
                killed += 1
            except ExternalServiceError as e:
                logger.warning("Failed to kill tmux session %s: %s", session.name, e)
        return killed
