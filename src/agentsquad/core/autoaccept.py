"""Auto-accept loop answering confirmation prompts of running sessions."""

import asyncio
import logging
import signal
import time
from collections.abc import Callable

from ..error_handling import NotFoundError, SquadError
from ..session.models import Session
from .orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

# Matched case-insensitively against the last non-blank line of the pane
PROMPT_MARKERS = (
    "[y/n]",
    "(y/n)",
    "continue?",
    "proceed?",
    "press enter",
    "hit enter",
)

# tmux trims trailing spaces, so "> " prompts arrive as ">"
PROMPT_SUFFIXES = (">>>", "claude>", "aider>", ">")


def last_line(output: str) -> str:
    """Last non-blank line of captured pane output."""
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.rstrip()
    return ""


def is_prompt(output: str) -> bool:
    """Whether the pane ends in something waiting for confirmation."""
    tail = last_line(output)
    if not tail:
        return False
    lowered = tail.casefold()
    if any(marker in lowered for marker in PROMPT_MARKERS):
        return True
    return tail.endswith(PROMPT_SUFFIXES)


class RateLimiter:
    """Allows one event per key per window."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._last: dict[str, float] = {}

    def allow(self, key: str) -> bool:
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.window:
            return False
        self._last[key] = now
        return True


class AutoAcceptLoop:
    """Polls every known session and confirms prompts it finds.

    A prompt is answered once per distinct pane content: as long as the
    captured output is unchanged since the last answer, no further input is
    sent. Sessions that disappear from storage are dropped.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        *,
        poll_interval: float = 1.0,
        log_window: float = 60.0,
        response: str = "\n",
    ):
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.response = response
        self.sessions: dict[str, Session] = {}

        self._answered: dict[str, str] = {}
        self._warnings = RateLimiter(log_window)
        self._stop_event = asyncio.Event()

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._stop_event.set()

    def _warn(self, message: str, *args: object) -> None:
        # one window shared by every session
        if self._warnings.allow("session"):
            logger.warning(message, *args)

    def _forget(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self._answered.pop(session_id, None)

    async def load_sessions(self) -> int:
        """Load every stored session and enable auto-accept on it locally."""
        for session in await self.orchestrator.list_sessions(refresh=True):
            session.auto_yes = True
            self.sessions[session.session_id] = session
        logger.info("Watching %s sessions", len(self.sessions))
        return len(self.sessions)

    async def tick(self) -> None:
        """Visit every known session once, one at a time."""
        for session_id in list(self.sessions):
            await self.process_session(session_id)

    async def process_session(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return

        if session.auto_yes and session.status.accepts_input:
            await self._answer_prompt(session)

        try:
            updated = await self.orchestrator.get_session(session_id, refresh=True)
        except NotFoundError:
            logger.info("Session %s no longer exists, dropping it", session)
            self._forget(session_id)
            return
        except SquadError as e:
            self._warn("Failed to refresh session %s: %s", session, e)
            return

        updated.auto_yes = True
        self.sessions[session_id] = updated

    async def _answer_prompt(self, session: Session) -> None:
        session_id = session.session_id
        try:
            output = await self.orchestrator.get_output(session_id)
        except SquadError as e:
            self._warn("Failed to read output of session %s: %s", session, e)
            return

        if not is_prompt(output):
            self._answered.pop(session_id, None)
            return
        if self._answered.get(session_id) == output:
            return

        try:
            await self.orchestrator.send_input(session_id, self.response)
        except SquadError as e:
            self._warn("Failed to answer prompt of session %s: %s", session, e)
            return

        self._answered[session_id] = output
        logger.info("Accepted prompt in session %s: %s", session, last_line(output))

    async def run(self, *, install_signal_handlers: bool = True) -> None:
        """Load sessions and tick until stopped.

        SIGINT and SIGTERM stop the loop once the in-flight tick completes.
        Cancelling the task also waits for that tick before unwinding.
        """
        await self.load_sessions()

        loop = asyncio.get_running_loop()
        signals = (signal.SIGINT, signal.SIGTERM) if install_signal_handlers else ()
        for sig in signals:
            loop.add_signal_handler(sig, self._handle_signal, sig)

        logger.info("Auto-accept loop started (poll interval %.1fs)", self.poll_interval)
        try:
            while not self.is_stopping:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
                if self.is_stopping:
                    break

                tick = asyncio.ensure_future(self.tick())
                try:
                    await asyncio.shield(tick)
                except asyncio.CancelledError:
                    await asyncio.gather(tick, return_exceptions=True)
                    raise
                except Exception:
                    logger.exception("Auto-accept tick failed")
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
            logger.info("Auto-accept loop stopped")

    def _handle_signal(self, signum: int) -> None:
        logger.info("Received signal %s, stopping auto-accept loop", signal.Signals(signum).name)
        self.stop()
