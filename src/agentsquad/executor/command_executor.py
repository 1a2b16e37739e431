"""Bounded, retryable, streamable execution of external programs."""

import asyncio
import contextlib
import dataclasses
import logging
import os
import shutil
import subprocess
import time
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from ..error_handling import (
    ConcurrencyLimitError,
    ExecutionTimeoutError,
    ExternalServiceError,
    NotFoundError,
)
from .models import Command, Output, OutputType, ProcessInfo, Result
from .process import (
    InteractiveSession,
    OutputStream,
    ProcessHandle,
    ProcessTable,
    terminate_process,
)

if TYPE_CHECKING:
    from ..config import SquadConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10
DEFAULT_TIMEOUT = 120.0
READ_CHUNK_SIZE = 4096


class CommandExecutor:
    """Runs external programs for the git and tmux adapters.

    At most ``max_concurrent`` processes started through ``execute`` and
    ``execute_streaming`` run at the same time. Processes started with
    ``start`` or ``execute_interactive`` are long-lived and do not take an
    execution slot.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        default_timeout: float = DEFAULT_TIMEOUT,
        retry_count: int = 0,
        retry_delay: float = 0.0,
        retry_exit_codes: Iterable[int] = (),
        default_env: dict[str, str] | None = None,
        working_dir: Path | str | None = None,
        stream_buffer: int = 100,
    ) -> None:
        if max_concurrent <= 0:
            max_concurrent = DEFAULT_MAX_CONCURRENT
        self.max_concurrent = max_concurrent
        self.default_timeout = default_timeout if default_timeout > 0 else DEFAULT_TIMEOUT
        self.retry_count = max(retry_count, 0)
        self.retry_delay = retry_delay
        self.retry_exit_codes = frozenset(retry_exit_codes)
        self.default_env = default_env
        self.working_dir = working_dir
        self.stream_buffer = max(stream_buffer, 1)

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._processes = ProcessTable()

    @classmethod
    def from_config(cls, config: "SquadConfig") -> "CommandExecutor":
        return cls(
            max_concurrent=config.max_concurrent,
            default_timeout=config.default_timeout,
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
            retry_exit_codes=config.retry_exit_codes,
            stream_buffer=config.stream_buffer,
        )

    @property
    def active(self) -> int:
        """Number of execution slots currently held."""
        return self._active

    # Slots

    async def _acquire(self, acquire_timeout: float | None) -> None:
        try:
            async with asyncio.timeout(acquire_timeout):
                await self._semaphore.acquire()
        except TimeoutError as e:
            msg = (
                f"no execution slot became free within {acquire_timeout:g}s "
                f"({self.max_concurrent} commands already running)"
            )
            raise ConcurrencyLimitError(msg) from e
        self._active += 1

    def _release(self) -> None:
        self._active -= 1
        self._semaphore.release()

    @contextlib.asynccontextmanager
    async def _slot(self, acquire_timeout: float | None) -> AsyncIterator[None]:
        await self._acquire(acquire_timeout)
        try:
            yield
        finally:
            self._release()

    # Process setup

    def _timeout_for(self, cmd: Command) -> float:
        return cmd.timeout if cmd.timeout else self.default_timeout

    def _env_for(self, cmd: Command) -> dict[str, str] | None:
        overrides = cmd.env if cmd.env is not None else self.default_env
        if overrides is None:
            return None
        return {**os.environ, **overrides}

    def _cwd_for(self, cmd: Command) -> str | None:
        cwd = cmd.cwd or self.working_dir
        return str(cwd) if cwd else None

    async def _spawn(
        self,
        cmd: Command,
        *,
        stdin: int | None,
        stdout: int | None,
        stderr: int | None,
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *cmd.argv,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            cwd=self._cwd_for(cmd),
            env=self._env_for(cmd),
        )

    # Basic execution

    async def execute(self, cmd: Command, *, acquire_timeout: float | None = None) -> Result:
        """Run a command to completion and capture its output.

        Failed attempts are retried only when the exit code is one of
        ``retry_exit_codes``; the returned Result describes the last attempt.
        Timeouts are never retried: the process is killed and
        ExecutionTimeoutError is raised.
        """
        async with self._slot(acquire_timeout):
            logger.debug("Executing command: %s", cmd)
            attempt = 0
            while True:
                attempt += 1
                if attempt > 1:
                    logger.info(
                        "Retrying %s (attempt %s/%s)",
                        cmd.program,
                        attempt,
                        self.retry_count + 1,
                    )
                    await asyncio.sleep(self.retry_delay)

                result = await self._run_attempt(cmd)
                if (
                    result.ok
                    or result.exit_code not in self.retry_exit_codes
                    or attempt > self.retry_count
                ):
                    break

        result.attempts = attempt
        if result.ok:
            logger.debug("Command succeeded in %.2fs: %s", result.duration, cmd)
        else:
            logger.debug(
                "Command failed (exit code %s, %s attempt(s)): %s",
                result.exit_code,
                attempt,
                cmd,
            )
        return result

    async def _run_attempt(self, cmd: Command) -> Result:
        timeout = self._timeout_for(cmd)
        started = time.monotonic()
        try:
            process = await self._spawn(
                cmd,
                stdin=subprocess.PIPE if cmd.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            return Result(
                exit_code=-1,
                stderr=str(e).encode(),
                duration=time.monotonic() - started,
                error=e,
            )

        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await process.communicate(cmd.stdin)
        except TimeoutError as e:
            await terminate_process(process, drain_pipes=True)
            msg = f"{cmd.program} timed out after {timeout:g}s"
            raise ExecutionTimeoutError(msg, timeout=timeout, details=str(cmd)) from e
        except asyncio.CancelledError:
            await terminate_process(process, drain_pipes=True)
            raise

        exit_code = process.returncode
        error = None
        if exit_code != 0:
            error = subprocess.CalledProcessError(exit_code, cmd.argv, stdout, stderr)
        return Result(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=time.monotonic() - started,
            error=error,
        )

    async def execute_with_input(
        self,
        cmd: Command,
        data: bytes | str,
        *,
        acquire_timeout: float | None = None,
    ) -> Result:
        if isinstance(data, str):
            data = data.encode()
        return await self.execute(
            dataclasses.replace(cmd, stdin=data),
            acquire_timeout=acquire_timeout,
        )

    # Streaming execution

    async def execute_streaming(
        self,
        cmd: Command,
        *,
        acquire_timeout: float | None = None,
    ) -> OutputStream:
        """Start a command and stream its output as tagged chunks.

        The stream ends with one ``OutputType.EXIT`` chunk. Its buffer is
        bounded: callers must drain it or ``aclose()`` it, otherwise the
        process stalls once the buffer fills up.
        """
        await self._acquire(acquire_timeout)
        try:
            process = await self._spawn(
                cmd,
                stdin=subprocess.PIPE if cmd.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self._release()
            raise ExternalServiceError(
                cmd.program,
                "failed to start command",
                original_error=e,
                details=str(e),
            ) from e
        except BaseException:
            self._release()
            raise

        stream = OutputStream(self.stream_buffer)
        stream.attach(asyncio.create_task(self._pump(process, cmd, stream)))
        return stream

    async def _forward(
        self,
        reader: asyncio.StreamReader,
        kind: OutputType,
        stream: OutputStream,
    ) -> None:
        while True:
            try:
                chunk = await reader.read(READ_CHUNK_SIZE)
            except (OSError, ValueError) as e:
                await stream.put(Output(OutputType.ERROR, error=e))
                return
            if not chunk:
                return
            await stream.put(Output(kind, chunk))

    async def _feed(self, writer: asyncio.StreamWriter, data: bytes, cmd: Command) -> None:
        """Write all of stdin while the output is read concurrently."""
        try:
            writer.write(data)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s exited before reading all of its input", cmd.program)
        finally:
            with contextlib.suppress(OSError, RuntimeError):
                writer.close()

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        cmd: Command,
        stream: OutputStream,
    ) -> None:
        timeout = self._timeout_for(cmd)
        try:
            try:
                async with asyncio.timeout(timeout):
                    async with asyncio.TaskGroup() as tg:
                        tg.create_task(self._forward(process.stdout, OutputType.STDOUT, stream))
                        tg.create_task(self._forward(process.stderr, OutputType.STDERR, stream))
                        if cmd.stdin is not None and process.stdin is not None:
                            tg.create_task(self._feed(process.stdin, cmd.stdin, cmd))
                    await process.wait()
            except TimeoutError:
                await terminate_process(process, drain_pipes=True)
                await stream.put(
                    Output(
                        OutputType.ERROR,
                        error=ExecutionTimeoutError(
                            f"{cmd.program} timed out after {timeout:g}s",
                            timeout=timeout,
                        ),
                    ),
                )

            exit_code = process.returncode
            await stream.put(
                Output(OutputType.EXIT, data=str(exit_code).encode(), exit_code=exit_code),
            )
            await stream.finish()
        finally:
            if process.returncode is None:
                await terminate_process(process, drain_pipes=True)
            self._release()

    async def execute_interactive(
        self,
        cmd: Command,
        *,
        timeout: float | None = None,
    ) -> InteractiveSession:
        """Start a process with all three standard streams connected.

        Interactive sessions are driven by a human and only get a deadline
        when ``timeout`` (or ``cmd.timeout``) is given.
        """
        try:
            process = await self._spawn(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ExternalServiceError(
                cmd.program,
                "failed to start interactive command",
                original_error=e,
                details=str(e),
            ) from e
        return InteractiveSession(process, cmd, timeout=timeout or cmd.timeout)

    # Process management

    async def start(self, cmd: Command, *, inherit_stdio: bool = False) -> ProcessHandle:
        """Start a detached process and register it in the process table."""
        stdio = None if inherit_stdio else subprocess.DEVNULL
        try:
            process = await self._spawn(cmd, stdin=stdio, stdout=stdio, stderr=stdio)
        except OSError as e:
            raise ExternalServiceError(
                cmd.program,
                "failed to start process",
                original_error=e,
                details=str(e),
            ) from e

        handle = ProcessHandle(process, cmd, self._processes)
        self._processes.register(handle)
        logger.debug("Started process %s: %s", handle.pid, cmd)
        return handle

    def kill(self, handle: ProcessHandle) -> None:
        handle.kill()

    def signal(self, handle: ProcessHandle, signum: int) -> None:
        handle.signal(signum)

    async def wait(self, handle: ProcessHandle, timeout: float | None = None) -> Result:
        return await handle.wait(timeout)

    def get_process_info(self, handle: ProcessHandle) -> ProcessInfo:
        if self._processes.state_of(handle) is None:
            msg = f"process {handle.pid} is not tracked"
            raise NotFoundError(msg, solution=None)
        return handle.info()

    def list_processes(self) -> list[ProcessInfo]:
        return [handle.info() for handle in self._processes.handles()]

    def find_process(self, pid: int) -> ProcessHandle:
        for handle in self._processes.handles():
            if handle.pid == pid:
                return handle
        msg = f"process with PID {pid} not found"
        raise NotFoundError(msg, solution=None)

    async def aclose(self) -> None:
        """Dispose every tracked process."""
        for handle in self._processes.handles():
            await handle.dispose()

    # Utilities

    def command_exists(self, program: str) -> bool:
        return shutil.which(program) is not None

    def which(self, program: str) -> str:
        path = shutil.which(program)
        if path is None:
            msg = f"executable not found in PATH: {program}"
            raise NotFoundError(msg, solution=f"Install {program} or add it to PATH")
        return path

    def get_environment(self) -> dict[str, str]:
        return dict(os.environ)

    def get_working_directory(self) -> Path:
        return Path(self.working_dir) if self.working_dir else Path.cwd()
