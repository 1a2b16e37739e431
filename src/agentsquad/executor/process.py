"""Handles for processes started outside the bounded ``execute`` path."""

import asyncio
import contextlib
import logging
import signal
import threading
import time
from datetime import UTC, datetime

from ..error_handling import ExecutionTimeoutError
from .models import Command, Output, OutputType, ProcessInfo, ProcessState, Result

logger = logging.getLogger(__name__)

_END = object()


async def terminate_process(
    process: asyncio.subprocess.Process,
    *,
    drain_pipes: bool = False,
) -> None:
    """Kill a process if it is still running and reap it.

    ``wait()`` only returns once every pipe is closed, and a pipe whose
    reader stopped reading never sees EOF. Pass ``drain_pipes`` when nothing
    else reads the process's pipes any more so they are emptied and closed.
    """
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    if drain_pipes:
        if process.stdin is not None:
            with contextlib.suppress(OSError, RuntimeError):
                process.stdin.close()
        for reader in (process.stdout, process.stderr):
            if reader is None:
                continue
            with contextlib.suppress(OSError, RuntimeError, ValueError):
                while await reader.read(65536):
                    pass
    await process.wait()


class ProcessTable:
    """Registry of detached processes keyed by handle.

    Guarded by its own lock. Callers must not hold any other lock while
    calling in here.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict["ProcessHandle", ProcessState] = {}

    def register(self, handle: "ProcessHandle") -> None:
        with self._lock:
            self._entries[handle] = ProcessState.RUNNING

    def set_state(self, handle: "ProcessHandle", state: ProcessState) -> None:
        with self._lock:
            if handle in self._entries:
                self._entries[handle] = state

    def state_of(self, handle: "ProcessHandle") -> ProcessState | None:
        with self._lock:
            return self._entries.get(handle)

    def remove(self, handle: "ProcessHandle") -> bool:
        with self._lock:
            return self._entries.pop(handle, None) is not None

    def handles(self) -> list["ProcessHandle"]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ProcessHandle:
    """A detached, long-lived process tracked in a ProcessTable.

    ``wait()`` and ``dispose()`` remove the table entry. Use the handle as an
    async context manager so an abandoned handle is always disposed::

        async with await executor.start(cmd) as handle:
            ...
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: Command,
        table: ProcessTable,
    ) -> None:
        self._process = process
        self.command = command
        self._table = table
        self.start_time = datetime.now(UTC)
        self._started = time.monotonic()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def signal(self, signum: int) -> None:
        """Send a signal, tracking stop/continue in the process table."""
        self._process.send_signal(signum)
        if signum in (signal.SIGSTOP, signal.SIGTSTP):
            self._table.set_state(self, ProcessState.STOPPED)
        elif signum == signal.SIGCONT:
            self._table.set_state(self, ProcessState.RUNNING)

    def kill(self) -> None:
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
        self._table.set_state(self, ProcessState.EXITED)

    def state(self) -> ProcessState:
        state = self._table.state_of(self)
        if state is None:
            return ProcessState.EXITED
        if state is not ProcessState.EXITED and self._process.returncode is not None:
            # exited on its own, nobody has waited for it yet
            return ProcessState.ZOMBIE
        return state

    def info(self) -> ProcessInfo:
        return ProcessInfo(
            pid=self.pid,
            command=self.command.program,
            args=list(self.command.args),
            start_time=self.start_time,
            state=self.state(),
        )

    async def wait(self, timeout: float | None = None) -> Result:
        """Wait for exit and drop the table entry.

        If ``timeout`` expires the process is killed and
        ExecutionTimeoutError is raised.
        """
        try:
            async with asyncio.timeout(timeout):
                exit_code = await self._process.wait()
        except TimeoutError as e:
            await self.dispose()
            msg = f"{self.command.program} (pid {self.pid}) did not exit within {timeout:g}s"
            raise ExecutionTimeoutError(msg, timeout=timeout) from e

        self._table.set_state(self, ProcessState.EXITED)
        self._table.remove(self)
        return Result(exit_code=exit_code, duration=time.monotonic() - self._started)

    async def dispose(self) -> None:
        """Kill if still running, reap, and forget the handle. Idempotent."""
        await terminate_process(self._process)
        if self._table.remove(self):
            logger.debug("Disposed process %s (%s)", self.pid, self.command.program)

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} {self.command.program!r}>"


class OutputStream:
    """Bounded async stream of tagged Output chunks from one command.

    The buffer holds a fixed number of chunks. When it is full the reader
    tasks stop draining the process pipes, so a consumer that stops iterating
    stalls the process and delays the final EXIT chunk. Consumers must
    iterate to the end or call ``aclose()``, which kills the process.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._producer: asyncio.Task | None = None
        self._finished = False

    def attach(self, producer: asyncio.Task) -> None:
        self._producer = producer

    async def put(self, chunk: Output) -> None:
        await self._queue.put(chunk)

    async def finish(self) -> None:
        await self._queue.put(_END)

    def __aiter__(self) -> "OutputStream":
        return self

    async def __anext__(self) -> Output:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def collect(self) -> list[Output]:
        """Drain the stream to the end."""
        return [chunk async for chunk in self]

    async def aclose(self) -> None:
        self._finished = True
        if self._producer and not self._producer.done():
            # let the producer enter its try block so its cleanup runs
            await asyncio.sleep(0)
            self._producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._producer

    async def __aenter__(self) -> "OutputStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class InteractiveSession:
    """Bidirectional connection to a running process.

    Output is delivered as tagged chunks so stdout and stderr never get
    mixed up. The last chunk is always ``OutputType.EXIT``; ``read()``
    returns None after it.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: Command,
        timeout: float | None = None,
    ) -> None:
        self._process = process
        self.command = command
        self._timeout = timeout
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._timed_out = False
        self._exhausted = False
        self._supervisor = asyncio.create_task(self._supervise())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    async def _forward(self, reader: asyncio.StreamReader, kind: OutputType) -> None:
        while True:
            try:
                chunk = await reader.read(4096)
            except (OSError, ValueError) as e:
                self._queue.put_nowait(Output(OutputType.ERROR, error=e))
                return
            if not chunk:
                return
            self._queue.put_nowait(Output(kind, chunk))

    async def _supervise(self) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self._forward(self._process.stdout, OutputType.STDOUT))
                    tg.create_task(self._forward(self._process.stderr, OutputType.STDERR))
                await self._process.wait()
        except TimeoutError:
            self._timed_out = True
            await terminate_process(self._process)
            self._queue.put_nowait(
                Output(
                    OutputType.ERROR,
                    error=ExecutionTimeoutError(
                        f"interactive {self.command.program} exceeded {self._timeout:g}s",
                        timeout=self._timeout,
                    ),
                ),
            )
        finally:
            code = self._process.returncode
            self._queue.put_nowait(
                Output(
                    OutputType.EXIT,
                    data=str(code).encode() if code is not None else b"",
                    exit_code=code,
                ),
            )

    async def write(self, data: bytes | str) -> int:
        if self._closed or self._process.stdin is None:
            msg = "interactive session is closed"
            raise BrokenPipeError(msg)
        if isinstance(data, str):
            data = data.encode()
        self._process.stdin.write(data)
        await self._process.stdin.drain()
        return len(data)

    async def read(self) -> Output | None:
        """Next tagged chunk, or None once the EXIT chunk was delivered."""
        if self._exhausted:
            return None
        chunk = await self._queue.get()
        if chunk.type is OutputType.EXIT:
            self._exhausted = True
        return chunk

    async def wait(self) -> int:
        """Wait for the process to finish and return its exit code."""
        await asyncio.shield(self._supervisor)
        if self._timed_out:
            msg = f"interactive {self.command.program} exceeded {self._timeout:g}s"
            raise ExecutionTimeoutError(msg, timeout=self._timeout)
        return self._process.returncode

    async def close(self) -> None:
        """Close stdin and terminate the process. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._process.stdin is not None:
            with contextlib.suppress(OSError, RuntimeError):
                self._process.stdin.close()
        await terminate_process(self._process)
        with contextlib.suppress(asyncio.CancelledError):
            await self._supervisor

    async def __aenter__(self) -> "InteractiveSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
