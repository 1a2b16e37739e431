"""Generic external-process execution substrate.

Bounded-concurrency command execution with retries and timeouts, streaming
output, interactive connections and tracking of detached processes.
"""

from .command_executor import CommandExecutor
from .models import Command, Output, OutputType, ProcessInfo, ProcessState, Result
from .process import InteractiveSession, OutputStream, ProcessHandle

__all__ = [
    "Command",
    "CommandExecutor",
    "InteractiveSession",
    "Output",
    "OutputStream",
    "OutputType",
    "ProcessHandle",
    "ProcessInfo",
    "ProcessState",
    "Result",
]
