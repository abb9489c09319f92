"""
Job Definition Module

This module defines the Job data structure used by the task
daemon. A Job represents a single unit of work taken from a
task queue and executed by exactly one executor process. It
also defines the status record an executor reports about the
job it runs.
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
from enum import Enum
from typing import Any
from dataclasses import dataclass, field

class ExecutorState(str, Enum):
    """
    Lifecycle state of an executor process.
    """

    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        return self is not ExecutorState.RUNNING

@dataclass
class Job(object):
    """
    Queued job definition.

    The payload is opaque to the daemon: it is only forwarded
    to the task work function.

    Attributes:
        id (str):
            Identifier of the job, unique within one queue load.

        payload (dict):
            Job input passed to the work function.
    """

    id: str
    payload: dict[str, Any] = field(default_factory = dict)

@dataclass
class ExecutorStatus(object):
    """
    Progress report of one executor process.

    Attributes:
        pid (int):
            Process id of the executor.

        percentage (int):
            Progress from 0 to 100.

        message (str):
            Free text progress or error message.

        state (ExecutorState):
            Running, done or failed. None when the executor never
            reported anything.
    """

    pid: int
    percentage: int = 0
    message: str = ''
    state: ExecutorState | None = None

    @property
    def terminal(self) -> bool:
        return self.state is not None and self.state.terminal
