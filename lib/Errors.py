"""
Task Daemon Error Types

This module defines the exception hierarchy shared by the daemon
components. Every error raised on purpose by the daemon derives
from TaskDaemonError so callers can handle daemon failures apart
from programming errors.
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

class TaskDaemonError(Exception):
    """
    Base class of all daemon errors.
    """

class ConfigurationError(TaskDaemonError):
    """
    Missing or invalid task configuration.

    Fatal for the affected task only: the task is skipped and
    the remaining tasks keep running.
    """

class DispatchError(TaskDaemonError):
    """
    An executor process could not be spawned.
    """

class ExecutorFault(TaskDaemonError):
    """
    A job work function raised or crashed.

    Attributes:
        job_id (str): Identifier of the faulted job
    """

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__('job %s failed: %s' % (job_id, message))
        self.job_id = job_id

class StoreError(TaskDaemonError):
    """
    A read or write against the shared state store failed.

    Attributes:
        key (str): Store key involved in the failed operation
    """

    def __init__(self, key: str, message: str) -> None:
        super().__init__('store key %s: %s' % (key, message))
        self.key = key
