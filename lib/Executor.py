"""
Executor Module

This module implements the executor: the worker that runs
exactly one job of a task and reports its progress and result
into the shared state store.

Lifecycle:
    1. Write {state: running, percentage: 0} under its own pid
    2. Run the task work function, which may report progress
    3. Write {state: done, percentage: 100} and move one job from
       queued to done, or write {state: failed} and move one job
       from queued to failed when the work function raised
    4. Return, the process exits right after reporting
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import signal
import logging
from typing import Callable

## import private pkgs
from Ipc import Ipc
from Job import Job, ExecutorState, ExecutorStatus
from Errors import ExecutorFault

## executor fields kept in the store
STATUS_FIELDS = ('percentage', 'message', 'state')

## signals held back while the terminal report is written
REPORT_SIGNALS = {signal.SIGTERM, signal.SIGINT, signal.SIGQUIT, signal.SIGHUP}

class Executor(object):
    """
    Runs one job and reports into the store.

    The work function is called as work(job, executor) and may
    call executor.update() to publish progress.
    """

    def __init__(self, logger: object, store: Ipc, queue_id: str, job: Job, work: Callable[[Job, 'Executor'], None], pid: int | None = None) -> None:
        """
        Initialize the executor.

        Args:
            logger (object): Application logger
            store (Ipc): Shared state store
            queue_id (str): Namespace of the owning manager queue
            job (Job): Job to run
            work (Callable): Task work function
            pid (int): Status namespace, defaults to the current pid

        Returns:
            None
        """

        self.logger = logger or logging.getLogger(__name__)
        self.store = store
        self.queue_id = queue_id
        self.job = job
        self.work = work
        self.pid = pid

    def _key(self, field: str) -> str:
        return Ipc.key(self.pid, field)

    def update(self, percentage: int | None = None, message: str | None = None) -> None:
        """
        Publish job progress.

        Args:
            percentage (int): Progress, clamped to 0..100
            message (str): Progress message

        Returns:
            None
        """

        if percentage is not None:
            self.store.set(self._key('percentage'), max(0, min(100, int(percentage))))

        if message is not None:
            self.store.set(self._key('message'), str(message))

    def run(self) -> ExecutorState:
        """
        Run the job to completion and report the result.

        A fault of the work function never propagates: it is
        converted into a failed status.

        Returns:
            ExecutorState: DONE or FAILED
        """

        if self.pid is None:
            self.pid = os.getpid()

        self.logger.info({'job': self.job.id, 'pid': self.pid, 'status': 'start'})
        self.store.set(self._key('state'), ExecutorState.RUNNING.value)
        self.store.set(self._key('percentage'), 0)
        self.store.set(self._key('message'), '')

        try:
            self.work(self.job, self)

        except Exception as e:
            fault = ExecutorFault(self.job.id, '%s: %s' % (e.__class__.__name__, e))
            self.logger.error({'job': self.job.id, 'pid': self.pid, 'error': str(fault)})
            self._finish(ExecutorState.FAILED, str(e) or e.__class__.__name__)
            return ExecutorState.FAILED

        self._finish(ExecutorState.DONE, None)
        self.logger.info({'job': self.job.id, 'pid': self.pid, 'status': 'end'})
        return ExecutorState.DONE

    def _finish(self, state: ExecutorState, message: str | None) -> None:
        ## terminal status and counter transfer are one atomic step for readers
        ## and for the manager: termination signals wait until both are written
        previous = signal.pthread_sigmask(signal.SIG_BLOCK, REPORT_SIGNALS)
        try:
            with self.store.lock(self.queue_id):
                if state is ExecutorState.DONE:
                    self.store.set(self._key('percentage'), 100)

                if message is not None:
                    self.store.set(self._key('message'), message)

                self.store.set(self._key('state'), state.value)
                self.store.increment(Ipc.key(self.queue_id, state.value))
                self.store.decrement(Ipc.key(self.queue_id, 'queued'))

        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous)

    @staticmethod
    def read_status(store: Ipc, pid: int) -> ExecutorStatus:
        """
        Read the status an executor reported.

        Args:
            store (Ipc): Shared state store
            pid (int): Executor pid

        Returns:
            ExecutorStatus: state is None when nothing was reported
        """

        state = store.get(Ipc.key(pid, 'state'))
        try:
            state = ExecutorState(state) if state is not None else None

        except ValueError:
            state = None

        return ExecutorStatus(
            pid = pid,
            percentage = store.get(Ipc.key(pid, 'percentage'), 0),
            message = store.get(Ipc.key(pid, 'message'), ''),
            state = state,
        )

    @staticmethod
    def clear(store: Ipc, pid: int) -> None:
        for field in STATUS_FIELDS:
            store.remove(Ipc.key(pid, field))
