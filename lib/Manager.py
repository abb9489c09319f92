"""
Task Manager Module

This module implements the per-task coordinator. A manager
loads the task queue, consults the task trigger between two
dispatch decisions, forks executors up to the configured
parallelism, reaps them on child exit notifications and keeps
the queue counters of the run consistent.

States:
    IDLE        -> queue loaded empty, or between two runs
    DISPATCHING -> jobs left and free executor slots
    DRAINING    -> queue exhausted, waiting for executors to exit
    STOPPED     -> stop requested, every executor terminated

Responsibilities:
- Load the queue and publish loaded/queued/done/failed counters
- Dispatch jobs to executors, bounded by the parallelism limit
- Reap executors and account for the ones that died silently
- Handle termination, restart and external trigger signals
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import math
import time
import signal
import logging
from enum import Enum
from collections import deque

## import private pkgs
from Ipc import Ipc, PROCESSES
from Job import Job, ExecutorState
from JobQueue import QueueCounters
from Trigger import ExternalTrigger
from Executor import Executor
from Errors import ConfigurationError, DispatchError
from SignalHandler import SignalHandler, TERMINATE_SIGNALS, reap_children, signal_name
from TaskDefinition import TaskDefinition

class ManagerStatus(str, Enum):
    IDLE = 'idle'
    DISPATCHING = 'dispatching'
    DRAINING = 'draining'
    STOPPED = 'stopped'

class Manager(object):
    """
    Per-task scheduling coordinator.
    """

    def __init__(self, logger: object, task: TaskDefinition, store: Ipc, grace: float = 5.0, poll: float = 0.5, id: str | None = None, dispatch_retries: int = 3, dispatch_backoff: float = 0.1, install_signals: bool = True) -> None:
        """
        Initialize the manager.

        Args:
            logger (object): Application logger
            task (TaskDefinition): Task to run
            store (Ipc): Shared state store
            grace (float): Seconds executors get to exit after SIGTERM
            poll (float): Upper bound of one wait for child exits
            id (str): Queue namespace, defaults to the manager pid
            dispatch_retries (int): Fork attempts per job
            dispatch_backoff (float): First retry delay, doubled per attempt
            install_signals (bool): Register with the OS; False when the
                owning process forwards signals through notify()

        Returns:
            None

        Raises:
            ConfigurationError: Store cannot be shared with forked executors
        """

        if task.forks_executors and not store.forkable:
            raise ConfigurationError('task %s: %s ipc cannot be shared with forked executors' % (task.name, store.kind))

        self.logger = logger or logging.getLogger(__name__)
        self.task = task
        self.store = store
        self.grace = grace
        self.poll = poll
        self.id = id
        self.dispatch_retries = max(1, dispatch_retries)
        self.dispatch_backoff = dispatch_backoff
        self.install_signals = install_signals

        self.trigger = task.build_trigger()
        self.queue = task.build_queue()

        self.state = ManagerStatus.IDLE
        self.counters = QueueCounters()
        self.max_concurrency = 0

        ## live executors: pid -> job
        self.children = {}

        ## children reaped before their pid was registered: pid -> wait status
        self._orphans = {}

        self._stop_requested = False
        self._restart_requested = False
        self._signals = None
        self._started = False

    ## store helpers
    def _key(self, field: str) -> str:
        return Ipc.key(self.id, field)

    @property
    def interrupted(self) -> bool:
        return self._stop_requested or self._restart_requested

    def _on_signal(self, signum: int) -> None:
        ## runs inside the signal handler: only flag, the loop does the work
        if signum in TERMINATE_SIGNALS:
            self._stop_requested = True

        elif signum == signal.SIGHUP:
            self._restart_requested = True

        elif signum == signal.SIGUSR1 and isinstance(self.trigger, ExternalTrigger):
            self.trigger.fire()

        elif signum != signal.SIGCHLD:
            self.logger.info({'task': self.task.name, 'signal': signal_name(signum), 'status': 'unknown action'})

    def start(self) -> None:
        """
        Register the manager and install its signal handler.

        Returns:
            None
        """

        if self._started:
            return

        self.logger.info({'task': self.task.name, 'status': 'start'})
        if self.id is None:
            self.id = str(os.getpid())

        self._signals = SignalHandler('manager-%s' % (self.task.name), self.logger, handler = self._on_signal)
        if self.install_signals:
            self._signals.install()

        self._register()
        self._started = True

    def notify(self, signum: int) -> None:
        """
        Deliver a signal received by the owning process.
        """

        if self._signals is not None:
            self._signals.handle(signum)

    def _register(self) -> None:
        with self.store.lock(self.id):
            self.store.set(self._key('name'), self.task.name)
            for field, value in self.counters.to_dict().items():
                self.store.set(self._key(field), value)

            self.store.set(self._key('executors'), [])

        self.store.append(Ipc.key(None, PROCESSES), self.id)

    def run(self, cycles: int | None = None) -> QueueCounters:
        """
        Run queue cycles until stopped.

        Args:
            cycles (int): Stop after this many cycles, None runs forever

        Returns:
            QueueCounters: Counters of the last cycle
        """

        self.start()
        done = 0
        try:
            while not self._stop_requested:
                self.run_once()
                if self._restart_requested:
                    self.restart()
                    continue

                done += 1
                if cycles is not None and done >= cycles:
                    break

        finally:
            self.stop()

        return self.counters

    def run_once(self, pause: bool = True) -> QueueCounters:
        """
        Run one load, dispatch and drain cycle, then wait for the
        trigger before returning.

        Args:
            pause (bool): Sleep the trigger wait after the drain; False
                when the owning process schedules the next cycle itself

        Returns:
            QueueCounters: Counters of this cycle
        """

        self.start()
        pending = self._load()

        if pending:
            self.state = ManagerStatus.DISPATCHING
            while pending and not self.interrupted:
                self._service()
                if len(self.children) >= self.task.max_executors:
                    self._signals.wait(self.poll)
                    continue

                self._dispatch(pending.popleft())
                if pending:
                    self._pause()

            self.state = ManagerStatus.DRAINING
            while self.children and not self.interrupted:
                self._signals.wait(self.poll)
                self._service()

        if self.interrupted:
            self._terminate_children()

        self._resolve_orphans()
        self.logger.info({'task': self.task.name, 'counters': self.counters.to_dict(), 'consistent': self.counters.consistent()})

        if not self.interrupted:
            self.state = ManagerStatus.IDLE
            if pause:
                self._pause()

        return self.counters

    def _load(self) -> deque:
        self.state = ManagerStatus.IDLE
        try:
            jobs = list(self.queue.load() or [])

        except Exception as e:
            self.logger.error({'task': self.task.name, 'status': 'queue load failed', 'error': str(e)})
            jobs = []

        jobs = [job for job in jobs if isinstance(job, Job)]
        self.counters = QueueCounters(loaded = len(jobs), queued = len(jobs))
        self.max_concurrency = 0
        with self.store.lock(self.id):
            for field, value in self.counters.to_dict().items():
                self.store.set(self._key(field), value)

            self.store.set(self._key('executors'), [])

        self.logger.info({'task': self.task.name, 'loaded': len(jobs)})
        return deque(jobs)

    def _pause(self) -> None:
        """
        Sleep the trigger wait, reaping children woken up by SIGCHLD.

        An unbounded wait (external trigger, exhausted cron) lasts
        until a signal makes the trigger answer a finite wait.
        """

        delay = self.trigger.time_to_wait()
        deadline = time.monotonic() + delay
        while delay > 0 and not self.interrupted:
            remaining = None if math.isinf(deadline) else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break

            if self._signals.wait(remaining):
                self._service()
                if math.isinf(delay):
                    delay = self.trigger.time_to_wait()
                    deadline = time.monotonic() + delay

    def _service(self) -> None:
        for pid, status in reap_children():
            job = self.children.pop(pid, None)
            if job is None:
                ## exit notified before the pid was registered
                self.logger.warning({'task': self.task.name, 'pid': pid, 'status': 'unregistered child deferred'})
                self._orphans[pid] = status
                continue

            self._finalize(pid, job, status)

    def _dispatch(self, job: Job) -> None:
        if not self.task.forks_executors:
            ## process type same: the job runs inside the manager
            pid = os.getpid()
            self.store.append(self._key('executors'), pid)
            self.max_concurrency = max(self.max_concurrency, 1)
            Executor(self.logger, self.store, self.id, job, self.task.work, pid = pid).run()
            self._finalize(pid, job, None)
            return

        pid = self._fork(job)
        if pid is None:
            return

        if pid == 0:
            self._child(job)

        self.children[pid] = job
        self.store.append(self._key('executors'), pid)
        self.max_concurrency = max(self.max_concurrency, len(self.children))
        self.logger.info({'task': self.task.name, 'job': job.id, 'pid': pid, 'running': len(self.children)})

        if pid in self._orphans:
            self.children.pop(pid)
            self._finalize(pid, job, self._orphans.pop(pid))

    def _fork(self, job: Job) -> int | None:
        backoff = self.dispatch_backoff
        for attempt in range(1, self.dispatch_retries + 1):
            try:
                return os.fork()

            except OSError as e:
                error = DispatchError('fork failed for job %s: %s' % (job.id, e))
                self.logger.warning({'task': self.task.name, 'attempt': attempt, 'error': str(error)})
                if attempt < self.dispatch_retries:
                    self._signals.wait(backoff)
                    backoff *= 2

        ## retries exhausted: the job will never run
        self.logger.error({'task': self.task.name, 'job': job.id, 'status': 'dispatch failed'})
        self._account_failure()
        return None

    def _child(self, job: Job) -> None:
        code = 1
        try:
            self._signals.detach()
            SignalHandler.reset()
            self.store.after_fork()
            state = Executor(self.logger, self.store, self.id, job, self.task.work).run()
            code = 0 if state is ExecutorState.DONE else 1

        except Exception as e:
            self.logger.critical({'task': self.task.name, 'job': job.id, 'error': str(e)})

        finally:
            os._exit(code)

    def _finalize(self, pid: int, job: Job, status: int | None) -> None:
        """
        Account for an executor that exited, then drop its keys.
        """

        report = Executor.read_status(self.store, pid)
        if report.state is ExecutorState.DONE:
            self.counters.done += 1
            self.counters.queued -= 1
            self._reconcile(ExecutorState.DONE, job, pid)

        elif report.state is ExecutorState.FAILED:
            self.counters.failed += 1
            self.counters.queued -= 1
            self._reconcile(ExecutorState.FAILED, job, pid)

        else:
            ## died before reporting: the executor never moved its counters
            self.logger.error({'task': self.task.name, 'job': job.id, 'pid': pid, 'status': 'exited without report', 'wait_status': status})
            self._account_failure()

        self.store.discard(self._key('executors'), pid)
        Executor.clear(self.store, pid)
        self.logger.info({'task': self.task.name, 'job': job.id, 'pid': pid, 'state': report.state.value if report.state else None})

    def _reconcile(self, state: ExecutorState, job: Job, pid: int) -> None:
        """
        Complete a counter transfer the executor reported but did not store.

        Executors finishing concurrently only ever push the stored counter
        above the local one, so a stored value below it is a lost transfer.
        """

        field = state.value
        with self.store.lock(self.id):
            stored = self.store.get(self._key(field)) or 0
            if stored >= getattr(self.counters, field):
                return

            self.logger.warning({'task': self.task.name, 'job': job.id, 'pid': pid, 'status': 'counter transfer completed', 'field': field})
            self.store.increment(self._key(field))
            self.store.decrement(self._key('queued'))

    def _account_failure(self) -> None:
        self.counters.failed += 1
        self.counters.queued -= 1
        with self.store.lock(self.id):
            self.store.increment(self._key('failed'))
            self.store.decrement(self._key('queued'))

    def _resolve_orphans(self) -> None:
        for pid, status in self._orphans.items():
            self.logger.warning({'task': self.task.name, 'pid': pid, 'wait_status': status, 'status': 'unknown child discarded'})

        self._orphans = {}

    def _terminate_children(self) -> None:
        """
        SIGTERM every executor, SIGKILL the ones outliving the grace period.
        """

        if not self.children:
            return

        self.logger.info({'task': self.task.name, 'terminating': sorted(self.children)})
        for pid in list(self.children):
            self._kill(pid, signal.SIGTERM)

        deadline = time.monotonic() + self.grace
        while self.children:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            self._signals.wait(min(self.poll, remaining))
            self._service()

        for pid in list(self.children):
            self.logger.warning({'task': self.task.name, 'pid': pid, 'status': 'killed after grace period'})
            self._kill(pid, signal.SIGKILL)
            try:
                _, status = os.waitpid(pid, 0)

            except ChildProcessError:
                status = None

            self._finalize(pid, self.children.pop(pid), status)

    def _kill(self, pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)

        except ProcessLookupError:
            pass

    def request_stop(self) -> None:
        self._stop_requested = True

    def restart(self) -> None:
        """
        Stop every executor and start over from a fresh idle cycle.

        Nothing is carried across: counters and in-flight jobs are
        dropped.
        """

        self.logger.info({'task': self.task.name, 'status': 'restart'})
        self._terminate_children()
        self.store.clear(self.id)
        self.counters = QueueCounters()
        self.queue = self.task.build_queue()
        self._restart_requested = False
        self.state = ManagerStatus.IDLE
        self._register()

    def stop(self) -> None:
        """
        Enter the stopped state and deregister.

        Returns:
            None
        """

        if self.state is ManagerStatus.STOPPED:
            return

        self._stop_requested = True
        if self._started:
            self._terminate_children()
            self.store.clear(self.id)
            self.store.discard(Ipc.key(None, PROCESSES), self.id)
            self._signals.close()

        self.state = ManagerStatus.STOPPED
        self.logger.info({'task': self.task.name, 'status': 'stopped'})
