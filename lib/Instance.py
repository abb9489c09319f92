"""
Daemon Instance Module

This module implements the root daemon process. The instance
creates one manager per registered task and either forks each
manager into its own process or runs the managers one cycle at
a time inside its own process. It owns the top level signal
handler and cascades stop and restart requests to the managers.

Responsibilities:
- Write the pid file and publish the daemon pid
- Start one manager per task, skipping misconfigured tasks
- Respawn managers that crashed
- Propagate termination and restart signals with a grace period
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
from typing import Callable

## import private pkgs
from Ipc import Ipc, PROCESSES, DAEMON_PID
from Errors import ConfigurationError
from Manager import Manager
from SignalHandler import SignalHandler, TERMINATE_SIGNALS, reap_children, signal_name
from TaskDefinition import TaskRegistry, TaskDefinition

## daemon process types
PROCESS_FORK = 'fork'
PROCESS_INLINE = 'inline'

class Instance(object):
    """
    Root daemon process.
    """

    def __init__(self, logger: object, registry: TaskRegistry, store: Ipc, process_type: str = PROCESS_FORK, pidfile: str | None = None, grace: float = 5.0, poll: float = 0.5, store_factory: Callable[[str], Ipc] | None = None, max_respawns: int = 3) -> None:
        """
        Initialize the daemon instance.

        Args:
            logger (object): Application logger
            registry (TaskRegistry): Tasks to run
            store (Ipc): Daemon store, read by the status reports
            process_type (str): fork or inline
            pidfile (str): Pid file path
            grace (float): Seconds managers get to stop after SIGTERM
            poll (float): Upper bound of one wait in the control loop
            store_factory (Callable): Builds the store of tasks whose ipc
                differs from the daemon store
            max_respawns (int): Restarts allowed per crashed manager

        Returns:
            None

        Raises:
            ConfigurationError: Unknown process type
        """

        if process_type not in (PROCESS_FORK, PROCESS_INLINE):
            raise ConfigurationError('unknown daemon process type: %s' % (process_type))

        self.logger = logger or logging.getLogger(__name__)
        self.registry = registry
        self.store = store
        self.process_type = process_type
        self.pidfile = pidfile
        self.grace = grace
        self.poll = poll
        self.store_factory = store_factory
        self.max_respawns = max_respawns

        ## forked managers: pid -> task, inline managers in task order
        self.children = {}
        self.managers = []
        self.respawns = {}

        self._stores = {store.kind: store}
        self._stop_requested = False
        self._restart_requested = False
        self._signals = None

    ## pid file helpers
    @staticmethod
    def read_pid(pidfile: str | None) -> int | None:
        if not pidfile:
            return None

        try:
            with open(pidfile, 'r', encoding = 'utf-8') as fh:
                return int(fh.read().strip())

        except (OSError, ValueError):
            return None

    @staticmethod
    def is_running(pidfile: str | None) -> bool:
        """
        Check whether the daemon recorded in pidfile is alive.
        """

        pid = Instance.read_pid(pidfile)
        if pid is None:
            return False

        try:
            os.kill(pid, 0)

        except ProcessLookupError:
            return False

        except PermissionError:
            ## alive, owned by another user
            return True

        return True

    @staticmethod
    def terminate(pidfile: str | None, timeout: float = 10.0, signum: int = signal.SIGTERM) -> bool:
        """
        Ask the daemon recorded in pidfile to stop and wait for it.

        Args:
            pidfile (str): Pid file path
            timeout (float): Seconds to wait for the daemon to exit
            signum (int): Signal to send

        Returns:
            bool: True when the daemon is gone
        """

        pid = Instance.read_pid(pidfile)
        if pid is None or not Instance.is_running(pidfile):
            return True

        os.kill(pid, signum)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not Instance.is_running(pidfile):
                return True

            time.sleep(0.1)

        return not Instance.is_running(pidfile)

    def _store_for(self, task: TaskDefinition) -> Ipc:
        if task.ipc in self._stores:
            return self._stores[task.ipc]

        if self.store_factory is None:
            raise ConfigurationError('task %s: no store available for ipc %s' % (task.name, task.ipc))

        store = self.store_factory(task.ipc)
        self._stores[task.ipc] = store
        if task.ipc != self.store.kind:
            self.logger.warning({'task': task.name, 'ipc': task.ipc, 'status': 'not visible in status reports'})

        return store

    def _manager(self, task: TaskDefinition, **kwargs) -> Manager | None:
        try:
            return Manager(self.logger, task, self._store_for(task), grace = self.grace, poll = self.poll, **kwargs)

        except ConfigurationError as e:
            self.logger.critical({'task': task.name, 'error': str(e), 'status': 'skipped'})
            return None

    def _on_signal(self, signum: int) -> None:
        if signum in TERMINATE_SIGNALS:
            self._stop_requested = True

        elif signum == signal.SIGHUP:
            self._restart_requested = True

        elif signum not in (signal.SIGCHLD, signal.SIGUSR1):
            self.logger.info({'identifier': 'instance', 'signal': signal_name(signum), 'status': 'unknown action'})

        ## inline managers share this process: hand the signal over
        for manager in self.managers:
            manager.notify(signum)

    def start(self) -> bool:
        """
        Run the daemon until a termination signal arrives.

        Returns:
            bool: False when another daemon is already running
        """

        self.logger.info({'status': 'start', 'process_type': self.process_type, 'tasks': self.registry.names()})
        if self.is_running(self.pidfile) and self.read_pid(self.pidfile) != os.getpid():
            self.logger.error({'status': 'already running', 'pid': self.read_pid(self.pidfile)})
            return False

        if self.pidfile:
            os.makedirs(os.path.dirname(os.path.abspath(self.pidfile)), exist_ok = True)
            with open(self.pidfile, 'w', encoding = 'utf-8') as fh:
                fh.write(str(os.getpid()))

        self.store.set(Ipc.key(None, DAEMON_PID), os.getpid())
        self._stop_requested = False
        self._signals = SignalHandler('instance', self.logger, handler = self._on_signal).install()
        try:
            if self.process_type == PROCESS_INLINE:
                self._run_inline()

            else:
                self._run_forked()

        finally:
            self.stop()

        self.logger.info({'status': 'end'})
        return True

    def _run_forked(self) -> None:
        for task in self.registry:
            self._spawn(task)

        while not self._stop_requested:
            self._signals.wait(self.poll)
            self._reap()

            if self._restart_requested:
                self._restart_requested = False
                self.logger.info({'status': 'restart', 'managers': sorted(self.children)})
                for pid in list(self.children):
                    self._kill(pid, signal.SIGHUP)

    def _spawn(self, task: TaskDefinition) -> int | None:
        manager = self._manager(task)
        if manager is None:
            return None

        try:
            pid = os.fork()

        except OSError as e:
            self.logger.error({'task': task.name, 'status': 'fork failed', 'error': str(e)})
            return None

        if pid == 0:
            code = 1
            try:
                self._signals.detach()
                SignalHandler.reset()
                for store in self._stores.values():
                    store.after_fork()

                manager.run()
                code = 0

            except Exception as e:
                self.logger.critical({'task': task.name, 'error': str(e)})

            finally:
                os._exit(code)

        self.children[pid] = task
        self.logger.info({'task': task.name, 'pid': pid, 'status': 'manager started'})
        return pid

    def _reap(self) -> None:
        for pid, status in reap_children():
            task = self.children.pop(pid, None)
            if task is None:
                continue

            code = os.waitstatus_to_exitcode(status)
            if self._stop_requested or code == 0:
                self.logger.info({'task': task.name, 'pid': pid, 'exit': code})
                continue

            ## crashed manager: it could not deregister itself
            self.logger.error({'task': task.name, 'pid': pid, 'exit': code, 'status': 'manager crashed'})
            self._forget(task, pid)
            self.respawns[task.name] = self.respawns.get(task.name, 0) + 1
            if self.respawns[task.name] <= self.max_respawns:
                self._spawn(task)

    def _forget(self, task: TaskDefinition, pid: int) -> None:
        store = self._stores.get(task.ipc, self.store)
        store.clear(str(pid))
        store.discard(Ipc.key(None, PROCESSES), str(pid))

    def _run_inline(self) -> None:
        for task in self.registry:
            manager = self._manager(task, id = '%s-%s' % (os.getpid(), task.name), install_signals = False)
            if manager is not None:
                manager.start()
                self.managers.append(manager)

        ## next cycle of each manager, on the monotonic clock
        due = [time.monotonic()] * len(self.managers)
        while not self._stop_requested and self.managers:
            for index, manager in enumerate(self.managers):
                if self._stop_requested:
                    break

                now = time.monotonic()
                if math.isinf(due[index]):
                    ## unbounded wait: a signal may have fired the trigger since
                    due[index] = now + manager.trigger.time_to_wait()

                if due[index] > now:
                    continue

                manager.run_once(pause = False)
                due[index] = time.monotonic() + manager.trigger.time_to_wait()

                if self._restart_requested:
                    for each in self.managers:
                        each.restart()

                    due = [time.monotonic()] * len(self.managers)
                    self._restart_requested = False
                    break

            if self._stop_requested or not self.managers:
                break

            ## sleep until the earliest manager is due, or a signal arrives
            remaining = min(due) - time.monotonic()
            if remaining > 0:
                self._signals.wait(None if math.isinf(remaining) else remaining)

    def _kill(self, pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)

        except ProcessLookupError:
            pass

    def stop(self) -> None:
        """
        Stop every manager and release the daemon resources.

        Forked managers get SIGTERM and twice the grace period (they
        grant their executors one grace period themselves) before
        being killed.

        Returns:
            None
        """

        self._stop_requested = True

        for manager in self.managers:
            manager.stop()

        self.managers = []

        if self.children:
            for pid in list(self.children):
                self._kill(pid, signal.SIGTERM)

            deadline = time.monotonic() + 2 * self.grace
            while self.children and time.monotonic() < deadline:
                self._signals.wait(min(self.poll, max(0.0, deadline - time.monotonic())))
                self._reap()

            for pid, task in list(self.children.items()):
                self.logger.warning({'task': task.name, 'pid': pid, 'status': 'manager killed'})
                self._kill(pid, signal.SIGKILL)
                try:
                    os.waitpid(pid, 0)

                except ChildProcessError:
                    pass

                self._forget(task, pid)
                self.children.pop(pid)

        self.store.remove(Ipc.key(None, DAEMON_PID))
        if self.pidfile and self.read_pid(self.pidfile) == os.getpid():
            try:
                os.remove(self.pidfile)

            except FileNotFoundError:
                pass

        if self._signals is not None:
            self._signals.close()
            self._signals = None

        self.logger.info({'status': 'stopped'})
