"""
State Snapshot Module

This module builds the read-only status report of a running
daemon by walking the shared state store: the daemon pid, the
registered managers and their queue counters, and the progress
of every live executor.

A key that disappears during the walk belongs to a process that
just finished and is treated as absent. A key that cannot be
read is listed under 'unreadable' so the gap stays visible.
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import logging
from typing import Any

## import private pkgs
from Ipc import Ipc, PROCESSES, DAEMON_PID
from JobQueue import COUNTERS
from Errors import StoreError

class State(object):
    """
    Status report builder.
    """

    def __init__(self, store: Ipc, logger: object = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def _read(self, id: Any, field: str, unreadable: list, default: Any = None) -> Any:
        key = Ipc.key(id, field)
        try:
            return self.store.read(key, default)

        except StoreError as e:
            self.logger.warning({'key': key, 'error': str(e)})
            unreadable.append(key)
            return default

    def get_state(self) -> dict:
        """
        Build the status report.

        Returns:
            dict: {pid, processes, queue-<id>, executor-<pid>, unreadable}
        """

        unreadable = []
        state = {
            'pid': self._read(None, DAEMON_PID, unreadable),
            'processes': [],
        }

        for queue_id in self._read(None, PROCESSES, unreadable, []) or []:
            queue = self._queue(queue_id, unreadable)
            if queue is None:
                continue

            state['processes'].append(queue_id)
            state['queue-%s' % (queue_id)] = queue

            for pid in list(queue['executors']):
                executor = self._executor(pid, unreadable)
                if executor is None:
                    queue['executors'].remove(pid)
                    continue

                state['executor-%s' % (pid)] = executor

        state['unreadable'] = unreadable
        return state

    def _queue(self, queue_id: Any, unreadable: list) -> dict | None:
        try:
            with self.store.lock(queue_id):
                return self._queue_fields(queue_id, unreadable)

        except self.store.errors as e:
            ## no consistent view available: read what is there
            self.logger.warning({'queue': queue_id, 'error': str(e)})
            unreadable.append(Ipc.key(queue_id, 'lock'))
            return self._queue_fields(queue_id, unreadable)

    def _queue_fields(self, queue_id: Any, unreadable: list) -> dict | None:
        name = self._read(queue_id, 'name', unreadable)
        if name is None and Ipc.key(queue_id, 'name') not in unreadable:
            ## manager deregistered during the walk
            return None

        queue = {'name': name}
        for field in COUNTERS:
            queue[field] = self._read(queue_id, field, unreadable, 0)

        queue['executors'] = list(self._read(queue_id, 'executors', unreadable, []) or [])
        return queue

    def _executor(self, pid: Any, unreadable: list) -> dict | None:
        executor = {
            'percentage': self._read(pid, 'percentage', unreadable),
            'message': self._read(pid, 'message', unreadable),
            'state': self._read(pid, 'state', unreadable),
        }
        if all(value is None for value in executor.values()) and not any(key.startswith('%s_' % (pid)) for key in unreadable):
            ## reaped during the walk
            return None

        if executor['percentage'] is None:
            executor['percentage'] = 0

        if executor['message'] is None:
            executor['message'] = ''

        return executor

    @staticmethod
    def render(state: dict, title: str = 'Status') -> str:
        """
        Format a status report for operators.

        Args:
            state (dict): Report built by get_state()
            title (str): Heading

        Returns:
            str: Printable report
        """

        heading = 'TaskDaemon - %s (%d)' % (title, len(state['processes']))
        lines = [heading, '=' * len(heading), '']

        if not state['processes']:
            lines.append('No processes!')

        for queue_id in state['processes']:
            queue = state['queue-%s' % (queue_id)]
            lines.append('[%s]: %s\t(Progress: %d/%d\tDone: %d\tFailed: %d)' % (
                queue_id,
                queue['name'],
                queue['loaded'] - queue['queued'],
                queue['loaded'],
                queue['done'],
                queue['failed'],
            ))

            for pid in queue['executors']:
                executor = state.get('executor-%s' % (pid), {})
                lines.append('- [%s]:\t%s%%:\t%s' % (pid, executor.get('percentage', 0), executor.get('message', '')))

            lines.append('')

        if state.get('unreadable'):
            lines.append('Unreadable keys: %s' % (', '.join(state['unreadable'])))

        lines.append('')
        return '\n'.join(lines)
