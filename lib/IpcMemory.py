"""
In-Memory Shared State Store

Single process store backend. Values live in a dictionary of
the current process, so the backend is only coherent when the
executors run inside the manager process (process type same).
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import copy
from threading import RLock
from contextlib import contextmanager

## import private pkgs
from Ipc import Ipc, MISSING

class IpcMemory(Ipc):
    """
    Dictionary backed store.
    """

    kind = 'memory'
    forkable = False

    def __init__(self, logger: object = None) -> None:
        super().__init__(logger)
        self._data = {}
        self._lock = RLock()

    def _read(self, key):
        with self._lock:
            return copy.deepcopy(self._data.get(key, MISSING))

    def _write(self, key, value):
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def _update(self, key, func):
        with self._lock:
            value = func(self._data.get(key, MISSING))
            if value is not MISSING:
                self._data[key] = value

            return value

    def _delete(self, key):
        with self._lock:
            return self._data.pop(key, MISSING) is not MISSING

    def _keys(self):
        with self._lock:
            return sorted(self._data)

    @contextmanager
    def lock(self, id):
        with self._lock:
            yield self
