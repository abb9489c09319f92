"""
Shared State Store Module

This module defines the inter process communication contract
used by managers, executors and the state snapshot reader. The
store is a namespaced key-value medium: keys are built as
<id>_<field> where id is a queue id or an executor pid.

Responsibilities:
- Define the get/set/increment/decrement/remove contract
- Convert backend failures into logged StoreError no-ops
- Provide list helpers for process registries
- Select a backend from configuration
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import logging
from typing import Any, Callable
from contextlib import contextmanager

## import private pkgs
from Errors import ConfigurationError, StoreError

## marker for a key that does not exist
MISSING = object()

## root keys
PROCESSES = 'processes'
DAEMON_PID = 'pid'

class Ipc(object):
    """
    Shared state store base class.

    Backends implement the underscore hooks and raise their
    native errors; this class converts the errors listed in
    ``errors`` into StoreError. The tolerant verbs (get, set,
    increment, decrement, remove) log a StoreError and behave
    as a no-op, read() lets it propagate.
    """

    kind = None
    errors: tuple = (OSError, ValueError, TypeError)

    ## False when forked processes do not share the stored values
    forkable = True

    def __init__(self, logger: object = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def key(id: Any, field: str) -> str:
        """
        Build a store key.

        Args:
            id (Any): Namespace id (queue id, executor pid), None for root keys
            field (str): Field name

        Returns:
            str: Store key
        """

        if id is None:
            return field.lower()

        return '%s_%s' % (id, field.lower())

    ## backend hooks
    def _read(self, key: str) -> Any:
        raise NotImplementedError

    def _write(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def _update(self, key: str, func: Callable[[Any], Any]) -> Any:
        """
        Atomically replace the value of key by func(value).

        func receives MISSING for an absent key and returns the new
        value, or MISSING to leave the key untouched.
        """

        raise NotImplementedError

    def _delete(self, key: str) -> bool:
        raise NotImplementedError

    def _keys(self) -> list:
        raise NotImplementedError

    @contextmanager
    def lock(self, id: Any):
        """
        Hold the namespace lock of id.

        Operations done while the lock is held are atomic with
        respect to other holders of the same namespace lock.
        """

        raise NotImplementedError
        yield

    def after_fork(self) -> None:
        """
        Reset per-process resources in a freshly forked child.
        """

    def close(self) -> None:
        pass

    ## error handling
    def _guard(self, key: str, func: Callable, *args) -> Any:
        try:
            return func(*args)

        except StoreError:
            raise

        except self.errors as e:
            raise StoreError(key, str(e)) from e

    def _tolerate(self, key: str, func: Callable, default: Any, *args) -> Any:
        try:
            return self._guard(key, func, *args)

        except StoreError as e:
            self.logger.error({'store': self.kind, 'error': str(e)})
            return default

    ## contract verbs
    def read(self, key: str, default: Any = None) -> Any:
        """
        Read a key, raising on backend failure.

        Args:
            key (str): Store key
            default (Any): Value returned when the key does not exist

        Returns:
            Any: Stored value or default

        Raises:
            StoreError: The backend could not be read
        """

        value = self._guard(key, self._read, key)
        return default if value is MISSING else value

    def get(self, key: str, default: Any = None) -> Any:
        value = self._tolerate(key, self._read, MISSING, key)
        return default if value is MISSING else value

    def set(self, key: str, value: Any) -> bool:
        return self._tolerate(key, self._write_ok, False, key, value)

    def _write_ok(self, key: str, value: Any) -> bool:
        self._write(key, value)
        return True

    def increment(self, key: str, count: int = 1) -> int | None:
        """
        Add count to an integer key, creating it at 0 when absent.

        Returns:
            int: New value, None on store failure
        """

        def add(value):
            return (0 if value is MISSING else int(value)) + count

        return self._tolerate(key, self._update, None, key, add)

    def decrement(self, key: str, count: int = 1) -> bool:
        """
        Subtract count from an integer key.

        A missing key, or a value lower than count, is left
        untouched and reported as a failure.

        Returns:
            bool: True when the key was decremented
        """

        def sub(value):
            if value is MISSING or int(value) < count or int(value) <= 0:
                return MISSING

            return int(value) - count

        return self._tolerate(key, self._update, MISSING, key, sub) is not MISSING

    def remove(self, key: str) -> bool:
        return self._tolerate(key, self._delete, False, key)

    def keys(self) -> list:
        return self._tolerate('*', self._keys, [])

    ## list helpers
    def append(self, key: str, item: Any) -> bool:
        """
        Add item to the list stored under key, once.
        """

        def add(value):
            items = [] if value is MISSING else list(value)
            if item not in items:
                items.append(item)

            return items

        return self._tolerate(key, self._update, MISSING, key, add) is not MISSING

    def discard(self, key: str, item: Any) -> bool:
        """
        Remove item from the list stored under key.
        """

        def drop(value):
            if value is MISSING or item not in value:
                return MISSING

            return [x for x in value if x != item]

        return self._tolerate(key, self._update, MISSING, key, drop) is not MISSING

    def clear(self, id: Any) -> int:
        """
        Remove every field of a namespace.

        Returns:
            int: Number of removed keys
        """

        prefix = '%s_' % (id)
        removed = 0
        for key in self.keys():
            if key.startswith(prefix) and self.remove(key):
                removed += 1

        return removed

    @staticmethod
    def factory(kind: str, logger: object = None, tmpdir: str | None = None, url: str | None = None, table: str = 'td_ipc') -> 'Ipc':
        """
        Build a store backend.

        Args:
            kind (str): memory, filesystem or database
            logger (object): Application logger
            tmpdir (str): Directory of the filesystem backend
            url (str): SQLAlchemy URL of the database backend
            table (str): Table of the database backend

        Returns:
            Ipc: Store backend

        Raises:
            ConfigurationError: Unknown kind or missing setting
        """

        kind = (kind or 'memory').lower()
        if kind == 'memory':
            from IpcMemory import IpcMemory
            return IpcMemory(logger)

        if kind == 'filesystem':
            if not tmpdir:
                raise ConfigurationError('filesystem ipc requires daemon.tmpdir')

            from IpcFileSystem import IpcFileSystem
            return IpcFileSystem(logger, tmpdir)

        if kind == 'database':
            if not url:
                raise ConfigurationError('database ipc requires a database url')

            from IpcDatabase import IpcDatabase
            return IpcDatabase(logger, url, table)

        raise ConfigurationError('unknown ipc type: %s' % (kind))
