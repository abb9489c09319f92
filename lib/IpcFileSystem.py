"""
Filesystem Shared State Store

Stores every key as one file under a temporary directory, named
after the key (<id>_<field>). Values are JSON encoded. Read
modify write cycles hold an exclusive fcntl lock on the key
file, and namespace locks use a hidden lock file per id, so the
backend stays consistent across forked processes.
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import re
import json
import fcntl
from pathlib import Path
from contextlib import contextmanager

## import private pkgs
from Ipc import Ipc, MISSING

class IpcFileSystem(Ipc):
    """
    File per key store.
    """

    kind = 'filesystem'

    def __init__(self, logger: object, tmpdir: str) -> None:
        super().__init__(logger)
        self.path = Path(tmpdir)
        self.path.mkdir(parents = True, exist_ok = True)

        ## namespace id -> [fd, depth] of the locks held by this process
        self._held = {}

    def _file(self, key: str) -> Path:
        if not re.fullmatch(r'[A-Za-z0-9_.\-]+', key) or key.startswith('.'):
            raise ValueError('invalid key: %r' % (key))

        return self.path / key

    @staticmethod
    def _decode(raw: str):
        ## an empty file is a key that was never written
        if not raw.strip():
            return MISSING

        return json.loads(raw)

    def _read(self, key):
        try:
            with open(self._file(key), 'r', encoding = 'utf-8') as fh:
                fcntl.flock(fh, fcntl.LOCK_SH)
                return self._decode(fh.read())

        except FileNotFoundError:
            return MISSING

    def _write(self, key, value):
        raw = json.dumps(value)
        fd = os.open(self._file(key), os.O_RDWR | os.O_CREAT, 0o644)
        with os.fdopen(fd, 'r+', encoding = 'utf-8') as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            fh.seek(0)
            fh.truncate()
            fh.write(raw)
            fh.flush()

    def _update(self, key, func):
        fd = os.open(self._file(key), os.O_RDWR | os.O_CREAT, 0o644)
        with os.fdopen(fd, 'r+', encoding = 'utf-8') as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            value = func(self._decode(fh.read()))
            if value is not MISSING:
                fh.seek(0)
                fh.truncate()
                fh.write(json.dumps(value))
                fh.flush()

            return value

    def _delete(self, key):
        try:
            self._file(key).unlink()
            return True

        except FileNotFoundError:
            return False

    def _keys(self):
        keys = []
        for entry in os.scandir(self.path):
            if entry.name.startswith('.') or not entry.is_file():
                continue

            try:
                if entry.stat().st_size > 0:
                    keys.append(entry.name)

            except FileNotFoundError:
                ## removed by its owner while listing
                continue

        return sorted(keys)

    @contextmanager
    def lock(self, id):
        id = str(id)
        held = self._held.get(id)
        if held is not None:
            ## reentrant: flock would deadlock on a second descriptor
            held[1] += 1
            try:
                yield self

            finally:
                held[1] -= 1

            return

        fd = os.open(self.path / ('.%s.lock' % (id)), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            self._held[id] = [fd, 1]
            yield self

        finally:
            self._held.pop(id, None)
            os.close(fd)

    def after_fork(self) -> None:
        ## locks of the parent are not owned by the child
        self._held = {}

    def close(self) -> None:
        for fd, _ in self._held.values():
            os.close(fd)

        self._held = {}
