import os
import logging

import pytest

from Job import Job
from JobQueue import ListQueue
from IpcMemory import IpcMemory
from IpcDatabase import IpcDatabase
from IpcFileSystem import IpcFileSystem
from TaskDefinition import TaskDefinition


@pytest.fixture
def logger():
    return logging.getLogger('tests.taskdaemon')


@pytest.fixture
def memory_store(logger):
    return IpcMemory(logger)


@pytest.fixture
def fs_store(tmp_path, logger):
    return IpcFileSystem(logger, str(tmp_path / 'ipc'))


@pytest.fixture
def db_store(tmp_path, logger):
    store = IpcDatabase(logger, 'sqlite:///%s' % (tmp_path / 'ipc.db'))
    yield store
    store.close()


@pytest.fixture(params = ['memory', 'filesystem', 'database'])
def store(request):
    return request.getfixturevalue({
        'memory': 'memory_store',
        'filesystem': 'fs_store',
        'database': 'db_store',
    }[request.param])


def make_jobs(count, prefix = 'job'):
    return [Job('%s-%d' % (prefix, i), {'index': i}) for i in range(count)]


def make_task(work, jobs = (), name = 'sample', process_type = 'parallel', parallelism = 1, interval = 0.01, ipc = 'filesystem', **kwargs):
    jobs = list(jobs)
    return TaskDefinition(
        name = name,
        queue_factory = lambda: ListQueue(jobs),
        work = work,
        process_type = process_type,
        parallelism = parallelism,
        timer_type = kwargs.pop('timer_type', 'interval'),
        timer_interval = interval,
        ipc = ipc,
        **kwargs
    )


@pytest.fixture
def no_children():
    """
    Fail when a test leaves a child process behind.
    """

    yield
    with pytest.raises(ChildProcessError):
        os.waitpid(-1, os.WNOHANG)
