import os
import time
import signal

import pytest

from Ipc import Ipc, PROCESSES
from Errors import ConfigurationError
from JobQueue import COUNTERS
import Manager as manager_module
from Manager import Manager, ManagerStatus
from conftest import make_jobs, make_task


def nap(job, executor):
    time.sleep(0.05)
    executor.update(100, 'slept')


def store_counters(store, manager):
    return {field: store.get(Ipc.key(manager.id, field)) for field in COUNTERS}


@pytest.fixture
def run_manager(fs_store, logger):
    managers = []

    def run(task, store = fs_store, **kwargs):
        manager = Manager(logger, task, store, grace = 1.0, poll = 0.05, **kwargs)
        managers.append(manager)
        manager.start()
        manager.run_once()
        return manager

    yield run
    for manager in managers:
        manager.stop()


def test_empty_queue_stays_idle(run_manager, fs_store):
    manager = run_manager(make_task(nap, []))

    assert manager.state is ManagerStatus.IDLE
    assert manager.max_concurrency == 0
    assert store_counters(fs_store, manager) == {'loaded': 0, 'queued': 0, 'done': 0, 'failed': 0}


def test_runs_every_job(run_manager, fs_store, no_children):
    manager = run_manager(make_task(nap, make_jobs(5), parallelism = 2))

    assert manager.state is ManagerStatus.IDLE
    assert manager.counters.to_dict() == {'loaded': 5, 'queued': 0, 'done': 5, 'failed': 0}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()
    assert 1 <= manager.max_concurrency <= 2
    assert fs_store.get(Ipc.key(manager.id, 'executors')) == []


def test_fault_counts_failed_and_removes_executor_keys(run_manager, fs_store, no_children):
    def flaky(job, executor):
        if job.id == 'job-2':
            raise ValueError('bad payload')

        nap(job, executor)

    manager = run_manager(make_task(flaky, make_jobs(5), parallelism = 2))

    assert store_counters(fs_store, manager) == {'loaded': 5, 'queued': 0, 'done': 4, 'failed': 1}
    assert not [key for key in fs_store.keys() if key.endswith(('_state', '_percentage', '_message'))]


def test_parallelism_is_bounded(run_manager, fs_store, no_children):
    def span(job, executor):
        started = time.monotonic()
        time.sleep(0.05)
        fs_store.set('span-%s' % (job.id), [started, time.monotonic()])

    manager = run_manager(make_task(span, make_jobs(10), parallelism = 3, interval = 0))

    ## sweep the recorded run intervals, ends sort before starts at equal times
    events = []
    for key in fs_store.keys():
        if key.startswith('span-'):
            started, ended = fs_store.get(key)
            events += [(started, 1), (ended, -1)]

    running = peak = 0
    for _, step in sorted(events, key = lambda event: (event[0], event[1])):
        running += step
        peak = max(peak, running)

    assert len(events) == 20
    assert 2 <= peak <= 3
    assert manager.counters.done == 10
    assert manager.counters.consistent()


def test_child_process_type_runs_one_job_at_a_time(run_manager, no_children):
    manager = run_manager(make_task(nap, make_jobs(3), process_type = 'child', parallelism = 5, interval = 0))

    assert manager.max_concurrency == 1
    assert manager.counters.done == 3


def test_counters_stay_consistent_while_running(run_manager, fs_store, no_children):
    def observe(job, executor):
        ## read the namespace counters atomically from inside a running job
        with fs_store.lock(executor.queue_id):
            counters = {field: fs_store.get(Ipc.key(executor.queue_id, field)) for field in COUNTERS}

        fs_store.set('seen-%s' % (job.id), counters)

    manager = run_manager(make_task(observe, make_jobs(6), parallelism = 3))

    seen = [fs_store.get(key) for key in fs_store.keys() if key.startswith('seen-')]
    assert len(seen) == 6
    for counters in seen:
        assert counters['loaded'] == 6
        assert counters['loaded'] == counters['queued'] + counters['done'] + counters['failed']

    assert manager.counters.consistent()


def test_executor_dying_silently_counts_failed(run_manager, fs_store, no_children):
    def crash(job, executor):
        os._exit(3)

    manager = run_manager(make_task(crash, make_jobs(2), parallelism = 2))

    assert store_counters(fs_store, manager) == {'loaded': 2, 'queued': 0, 'done': 0, 'failed': 2}


def test_same_process_type_runs_inline(run_manager, memory_store):
    ran_in = []

    def record(job, executor):
        ran_in.append(os.getpid())

    task = make_task(record, make_jobs(3), process_type = 'same', ipc = 'memory')
    manager = run_manager(task, store = memory_store)

    assert ran_in == [os.getpid()] * 3
    assert store_counters(memory_store, manager) == {'loaded': 3, 'queued': 0, 'done': 3, 'failed': 0}


def test_forking_with_memory_store_is_rejected(memory_store, logger):
    task = make_task(nap, make_jobs(1), process_type = 'same', ipc = 'memory')
    Manager(logger, task, memory_store)

    with pytest.raises(ConfigurationError):
        Manager(logger, make_task(nap, make_jobs(1)), memory_store)


@pytest.mark.parametrize('count', [1, 2])
def test_termination_stops_every_executor(fs_store, logger, no_children, count):
    last = 'job-%d' % (count - 1)

    def stop_manager(job, executor):
        ## every executor is running when the last one asks the manager to stop
        if job.id == last:
            os.kill(os.getppid(), signal.SIGTERM)

        time.sleep(30)

    manager = Manager(logger, make_task(stop_manager, make_jobs(count), parallelism = count), fs_store, grace = 1.0, poll = 0.05)
    manager.start()
    started = time.monotonic()
    manager.run_once()

    assert time.monotonic() - started < 10
    assert manager.children == {}
    assert manager.max_concurrency == count
    assert manager.counters.to_dict() == {'loaded': count, 'queued': 0, 'done': 0, 'failed': count}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()

    manager.stop()
    assert manager.state is ManagerStatus.STOPPED
    assert fs_store.get(PROCESSES) == []
    assert not [key for key in fs_store.keys() if key.startswith('%s_' % (manager.id))]


def test_termination_during_report_keeps_store_consistent(run_manager, fs_store, monkeypatch, no_children):
    parent = os.getpid()
    increment = fs_store.increment

    def terminated_while_reporting(key, count = 1):
        if os.getpid() != parent and key.endswith('_done'):
            os.kill(os.getpid(), signal.SIGTERM)

        return increment(key, count)

    monkeypatch.setattr(fs_store, 'increment', terminated_while_reporting)
    manager = run_manager(make_task(nap, make_jobs(1)))

    assert manager.counters.to_dict() == {'loaded': 1, 'queued': 0, 'done': 1, 'failed': 0}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()


def test_lost_counter_transfer_is_completed(run_manager, fs_store, no_children):
    def report_then_die(job, executor):
        fs_store.set(Ipc.key(executor.pid, 'state'), 'done')
        os._exit(0)

    manager = run_manager(make_task(report_then_die, make_jobs(2), parallelism = 2))

    assert manager.counters.to_dict() == {'loaded': 2, 'queued': 0, 'done': 2, 'failed': 0}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()


def test_fork_failure_counts_failed_after_retries(run_manager, fs_store, monkeypatch):
    attempts = []

    def no_fork():
        attempts.append(time.monotonic())
        raise OSError(11, 'Resource temporarily unavailable')

    monkeypatch.setattr(os, 'fork', no_fork)
    manager = run_manager(make_task(nap, make_jobs(2)), dispatch_backoff = 0.01)

    assert len(attempts) == 6
    assert attempts[1] - attempts[0] >= 0.01
    assert attempts[2] - attempts[1] >= 0.02
    assert manager.counters.to_dict() == {'loaded': 2, 'queued': 0, 'done': 0, 'failed': 2}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()
    assert manager.children == {}


def test_child_reaped_before_registration_is_finalized(fs_store, logger, monkeypatch):
    pid = 4242424
    monkeypatch.setattr(os, 'fork', lambda: pid)

    manager = Manager(logger, make_task(nap, make_jobs(1)), fs_store, poll = 0.05)
    manager.start()

    ## the executor reported and was reaped before fork() returned its pid
    manager._orphans[pid] = 0
    fs_store.set(Ipc.key(pid, 'state'), 'done')
    manager.run_once()

    assert manager.children == {}
    assert manager._orphans == {}
    assert manager.counters.to_dict() == {'loaded': 1, 'queued': 0, 'done': 1, 'failed': 0}
    assert store_counters(fs_store, manager) == manager.counters.to_dict()
    assert fs_store.get(Ipc.key(manager.id, 'executors')) == []
    assert fs_store.get(Ipc.key(pid, 'state')) is None
    manager.stop()


def test_unknown_child_is_discarded(fs_store, logger, monkeypatch):
    reaped = [[(4343434, 0)]]
    monkeypatch.setattr(manager_module, 'reap_children', lambda: reaped.pop() if reaped else [])

    manager = Manager(logger, make_task(nap, []), fs_store, poll = 0.05)
    manager.start()
    manager._service()
    assert manager._orphans == {4343434: 0}

    manager.run_once()
    assert manager._orphans == {}
    assert manager.counters.to_dict() == {'loaded': 0, 'queued': 0, 'done': 0, 'failed': 0}
    manager.stop()


def test_registration_and_deregistration(fs_store, logger):
    manager = Manager(logger, make_task(nap, [], name = 'reports'), fs_store)
    manager.start()

    assert manager.id == str(os.getpid())
    assert fs_store.get(PROCESSES) == [manager.id]
    assert fs_store.get(Ipc.key(manager.id, 'name')) == 'reports'

    manager.stop()
    assert fs_store.get(PROCESSES) == []
    assert fs_store.get(Ipc.key(manager.id, 'name')) is None


def test_restart_signal_resets_the_queue(fs_store, logger):
    manager = Manager(logger, make_task(nap, make_jobs(2)), fs_store, poll = 0.05, install_signals = False)
    manager.start()
    manager.run_once()
    assert manager.counters.done == 2

    manager.notify(signal.SIGHUP)
    assert manager.interrupted

    manager.restart()
    assert not manager.interrupted
    assert manager.counters.to_dict() == {'loaded': 0, 'queued': 0, 'done': 0, 'failed': 0}
    assert fs_store.get(Ipc.key(manager.id, 'done')) == 0
    manager.stop()


def test_run_stops_after_cycles(fs_store, logger, no_children):
    manager = Manager(logger, make_task(nap, make_jobs(2)), fs_store, poll = 0.05)
    counters = manager.run(cycles = 2)

    assert counters.done == 2
    assert manager.state is ManagerStatus.STOPPED


def test_external_trigger_fires_on_usr1(fs_store, logger):
    manager = Manager(logger, make_task(nap, [], timer_type = 'external', interval = None), fs_store, install_signals = False)
    manager.start()

    manager.notify(signal.SIGUSR1)
    assert manager.trigger.pending == 1
    assert manager.trigger.time_to_wait() == 0
    manager.stop()
