import os
import signal

import pytest

from SignalHandler import SignalHandler, TERMINATE_SIGNALS, reap_children, signal_name


def test_handle_calls_callback_and_wakes_wait():
    seen = []
    handler = SignalHandler('test', handler = seen.append)

    assert not handler.wait(0)
    handler.handle(signal.SIGUSR1)
    assert handler.wait(0)
    assert not handler.wait(0)
    assert seen == [signal.SIGUSR1]
    assert handler.received == [signal.SIGUSR1]
    handler.close()


def test_installed_handler_receives_os_signals():
    seen = []
    previous = signal.getsignal(signal.SIGUSR1)

    with SignalHandler('test', handler = seen.append, signals = (signal.SIGUSR1,)) as handler:
        os.kill(os.getpid(), signal.SIGUSR1)
        assert handler.wait(5)

    assert seen == [signal.SIGUSR1]
    assert signal.getsignal(signal.SIGUSR1) == previous


def test_default_handler_reaps_children():
    handler = SignalHandler('test')
    pid = os.fork()
    if pid == 0:
        os._exit(7)

    os.waitid(os.P_PID, pid, os.WEXITED | os.WNOWAIT)
    handler.handle(signal.SIGCHLD)

    assert [(reaped, os.waitstatus_to_exitcode(status)) for reaped, status in handler.reaped] == [(pid, 7)]
    assert reap_children() == []
    handler.close()


def test_default_handler_exits_after_cleanup():
    cleaned = []
    handler = SignalHandler('test', cleanup = lambda: cleaned.append(True))

    with pytest.raises(SystemExit):
        handler.handle(signal.SIGTERM)

    assert cleaned == [True]
    handler.close()


def test_reset_restores_default_dispositions():
    with SignalHandler('test', handler = lambda signum: None, signals = (signal.SIGHUP,)):
        SignalHandler.reset((signal.SIGHUP,))
        assert signal.getsignal(signal.SIGHUP) == signal.SIG_DFL


def test_signal_names():
    assert signal_name(signal.SIGTERM) == 'SIGTERM'
    assert signal_name(12345) == '12345'
    assert signal.SIGINT in TERMINATE_SIGNALS
