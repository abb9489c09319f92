"""
Signal Handling Module

This module wraps POSIX signal registration for the long-lived
daemon processes (the instance and every manager). A handler is
an explicit subscription object owned by the control loop of
its process: it installs itself, dispatches signals to a
callback, lets the loop sleep until a signal arrives, and
restores the previous dispositions when closed.

Responsibilities:
- Register a callback for a set of signals
- Provide the default handler (cleanup and exit, reap children)
- Provide a signal-wakeable sleep for control loops
- Reset dispositions in executor processes
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import sys
import select
import signal
import logging
from typing import Callable

## signals subscribed when no explicit set is given
DEFAULT_SIGNALS = (
    signal.SIGCHLD,
    signal.SIGTERM,
    signal.SIGHUP,
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGUSR1,
)

## termination requests
TERMINATE_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)

def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name

    except ValueError:
        return str(signum)

def reap_children() -> list:
    """
    Collect every child that already exited, without blocking.

    Returns:
        list: (pid, wait status) tuples of the reaped children
    """

    reaped = []
    while True:
        try:
            pid, status = os.waitpid(-1, os.WNOHANG)

        except ChildProcessError:
            break

        if pid == 0:
            break

        reaped.append((pid, status))

    return reaped

class SignalHandler(object):
    """
    Signal subscription of one long-lived process.

    The callback runs inside the Python signal handler, between
    two bytecodes of the main thread. Owners keep it short (set
    flags, collect children) and do the real work in their
    control loop after wait() returns.
    """

    def __init__(self, identifier: str, logger: object = None, handler: Callable[[int], None] | None = None, signals: tuple | None = None, cleanup: Callable[[], None] | None = None) -> None:
        """
        Create a signal subscription.

        Args:
            identifier (str): Name of the owning process, used in logs
            logger (object): Application logger
            handler (Callable): Callback receiving the signal number,
                defaults to default_handler
            signals (tuple): Signals to subscribe, defaults to DEFAULT_SIGNALS
            cleanup (Callable): Cleanup run by the default handler before
                exiting on a termination request

        Returns:
            None
        """

        self.identifier = identifier
        self.logger = logger or logging.getLogger(__name__)
        self.handler = handler or self.default_handler
        self.signals = tuple(signals) if signals is not None else DEFAULT_SIGNALS
        self.cleanup = cleanup

        ## signals handled so far, and children reaped by the default handler
        self.received = []
        self.reaped = []

        self._previous = {}
        self._installed = False

        ## self-pipe waking up wait() when a signal is handled
        self._rfd, self._wfd = os.pipe()
        os.set_blocking(self._rfd, False)
        os.set_blocking(self._wfd, False)

    def install(self) -> 'SignalHandler':
        """
        Register the handler with the operating system.

        Returns:
            SignalHandler: self
        """

        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._on_signal)

        self._installed = True
        self.logger.debug({'identifier': self.identifier, 'signals': [signal_name(s) for s in self.signals]})
        return self

    def _on_signal(self, signum, frame) -> None:
        self.handle(signum)

    def handle(self, signum: int) -> None:
        """
        Dispatch a signal to the callback and wake up wait().

        Called by the operating system once installed; callers may
        invoke it directly to simulate a delivery.

        Args:
            signum (int): Signal number

        Returns:
            None
        """

        self.received.append(signum)
        try:
            self.handler(signum)

        finally:
            self.wakeup()

    def wakeup(self) -> None:
        try:
            os.write(self._wfd, b'\0')

        except (BlockingIOError, OSError):
            ## pipe already full or closed: a wakeup is pending anyway
            pass

    def wait(self, timeout: float | None = None) -> bool:
        """
        Sleep until a signal is handled or the timeout elapses.

        Args:
            timeout (float): Seconds to wait, None to wait forever

        Returns:
            bool: True when woken up by a signal
        """

        if timeout is not None:
            timeout = max(0.0, timeout)

        ready, _, _ = select.select([self._rfd], [], [], timeout)
        if not ready:
            return False

        try:
            while os.read(self._rfd, 512):
                pass

        except BlockingIOError:
            pass

        return True

    def default_handler(self, signum: int) -> None:
        """
        Default signal callback.

        - Termination requests run the cleanup callback and exit
        - Child exits reap every collectable child
        - Anything else is logged only

        Args:
            signum (int): Signal number

        Returns:
            None
        """

        if signum in TERMINATE_SIGNALS:
            self.logger.info({'identifier': self.identifier, 'signal': signal_name(signum), 'status': 'shutting down'})
            if self.cleanup is not None:
                self.cleanup()

            sys.exit(0)

        elif signum == signal.SIGCHLD:
            reaped = reap_children()
            self.reaped.extend(reaped)
            self.logger.debug({'identifier': self.identifier, 'signal': signal_name(signum), 'reaped': [pid for pid, _ in reaped]})

        else:
            self.logger.info({'identifier': self.identifier, 'signal': signal_name(signum), 'status': 'unknown action'})

    def close(self) -> None:
        """
        Restore the previous dispositions and release the pipe.
        """

        if self._installed:
            for signum, previous in self._previous.items():
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)

            self._installed = False

        self._previous = {}
        self.detach()

    def detach(self) -> None:
        """
        Release the wakeup pipe without touching dispositions.

        Used in forked children that inherit the subscription.
        """

        for fd in (self._rfd, self._wfd):
            try:
                os.close(fd)

            except OSError:
                pass

        self._rfd = self._wfd = -1

    def __enter__(self) -> 'SignalHandler':
        return self.install()

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def reset(signals: tuple = DEFAULT_SIGNALS) -> None:
        """
        Restore the default disposition of signals.

        Executors call this before running job work so signals
        aimed at the daemon do not leak into jobs.
        """

        for signum in signals:
            signal.signal(signum, signal.SIG_DFL)
