"""
Task Daemon Entry Point

This module provides the operator command line of the task
daemon. It is responsible for:

- Loading configuration
- Initializing logging
- Attaching database-backed logging
- Starting, stopping and restarting the daemon instance
- Printing status reports, task lists and settings
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import build in pkgs
import re
import os
import sys
import json
import time
import argparse

## Resolve project root directory
workpath = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))

## Extend Python module search path for project libraries
sys.path.append("%s/lib" % (workpath))

## import private pkgs
from Log import Log
from Ipc import Ipc
from State import State
from Config import Config
from Instance import Instance
from Errors import TaskDaemonError
from TaskDefinition import TaskRegistry

ACTIONS = ('start', 'stop', 'restart', 'status', 'monitor')

class TaskDaemon(object):
    """
    Task daemon controller.

    This class bootstraps configuration, logging and the shared
    state store, then maps the command line actions onto the
    daemon instance and the status reports.

    Lifecycle:
        1. Load configuration
        2. Initialize logging
        3. Attach database-backed logging when configured
        4. Run the requested action
    """

    def __init__(self, config_files: list | None = None, verbose: int = 0, pattern: str | None = None, log_file: str | None = None) -> None:
        """
        Initialize the task daemon runtime environment.

        Args:
            config_files (list): Configuration files, default etc/taskdaemon.json
            verbose (int): Console verbosity
            pattern (str): Only run tasks whose name matches this regex
            log_file (str): Log file overriding log.file

        Returns:
            None
        """

        ## set private values
        self.configObj = Config(workpath, config_files)
        self.config = self.configObj.config
        self.config['pid'] = os.getpid()
        self.config['pname'] = os.path.basename(__file__)
        self.config['name'] = re.sub(r'\..*$', '', self.config['pname'])
        self.config['log']['file'] = self.configObj.path(log_file or self.config['log']['file'])
        self.pattern = pattern

        ## logger init
        self.loggerObj = Log(self.config, verbose)
        self.logger = self.loggerObj.logger

        ## prt log to database
        if self.config['log'].get('table'):
            self.loggerObj.add_db_handler(self.configObj.db_url(), self.config['log']['table'])

        ## debug prt
        self.logger.debug({'config.files': self.configObj.files})
        self.logger.debug({'daemon.ipc': self.config['daemon']['ipc']})
        self.logger.debug({'daemon.process.type': self.config['daemon']['process']['type']})

        self.pidfile = self.configObj.path(self.config['daemon']['pidfile'])
        self.grace = float(self.config['daemon']['grace'])

    def store(self, kind: str | None = None) -> Ipc:
        """
        Build a shared state store, the daemon store by default.
        """

        return Ipc.factory(
            kind or self.config['daemon']['ipc'],
            self.logger,
            tmpdir = self.configObj.path(self.config['daemon']['tmpdir']),
            url = self.configObj.db_url(),
            table = self.config['db']['table'],
        )

    def registry(self) -> TaskRegistry:
        return TaskRegistry.from_config(self.configObj, self.logger, self.pattern)

    def start(self) -> bool:
        """
        Run the daemon in the foreground until it is stopped.

        Returns:
            bool: False when a daemon is already running
        """

        self.logger.debug({'status': 'start'})
        instance = Instance(self.logger,
                            self.registry(),
                            self.store(),
                            process_type = self.config['daemon']['process']['type'],
                            pidfile = self.pidfile,
                            grace = self.grace,
                            poll = float(self.config['daemon']['poll']),
                            store_factory = self.store,
                            )
        result = instance.start()
        if not result:
            print('TaskDaemon is already running (pid %s)' % (Instance.read_pid(self.pidfile)))

        self.logger.debug({'status': 'end'})
        return result

    def stop(self) -> bool:
        if not Instance.is_running(self.pidfile):
            print('TaskDaemon is not running')
            return True

        ## managers and executors each get one grace period
        stopped = Instance.terminate(self.pidfile, timeout = 3 * self.grace + 1)
        print('TaskDaemon stopped' if stopped else 'TaskDaemon did not stop in time')
        return stopped

    def restart(self) -> bool:
        return self.stop() and self.start()

    def status(self) -> bool:
        state = State(self.store(), self.logger).get_state()
        if state['pid'] is None:
            print('Daemon not running')
            return True

        print(State.render(state, 'Status'))
        return True

    def monitor(self) -> bool:
        """
        Print the status report every daemon.monitor.sleep seconds.
        """

        sleep = float(self.configObj.get_option('daemon.monitor.sleep', default = 1.0))
        state = State(self.store(), self.logger)
        try:
            while True:
                report = State.render(state.get_state(), 'Monitor')
                sys.stdout.write('\033[2J\033[H' + report)
                sys.stdout.flush()
                time.sleep(sleep)

        except KeyboardInterrupt:
            return True

    def list_tasks(self) -> bool:
        registry = self.registry()
        print('TaskDaemon - Tasks (%d)' % (len(registry)))
        for task in registry:
            print('- %s\t(process: %s x%d, timer: %r, ipc: %s)' % (task.name, task.process_type, task.max_executors, task.build_trigger(), task.ipc))

        return True

    def settings(self) -> bool:
        print(json.dumps(self.config, indent = 4, default = str))
        return True

    def run(self, action: str | None = None, list_tasks: bool = False, settings: bool = False) -> bool:
        """
        Run the requested operator action.

        Returns:
            bool: True if the action succeeded
        """

        if settings:
            return self.settings()

        if list_tasks:
            return self.list_tasks()

        return getattr(self, action or 'status')()

def main(argv: list | None = None) -> int:
    """
    Application entry point.

    Parses the command line and runs the requested action.
    """

    parser = argparse.ArgumentParser(prog = 'TaskDaemon', description = 'Run queues of jobs in forked worker processes.')
    parser.add_argument('-c', '--config-file', action = 'append', dest = 'config_files', help = 'configuration file, may be repeated')
    parser.add_argument('-a', '--action', choices = ACTIONS, default = 'status', help = 'daemon action')
    parser.add_argument('--list-tasks', action = 'store_true', help = 'list the configured tasks')
    parser.add_argument('--settings', action = 'store_true', help = 'print the merged settings')
    parser.add_argument('-t', '--task', dest = 'pattern', help = 'only run tasks whose name matches this regex')
    parser.add_argument('-l', '--log-file', dest = 'log_file', help = 'log file, overrides log.file')
    parser.add_argument('-v', '--verbose', action = 'count', default = 0, help = 'console verbosity, may be repeated')
    args = parser.parse_args(argv)

    try:
        tdObj = TaskDaemon(args.config_files, args.verbose, args.pattern, args.log_file)
        return 0 if tdObj.run(args.action, args.list_tasks, args.settings) else 1

    except TaskDaemonError as e:
        print('TaskDaemon: %s' % (e), file = sys.stderr)
        return 2

if __name__ == "__main__":
    """
    Command-line entry point.

    This function is executed only when the module is run as a
    script. It will not be executed when the module is imported.
    """

    sys.exit(main())
