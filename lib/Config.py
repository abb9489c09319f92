"""
Configuration Module

This module loads the daemon configuration. Settings come from
built-in defaults overlaid by JSON configuration files; task
options are resolved from the task section first, then from
the task defaults section, then from the global settings.

Responsibilities:
- Load and merge JSON configuration files
- Resolve dotted option names per task
- Build the database URL used by the database backed components
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import copy
import json
from typing import Any
from urllib.parse import quote_plus

## import private pkgs
from Errors import ConfigurationError

## sentinel for options that are not set at a given level
_UNSET = object()

DEFAULTS = {
    'daemon': {
        'process': {'type': 'fork'},
        'ipc': 'filesystem',
        'tmpdir': 'tmp/ipc',
        'pidfile': 'tmp/taskdaemon.pid',
        'grace': 5.0,
        'poll': 0.5,
        'timezone': None,
        'monitor': {'sleep': 1.0},
    },
    'db': {
        'url': None,
        'host': '127.0.0.1',
        'port': 3306,
        'username': 'taskdaemon',
        'password': '',
        'database': 'taskdaemon',
        'charset': 'utf8mb4',
        'table': 'td_ipc',
    },
    'log': {
        'level': 'INFO',
        'file': 'log/taskdaemon.log',
        'table': None,
    },
    'tasks': {
        'defaults': {
            'process': {'type': 'parallel', 'parallel': {'childs': 3}},
            'timer': {'type': 'interval', 'interval': {'time': 1.0}},
        },
    },
}

def merge(base: dict, override: dict) -> dict:
    """
    Recursively merge override into base, in place.
    """

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge(base[key], value)

        else:
            base[key] = copy.deepcopy(value)

    return base

def lookup(section: dict, path: str) -> Any:
    node = section
    for part in path.split('.'):
        if not isinstance(node, dict) or part not in node:
            return _UNSET

        node = node[part]

    return node

class Config(object):
    """
    Daemon configuration.

    Attributes:
        workpath (str): Project root, relative paths resolve against it
        files (list): Configuration files that were loaded
        config (dict): Merged settings
    """

    def __init__(self, workpath: str, files: list | None = None) -> None:
        """
        Load the configuration.

        Args:
            workpath (str): Project root directory
            files (list): Configuration files, defaults to etc/taskdaemon.json

        Returns:
            None

        Raises:
            ConfigurationError: A configuration file is not valid JSON
        """

        self.workpath = workpath
        if files is None:
            files = [os.path.join(workpath, 'etc', 'taskdaemon.json')]

        self.files = []
        self.config = copy.deepcopy(DEFAULTS)
        for path in files:
            path = self.path(path)
            if not os.path.isfile(path):
                continue

            try:
                with open(path, 'r', encoding = 'utf-8') as fh:
                    merge(self.config, json.load(fh))

            except (OSError, ValueError) as e:
                raise ConfigurationError('cannot load %s: %s' % (path, e))

            self.files.append(path)

    def path(self, path: str | None) -> str | None:
        """
        Resolve a path relative to the project root.
        """

        if not path or os.path.isabs(path):
            return path

        return os.path.join(self.workpath, path)

    def get_option(self, path: str, task: str | None = None, default: Any = None) -> Any:
        """
        Resolve a dotted option.

        Args:
            path (str): Dotted option name, e.g. "timer.interval.time"
            task (str): Task whose section is searched first
            default (Any): Returned when the option is not set anywhere

        Returns:
            Any: Option value
        """

        levels = []
        if task is not None:
            tasks = self.config.get('tasks', {})
            levels.append(tasks.get(task, {}))
            levels.append(tasks.get('defaults', {}))

        levels.append(self.config)
        for section in levels:
            value = lookup(section, path)
            if value is not _UNSET and value is not None:
                return value

        return default

    def task_names(self) -> list[str]:
        return [name for name in self.config.get('tasks', {}) if name != 'defaults']

    def task_section(self, name: str) -> dict:
        return copy.deepcopy(self.config.get('tasks', {}).get(name, {}))

    def db_url(self) -> str:
        """
        SQLAlchemy URL of the daemon database.

        Returns db.url when set, otherwise a MySQL URL built from the
        db connection settings.
        """

        db = self.config['db']
        if db.get('url'):
            return db['url']

        return 'mysql+pymysql://%s:%s@%s:%s/%s?charset=%s' % (db['username'], quote_plus(str(db['password'])), db['host'], db['port'], db['database'], db['charset'])
