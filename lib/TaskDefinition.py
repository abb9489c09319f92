"""
Task Definition Module

This module defines the typed, immutable description of a task
and the registry holding every task of the daemon. The registry
is built once at startup from configuration and passed by
reference to every manager.

Responsibilities:
- Describe a task: process type, parallelism, trigger, store, code
- Resolve queue classes and work functions from import paths
- Build the registry, skipping (not aborting on) invalid tasks
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import re
import logging
import importlib
from typing import Any, Callable, Iterator
from dataclasses import dataclass, field

## import private pkgs
from Errors import ConfigurationError
from JobQueue import Queue
from Trigger import Trigger

## manager process types
PROCESS_SAME = 'same'
PROCESS_CHILD = 'child'
PROCESS_PARALLEL = 'parallel'
PROCESS_TYPES = (PROCESS_SAME, PROCESS_CHILD, PROCESS_PARALLEL)

def resolve(path: str) -> Any:
    """
    Import an object from a "module:attribute" path.

    Args:
        path (str): Import path, e.g. "PocTask:PocQueue"

    Returns:
        Any: Imported object

    Raises:
        ConfigurationError: Malformed path or import failure
    """

    if not isinstance(path, str) or ':' not in path:
        raise ConfigurationError('import path must look like module:attribute, got %r' % (path))

    module_name, _, attribute = path.partition(':')
    try:
        module = importlib.import_module(module_name)
        obj = module
        for part in attribute.split('.'):
            obj = getattr(obj, part)

    except (ImportError, AttributeError) as e:
        raise ConfigurationError('cannot import %s: %s' % (path, e))

    return obj

@dataclass(frozen = True)
class TaskDefinition(object):
    """
    Immutable task description.

    Attributes:
        name (str): Task name
        queue_factory (Callable): Returns the task Queue
        work (Callable): Work function run by executors, work(job, executor)
        process_type (str): same, child or parallel
        parallelism (int): Maximum concurrent executors (N)
        timer_type (str): default, interval, cron or external
        timer_interval (float): Interval in seconds for interval timers
        timer_cron (str): Cron expression for cron timers
        timezone (str): Timezone of cron expressions
        ipc (str): Store backend kind
    """

    name: str
    queue_factory: Callable[[], Queue]
    work: Callable
    process_type: str = PROCESS_PARALLEL
    parallelism: int = 1
    timer_type: str = 'default'
    timer_interval: float | None = None
    timer_cron: str | None = None
    timezone: str | None = None
    ipc: str = 'filesystem'
    options: dict = field(default_factory = dict, compare = False)

    def __post_init__(self) -> None:
        if self.process_type not in PROCESS_TYPES:
            raise ConfigurationError('task %s: unknown process type %r' % (self.name, self.process_type))

        if not isinstance(self.parallelism, int) or self.parallelism < 1:
            raise ConfigurationError('task %s: parallelism must be a positive integer' % (self.name))

        if not callable(self.queue_factory) or not callable(self.work):
            raise ConfigurationError('task %s: queue and executor must be callable' % (self.name))

        if self.ipc == 'memory' and self.process_type != PROCESS_SAME:
            raise ConfigurationError('task %s: memory ipc requires process type same' % (self.name))

        ## validate the timer settings eagerly
        self.build_trigger()

    @property
    def max_executors(self) -> int:
        """
        Effective parallelism: same and child run one job at a time.
        """

        if self.process_type == PROCESS_PARALLEL:
            return self.parallelism

        return 1

    @property
    def forks_executors(self) -> bool:
        return self.process_type != PROCESS_SAME

    def build_trigger(self) -> Trigger:
        return Trigger.from_config(self.timer_type, self.timer_interval, self.timer_cron, self.timezone)

    def build_queue(self) -> Queue:
        return self.queue_factory()

    @classmethod
    def from_config(cls, name: str, config: object) -> 'TaskDefinition':
        """
        Build a task definition from configuration.

        Args:
            name (str): Task name
            config (Config): Daemon configuration

        Returns:
            TaskDefinition: Task definition

        Raises:
            ConfigurationError: Missing or invalid settings
        """

        queue_path = config.get_option('queue', name)
        work_path = config.get_option('executor', name)
        if not queue_path or not work_path:
            raise ConfigurationError('task %s: queue and executor are required' % (name))

        try:
            parallelism = int(config.get_option('process.parallel.childs', name, 1))
            interval = config.get_option('timer.interval.time', name)
            interval = float(interval) if interval is not None else None

        except (TypeError, ValueError) as e:
            raise ConfigurationError('task %s: %s' % (name, e))

        return cls(
            name = name,
            queue_factory = resolve(queue_path),
            work = resolve(work_path),
            process_type = str(config.get_option('process.type', name, PROCESS_PARALLEL)).lower(),
            parallelism = parallelism,
            timer_type = str(config.get_option('timer.type', name, 'default')).lower(),
            timer_interval = interval,
            timer_cron = config.get_option('timer.cron.time', name),
            timezone = config.get_option('timezone', name) or config.get_option('daemon.timezone'),
            ipc = str(config.get_option('ipc', name) or config.get_option('daemon.ipc', default = 'filesystem')).lower(),
            options = config.task_section(name),
        )

class TaskRegistry(object):
    """
    Ordered, read-only collection of task definitions.
    """

    def __init__(self, tasks: list[TaskDefinition] | None = None) -> None:
        self._tasks = {}
        for task in tasks or []:
            if task.name in self._tasks:
                raise ConfigurationError('duplicate task name: %s' % (task.name))

            self._tasks[task.name] = task

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def get(self, name: str) -> TaskDefinition:
        return self._tasks[name]

    def names(self) -> list[str]:
        return list(self._tasks)

    @classmethod
    def from_config(cls, config: object, logger: object = None, pattern: str | None = None) -> 'TaskRegistry':
        """
        Build the registry of every configured task.

        Invalid tasks are logged at critical severity and skipped,
        the remaining tasks are still registered.

        Args:
            config (Config): Daemon configuration
            logger (object): Application logger
            pattern (str): Only keep task names matching this regex

        Returns:
            TaskRegistry: Task registry
        """

        logger = logger or logging.getLogger(__name__)
        tasks = []
        for name in config.task_names():
            if pattern and not re.search(pattern, name):
                continue

            try:
                tasks.append(TaskDefinition.from_config(name, config))

            except ConfigurationError as e:
                logger.critical({'task': name, 'error': str(e), 'status': 'skipped'})

        return cls(tasks)
