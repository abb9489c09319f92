"""
Trigger Module

This module provides the timing policies a manager consults
between two dispatch decisions. Every trigger answers a single
question: how many seconds to wait before the next dispatch
decision or queue reload.

Responsibilities:
- Provide the default fallback wait that prevents busy loops
- Provide fixed interval and cron based waits
- Provide an externally fired trigger
- Build triggers from task configuration
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import math
from datetime import datetime
from apscheduler.triggers.cron import CronTrigger as CronExpression

## import private pkgs
from Errors import ConfigurationError

## wait returned when no concrete trigger is configured
DEFAULT_WAIT = 1.0

class Trigger(object):
    """
    Default fallback trigger.

    Returns a constant small wait, used when a task has no
    concrete trigger configured.
    """

    type = 'default'

    def time_to_wait(self) -> float:
        """
        Seconds to wait before the next dispatch decision.

        Returns:
            float: Non-negative wait in seconds
        """

        return DEFAULT_WAIT

    def __repr__(self) -> str:
        return '<%s>' % (self.__class__.__name__)

    @staticmethod
    def from_config(kind: str | None, interval: float | None = None, cron: str | None = None, timezone: str | None = None) -> 'Trigger':
        """
        Build a trigger from task timer configuration.

        Args:
            kind (str): Timer type (default, interval, cron, external)
            interval (float): Interval in seconds for interval timers
            cron (str): Cron expression for cron timers
            timezone (str): Timezone the cron expression is evaluated in

        Returns:
            Trigger: Configured trigger

        Raises:
            ConfigurationError: Unknown timer type or missing setting
        """

        kind = (kind or 'default').lower()
        if kind == 'default':
            return Trigger()

        if kind == 'interval':
            if interval is None:
                raise ConfigurationError('interval timer requires timer.interval.time')

            return IntervalTrigger(interval)

        if kind == 'cron':
            if not cron:
                raise ConfigurationError('cron timer requires timer.cron.time')

            return CronTrigger(cron, timezone = timezone)

        if kind == 'external':
            return ExternalTrigger()

        raise ConfigurationError('unknown timer type: %s' % (kind))

class IntervalTrigger(Trigger):
    """
    Fixed interval trigger.

    Returns the same configured wait on every call.
    """

    type = 'interval'

    def __init__(self, interval: float) -> None:
        try:
            interval = float(interval)

        except (TypeError, ValueError):
            raise ConfigurationError('invalid interval: %r' % (interval))

        if interval < 0 or math.isnan(interval):
            raise ConfigurationError('interval must be non-negative: %r' % (interval))

        self.interval = interval

    def time_to_wait(self) -> float:
        return self.interval

    def __repr__(self) -> str:
        return '<IntervalTrigger %ss>' % (self.interval)

class CronTrigger(Trigger):
    """
    Cron expression trigger.

    Waits until the next instant matching the expression. The
    expression is evaluated by APScheduler; standard five field
    crontab strings are accepted, and six field strings with a
    leading seconds field.

    When the expression can never match again the wait is
    unbounded and the task is effectively disabled.
    """

    type = 'cron'

    def __init__(self, expression: str, timezone: str | None = None, end_date: datetime | str | None = None) -> None:
        self.expression = expression
        fields = expression.split()

        try:
            if len(fields) == 5:
                ## plain crontab: fire at second 0
                self._cron = self._build(['0'] + fields, timezone, end_date)

            elif len(fields) == 6:
                self._cron = self._build(fields, timezone, end_date)

            else:
                raise ConfigurationError('cron expression needs 5 or 6 fields: %r' % (expression))

        except ValueError as e:
            raise ConfigurationError('invalid cron expression %r: %s' % (expression, e))

    @staticmethod
    def _build(fields: list, timezone: str | None, end_date: datetime | str | None) -> CronExpression:
        ## same field order as a six field crontab: second first
        second, minute, hour, day, month, day_of_week = fields
        return CronExpression(
            second = second,
            minute = minute,
            hour = hour,
            day = day,
            month = month,
            day_of_week = day_of_week,
            end_date = end_date,
            timezone = timezone,
        )

    def time_to_wait(self, now: datetime | None = None) -> float:
        """
        Seconds until the next matching instant.

        Args:
            now (datetime): Evaluation time, defaults to the current time

        Returns:
            float: 0 when now matches, math.inf when nothing matches anymore
        """

        if now is None:
            now = datetime.now(self._cron.timezone)

        next_fire = self._cron.get_next_fire_time(None, now)
        if next_fire is None:
            return math.inf

        return max(0.0, (next_fire - now).total_seconds())

    def __repr__(self) -> str:
        return '<CronTrigger %r>' % (self.expression)

class ExternalTrigger(Trigger):
    """
    Externally fired trigger.

    Reports an unbounded wait until fire() is called by an
    outside source (the manager wires SIGUSR1 to it), then
    returns 0 once per fire.
    """

    type = 'external'

    def __init__(self) -> None:
        self._fired = 0

    def fire(self) -> None:
        self._fired += 1

    @property
    def pending(self) -> int:
        return self._fired

    def time_to_wait(self) -> float:
        if self._fired > 0:
            self._fired -= 1
            return 0.0

        return math.inf
