import math
from datetime import datetime, timezone

import pytest

from Errors import ConfigurationError
from Trigger import Trigger, IntervalTrigger, CronTrigger, ExternalTrigger, DEFAULT_WAIT


def test_default_trigger_waits_constant():
    trigger = Trigger()
    assert trigger.time_to_wait() == DEFAULT_WAIT
    assert trigger.time_to_wait() == DEFAULT_WAIT


def test_interval_returns_same_wait_every_call():
    trigger = IntervalTrigger(0.2)
    assert [trigger.time_to_wait() for _ in range(3)] == [0.2, 0.2, 0.2]


@pytest.mark.parametrize('interval', [-1, 'soon', None, float('nan')])
def test_interval_rejects_invalid(interval):
    with pytest.raises(ConfigurationError):
        IntervalTrigger(interval)


def test_cron_waits_until_next_minute():
    trigger = CronTrigger('* * * * *', timezone = 'UTC')
    now = datetime(2024, 1, 1, 12, 0, 45, tzinfo = timezone.utc)
    assert trigger.time_to_wait(now) == pytest.approx(15.0)


def test_cron_matching_instant_waits_zero():
    trigger = CronTrigger('30 12 * * *', timezone = 'UTC')
    now = datetime(2024, 1, 1, 12, 30, 0, tzinfo = timezone.utc)
    assert trigger.time_to_wait(now) == 0


def test_cron_with_seconds_field():
    trigger = CronTrigger('*/10 * * * * *', timezone = 'UTC')
    now = datetime(2024, 1, 1, 12, 0, 3, tzinfo = timezone.utc)
    assert trigger.time_to_wait(now) == pytest.approx(7.0)


def test_cron_never_matching_again_waits_forever():
    trigger = CronTrigger('* * * * *', timezone = 'UTC', end_date = '2000-01-01')
    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo = timezone.utc)
    assert math.isinf(trigger.time_to_wait(now))


@pytest.mark.parametrize('expression', ['* * * *', '61 * * * *', 'every minute please'])
def test_cron_rejects_invalid_expression(expression):
    with pytest.raises(ConfigurationError):
        CronTrigger(expression, timezone = 'UTC')


def test_external_trigger_fires_once_per_event():
    trigger = ExternalTrigger()
    assert math.isinf(trigger.time_to_wait())

    trigger.fire()
    trigger.fire()
    assert trigger.pending == 2
    assert trigger.time_to_wait() == 0
    assert trigger.time_to_wait() == 0
    assert math.isinf(trigger.time_to_wait())


def test_from_config_builds_each_kind():
    assert type(Trigger.from_config(None)) is Trigger
    assert type(Trigger.from_config('default')) is Trigger
    assert Trigger.from_config('interval', interval = 0.5).time_to_wait() == 0.5
    assert isinstance(Trigger.from_config('cron', cron = '0 3 * * *', timezone = 'UTC'), CronTrigger)
    assert isinstance(Trigger.from_config('EXTERNAL'), ExternalTrigger)


@pytest.mark.parametrize('kind, kwargs', [
    ('interval', {}),
    ('cron', {}),
    ('sometimes', {}),
])
def test_from_config_rejects_incomplete_settings(kind, kwargs):
    with pytest.raises(ConfigurationError):
        Trigger.from_config(kind, **kwargs)
