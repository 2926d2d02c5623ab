# pylint: disable=redefined-outer-name,missing-function-docstring,unused-argument
"""
Tests for linewatch.scheduler
"""
import asyncio
import datetime
import logging

import mock
import pytest

import linewatch.exc
import linewatch.main
from linewatch.config import SLOT_BLOCKS
from linewatch.scheduler import (Scheduler, WrapWatcher, cron_day_of_week, cron_trigger,
                                 in_active_window)
from tests.conftest import INSIDE_WINDOW, OUTSIDE_WINDOW, fake_now


class Clock():
    """ A settable monotonic clock. """
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def f_clock():
    yield Clock()


@pytest.fixture
def f_scheduler(f_runtime, f_settings, f_clock):
    scd = Scheduler(f_settings, now=fake_now(INSIDE_WINDOW), clock=f_clock)
    for watcher in f_runtime.watchers.values():
        scd.register(watcher)
    yield scd


@pytest.fixture
def f_outside(f_settings, f_source):
    yield linewatch.main.Runtime(f_settings, source=f_source, now=fake_now(OUTSIDE_WINDOW))


@pytest.mark.parametrize("field, expect", [
    ('*', '*'),
    ('1-6', 'mon,tue,wed,thu,fri,sat'),
    ('0,7', 'sun'),
    ('0-2', 'sun,mon,tue'),
    ('1-5/2', 'mon,wed,fri'),
    ('*/3', 'sun,wed,sat'),
    ('MON-FRI', 'mon-fri'),
])
def test_cron_day_of_week(field, expect):
    assert cron_day_of_week(field) == expect


@pytest.mark.parametrize("field", ['8', '6-1', '1-', '1/0'])
def test_cron_day_of_week_invalid(field):
    with pytest.raises(linewatch.exc.ConfigurationError):
        cron_day_of_week(field)


def test_cron_trigger(f_settings):
    tzinfo = f_settings.tzinfo
    trigger = cron_trigger('*/2 8-20 * * 1-6', tzinfo)

    sunday = tzinfo.localize(datetime.datetime(2024, 5, 5, 10, 0))
    assert trigger.get_next_fire_time(None, sunday) == tzinfo.localize(datetime.datetime(2024, 5, 6, 8, 0))

    monday = tzinfo.localize(datetime.datetime(2024, 5, 6, 9, 41))
    assert trigger.get_next_fire_time(None, monday) == tzinfo.localize(datetime.datetime(2024, 5, 6, 9, 42))


def test_in_active_window():
    assert in_active_window(SLOT_BLOCKS, INSIDE_WINDOW)
    assert not in_active_window(SLOT_BLOCKS, OUTSIDE_WINDOW)
    assert in_active_window((7, 21), OUTSIDE_WINDOW)
    assert not in_active_window((7, 21), datetime.datetime(2024, 5, 6, 21, 0))
    assert not in_active_window((7, 21), datetime.datetime(2024, 5, 6, 6, 59))


def test_scheduler_init(f_settings):
    scd = Scheduler(f_settings)

    assert not scd.sub
    assert scd.count == -1
    assert scd.now().tzinfo


def test_scheduler__repr__(f_scheduler):
    assert repr(f_scheduler).startswith("Scheduler(count=-1, sub=None, wrap_map=")


def test_scheduler__str__(f_scheduler):
    assert "WrapWatcher(name='production'" in str(f_scheduler)


def test_scheduler_get_wrap(f_scheduler):
    wrap = f_scheduler.get_wrap('cd')

    assert isinstance(wrap, WrapWatcher)
    assert wrap.name == 'cd'
    with pytest.raises(linewatch.exc.InvalidRequest):
        f_scheduler.get_wrap('fort')


def test_scheduler_gate(f_scheduler, f_clock):
    wrap = f_scheduler.get_wrap('production')
    assert f_scheduler.gate(wrap) is None

    wrap.last_start = f_clock.now
    f_clock.now += 60
    assert f_scheduler.gate(wrap) == 'only 60s since last cycle, floor is 240s'

    f_clock.now += 180
    assert f_scheduler.gate(wrap) is None


def test_scheduler_gate_outside_window(f_outside):
    scd = f_outside.scheduler

    assert scd.gate(scd.get_wrap('production')) == 'outside active window at 12:15'
    assert scd.gate(scd.get_wrap('qsl')) is None


@pytest.mark.asyncio
async def test_scheduler_tick(f_scheduler, f_source):
    summary = await f_scheduler.tick('cd')

    assert summary['new'] == 3
    assert f_source.pages() == ['DATA_CD']
    assert f_scheduler.get_wrap('cd').last_start == 100.0


@pytest.mark.asyncio
async def test_scheduler_tick_spacing_floor(f_scheduler, f_source, f_clock):
    await f_scheduler.tick('cd')
    f_clock.now += 30

    assert await f_scheduler.tick('cd') is None
    assert f_source.pages() == ['DATA_CD']
    assert f_scheduler.get_wrap('cd').skipped == 1

    f_clock.now += 60
    assert await f_scheduler.tick('cd') is not None
    assert f_source.pages() == ['DATA_CD', 'DATA_CD']


@pytest.mark.asyncio
async def test_scheduler_tick_outside_window_noop(f_outside, f_source):
    scd = f_outside.scheduler

    assert await scd.tick('production') is None
    assert f_source.calls == []
    assert f_outside.hub.counts['published'] == 0
    assert len(f_outside.watchers['production'].store) == 0
    assert scd.get_wrap('production').skipped == 1


@pytest.mark.asyncio
async def test_scheduler_manual_check(f_outside, f_source):
    scd = f_outside.scheduler
    summary = await scd.manual_check('production')

    assert summary['new'] == 4
    assert scd.get_wrap('production').last_start is not None
    assert f_source.pages()[0] == 'DATA BCSL HTM'


@pytest.mark.asyncio
async def test_scheduler_manual_check_unknown(f_scheduler):
    with pytest.raises(linewatch.exc.InvalidRequest):
        await f_scheduler.manual_check('fort')


@pytest.mark.asyncio
async def test_scheduler_trigger(f_scheduler, f_source):
    task = f_scheduler.trigger('cd', '2024-05-06T09:00:00+00:00')
    summary = await task
    await asyncio.sleep(0)

    assert summary['new'] == 3
    assert f_scheduler.count == 0
    assert not f_scheduler.pending


@pytest.mark.asyncio
async def test_scheduler_trigger_unknown(f_scheduler, caplog):
    caplog.set_level(logging.INFO)

    assert f_scheduler.trigger('fort', '2024-05-06T09:00:00+00:00') is None
    assert 'InvalidRequest: Unknown family: fort' in caplog.text
    assert not f_scheduler.pending


@pytest.mark.parametrize("error, expect", [
    (linewatch.exc.TransientUpstreamError('sheet timed out'), 'TransientUpstreamError: sheet timed out'),
    (ValueError('bad grid'), 'TRIGGER cycle failed'),
])
@pytest.mark.asyncio
async def test_scheduler_trigger_cycle_fails(f_scheduler, caplog, error, expect):
    watcher = f_scheduler.get_wrap('cd').watcher
    with mock.patch.object(watcher, 'check_cycle', mock.AsyncMock(side_effect=error)):
        task = f_scheduler.trigger('cd', '2024-05-06T09:00:00+00:00')
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    assert expect in caplog.text
    assert not f_scheduler.pending


def test_scheduler_stats(f_scheduler):
    stats = f_scheduler.stats()

    assert sorted(stats) == ['cd', 'cd_product', 'center_tv', 'production', 'qsl', 'team']
    assert stats['qsl'] == {'cron': '*/5 7-21 * * 1-6', 'nextRun': None, 'skipped': 0}


@pytest.mark.asyncio
async def test_scheduler_start(f_scheduler):
    f_scheduler.start()
    try:
        assert f_scheduler.aps.running
        assert f_scheduler.get_wrap('cd').job.id == 'cd'
        assert f_scheduler.stats()['cd']['nextRun']
    finally:
        f_scheduler.shutdown()
