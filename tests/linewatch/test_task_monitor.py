# pylint: disable=redefined-outer-name,missing-function-docstring,unused-argument
"""
Tests for linewatch.task_monitor
"""
import asyncio
import functools
import logging

import pytest

import linewatch.task_monitor


async def func_info(name, delay=0.2):
    """ Stop fake task to run and stop. """
    await asyncio.sleep(delay)
    return f"Info {name}"


async def func_fail():
    """ A task that dies immediately. """
    raise ValueError('sheet unreachable')


async def make_info():
    func = functools.partial(func_info, 'FuncCoro')
    info = {
        'func': func,
        'task': asyncio.create_task(func()),
        'name': 'SampleInfo',
        'description': 'Sample description of info.',
    }

    return info


@pytest.mark.asyncio
async def test_summarize_info_running():
    info = await make_info()
    try:
        expect = ['SampleInfo', 'Running', 'Sample description of info.']
        assert expect == linewatch.task_monitor.summarize_info(info)
    finally:
        await info['task']


@pytest.mark.asyncio
async def test_summarize_info_done(caplog):
    info = await make_info()
    await info['task']

    expect = ['SampleInfo', 'Done', 'Sample description of info.']
    assert expect == linewatch.task_monitor.summarize_info(info)
    assert not [rec for rec in caplog.records if rec.levelno >= logging.ERROR]


@pytest.mark.asyncio
async def test_summarize_info_stopped(caplog):
    info = await make_info()
    info['task'] = asyncio.create_task(func_fail())
    await asyncio.gather(info['task'], return_exceptions=True)

    expect = ['SampleInfo', 'Stopped', 'Sample description of info.']
    assert expect == linewatch.task_monitor.summarize_info(info)
    assert 'Unexpected stop of task SampleInfo: Exception raised by task: sheet unreachable' in caplog.text


@pytest.mark.asyncio
async def test_stop_reason():
    task = asyncio.create_task(func_fail())
    await asyncio.gather(task, return_exceptions=True)
    assert linewatch.task_monitor.stop_reason(task) == 'Exception raised by task: sheet unreachable'

    task = asyncio.create_task(func_info('Done', 0))
    await task
    assert linewatch.task_monitor.stop_reason(task) == 'The task returned.'

    task = asyncio.create_task(func_info('Cancel'))
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    assert linewatch.task_monitor.stop_reason(task) == 'The task was cancelled.'


@pytest.mark.asyncio
async def test_task_monitor_add():
    mon = linewatch.task_monitor.TaskMonitor()
    try:
        mon.add_task(functools.partial(func_info, 'FuncCoro'), name='InfoName', description='InfoDescription')

        assert mon.tasks
        assert mon.tasks['InfoName']['name'] == 'InfoName'
        assert not mon.tasks['InfoName']['task'].done()
    finally:
        await mon.tasks['InfoName']['task']


@pytest.mark.asyncio
async def test_task_monitor_add_duplicate():
    mon = linewatch.task_monitor.TaskMonitor()
    try:
        mon.add_task(functools.partial(func_info, 'FuncCoro'), name='InfoName', description='InfoDescription')
        with pytest.raises(ValueError):
            mon.add_task(functools.partial(func_info, 'FuncCoro'), name='InfoName', description='Again')
    finally:
        await mon.tasks['InfoName']['task']


@pytest.mark.asyncio
async def test_task_monitor_table_cells():
    mon = linewatch.task_monitor.TaskMonitor()
    try:
        mon.add_task(functools.partial(func_info, 'FuncCoro'), name='InfoName', description='InfoDescription')
        expect = [
            ['Name', 'Status', 'Description'],
            ['InfoName', 'Running', 'InfoDescription']
        ]
        assert expect == mon.table_cells()
    finally:
        await mon.tasks['InfoName']['task']


@pytest.mark.asyncio
async def test_task_monitor_status():
    mon = linewatch.task_monitor.TaskMonitor()
    mon.add_task(func_fail, name='heartbeat', description='Liveness file')
    mon.add_task(functools.partial(func_info, 'FuncCoro'), name='prime', description='First cycle')
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    try:
        assert mon.status() == {'heartbeat': 'Stopped', 'prime': 'Running'}
    finally:
        await mon.cancel_all()


@pytest.mark.asyncio
async def test_task_monitor_status_one_shot_done(caplog):
    mon = linewatch.task_monitor.TaskMonitor()
    mon.add_task(functools.partial(func_info, 'FuncCoro', 0), name='prime', description='First cycle')
    await mon.tasks['prime']['task']

    for _ in range(3):
        assert mon.status() == {'prime': 'Done'}
    assert not [rec for rec in caplog.records if rec.levelno >= logging.ERROR]


@pytest.mark.asyncio
async def test_task_monitor_cancel_all():
    mon = linewatch.task_monitor.TaskMonitor()
    mon.add_task(functools.partial(func_info, 'FuncCoro', 10), name='InfoName', description='InfoDescription')

    await mon.cancel_all()

    assert mon.tasks['InfoName']['task'].cancelled()
