# pylint: disable=redefined-outer-name,missing-function-docstring,unused-argument
"""
Used for pytest fixtures and anything else test setup/teardown related.
"""
import copy
import datetime
import os
import sys

import mock
import pytest
try:
    import uvloop
    POLICY = uvloop.EventLoopPolicy
except ImportError:
    print("Missing: uvloop")
    sys.exit(1)

import linewatch.config
import linewatch.main
import linewatch.sheets
from linewatch.broadcast import Broadcaster, RoomHub
from linewatch.sheets import FetchClient
from tests.data import (CD_FACTORY_CODES, CD_GRID, CD_GROUPING, CD_ROW_COUNTS, CENTER_TV_GRID,
                        ENDLINE_GRID, PRODUCT_GRID, QSL_GRID, WIDE_GRID)

REASON_SLOW = 'Slow as blocking to sheet. To enable, ensure os.environ ALL_TESTS=True'
SHEET_TEST = pytest.mark.skipif(not os.environ.get('ALL_TESTS'), reason=REASON_SLOW)
TEST_ENV = {
    'GOOGLE_SHEET_ID': 'main_sheet',
    'QSL_SHEET_ID': 'qsl_sheet',
    'SERVER_FACTORY': 'ALL',
}
# Loaded over CONFIG_DEFAULTS: no cache, no pacing and no throttle so cycles are immediate
TEST_CONF = {
    'fetch': {
        'min_interval': 0,
        'jitter': 0,
        'cache_ttl': 0,
        'timeout': 5,
    },
    'families': {
        'production': {'pacing': 0, 'cache_ttl': 0},
        'team': {'pacing': 0, 'cache_ttl': 0},
        'cd': {
            'pacing': 0,
            'cache_ttl': 0,
            'factory_codes': CD_FACTORY_CODES,
            'row_counts': CD_ROW_COUNTS,
            'default_row_count': 3,
            'grouping': CD_GROUPING,
        },
        'qsl': {'pacing': 0, 'cache_ttl': 0, 'lines': [1, 2]},
        'cd_product': {'pacing': 0, 'cache_ttl': 0, 'codes': ['cd1', 'cd2']},
        'center_tv': {'pacing': 0, 'cache_ttl': 0},
    },
}
# Monday, inside the 09:30 checkpoint block
INSIDE_WINDOW = datetime.datetime(2024, 5, 6, 9, 40)
# Monday, lunch break between the 11:30 and 13:30 blocks
OUTSIDE_WINDOW = datetime.datetime(2024, 5, 6, 12, 15)


def default_grids():
    """ Every page the test settings read, keyed by page name. """
    return {
        'DATA BCSL HTM': WIDE_GRID,
        'ENDLINE_DAILY_DATA': ENDLINE_GRID,
        'ENDLINE_BEFORE_DATA': ENDLINE_GRID,
        'DATA_CD': CD_GRID,
        'LINE1': QSL_GRID,
        'LINE2': QSL_GRID,
        'CD1': PRODUCT_GRID,
        'CD2': PRODUCT_GRID,
        'DATA_QSL': CENTER_TV_GRID,
    }


def make_settings(environ=None, **families):
    """
    Build validated settings from TEST_CONF.

    Args:
        environ: The environment mapping, TEST_ENV by default.
        families: Extra values per family merged over TEST_CONF.
    """
    loaded = copy.deepcopy(TEST_CONF)
    for name, values in families.items():
        loaded['families'].setdefault(name, {}).update(values)
    conf = linewatch.config.Config('tests/config.yml', linewatch.config.merge_defaults(loaded))

    return linewatch.config.load_settings(conf, TEST_ENV if environ is None else environ)


class FakeSource():
    """
    Stand in for the google sheets source.

    Args:
        grids: Dict page -> grid returned by read, missing pages are empty.
        errors: Exceptions raised, in order, by the first reads.
    """
    def __init__(self, grids=None, errors=None):
        self.grids = grids if grids is not None else default_grids()
        self.errors = list(errors or [])
        self.calls = []

    async def read(self, sheet_id, page, a1_range):
        self.calls += [(sheet_id, page, a1_range)]
        if self.errors:
            raise self.errors.pop(0)

        return copy.deepcopy(self.grids.get(page, []))

    def pages(self):
        """ The pages read so far, in order. """
        return [call[1] for call in self.calls]


def fake_now(when):
    """ A local clock frozen at when, in the test timezone. """
    aware = make_settings().tzinfo.localize(when)
    return lambda: aware


class FakeClient():
    """ A hub client collecting every message sent to it. """
    def __init__(self):
        self.sent = []

    async def send(self, text):
        self.sent += [text]


@pytest.fixture(scope='session')
def event_loop_policy():
    """
    Run every async test on a uvloop loop.

    To test mark with pytest.mark.asyncio
    """
    return POLICY()


@pytest.fixture(scope='function', autouse=True)
def around_all_tests():
    """
    Executes before and after EVERY test.

    Module level state is reset so tests never see each other.
    """
    yield

    linewatch.sheets.AGCM = None


@pytest.fixture
def f_settings():
    yield make_settings()


@pytest.fixture
def f_source():
    yield FakeSource()


@pytest.fixture
def f_sleep():
    """ Replaces asyncio.sleep, every delay is in call_args_list. """
    yield mock.AsyncMock()


@pytest.fixture
def f_client(f_source, f_settings, f_sleep):
    yield FetchClient(f_source, f_settings.fetch, sleep=f_sleep, rand=lambda: 0)


@pytest.fixture
def f_hub():
    yield RoomHub()


@pytest.fixture
def f_broadcaster(f_hub):
    yield Broadcaster(f_hub)


@pytest.fixture
def f_runtime(f_settings, f_source):
    yield linewatch.main.Runtime(f_settings, source=f_source, now=fake_now(INSIDE_WINDOW))
