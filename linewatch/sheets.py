"""
Interface with the google sheets api.

Underlying API and model
    https://developers.google.com/sheets/api/quickstart/python
Gspread base library
    https://gspread.readthedocs.io/en/latest/
Asyncio wrapper library
    https://gspread-asyncio.readthedocs.io/en/latest/

Note on value_render_option to explain difference:
    https://developers.google.com/sheets/api/reference/rest/v4/ValueRenderOption

The FetchClient is the only way the rest of the project reads the upstream.
It owns the throttle, the retry policy, the degraded quota mode and the
read through cache. Exactly one request is in flight per client.
"""
import asyncio
import logging
import pathlib
import random
import time

import google.auth.exceptions
import gspread
import gspread_asyncio
import requests
from google.oauth2.service_account import Credentials

import linewatch.exc
import linewatch.util

APPLICATION_NAME = 'LineWatch'
# Only reads are ever issued
REQ_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets.readonly",
    "https://www.googleapis.com/auth/drive.readonly",
]
QUOTA_MARKERS = ('Quota exceeded', 'RESOURCE_EXHAUSTED', 'rateLimitExceeded')
QUOTA_STATUS = 429
TRANSIENT_STATUS = (500, 502, 503, 504)
AGCM = None


class ReadOnlyClientManager(gspread_asyncio.AsyncioGspreadClientManager):
    """
    The stock manager sleeps and retries forever on API errors.
    Here every error is raised back so the FetchClient applies its own policy.
    """
    async def handle_gspread_error(self, e, method, args, kwargs):
        raise e

    async def handle_requests_error(self, e, method, args, kwargs):
        raise e


def init_agcm(json_secret, *, gspread_delay=0.0):
    """
    Initialize the client manager for a service account.

    Args:
        json_secret: The *absolute* path to the secret json file for a service account.
        gspread_delay: Seconds the manager waits between calls, the FetchClient throttles already.
    """
    def get_creds():
        # To obtain a service account JSON file, follow these steps:
        # https://gspread.readthedocs.io/en/latest/oauth2.html#for-bots-using-service-account
        creds = Credentials.from_service_account_file(json_secret)
        return creds.with_scopes(REQ_SCOPES)

    return ReadOnlyClientManager(get_creds, gspread_delay=gspread_delay)


def api_error_status(exc):
    """ HTTP status of a gspread APIError across gspread versions, None if unknown. """
    status = getattr(exc, 'code', None)
    if status is None:
        status = getattr(getattr(exc, 'response', None), 'status_code', None)

    return status


def classify_error(exc, *, sheet_id, a1_range):
    """
    Map any failure of an upstream read onto the UpstreamError hierarchy.

    Returns: A TransientQuotaError, TransientUpstreamError or PermanentError.
    """
    kwargs = {'sheet_id': sheet_id, 'a1_range': a1_range}
    msg = f'{exc.__class__.__name__}: {exc}'

    if isinstance(exc, linewatch.exc.UpstreamError):
        return exc
    if isinstance(exc, gspread.exceptions.APIError):
        status = api_error_status(exc)
        if status == QUOTA_STATUS or any(marker in str(exc) for marker in QUOTA_MARKERS):
            return linewatch.exc.TransientQuotaError(msg, **kwargs)
        if status in TRANSIENT_STATUS:
            return linewatch.exc.TransientUpstreamError(msg, **kwargs)
    if isinstance(exc, (asyncio.TimeoutError, requests.ConnectionError, requests.Timeout)):
        return linewatch.exc.TransientUpstreamError(msg, **kwargs)

    return linewatch.exc.PermanentError(msg, **kwargs)


class GSheetSource():
    """
    Black box key-range reads against google sheets.

    Documents and worksheets are opened once and remembered.
    """
    def __init__(self, agcm):
        self.agcm = agcm
        self.documents = {}
        self.worksheets = {}

    def __repr__(self):
        keys = ['documents', 'worksheets']
        kwargs = ['{}={!r}'.format(key, list(getattr(self, key).keys())) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    async def worksheet(self, sheet_id, page):  # pragma: no cover
        """
        Fetch the worksheet page of a document, opening it on first use.
        """
        client = await self.agcm.authorize()
        if sheet_id not in self.documents:
            self.documents[sheet_id] = await client.open_by_key(sheet_id)
            logging.getLogger(__name__).info("GSHEET Opened document %s", sheet_id)

        key = (sheet_id, page)
        if key not in self.worksheets:
            self.worksheets[key] = await self.documents[sheet_id].worksheet(page)

        return self.worksheets[key]

    async def read(self, sheet_id, page, a1_range):  # pragma: no cover
        """
        Read a single range, numbers come back as numbers.

        Raises:
            UpstreamError: Any failure, already classified.

        Returns: A list of rows, trailing empty cells dropped by the upstream.
        """
        try:
            worksheet = await self.worksheet(sheet_id, page)
            values = await worksheet.batch_get([a1_range], value_render_option='UNFORMATTED_VALUE')
        except (gspread.exceptions.GSpreadException, requests.RequestException,
                google.auth.exceptions.GoogleAuthError, OSError) as exc:
            self.worksheets.pop((sheet_id, page), None)
            raise classify_error(exc, sheet_id=sheet_id, a1_range=f"'{page}'!{a1_range}") from exc

        return [list(row) for row in values[0]] if values else []


class TTLCache():
    """
    Short lived read through cache keyed by (sheet_id, page, range).
    Expired entries are kept as last known good until replaced.
    """
    def __init__(self, *, clock=time.monotonic):
        self.clock = clock
        self.entries = {}

    def __repr__(self):
        return f'{self.__class__.__name__}(entries={len(self.entries)})'

    def __len__(self):
        return len(self.entries)

    def get(self, key, ttl):
        """
        Returns: The cached grid if younger than ttl seconds, else None.
        """
        try:
            stamp, grid = self.entries[key]
        except KeyError:
            return None

        return grid if self.clock() - stamp < ttl else None

    def stale(self, key):
        """
        Returns: The cached grid regardless of age, None if never stored.
        """
        try:
            return self.entries[key][1]
        except KeyError:
            return None

    def put(self, key, grid):
        """ Store a grid stamped now. """
        self.entries[key] = (self.clock(), grid)

    def clear(self):
        """ Drop everything. """
        self.entries.clear()


class FetchClient():
    """
    Rate limited reads against the upstream.

    Args:
        source: An object with an async read(sheet_id, page, a1_range). None puts the client in null mode.
        settings: A linewatch.config.FetchSettings.
        clock: Monotonic clock in seconds.
        sleep: Coroutine function used for every wait.
        rand: Function returning a float in [0, 1) for the jitter.
    """
    def __init__(self, source, settings, *, clock=time.monotonic, sleep=asyncio.sleep, rand=random.random):
        self.source = source
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.rand = rand
        self.lock = asyncio.Lock()
        self.cache = TTLCache(clock=clock)
        self.last_request = None
        self.degraded_until = None
        self.counts = {'requests': 0, 'retries': 0, 'failures': 0, 'cache_hits': 0}

    def __repr__(self):
        keys = ['source', 'settings', 'last_request', 'degraded_until', 'counts']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    @property
    def null_mode(self):
        """ True when no upstream is configured, every read is empty. """
        return self.source is None

    @property
    def quota_exceeded(self):
        """
        True while degraded: the upstream recently reported its quota exhausted.
        """
        if self.degraded_until is None:
            return False

        if self.clock() >= self.degraded_until:
            self.degraded_until = None
            logging.getLogger(__name__).warning("FETCH Leaving degraded quota mode.")
            return False

        return True

    def enter_degraded(self):
        """ Start or extend the degraded quota window. """
        if self.degraded_until is None:
            logging.getLogger(__name__).error(
                "FETCH Quota exhausted, degraded mode for %.0f seconds.", self.settings.quota_cooldown)
        self.degraded_until = self.clock() + self.settings.quota_cooldown

    def backoff_delay(self, attempt):
        """
        Seconds to wait after the failed attempt, 0 based.
        """
        return 2 ** attempt * self.settings.base_delay + self.rand() * self.settings.jitter

    async def throttle(self):
        """
        Sleep until min_interval elapsed since the previous request then stamp this one.
        Must be called with the lock held.
        """
        if self.last_request is not None:
            wait = self.settings.min_interval - (self.clock() - self.last_request)
            if wait > 0:
                await self.sleep(wait)
        self.last_request = self.clock()

    async def fetch(self, sheet_id, page, a1_range):
        """
        Issue one throttled read with retries on transient failures.

        Raises:
            TransientUpstreamError: Retries exhausted, TransientQuotaError when it was the quota.
            PermanentError: The upstream refused the read.

        Returns: The grid as read.
        """
        log = logging.getLogger(__name__)
        max_attempts = self.settings.max_attempts

        async with self.lock:
            for attempt in range(max_attempts):
                await self.throttle()
                self.counts['requests'] += 1
                try:
                    return await asyncio.wait_for(self.source.read(sheet_id, page, a1_range),
                                                  timeout=self.settings.timeout)
                except linewatch.exc.TransientUpstreamError as exc:
                    if attempt + 1 == max_attempts:
                        raise
                    reason = str(exc)
                except asyncio.TimeoutError as exc:
                    if attempt + 1 == max_attempts:
                        raise linewatch.exc.TransientUpstreamError(
                            f'Read timed out after {self.settings.timeout}s',
                            sheet_id=sheet_id, a1_range=a1_range) from exc
                    reason = 'timeout'

                delay = self.backoff_delay(attempt)
                self.counts['retries'] += 1
                log.warning("FETCH %s '%s'!%s: %s, retrying in %.2fs (attempt %d/%d)",
                            sheet_id, page, a1_range, reason, delay, attempt + 1, max_attempts)
                await self.sleep(delay)

        return []

    async def read(self, sheet_id, page, a1_range, *, ttl=None, bypass_cache=False):
        """
        Read a range, never raising.

        An empty grid means no data: null mode, a failed read or an empty range.
        While degraded the last known good grid is served without any request.

        Args:
            sheet_id: The document key.
            page: The worksheet name.
            a1_range: The A1 range within the page.
            ttl: Seconds a cached grid is fresh, default from the settings.
            bypass_cache: When True, always read the upstream unless degraded.

        Returns: A list of rows.
        """
        log = logging.getLogger(__name__)
        if self.null_mode:
            log.warning("FETCH No upstream configured, '%s'!%s is empty.", page, a1_range)
            return []

        key = (sheet_id, page, a1_range)
        ttl = self.settings.cache_ttl if ttl is None else ttl
        if not bypass_cache and ttl > 0:
            grid = self.cache.get(key, ttl)
            if grid is not None:
                self.counts['cache_hits'] += 1
                return grid

        if self.quota_exceeded:
            stale = self.cache.stale(key)
            log.warning("FETCH Degraded, serving %s for '%s'!%s",
                        'stale cache' if stale is not None else 'no data', page, a1_range)
            return stale if stale is not None else []

        try:
            grid = await self.fetch(sheet_id, page, a1_range)
        except linewatch.exc.UpstreamError as exc:
            self.counts['failures'] += 1
            if isinstance(exc, linewatch.exc.TransientQuotaError):
                self.enter_degraded()
            exc.write_log(log, context={'sheet_id': sheet_id, 'page': page, 'range': a1_range})
            stale = self.cache.stale(key) if isinstance(exc, linewatch.exc.TransientUpstreamError) else None
            return stale if stale is not None else []

        grid = linewatch.util.pad_table_to_rectangle(grid)
        self.cache.put(key, grid)
        return grid

    def status(self):
        """ Summary for the health endpoint. """
        return {
            'nullMode': self.null_mode,
            'quotaExceeded': self.quota_exceeded,
            'cachedRanges': len(self.cache),
            **self.counts,
        }


def build_client(settings, *, source=None):
    """
    Build the FetchClient of the process.
    A missing or unreadable service account degrades to null mode.

    Args:
        settings: The linewatch.config.Settings.
        source: Use this source instead of google sheets.
    """
    log = logging.getLogger(__name__)
    global AGCM

    if source is None:
        json_secret = linewatch.util.rel_to_abs(settings.service_json) if settings.service_json else None
        if json_secret and pathlib.Path(json_secret).is_file():
            AGCM = init_agcm(json_secret)
            source = GSheetSource(AGCM)
        else:
            linewatch.exc.ConfigurationError(f'Service account file not found: {json_secret}', 'error').write_log(
                log, context={'mode': 'null, every read is empty'})

    return FetchClient(source, settings.fetch)
