"""
Simple module for global configuration of this project.
- Storage in memory of current config, file values merged over defaults.
- Allow easy dot notation and dictionary access to get parts of the config.
- Build the immutable Settings every component receives at startup.
"""
import asyncio
import copy
import pathlib
import types
import typing

import aiofiles
import pytz
import yaml
try:
    from yaml import CLoader as Loader
except ImportError:
    from yaml import Loader

import linewatch.exc

FACTORIES = ('TS1', 'TS2', 'TS3')
SLOT_BLOCKS = 'blocks'
# Environment prefix of each sheet family, i.e. CD_CRON_SCHEDULE
FAMILY_ENV = {
    'production': 'PRODUCTION',
    'team': 'HTM',
    'cd': 'CD',
    'qsl': 'QSL',
    'cd_product': 'CD_PRODUCT',
    'center_tv': 'HTM_CENTER_TV',
}
# This is the default values expected
CONFIG_DEFAULTS = {
    'constants': {
        'timezone': 'Asia/Ho_Chi_Minh',
    },
    'fetch': {
        'min_interval': 0.1,  # Seconds between two upstream requests
        'max_attempts': 3,
        'base_delay': 1.0,  # Seconds, doubled every attempt
        'jitter': 0.5,  # Seconds, upper bound of random jitter added
        'quota_cooldown': 60,  # Seconds degraded mode lasts after quota exhausted
        'timeout': 30,  # Seconds before a single read is abandoned
        'cache_ttl': 30,
    },
    'paths': {
        'log_conf': 'data/log.yml',
        'service_json': 'data/service_sheets.json',
    },
    'ports': {
        'sanic': 8000,
        'zmq': 9000,
        'zmq_trigger': 9001,
    },
    'server_factory': 'ALL',
    'sheets': {
        'default': '',
        'qsl': '',
    },
    'families': {
        'production': {
            'page': 'DATA BCSL HTM',
            'ranges': {'ALL': 'A1:CO50'},
            'cron': '*/2 8-20 * * 1-6',
            'active': SLOT_BLOCKS,
            'min_interval': 240,
            'cache_ttl': 30,
            'pacing': 0.5,
            'detect_deleted': True,
            'detail_page': 'ENDLINE_DAILY_DATA',
            'detail_before_page': 'ENDLINE_BEFORE_DATA',
            'detail_cutoff_hour': 8,
            'detail_ranges': {
                'TS1': 'A1:AJ12',
                'TS2': 'A14:AJ21',
                'TS3': 'A23:AJ33',
                'ALL': 'A1:AJ50',
            },
        },
        'team': {
            'page': 'DATA BCSL HTM',
            'ranges': {'ALL': 'A1:CO50'},
            'cron': '*/2 7-21 * * 1-6',
            'active': SLOT_BLOCKS,
            'min_interval': 90,
            'cache_ttl': 0,
            'pacing': 0.5,
            'detect_deleted': False,
            'detail_page': 'ENDLINE_DAILY_DATA',
            'detail_before_page': 'ENDLINE_BEFORE_DATA',
            'detail_cutoff_hour': 8,
            'detail_ranges': {
                'TS1': 'A1:AJ12',
                'TS2': 'A14:AJ21',
                'TS3': 'A23:AJ33',
                'ALL': 'A1:AJ50',
            },
        },
        'cd': {
            'page': 'DATA_CD',
            'ranges': {'ALL': 'A1:BF200'},
            'cron': '*/2 * * * 1-6',
            'active': SLOT_BLOCKS,
            'min_interval': 90,
            'cache_ttl': 15,
            'pacing': 0.5,
            'detect_deleted': True,
            'factory_codes': {
                'TS1': ['KVHB07CD16', 'KVHB07CD17', 'KVHB07CD18', 'KVHB07CD19'],
                'TS2': ['KVHB07CD20', 'KVHB07CD21', 'KVHB07CD22', 'KVHB07CD23'],
                'TS3': ['KVHB07CD24', 'KVHB07CD25', 'KVHB07CD26', 'KVHB07CD27'],
            },
            'row_counts': {
                'KVHB07CD16': 11,
                'KVHB07CD17': 11,
                'KVHB07CD24': 11,
                'KVHB07CD25': 11,
            },
            'default_row_count': 5,
            'grouping': {
                'TS1-CD16': [[1, 2]],
                'TS1-CD17': [[6, 8], [7, 9]],
                'TS3-CD25': [[7, 8], [10, 6]],
            },
        },
        'qsl': {
            'page': 'LINE{line}',
            'ranges': {'ALL': 'A1:T90'},
            'cron': '*/5 7-21 * * 1-6',
            'active': [7, 21],
            'min_interval': 60,
            'cache_ttl': 15,
            'pacing': 0.5,
            'detect_deleted': True,
            'lines': [1, 2, 3, 4],
        },
        'cd_product': {
            'page': '{code}',
            'ranges': {'ALL': 'A1:N1000'},
            'cron': '*/2 * * * 1-6',
            'active': [7, 21],
            'min_interval': 60,
            'cache_ttl': 15,
            'pacing': 0.5,
            'detect_deleted': True,
            'codes': ['CD1', 'CD2', 'CD3', 'CD4'],
        },
        'center_tv': {
            'page': 'DATA_QSL',
            'ranges': {'ALL': 'A1:AA38'},
            'cron': '*/2 7-21 * * 1-6',
            'active': SLOT_BLOCKS,
            'min_interval': 90,
            'cache_ttl': 0,
            'pacing': 0.5,
            'detect_deleted': True,
            'lines': [1, 2, 3, 4],
        },
    },
}


class Config():
    """
    Manage the global configuration for easy reading.
    Features:
        - Dot notation OR normal dictionary access.
        - Defaults stored within config and overwritten by file loaded if present in file.
        - Supports both sync and async read.
    """
    def __init__(self, fname, conf=None):
        self.fname = fname
        self.last_read = None
        self.lock = asyncio.Lock()
        if conf is not None:
            self.conf = conf
        elif pathlib.Path(self.fname).exists():
            self.read()
        else:
            self.conf = copy.deepcopy(CONFIG_DEFAULTS)

    def __repr__(self):
        keys = ['fname', 'last_read']
        kwargs = [f'{key}={getattr(self, key)!r}' for key in keys]

        return f'{self.__class__.__name__}({", ".join(kwargs)})'

    def __getattr__(self, key):
        """
        Allow dot object notation to look through the config.

        If the object found is an end point in the config, return it.
        If it is a dictionary, just return a config object wrapping it.
        If not found, return None.
        """
        found = None
        if self.conf and key in self.conf:
            if not isinstance(self.conf[key], dict):
                found = self.conf[key]
            else:
                found = Config(self.fname, self.conf[key])

        return found

    def __getitem__(self, key):
        """
        Allow access to the internal dictionary.
        """
        return self.conf[key]

    @property
    def unwrap(self):
        """
        To be used when the config isn't automatically unwrapped.
        It just returns the actual current config rather than the object.
        """
        return self.conf

    def read(self):
        """
        Load the config from the file.
        This will replace the existing configuration with ...

            The contents of CONFIG_DEFAULTS dictionary updated with the contents of the file load.
        """
        with open(self.fname, encoding='utf-8') as fin:
            self.conf = merge_defaults(yaml.load(fin, Loader=Loader))
        self.last_read = pathlib.Path(self.fname).stat().st_mtime

    async def aread(self):
        """
        Async version of read.
        """
        async with self.lock:
            async with aiofiles.open(self.fname, 'r', encoding='utf-8') as fin:
                text = await fin.read()
            self.conf = merge_defaults(yaml.load(text, Loader=Loader))
            self.last_read = pathlib.Path(self.fname).stat().st_mtime


def merge_defaults(loaded):
    """
    Merge a loaded configuration over a fresh copy of CONFIG_DEFAULTS.
    Nested dictionaries are merged key by key, everything else is replaced.

    Returns: The merged configuration dictionary.
    """
    def merge(base, over):
        for key, val in over.items():
            if isinstance(val, dict) and isinstance(base.get(key), dict):
                merge(base[key], val)
            else:
                base[key] = val
        return base

    conf = copy.deepcopy(CONFIG_DEFAULTS)
    if loaded:
        merge(conf, loaded)

    return conf


class FetchSettings(typing.NamedTuple):
    """ Throttle, retry and cache knobs of the fetch client. """
    min_interval: float
    max_attempts: int
    base_delay: float
    jitter: float
    quota_cooldown: float
    timeout: float
    cache_ttl: float


class FamilySettings(typing.NamedTuple):
    """ Everything a single sheet family needs to be scanned and scheduled. """
    name: str
    sheet_id: str
    page: str
    a1_range: str
    cron: str
    active: typing.Any
    min_interval: float
    cache_ttl: float
    pacing: float
    detect_deleted: bool
    options: typing.Mapping


class Settings(typing.NamedTuple):
    """ The validated immutable configuration of one process. """
    factory: str
    timezone: str
    service_json: str
    fetch: FetchSettings
    families: typing.Mapping
    ports: typing.Mapping

    @property
    def tzinfo(self):
        """ The pytz timezone all local times are computed in. """
        return pytz.timezone(self.timezone)

    def family(self, name):
        """
        Fetch the settings of a family by name.

        Raises:
            ConfigurationError: The family is not configured.
        """
        try:
            return self.families[name]
        except KeyError as exc:
            raise linewatch.exc.ConfigurationError(f'Unknown sheet family: {name}') from exc


def freeze(obj):
    """
    Recursively turn dicts into read only mappings and lists into tuples.
    """
    if isinstance(obj, dict):
        return types.MappingProxyType({key: freeze(val) for key, val in obj.items()})
    if isinstance(obj, list):
        return tuple(freeze(val) for val in obj)

    return obj


def validate_cron(name, cron):
    """
    Minimal structural check of a crontab expression.

    Raises:
        ConfigurationError: The expression does not have five fields.
    """
    if not isinstance(cron, str) or len(cron.split()) != 5:
        raise linewatch.exc.ConfigurationError(f'{name}: cron must have 5 fields, got {cron!r}')

    return cron.strip()


def validate_active(name, active):
    """
    The active window is either the checkpoint blocks or an [start, end) hour pair.

    Raises:
        ConfigurationError: Window is not understood.
    """
    if active == SLOT_BLOCKS:
        return active

    try:
        start, end = [int(x) for x in active]
    except (TypeError, ValueError) as exc:
        raise linewatch.exc.ConfigurationError(f'{name}: invalid active window {active!r}') from exc
    if not 0 <= start < end <= 24:
        raise linewatch.exc.ConfigurationError(f'{name}: invalid active hours {start}-{end}')

    return (start, end)


def pick_range(ranges, factory):
    """
    Select the range for the owning group, falling back to the shared ALL range.
    """
    return ranges.get(factory) or ranges.get('ALL')


def load_family(name, node, *, factory, sheets, environ):
    """
    Build the FamilySettings of one family from config node and environment.

    Raises:
        ConfigurationError: Any required value missing or invalid.
    """
    prefix = FAMILY_ENV[name]
    node = copy.deepcopy(node)

    sheet_id = sheets.get('default', '')
    if name == 'qsl' and sheets.get('qsl'):
        sheet_id = sheets['qsl']

    a1_range = environ.get(f'{prefix}_DATA_RANGE') or pick_range(node.get('ranges', {}), factory)
    cron = environ.get(f'{prefix}_CRON_SCHEDULE') or node.get('cron')
    if not node.get('page') or not a1_range:
        raise linewatch.exc.ConfigurationError(f'{name}: a page and range are required.')

    try:
        min_interval = float(node['min_interval'])
        pacing = float(node.get('pacing', 0.5))
        cache_ttl = float(node.get('cache_ttl', 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise linewatch.exc.ConfigurationError(f'{name}: invalid interval settings') from exc
    if min_interval <= 0 or pacing < 0 or cache_ttl < 0:
        raise linewatch.exc.ConfigurationError(f'{name}: intervals must be positive')

    options = {key: val for key, val in node.items()
               if key not in ('page', 'ranges', 'cron', 'active', 'min_interval',
                              'cache_ttl', 'pacing', 'detect_deleted')}
    if name in ('production', 'team'):
        options['detail_page'] = environ.get('ENDLINE_DAILY_SHEET') or options['detail_page']
        options['detail_before_page'] = environ.get('ENDLINE_BEFORE_SHEET') or options['detail_before_page']
        ranges = options.get('detail_ranges', {})
        options['detail_range'] = environ.get(f'ENDLINE_DAILY_{factory}_RANGE') or pick_range(ranges, factory)

    return FamilySettings(
        name=name,
        sheet_id=sheet_id,
        page=node['page'],
        a1_range=a1_range,
        cron=validate_cron(name, cron),
        active=validate_active(name, node.get('active', SLOT_BLOCKS)),
        min_interval=min_interval,
        cache_ttl=cache_ttl,
        pacing=pacing,
        detect_deleted=bool(node.get('detect_deleted', False)),
        options=freeze(options),
    )


def load_settings(conf, environ):
    """
    Build the immutable settings for this process.
    This is the only place where the environment is consulted.

    Args:
        conf: A Config object.
        environ: A mapping of environment variables, normally os.environ.

    Raises:
        ConfigurationError: Any setting invalid, fatal at startup.

    Returns: A Settings object.
    """
    factory = (environ.get('SERVER_FACTORY') or conf.server_factory or 'ALL').strip().upper()
    if factory not in FACTORIES + ('ALL',):
        raise linewatch.exc.ConfigurationError(f'SERVER_FACTORY must be ALL or one of {FACTORIES}, got {factory}')

    timezone = conf.constants.timezone
    try:
        pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError as exc:
        raise linewatch.exc.ConfigurationError(f'Unknown timezone: {timezone}') from exc

    sheets = dict(conf.sheets.unwrap)
    sheets['default'] = environ.get('GOOGLE_SHEET_ID') or sheets.get('default', '')
    sheets['qsl'] = environ.get('QSL_SHEET_ID') or sheets.get('qsl', '')

    try:
        fetch = FetchSettings(**{key: float(val) for key, val in conf.fetch.unwrap.items()})
        fetch = fetch._replace(max_attempts=int(fetch.max_attempts))
    except (TypeError, ValueError) as exc:
        raise linewatch.exc.ConfigurationError(f'Invalid fetch settings: {exc}') from exc
    if fetch.max_attempts < 1 or fetch.min_interval < 0:
        raise linewatch.exc.ConfigurationError('Fetch needs at least one attempt and a non negative interval.')

    families = {}
    for name, node in conf.families.unwrap.items():
        if name not in FAMILY_ENV:
            raise linewatch.exc.ConfigurationError(f'Unknown sheet family in config: {name}')
        families[name] = load_family(name, node, factory=factory, sheets=sheets, environ=environ)

    return Settings(
        factory=factory,
        timezone=timezone,
        service_json=environ.get('GOOGLE_SERVICE_ACCOUNT_FILE') or conf.paths.service_json,
        fetch=fetch,
        families=types.MappingProxyType(families),
        ports=freeze(conf.ports.unwrap),
    )
