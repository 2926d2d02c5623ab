"""
Utility functions
-----------------
    CONF - The global configuration object.
    rel_to_abs - Convert relative paths to rooted at project ones.
    init_logging - Project wide logging initialization.
    local_now - The current time in the timezone of the factories.
"""
import datetime
import logging
import logging.handlers
import logging.config
import os

import pytz
import yaml
try:
    from yaml import CLoader as Loader
except ImportError:
    from yaml import Loader

import linewatch.config
import linewatch.exc

LOG_MSG = """See main.log for general traces.
Rolling over existing file logs as listed below.
    module_name -> output_file
    =========================="""
TIME_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


class ReprMixin():
    """Mixin that generates my format repr for object storage."""
    def __repr__(self):
        """
        Simple repr generating the following format:
            ClassName(key1=value1,key2=value2,...)
        Store key names in ClassName._repr_keys
        """
        keys = self.__class__._repr_keys
        kwargs = [f'{key}={getattr(self, key)!r}' for key in keys]

        return f'{self.__class__.__name__}({", ".join(kwargs)})'


def rel_to_abs(*path_parts):
    """
    Convert an internally relative path to an absolute one.
    """
    return os.path.join(ROOT_DIR, *path_parts)


def init_logging():  # pragma: no cover
    """
    Initialize project wide logging. See config file for details and reference on module.

     - On every start the file logs are rolled over.
     - This must be the first invocation on startup to set up logging.
    """
    log_file = rel_to_abs(CONF.paths.log_conf)
    try:
        with open(log_file, encoding='utf-8') as fin:
            lconf = yaml.load(fin, Loader=Loader)
    except FileNotFoundError as exc:
        raise linewatch.exc.MissingConfigFile("Missing log.yml. Expected at: " + log_file) from exc

    for handler in lconf['handlers']:
        try:
            os.makedirs(os.path.dirname(lconf['handlers'][handler]['filename']))
        except (OSError, KeyError):
            pass

    logging.config.dictConfig(lconf)

    print(LOG_MSG)
    for name in lconf['loggers']:
        for handler in logging.getLogger(name).handlers:
            if isinstance(handler, logging.handlers.RotatingFileHandler):
                print(f'    {name} -> {handler.baseFilename}')
                handler.doRollover()


def local_now(timezone):
    """
    The current time in the given timezone.

    Args:
        timezone: A pytz timezone or the name of one.

    Returns: A timezone aware datetime.
    """
    if isinstance(timezone, str):
        timezone = pytz.timezone(timezone)

    return datetime.datetime.now(timezone)


def utc_timestamp():
    """
    The ISO timestamp attached to every event and HTTP envelope.
    """
    return datetime.datetime.now(datetime.timezone.utc).strftime(TIME_FMT)


def pad_table_to_rectangle(table, pad_value=''):
    """
    Take any table and ensure it is entirely rectangular.
    Any missing entries will be filled with pad_value.
    The upstream drops trailing empty cells of every row.

    Returns: The table passed in.
    """
    if not table:
        return table

    max_len = max(len(x) for x in table)
    for row in table:
        row += [pad_value for _ in range(max_len - len(row))]

    return table


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONF = linewatch.config.Config(rel_to_abs('data', 'config.yml'))
