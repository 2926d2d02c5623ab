"""
Time gated scheduling of the poll cycles.

  - One cron trigger per sheet family, crontab syntax from the configuration so
    sibling processes can be given different phases.
  - Every trigger passes two gates before a cycle runs: the active window in
    local time and the minimum spacing since the previous cycle start.
  - A remote trigger over zmq pub/sub and the HTTP surface run manual cycles.
"""
import asyncio
import atexit
import logging
import time

import aiozmq
import aiozmq.rpc
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import linewatch.exc
import linewatch.util
from linewatch.cells import in_slot_block
from linewatch.config import SLOT_BLOCKS

CHANNEL = 'triggers'
# Crontab numbering, 0 and 7 are both sunday
DOW_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')
MISFIRE_GRACE = 30


def cron_day_of_week(field):
    """
    Translate a crontab day of week field to APScheduler names.
    APScheduler counts monday as 0, crontab counts sunday as 0.

    Raises:
        ConfigurationError: A number out of 0-7 or a malformed part.

    Returns: The field using day names, i.e. '1-6' -> 'mon,tue,wed,thu,fri,sat'
    """
    if field == '*':
        return field
    if any(char.isalpha() for char in field):
        return field.lower()

    days = []
    for part in field.split(','):
        rng, _, step = part.partition('/')
        try:
            step = int(step) if step else 1
            if rng == '*':
                low, high = 0, 6
            elif '-' in rng:
                low, high = [int(x) for x in rng.split('-')]
            else:
                low = high = int(rng)
        except ValueError as exc:
            raise linewatch.exc.ConfigurationError(f'Invalid day of week: {field}') from exc

        if step < 1 or not 0 <= low <= high <= 7:
            raise linewatch.exc.ConfigurationError(f'Invalid day of week range: {part}')
        days += [DOW_NAMES[day] for day in range(low, high + 1, step)]

    return ','.join(dict.fromkeys(days))


def cron_trigger(cron, tzinfo):
    """
    Build an APScheduler trigger from a 5 field crontab expression.
    """
    minute, hour, day, month, dow = cron.split()
    return CronTrigger(minute=minute, hour=hour, day=day, month=month,
                       day_of_week=cron_day_of_week(dow), timezone=tzinfo)


def in_active_window(active, now):
    """
    True when the local time now is in the active window.

    Args:
        active: SLOT_BLOCKS or a (start_hour, end_hour) pair, end excluded.
        now: A datetime in local time.
    """
    if active == SLOT_BLOCKS:
        return in_slot_block(now.hour, now.minute)

    start, end = active
    return start <= now.hour < end


class Scheduler(aiozmq.rpc.AttrHandler):
    """
    Trigger the watchers of every family on their cron, behind the gates.

    Args:
        settings: The linewatch.config.Settings.
        now: Callable returning the current local time.
        clock: Monotonic clock in seconds used for the spacing floor.
    """
    def __init__(self, settings, *, now=None, clock=time.monotonic):
        self.settings = settings
        self.now = now if now else lambda: linewatch.util.local_now(settings.tzinfo)
        self.clock = clock
        self.sub = None
        self.count = -1
        self.wrap_map = {}
        self.aps = None
        self.pending = set()

    def __repr__(self):
        keys = ['count', 'sub', 'wrap_map']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    def __str__(self):
        msg = "### Schedule ###\n"
        for wrap in self.wrap_map.values():
            msg += "\n\t{!r}".format(wrap)

        return msg

    def register(self, watcher):
        """
        Register a watcher to be triggered on the cron of its family.
        """
        self.wrap_map[watcher.name] = WrapWatcher(watcher)

    def get_wrap(self, name):
        """
        Raises:
            InvalidRequest: No watcher registered under name.
        """
        try:
            return self.wrap_map[name]
        except KeyError as exc:
            possible = ', '.join(sorted(self.wrap_map))
            raise linewatch.exc.InvalidRequest(f"Unknown family: {name}. Select from: {possible}") from exc

    def gate(self, wrap):
        """
        Check both gates for a watcher.

        Returns: None when a cycle may run, else the reason it may not.
        """
        family = wrap.watcher.family
        now = self.now()
        if not in_active_window(family.active, now):
            return f'outside active window at {now:%H:%M}'

        if wrap.last_start is not None:
            elapsed = self.clock() - wrap.last_start
            if elapsed < family.min_interval:
                return f'only {elapsed:.0f}s since last cycle, floor is {family.min_interval:.0f}s'

        return None

    async def tick(self, name):
        """
        A trigger fired for the family name, run a cycle if the gates allow.

        Returns: The cycle summary, None when skipped.
        """
        log = logging.getLogger(__name__)
        wrap = self.get_wrap(name)
        reason = self.gate(wrap)
        if reason:
            wrap.skipped += 1
            log.info("SCHEDULER %s skipped: %s", name, reason)
            return None

        wrap.last_start = self.clock()
        log.info("SCHEDULER %s starting cycle", name)
        return await wrap.watcher.check_cycle()

    async def manual_check(self, name):
        """
        Run a cycle now regardless of the gates, bypassing the read cache.
        The spacing floor restarts from this cycle.

        Returns: The cycle summary.
        """
        wrap = self.get_wrap(name)
        wrap.last_start = self.clock()
        logging.getLogger(__name__).info("SCHEDULER %s manual cycle", name)

        return await wrap.watcher.check_cycle(bypass_cache=True)

    def start(self):
        """
        Add one cron job per registered watcher and start the scheduler.
        Must be called with the event loop running.
        """
        self.aps = AsyncIOScheduler(timezone=self.settings.tzinfo)
        for name, wrap in self.wrap_map.items():
            cron = wrap.watcher.family.cron
            wrap.job = self.aps.add_job(
                self.tick,
                trigger=cron_trigger(cron, self.settings.tzinfo),
                args=[name],
                id=name,
                name=f'{name} poll cycle',
                replace_existing=True,
                misfire_grace_time=MISFIRE_GRACE,
                coalesce=True,
                max_instances=1,
            )
            logging.getLogger(__name__).info("SCHEDULER %s on '%s'", name, cron)
        self.aps.start()

    def shutdown(self):
        """ Stop triggering. """
        if self.aps and self.aps.running:
            self.aps.shutdown(wait=False)

    def stats(self):
        """ Summary of the triggers for the stats endpoint. """
        return {name: wrap.stats() for name, wrap in self.wrap_map.items()}

    @aiozmq.rpc.method
    def trigger(self, family, timestamp):
        """
        Remote function to be executed. Starts a manual cycle for the family.

        Returns: The pending cycle task, None for an unknown family.
        """
        self.count = (self.count + 1) % 1000
        log = logging.getLogger(__name__)
        log.info('TRIGGER %d received: %s %s', self.count, family, timestamp)
        try:
            self.get_wrap(family)
        except linewatch.exc.InvalidRequest as exc:
            exc.write_log(log, context={'family': family, 'timestamp': timestamp})
            return None

        task = asyncio.ensure_future(self.manual_check(family))
        self.pending.add(task)
        task.add_done_callback(self.trigger_done)

        return task

    def trigger_done(self, task):
        """ Collect a finished remote cycle and log any failure. """
        self.pending.discard(task)
        if task.cancelled():
            return

        exc = task.exception()
        if isinstance(exc, linewatch.exc.LineWatchException):
            exc.write_log(logging.getLogger(__name__), context={'trigger': self.count})
        elif exc:
            logging.getLogger(__name__).error("TRIGGER cycle failed", exc_info=exc)

    def close(self):  # pragma: no cover
        """ Properly close pubsub connection on termination. """
        if self.sub:
            self.sub.close()
            time.sleep(0.5)

    async def connect_sub(self):  # pragma: no cover
        """ Bind the zmq subscriber for remote triggers. """
        addr = 'tcp://127.0.0.1:{}'.format(self.settings.ports['zmq_trigger'])
        self.sub = await aiozmq.rpc.serve_pubsub(self, subscribe=CHANNEL,
                                                 bind=addr, log_exceptions=True)
        atexit.register(self.close)
        logging.getLogger(__name__).info("Scheduler subscribed to: %s with tag '%s'", addr, CHANNEL)


class WrapWatcher():
    """
    Wrap a watcher with info about scheduling. Mainly a data class.
    """
    def __init__(self, watcher):
        self.watcher = watcher
        self.job = None
        self.last_start = None
        self.skipped = 0

    def __repr__(self):
        keys = ['name', 'job', 'last_start', 'skipped']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    @property
    def name(self):
        """ The family name. """
        return self.watcher.name

    def stats(self):
        """ Trigger state. """
        next_run = getattr(self.job, 'next_run_time', None)
        return {
            'cron': self.watcher.family.cron,
            'nextRun': next_run.isoformat() if next_run else None,
            'skipped': self.skipped,
        }
