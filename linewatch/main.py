"""
Entry point of a line watch process.

One process serves one owning group (SERVER_FACTORY) or all of them:
    SERVER_FACTORY=TS1 PRODUCTION_CRON_SCHEDULE='*/2 8-20 * * 1-6' python -m linewatch.main
"""
import asyncio
import datetime
import functools
import logging
import os
import sys
import tempfile

import aiofiles
import uvloop

import linewatch.config
import linewatch.exc
import linewatch.sheets
import linewatch.util
from linewatch.broadcast import Broadcaster, RoomHub, ZmqRelay
from linewatch.scanners import init_scanners
from linewatch.scheduler import Scheduler
from linewatch.task_monitor import TaskMonitor
from linewatch.watchers import init_watchers
import web.app

HEARTBEAT_DELAY = 30


class Runtime():
    """
    Every long lived object of the process, wired from the settings.

    Args:
        settings: The linewatch.config.Settings.
        source: Optional upstream source replacing google sheets.
        now: Optional local clock for the scheduler.
    """
    def __init__(self, settings, *, source=None, now=None):
        self.settings = settings
        self.client = linewatch.sheets.build_client(settings, source=source)
        self.hub = RoomHub()
        self.relay = ZmqRelay('tcp://127.0.0.1:{}'.format(settings.ports['zmq']))
        self.broadcaster = Broadcaster(self.hub, relay=self.relay)
        self.scanners = init_scanners(settings, self.client)
        self.watchers = init_watchers(self.scanners, self.broadcaster)
        self.scheduler = Scheduler(settings, now=now)
        self.task_monitor = TaskMonitor()
        for watcher in self.watchers.values():
            self.scheduler.register(watcher)

    def __repr__(self):
        keys = ['settings', 'client', 'scheduler']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    async def prime(self):
        """
        Run a first cycle of every full enumeration family so snapshots
        exist before the first scheduled trigger. Families run one after another.
        """
        for name, watcher in self.watchers.items():
            if watcher.units():
                summary = await watcher.check_cycle()
                logging.getLogger(__name__).info("PRIME %s tracked %d entities", name, summary['tracked'])

    async def start(self):  # pragma: no cover
        """ Connect the zmq sockets, start triggers and background tasks. """
        await self.relay.connect()
        await self.scheduler.connect_sub()
        self.scheduler.start()
        self.task_monitor.add_task(self.prime, name='prime', description='First cycle of every family')
        self.task_monitor.add_task(functools.partial(simple_heartbeat, self.settings.factory, HEARTBEAT_DELAY),
                                   name='heartbeat', description='Liveness file of the main loop')

    async def stop(self):  # pragma: no cover
        """ Stop triggers and background tasks. """
        self.scheduler.shutdown()
        await self.task_monitor.cancel_all()


async def simple_heartbeat(factory, delay=30):
    """ Simple heartbeat function to check liveness of main loop. """
    hfile = os.path.join(tempfile.gettempdir(), 'hbeat_linewatch_' + factory)
    while True:
        async with aiofiles.open(hfile, 'w') as fout:
            await fout.write('{} {}\n'.format(delay, datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)))
        await asyncio.sleep(delay)


def main():  # pragma: no cover
    """ Entry here! """
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    linewatch.util.init_logging()
    log = logging.getLogger(__name__)

    try:
        settings = linewatch.config.load_settings(linewatch.util.CONF, os.environ)
    except linewatch.exc.ConfigurationError as exc:
        exc.write_log(log, context={'config': linewatch.util.CONF.fname})
        sys.exit(1)

    log.info("Starting for factory %s with families %s", settings.factory, ', '.join(settings.families))
    web.app.run(Runtime(settings), debug=bool(os.environ.get('DEBUG')))


if __name__ == "__main__":  # pragma: no cover
    main()
