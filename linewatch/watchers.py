"""
Poll cycle orchestration of the sheet families.

A watcher owns the snapshot store of one family. A cycle visits the units of
its scanner in order, one at a time, with a pacing delay between two units:
fetch, normalize, diff and publish the changes of a unit before moving to the
next one. A failing unit is logged and skipped. The cycle always ends with a
summary on the system room.
"""
import asyncio
import logging
import time

import linewatch.exc
import linewatch.util
from linewatch.snapshot import (CHANGE_DELETED, CHANGE_NEW, CHANGE_UPDATED, SnapshotStore)

SUMMARY_EVENTS = {
    'production': 'data-refresh',
    'team': 'htm-sheets-refresh',
    'cd': 'cd-data-refresh',
    'qsl': 'qsl-refresh',
    'cd_product': 'cd-product-refresh',
    'center_tv': 'center-tv-refresh',
}
# Parser failures of a single unit, they never abort a cycle
UNIT_ERRORS = (KeyError, IndexError, TypeError, ValueError)


class Watcher():
    """
    Detect and broadcast the changes of one sheet family.

    Args:
        scanner: The scanner of the family.
        broadcaster: The Broadcaster changes are published with.
        store: The SnapshotStore, a new one by default.
        sleep: Coroutine function used for pacing.
        clock: Monotonic clock in seconds.
    """
    def __init__(self, scanner, broadcaster, *, store=None, sleep=asyncio.sleep, clock=time.monotonic):
        self.scanner = scanner
        self.broadcaster = broadcaster
        self.store = store if store is not None else SnapshotStore(scanner.name)
        self.sleep = sleep
        self.clock = clock
        self.lock = asyncio.Lock()
        self.cycles = 0
        self.last_check = None
        self.last_summary = None

    def __repr__(self):
        keys = ['name', 'cycles', 'last_check', 'store']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    @property
    def name(self):
        """ The family name. """
        return self.scanner.name

    @property
    def family(self):
        """ The FamilySettings. """
        return self.scanner.family

    @property
    def summary_event(self):
        """ Name of the summary event of this family. """
        return SUMMARY_EVENTS.get(self.name, f'{self.name}-refresh')

    @property
    def detect_deleted(self):
        """ Only full enumerations may detect deleted entities. """
        return self.family.detect_deleted

    def units(self):
        """ The units visited in one cycle. """
        return self.scanner.units()

    async def scan_unit(self, unit, *, bypass_cache=False):
        """
        Fetch and normalize one unit, never raising.

        Returns: A list of EntityRecords, None when the unit failed or had no data.
        """
        try:
            return await self.scanner.scan(unit, bypass_cache=bypass_cache)
        except linewatch.exc.LineWatchException as exc:
            exc.write_log(logging.getLogger(__name__), context={'family': self.name, 'unit': unit})
        except UNIT_ERRORS:
            logging.getLogger(__name__).exception("WATCHER %s: unit %s failed, skipping.", self.name, unit)

        return None

    async def publish_all(self, events):
        """ Publish events in order. """
        for event in events:
            await self.broadcaster.publish(event)

    async def check_cycle(self, *, bypass_cache=False):
        """
        Run one full poll cycle. Cycles of one watcher never overlap.

        Returns: The summary dict published.
        """
        async with self.lock:
            return await self.run_cycle(bypass_cache=bypass_cache)

    async def run_cycle(self, *, bypass_cache=False):
        """
        The body of check_cycle, must be called with the lock held.
        """
        log = logging.getLogger(__name__)
        start = self.clock()
        units = self.units()
        events, seen, failed = [], set(), []

        for ind, unit in enumerate(units):
            records = await self.scan_unit(unit, bypass_cache=bypass_cache)
            if records is None:
                failed += [unit]
            else:
                seen.update(record.key for record in records)
                unit_events = self.store.diff_cycle(records)
                await self.publish_all(unit_events)
                events += unit_events

            if ind + 1 < len(units) and self.family.pacing > 0:
                await self.sleep(self.family.pacing)

        if self.detect_deleted:
            if failed:
                log.warning("WATCHER %s: %d units without data, deletion detection skipped.",
                            self.name, len(failed))
            else:
                deleted = self.store.prune(seen)
                await self.publish_all(deleted)
                events += deleted

        summary = self.summarize(events, units, failed, self.clock() - start)
        self.cycles += 1
        self.last_check = summary['timestamp']
        self.last_summary = summary
        await self.broadcaster.publish_summary(self.summary_event, summary)

        return summary

    def summarize(self, events, units, failed, duration):
        """ The cycle summary published on the system room. """
        counts = {change: 0 for change in (CHANGE_NEW, CHANGE_UPDATED, CHANGE_DELETED)}
        for event in events:
            counts[event.change_type] += 1

        return {
            'family': self.name,
            'changes': len(events),
            **counts,
            'changedKeys': [event.key for event in events],
            'units': len(units),
            'failedUnits': [str(unit) for unit in failed],
            'tracked': len(self.store),
            'duration': round(duration, 3),
            'timestamp': linewatch.util.utc_timestamp(),
        }

    async def refresh(self, unit=None, *, bypass_cache=True):
        """
        The on demand read path: read a unit now, diff and publish what changed.

        Returns: The records of the unit, None when no data.
        """
        async with self.lock:
            records = await self.scan_unit(unit, bypass_cache=bypass_cache)
            if records:
                await self.publish_all(self.store.diff_cycle(records))

        return records

    def stats(self):
        """ Summary for the stats endpoint. """
        return {
            'family': self.name,
            'tracked': len(self.store),
            'cycles': self.cycles,
            'lastCheck': self.last_check,
            'lastChanges': self.last_summary['changes'] if self.last_summary else None,
            'running': self.lock.locked(),
        }


class TeamWatcher(Watcher):
    """
    Teams are only watched once somebody subscribed to them.
    The tracked set is a subset, deletion is never detected.
    """
    def __init__(self, scanner, broadcaster, **kwargs):
        super().__init__(scanner, broadcaster, **kwargs)
        self.tracked = {}

    @property
    def detect_deleted(self):
        return False

    def units(self):
        return sorted(self.tracked)

    def track(self, code, index):
        """
        Start watching a team.

        Returns: The (code, index) unit.
        """
        unit = (code.upper(), int(index))
        self.tracked[unit] = self.tracked.get(unit, 0) + 1
        if self.tracked[unit] == 1:
            logging.getLogger(__name__).info("WATCHER %s: now tracking %s_%d", self.name, *unit)

        return unit

    def untrack(self, code, index):
        """
        Stop watching a team once its last subscriber left. The snapshot is forgotten.

        Returns: True when the team is no longer tracked.
        """
        unit = (code.upper(), int(index))
        count = self.tracked.get(unit, 0) - 1
        if count > 0:
            self.tracked[unit] = count
            return False

        self.tracked.pop(unit, None)
        self.store.remove(f'{unit[0]}_{unit[1]}')
        logging.getLogger(__name__).info("WATCHER %s: stopped tracking %s_%d", self.name, *unit)
        return True

    def stats(self):
        stats = super().stats()
        stats['teams'] = [f'{code}_{index}' for code, index in self.units()]

        return stats


def init_watchers(scanners, broadcaster):
    """
    Build one watcher per scanner.

    Returns: A dict family name -> Watcher.
    """
    watchers = {}
    for name, scanner in scanners.items():
        cls = TeamWatcher if name == 'team' else Watcher
        watchers[name] = cls(scanner, broadcaster)

    return watchers
