"""
In memory snapshots of the last known state of every tracked entity.

The store is owned by one watcher and only touched from the event loop: the
scheduled cycle and the on demand read path both run there, every mutation
below is a plain synchronous dict write and cannot interleave with another.
"""
import collections
import logging
import time

import linewatch.util
from linewatch.fingerprint import fingerprint

CHANGE_NEW = 'new'
CHANGE_UPDATED = 'updated'
CHANGE_DELETED = 'deleted'
CHANGE_TYPES = (CHANGE_NEW, CHANGE_UPDATED, CHANGE_DELETED)


class SnapshotEntry(linewatch.util.ReprMixin):
    """
    The last observed record of an entity with its fingerprint.
    """
    _repr_keys = ['key', 'fingerprint', 'observed_at']

    def __init__(self, key, record, token, observed_at):
        self.key = key
        self.record = record
        self.fingerprint = token
        self.observed_at = observed_at


class ChangeEvent(linewatch.util.ReprMixin):
    """
    A change detected for one entity during a poll cycle. Never stored.
    """
    _repr_keys = ['key', 'group', 'change_type', 'timestamp']

    def __init__(self, key, group, change_type, record, timestamp=None):
        if change_type not in CHANGE_TYPES:
            raise ValueError(f'Unknown change type: {change_type}')
        self.key = key
        self.group = group
        self.change_type = change_type
        self.record = record
        self.timestamp = timestamp if timestamp else linewatch.util.utc_timestamp()

    def to_dict(self):
        """ Payload sent to subscribers. """
        return {
            'key': self.key,
            'group': self.group,
            'type': self.change_type,
            'data': self.record.to_dict() if self.record else None,
            'timestamp': self.timestamp,
        }


class SnapshotStore():
    """
    Holds key -> SnapshotEntry for one sheet family and classifies new records.

    Args:
        name: Name of the owner, used in logs.
        clock: Callable returning the current time in seconds.
    """
    def __init__(self, name, *, clock=time.time):
        self.name = name
        self.clock = clock
        self.entries = collections.OrderedDict()

    def __repr__(self):
        keys = ['name', 'entries']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    def __len__(self):
        return len(self.entries)

    def __contains__(self, key):
        return key in self.entries

    def keys(self):
        """ The tracked keys in first observed order. """
        return list(self.entries.keys())

    def records(self):
        """ The last known records in first observed order. """
        return [entry.record for entry in self.entries.values()]

    def get(self, key):
        """
        Returns: The SnapshotEntry of key or None if never observed.
        """
        return self.entries.get(key)

    def put(self, key, record, token=None):
        """
        Store a record unconditionally, replacing any previous entry.

        Args:
            key: The entity key.
            record: The EntityRecord.
            token: The fingerprint if already computed.

        Returns: The new SnapshotEntry.
        """
        if token is None:
            token = fingerprint(record)
        entry = SnapshotEntry(key, record, token, self.clock())
        self.entries[key] = entry

        return entry

    def remove(self, key):
        """
        Forget an entity.

        Returns: The removed SnapshotEntry or None.
        """
        return self.entries.pop(key, None)

    def clear(self):
        """ Forget everything. """
        self.entries.clear()

    def diff_record(self, record):
        """
        Compare a single record against its snapshot and store it if changed.

        Returns: A ChangeEvent or None when unchanged.
        """
        token = fingerprint(record)
        prior = self.entries.get(record.key)
        if prior is not None and prior.fingerprint == token:
            return None

        self.put(record.key, record, token)
        change = CHANGE_NEW if prior is None else CHANGE_UPDATED

        return ChangeEvent(record.key, record.group, change, record)

    def prune(self, present_keys):
        """
        Remove every tracked key absent from present_keys.
        Only valid when present_keys is the complete population of this store.

        Returns: A list of deleted ChangeEvents.
        """
        present_keys = set(present_keys)
        events = []
        for key in [key for key in self.entries if key not in present_keys]:
            entry = self.entries.pop(key)
            events += [ChangeEvent(key, entry.record.group, CHANGE_DELETED, entry.record)]

        return events

    def diff_cycle(self, records, *, detect_deleted=False):
        """
        Classify the records of one poll cycle against the snapshot.

        A failure on one record is logged and does not stop the others.

        Args:
            records: The EntityRecords observed this cycle.
            detect_deleted: When True, records is the complete population and
                            tracked keys absent from it are deleted.

        Returns: A list of ChangeEvents in record order, deletions last.
        """
        log = logging.getLogger(__name__)
        events, seen, failed = [], set(), False
        for record in records:
            if record.key in seen:
                log.warning("SNAPSHOT %s: duplicate key %s in cycle, ignored.", self.name, record.key)
                continue
            seen.add(record.key)

            try:
                event = self.diff_record(record)
            except (KeyError, TypeError, ValueError, AttributeError):
                log.exception("SNAPSHOT %s: failed to diff %s, skipping.", self.name, record.key)
                failed = True
                continue
            if event:
                events += [event]

        if detect_deleted:
            if failed:
                log.warning("SNAPSHOT %s: skipped deletion detection after a failure.", self.name)
            else:
                events += self.prune(seen)

        return events
