"""
Room based fan out of change events to subscribed clients.

Rooms:
    entity:<key>             - clients following one entity
    group:<group>:all:all    - dashboards following a whole factory
    <family room>            - the sheet family room carried by the record
    system                   - cycle summaries

Every message is JSON: {"event": ..., "room": ..., "data": ..., "timestamp": ...}
"""
import asyncio
import atexit
import functools
import json
import logging
import time

import aiozmq
import aiozmq.rpc

import linewatch.util
from linewatch.records import (KIND_CD, KIND_CD_PRODUCT, KIND_CENTER_TV, KIND_PRODUCTION,
                               KIND_QSL, KIND_TEAM)

ROOM_SYSTEM = 'system'
CHANNEL = 'changes'
UPDATE_EVENTS = {
    KIND_PRODUCTION: 'production-update',
    KIND_TEAM: 'production-update',
    KIND_CD: 'cd-update',
    KIND_QSL: 'qsl-update',
    KIND_CD_PRODUCT: 'cd-product-update',
    KIND_CENTER_TV: 'center-tv-update',
}


def entity_room(key):
    """ Room of a single entity. """
    return f'entity:{key}'


def group_room(group):
    """ Room of every entity of an owning group. """
    return f'group:{group}:all:all'


def event_rooms(event):
    """
    Every room a change event is published to, without duplicates.
    """
    rooms = [entity_room(event.key), group_room(event.group)]
    if event.record is not None and event.record.room:
        rooms += [event.record.room]

    return list(dict.fromkeys(rooms))


def format_message(name, room, data, timestamp=None):
    """ The JSON text sent to a client. """
    return json.dumps({
        'event': name,
        'room': room,
        'data': data,
        'timestamp': timestamp or linewatch.util.utc_timestamp(),
    }, ensure_ascii=False)


class RoomHub():
    """
    In memory publish/subscribe between rooms and connected clients.

    A client is any id paired with an async send(text) function.
    """
    def __init__(self):
        self.rooms = {}
        self.clients = {}
        self.counts = {'published': 0, 'delivered': 0, 'unheard': 0, 'dropped': 0}

    def __repr__(self):
        keys = ['rooms', 'counts']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    def subscribe(self, client_id, room, send):
        """
        Add a client to a room, subscribing twice is harmless.

        Returns: The number of clients in the room.
        """
        self.rooms.setdefault(room, {})[client_id] = send
        self.clients.setdefault(client_id, set()).add(room)
        logging.getLogger(__name__).debug("HUB %s joined %s", client_id, room)

        return len(self.rooms[room])

    def unsubscribe(self, client_id, room):
        """
        Remove a client from a room. Empty rooms are forgotten.

        Returns: True if the client was in the room.
        """
        members = self.rooms.get(room, {})
        if client_id not in members:
            return False

        del members[client_id]
        if not members:
            del self.rooms[room]
        rooms = self.clients.get(client_id, set())
        rooms.discard(room)
        if not rooms:
            self.clients.pop(client_id, None)

        return True

    def unsubscribe_all(self, client_id):
        """
        Remove a client from every room, used on disconnect.

        Returns: The rooms the client was in.
        """
        rooms = sorted(self.clients.get(client_id, set()))
        for room in rooms:
            self.unsubscribe(client_id, room)

        return rooms

    def room_size(self, room):
        """ Number of clients in a room. """
        return len(self.rooms.get(room, {}))

    def client_rooms(self, client_id):
        """ The rooms a client is in. """
        return sorted(self.clients.get(client_id, set()))

    async def publish(self, room, name, data, *, timestamp=None):
        """
        Send an event to every client of a room.
        A room nobody listens to is not an error, it is logged.
        A client whose send fails is dropped from every room.

        Returns: The number of clients the event was delivered to.
        """
        log = logging.getLogger(__name__)
        self.counts['published'] += 1
        members = list(self.rooms.get(room, {}).items())
        if not members:
            self.counts['unheard'] += 1
            log.info("HUB %s to %s: no subscribers, nobody received it.", name, room)
            return 0

        text = format_message(name, room, data, timestamp)
        results = await asyncio.gather(*[send(text) for _, send in members], return_exceptions=True)

        delivered = 0
        for (client_id, _), result in zip(members, results):
            if isinstance(result, Exception):
                log.warning("HUB send to %s failed (%s), dropping client.", client_id, result)
                self.unsubscribe_all(client_id)
                self.counts['dropped'] += 1
            else:
                delivered += 1
        self.counts['delivered'] += delivered
        log.debug("HUB %s to %s: %d/%d clients", name, room, delivered, len(members))

        return delivered

    def stats(self):
        """ Room occupancy and counters. """
        return {
            'clients': len(self.clients),
            'rooms': {room: len(members) for room, members in sorted(self.rooms.items())},
            **self.counts,
        }


class ZmqRelay():
    """
    Republish every broadcast on a zmq PUB socket for sibling tools.

    Subscribers serve an aiozmq.rpc.AttrHandler with a method:
        change(name, rooms, data, timestamp)
    """
    def __init__(self, addr):
        self.addr = addr
        self.pub = None

    def __repr__(self):
        return f'{self.__class__.__name__}(addr={self.addr!r}, pub={self.pub!r})'

    async def connect(self):  # pragma: no cover
        """ Bind the publisher. """
        self.pub = await aiozmq.rpc.connect_pubsub(bind=self.addr)
        atexit.register(functools.partial(relay_close, self.pub))
        logging.getLogger(__name__).info("RELAY zmq pub/sub binding on: %s", self.addr)

    async def relay(self, name, rooms, data, timestamp):  # pragma: no cover
        """ Publish one event, silently skipped until connected. """
        if self.pub:
            await self.pub.publish(CHANNEL).change(name, rooms, data, timestamp)


def relay_close(pub):  # pragma: no cover
    """ Simple atexit hook. """
    pub.close()
    time.sleep(0.5)


class Broadcaster():
    """
    Maps change events onto rooms and publishes them.

    Args:
        hub: The RoomHub of local clients.
        relay: Optional ZmqRelay every event is also sent through.
    """
    def __init__(self, hub, *, relay=None):
        self.hub = hub
        self.relay = relay

    def __repr__(self):
        return f'{self.__class__.__name__}(hub={self.hub!r}, relay={self.relay!r})'

    async def publish(self, event):
        """
        Publish a change event to the entity room, the group room and the family room.

        Returns: A dict room -> clients delivered to.
        """
        name = UPDATE_EVENTS.get(event.record.kind, 'entity-update') if event.record else 'entity-update'
        data = event.to_dict()
        rooms = event_rooms(event)
        delivered = {}
        for room in rooms:
            delivered[room] = await self.hub.publish(room, name, data, timestamp=event.timestamp)
        if self.relay:
            await self.relay.relay(name, rooms, data, event.timestamp)

        return delivered

    async def publish_summary(self, name, summary):
        """
        Publish the summary of a cycle to the system room.

        Args:
            name: The summary event name of the family, i.e. data-refresh.
            summary: A JSON serializable dict.

        Returns: The number of clients delivered to.
        """
        timestamp = summary.get('timestamp') or linewatch.util.utc_timestamp()
        logging.getLogger(__name__).info("BROADCAST %s: %s", name, summary)
        delivered = await self.hub.publish(ROOM_SYSTEM, name, summary, timestamp=timestamp)
        if self.relay:
            await self.relay.relay(name, [ROOM_SYSTEM], summary, timestamp)

        return delivered

    async def send_direct(self, client_id, name, room, data):
        """
        Send a message to a single client of a room, i.e. the current record on subscribe.

        Returns: True if the client was found in the room.
        """
        send = self.hub.rooms.get(room, {}).get(client_id)
        if send is None:
            return False

        await send(format_message(name, room, data))
        return True
