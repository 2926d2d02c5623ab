"""
The HTTP and WebSocket surface of the displays.

Async web framework Sanic
    https://sanic.readthedocs.io/en/latest/

Every JSON response is an envelope:
    {"success": true, "data": ..., "timestamp": ...}
    {"success": false, "error": "...", "timestamp": ...}

Manual cycle with curl:
    curl -X POST http://localhost:8000/api/check/production

WebSocket messages on /ws:
    {"action": "subscribe", "room": "group:TS1:all:all"}
    {"action": "subscribe", "code": "KVHB07M01", "index": 0}
    {"action": "unsubscribe", "room": "entity:KVHB07M01"}

The route handlers only parse parameters, the work is done by the plain
functions below them which take the running Runtime.
"""
import functools
import json
import logging
import uuid

import sanic
import sanic.response

import linewatch.exc
import linewatch.util
from linewatch.broadcast import entity_room, format_message
from linewatch.config import FACTORIES
from linewatch.layouts import line_list

app = sanic.Sanic('linewatch')
RUNTIME = None


def envelope(data):
    """ The success envelope. """
    return {'success': True, 'data': data, 'timestamp': linewatch.util.utc_timestamp()}


def error_envelope(exc):
    """ The failure envelope. """
    return {'success': False, 'error': str(exc), 'timestamp': linewatch.util.utc_timestamp()}


def enveloped(handler):
    """
    Wrap a route so its result and expected failures are sent as envelopes.
    """
    @functools.wraps(handler)
    async def inner(request, *args, **kwargs):
        try:
            data = await handler(request, *args, **kwargs)
        except linewatch.exc.LineWatchException as exc:
            exc.write_log(logging.getLogger(__name__), context={'path': request.path, 'args': dict(request.args)})
            return sanic.response.json(error_envelope(exc), status=getattr(exc, 'status', 500))
        except Exception:
            logging.getLogger(__name__).exception("Unhandled failure of %s", request.path)
            return sanic.response.json(error_envelope('Internal server error.'), status=500)

        return sanic.response.json(envelope(data))

    return inner


def parse_factory(value, *, required=False):
    """
    Validate a factory query parameter.

    Raises:
        InvalidRequest: Unknown factory or missing when required.

    Returns: TS1, TS2, TS3 or None.
    """
    value = (value or '').strip().upper()
    if not value or value == 'ALL':
        if required:
            raise linewatch.exc.InvalidRequest(f'A factory is required, one of {", ".join(FACTORIES)}.')
        return None
    if value not in FACTORIES:
        raise linewatch.exc.InvalidRequest(f'Unknown factory {value}, one of {", ".join(FACTORIES)}.')

    return value


def parse_int(name, value, *, choices=None):
    """
    Validate an integer query parameter, None when absent.

    Raises:
        InvalidRequest: Not an integer or not in choices.
    """
    if value is None or str(value).strip() == '':
        return None
    try:
        value = int(value)
    except (TypeError, ValueError) as exc:
        raise linewatch.exc.InvalidRequest(f'{name} must be an integer, got {value!r}.') from exc
    if value < 0 or (choices and value not in choices):
        raise linewatch.exc.InvalidRequest(f'Invalid {name} {value}.')

    return value


def by_factory(records, factory):
    """ Keep records of factory, everything when None. """
    return [rec for rec in records if factory is None or rec.group == factory]


async def health(runtime):
    """ Process, task and upstream status. """
    return {
        'status': 'ok',
        'factory': runtime.settings.factory,
        'fetch': runtime.client.status(),
        'tasks': runtime.task_monitor.status(),
    }


async def lines(runtime, factory=None):
    """ The production lines for the line picker. """
    records = await runtime.watchers['production'].refresh(bypass_cache=False) or []
    return line_list(by_factory(records, factory))


async def display_production(runtime, code, *, factory=None, index=None):
    """
    The record of a production line, or the team view when index is given.
    Real time path, the cache is bypassed.

    Raises:
        InvalidRequest: No code given.
        EntityNotFound: No such line or team.
    """
    if not code:
        raise linewatch.exc.InvalidRequest('A line code is required.')
    code = code.strip().upper()

    if index is not None:
        team = runtime.watchers['team']
        if (code, index) not in team.tracked:
            record = await team.scanner.record_for_team(code, index, bypass_cache=True)
            return record.to_dict()

        records = await team.refresh((code, index))
        if not records:
            raise linewatch.exc.EntityNotFound(f'No team {index} for line {code}.')
        return records[0].to_dict()

    records = await runtime.watchers['production'].refresh() or []
    for record in by_factory(records, factory):
        if record.key == code:
            return record.to_dict()

    raise linewatch.exc.EntityNotFound(f'Line {code} not found.')


async def display_cd(runtime, *, factory=None):
    """ The CD records of a factory or all of them. """
    records = await runtime.watchers['cd'].refresh() or []
    return [rec.to_dict() for rec in by_factory(records, factory)]


async def display_qsl(runtime, line):
    """
    The QSL teams of a line.

    Raises:
        InvalidRequest: Line missing or not configured.
    """
    watcher = runtime.watchers['qsl']
    line = parse_int('line', line, choices=watcher.units())
    if line is None:
        raise linewatch.exc.InvalidRequest('A line is required.')

    records = await watcher.refresh(line) or []
    return [rec.to_dict() for rec in records]


async def display_cd_product(runtime, code):
    """
    The products of one CD product sheet.

    Raises:
        InvalidRequest: Code is not a configured sheet.
        EntityNotFound: The sheet holds no product.
    """
    watcher = runtime.watchers['cd_product']
    code = (code or '').strip().upper()
    if code not in watcher.units():
        raise linewatch.exc.InvalidRequest(f'Invalid code {code!r}, one of {", ".join(watcher.units())}.')

    records = await watcher.refresh(code)
    if not records:
        raise linewatch.exc.EntityNotFound(f'No product in sheet {code}.')

    return records[0].to_dict()


async def display_center_tv(runtime, factory, line=None):
    """
    The center TV groups of a factory, optionally of a single line.

    Raises:
        InvalidRequest: Factory missing or out of the process scope.
    """
    watcher = runtime.watchers['center_tv']
    factory = parse_factory(factory, required=True)
    if factory not in watcher.units():
        raise linewatch.exc.InvalidRequest(f'Factory {factory} is not served by this process.')
    line = parse_int('line', line)

    records = await watcher.refresh(factory) or []
    return [rec.to_dict() for rec in records if line is None or rec['line'] == line]


async def stats(runtime):
    """ Watchers, triggers and rooms. """
    return {
        'watchers': {name: watcher.stats() for name, watcher in runtime.watchers.items()},
        'triggers': runtime.scheduler.stats(),
        'rooms': runtime.hub.stats(),
    }


async def check(runtime, family):
    """ Run a manual cycle and return its summary. """
    return await runtime.scheduler.manual_check(family)


def subscription_room(message):
    """
    The room a subscribe or unsubscribe message refers to.

    Returns: (room, team) where team is a (code, index) pair or None.

    Raises:
        InvalidRequest: Neither room nor code given.
    """
    if message.get('room'):
        return str(message['room']), None

    code = str(message.get('code') or '').strip().upper()
    if not code:
        raise linewatch.exc.InvalidRequest('Subscribe needs a room or a code.')
    index = parse_int('index', message.get('index'))
    if index is None:
        return entity_room(code), None

    return entity_room(f'{code}_{index}'), (code, index)


async def handle_ws_message(runtime, client_id, send, text):
    """
    Process one message of a WebSocket client.

    Returns: The reply dict to send back.
    """
    try:
        message = json.loads(text)
        if not isinstance(message, dict):
            raise ValueError('not an object')
    except ValueError:
        return {'event': 'error', 'data': {'error': 'Messages must be JSON objects.'}}

    hub = runtime.hub
    action = message.get('action')
    try:
        room, team = subscription_room(message)
    except linewatch.exc.UserException as exc:
        return {'event': 'error', 'data': {'error': str(exc)}}

    if action == 'subscribe':
        already = room in hub.client_rooms(client_id)
        size = hub.subscribe(client_id, room, send)
        if team and not already:
            runtime.watchers['team'].track(*team)
            records = await runtime.watchers['team'].refresh(team)
            if records:
                await runtime.broadcaster.send_direct(client_id, 'production-immediate', room, records[0].to_dict())
        return {'event': 'subscription-confirmed', 'data': {'room': room, 'subscribers': size}}

    if action == 'unsubscribe':
        left = hub.unsubscribe(client_id, room)
        if left and team:
            runtime.watchers['team'].untrack(*team)
        return {'event': 'unsubscribed', 'data': {'room': room, 'wasSubscribed': left}}

    return {'event': 'error', 'data': {'error': f'Unknown action {action!r}.'}}


def disconnect(runtime, client_id):
    """
    Remove a client from every room, team rooms stop being tracked.

    Returns: The rooms the client was in.
    """
    rooms = runtime.hub.unsubscribe_all(client_id)
    for room in rooms:
        key = room[len('entity:'):] if room.startswith('entity:') else ''
        code, _, index = key.rpartition('_')
        if code and index.isdigit():
            runtime.watchers['team'].untrack(code, int(index))

    return rooms


@app.get('/api/health')
@enveloped
async def route_health(request):
    """ Health check. """
    return await health(RUNTIME)


@app.get('/api/lines')
@enveloped
async def route_lines(request):
    """ Production line list, ?factory= optional. """
    return await lines(RUNTIME, parse_factory(request.args.get('factory')))


@app.get('/api/display/production')
@enveloped
async def route_production(request):
    """ ?code= required, ?factory= and ?index= optional. """
    return await display_production(
        RUNTIME, request.args.get('code'),
        factory=parse_factory(request.args.get('factory')),
        index=parse_int('index', request.args.get('index')),
    )


@app.get('/api/display/cd')
@enveloped
async def route_cd(request):
    """ ?factory= optional. """
    return await display_cd(RUNTIME, factory=parse_factory(request.args.get('factory')))


@app.get('/api/display/qsl')
@enveloped
async def route_qsl(request):
    """ ?line= required. """
    return await display_qsl(RUNTIME, request.args.get('line'))


@app.get('/api/display/cd-product')
@enveloped
async def route_cd_product(request):
    """ ?code=cd1 to cd4. """
    return await display_cd_product(RUNTIME, request.args.get('code'))


@app.get('/api/display/center-tv')
@enveloped
async def route_center_tv(request):
    """ ?factory= required, ?line= optional. """
    return await display_center_tv(RUNTIME, request.args.get('factory'), request.args.get('line'))


@app.get('/api/stats')
@enveloped
async def route_stats(request):
    """ Stats of the pipeline. """
    return await stats(RUNTIME)


@app.post('/api/check/<family:str>')
@enveloped
async def route_check(request, family):
    """ Manual out of band cycle. """
    return await check(RUNTIME, family)


@app.websocket('/ws')
async def route_ws(request, ws):
    """ Room subscriptions of a display. """
    client_id = uuid.uuid4().hex
    log = logging.getLogger(__name__)
    log.info("WS %s connected from %s", client_id, request.ip)
    await ws.send(format_message('connection-established', None, {'clientId': client_id}))

    try:
        async for text in ws:
            reply = await handle_ws_message(RUNTIME, client_id, ws.send, text)
            await ws.send(format_message(reply['event'], reply['data'].get('room'), reply['data']))
    finally:
        rooms = disconnect(RUNTIME, client_id)
        log.info("WS %s disconnected, left %d rooms", client_id, len(rooms))


@app.listener('before_server_start')
async def startup(_, loop):  # pragma: no cover
    """ Start the pipeline inside the server loop. """
    await RUNTIME.start()


@app.listener('before_server_stop')
async def teardown(_, loop):  # pragma: no cover
    """ Stop the pipeline. """
    await RUNTIME.stop()


def run(runtime, *, debug=False):  # pragma: no cover
    """ Serve the runtime until interrupted. """
    global RUNTIME
    RUNTIME = runtime
    port = runtime.settings.ports['sanic']
    logging.getLogger(__name__).info("Sanic server listening on: %s", port)
    app.run(host='0.0.0.0', port=port, debug=debug, single_process=True)
