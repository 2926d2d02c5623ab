# pylint: disable=redefined-outer-name,missing-function-docstring,unused-argument
"""
Tests for web.app
"""
import json

import mock
import pytest

import linewatch.exc
import linewatch.main
import web.app
from tests.conftest import INSIDE_WINDOW, FakeClient, fake_now, make_settings
from tests.data import PRODUCT_GRID


def test_envelope():
    env = web.app.envelope({'key': 'CD1'})

    assert env['success']
    assert env['data'] == {'key': 'CD1'}
    assert env['timestamp'].endswith('Z')


def test_error_envelope():
    env = web.app.error_envelope(linewatch.exc.InvalidRequest('A line is required.'))

    assert not env['success']
    assert env['error'] == 'A line is required.'


@pytest.mark.asyncio
async def test_enveloped_success():
    async def handler(request):
        return {'lines': 2}

    resp = await web.app.enveloped(handler)(mock.Mock(path='/api/lines', args={}))

    assert resp.status == 200
    assert json.loads(resp.body)['data'] == {'lines': 2}


@pytest.mark.asyncio
async def test_enveloped_failure():
    async def handler(request):
        raise linewatch.exc.EntityNotFound('Line KVHB07M99 not found.')

    resp = await web.app.enveloped(handler)(mock.Mock(path='/api/display/production', args={}))

    assert resp.status == 404
    body = json.loads(resp.body)
    assert not body['success']
    assert body['error'] == 'Line KVHB07M99 not found.'


@pytest.mark.asyncio
async def test_enveloped_unexpected_failure(caplog):
    async def handler(request):
        raise KeyError('lkth')

    resp = await web.app.enveloped(handler)(mock.Mock(path='/api/display/cd', args={}))

    assert resp.status == 500
    body = json.loads(resp.body)
    assert not body['success']
    assert body['error'] == 'Internal server error.'
    assert body['timestamp'].endswith('Z')
    assert 'Unhandled failure of /api/display/cd' in caplog.text


@pytest.mark.parametrize("value, expect", [
    (None, None),
    ('', None),
    ('all', None),
    ('ts2', 'TS2'),
    (' TS1 ', 'TS1'),
])
def test_parse_factory(value, expect):
    assert web.app.parse_factory(value) == expect


def test_parse_factory_invalid():
    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.parse_factory('TS9')
    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.parse_factory('', required=True)


def test_parse_int():
    assert web.app.parse_int('index', None) is None
    assert web.app.parse_int('index', ' ') is None
    assert web.app.parse_int('index', '2') == 2
    assert web.app.parse_int('line', 3, choices=[1, 2, 3]) == 3

    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.parse_int('index', 'two')
    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.parse_int('index', '-1')
    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.parse_int('line', '5', choices=[1, 2])


@pytest.mark.asyncio
async def test_health(f_runtime):
    health = await web.app.health(f_runtime)

    assert health['status'] == 'ok'
    assert health['factory'] == 'ALL'
    assert not health['fetch']['nullMode']
    assert health['tasks'] == {}


@pytest.mark.asyncio
async def test_lines(f_runtime):
    lines = await web.app.lines(f_runtime)
    assert [line['code'] for line in lines] == ['KVHB07M01', 'KVHB07M02', 'KVHB07M18', 'KVHB07M25']

    lines = await web.app.lines(f_runtime, 'TS2')
    assert [line['code'] for line in lines] == ['KVHB07M18']


@pytest.mark.asyncio
async def test_display_production(f_runtime, f_source):
    data = await web.app.display_production(f_runtime, ' kvhb07m01 ')

    assert data['key'] == 'KVHB07M01'
    assert data['lkth'] == 100
    assert len(data['hourlyData']) == 11
    assert 'KVHB07M01' in f_runtime.watchers['production'].store


@pytest.mark.asyncio
async def test_display_production_team(f_runtime):
    data = await web.app.display_production(f_runtime, 'KVHB07M01', index=1)

    assert data['key'] == 'KVHB07M01_1'
    assert data['tenTo'] == 'TỔ 1B'


@pytest.mark.asyncio
async def test_display_production_team_untracked(f_runtime):
    team = f_runtime.watchers['team']

    data = await web.app.display_production(f_runtime, 'KVHB07M01', index=0)

    assert data['key'] == 'KVHB07M01_0'
    assert team.units() == []
    assert len(team.store) == 0
    assert team.stats()['tracked'] == 0


@pytest.mark.asyncio
async def test_display_production_team_tracked(f_runtime):
    team = f_runtime.watchers['team']
    team.track('KVHB07M01', 1)

    data = await web.app.display_production(f_runtime, 'KVHB07M01', index=1)

    assert data['tenTo'] == 'TỔ 1B'
    assert 'KVHB07M01_1' in team.store


@pytest.mark.asyncio
async def test_display_production_invalid(f_runtime):
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.display_production(f_runtime, '')
    with pytest.raises(linewatch.exc.EntityNotFound):
        await web.app.display_production(f_runtime, 'KVHB07M99')
    with pytest.raises(linewatch.exc.EntityNotFound):
        await web.app.display_production(f_runtime, 'KVHB07M01', factory='TS2')
    with pytest.raises(linewatch.exc.EntityNotFound):
        await web.app.display_production(f_runtime, 'KVHB07M01', index=5)


@pytest.mark.asyncio
async def test_display_cd(f_runtime):
    data = await web.app.display_cd(f_runtime, factory='TS2')

    assert [rec['key'] for rec in data] == ['KVHB07CD20']
    assert len(data[0]['children']) == 2


@pytest.mark.asyncio
async def test_display_qsl(f_runtime, f_source):
    data = await web.app.display_qsl(f_runtime, '1')

    assert [rec['key'] for rec in data] == ['LINE1:TỔ 1', 'LINE1:TỔ 2']
    assert f_source.pages() == ['LINE1']


@pytest.mark.parametrize("line", [None, 'one', '9'])
@pytest.mark.asyncio
async def test_display_qsl_invalid(f_runtime, line):
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.display_qsl(f_runtime, line)


@pytest.mark.asyncio
async def test_display_cd_product(f_runtime):
    data = await web.app.display_cd_product(f_runtime, 'cd1')

    assert data['key'] == 'CD1'
    assert data['totalProducts'] == 2


@pytest.mark.asyncio
async def test_display_cd_product_invalid(f_runtime, f_source):
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.display_cd_product(f_runtime, 'cd9')

    f_source.grids['CD2'] = PRODUCT_GRID[:1]
    with pytest.raises(linewatch.exc.EntityNotFound):
        await web.app.display_cd_product(f_runtime, 'CD2')


@pytest.mark.asyncio
async def test_display_center_tv(f_runtime):
    data = await web.app.display_center_tv(f_runtime, 'ts1')
    assert [rec['key'] for rec in data] == ['TS1_1', 'TS1_2']

    data = await web.app.display_center_tv(f_runtime, 'TS1', '2')
    assert [rec['key'] for rec in data] == ['TS1_2']


@pytest.mark.asyncio
async def test_display_center_tv_invalid(f_runtime, f_source):
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.display_center_tv(f_runtime, None)

    runtime = linewatch.main.Runtime(make_settings(dict(SERVER_FACTORY='TS1', GOOGLE_SHEET_ID='main_sheet')),
                                     source=f_source, now=fake_now(INSIDE_WINDOW))
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.display_center_tv(runtime, 'TS2')


@pytest.mark.asyncio
async def test_stats(f_runtime):
    stats = await web.app.stats(f_runtime)

    assert sorted(stats['watchers']) == sorted(stats['triggers'])
    assert stats['watchers']['cd']['tracked'] == 0
    assert stats['rooms']['clients'] == 0


@pytest.mark.asyncio
async def test_check(f_runtime):
    summary = await web.app.check(f_runtime, 'cd')

    assert summary['new'] == 3
    assert (await web.app.stats(f_runtime))['watchers']['cd']['tracked'] == 3
    with pytest.raises(linewatch.exc.InvalidRequest):
        await web.app.check(f_runtime, 'fort')


def test_subscription_room():
    assert web.app.subscription_room({'room': 'system'}) == ('system', None)
    assert web.app.subscription_room({'code': 'kvhb07m01'}) == ('entity:KVHB07M01', None)
    assert web.app.subscription_room({'code': 'KVHB07M01', 'index': '1'}) == \
        ('entity:KVHB07M01_1', ('KVHB07M01', 1))

    with pytest.raises(linewatch.exc.InvalidRequest):
        web.app.subscription_room({'action': 'subscribe'})


@pytest.mark.asyncio
async def test_handle_ws_message_subscribe(f_runtime):
    client = FakeClient()
    text = json.dumps({'action': 'subscribe', 'room': 'group:TS1:all:all'})

    reply = await web.app.handle_ws_message(f_runtime, 'c1', client.send, text)

    assert reply == {'event': 'subscription-confirmed', 'data': {'room': 'group:TS1:all:all', 'subscribers': 1}}
    assert f_runtime.hub.client_rooms('c1') == ['group:TS1:all:all']
    assert client.sent == []


@pytest.mark.asyncio
async def test_handle_ws_message_subscribe_team(f_runtime):
    client = FakeClient()
    text = json.dumps({'action': 'subscribe', 'code': 'KVHB07M01', 'index': 1})

    reply = await web.app.handle_ws_message(f_runtime, 'c1', client.send, text)

    assert reply['data']['room'] == 'entity:KVHB07M01_1'
    assert f_runtime.watchers['team'].units() == [('KVHB07M01', 1)]
    msg = json.loads(client.sent[-1])
    assert msg['event'] == 'production-immediate'
    assert msg['data']['tenTo'] == 'TỔ 1B'

    await web.app.handle_ws_message(f_runtime, 'c1', client.send, text)
    assert f_runtime.watchers['team'].tracked == {('KVHB07M01', 1): 1}


@pytest.mark.asyncio
async def test_handle_ws_message_unsubscribe_team(f_runtime):
    client = FakeClient()
    sub = json.dumps({'action': 'subscribe', 'code': 'KVHB07M01', 'index': 1})
    unsub = json.dumps({'action': 'unsubscribe', 'code': 'KVHB07M01', 'index': 1})
    await web.app.handle_ws_message(f_runtime, 'c1', client.send, sub)

    reply = await web.app.handle_ws_message(f_runtime, 'c1', client.send, unsub)

    assert reply == {'event': 'unsubscribed', 'data': {'room': 'entity:KVHB07M01_1', 'wasSubscribed': True}}
    assert f_runtime.watchers['team'].units() == []

    reply = await web.app.handle_ws_message(f_runtime, 'c1', client.send, unsub)
    assert not reply['data']['wasSubscribed']


@pytest.mark.parametrize("text, error", [
    ('not json', 'Messages must be JSON objects.'),
    ('[1, 2]', 'Messages must be JSON objects.'),
    ('{"action": "subscribe"}', 'Subscribe needs a room or a code.'),
    ('{"action": "join", "room": "system"}', "Unknown action 'join'."),
])
@pytest.mark.asyncio
async def test_handle_ws_message_errors(f_runtime, text, error):
    reply = await web.app.handle_ws_message(f_runtime, 'c1', FakeClient().send, text)

    assert reply == {'event': 'error', 'data': {'error': error}}


@pytest.mark.asyncio
async def test_disconnect(f_runtime):
    client = FakeClient()
    for msg in [{'room': 'system'}, {'code': 'KVHB07M18', 'index': 0}]:
        await web.app.handle_ws_message(f_runtime, 'c1', client.send, json.dumps(dict(msg, action='subscribe')))

    assert web.app.disconnect(f_runtime, 'c1') == ['entity:KVHB07M18_0', 'system']
    assert f_runtime.watchers['team'].units() == []
    assert f_runtime.hub.stats()['clients'] == 0


def test_disconnect_unknown(f_runtime):
    assert web.app.disconnect(f_runtime, 'nobody') == []
