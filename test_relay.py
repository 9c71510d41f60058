"""Signaling relay over real WebSockets."""
import asyncio, json

import pytest
from websockets.protocol import State

from call_protocol import Error
from relay import SignalingRelay
from room_registry import Participant


async def recv(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def nothing(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def send(ws, **msg):
    await ws.send(json.dumps(msg))


async def join(ws, room, name):
    await send(ws, type='join', room=room, userName=name)
    return await recv(ws)


async def test_first_joiner_sees_empty_room(open_socket):
    a = await open_socket()
    joined = await join(a, 'r1', 'ann')
    assert joined == {'type': 'joined', 'room': 'r1', 'selfId': 'p-1', 'peers': []}


async def test_second_joiner_gets_peer_list_and_first_is_told(open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    joined = await join(b, 'r1', 'bob')
    assert joined['peers'] == [{'id': 'p-1', 'userName': 'ann'}]
    assert joined['selfId'] == 'p-2'
    assert await recv(a) == {'type': 'participantJoined',
                             'participant': {'id': 'p-2', 'userName': 'bob'}}


async def test_missing_name_gets_guest_default(open_socket):
    a, b = await open_socket(), await open_socket()
    await send(a, type='join', room='r1')
    await recv(a)
    joined = await join(b, 'r1', 'bob')
    assert joined['peers'][0]['userName'].startswith('Guest-')


async def test_chat_reaches_everyone_with_registered_sender(open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    await recv(a)  # participantJoined

    await send(b, type='chatMessage', room='r1',
               payload={'text': 'hello', 'timestamp': '2024-01-01T00:00:00Z', 'sender': 'mallory'},
               userName='mallory')
    for ws in (a, b):
        msg = await recv(ws)
        assert msg['type'] == 'chatMessage'
        assert msg['payload'] == {'text': 'hello', 'timestamp': '2024-01-01T00:00:00Z', 'sender': 'bob'}


async def test_negotiation_forwarded_verbatim_to_the_other_side(open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    await recv(a)

    offer = {'type': 'offer', 'sdp': 'v=0\r\nanything goes\r\n'}
    await send(b, type='offer', room='r1', payload=offer)
    assert await recv(a) == {'type': 'offer', 'room': 'r1', 'payload': offer,
                             'senderName': 'bob', 'senderId': 'p-2'}
    await nothing(b)

    candidate = {'candidate': 'candidate:garbage', 'sdpMid': None}
    await send(a, type='ice-candidate', room='r1', payload=candidate)
    msg = await recv(b)
    assert msg['payload'] == candidate
    assert msg['senderName'] == 'ann'


async def test_malformed_messages_are_dropped_and_connection_survives(open_socket):
    a = await open_socket()
    await a.send('{not json')
    await send(a, type='join', userName='ann')
    await send(a, type='teleport', room='r1')
    await nothing(a)
    assert a.state is State.OPEN
    assert (await join(a, 'r1', 'ann'))['type'] == 'joined'


async def test_messages_from_non_members_are_dropped(open_socket):
    a, c = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(c, 'r2', 'carl')
    await send(c, type='offer', room='r1', payload={'type': 'offer', 'sdp': 'x'})
    await send(c, type='chatMessage', room='r1', payload={'text': 'psst'})
    await nothing(a)


async def test_close_notifies_remaining_and_empties_room(relay_server, open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    await recv(a)

    await b.close()
    assert await recv(a) == {'type': 'participantLeft',
                             'participant': {'id': 'p-2', 'userName': 'bob'}}
    await a.close()
    for _ in range(100):
        if 'r1' not in relay_server.registry:
            break
        await asyncio.sleep(0.01)
    assert 'r1' not in relay_server.registry


async def test_leave_keeps_socket_open(relay_server, open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    await recv(a)

    await send(b, type='leave', room='r1')
    assert (await recv(a))['type'] == 'participantLeft'
    assert b.state is State.OPEN
    assert relay_server.registry.count('r1') == 1


async def test_third_joiner_is_refused(open_socket):
    a, b, c = await open_socket(), await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    reply = await join(c, 'r1', 'carl')
    assert reply['type'] == 'error'
    assert reply['reason'] == 'room-full'
    await recv(a)  # bob's participantJoined only
    await nothing(a)


async def test_switching_rooms_leaves_the_old_one(open_socket):
    a, b = await open_socket(), await open_socket()
    await join(a, 'r1', 'ann')
    await join(b, 'r1', 'bob')
    await recv(a)

    joined = await join(b, 'r2', 'bob')
    assert joined['peers'] == []
    assert (await recv(a))['type'] == 'participantLeft'


async def test_deeply_nested_message_does_not_kill_the_connection(open_socket):
    a = await open_socket()
    await a.send('[' * 100000 + ']' * 100000)
    await nothing(a)
    assert (await join(a, 'r1', 'ann'))['type'] == 'joined'


class StalledConnection:
    """Peer whose socket buffer never drains."""

    def __init__(self):
        self.state = State.OPEN
        self.close_code = None

    async def send(self, text):
        await asyncio.Event().wait()

    async def close(self, code=1000, reason=''):
        self.state = State.CLOSED
        self.close_code = code


async def test_stalled_recipient_is_disconnected():
    ws = StalledConnection()
    relay = SignalingRelay(send_timeout=0.05)
    await relay.send(Participant(id='p-1', user_name='ann', connection=ws), Error(reason='x'))
    assert ws.state is State.CLOSED
    assert ws.close_code == 1013
