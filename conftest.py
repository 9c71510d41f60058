"""In-memory stand-ins for the signaling socket, the peer transport and media devices."""
import asyncio, json

import pytest
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from call_client import CallClient
from media import MediaAccessError, MediaHandle
from peer_link import NegotiationError, PeerLink
from relay import SignalingRelay
from room_registry import RoomRegistry

HOST_CANDIDATE = {'candidate': 'candidate:1 1 udp 2130706431 127.0.0.1 40000 typ host',
                  'sdpMid': '0', 'sdpMLineIndex': 0}


class FakeSocket:
    """Client side of a signaling connection; ``feed`` plays the relay."""

    def __init__(self):
        self.sent = []
        self.state = State.OPEN
        self._inbox = asyncio.Queue()

    def feed(self, msg: dict):
        self._inbox.put_nowait(json.dumps(msg))

    def drop(self):
        """The relay went away."""
        self.state = State.CLOSED
        self._inbox.put_nowait(None)

    async def send(self, text):
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(text))

    async def close(self):
        if self.state is State.OPEN:
            self.drop()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def types(self):
        return [m['type'] for m in self.sent]


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMediaSource:
    def __init__(self):
        self.handles = []

    async def acquire(self):
        handle = MediaHandle(audio=FakeTrack('audio'), video=FakeTrack('video'))
        self.handles.append(handle)
        return handle


class DeniedMediaSource:
    async def acquire(self):
        raise MediaAccessError('Permission denied')


class FakePeerLink(PeerLink):
    """Records what the state machine asks of it.

    With ``auto_connect`` it behaves like a working engine: setting the
    remote description delivers a remote track and reports 'connected', and
    setting the local description trickles one host candidate.
    """

    def __init__(self, auto_connect=False):
        super().__init__()
        self.auto_connect = auto_connect
        self.state = 'new'
        self.local = None
        self.remote = None
        self.candidates = []
        self.tracks = []
        self.closed = False
        self.reject_candidates = False

    @property
    def connection_state(self):
        return self.state

    @property
    def local_description(self):
        return self.local

    async def create_offer(self):
        return {'type': 'offer', 'sdp': 'v=0 fake-offer'}

    async def create_answer(self):
        if self.remote is None:
            raise NegotiationError('no remote offer')
        return {'type': 'answer', 'sdp': 'v=0 fake-answer'}

    async def set_local_description(self, description):
        self.local = description
        if self.auto_connect:
            self.emit('icecandidate', dict(HOST_CANDIDATE))

    async def set_remote_description(self, description):
        self.remote = description
        if self.auto_connect:
            self.state = 'connected'
            self.emit('track', FakeTrack('video'))
            self.emit('connectionstatechange', 'connected')

    async def add_ice_candidate(self, candidate):
        if self.remote is None or self.reject_candidates:
            raise NegotiationError('candidate rejected')
        self.candidates.append(candidate)

    def add_track(self, track):
        self.tracks.append(track)

    async def close(self):
        self.closed = True
        self.state = 'closed'

    def fail(self, state='failed'):
        self.state = state
        self.emit('connectionstatechange', state)


async def _eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def socket():
    return FakeSocket()


@pytest.fixture
def links():
    return []


@pytest.fixture
def media():
    return FakeMediaSource()


@pytest.fixture
def client(socket, links, media):
    async def fake_connect(url):
        return socket

    def new_link():
        link = FakePeerLink()
        links.append(link)
        return link

    return CallClient('ws://relay.test', media_source=media,
                      peer_link_factory=new_link, connect=fake_connect)


@pytest.fixture
async def relay_server():
    """A real relay on an ephemeral port. Participant ids are handed out in
    the order p-1, p-2, ... unless a test sets ``relay.new_id``."""
    counter = iter(range(1, 1000))
    relay = SignalingRelay(RoomRegistry(), id_factory=lambda: f'p-{next(counter)}')
    async with serve(relay.handle, 'localhost', 0) as server:
        port = server.sockets[0].getsockname()[1]
        relay.url = f'ws://localhost:{port}'
        yield relay


@pytest.fixture
async def open_socket(relay_server):
    """Connect raw WebSockets to the relay; all closed at teardown."""
    opened = []

    async def _open():
        ws = await connect(relay_server.url)
        opened.append(ws)
        return ws

    yield _open
    for ws in opened:
        await ws.close()
