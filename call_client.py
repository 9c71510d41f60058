"""Headless call client: joins a room on the signaling relay and runs one call.

Usage:
    client = CallClient('ws://localhost:3001', media_source=SyntheticMediaSource())
    await client.join('room-abc1234', 'alice')
    await client.wait_connected()

    await client.send_chat('hello')
    msg = await client.receive()  # blocks until a chat message arrives

    client.toggle_mute()
    await client.hangup()

Lifecycle: IDLE -> JOINING -> CONNECTED -> IDLE. Every failure path ends in
IDLE with all resources released; a fresh ``join`` starts over.

Events (pyee): 'state', 'status', 'chat', 'remote_media'.
"""
import asyncio, logging, random, string
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from pyee.asyncio import AsyncIOEventEmitter
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from call_protocol import (
    ROOM_FULL, Answer, ChatMessage, ChatPayload, Error, IceCandidate, Join, Joined, Leave, Offer,
    ParticipantJoined, ParticipantLeft, ProtocolError, decode, encode, guest_name,
)
from media import DeviceMediaSource, MediaAccessError, MediaHandle, RemoteMedia
from peer_link import DEAD_STATES, AiortcPeerLink, NegotiationError, PeerLink

log = logging.getLogger(__name__)

DEFAULT_SERVER = 'ws://localhost:3001'
REMOTE_USER = 'Remote User'


class CallState(str, Enum):
    IDLE = 'IDLE'
    JOINING = 'JOINING'
    CONNECTED = 'CONNECTED'


class CallStateError(RuntimeError):
    """Operation not allowed in the current call state."""


@dataclass
class ChatEntry:
    text: str
    sender: str
    timestamp: str


def new_room_id() -> str:
    return 'room-' + ''.join(random.choices(string.ascii_lowercase + string.digits, k=7))


def is_offerer(self_id: str, peer_id: str) -> bool:
    """Exactly one side of a pair offers: the one whose id sorts lower."""
    return self_id < peer_id


class CallClient(AsyncIOEventEmitter):
    def __init__(self, server_url: str = DEFAULT_SERVER, media_source=None,
                 peer_link_factory: Optional[Callable[[], PeerLink]] = None,
                 connect=ws_connect):
        super().__init__()
        self.server_url = server_url
        self.media_source = media_source if media_source is not None else DeviceMediaSource()
        self.peer_link_factory = peer_link_factory or AiortcPeerLink
        self._connect = connect

        self.state = CallState.IDLE
        self.status = 'Welcome!'
        self.room: Optional[str] = None
        self.user_name: Optional[str] = None
        self.self_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.remote_name = REMOTE_USER
        self.local_media: Optional[MediaHandle] = None
        self.remote_media: Optional[RemoteMedia] = None
        self.pending_candidates: List[dict] = []
        self.chat_log: List[ChatEntry] = []

        self.link: Optional[PeerLink] = None
        self._remote_set = False
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        # signaling messages and PeerLink callbacks never interleave
        self._call_lock = asyncio.Lock()
        self._chat_queue: asyncio.Queue = asyncio.Queue()
        self._connected = asyncio.Event()

    # ============ STATE ============

    def _set_state(self, state: CallState):
        if state is not self.state:
            log.info('call state %s -> %s', self.state.value, state.value)
            self.state = state
            self.emit('state', state)

    def _set_status(self, text: str):
        self.status = text
        self.emit('status', text)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def is_muted(self) -> bool:
        return self.local_media is not None and not self.local_media.audio_enabled

    @property
    def is_video_off(self) -> bool:
        return self.local_media is not None and not self.local_media.video_enabled

    def room_link(self, base_url: str) -> str:
        """Shareable link that pre-fills this room in a lobby."""
        return f'{base_url}?roomId={self.room}'

    # ============ PUBLIC API ============

    async def join(self, room: Optional[str] = None, user_name: Optional[str] = None):
        """Acquire local media, open the signaling socket and join ``room``.

        Raises MediaAccessError (state back to IDLE) if the camera or
        microphone cannot be opened, OSError / InvalidHandshake if the relay
        cannot be reached, and ConnectionClosed if it hangs up before the join
        is sent. Every failure leaves the client IDLE.
        """
        if self.state is not CallState.IDLE:
            raise CallStateError(f'cannot join while {self.state.value}')
        self._set_state(CallState.JOINING)
        self.room = room or new_room_id()
        self.user_name = user_name or guest_name()
        try:
            self.local_media = await self.media_source.acquire()
        except MediaAccessError as e:
            log.error('media access failed: %s', e)
            self._set_status('Error: Could not access camera/microphone. Please allow permissions.')
            self._set_state(CallState.IDLE)
            raise
        if self.state is not CallState.JOINING:
            # hung up while the devices were opening
            self.local_media.stop()
            self.local_media = None
            return
        self._set_status('Connecting to signaling server...')
        try:
            ws = await self._connect(self.server_url)
        except (OSError, asyncio.TimeoutError, InvalidURI, InvalidHandshake) as e:
            log.error('signaling connection to %s failed: %s', self.server_url, e)
            async with self._call_lock:
                await self._teardown('Signaling connection error. Please try again.')
            raise
        if self.state is not CallState.JOINING:
            await ws.close()
            return
        self._ws = ws
        self._set_status('Connected to signaling server. Joining room...')
        try:
            await self._send(Join(room=self.room, user_name=self.user_name))
        except ConnectionClosed as e:
            log.error('signaling closed before join: %s', e)
            async with self._call_lock:
                await self._teardown('Signaling disconnected.')
            raise
        self._reader = asyncio.ensure_future(self._read_loop(self._ws))

    async def hangup(self):
        """End the call unconditionally. Safe to call in any state."""
        async with self._call_lock:
            if self._ws is not None and self._ws.state is State.OPEN:
                try:
                    await self._send(Leave(room=self.room))
                except ConnectionClosed:
                    log.debug('leave not sent: signaling closed')
            await self._teardown('Call ended')

    async def send_chat(self, text: str):
        text = text.strip()
        if not text or self._ws is None or self.state is not CallState.CONNECTED:
            return
        await self._send(ChatMessage(room=self.room, payload=ChatPayload(
            text=text, timestamp=datetime.now(timezone.utc).isoformat())))

    async def receive(self, timeout: float = None) -> ChatEntry:
        """Receive next chat message. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._chat_queue.get(), timeout)
        return await self._chat_queue.get()

    async def wait_connected(self, timeout: float = 15.0):
        """Wait until the call is up and remote media has arrived."""
        await asyncio.wait_for(self._connected.wait(), timeout)

    def toggle_mute(self) -> bool:
        """Flip microphone enablement locally; returns the new muted flag."""
        if self.local_media is not None:
            self.local_media.set_audio_enabled(not self.local_media.audio_enabled)
        return self.is_muted

    def toggle_video(self) -> bool:
        """Flip camera enablement locally; returns the new video-off flag."""
        if self.local_media is not None:
            self.local_media.set_video_enabled(not self.local_media.video_enabled)
        return self.is_video_off

    # ============ SIGNALING ============

    async def _send(self, env):
        await self._ws.send(encode(env))

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    env = decode(raw)
                except ProtocolError as e:
                    log.warning('ignored signaling message: %s', e)
                    continue
                async with self._call_lock:
                    if self._ws is not ws:
                        break
                    await self._dispatch(env)
        except ConnectionClosed as e:
            log.info('signaling closed: %s', e)
        finally:
            if self._ws is ws:
                async with self._call_lock:
                    if self._ws is ws and self.state is not CallState.IDLE:
                        await self._teardown('Signaling disconnected.')

    async def _dispatch(self, env):
        if isinstance(env, Joined):
            await self._on_joined(env)
        elif isinstance(env, ParticipantJoined):
            await self._on_participant_joined(env)
        elif isinstance(env, ParticipantLeft):
            await self._on_participant_left(env)
        elif isinstance(env, Offer):
            await self._on_offer(env)
        elif isinstance(env, Answer):
            await self._on_answer(env)
        elif isinstance(env, IceCandidate):
            await self._on_remote_candidate(env.payload)
        elif isinstance(env, ChatMessage):
            self._on_chat(env)
        elif isinstance(env, Error):
            if env.reason == ROOM_FULL:
                await self._teardown(f"Room '{self.room}' is full.")
            else:
                log.warning('relay error %s: %s', env.reason, env.detail)
        else:
            log.warning('unexpected %s from relay', env.type)

    async def _on_joined(self, env: Joined):
        self.self_id = env.self_id
        self._set_state(CallState.CONNECTED)
        self._set_status(f"Joined room '{self.room}'. Peers: {len(env.peers)}")
        if env.peers:
            peer = env.peers[0]
            self.peer_id = peer.id
            self.remote_name = peer.user_name
            if is_offerer(self.self_id, peer.id):
                await self._make_offer()

    async def _on_participant_joined(self, env: ParticipantJoined):
        newcomer = env.participant
        self._set_status(f'{newcomer.user_name} joined the room.')
        if self.link is not None and self.link.connection_state == 'connected':
            return
        self.peer_id = newcomer.id
        self.remote_name = newcomer.user_name
        if is_offerer(self.self_id, newcomer.id):
            await self._make_offer()

    async def _on_participant_left(self, env: ParticipantLeft):
        gone = env.participant
        if gone.id == self.peer_id:
            await self._teardown(f'{gone.user_name} left the room.')
        else:
            self._set_status(f'{gone.user_name} left the room.')

    # ============ NEGOTIATION ============

    def _ensure_link(self) -> PeerLink:
        if self.link is not None and self.link.connection_state not in DEAD_STATES:
            return self.link
        if self.link is not None:
            self._drop_link(self.link)
        self._set_status('Establishing peer connection...')
        link = self.peer_link_factory()
        self.link = link
        self._remote_set = False

        @link.on('icecandidate')
        async def on_icecandidate(candidate):
            if candidate and self.link is link and self._ws is not None:
                try:
                    await self._send(IceCandidate(room=self.room, payload=candidate))
                except ConnectionClosed:
                    log.debug('candidate not sent: signaling closed')

        @link.on('track')
        async def on_track(track):
            async with self._call_lock:
                if self.link is link:
                    self._on_track(track)

        @link.on('connectionstatechange')
        async def on_state(state):
            async with self._call_lock:
                if self.link is link and state in DEAD_STATES:
                    log.info('peer connection %s', state)
                    await self._teardown('Call ended')

        for track in self.local_media.tracks:
            link.add_track(track)
        return link

    def _drop_link(self, link: PeerLink):
        link.remove_all_listeners()
        asyncio.ensure_future(link.close())

    async def _make_offer(self):
        self._set_status('Creating offer...')
        link = self._ensure_link()
        try:
            offer = await link.create_offer()
            await link.set_local_description(offer)
            await self._send(Offer(room=self.room, payload=link.local_description or offer))
        except NegotiationError as e:
            log.warning('offer failed: %s', e)
            self._set_status('Failed to create or send offer.')
            return
        self._set_status('Offer sent. Waiting for answer...')

    async def _on_offer(self, env: Offer):
        self.remote_name = env.sender_name or REMOTE_USER
        if env.sender_id:
            self.peer_id = env.sender_id
        self._set_status('Received offer. Creating answer...')
        link = self._ensure_link()
        try:
            await link.set_remote_description(env.payload)
            self._remote_set = True
            await self._flush_candidates()
            answer = await link.create_answer()
            await link.set_local_description(answer)
            await self._send(Answer(room=self.room, payload=link.local_description or answer))
        except NegotiationError as e:
            log.warning('offer handling failed: %s', e)
            self._set_status('Failed to handle offer.')
            return
        self._set_status('Answer sent. Establishing connection...')

    async def _on_answer(self, env: Answer):
        if self.link is None:
            log.warning('answer ignored: no peer connection')
            return
        try:
            await self.link.set_remote_description(env.payload)
        except NegotiationError as e:
            log.warning('answer rejected: %s', e)
            self._set_status('Failed to finalize connection.')
            return
        self._remote_set = True
        await self._flush_candidates()
        self._set_status('Answer received. Connecting...')

    async def _on_remote_candidate(self, candidate: dict):
        if self.link is None or not self._remote_set:
            self.pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: dict):
        try:
            await self.link.add_ice_candidate(candidate)
        except NegotiationError as e:
            # late or duplicate candidates are expected
            log.warning('candidate not applied: %s', e)

    async def _flush_candidates(self):
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    def _on_track(self, track):
        if self.remote_media is None:
            self.remote_media = RemoteMedia()
        self.remote_media.add(track)
        self._set_status('Remote stream received!')
        self.emit('remote_media', self.remote_media)
        if self.state is CallState.CONNECTED:
            self._connected.set()

    # ============ CHAT ============

    def _on_chat(self, env: ChatMessage):
        entry = ChatEntry(text=env.payload.text, sender=env.payload.sender or '?',
                          timestamp=env.payload.timestamp or datetime.now(timezone.utc).isoformat())
        self.chat_log.append(entry)
        self._chat_queue.put_nowait(entry)
        self.emit('chat', entry)

    # ============ TEARDOWN ============

    async def _teardown(self, status: str):
        """Release everything and return to IDLE. Idempotent; caller holds the lock."""
        link, ws, media, reader = self.link, self._ws, self.local_media, self._reader
        if self.state is CallState.IDLE and all(r is None for r in (link, ws, media, reader)):
            return
        self.link = self._ws = self.local_media = self._reader = None
        self.remote_media = None
        self.peer_id = None
        self.remote_name = REMOTE_USER
        self.pending_candidates = []
        self._remote_set = False
        self.chat_log = []
        self._connected.clear()

        if link is not None:
            link.remove_all_listeners()
            try:
                await link.close()
            except Exception as e:
                log.error('error closing peer connection: %s', e)
        if ws is not None:
            await ws.close()
        if media is not None:
            media.stop()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        self._set_state(CallState.IDLE)
        self._set_status(status)
