"""The peer transport a call negotiates through.

PeerLink is the interface the call state machine talks to. Descriptions travel
as ``{'type': ..., 'sdp': ...}`` dicts and candidates as
``{'candidate': ..., 'sdpMid': ..., 'sdpMLineIndex': ...}``, the same shapes
browsers put on the wire. Implementations emit:

    'icecandidate'           (candidate dict) a local candidate to trickle
    'track'                  (track) a remote media track arrived
    'connectionstatechange'  (state str) new / connecting / connected /
                             disconnected / failed / closed
"""
import logging
from typing import Optional

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

log = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302', 'stun:stun1.l.google.com:19302']

DEAD_STATES = ('disconnected', 'failed', 'closed')


class NegotiationError(Exception):
    """A description or candidate was rejected by the transport."""


class PeerLink(AsyncIOEventEmitter):
    connection_state = 'new'
    local_description: Optional[dict] = None

    async def create_offer(self) -> dict:
        raise NotImplementedError

    async def create_answer(self) -> dict:
        raise NotImplementedError

    async def set_local_description(self, description: dict):
        raise NotImplementedError

    async def set_remote_description(self, description: dict):
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: dict):
        raise NotImplementedError

    def add_track(self, track: MediaStreamTrack):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


def description_to_dict(desc: Optional[RTCSessionDescription]) -> Optional[dict]:
    if desc is None:
        return None
    return {'type': desc.type, 'sdp': desc.sdp}


class AiortcPeerLink(PeerLink):
    """PeerLink on top of aiortc.

    aiortc gathers every local candidate before ``set_local_description``
    returns and puts them in the SDP, so this link never emits
    'icecandidate'. It still accepts trickled candidates from browsers.
    """

    def __init__(self, ice_servers=DEFAULT_ICE_SERVERS):
        super().__init__()
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self.pc = RTCPeerConnection(config)

        @self.pc.on('track')
        def on_track(track):
            log.info('remote %s track received', track.kind)
            self.emit('track', track)

        @self.pc.on('connectionstatechange')
        def on_state():
            log.info('connection: %s', self.pc.connectionState)
            self.emit('connectionstatechange', self.pc.connectionState)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def local_description(self) -> Optional[dict]:
        return description_to_dict(self.pc.localDescription)

    async def create_offer(self) -> dict:
        return description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> dict:
        try:
            return description_to_dict(await self.pc.createAnswer())
        except InvalidStateError as e:
            raise NegotiationError(f'cannot answer: {e}') from e

    async def set_local_description(self, description: dict):
        try:
            await self.pc.setLocalDescription(
                RTCSessionDescription(sdp=description['sdp'], type=description['type']))
        except (InvalidStateError, InvalidAccessError, KeyError, ValueError) as e:
            raise NegotiationError(f'local description rejected: {e}') from e

    async def set_remote_description(self, description: dict):
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description['sdp'], type=description['type']))
        except (InvalidStateError, InvalidAccessError, KeyError, ValueError) as e:
            raise NegotiationError(f'remote description rejected: {e}') from e

    async def add_ice_candidate(self, candidate: dict):
        sdp = candidate.get('candidate') or ''
        if not sdp:
            return  # end-of-candidates
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:'):]
        try:
            cand = candidate_from_sdp(sdp)
        except (IndexError, ValueError) as e:
            raise NegotiationError(f'bad candidate {sdp!r}: {e}') from e
        cand.sdpMid = candidate.get('sdpMid')
        cand.sdpMLineIndex = candidate.get('sdpMLineIndex')
        try:
            await self.pc.addIceCandidate(cand)
        except (InvalidStateError, ValueError) as e:
            raise NegotiationError(f'candidate rejected: {e}') from e

    def add_track(self, track: MediaStreamTrack):
        self.pc.addTrack(track)

    async def close(self):
        await self.pc.close()
