#!/usr/bin/env python3
"""WebSocket signaling relay for two-party calls.

Groups connections into rooms, answers joins with the peers already present
and forwards offers, answers, ICE candidates and chat to the rest of the room.
It never looks inside session descriptions or candidates.

Usage:
    python3 relay.py --port 3001
"""
import asyncio, argparse, logging, os, uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.protocol import State

from call_protocol import (
    CLIENT_KINDS, ROOM_FULL, ChatMessage, ChatPayload, Envelope, Error, Join, Joined, Leave,
    ParticipantJoined, ParticipantLeft, PeerInfo, ProtocolError, Signal, decode, encode, guest_name,
)
from room_registry import DEFAULT_CAPACITY, Participant, RoomFullError, RoomRegistry

log = logging.getLogger('relay')

DEFAULT_PORT = 3001
SEND_TIMEOUT = 5.0


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def peer_info(p: Participant) -> PeerInfo:
    return PeerInfo(id=p.id, user_name=p.user_name)


class SignalingRelay:
    """One instance serves every connection; ``handle`` runs once per socket."""

    def __init__(self, registry: Optional[RoomRegistry] = None,
                 id_factory: Optional[Callable[[], str]] = None,
                 send_timeout: float = SEND_TIMEOUT):
        self.registry = registry if registry is not None else RoomRegistry()
        self.new_id = id_factory or (lambda: uuid.uuid4().hex)
        self.send_timeout = send_timeout

    async def handle(self, ws):
        """Handle one WebSocket connection."""
        me = Participant(id=self.new_id(), user_name='', connection=ws)
        log.info('connection %s from %s', me.id, ws.remote_address)
        try:
            async for raw in ws:
                try:
                    env = decode(raw)
                except ProtocolError as e:
                    log.warning('dropped message from %s: %s', me.id, e)
                    continue
                await self.dispatch(me, env)
        except ConnectionClosedError as e:
            log.warning('connection %s failed: %s', me.id, e)
        finally:
            await self.depart(me)
            log.info('connection %s closed', me.id)

    async def dispatch(self, me: Participant, env: Envelope):
        if not isinstance(env, CLIENT_KINDS):
            log.warning('dropped %s from %s: not a client message', env.type, me.id)
        elif isinstance(env, Join):
            await self.join(me, env)
        elif isinstance(env, Leave):
            await self.depart(me)
        elif self.registry.room_of(me.id) != env.room:
            log.warning('dropped %s from %s: not a member of room %r', env.type, me.id, env.room)
        elif isinstance(env, ChatMessage):
            # sender is stamped from the registered name, never from the payload
            msg = ChatMessage(room=env.room, payload=ChatPayload(
                text=env.payload.text, timestamp=env.payload.timestamp or now_iso(), sender=me.user_name))
            await self.fan_out(self.registry.members(env.room), msg)
        elif isinstance(env, Signal):
            msg = env.model_copy(update={'sender_name': me.user_name, 'sender_id': me.id})
            log.debug('relay %s from %s in room %r', env.type, me.id, env.room)
            await self.fan_out(self.registry.others(env.room, me.id), msg)

    async def join(self, me: Participant, env: Join):
        current = self.registry.room_of(me.id)
        if current is not None and current != env.room:
            await self.depart(me)
        if env.user_name:
            me.user_name = env.user_name
        elif not me.user_name:
            me.user_name = guest_name()
        try:
            peers = self.registry.join(env.room, me)
        except RoomFullError as e:
            log.warning('%s refused: %s', me.id, e)
            await self.send(me, Error(reason=ROOM_FULL, detail=str(e)))
            return
        await self.send(me, Joined(room=env.room, self_id=me.id,
                                   peers=tuple(peer_info(p) for p in peers)))
        if current != env.room:
            await self.fan_out(peers, ParticipantJoined(participant=peer_info(me)))
        self.log_rooms()

    async def depart(self, me: Participant):
        room, remaining = self.registry.leave(me)
        if room is not None:
            await self.fan_out(remaining, ParticipantLeft(participant=peer_info(me)))
            self.log_rooms()

    def log_rooms(self):
        if log.isEnabledFor(logging.DEBUG):
            log.debug('rooms: %s', self.registry.room_list())

    async def fan_out(self, recipients, env: Envelope):
        if recipients:
            text = encode(env)
            await asyncio.gather(*(self.send(p, text) for p in recipients))

    async def send(self, to: Participant, env):
        ws = to.connection
        if ws is None or ws.state is not State.OPEN:
            return
        text = env if isinstance(env, str) else encode(env)
        try:
            await asyncio.wait_for(ws.send(text), self.send_timeout)
        except ConnectionClosed:
            log.debug('skipped send to %s: connection closed', to.id)
        except asyncio.TimeoutError:
            log.warning('dropping %s: send timed out after %.1fs', to.id, self.send_timeout)
            await ws.close(code=1013, reason='too slow')


async def main(host: str, port: int, capacity: int = DEFAULT_CAPACITY):
    relay = SignalingRelay(RoomRegistry(capacity=capacity))
    async with serve(relay.handle, host, port):
        log.info('signaling relay on ws://%s:%d (room capacity %d)', host, port, capacity)
        await asyncio.Future()  # run forever


def parse_args(argv=None):
    p = argparse.ArgumentParser(description='Signaling relay for two-party calls')
    p.add_argument('--host', default=os.getenv('SIGNALING_HOST', '0.0.0.0'))
    p.add_argument('--port', type=int, default=int(os.getenv('SIGNALING_PORT', DEFAULT_PORT)))
    p.add_argument('--capacity', type=int, default=int(os.getenv('ROOM_CAPACITY', DEFAULT_CAPACITY)),
                   help='participants allowed per room')
    p.add_argument('--log-level', default=os.getenv('LOG_LEVEL', 'INFO'))
    return p.parse_args(argv)


def run(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
    try:
        asyncio.run(main(args.host, args.port, args.capacity))
    except KeyboardInterrupt:
        log.info('relay stopped')


if __name__ == '__main__':
    run()
