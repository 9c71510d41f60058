#!/usr/bin/env python3
"""Headless call client for the terminal.

Two modes:
  1. Two headless clients call each other through an in-process relay:
     python3 call_bot.py --demo

  2. Join a room on a running relay, chat from stdin:
     python3 call_bot.py --room room-abc1234 --name bob --server ws://localhost:3001

In join mode, lines typed are sent as chat. Commands:
  /mute   toggle microphone      /video   toggle camera
  /link   print the room link    /status  call state and media
  /quit   hang up and exit
"""
import asyncio, argparse, logging, os, sys

from websockets.asyncio.server import serve

from call_client import CallClient, CallState
from media import DeviceMediaSource, MediaAccessError, SyntheticMediaSource
from peer_link import DEFAULT_ICE_SERVERS, AiortcPeerLink
from relay import SignalingRelay


async def demo():
    """Two synthetic-media clients join one room, exchange chat and hang up."""
    relay = SignalingRelay()
    async with serve(relay.handle, 'localhost', 0) as server:
        port = server.sockets[0].getsockname()[1]
        url = f'ws://localhost:{port}'
        print(f'[demo] relay on {url}')

        alice = CallClient(url, media_source=SyntheticMediaSource())
        bob = CallClient(url, media_source=SyntheticMediaSource())
        await alice.join('demo', 'alice')
        await bob.join('demo', 'bob')

        print('[demo] Connecting...')
        try:
            await asyncio.gather(alice.wait_connected(), bob.wait_connected())
        except asyncio.TimeoutError:
            print(f'[demo] FAILED to connect: {alice.status} / {bob.status}')
            await alice.hangup(); await bob.hangup()
            return False
        print(f'[demo] Connected! alice sees {alice.remote_name}, bob sees {bob.remote_name}\n')

        await alice.send_chat('hey, are you there?')
        msg = await bob.receive(timeout=10)
        print(f'  {msg.sender}: {msg.text}')
        await bob.send_chat('loud and clear')
        await alice.receive(timeout=10)  # her own message, echoed by the relay
        msg = await alice.receive(timeout=10)
        print(f'  {msg.sender}: {msg.text}')

        print('[demo] alice mutes:', alice.toggle_mute())
        await alice.hangup()
        for _ in range(20):
            if bob.state is CallState.IDLE:
                break
            await asyncio.sleep(0.25)
        print(f'[demo] bob: {bob.status} ({bob.state.value})')
        await bob.hangup()
    print('\n[demo] Done.')
    return True


async def join_mode(args):
    source = DeviceMediaSource(use_camera=not args.no_camera, use_mic=not args.no_mic)
    client = CallClient(args.server, media_source=source,
                        peer_link_factory=lambda: AiortcPeerLink(args.stun or DEFAULT_ICE_SERVERS))

    client.on('status', lambda text: print(f'[status] {text}'))
    client.on('chat', lambda entry: print(f'[{entry.sender}] {entry.text}'))

    try:
        await client.join(args.room, args.name)
    except MediaAccessError as e:
        print(f'Could not access camera/microphone: {e}')
        return False
    except OSError as e:
        print(f'Could not reach {args.server}: {e}')
        return False
    print(f'Room: {client.room}  link: {client.room_link(args.base_url)}')

    loop = asyncio.get_running_loop()
    try:
        while client.state is not CallState.IDLE:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line == '/quit':
                break
            elif line == '/mute':
                print('muted' if client.toggle_mute() else 'unmuted')
            elif line == '/video':
                print('video off' if client.toggle_video() else 'video on')
            elif line == '/link':
                print(client.room_link(args.base_url))
            elif line == '/status':
                media = 'media flowing' if client.connected else 'no remote media'
                print(f'{client.state.value}, {media}: {client.status}')
            elif line:
                await client.send_chat(line)
    except KeyboardInterrupt:
        pass
    finally:
        await client.hangup()
    return True


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Two headless clients call each other')
    p.add_argument('--server', default=os.getenv('SIGNALING_URL', 'ws://localhost:3001'))
    p.add_argument('--room', help='room to join (random if omitted)')
    p.add_argument('--name', help='display name (Guest-NNN if omitted)')
    p.add_argument('--no-camera', action='store_true', help='send a test pattern instead')
    p.add_argument('--no-mic', action='store_true', help='send silence instead')
    p.add_argument('--stun', action='append', help='STUN server URL (repeatable)')
    p.add_argument('--base-url', default='http://localhost:5173', help='lobby URL for room links')
    p.add_argument('--log-level', default=os.getenv('LOG_LEVEL', 'WARNING'))
    args = p.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
    ok = asyncio.run(demo() if args.demo else join_mode(args))
    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
