import argparse
import asyncio
import logging
import os
import sys
import threading

from dotenv import load_dotenv

from deskchat.config import Settings, load_settings
from deskchat.errors import ConfigError, DeskChatError, DiscoveryBindError, IdentityError, PortExhausted, UnknownPeer
from deskchat.events import MessageReceived, PeerListChanged
from deskchat.messaging.chat import BROADCAST
from deskchat.node import ChatNode

HELP = 'Commands: <text> (to everyone) | /to <peer-id-prefix> <text> | /peers | /quit'


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )


def print_event(event) -> None:
    if isinstance(event, PeerListChanged):
        names = ', '.join(f'{p.username}@{p.ip}:{p.port}' for p in event.peers) or 'nobody'
        print(f'[PEERS] {len(event.peers)} online: {names}', flush=True)
    elif isinstance(event, MessageReceived):
        print(f'[CHAT] {event.sender} says: {event.message}', flush=True)


def print_peers(node: ChatNode) -> None:
    peers = node.list_peers()
    if not peers:
        print('[PEERS] No peer discovered yet')
        return
    for p in peers:
        print(f'  - {p.id[:12]}... {p.username} @ {p.ip}:{p.port}')


def report(results: dict[str, bool]) -> None:
    if not results:
        print('[CHAT] Nobody to send to')
        return
    failed = [pid for pid, ok in results.items() if not ok]
    if failed:
        print(f'[CHAT] Delivered to {len(results) - len(failed)}/{len(results)}; unreachable peers were removed')


async def handle_line(node: ChatNode, line: str) -> bool:
    """Run one line of user input. Returns False when the user quits."""
    line = line.strip()
    if not line:
        return True
    if line in ('/quit', '/exit'):
        return False
    if line == '/peers':
        print_peers(node)
        return True
    if line == '/help':
        print(HELP)
        return True
    if line.startswith('/to '):
        parts = line.split(' ', 2)
        if len(parts) < 3:
            print('Usage: /to <peer-id-prefix> <text>')
            return True
        matches = node.peers.find(parts[1])
        if len(matches) != 1:
            print(f'[CHAT] {len(matches)} peers match {parts[1]!r}; use /peers to pick a longer prefix')
            return True
        try:
            report(await node.send_message(matches[0], parts[2]))
        except UnknownPeer as exc:
            print(f'[CHAT] {exc}')
        return True
    if line.startswith('/'):
        print(HELP)
        return True
    report(await node.send_message(BROADCAST, line))
    return True


def stdin_lines(loop: asyncio.AbstractEventLoop) -> 'asyncio.Queue[str]':
    """Pump stdin into a queue from a daemon thread; '' marks end of input."""
    queue: asyncio.Queue[str] = asyncio.Queue()

    def pump() -> None:
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, line)
            loop.call_soon_threadsafe(queue.put_nowait, '')
        except RuntimeError:
            # Loop already closed on shutdown.
            return

    threading.Thread(target=pump, name='stdin', daemon=True).start()
    return queue


async def run_cli(settings: Settings, username: str | None) -> int:
    node = ChatNode(settings, on_event=print_event)
    port = await node.start()
    print(f'[NODE] {node.identity.id[:12]}... listening on {node.identity.ip}:{port}')
    lines = stdin_lines(asyncio.get_running_loop())
    try:
        while not username:
            print('Username: ', end='', flush=True)
            raw = await lines.get()
            if not raw:
                return 0
            username = raw.strip()
        await node.set_username(username)
        print(f'[NODE] Joined as {username}. {HELP}')
        while True:
            line = await lines.get()
            if not line:
                break
            try:
                if not await handle_line(node, line):
                    break
            except (ValueError, IdentityError) as exc:
                print(f'[CHAT] {exc}')
    finally:
        await node.stop()
    return 0


def add_network_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--message-port', type=int, default=None, help='First TCP port to try for messages')
    parser.add_argument('--discovery-port', type=int, default=None, help='UDP discovery port')
    parser.add_argument('--broadcast', default=None, help='Broadcast address for announces')
    parser.add_argument('--interval', type=float, default=None, help='Seconds between announces')
    parser.add_argument('--timeout', type=float, default=None, help='Seconds of silence before a peer is dropped')
    parser.add_argument('--connect-timeout', type=float, default=None)
    parser.add_argument('--port-attempts', type=int, default=None)
    parser.add_argument(
        '--reuse-address',
        action='store_true',
        default=None,
        help='Share the discovery port with other nodes on this host',
    )
    parser.add_argument('--log-level', default=None)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return load_settings().with_overrides(
        message_port_base=args.message_port,
        discovery_port=args.discovery_port,
        broadcast_address=args.broadcast,
        announce_interval=args.interval,
        membership_timeout=args.timeout,
        connect_timeout=args.connect_timeout,
        port_attempts=args.port_attempts,
        reuse_address=args.reuse_address,
        log_level=args.log_level.upper() if args.log_level else None,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DeskChat - serverless LAN chat')
    sub = parser.add_subparsers(dest='command', required=True)

    p_start = sub.add_parser('start', help='Join the LAN chat from this terminal')
    p_start.add_argument('--username', '-u', default=os.getenv('DESKCHAT_USERNAME'))
    add_network_options(p_start)

    p_web = sub.add_parser('web', help='Serve the browser chat UI')
    p_web.add_argument('--host', default=os.getenv('DESKCHAT_WEB_HOST', '127.0.0.1'))
    p_web.add_argument('--web-port', type=int, default=int(os.getenv('DESKCHAT_WEB_PORT', '5000')))
    add_network_options(p_web)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ConfigError as exc:
        print(f'[CONFIG] {exc}', file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    try:
        if args.command == 'web':
            from web.app import serve

            serve(settings, host=args.host, port=args.web_port)
            return 0
        return asyncio.run(run_cli(settings, args.username))
    except (PortExhausted, DiscoveryBindError) as exc:
        print(f'[NODE] Cannot start: {exc}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    except DeskChatError as exc:
        print(f'[NODE] {exc}', file=sys.stderr)
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
