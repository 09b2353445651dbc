import asyncio
import enum
import logging
import random
import socket
from typing import Optional

from deskchat.config import Settings
from deskchat.errors import DiscoveryBindError, MalformedPayload
from deskchat.events import EventSink, PeerListChanged, discard
from deskchat.identity.local import LocalIdentity
from deskchat.network.messages import MAX_DATAGRAM, decode_announce, encode_announce
from deskchat.network.peer_table import PeerTable, Upsert
from deskchat.network.scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


class DiscoveryState(enum.Enum):
    IDLE = 'idle'
    ANNOUNCING = 'announcing'


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, service: 'DiscoveryService'):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning('Discovery socket error: %s', exc)


class DiscoveryService:
    """UDP broadcast presence: announces us and keeps the peer table fresh."""

    def __init__(
        self,
        identity: LocalIdentity,
        peers: PeerTable,
        settings: Settings,
        scheduler: Optional[Scheduler] = None,
        on_event: EventSink = discard,
        rng: random.Random | None = None,
    ):
        self.identity = identity
        self.peers = peers
        self.settings = settings
        self.scheduler = scheduler
        self.on_event = on_event
        self.rng = rng or random.Random()
        self.state = DiscoveryState.IDLE
        self._transport: Optional[asyncio.DatagramTransport] = None

    def _bind_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if self.settings.reuse_address:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, 'SO_REUSEPORT'):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        try:
            sock.bind(('', self.settings.discovery_port))
        except OSError as exc:
            sock.close()
            raise DiscoveryBindError(
                f'Discovery port {self.settings.discovery_port} is already in use: {exc}'
            ) from exc
        sock.setblocking(False)
        return sock

    async def start(self, transport: Optional[asyncio.DatagramTransport] = None) -> None:
        """Enter the announcing state.

        ``transport`` is an already-bound datagram transport; when omitted a
        broadcast socket is bound on the discovery port.
        """
        if self.state is DiscoveryState.ANNOUNCING:
            return
        self.identity.announce()
        if transport is None:
            loop = asyncio.get_running_loop()
            transport, _protocol = await loop.create_datagram_endpoint(
                lambda: _DiscoveryProtocol(self),
                sock=self._bind_socket(),
            )
        self._transport = transport
        if self.scheduler is None:
            self.scheduler = AsyncioScheduler()

        s = self.settings
        self.state = DiscoveryState.ANNOUNCING
        self.scheduler.after_delay(self.rng.uniform(s.bootstrap_jitter_min, s.bootstrap_jitter_max), self.announce)
        self.scheduler.every_interval(s.announce_interval, self.announce)
        self.scheduler.every_interval(s.sweep_interval, self.sweep)
        logger.info(
            'Discovery on UDP %s as %s (%s...), announcing every %.1fs',
            s.discovery_port,
            self.identity.username,
            self.identity.id[:12],
            s.announce_interval,
        )

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel_all()
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self.state is DiscoveryState.ANNOUNCING:
            logger.info('Discovery stopped')
        self.state = DiscoveryState.IDLE

    def announce(self) -> None:
        if self._transport is None:
            return
        data = encode_announce(self.identity.announce())
        target = (self.settings.broadcast_address, self.settings.discovery_port)
        try:
            self._transport.sendto(data, target)
        except OSError as exc:
            logger.warning('Announce to %s:%s failed: %s', target[0], target[1], exc)
            return
        logger.debug('Announced to %s:%s', target[0], target[1])

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        if len(data) > MAX_DATAGRAM:
            logger.warning('Dropped oversized announce (%d bytes) from %s', len(data), addr[0])
            return
        try:
            announce = decode_announce(data)
        except MalformedPayload as exc:
            logger.warning('Dropped malformed announce from %s:%s: %s', addr[0], addr[1], exc)
            return
        if announce.id == self.identity.id:
            return

        # The observed source address wins over whatever the peer reports.
        result = self.peers.upsert(announce.id, announce.username, addr[0], announce.port)
        if result is Upsert.ADDED:
            logger.info('Peer joined: %s (%s...) @ %s:%s', announce.username, announce.id[:12], addr[0], announce.port)
            self.scheduler.after_delay(self.settings.echo_delay, self.announce)
            self.notify()
        elif result is Upsert.UPDATED:
            logger.info('Peer moved: %s (%s...) @ %s:%s', announce.username, announce.id[:12], addr[0], announce.port)
            self.notify()

    def sweep(self) -> None:
        dead = self.peers.remove_dead()
        for p in dead:
            logger.info('Peer timed out: %s (%s...)', p.username, p.id[:12])
        if dead:
            self.notify()

    def notify(self) -> None:
        self.on_event(PeerListChanged(self.peers.snapshot()))
