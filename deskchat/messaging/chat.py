import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from deskchat.errors import IdentityError, UnknownPeer
from deskchat.events import EventSink, PeerListChanged, discard
from deskchat.identity.local import LocalIdentity
from deskchat.network.messages import Envelope, encode_envelope
from deskchat.network.peer_table import PeerInfo, PeerTable

logger = logging.getLogger(__name__)

# Send target meaning "every known peer".
BROADCAST = None

Target = Union[PeerInfo, str, None]
Connector = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class ChatService:
    """Outbound side of the messaging transport.

    Every message travels on its own short-lived TCP connection. A peer that
    cannot be reached is dropped from the table straight away.
    """

    def __init__(
        self,
        identity: LocalIdentity,
        peer_table: PeerTable,
        connect_timeout: float = 5.0,
        on_event: EventSink = discard,
        connector: Optional[Connector] = None,
    ):
        self.identity = identity
        self.peers = peer_table
        self.connect_timeout = connect_timeout
        self.on_event = on_event
        self.connector = connector or asyncio.open_connection

    def _resolve_peer(self, target: Union[PeerInfo, str]) -> PeerInfo:
        if isinstance(target, PeerInfo):
            return target
        peer = self.peers.get(target)
        if peer is None:
            raise UnknownPeer(target)
        return peer

    def _envelope(self, text: str) -> bytes:
        if self.identity.username is None:
            raise IdentityError('Set a username before sending messages')
        if not text or not text.strip():
            raise ValueError('Message must not be empty')
        return encode_envelope(Envelope(self.identity.username, text))

    async def send(self, target: Target, text: str) -> Dict[str, bool]:
        """Send text to one peer, or to every known peer when target is BROADCAST.

        Returns peer id -> delivered. Failures never raise; they evict.
        """
        data = self._envelope(text)
        if target is BROADCAST:
            recipients = [p for p in self.peers.snapshot() if p.id != self.identity.id]
            if not recipients:
                logger.info('No peers to broadcast to')
                return {}
            logger.info('Broadcasting to %d peer(s)', len(recipients))
            results = await asyncio.gather(*(self.send_to(p, data) for p in recipients))
            return {p.id: ok for p, ok in zip(recipients, results)}

        peer = self._resolve_peer(target)
        return {peer.id: await self.send_to(peer, data)}

    async def send_to(self, peer: PeerInfo, data: bytes) -> bool:
        try:
            await self._send_tcp(peer, data)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning('Send to %s @ %s:%s failed: %s', peer.username, peer.ip, peer.port, exc or type(exc).__name__)
            self._evict(peer)
            return False
        logger.debug('Message sent to %s @ %s:%s', peer.username, peer.ip, peer.port)
        return True

    async def _send_tcp(self, peer: PeerInfo, data: bytes) -> None:
        _reader, writer = await self._open_peer_connection(peer.ip, peer.port)
        try:
            writer.write(data)
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
        finally:
            writer.close()
            await writer.wait_closed()

    async def _open_peer_connection(self, ip: str, port: int):
        return await asyncio.wait_for(self.connector(ip, port), timeout=self.connect_timeout)

    def _evict(self, peer: PeerInfo) -> None:
        current = self.peers.get(peer.id)
        if current is None:
            return
        if (current.ip, current.port) != (peer.ip, peer.port):
            # Peer re-announced on a new address since this send began.
            return
        self.peers.remove(peer.id)
        logger.info('Peer unreachable, removed: %s (%s...)', peer.username, peer.id[:12])
        self.on_event(PeerListChanged(self.peers.snapshot()))
