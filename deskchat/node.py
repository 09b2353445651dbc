import logging
import time
from typing import Callable, Dict, List, Optional

from deskchat.config import Settings
from deskchat.errors import DiscoveryBindError, PortExhausted
from deskchat.events import EventSink, MessageReceived, discard
from deskchat.identity.local import LocalIdentity
from deskchat.messaging.chat import ChatService, Target
from deskchat.network.discovery import DiscoveryService, DiscoveryState
from deskchat.network.messages import Envelope
from deskchat.network.peer_table import PeerInfo, PeerTable
from deskchat.network.port_allocator import allocate_port
from deskchat.network.scheduler import Scheduler
from deskchat.network.tcp_server import TCPServer

logger = logging.getLogger(__name__)


class ChatNode:
    """One LAN chat participant: identity, peer table, discovery and messaging.

    The presentation layer drives it with ``set_username`` and
    ``send_message`` and listens through ``on_event``.
    """

    def __init__(
        self,
        settings: Settings,
        on_event: EventSink = discard,
        identity: Optional[LocalIdentity] = None,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Optional[Scheduler] = None,
    ):
        self.settings = settings
        self.on_event = on_event
        self.identity = identity or LocalIdentity()
        self.peers = PeerTable(self.identity.id, timeout=settings.membership_timeout, clock=clock)
        self.discovery = DiscoveryService(self.identity, self.peers, settings, scheduler=scheduler, on_event=self._emit)
        self.chat = ChatService(self.identity, self.peers, connect_timeout=settings.connect_timeout, on_event=self._emit)
        self.server: Optional[TCPServer] = None

    def _emit(self, event) -> None:
        self.on_event(event)

    def _on_envelope(self, envelope: Envelope, addr: tuple) -> None:
        logger.info('Message from %s @ %s', envelope.sender, addr[0])
        self._emit(MessageReceived(envelope.sender, envelope.message, ip=addr[0]))

    @property
    def port(self) -> Optional[int]:
        return self.identity.port

    async def start(self) -> int:
        """Bind the message listener on the first usable port and return it."""
        s = self.settings
        start_port = s.message_port_base
        end_port = s.message_port_base + s.port_attempts
        while start_port < end_port:
            port = allocate_port(start_port, end_port - start_port, host=s.listen_host)
            server = TCPServer(
                s.listen_host,
                port,
                self._on_envelope,
                max_bytes=s.max_message_bytes,
                read_timeout=s.connect_timeout,
            )
            try:
                self.identity.port = await server.start()
            except OSError as exc:
                # Someone took the port between probe and bind.
                logger.warning('Port %s lost to another process (%s), trying the next one', port, exc)
                start_port = port + 1
                continue
            self.server = server
            return self.identity.port
        raise PortExhausted(s.message_port_base, s.port_attempts)

    async def set_username(self, name: str) -> None:
        """SetUsername command: fix the username and start discovery."""
        if self.server is None:
            await self.start()
        self.identity.set_username(name)
        try:
            await self.discovery.start()
        except (DiscoveryBindError, OSError):
            # leave the node able to retry once the port is free
            self.identity.clear_username()
            raise

    async def send_message(self, target: Target, text: str) -> Dict[str, bool]:
        """SendMessage command. ``target`` is a PeerInfo, a peer id or BROADCAST."""
        return await self.chat.send(target, text)

    def list_peers(self) -> List[PeerInfo]:
        return sorted(self.peers.snapshot(), key=lambda p: (p.username.lower(), p.id))

    @property
    def discovering(self) -> bool:
        return self.discovery.state is DiscoveryState.ANNOUNCING

    async def stop(self) -> None:
        self.discovery.stop()
        if self.server is not None:
            await self.server.close()
            self.server = None

    async def __aenter__(self) -> 'ChatNode':
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

