import asyncio
import logging
from typing import Callable, Optional

from deskchat.errors import MalformedPayload
from deskchat.network.messages import Envelope, decode_envelope

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Envelope, tuple], None]


class TCPServer:
    """Inbound side of the messaging transport: one envelope per connection."""

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageHandler,
        max_bytes: int = 64 * 1024,
        read_timeout: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.on_message = on_message
        self.max_bytes = max_bytes
        self.read_timeout = read_timeout
        self._server: Optional[asyncio.AbstractServer] = None

    async def _read_body(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        chunks = []
        size = 0
        while True:
            chunk = await reader.read(4096)
            if not chunk:
                return b''.join(chunks)
            size += len(chunk)
            if size > self.max_bytes:
                return None
            chunks.append(chunk)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        addr = writer.get_extra_info('peername') or ('?', 0)
        logger.debug('Incoming connection from %s:%s', addr[0], addr[1])
        try:
            body = await asyncio.wait_for(self._read_body(reader), self.read_timeout)
        except asyncio.TimeoutError:
            logger.warning('Connection from %s:%s sent no EOF within %.1fs, dropped', addr[0], addr[1], self.read_timeout)
            return
        except OSError as exc:
            logger.warning('Connection from %s:%s broke: %s', addr[0], addr[1], exc)
            return
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as exc:
                logger.debug('Close of %s:%s reported %s', addr[0], addr[1], exc)

        if body is None:
            logger.warning('Dropped message from %s: larger than %d bytes', addr[0], self.max_bytes)
            return
        if not body:
            return
        try:
            envelope = decode_envelope(body)
        except MalformedPayload as exc:
            logger.warning('Dropped malformed message from %s: %s', addr[0], exc)
            return
        self.on_message(envelope, addr)

    async def start(self) -> int:
        """Bind the listener; OSError propagates so the caller can try another port."""
        self._server = await asyncio.start_server(self.handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info('Message server listening on %s:%s', self.host, self.port)
        return self.port

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info('Message server on port %s closed', self.port)

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()
