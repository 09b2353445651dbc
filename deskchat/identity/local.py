import logging
import socket
import struct
import sys
from typing import Iterable, Optional

from deskchat.errors import IdentityError
from deskchat.identity.keys import new_node_id
from deskchat.network.messages import Announce

logger = logging.getLogger(__name__)

LOOPBACK = '127.0.0.1'
SIOCGIFADDR = 0x8915


def _routed_address() -> Optional[str]:
    # connect() on UDP sends nothing; it only makes the OS pick an interface.
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(('8.8.8.8', 80))
        return s.getsockname()[0]
    except OSError:
        return None
    finally:
        s.close()


def _hostname_addresses() -> list[str]:
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        return []
    return [info[4][0] for info in infos]


def _interface_addresses() -> list[str]:
    """IPv4 address of every network interface. Linux only, empty elsewhere."""
    if not sys.platform.startswith('linux'):
        return []
    import fcntl

    try:
        names = socket.if_nameindex()
    except OSError:
        return []
    found = []
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        for _index, name in names:
            request = struct.pack('256s', name.encode()[:15])
            try:
                reply = fcntl.ioctl(s.fileno(), SIOCGIFADDR, request)
            except OSError:
                # interface is down or has no IPv4 address
                continue
            found.append(socket.inet_ntoa(reply[20:24]))
    return found


def candidate_addresses() -> list[str]:
    """Routed address first, then every interface, then the host name's addresses."""
    routed = _routed_address()
    found = [routed] if routed else []
    for addr in _interface_addresses() + _hostname_addresses():
        if addr not in found:
            found.append(addr)
    return found


def pick_external(addresses: Iterable[str]) -> str:
    for addr in addresses:
        if addr and not addr.startswith('127.') and addr != '0.0.0.0':
            return addr
    return LOOPBACK


def get_local_ip() -> str:
    ip = pick_external(candidate_addresses())
    if ip == LOOPBACK:
        logger.warning('No external IPv4 interface found, falling back to %s', LOOPBACK)
    return ip


class LocalIdentity:
    """This process's own peer record.

    The id is fixed for the life of the process; the username can be set
    exactly once and the port is assigned once a listener is bound.
    """

    def __init__(self, peer_id: str | None = None, ip: str | None = None):
        self.id = peer_id or new_node_id()
        self.ip = ip or get_local_ip()
        self.username: str | None = None
        self.port: int | None = None

    @property
    def ready(self) -> bool:
        return self.username is not None and self.port is not None

    def set_username(self, name: str) -> str:
        name = (name or '').strip()
        if not name:
            raise ValueError('Username must not be empty')
        if self.username is not None:
            raise IdentityError(f'Username already set to {self.username!r}')
        self.username = name
        return name

    def clear_username(self) -> None:
        """Undo set_username when joining the network failed."""
        self.username = None

    def announce(self) -> Announce:
        if self.username is None:
            raise IdentityError('Username not set')
        if self.port is None:
            raise IdentityError('Message port not assigned')
        return Announce(self.id, self.username, self.ip, self.port)

    def __repr__(self) -> str:
        return f'LocalIdentity({self.id[:12]}..., {self.username!r} @ {self.ip}:{self.port})'
