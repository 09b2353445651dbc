import enum
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional


@dataclass(frozen=True)
class PeerInfo:
    id: str
    username: str
    ip: str
    port: int
    last_seen: float = 0.0

    def same_contact(self, other: 'PeerInfo') -> bool:
        return (self.username, self.ip, self.port) == (other.username, other.ip, other.port)


class Upsert(enum.Enum):
    IGNORED = 'ignored'
    ADDED = 'added'
    UPDATED = 'updated'
    REFRESHED = 'refreshed'


class PeerTable:
    """Known peers keyed by id, guarded by a lock.

    Entries are replaced on every upsert, so callers only ever hold
    immutable snapshots. The local id is refused.
    """

    def __init__(self, self_id: str, timeout: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.self_id = self_id
        self.timeout = timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._peers: Dict[str, PeerInfo] = {}

    def upsert(self, peer_id: str, username: str, ip: str, port: int) -> Upsert:
        if peer_id == self.self_id:
            return Upsert.IGNORED
        peer = PeerInfo(peer_id, username, ip, int(port), self.clock())
        with self._lock:
            previous = self._peers.get(peer_id)
            self._peers[peer_id] = peer
        if previous is None:
            return Upsert.ADDED
        if not previous.same_contact(peer):
            return Upsert.UPDATED
        return Upsert.REFRESHED

    def remove(self, peer_id: str) -> Optional[PeerInfo]:
        with self._lock:
            return self._peers.pop(peer_id, None)

    def get(self, peer_id: str) -> Optional[PeerInfo]:
        with self._lock:
            return self._peers.get(peer_id)

    def find(self, prefix: str) -> List[PeerInfo]:
        return [p for p in self.snapshot() if p.id.startswith(prefix)]

    def snapshot(self) -> List[PeerInfo]:
        with self._lock:
            return list(self._peers.values())

    def alive(self) -> List[PeerInfo]:
        now = self.clock()
        return [p for p in self.snapshot() if now - p.last_seen <= self.timeout]

    def remove_dead(self) -> List[PeerInfo]:
        now = self.clock()
        with self._lock:
            dead = [p for p in self._peers.values() if now - p.last_seen > self.timeout]
            for p in dead:
                del self._peers[p.id]
        return dead

    def __contains__(self, peer_id: object) -> bool:
        with self._lock:
            return peer_id in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)
