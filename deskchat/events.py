from dataclasses import dataclass, field
from typing import Callable, Union

from deskchat.network.peer_table import PeerInfo


@dataclass(frozen=True)
class PeerListChanged:
    peers: list[PeerInfo] = field(default_factory=list)


@dataclass(frozen=True)
class MessageReceived:
    sender: str
    message: str
    ip: str = ''


Event = Union[PeerListChanged, MessageReceived]
EventSink = Callable[[Event], None]


def discard(_event: Event) -> None:
    pass
