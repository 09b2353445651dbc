import json
from dataclasses import dataclass
from typing import Any

from deskchat.errors import MalformedPayload


MAX_DATAGRAM = 8192


@dataclass(frozen=True)
class Announce:
    id: str
    username: str
    ip: str
    port: int


@dataclass(frozen=True)
class Envelope:
    sender: str
    message: str


def compact_bytes(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def _load_object(data: bytes, what: str) -> dict[str, Any]:
    try:
        obj = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload(f'{what} is not JSON: {exc}') from exc
    if not isinstance(obj, dict):
        raise MalformedPayload(f'{what} is not an object')
    return obj


def encode_announce(announce: Announce) -> bytes:
    return compact_bytes(
        {
            'id': announce.id,
            'username': announce.username,
            'ip': announce.ip,
            'port': announce.port,
        }
    )


def decode_announce(data: bytes) -> Announce:
    obj = _load_object(data, 'announce')
    peer_id = obj.get('id')
    username = obj.get('username')
    port = obj.get('port')
    if not isinstance(peer_id, str) or not peer_id:
        raise MalformedPayload('announce without id')
    if not isinstance(username, str):
        raise MalformedPayload(f'announce {peer_id[:12]} without username')
    # bool is an int subclass; reject it explicitly.
    if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
        raise MalformedPayload(f'announce {peer_id[:12]} has invalid port {port!r}')
    ip = obj.get('ip')
    return Announce(peer_id, username, ip if isinstance(ip, str) else '', port)


def encode_envelope(envelope: Envelope) -> bytes:
    return compact_bytes({'from': envelope.sender, 'message': envelope.message})


def decode_envelope(data: bytes) -> Envelope:
    obj = _load_object(data, 'envelope')
    sender = obj.get('from')
    message = obj.get('message')
    if not isinstance(sender, str) or not isinstance(message, str):
        raise MalformedPayload('envelope needs string "from" and "message"')
    return Envelope(sender, message)
