import nacl.encoding
import nacl.signing


def node_id(verify_key) -> str:
    """Peer id = public key in hex (32 bytes of entropy)."""
    return verify_key.encode(nacl.encoding.HexEncoder).decode()


def new_node_id() -> str:
    """Fresh Ed25519 public key as this process's id; the signing half is not kept."""
    return node_id(nacl.signing.SigningKey.generate().verify_key)
