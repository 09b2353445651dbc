class DeskChatError(Exception):
    pass


class ConfigError(DeskChatError):
    """Raised when a tunable is missing a valid value."""


class PortExhausted(DeskChatError):
    """Raised when no TCP port could be bound within the attempt budget."""

    def __init__(self, start_port: int, attempts: int):
        super().__init__(f'No free TCP port in {start_port}..{start_port + attempts - 1}')
        self.start_port = start_port
        self.attempts = attempts


class DiscoveryBindError(DeskChatError):
    """Raised when the UDP discovery port is already taken on this host."""


class MalformedPayload(DeskChatError, ValueError):
    pass


class IdentityError(DeskChatError):
    pass


class UnknownPeer(DeskChatError, KeyError):
    def __str__(self) -> str:
        return f'Unknown peer: {self.args[0]}' if self.args else 'Unknown peer'
