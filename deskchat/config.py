import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping

from deskchat.errors import ConfigError

logger = logging.getLogger(__name__)

DISCOVERY_PORT = 33333
MESSAGE_PORT = 33334
BROADCAST_ADDRESS = '255.255.255.255'
ANNOUNCE_INTERVAL = 3.0
MEMBERSHIP_TIMEOUT = 10.0
PORT_ATTEMPTS = 20
CONNECT_TIMEOUT = 5.0


@dataclass(frozen=True)
class Settings:
    discovery_port: int = DISCOVERY_PORT
    message_port_base: int = MESSAGE_PORT
    broadcast_address: str = BROADCAST_ADDRESS
    announce_interval: float = ANNOUNCE_INTERVAL
    membership_timeout: float = MEMBERSHIP_TIMEOUT
    port_attempts: int = PORT_ATTEMPTS
    connect_timeout: float = CONNECT_TIMEOUT
    listen_host: str = '0.0.0.0'
    reuse_address: bool = False
    bootstrap_jitter_min: float = 0.05
    bootstrap_jitter_max: float = 0.25
    echo_delay: float = 0.1
    max_message_bytes: int = 64 * 1024
    log_level: str = 'INFO'

    @property
    def sweep_interval(self) -> float:
        # Must stay strictly under membership_timeout / 2.
        return min(self.announce_interval / 2, self.membership_timeout / 3)

    def with_overrides(self, **overrides) -> 'Settings':
        """Return a copy with every non-None override applied, then validated."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        settings = replace(self, **changes)
        settings.validate()
        return settings

    def validate(self) -> None:
        for name in ('discovery_port', 'message_port_base'):
            port = getattr(self, name)
            if not 0 < port < 65536:
                raise ConfigError(f'{name} out of range: {port}')
        for name in ('announce_interval', 'membership_timeout', 'connect_timeout', 'port_attempts', 'max_message_bytes'):
            if getattr(self, name) <= 0:
                raise ConfigError(f'{name} must be positive')
        if self.bootstrap_jitter_min < 0 or self.bootstrap_jitter_max < self.bootstrap_jitter_min:
            raise ConfigError('bootstrap jitter range is invalid')
        if self.echo_delay < 0:
            raise ConfigError('echo_delay must not be negative')
        if self.membership_timeout <= self.announce_interval:
            raise ConfigError('membership_timeout must be greater than announce_interval')
        if self.membership_timeout <= 2 * self.announce_interval:
            logger.warning(
                'membership_timeout %.1fs is not above twice the announce interval %.1fs; '
                'a single lost announce will evict peers',
                self.membership_timeout,
                self.announce_interval,
            )


def _get(env: Mapping[str, str], key: str, cast, default):
    raw = env.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigError(f'{key}={raw!r} is not a valid {cast.__name__}') from exc


def _flag(value: str) -> bool:
    lowered = value.lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(value)


_flag.__name__ = 'flag'


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from DESKCHAT_* environment variables.

    Entry points call ``load_dotenv()`` first so a local ``.env`` file feeds
    the same variables.
    """
    env = os.environ if env is None else env
    settings = Settings(
        discovery_port=_get(env, 'DESKCHAT_DISCOVERY_PORT', int, DISCOVERY_PORT),
        message_port_base=_get(env, 'DESKCHAT_MESSAGE_PORT', int, MESSAGE_PORT),
        broadcast_address=_get(env, 'DESKCHAT_BROADCAST_ADDRESS', str, BROADCAST_ADDRESS),
        announce_interval=_get(env, 'DESKCHAT_ANNOUNCE_INTERVAL', float, ANNOUNCE_INTERVAL),
        membership_timeout=_get(env, 'DESKCHAT_MEMBERSHIP_TIMEOUT', float, MEMBERSHIP_TIMEOUT),
        port_attempts=_get(env, 'DESKCHAT_PORT_ATTEMPTS', int, PORT_ATTEMPTS),
        connect_timeout=_get(env, 'DESKCHAT_CONNECT_TIMEOUT', float, CONNECT_TIMEOUT),
        listen_host=_get(env, 'DESKCHAT_LISTEN_HOST', str, '0.0.0.0'),
        reuse_address=_get(env, 'DESKCHAT_REUSE_ADDRESS', _flag, False),
        log_level=_get(env, 'DESKCHAT_LOG_LEVEL', str, 'INFO').upper(),
    )
    settings.validate()
    return settings
