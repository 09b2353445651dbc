import logging
import socket

from deskchat.errors import PortExhausted

logger = logging.getLogger(__name__)


def port_is_free(port: int, host: str = '0.0.0.0') -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def allocate_port(start_port: int, max_attempts: int, host: str = '0.0.0.0') -> int:
    """Return the first port from start_port that a probe socket could bind.

    The probe is released before returning, so the caller must bind again
    and be ready for someone else to win the race.
    """
    for port in range(start_port, min(start_port + max_attempts, 65536)):
        if port_is_free(port, host):
            logger.debug('Port %s is free', port)
            return port
        logger.debug('Port %s is busy', port)
    raise PortExhausted(start_port, max_attempts)
