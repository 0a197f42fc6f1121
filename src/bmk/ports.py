from __future__ import annotations

import contextlib
import errno
import logging
import socket

MAX_FALLBACK_ATTEMPTS = 20

_ADDRESS_IN_USE = {errno.EADDRINUSE}
if hasattr(errno, "WSAEADDRINUSE"):  # pragma: no cover - windows only
    _ADDRESS_IN_USE.add(errno.WSAEADDRINUSE)

logger = logging.getLogger(__name__)


class PortUnavailableError(RuntimeError):
    """Raised when no usable listening port could be negotiated."""


class PortInUseError(PortUnavailableError):
    """Raised when the requested port is occupied and fallback is disabled."""


class PortFallbackExhaustedError(PortUnavailableError):
    """Raised when every candidate port in the fallback range is occupied."""


def is_port_in_use(port: int, host: str = "localhost") -> bool:
    """
    Return True when ``host:port`` is already bound by another listener.

    The probe binds a throwaway socket and releases it straight away. Errors
    other than "address already in use" are propagated. The address family is
    chosen the same way uvicorn binds its listener.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with contextlib.closing(socket.socket(family, socket.SOCK_STREAM)) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            if exc.errno in _ADDRESS_IN_USE:
                return True
            raise
    return False


def candidate_ports(port: int, fallback: bool, attempts: int = MAX_FALLBACK_ATTEMPTS) -> list[int]:
    if not fallback:
        return [port]
    return list(range(port, port + attempts))


def negotiate_port(
    port: int,
    host: str = "localhost",
    *,
    fallback: bool = False,
    attempts: int = MAX_FALLBACK_ATTEMPTS,
) -> int:
    """Return the first free port, probing sequentially from ``port``."""
    if not fallback:
        if is_port_in_use(port, host):
            raise PortInUseError(f"Port {port} on {host} is already in use.")
        return port
    for candidate in candidate_ports(port, fallback, attempts):
        if not is_port_in_use(candidate, host):
            if candidate != port:
                logger.info("Port %d is in use, falling back to %d", port, candidate)
            return candidate
        logger.debug("Port %d on %s is in use", candidate, host)
    last = port + attempts - 1
    raise PortFallbackExhaustedError(
        f"Maximum fallback attempts reached: ports {port}-{last} on {host} are all in use."
    )


__all__ = [
    "MAX_FALLBACK_ATTEMPTS",
    "PortFallbackExhaustedError",
    "PortInUseError",
    "PortUnavailableError",
    "candidate_ports",
    "is_port_in_use",
    "negotiate_port",
]
