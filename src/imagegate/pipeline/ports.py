"""Host port allocation for ephemeral verification instances.

Ports are drawn at random from a wide range so that concurrent runs on
one host rarely collide without any central coordination. Within one
process, held ports are tracked so parallel verifications never receive
the same port.

Tags:
    ports, allocation, verification, thread-safe
"""

from __future__ import annotations

import random
import socket
import threading
from collections.abc import Callable

from imagegate.core.errors import ConfigurationError, PortUnavailableError
from imagegate.core.logging import get_logger

logger = get_logger(__name__)


def can_bind(port: int, host: str = "127.0.0.1") -> bool:
    """True when nothing on this host is listening on ``port``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError:
        return False
    finally:
        sock.close()
    return True


class PortAllocator:
    """Thread-safe randomized port allocator.

    Parameters
    ----------
    low, high
        Inclusive port range.
    probe
        Availability check for a candidate port (default: local bind).
    max_attempts
        Candidates tried before giving up.
    rng
        Random source, injectable for tests.
    """

    def __init__(
        self,
        low: int = 20000,
        high: int = 59999,
        *,
        probe: Callable[[int], bool] | None = None,
        max_attempts: int = 200,
        rng: random.Random | None = None,
    ) -> None:
        if low >= high:
            raise ConfigurationError(f"Port range {low}-{high} is empty")
        self.low = low
        self.high = high
        self._probe = probe or can_bind
        self._max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()
        self._held: set[int] = set()
        self._lock = threading.Lock()

    @property
    def held(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._held)

    def acquire(self) -> int:
        """Reserve a free port.

        Raises
        ------
        PortUnavailableError
            If no free port was found within ``max_attempts`` candidates.
        """
        for _ in range(self._max_attempts):
            candidate = self._rng.randint(self.low, self.high)
            with self._lock:
                if candidate in self._held:
                    continue
                self._held.add(candidate)
            # probe outside the lock; the port is already reserved in-process
            if self._probe(candidate):
                logger.debug("port.acquired", port=candidate)
                return candidate
            with self._lock:
                self._held.discard(candidate)
        raise PortUnavailableError(
            f"No free port in {self.low}-{self.high} after {self._max_attempts} attempts"
        ).with_context(low=self.low, high=self.high)

    def release(self, port: int) -> None:
        with self._lock:
            self._held.discard(port)
        logger.debug("port.released", port=port)
