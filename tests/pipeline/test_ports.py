"""
Tests for randomized host port allocation.
"""

from __future__ import annotations

import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from imagegate.core.errors import ConfigurationError, ErrorCategory, PortUnavailableError
from imagegate.pipeline.ports import PortAllocator, can_bind


class TestPortAllocator:
    def test_ports_within_range(self):
        allocator = PortAllocator(30000, 30100, probe=lambda port: True)
        for _ in range(50):
            assert 30000 <= allocator.acquire() <= 30100

    def test_concurrent_allocations_never_collide(self):
        allocator = PortAllocator(20000, 59999, probe=lambda port: True)
        barrier = threading.Barrier(20)

        def grab(index: int) -> int:
            if index < 20:
                barrier.wait()
            return allocator.acquire()

        with ThreadPoolExecutor(max_workers=20) as pool:
            ports = list(pool.map(grab, range(150)))

        assert len(ports) == 150
        assert len(set(ports)) == 150

    def test_held_ports_skipped_in_small_range(self):
        allocator = PortAllocator(40000, 40009, probe=lambda port: True, rng=random.Random(3))
        ports = {allocator.acquire() for _ in range(10)}
        assert ports == set(range(40000, 40010))

    def test_exhausted_range(self):
        allocator = PortAllocator(
            40000, 40001, probe=lambda port: True, max_attempts=20, rng=random.Random(5),
        )
        allocator.acquire()
        allocator.acquire()
        with pytest.raises(PortUnavailableError, match="No free port") as exc_info:
            allocator.acquire()

        assert exc_info.value.category is ErrorCategory.VERIFY
        assert exc_info.value.context.metadata == {"low": 40000, "high": 40001}

    def test_busy_ports_skipped(self):
        busy = set(range(40000, 40008))
        allocator = PortAllocator(40000, 40009, probe=lambda port: port not in busy)

        port = allocator.acquire()

        assert port in (40008, 40009)
        assert allocator.held == frozenset({port})

    def test_release_makes_port_available(self):
        allocator = PortAllocator(
            40000, 40001, probe=lambda port: True, max_attempts=50, rng=random.Random(9),
        )
        first = allocator.acquire()
        second = allocator.acquire()
        allocator.release(first)

        assert allocator.acquire() == first
        assert allocator.held == frozenset({first, second})

    def test_empty_range(self):
        with pytest.raises(ConfigurationError):
            PortAllocator(40000, 40000)


def test_can_bind_detects_listener():
    import socket

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        port = sock.getsockname()[1]
        assert can_bind(port) is False
    finally:
        sock.close()
