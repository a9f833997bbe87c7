"""Tests for devserver/ports.py -- port allocation and sticky reuse."""

import pytest

from devserver.errors import ResourceExhaustedError
from devserver.ports import PortAllocator


class TestAllocate:
    """Allocation order, uniqueness and exhaustion."""

    def test_first_port_is_range_start(self) -> None:
        ports = PortAllocator(5173, 6000)
        assert ports.allocate("a") == 5173

    def test_ascending_scan_skips_held_ports(self) -> None:
        ports = PortAllocator(5173, 6000)
        assert [ports.allocate(s) for s in ("a", "b", "c")] == [5173, 5174, 5175]

    def test_concurrent_sessions_never_share_a_port(self) -> None:
        ports = PortAllocator(7000, 7050)
        allocated = [ports.allocate(f"s{i}") for i in range(50)]
        assert len(set(allocated)) == 50
        assert all(7000 <= port < 7050 for port in allocated)

    def test_exhaustion_raises(self) -> None:
        ports = PortAllocator(7000, 7002)
        ports.allocate("a")
        ports.allocate("b")
        with pytest.raises(ResourceExhaustedError, match="7000-7001"):
            ports.allocate("c")
        assert ports.held_port("c") is None

    def test_reallocating_same_session_keeps_its_port(self) -> None:
        ports = PortAllocator(7000, 7002)
        first = ports.allocate("a")
        assert ports.allocate("a") == first
        assert ports.held_ports() == {"a": first}

    def test_empty_range_rejected(self) -> None:
        with pytest.raises(ValueError):
            PortAllocator(6000, 6000)

    def test_capacity(self) -> None:
        assert PortAllocator(5173, 6000).capacity == 827


class TestStickyReuse:
    """A stopped session gets its previous port back when it is free."""

    def test_release_keeps_last_known_port(self) -> None:
        ports = PortAllocator(5173, 6000)
        ports.allocate("a")
        port_b = ports.allocate("b")
        ports.release("b")
        assert ports.held_port("b") is None
        assert ports.last_known_port("b") == port_b
        assert ports.allocate("b") == port_b

    def test_sticky_port_preferred_over_lower_free_port(self) -> None:
        ports = PortAllocator(5173, 6000)
        ports.allocate("a")
        port_b = ports.allocate("b")
        ports.release("a")
        ports.release("b")
        # 5173 is free again, but "b" should still get its own port back.
        assert ports.allocate("b") == port_b

    def test_sticky_port_yields_to_running_session(self) -> None:
        ports = PortAllocator(5173, 6000)
        port_a = ports.allocate("a")
        ports.release("a")
        assert ports.allocate("b") == port_a
        # "a" restarts while "b" holds its old port.
        new_port = ports.allocate("a")
        assert new_port != port_a
        assert ports.last_known_port("a") == new_port

    def test_last_known_outside_range_is_ignored(self) -> None:
        ports = PortAllocator(5173, 6000)
        ports._last_known["a"] = 80
        assert ports.allocate("a") == 5173

    def test_forget_drops_sticky_port(self) -> None:
        ports = PortAllocator(5173, 6000)
        ports.allocate("a")
        ports.allocate("b")
        ports.release("b")
        ports.release("a")
        ports.forget("b")
        assert ports.last_known_port("b") is None
        assert ports.allocate("b") == 5173

    def test_release_unknown_session_is_noop(self) -> None:
        ports = PortAllocator(5173, 6000)
        ports.release("nobody")
        assert ports.held_ports() == {}
