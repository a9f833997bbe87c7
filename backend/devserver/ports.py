"""Port allocation for dev servers.

Ports come from a bounded half-open range. A session keeps a "last known"
port after it stops so that restarting it yields the same preview URL,
but that reservation always yields to sessions that are actually holding
a port.
"""

import structlog

from devserver.errors import ResourceExhaustedError

logger = structlog.get_logger()


class PortAllocator:
    """Assigns ports from ``[port_min, port_max)`` to sessions.

    The allocator does no locking of its own; the manager calls it while
    holding its registry lock so that port selection and registry mutation
    are atomic with respect to concurrent starts.

    Attributes:
        port_min: First port of the range (inclusive).
        port_max: End of the range (exclusive).
    """

    def __init__(self, port_min: int = 5173, port_max: int = 6000) -> None:
        if port_min >= port_max:
            raise ValueError(f"Empty port range: [{port_min}, {port_max})")
        self.port_min = port_min
        self.port_max = port_max
        self._held: dict[str, int] = {}
        self._last_known: dict[str, int] = {}

    @property
    def capacity(self) -> int:
        """Number of ports in the range."""
        return self.port_max - self.port_min

    def allocate(self, session_id: str) -> int:
        """Allocate a port for a session.

        Prefers the session's last known port when no other session holds it,
        otherwise returns the lowest free port of the range.

        Args:
            session_id: The session requesting a port.

        Returns:
            The allocated port number.

        Raises:
            ResourceExhaustedError: If every port in the range is held.
        """
        excluded = {
            port for holder, port in self._held.items() if holder != session_id
        }

        port = self._last_known.get(session_id)
        if port is None or port in excluded or not self._in_range(port):
            port = self._first_free(excluded)

        self._held[session_id] = port
        self._last_known[session_id] = port
        logger.debug("port_allocated", session_id=session_id, port=port)
        return port

    def release(self, session_id: str) -> None:
        """Release the port held by a session, keeping it as last known."""
        port = self._held.pop(session_id, None)
        if port is not None:
            logger.debug("port_released", session_id=session_id, port=port)

    def forget(self, session_id: str) -> None:
        """Drop every trace of a session, including its sticky port."""
        self._held.pop(session_id, None)
        self._last_known.pop(session_id, None)

    def held_port(self, session_id: str) -> int | None:
        """Return the port currently held by a session, if any."""
        return self._held.get(session_id)

    def last_known_port(self, session_id: str) -> int | None:
        """Return the last port assigned to a session, held or not."""
        return self._last_known.get(session_id)

    def held_ports(self) -> dict[str, int]:
        """Return a snapshot of session to port assignments currently held."""
        return dict(self._held)

    def _first_free(self, excluded: set[int]) -> int:
        for port in range(self.port_min, self.port_max):
            if port not in excluded:
                return port
        raise ResourceExhaustedError(
            f"No available ports in range {self.port_min}-{self.port_max - 1}"
        )

    def _in_range(self, port: int) -> bool:
        return self.port_min <= port < self.port_max
