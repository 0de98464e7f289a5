"""Client connection state and the shared client registry."""

import logging
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterator, List, Optional

from pygame.math import Vector2

from .protocol import FrameReader

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 20
INVALID_ID = -1


class ClientState(Enum):
    """Client connection states."""
    CONNECTING = auto()  # Socket accepted, no valid handshake yet
    CONNECTED = auto()   # Handshake accepted, id assigned


@dataclass(eq=False)
class Client:
    """A connected game client.

    Identity is the object itself (eq=False), so two clients with equal
    fields are still different connections.
    """
    sock: socket.socket
    id: int = INVALID_ID
    name: str = ""
    state: ClientState = ClientState.CONNECTING
    position: Vector2 = field(default_factory=Vector2)
    is_dead: bool = False

    # Receive buffer for partially arrived frames
    frames: FrameReader = field(default_factory=FrameReader)

    # Address for logging
    address: str = ""

    def __post_init__(self):
        if not self.address:
            try:
                peername = self.sock.getpeername()
            except (OSError, AttributeError):
                peername = None
            if isinstance(peername, tuple) and len(peername) >= 2:
                self.address = f"{peername[0]}:{peername[1]}"

    @property
    def is_connected(self) -> bool:
        return self.state == ClientState.CONNECTED

    def mark_connected(self, client_id: int, name: str):
        """Complete the handshake. There is no way back to CONNECTING."""
        self.id = client_id
        self.name = name[:MAX_NAME_LENGTH]
        self.state = ClientState.CONNECTED

    def reset(self):
        """Reset per-round state."""
        self.is_dead = False

    def send(self, data: bytes):
        """Write already encoded bytes to the socket."""
        self.sock.sendall(data)

    def close(self):
        """Close the connection."""
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket of {self.address}: {e}")


class ClientRegistry:
    """Ordered collection of clients, guarded by a single lock.

    Insertion order is connection order. The lock is reentrant so a holder
    can call back into the registry (e.g. broadcast during the reset check).
    The id counter lives here and is advanced under the same lock.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._clients: List[Client] = []
        self._next_id = 0

    def add(self, client: Client):
        with self.lock:
            if client in self._clients:
                raise ValueError(f"Client {client.address} already registered")
            self._clients.append(client)

    def remove(self, client: Client) -> bool:
        """Remove a client. Returns False if it was not registered."""
        with self.lock:
            try:
                self._clients.remove(client)
            except ValueError:
                return False
            return True

    def assign_id(self) -> int:
        """Take the next client id."""
        with self.lock:
            client_id = self._next_id
            self._next_id += 1
            return client_id

    def find_by_socket(self, sock) -> Optional[Client]:
        with self.lock:
            for client in self._clients:
                if client.sock is sock:
                    return client
        return None

    def find_by_id(self, client_id: int) -> Optional[Client]:
        """Find a connected client by id."""
        with self.lock:
            for client in self._clients:
                if client.is_connected and client.id == client_id:
                    return client
        return None

    def snapshot(self) -> List[Client]:
        """Copy of the current clients, in connection order."""
        with self.lock:
            return list(self._clients)

    def alive_count(self) -> int:
        """Number of connected clients that are not dead."""
        with self.lock:
            return sum(1 for c in self._clients if c.is_connected and not c.is_dead)

    def __len__(self) -> int:
        with self.lock:
            return len(self._clients)

    def __iter__(self) -> Iterator[Client]:
        return iter(self.snapshot())

    def __contains__(self, client: Client) -> bool:
        with self.lock:
            return client in self._clients
