"""Network client for connecting to the relay server.

Usage:
    client = RelayClient()
    client.connect('localhost', 7777)
    client.handshake('PlayerName')
    ack = client.wait_for(HandshakeAck)

    client.send_spacial(Vector2(10, 20), Vector2(1, 0))

    # Drain relayed events
    for message in client.poll():
        ...

Runs socket reads in a background thread; decoded messages are handed over
through a queue, so poll() and wait_for() are safe to call from any thread.
"""

import logging
import socket
import threading
import time
from collections import deque
from enum import Enum, auto
from queue import Queue, Empty
from typing import Callable, List, Optional, Type

from pygame.math import Vector2

from .protocol import (
    PROTOCOL_VERSION, FrameReader, ProtocolError, decode_server_message, encode,
    HandshakeRequest, SpacialInfo, Death, AttackAnim, CarryChangeInfo, StunnedInfo,
    HandshakeAck,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 4096

_CLOSED = object()  # queued by the reader thread when the connection ends


class ClientState(Enum):
    """Client connection state."""
    DISCONNECTED = auto()
    CONNECTING = auto()   # Socket open, handshake not acknowledged yet
    CONNECTED = auto()


class RelayClient:
    """Blocking relay client with a background reader thread."""

    def __init__(self):
        self.state = ClientState.DISCONNECTED
        self.player_id = -1
        self.player_name = ""

        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._send_lock = threading.Lock()

        # Thread-safe handover from the reader thread
        self._incoming: Queue = Queue()
        # Messages skipped by wait_for(), returned by the next poll()
        self._backlog: deque = deque()
        self._closed = threading.Event()

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def connect(self, host: str, port: int, timeout: float = 5.0):
        """Open the connection and start the reader thread."""
        if self._running:
            return

        self._sock = socket.create_connection((host, port), timeout=timeout)
        self._sock.settimeout(None)
        self.state = ClientState.CONNECTING
        self._closed.clear()

        self._running = True
        self._thread = threading.Thread(target=self._run_reader, daemon=True)
        self._thread.start()

    def close(self):
        """Disconnect from the server."""
        self._running = False
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()

        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self.state = ClientState.DISCONNECTED

    def wait_closed(self, timeout: float = 2.0) -> bool:
        """Wait until the server closes the connection."""
        return self._closed.wait(timeout)

    def __enter__(self) -> 'RelayClient':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # =========================================================================
    # SENDING
    # =========================================================================

    def handshake(self, name: str, version: int = PROTOCOL_VERSION):
        self.player_name = name
        self.send(HandshakeRequest(version, name))

    def send_spacial(self, position: Vector2, velocity: Vector2):
        self.send(SpacialInfo(Vector2(position), Vector2(velocity)))

    def send_death(self, target_id: int):
        self.send(Death(target_id))

    def send_attack(self):
        self.send(AttackAnim())

    def send_carry_change(self, carry: int):
        self.send(CarryChangeInfo(carry))

    def send_stunned(self, position: Vector2):
        self.send(StunnedInfo(Vector2(position)))

    def send(self, message):
        """Send any client → server message."""
        if self._sock is None:
            raise ConnectionError("Not connected")
        with self._send_lock:
            self._sock.sendall(encode(message))

    # =========================================================================
    # RECEIVING
    # =========================================================================

    def poll(self) -> List[object]:
        """Return every message received so far, without blocking."""
        messages = list(self._backlog)
        self._backlog.clear()

        while True:
            try:
                message = self._incoming.get_nowait()
            except Empty:
                break
            if message is _CLOSED:
                continue
            messages.append(message)
        return messages

    def wait_for(
        self,
        message_cls: Type,
        timeout: float = 2.0,
        predicate: Optional[Callable[[object], bool]] = None,
    ):
        """Block until a message of the given class arrives and return it.

        Messages of other classes are kept for the next poll().
        Raises TimeoutError if nothing matches in time and ConnectionError
        if the server closes the connection first.
        """
        def matches(message) -> bool:
            return isinstance(message, message_cls) and (predicate is None or predicate(message))

        for message in list(self._backlog):
            if matches(message):
                self._backlog.remove(message)
                return message

        if self._closed.is_set() and self._incoming.empty():
            raise ConnectionError("Connection closed by server")

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"No {message_cls.__name__} within {timeout}s")
            try:
                message = self._incoming.get(timeout=remaining)
            except Empty:
                raise TimeoutError(f"No {message_cls.__name__} within {timeout}s")

            if message is _CLOSED:
                raise ConnectionError("Connection closed by server")
            if matches(message):
                return message
            self._backlog.append(message)

    def _run_reader(self):
        """Reader thread: decode server frames into the incoming queue."""
        frames = FrameReader(decoder=decode_server_message)
        try:
            while self._running:
                data = self._sock.recv(RECV_SIZE)
                if not data:
                    break  # Connection closed

                frames.feed(data)
                while True:
                    message = frames.get_message()
                    if message is None:
                        break
                    if isinstance(message, HandshakeAck):
                        self.player_id = message.client_id
                        self.state = ClientState.CONNECTED
                    self._incoming.put(message)
        except (OSError, ProtocolError) as e:
            if self._running:
                logger.info(f"Connection lost: {e}")
        finally:
            self._running = False
            self.state = ClientState.DISCONNECTED
            self._closed.set()
            self._incoming.put(_CLOSED)
