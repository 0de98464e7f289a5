"""Relay server: connection handling, message dispatch, round lifecycle.

Handles:
- Accepting TCP connections (one thread, blocking accept)
- Reading client frames (one thread, a selector over all client sockets)
- Handshake and relaying gameplay events to every other player
- Resetting the round when fewer than two players are alive
"""

import argparse
import logging
import selectors
import socket
import threading
import time
from typing import Optional

from .protocol import (
    PROTOCOL_VERSION, ProtocolError, encode,
    HandshakeRequest, SpacialInfo, AttackAnim, CarryChangeInfo, StunnedInfo,
    HandshakeAck, Connected, Disconnected, Spacial, Death, Attack, CarryChange,
    Stunned, GameReset,
)
from .session import Client, ClientRegistry, ClientState, MAX_NAME_LENGTH
from ..settings import DEFAULT_SETTINGS, load_settings

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class RelayServer:
    """Relay server for a single shared game session.

    Usage:
        server = RelayServer(host='0.0.0.0', port=7777)
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        host: str = '0.0.0.0',
        port: int = 7777,
        tick_delay: float = 0.01,
        backlog: int = 16,
    ):
        self.host = host
        self.port = port
        self.tick_delay = tick_delay
        self.backlog = backlog

        self.registry = ClientRegistry()

        # Server state
        self._listener: Optional[socket.socket] = None
        self._stop_event = threading.Event()
        self._threads = []

        # Wakes the readiness loop on new connections and on stop
        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None

    @property
    def address(self):
        """Bound (host, port) of the listening socket."""
        if self._listener is None:
            return None
        return self._listener.getsockname()[:2]

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._stop_event.is_set()

    def start(self):
        """Bind the listener and start the accept and readiness threads."""
        self._stop_event.clear()
        self._listener = socket.create_server(
            (self.host, self.port), backlog=self.backlog,
        )
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._wake_r, selectors.EVENT_READ)

        self._threads = [
            threading.Thread(target=self._accept_loop, name='relay-accept', daemon=True),
            threading.Thread(target=self._readiness_loop, name='relay-readiness', daemon=True),
        ]
        for thread in self._threads:
            thread.start()

        addr = self.address
        logger.info(f"Server started on {addr[0]}:{addr[1]}, ready to receive connections")

    def stop(self):
        """Stop both loops and close every connection."""
        if self._listener is None or self._stop_event.is_set():
            return

        logger.info("Stopping server")
        self._stop_event.set()

        # Unblock accept()
        try:
            self._listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._listener.close()
        self._wake()

        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=2.0)
        self._threads = []

        for client in self.registry.snapshot():
            self.registry.remove(client)
            client.close()

        self._selector.close()
        self._wake_r.close()
        self._wake_w.close()
        logger.info("Server stopped")

    def serve_forever(self):
        """Start the server and block until stop() is called."""
        self.start()
        while not self._stop_event.wait(0.5):
            pass

    def __enter__(self) -> 'RelayServer':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _wake(self):
        try:
            self._wake_w.send(b'\0')
        except OSError:
            pass  # a wake-up is already pending, or the channel is closed

    def _drain_wake(self):
        try:
            while self._wake_r.recv(RECV_SIZE):
                pass
        except OSError:
            pass

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _accept_loop(self):
        """Accept clients until stopped. Handshakes happen in the readiness loop."""
        while not self._stop_event.is_set():
            try:
                conn, _ = self._listener.accept()
            except OSError as e:
                if not self._stop_event.is_set():
                    logger.error(f"Accept failed, no longer accepting connections: {e}")
                break

            client = Client(sock=conn)
            self.registry.add(client)
            logger.info(f"New incoming connection from {client.address}")

            self._wake()
            self.check_for_game_reset()

    def _readiness_loop(self):
        """Wait for readable client sockets and process one frame from each."""
        while not self._stop_event.is_set():
            clients = self.registry.snapshot()
            self._sync_selector(clients)

            # A buffered complete frame must not wait for more socket data
            pending = [c.sock for c in clients if c.frames.has_message()]

            readable = []
            for key, _ in self._selector.select(0 if pending else None):
                if key.fileobj is self._wake_r:
                    self._drain_wake()
                else:
                    readable.append(key.fileobj)

            if self._stop_event.is_set():
                break

            readable_set = set(readable)
            for sock in dict.fromkeys(pending + readable):
                client = self.registry.find_by_socket(sock)
                if client is None:
                    continue  # removed earlier in this pass
                self._service_client(client, sock in readable_set)

            time.sleep(self.tick_delay)

    def _sync_selector(self, clients):
        """Register new client sockets and drop removed ones from the selector."""
        current = {client.sock: client for client in clients}

        for key in list(self._selector.get_map().values()):
            if key.fileobj is not self._wake_r and key.fileobj not in current:
                self._selector.unregister(key.fileobj)

        registered = {key.fileobj for key in self._selector.get_map().values()}
        for sock, client in current.items():
            if sock in registered:
                continue
            try:
                self._selector.register(sock, selectors.EVENT_READ)
            except (OSError, ValueError) as e:
                logger.info(f"Cannot watch {client.address}, dropping it: {e}")
                self.remove_client(client)

    def _service_client(self, client: Client, readable: bool):
        """Read and process at most one frame from a client."""
        try:
            message = self._read_message(client, readable)
            if message is not None:
                self.handle_message(client, message)
        except (OSError, ProtocolError) as e:
            logger.info(f"Connection dropped with {client.id} ({client.address}): {e}")
            self.remove_client(client)
        except Exception:
            logger.exception(f"Error handling {client.address}")
            self.remove_client(client)

    def _read_message(self, client: Client, readable: bool):
        if not client.frames.has_message():
            if not readable:
                return None
            data = client.sock.recv(RECV_SIZE)
            if not data:
                raise ConnectionError("Connection closed by peer")
            client.frames.feed(data)
        return client.frames.get_message()

    def remove_client(self, client: Client):
        """Remove a client, close its socket and notify the others."""
        removed = self.registry.remove(client)
        client.close()
        if not removed:
            return

        if client.state == ClientState.CONNECTED:
            logger.info(f"{client.name} ({client.id}) disconnected")
            self.broadcast(Disconnected(client.id))

        self.check_for_game_reset()

    # =========================================================================
    # MESSAGE ROUTING
    # =========================================================================

    def handle_message(self, client: Client, message):
        """Route a decoded message based on the client's state."""
        logger.debug(f"{client.id}->S {type(message).__name__}")

        with self.registry.lock:
            connecting = client.state == ClientState.CONNECTING

        if connecting:
            self._handle_connecting(client, message)
        else:
            self._handle_connected(client, message)

    def _handle_connecting(self, client: Client, message):
        # Anything other than a handshake is ignored before the handshake
        if not isinstance(message, HandshakeRequest):
            return

        name = message.name[:MAX_NAME_LENGTH]
        if message.version != PROTOCOL_VERSION:
            logger.warning(
                f"Dropping {name} for version mismatch. {message.version} != {PROTOCOL_VERSION}"
            )
            self.remove_client(client)
            return

        with self.registry.lock:
            client.mark_connected(self.registry.assign_id(), name)
            logger.info(f"{client.name} joined as {client.id}")

            self.send_to(client, HandshakeAck(client.id))
            self.broadcast(Connected(client.id, client.name), exclude=client)
            self.send_players(client)

    def _handle_connected(self, client: Client, message):
        handlers = {
            SpacialInfo: self._handle_spacial,
            Death: self._handle_death,
            AttackAnim: self._handle_attack,
            CarryChangeInfo: self._handle_carry_change,
            StunnedInfo: self._handle_stunned,
        }

        handler = handlers.get(type(message))
        if handler:
            handler(client, message)
        else:
            logger.debug(f"Ignoring {type(message).__name__} from {client.id}")

    def _handle_spacial(self, client: Client, msg: SpacialInfo):
        with self.registry.lock:
            client.position = msg.position.copy()
        self.broadcast(Spacial(client.id, msg.position, msg.velocity), exclude=client)

    def _handle_death(self, client: Client, msg: Death):
        self.broadcast(Death(msg.target_id), exclude=client)

        with self.registry.lock:
            target = self.registry.find_by_id(msg.target_id)
            if target is not None:
                target.is_dead = True

        self.check_for_game_reset()

    def _handle_attack(self, client: Client, msg: AttackAnim):
        self.broadcast(Attack(client.id), exclude=client)

    def _handle_carry_change(self, client: Client, msg: CarryChangeInfo):
        self.broadcast(CarryChange(client.id, msg.carry), exclude=client)

    def _handle_stunned(self, client: Client, msg: StunnedInfo):
        self.broadcast(Stunned(client.id, msg.position), exclude=client)

    # =========================================================================
    # SENDING
    # =========================================================================

    def broadcast(self, message, exclude: Optional[Client] = None):
        """Send a message to every connected client except `exclude`.

        The message is encoded once. Write errors are left for the failing
        client's next read, which is where clients get removed.
        """
        data = encode(message)

        with self.registry.lock:
            for client in self.registry.snapshot():
                if client.state == ClientState.CONNECTING:
                    continue
                if exclude is not None and client is exclude:
                    continue
                self._send(client, data)

    def send_to(self, client: Client, message):
        """Send a message to a single client."""
        self._send(client, encode(message))

    def _send(self, client: Client, data: bytes):
        try:
            client.send(data)
        except OSError as e:
            logger.debug(f"Send to {client.id} ({client.address}) failed: {e}")

    def send_players(self, client: Client):
        """Send every other connected player to a client that just joined."""
        with self.registry.lock:
            for other in self.registry.snapshot():
                if other.state == ClientState.CONNECTING or other is client:
                    continue
                self.send_to(client, Connected(other.id, other.name))

    # =========================================================================
    # ROUND LIFECYCLE
    # =========================================================================

    def check_for_game_reset(self):
        """Reset the round when fewer than two connected players are alive."""
        with self.registry.lock:
            if self.registry.alive_count() < 2:
                self.broadcast(GameReset())

                for client in self.registry.snapshot():
                    client.reset()


# =============================================================================
# ENTRY POINT
# =============================================================================

def run_server(
    host: str = DEFAULT_SETTINGS['host'],
    port: int = DEFAULT_SETTINGS['port'],
    tick_delay: float = DEFAULT_SETTINGS['tick_delay'],
    log_level: str = DEFAULT_SETTINGS['log_level'],
    backlog: int = DEFAULT_SETTINGS['backlog'],
):
    """Run the relay server until interrupted."""
    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
    )

    server = RelayServer(host, port, tick_delay=tick_delay, backlog=backlog)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
    finally:
        server.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Game relay server')
    parser.add_argument('--host', help='Host to bind to')
    parser.add_argument('--port', type=int, help='Port to listen on')
    parser.add_argument('--config', help='Path to a JSON settings file')
    parser.add_argument('--tick-delay', type=float, help='Delay between read passes, in seconds')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level',
    )
    return parser


def resolve_settings(args: argparse.Namespace) -> dict:
    """Merge defaults, the settings file and explicit command line flags."""
    settings = load_settings(args.config) if args.config else load_settings()

    for key in ('host', 'port', 'tick_delay', 'log_level'):
        value = getattr(args, key)
        if value is not None:
            settings[key] = value
    return settings


def main(argv=None):
    args = build_parser().parse_args(argv)
    settings = resolve_settings(args)
    run_server(
        settings['host'],
        settings['port'],
        tick_delay=settings['tick_delay'],
        log_level=settings['log_level'],
        backlog=settings['backlog'],
    )


if __name__ == '__main__':
    main()
