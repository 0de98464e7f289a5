"""Network module: wire protocol, client registry, relay server and client."""

from .protocol import MessageType, FrameReader, PROTOCOL_VERSION, encode, ProtocolError
from .session import Client, ClientState, ClientRegistry
from .server import RelayServer, run_server
from .client import RelayClient
