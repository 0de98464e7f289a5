"""Network protocol: message types, binary layout, framing.

Wire format (all values little-endian):
    [2-byte unsigned message type][type-specific fields]

Strings are UTF-8 bytes prefixed with a 7-bit variable-length byte count
(low 7 bits first, high bit set on every byte except the last).

The same message type can have a different layout per direction, e.g. a
HANDSHAKE from a client carries version + name, while the server's reply
carries only the assigned id. Decoding therefore goes through one of two
tables: CLIENT_MESSAGES (what the server reads) or SERVER_MESSAGES
(what a client reads).
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Dict, Optional, Tuple, Type

from pygame.math import Vector2

PROTOCOL_VERSION = 1

MAX_STRING_SIZE = 4096  # bytes, guards the length prefix of incoming names

_U8 = struct.Struct('<B')
_U16 = struct.Struct('<H')
_I16 = struct.Struct('<h')
_I32 = struct.Struct('<i')
_VEC2 = struct.Struct('<ff')


class MessageType(IntEnum):
    """Network message types (wire tag values)."""
    HANDSHAKE = 0       # Client → Server: version + name; Server → Client: assigned id
    CONNECTED = 1       # Server → Client: a player joined
    DISCONNECTED = 2    # Server → Client: a player left
    SPACIAL_INFO = 3    # Client → Server: own position/velocity; Server → Client: relayed
    DEATH = 4           # Both directions: target player id
    ATTACK_ANIM = 5     # Client → Server: attack animation; Server → Client: relayed
    CARRY_CHANGE = 6    # Both directions: carry value
    STUNNED = 7         # Both directions: stun position
    GAME_RESET = 8      # Server → Client: round is over, reset


class ProtocolError(ValueError):
    """A frame could not be decoded; the stream cannot be resynchronised."""


class IncompleteFrame(Exception):
    """Buffer does not hold a complete frame yet."""


# =============================================================================
# PRIMITIVES
# =============================================================================

class _Cursor:
    """Sequential reader over a receive buffer."""

    def __init__(self, data):
        self._data = data
        self.offset = 0

    def _unpack(self, fmt: struct.Struct):
        end = self.offset + fmt.size
        if end > len(self._data):
            raise IncompleteFrame()
        values = fmt.unpack_from(self._data, self.offset)
        self.offset = end
        return values

    def u8(self) -> int:
        return self._unpack(_U8)[0]

    def u16(self) -> int:
        return self._unpack(_U16)[0]

    def i16(self) -> int:
        return self._unpack(_I16)[0]

    def i32(self) -> int:
        return self._unpack(_I32)[0]

    def vector(self) -> Vector2:
        return Vector2(*self._unpack(_VEC2))

    def string(self) -> str:
        length = 0
        shift = 0
        while True:
            byte = self.u8()
            length |= (byte & 0x7F) << shift
            if not byte & 0x80:
                break
            shift += 7
            if shift > 28:
                raise ProtocolError("Malformed string length prefix")

        if length > MAX_STRING_SIZE:
            raise ProtocolError(f"String too large: {length} bytes")

        end = self.offset + length
        if end > len(self._data):
            raise IncompleteFrame()
        raw = bytes(self._data[self.offset:end])
        self.offset = end

        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8 string: {e}") from e


def _write_string(out: bytearray, value: str):
    raw = value.encode('utf-8')
    length = len(raw)
    while length >= 0x80:
        out.append((length & 0x7F) | 0x80)
        length >>= 7
    out.append(length)
    out += raw


def _write_vector(out: bytearray, value: Vector2):
    out += _VEC2.pack(value.x, value.y)


# =============================================================================
# CLIENT → SERVER MESSAGES
# =============================================================================

@dataclass(frozen=True)
class HandshakeRequest:
    """Initial message from a client: protocol version and display name."""
    TYPE: ClassVar[MessageType] = MessageType.HANDSHAKE
    version: int
    name: str

    def write(self, out: bytearray):
        out += _U16.pack(self.version)
        _write_string(out, self.name)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'HandshakeRequest':
        return cls(version=cursor.u16(), name=cursor.string())


@dataclass(frozen=True)
class SpacialInfo:
    """Client's own position and velocity."""
    TYPE: ClassVar[MessageType] = MessageType.SPACIAL_INFO
    position: Vector2
    velocity: Vector2

    def write(self, out: bytearray):
        _write_vector(out, self.position)
        _write_vector(out, self.velocity)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'SpacialInfo':
        return cls(position=cursor.vector(), velocity=cursor.vector())


@dataclass(frozen=True)
class AttackAnim:
    """Client started its attack animation."""
    TYPE: ClassVar[MessageType] = MessageType.ATTACK_ANIM

    def write(self, out: bytearray):
        pass

    @classmethod
    def read(cls, cursor: _Cursor) -> 'AttackAnim':
        return cls()


@dataclass(frozen=True)
class CarryChangeInfo:
    """Client's carry value changed."""
    TYPE: ClassVar[MessageType] = MessageType.CARRY_CHANGE
    carry: int

    def write(self, out: bytearray):
        out += _I16.pack(self.carry)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'CarryChangeInfo':
        return cls(carry=cursor.i16())


@dataclass(frozen=True)
class StunnedInfo:
    """Client got stunned at a position."""
    TYPE: ClassVar[MessageType] = MessageType.STUNNED
    position: Vector2

    def write(self, out: bytearray):
        _write_vector(out, self.position)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'StunnedInfo':
        return cls(position=cursor.vector())


# =============================================================================
# SERVER → CLIENT MESSAGES
# =============================================================================

@dataclass(frozen=True)
class HandshakeAck:
    """Handshake accepted; carries the id assigned to the receiving client."""
    TYPE: ClassVar[MessageType] = MessageType.HANDSHAKE
    client_id: int

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'HandshakeAck':
        return cls(client_id=cursor.i32())


@dataclass(frozen=True)
class Connected:
    """A player is in the session."""
    TYPE: ClassVar[MessageType] = MessageType.CONNECTED
    client_id: int
    name: str

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)
        _write_string(out, self.name)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Connected':
        return cls(client_id=cursor.i32(), name=cursor.string())


@dataclass(frozen=True)
class Disconnected:
    """A player left the session."""
    TYPE: ClassVar[MessageType] = MessageType.DISCONNECTED
    client_id: int

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Disconnected':
        return cls(client_id=cursor.i32())


@dataclass(frozen=True)
class Spacial:
    """Relayed position and velocity of another player."""
    TYPE: ClassVar[MessageType] = MessageType.SPACIAL_INFO
    client_id: int
    position: Vector2
    velocity: Vector2

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)
        _write_vector(out, self.position)
        _write_vector(out, self.velocity)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Spacial':
        return cls(client_id=cursor.i32(), position=cursor.vector(), velocity=cursor.vector())


@dataclass(frozen=True)
class Death:
    """A player died. Same layout in both directions."""
    TYPE: ClassVar[MessageType] = MessageType.DEATH
    target_id: int

    def write(self, out: bytearray):
        out += _I32.pack(self.target_id)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Death':
        return cls(target_id=cursor.i32())


@dataclass(frozen=True)
class Attack:
    """Relayed attack animation of another player."""
    TYPE: ClassVar[MessageType] = MessageType.ATTACK_ANIM
    client_id: int

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Attack':
        return cls(client_id=cursor.i32())


@dataclass(frozen=True)
class CarryChange:
    """Relayed carry value of another player."""
    TYPE: ClassVar[MessageType] = MessageType.CARRY_CHANGE
    client_id: int
    carry: int

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)
        out += _I16.pack(self.carry)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'CarryChange':
        return cls(client_id=cursor.i32(), carry=cursor.i16())


@dataclass(frozen=True)
class Stunned:
    """Relayed stun of another player."""
    TYPE: ClassVar[MessageType] = MessageType.STUNNED
    client_id: int
    position: Vector2

    def write(self, out: bytearray):
        out += _I32.pack(self.client_id)
        _write_vector(out, self.position)

    @classmethod
    def read(cls, cursor: _Cursor) -> 'Stunned':
        return cls(client_id=cursor.i32(), position=cursor.vector())


@dataclass(frozen=True)
class GameReset:
    """The round is over; every player is alive again."""
    TYPE: ClassVar[MessageType] = MessageType.GAME_RESET

    def write(self, out: bytearray):
        pass

    @classmethod
    def read(cls, cursor: _Cursor) -> 'GameReset':
        return cls()


@dataclass(frozen=True)
class UnknownMessage:
    """A tag with no layout in the decoding table; only the tag was consumed."""
    type_id: int


CLIENT_MESSAGES: Dict[MessageType, Type] = {
    MessageType.HANDSHAKE: HandshakeRequest,
    MessageType.SPACIAL_INFO: SpacialInfo,
    MessageType.DEATH: Death,
    MessageType.ATTACK_ANIM: AttackAnim,
    MessageType.CARRY_CHANGE: CarryChangeInfo,
    MessageType.STUNNED: StunnedInfo,
}

SERVER_MESSAGES: Dict[MessageType, Type] = {
    MessageType.HANDSHAKE: HandshakeAck,
    MessageType.CONNECTED: Connected,
    MessageType.DISCONNECTED: Disconnected,
    MessageType.SPACIAL_INFO: Spacial,
    MessageType.DEATH: Death,
    MessageType.ATTACK_ANIM: Attack,
    MessageType.CARRY_CHANGE: CarryChange,
    MessageType.STUNNED: Stunned,
    MessageType.GAME_RESET: GameReset,
}


# =============================================================================
# ENCODE / DECODE
# =============================================================================

def encode(message) -> bytes:
    """Serialize a message to its tag followed by its payload."""
    out = bytearray(_U16.pack(message.TYPE))
    message.write(out)
    return bytes(out)


def _decode(buffer, table: Dict[MessageType, Type]) -> Tuple[object, int]:
    cursor = _Cursor(buffer)
    type_id = cursor.u16()

    try:
        message_cls = table.get(MessageType(type_id))
    except ValueError:
        message_cls = None

    if message_cls is None:
        return UnknownMessage(type_id), cursor.offset

    return message_cls.read(cursor), cursor.offset


def decode_client_message(buffer) -> Tuple[object, int]:
    """Decode one client → server frame from the start of buffer.

    Returns (message, bytes consumed). Raises IncompleteFrame if the buffer
    is too short and ProtocolError if the frame is malformed.
    """
    return _decode(buffer, CLIENT_MESSAGES)


def decode_server_message(buffer) -> Tuple[object, int]:
    """Decode one server → client frame from the start of buffer."""
    return _decode(buffer, SERVER_MESSAGES)


# =============================================================================
# FRAME READER - buffers a TCP stream into whole messages
# =============================================================================

class FrameReader:
    """Reads whole messages from a byte stream.

    Usage:
        reader = FrameReader()
        reader.feed(sock.recv(4096))
        message = reader.get_message()  # None until a full frame arrived
    """

    def __init__(self, decoder=decode_client_message):
        self._buffer = bytearray()
        self._decode = decoder

    def feed(self, data: bytes):
        """Add received data to buffer."""
        self._buffer.extend(data)

    def get_message(self) -> Optional[object]:
        """Remove and return the next complete message, or None if incomplete."""
        try:
            message, size = self._decode(self._buffer)
        except IncompleteFrame:
            return None
        del self._buffer[:size]
        return message

    def has_message(self) -> bool:
        """Check whether a complete frame is buffered, without consuming it."""
        try:
            self._decode(self._buffer)
        except IncompleteFrame:
            return False
        except ProtocolError:
            return True  # get_message() raises it to the caller
        return True

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed."""
        return len(self._buffer)
