"""
Dropshare - Wire protocol definitions.

Created by orpheus497

This module defines the messages exchanged between two peers. Every message
kind is a dataclass carrying a MessageType tag; Protocol packs them into
frames made of a header followed by a JSON payload:
- Protocol version (1 byte)
- Message type (2 bytes)
- Payload length (4 bytes)

Total header size: 7 bytes

Binary fields (keys, challenges, signatures, IVs) are hex encoded; chunk
data is base64 encoded.
"""

import base64
import binascii
import json
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type, Union

from .constants import (
    MAX_DISPLAY_NAME_LENGTH,
    MAX_FILE_NAME_LENGTH,
    MAX_MESSAGE_SIZE,
    PROTOCOL_VERSION,
)
from .crypto import bytes_to_hex, hex_to_bytes
from .errors import ErrorCode, ProtocolError


class MessageType(IntEnum):
    """Message type definitions."""

    # Handshake
    HELLO = 1
    KEY_EXCHANGE = 2
    KEY_EXCHANGE_REPLY = 3
    CHALLENGE = 4
    CHALLENGE_RESPONSE = 5
    VERIFICATION_COMPLETE = 6
    DISCONNECTED = 7

    # File sharing
    FILES_UPDATE = 20
    REQUEST_FILE = 21
    FILE_METADATA = 22
    FILE_CHUNK = 23


def _require(payload: Dict[str, Any], name: str, kind: type, msg_type: MessageType) -> Any:
    if name not in payload:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Missing required field: {name}",
            {"message_type": msg_type.name, "field": name},
        )
    value = payload[name]
    # bool is a subclass of int; never accept one for the other
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Field {name} must be {kind.__name__}",
            {"message_type": msg_type.name, "field": name},
        )
    return value


def _require_count(payload: Dict[str, Any], name: str, msg_type: MessageType) -> int:
    value = _require(payload, name, int, msg_type)
    if value < 0:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Field {name} must not be negative",
            {"message_type": msg_type.name, "field": name, "value": value},
        )
    return value


def _require_name(payload: Dict[str, Any], name: str, limit: int, msg_type: MessageType) -> str:
    value = _require(payload, name, str, msg_type)
    if len(value) > limit:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Field {name} too long: {len(value)} > {limit}",
            {"message_type": msg_type.name, "field": name},
        )
    return value


@dataclass(frozen=True)
class SharedFileEntry:
    """A file offered by a peer.

    Attributes:
        id: Opaque unique file identifier
        name: File name shown to the receiver
        size: File size in bytes
    """

    id: str
    name: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "size": self.size}

    @staticmethod
    def from_dict(data: Any) -> "SharedFileEntry":
        if not isinstance(data, dict):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Manifest entry must be an object")
        return SharedFileEntry(
            id=_require(data, "id", str, MessageType.FILES_UPDATE),
            name=_require_name(data, "name", MAX_FILE_NAME_LENGTH, MessageType.FILES_UPDATE),
            size=_require_count(data, "size", MessageType.FILES_UPDATE),
        )


@dataclass(frozen=True)
class Hello:
    """First message of a connector, announcing its display name."""

    TYPE: ClassVar[MessageType] = MessageType.HELLO

    name: str

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Hello":
        return cls(name=_require_name(payload, "name", MAX_DISPLAY_NAME_LENGTH, cls.TYPE))


@dataclass(frozen=True)
class KeyExchange:
    """Offer of the sender's key agreement and signing public keys."""

    TYPE: ClassVar[MessageType] = MessageType.KEY_EXCHANGE

    dh_public_key: bytes
    signing_public_key: bytes

    def to_payload(self) -> Dict[str, Any]:
        return {
            "dh_public_key": bytes_to_hex(self.dh_public_key),
            "signing_public_key": bytes_to_hex(self.signing_public_key),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        return cls(
            dh_public_key=hex_to_bytes(_require(payload, "dh_public_key", str, cls.TYPE)),
            signing_public_key=hex_to_bytes(
                _require(payload, "signing_public_key", str, cls.TYPE)
            ),
        )


@dataclass(frozen=True)
class KeyExchangeReply(KeyExchange):
    """Answer to a KeyExchange; never answered itself."""

    TYPE: ClassVar[MessageType] = MessageType.KEY_EXCHANGE_REPLY


@dataclass(frozen=True)
class Challenge:
    TYPE: ClassVar[MessageType] = MessageType.CHALLENGE

    challenge: bytes

    def to_payload(self) -> Dict[str, Any]:
        return {"challenge": bytes_to_hex(self.challenge)}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Challenge":
        return cls(challenge=hex_to_bytes(_require(payload, "challenge", str, cls.TYPE)))


@dataclass(frozen=True)
class ChallengeResponse:
    TYPE: ClassVar[MessageType] = MessageType.CHALLENGE_RESPONSE

    signature: bytes

    def to_payload(self) -> Dict[str, Any]:
        return {"signature": bytes_to_hex(self.signature)}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChallengeResponse":
        return cls(signature=hex_to_bytes(_require(payload, "signature", str, cls.TYPE)))


@dataclass(frozen=True)
class VerificationComplete:
    TYPE: ClassVar[MessageType] = MessageType.VERIFICATION_COMPLETE

    def to_payload(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "VerificationComplete":
        return cls()


@dataclass(frozen=True)
class Disconnected:
    TYPE: ClassVar[MessageType] = MessageType.DISCONNECTED

    def to_payload(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Disconnected":
        return cls()


@dataclass(frozen=True)
class FilesUpdate:
    """The sender's complete current manifest."""

    TYPE: ClassVar[MessageType] = MessageType.FILES_UPDATE

    files: Tuple[SharedFileEntry, ...] = field(default_factory=tuple)

    def to_payload(self) -> Dict[str, Any]:
        return {"files": [entry.to_dict() for entry in self.files]}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FilesUpdate":
        files = _require(payload, "files", list, cls.TYPE)
        return cls(files=tuple(SharedFileEntry.from_dict(item) for item in files))


@dataclass(frozen=True)
class RequestFile:
    TYPE: ClassVar[MessageType] = MessageType.REQUEST_FILE

    file_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"file_id": self.file_id}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RequestFile":
        return cls(file_id=_require(payload, "file_id", str, cls.TYPE))


@dataclass(frozen=True)
class FileMetadata:
    """Announces an incoming file transfer.

    Attributes:
        file_id: Identifier from the sender's manifest
        name: File name
        size: Total file size in bytes
        total_chunks: Number of FileChunk messages that follow
        encrypted: Whether the sender holds a session key for this peer
    """

    TYPE: ClassVar[MessageType] = MessageType.FILE_METADATA

    file_id: str
    name: str
    size: int
    total_chunks: int
    encrypted: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "name": self.name,
            "size": self.size,
            "total_chunks": self.total_chunks,
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FileMetadata":
        return cls(
            file_id=_require(payload, "file_id", str, cls.TYPE),
            name=_require_name(payload, "name", MAX_FILE_NAME_LENGTH, cls.TYPE),
            size=_require_count(payload, "size", cls.TYPE),
            total_chunks=_require_count(payload, "total_chunks", cls.TYPE),
            encrypted=_require(payload, "encrypted", bool, cls.TYPE),
        )


@dataclass(frozen=True)
class FileChunk:
    """One slice of a file, encrypted when ``encrypted`` is set."""

    TYPE: ClassVar[MessageType] = MessageType.FILE_CHUNK

    file_id: str
    chunk_index: int
    data: bytes
    is_last: bool
    encrypted: bool
    iv: Optional[bytes] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "file_id": self.file_id,
            "chunk_index": self.chunk_index,
            "data": base64.b64encode(self.data).decode("ascii"),
            "is_last": self.is_last,
            "encrypted": self.encrypted,
        }
        if self.iv is not None:
            payload["iv"] = bytes_to_hex(self.iv)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FileChunk":
        try:
            data = base64.b64decode(_require(payload, "data", str, cls.TYPE), validate=True)
        except binascii.Error as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Invalid chunk data encoding: {e}"
            )

        iv = payload.get("iv")
        if iv is not None:
            iv = hex_to_bytes(_require(payload, "iv", str, cls.TYPE))

        return cls(
            file_id=_require(payload, "file_id", str, cls.TYPE),
            chunk_index=_require_count(payload, "chunk_index", cls.TYPE),
            data=data,
            is_last=_require(payload, "is_last", bool, cls.TYPE),
            encrypted=_require(payload, "encrypted", bool, cls.TYPE),
            iv=iv,
        )


Message = Union[
    Hello,
    KeyExchange,
    KeyExchangeReply,
    Challenge,
    ChallengeResponse,
    VerificationComplete,
    Disconnected,
    FilesUpdate,
    RequestFile,
    FileMetadata,
    FileChunk,
]

MESSAGE_CLASSES: Dict[MessageType, Type] = {
    cls.TYPE: cls
    for cls in (
        Hello,
        KeyExchange,
        KeyExchangeReply,
        Challenge,
        ChallengeResponse,
        VerificationComplete,
        Disconnected,
        FilesUpdate,
        RequestFile,
        FileMetadata,
        FileChunk,
    )
}


class Protocol:
    """Network protocol handler."""

    VERSION = PROTOCOL_VERSION
    HEADER_SIZE = 7
    MAX_PAYLOAD_SIZE = MAX_MESSAGE_SIZE

    @staticmethod
    def pack_message(message: Message) -> bytes:
        """
        Pack a message with protocol header.

        Format:
        - Version: 1 byte (unsigned char)
        - Message Type: 2 bytes (unsigned short, big-endian)
        - Payload Length: 4 bytes (unsigned int, big-endian)
        - Payload: variable length (JSON)

        Raises:
            ProtocolError: If the message is not a known kind or is too large
        """
        msg_type = getattr(message, "TYPE", None)
        if msg_type not in MESSAGE_CLASSES:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unknown message kind: {type(message).__name__}",
            )

        payload_bytes = json.dumps(message.to_payload(), separators=(",", ":")).encode("utf-8")

        if len(payload_bytes) > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {len(payload_bytes)} bytes",
                {"size": len(payload_bytes), "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        header = struct.pack("!BHI", Protocol.VERSION, int(msg_type), len(payload_bytes))
        return header + payload_bytes

    @staticmethod
    def unpack_message(data: bytes) -> Message:
        """
        Unpack one framed message.

        The channel is message oriented, so ``data`` must hold exactly one
        frame.

        Raises:
            ProtocolError: For short or oversized frames, unsupported versions,
                unknown type tags, malformed JSON or missing fields
        """
        if len(data) < Protocol.HEADER_SIZE:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Frame too short: {len(data)} bytes",
                {"size": len(data)},
            )

        version, msg_type_int, length = struct.unpack("!BHI", data[: Protocol.HEADER_SIZE])

        if version != Protocol.VERSION:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unsupported protocol version: {version}",
                {"version": version, "expected": Protocol.VERSION},
            )

        if length > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {length} bytes",
                {"size": length, "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        if len(data) != Protocol.HEADER_SIZE + length:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                "Frame length does not match header",
                {"declared": length, "actual": len(data) - Protocol.HEADER_SIZE},
            )

        try:
            msg_type = MessageType(msg_type_int)
        except ValueError:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Invalid message type: {msg_type_int}",
                {"type": msg_type_int},
            )

        try:
            payload = json.loads(data[Protocol.HEADER_SIZE :].decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Failed to parse message: {e}", {"error": str(e)}
            )

        if not isinstance(payload, dict):
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                "Payload must be a JSON object",
                {"message_type": msg_type.name},
            )

        return MESSAGE_CLASSES[msg_type].from_payload(payload)
