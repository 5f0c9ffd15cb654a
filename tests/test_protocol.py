"""
Dropshare - Wire protocol tests.

Created by orpheus497

Tests message framing, field encoding and rejection of malformed frames.
"""

import json
import struct

import pytest

from dropshare import crypto
from dropshare.errors import ErrorCode, ProtocolError
from dropshare.protocol import (
    Challenge,
    ChallengeResponse,
    Disconnected,
    FileChunk,
    FileMetadata,
    FilesUpdate,
    Hello,
    KeyExchange,
    KeyExchangeReply,
    MessageType,
    Protocol,
    RequestFile,
    SharedFileEntry,
    VerificationComplete,
)


def frame(msg_type: int, payload, version: int = Protocol.VERSION) -> bytes:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return struct.pack("!BHI", version, msg_type, len(body)) + body


class TestPacking:
    """Test packing and unpacking of each message kind."""

    def test_header_layout(self):
        data = Protocol.pack_message(Hello(name="Brave-Otter"))
        version, msg_type, length = struct.unpack("!BHI", data[: Protocol.HEADER_SIZE])

        assert version == Protocol.VERSION
        assert msg_type == MessageType.HELLO
        assert length == len(data) - Protocol.HEADER_SIZE
        assert json.loads(data[Protocol.HEADER_SIZE :]) == {"name": "Brave-Otter"}

    def test_handshake_messages(self):
        dh = crypto.generate_key_agreement_pair()
        signing = crypto.generate_signing_pair()
        challenge = crypto.generate_challenge()
        signature = crypto.sign(challenge, signing.private_key)

        messages = [
            Hello(name="Quiet-Heron"),
            KeyExchange(dh_public_key=dh.public_key, signing_public_key=signing.public_key),
            KeyExchangeReply(dh_public_key=dh.public_key, signing_public_key=signing.public_key),
            Challenge(challenge=challenge),
            ChallengeResponse(signature=signature),
            VerificationComplete(),
            Disconnected(),
        ]
        for message in messages:
            assert Protocol.unpack_message(Protocol.pack_message(message)) == message

    def test_key_exchange_reply_keeps_its_tag(self):
        pair = crypto.generate_key_agreement_pair()
        reply = KeyExchangeReply(dh_public_key=pair.public_key, signing_public_key=pair.public_key)

        decoded = Protocol.unpack_message(Protocol.pack_message(reply))

        assert type(decoded) is KeyExchangeReply

    def test_binary_fields_are_hex(self):
        challenge = bytes(range(32))
        data = Protocol.pack_message(Challenge(challenge=challenge))
        payload = json.loads(data[Protocol.HEADER_SIZE :])
        assert payload["challenge"] == challenge.hex()

    def test_files_update(self):
        files = (
            SharedFileEntry(id="f1", name="notes.txt", size=12),
            SharedFileEntry(id="f2", name="photo.jpg", size=150000),
        )
        decoded = Protocol.unpack_message(Protocol.pack_message(FilesUpdate(files=files)))
        assert decoded.files == files

    def test_empty_files_update(self):
        decoded = Protocol.unpack_message(Protocol.pack_message(FilesUpdate()))
        assert decoded.files == ()

    def test_file_transfer_messages(self):
        iv = bytes(12)
        messages = [
            RequestFile(file_id="f1"),
            FileMetadata(file_id="f1", name="a.bin", size=10, total_chunks=1, encrypted=True),
            FileChunk(file_id="f1", chunk_index=0, data=b"\x00\xff" * 5, is_last=True,
                      encrypted=True, iv=iv),
            FileChunk(file_id="f1", chunk_index=3, data=b"plain", is_last=False, encrypted=False),
        ]
        for message in messages:
            assert Protocol.unpack_message(Protocol.pack_message(message)) == message

    def test_chunk_without_iv_omits_field(self):
        chunk = FileChunk(file_id="f1", chunk_index=0, data=b"x", is_last=True, encrypted=False)
        payload = json.loads(Protocol.pack_message(chunk)[Protocol.HEADER_SIZE :])
        assert "iv" not in payload

    def test_full_size_chunk_fits(self):
        chunk = FileChunk(
            file_id=crypto.generate_file_id(),
            chunk_index=0,
            data=b"\xaa" * (64 * 1024 + 16),
            is_last=False,
            encrypted=True,
            iv=bytes(12),
        )
        assert Protocol.unpack_message(Protocol.pack_message(chunk)) == chunk


class TestMalformedFrames:
    """Test that undecodable input raises ProtocolError."""

    def test_unknown_type_tag(self):
        with pytest.raises(ProtocolError) as exc_info:
            Protocol.unpack_message(frame(999, {}))
        assert exc_info.value.code == ErrorCode.E206_INVALID_MESSAGE

    def test_short_frame(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(b"\x01\x00")

    def test_wrong_version(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.HELLO, {"name": "x"}, version=9))

    def test_length_mismatch(self):
        data = frame(MessageType.HELLO, {"name": "x"})
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(data + b"trailing")

    def test_oversized_declared_length(self):
        header = struct.pack("!BHI", Protocol.VERSION, MessageType.HELLO, Protocol.MAX_PAYLOAD_SIZE + 1)
        with pytest.raises(ProtocolError) as exc_info:
            Protocol.unpack_message(header)
        assert exc_info.value.code == ErrorCode.E207_MESSAGE_TOO_LARGE

    def test_invalid_json(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.HELLO, b"{not json"))

    def test_payload_not_an_object(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.HELLO, ["name"]))

    def test_missing_field(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.REQUEST_FILE, {}))

    def test_wrong_field_type(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(
                frame(
                    MessageType.FILE_METADATA,
                    {"file_id": "f", "name": "n", "size": "10", "total_chunks": 1, "encrypted": True},
                )
            )

    def test_bool_is_not_a_count(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(
                frame(
                    MessageType.FILE_CHUNK,
                    {"file_id": "f", "chunk_index": True, "data": "", "is_last": True,
                     "encrypted": False},
                )
            )

    def test_negative_chunk_index(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(
                frame(
                    MessageType.FILE_CHUNK,
                    {"file_id": "f", "chunk_index": -1, "data": "", "is_last": True,
                     "encrypted": False},
                )
            )

    def test_invalid_base64(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(
                frame(
                    MessageType.FILE_CHUNK,
                    {"file_id": "f", "chunk_index": 0, "data": "***", "is_last": True,
                     "encrypted": False},
                )
            )

    def test_invalid_hex_key(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(
                frame(MessageType.KEY_EXCHANGE, {"dh_public_key": "zz", "signing_public_key": "00"})
            )

    def test_manifest_entry_not_an_object(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.FILES_UPDATE, {"files": ["f1"]}))

    def test_name_too_long(self):
        with pytest.raises(ProtocolError):
            Protocol.unpack_message(frame(MessageType.HELLO, {"name": "x" * 1000}))

    def test_pack_rejects_unknown_objects(self):
        with pytest.raises(ProtocolError):
            Protocol.pack_message(object())
