"""
Dropshare - File Transfer Implementation

This module handles chunked file transfer between verified peers. Files are
split into fixed-size chunks, each chunk is encrypted with the session key
shared with the receiving peer, and the receiver reassembles the chunks in
index order regardless of arrival order, tracking progress as it goes.

Author: orpheus497
Version: 1.0.0
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from . import crypto
from .constants import (
    CHUNK_SEND_DELAY,
    CLEARTEXT_FALLBACK,
    FILE_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    MAX_FILE_SIZE,
)
from .errors import (
    DecryptionError,
    DropshareError,
    EncryptionError,
    ErrorCode,
    FileTransferError,
)
from .protocol import FileChunk, FileMetadata, Message, SharedFileEntry
from .registry import PeerRegistry

logger = logging.getLogger(__name__)


def chunk_count(size: int, chunk_size: int = FILE_CHUNK_SIZE) -> int:
    """Number of chunks needed for ``size`` bytes (the last chunk may be short)."""
    return (size + chunk_size - 1) // chunk_size


@dataclass(frozen=True)
class SharedFile:
    """A local file offered to peers.

    Attributes:
        entry: Manifest entry sent to peers
        path: Location of the file on disk
    """

    entry: SharedFileEntry
    path: Path

    @property
    def id(self) -> str:
        return self.entry.id

    @staticmethod
    def from_path(file_path: Path, max_size: int = MAX_FILE_SIZE) -> "SharedFile":
        """Prepare a file for sharing.

        Args:
            file_path: Path to the file to share
            max_size: Largest accepted file size in bytes

        Returns:
            Shared file with a fresh id

        Raises:
            FileTransferError: If file is missing, not a regular file, or too large
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileTransferError(ErrorCode.E003_FILE_NOT_FOUND, f"File not found: {file_path}")

        if not file_path.is_file():
            raise FileTransferError(ErrorCode.E002_INVALID_ARGUMENT, f"Not a file: {file_path}")

        file_size = file_path.stat().st_size

        if file_size > max_size:
            raise FileTransferError(
                ErrorCode.E601_FILE_TOO_LARGE,
                f"File too large: {file_size} > {max_size}",
                {"size": file_size, "max_size": max_size},
            )

        entry = SharedFileEntry(id=crypto.generate_file_id(), name=file_path.name, size=file_size)
        return SharedFile(entry=entry, path=file_path)


@dataclass
class TransferBuffer:
    """Receiver-side state of one incoming file.

    Attributes:
        file_id: Identifier from the sender's manifest
        sender_id: Peer sending the file
        name: File name
        total_size: Announced size in bytes
        expected_chunk_count: Number of chunk slots
        chunks: Slot per chunk index, None until received
        start_time: Transfer start timestamp
    """

    file_id: str
    sender_id: str
    name: str
    total_size: int
    expected_chunk_count: int
    chunks: List[Optional[bytes]] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.chunks:
            self.chunks = [None] * self.expected_chunk_count
        self._received = sum(1 for chunk in self.chunks if chunk is not None)

    @property
    def received_count(self) -> int:
        return self._received

    def has_chunk(self, index: int) -> bool:
        return self.chunks[index] is not None

    def store(self, index: int, data: bytes) -> bool:
        """Fill a slot. Returns False if it was already filled."""
        if self.chunks[index] is not None:
            return False
        self.chunks[index] = data
        self._received += 1
        return True

    def is_complete(self) -> bool:
        return self._received == self.expected_chunk_count

    def progress(self) -> float:
        """Percentage of chunks received (0-100)."""
        if self.expected_chunk_count == 0:
            return 100.0
        return self._received / self.expected_chunk_count * 100

    def missing_chunks(self) -> List[int]:
        return [index for index, chunk in enumerate(self.chunks) if chunk is None]

    def assemble(self) -> bytes:
        """Concatenate all chunks in index order.

        Raises:
            FileTransferError: If chunks are missing
        """
        if not self.is_complete():
            missing = self.missing_chunks()
            raise FileTransferError(
                ErrorCode.E600_FILE_TRANSFER_ERROR,
                f"Cannot reconstruct: missing {len(missing)} chunks",
                {"missing_chunks": missing[:10]},
            )
        return b"".join(self.chunks)


def save_received_file(directory: Path, name: str, data: bytes) -> Path:
    """Write a received file into a directory without overwriting anything.

    Only the final path component of ``name`` is used. An existing file of
    the same name gets a numbered sibling instead.

    Args:
        directory: Destination directory (created if missing)
        name: File name announced by the sender
        data: File contents

    Returns:
        Path of the written file

    Raises:
        FileTransferError: If the file cannot be written
    """
    safe_name = Path(name.replace("\\", "/")).name
    if safe_name in ("", ".", ".."):
        safe_name = "download"

    directory = Path(directory).expanduser()
    output_path = directory / safe_name
    stem, suffix = output_path.stem, output_path.suffix
    counter = 1
    while output_path.exists():
        output_path = directory / f"{stem} ({counter}){suffix}"
        counter += 1

    try:
        directory.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise FileTransferError(
            ErrorCode.E600_FILE_TRANSFER_ERROR,
            f"Saving {safe_name} failed: {e}",
            {"path": str(output_path), "error": str(e)},
        )

    logger.info(f"Saved received file: {output_path} ({len(data)} bytes)")
    return output_path


class TransferEngine:
    """Sends shared files in encrypted chunks and reassembles incoming ones.

    The engine looks up session keys in the peer registry: chunks are
    encrypted for peers with a shared key and sent in cleartext otherwise.

    Attributes:
        registry: Shared peer registry
        chunk_size: Bytes per chunk
        chunk_delay: Pause between chunk sends (seconds)
        cleartext_fallback: Send a chunk in cleartext when encryption fails
        max_file_size: Largest incoming file accepted
        progress: Download progress per file id (0-100)
    """

    def __init__(
        self,
        registry: PeerRegistry,
        send: Callable[[str, Message], None],
        on_file_complete: Optional[Callable[[str, str, str, bytes], None]] = None,
        on_transfer_failed: Optional[Callable[[str, str, DropshareError], None]] = None,
        chunk_size: int = FILE_CHUNK_SIZE,
        chunk_delay: float = CHUNK_SEND_DELAY,
        cleartext_fallback: bool = CLEARTEXT_FALLBACK,
        max_file_size: int = MAX_FILE_SIZE,
    ):
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise FileTransferError(
                ErrorCode.E002_INVALID_ARGUMENT,
                f"Chunk size must be between 1 and {MAX_CHUNK_SIZE} bytes: {chunk_size}",
                {"chunk_size": chunk_size, "max_chunk_size": MAX_CHUNK_SIZE},
            )

        self.registry = registry
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.cleartext_fallback = cleartext_fallback
        self.max_file_size = max_file_size
        self._send = send
        self._on_file_complete = on_file_complete
        self._on_transfer_failed = on_transfer_failed

        self.buffers: Dict[Tuple[str, str], TransferBuffer] = {}
        self.progress: Dict[str, float] = {}

    # Sending

    def _encrypt(self, peer_id: str, data: bytes, key: bytes) -> Tuple[bytes, Optional[bytes]]:
        try:
            return crypto.encrypt_chunk(data, key)
        except EncryptionError as e:
            if not self.cleartext_fallback:
                raise
            logger.warning(
                f"Chunk encryption for {peer_id} failed ({e.message}), "
                f"falling back to unencrypted transmission"
            )
            return data, None

    async def send_file(self, peer_id: str, shared_file: SharedFile) -> int:
        """Send a file to a peer chunk by chunk.

        Sending stops early when the peer's session is torn down.

        Args:
            peer_id: Target peer
            shared_file: File to send

        Returns:
            Number of chunks sent

        Raises:
            FileTransferError: If the file cannot be read
            EncryptionError: If encryption fails and cleartext fallback is disabled
        """
        path = shared_file.path
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise FileTransferError(
                ErrorCode.E003_FILE_NOT_FOUND,
                f"Cannot read shared file {path}: {e}",
                {"file_id": shared_file.id, "error": str(e)},
            )

        total_chunks = chunk_count(file_size, self.chunk_size)
        key = self.registry.shared_key(peer_id)
        use_encryption = key is not None

        if not use_encryption:
            logger.warning(f"No session key for {peer_id}, sending {path.name} unencrypted")

        self._send(
            peer_id,
            FileMetadata(
                file_id=shared_file.id,
                name=shared_file.entry.name,
                size=file_size,
                total_chunks=total_chunks,
                encrypted=use_encryption,
            ),
        )
        logger.info(
            f"Starting file transfer to {peer_id}: {path.name}, "
            f"size={file_size}, chunks={total_chunks}"
        )

        start_time = time.time()
        sent = 0
        try:
            with open(path, "rb") as f:
                for chunk_index in range(total_chunks):
                    if peer_id not in self.registry:
                        logger.info(
                            f"Session with {peer_id} ended, stopping transfer of {path.name} "
                            f"after {sent}/{total_chunks} chunks"
                        )
                        return sent

                    data = f.read(self.chunk_size)
                    iv = None
                    if use_encryption:
                        data, iv = self._encrypt(peer_id, data, key)

                    self._send(
                        peer_id,
                        FileChunk(
                            file_id=shared_file.id,
                            chunk_index=chunk_index,
                            data=data,
                            is_last=chunk_index == total_chunks - 1,
                            encrypted=iv is not None,
                            iv=iv,
                        ),
                    )
                    sent += 1
                    logger.debug(f"Sent chunk {chunk_index + 1}/{total_chunks} to {peer_id}")

                    if chunk_index < total_chunks - 1:
                        await asyncio.sleep(self.chunk_delay)
        except OSError as e:
            raise FileTransferError(
                ErrorCode.E600_FILE_TRANSFER_ERROR,
                f"File transfer failed: {e}",
                {"file_id": shared_file.id, "error": str(e)},
            )

        elapsed = time.time() - start_time
        logger.info(f"File transfer completed: {path.name} to {peer_id} in {elapsed:.2f}s")
        return sent

    # Receiving

    def _fail(self, peer_id: str, file_id: str, error: DropshareError) -> None:
        self.buffers.pop((peer_id, file_id), None)
        self.progress.pop(file_id, None)
        logger.error(f"Transfer of {file_id} from {peer_id} aborted: {error}")
        if self._on_transfer_failed:
            self._on_transfer_failed(peer_id, file_id, error)

    def _complete(self, buffer: TransferBuffer) -> None:
        key = (buffer.sender_id, buffer.file_id)
        data = buffer.assemble()

        if len(data) != buffer.total_size:
            self._fail(
                buffer.sender_id,
                buffer.file_id,
                FileTransferError(
                    ErrorCode.E606_INVALID_CHUNK,
                    f"Reassembled size mismatch for {buffer.name}",
                    {"expected": buffer.total_size, "actual": len(data)},
                ),
            )
            return

        del self.buffers[key]
        self.progress.pop(buffer.file_id, None)

        elapsed = time.time() - buffer.start_time
        logger.info(
            f"File received: {buffer.name} ({len(data)} bytes) from {buffer.sender_id} "
            f"in {elapsed:.2f}s"
        )
        if self._on_file_complete:
            self._on_file_complete(buffer.sender_id, buffer.file_id, buffer.name, data)

    def handle_metadata(self, peer_id: str, message: FileMetadata) -> Optional[TransferBuffer]:
        """Allocate a buffer for an announced file.

        A repeated announcement restarts the transfer.

        Returns:
            The new buffer, or None if the announcement was rejected or the
            file is empty (and therefore already delivered)
        """
        if message.size > self.max_file_size:
            self._fail(
                peer_id,
                message.file_id,
                FileTransferError(
                    ErrorCode.E601_FILE_TOO_LARGE,
                    f"Incoming file too large: {message.size} > {self.max_file_size}",
                    {"size": message.size, "max_size": self.max_file_size},
                ),
            )
            return None

        if message.total_chunks > max(message.size, 1) or (
            message.size > 0 and message.total_chunks == 0
        ):
            self._fail(
                peer_id,
                message.file_id,
                FileTransferError(
                    ErrorCode.E606_INVALID_CHUNK,
                    f"Chunk count {message.total_chunks} inconsistent with size {message.size}",
                    {"size": message.size, "total_chunks": message.total_chunks},
                ),
            )
            return None

        if (peer_id, message.file_id) in self.buffers:
            logger.warning(f"Restarting transfer of {message.name} from {peer_id}")

        buffer = TransferBuffer(
            file_id=message.file_id,
            sender_id=peer_id,
            name=message.name,
            total_size=message.size,
            expected_chunk_count=message.total_chunks,
        )
        self.buffers[(peer_id, message.file_id)] = buffer
        self.progress[message.file_id] = 0.0
        logger.info(
            f"Receiving {message.name} from {peer_id}: size={message.size}, "
            f"chunks={message.total_chunks}, encrypted={message.encrypted}"
        )

        if buffer.is_complete():
            self._complete(buffer)
            return None
        return buffer

    def handle_chunk(self, peer_id: str, message: FileChunk) -> None:
        """Store one received chunk, completing the file when all slots are filled."""
        buffer = self.buffers.get((peer_id, message.file_id))
        if buffer is None:
            logger.debug(f"Chunk for unknown transfer {message.file_id} from {peer_id}, ignoring")
            return

        if message.chunk_index >= buffer.expected_chunk_count:
            logger.warning(
                f"Chunk index {message.chunk_index} out of range for {buffer.name} "
                f"({buffer.expected_chunk_count} chunks), ignoring"
            )
            return

        if buffer.has_chunk(message.chunk_index):
            logger.debug(f"Duplicate chunk {message.chunk_index} of {buffer.name}, ignoring")
            return

        data = message.data
        if message.encrypted:
            key = self.registry.shared_key(peer_id)
            if key is None or message.iv is None:
                self._fail(
                    peer_id,
                    message.file_id,
                    DecryptionError(
                        ErrorCode.E102_DECRYPTION_FAILED,
                        f"Cannot decrypt chunk {message.chunk_index}: "
                        f"{'no session key' if key is None else 'missing IV'}",
                        {"chunk": message.chunk_index},
                    ),
                )
                return
            try:
                data = crypto.decrypt_chunk(message.data, message.iv, key)
            except DecryptionError as e:
                e.details.setdefault("chunk", message.chunk_index)
                self._fail(peer_id, message.file_id, e)
                return

        buffer.store(message.chunk_index, data)
        self.progress[message.file_id] = buffer.progress()
        logger.debug(
            f"Received chunk {message.chunk_index + 1}/{buffer.expected_chunk_count} "
            f"of {buffer.name}"
        )

        if buffer.is_complete():
            self._complete(buffer)

    def discard_peer(self, peer_id: str) -> List[str]:
        """Drop every incoming transfer from a peer.

        Returns:
            Ids of the abandoned files
        """
        abandoned = [file_id for (sender, file_id) in self.buffers if sender == peer_id]
        for file_id in abandoned:
            buffer = self.buffers.pop((peer_id, file_id))
            self.progress.pop(file_id, None)
            logger.info(
                f"Discarded incomplete transfer of {buffer.name} from {peer_id} "
                f"({buffer.received_count}/{buffer.expected_chunk_count} chunks)"
            )
        return abandoned

    def get_progress(self, peer_id: str, file_id: str) -> Dict:
        """Get transfer progress information.

        Returns:
            Dictionary with progress details
        """
        buffer = self.buffers.get((peer_id, file_id))
        if buffer is None:
            return {"status": "not_started"}

        elapsed = time.time() - buffer.start_time
        bytes_done = sum(len(chunk) for chunk in buffer.chunks if chunk is not None)
        speed = bytes_done / elapsed if elapsed > 0 else 0

        return {
            "status": "complete" if buffer.is_complete() else "in_progress",
            "chunks_done": buffer.received_count,
            "total_chunks": buffer.expected_chunk_count,
            "percentage": round(buffer.progress(), 2),
            "bytes_transferred": bytes_done,
            "total_bytes": buffer.total_size,
            "elapsed_seconds": round(elapsed, 2),
            "speed_bytes_per_sec": round(speed, 2),
            "filename": buffer.name,
        }
