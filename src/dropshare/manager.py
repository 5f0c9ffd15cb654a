"""
Dropshare - Session manager.

Created by orpheus497

The SessionManager is the public face of one local node. It owns the peer
registry, the handshake, the transfer engine and the channels, and exposes
the operations a UI needs: share files, connect to and remove peers, request
files from a peer's manifest, and observe statuses and progress.

Every channel event for a peer goes onto that peer's asyncio.Queue and is
handled by a single worker task, so one peer's state is never mutated by two
events at once. File sends run as separate tasks that yield between chunks.
"""

import asyncio
import logging
import secrets
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from . import crypto
from .config import Config
from .connection_fsm import ConnectionEvent, ConnectionStateMachine, ConnectionStatus
from .constants import NAME_ADJECTIVES, NAME_ANIMALS
from .errors import (
    ChannelError,
    DropshareError,
    ErrorCode,
    FileTransferError,
    HandshakeError,
    ProtocolError,
)
from .file_transfer import SharedFile, TransferEngine, save_received_file
from .handshake import Handshake
from .protocol import (
    Disconnected,
    FileChunk,
    FileMetadata,
    FilesUpdate,
    Message,
    Protocol,
    RequestFile,
    SharedFileEntry,
)
from .registry import PeerRegistry
from .transport import Channel, Transport

logger = logging.getLogger(__name__)

# Channel event kinds placed on a peer's queue
EVENT_OPEN = "open"
EVENT_MESSAGE = "message"
EVENT_CLOSE = "close"
EVENT_ERROR = "error"
EVENT_REMOVE = "remove"


def generate_display_name() -> str:
    """Random "Adjective-Animal" name for peers that did not configure one."""
    return f"{secrets.choice(NAME_ADJECTIVES)}-{secrets.choice(NAME_ANIMALS)}"


class SessionManager:
    """
    Manages all peer sessions of the local node.

    Attributes:
        transport: Channel provider
        config: Configuration in effect
        name: Display name announced to peers
        registry: Per-peer key material and verification state
        handshake: Authentication protocol driver
        engine: Chunked transfer engine
        received_manifests: Latest manifest received from each peer
        failed_downloads: Reason for each failed download, by file id
        completed_downloads: Where each finished download was handed off, by file id
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[Config] = None,
        name: Optional[str] = None,
        on_file_received: Optional[Callable[[str, str, bytes], Any]] = None,
        on_transfer_failed: Optional[Callable[[str, str, DropshareError], None]] = None,
        on_status_change: Optional[Callable[[str, ConnectionStatus], None]] = None,
    ):
        """
        Create the local node and its key material.

        Args:
            transport: Channel provider
            config: Configuration (defaults if omitted)
            name: Display name (falls back to the configured or a generated one)
            on_file_received: Called with (peer_id, name, data) for each completed
                download; when omitted files are written to the download directory
            on_transfer_failed: Called with (peer_id, file_id, error) for each
                aborted download
            on_status_change: Called with (peer_id, status) on every status change

        Raises:
            CryptoInitError: If key generation fails
        """
        self.transport = transport
        self.config = config or Config.defaults()
        self.name = name or self.config.get("session", "display_name") or generate_display_name()

        self.dh_keys = crypto.generate_key_agreement_pair()
        self.signing_keys = crypto.generate_signing_pair()

        self.registry = PeerRegistry()
        self.handshake = Handshake(
            self.registry,
            self.dh_keys,
            self.signing_keys,
            send=self._send,
            on_status=self._on_handshake_event,
            mutual_authentication=self.config.get("security", "mutual_authentication", False),
        )
        self.engine = TransferEngine(
            self.registry,
            send=self._send,
            on_file_complete=self._on_file_complete,
            on_transfer_failed=self._on_transfer_failed,
            chunk_size=self.config.get("transfer", "chunk_size"),
            chunk_delay=self.config.get("transfer", "chunk_delay"),
            cleartext_fallback=self.config.get("transfer", "cleartext_fallback"),
            max_file_size=self.config.get("transfer", "max_file_size"),
        )

        self.on_file_received = on_file_received
        self.on_transfer_failed = on_transfer_failed
        self.on_status_change = on_status_change

        self.channels: Dict[str, Channel] = {}
        self.connections: Dict[str, ConnectionStateMachine] = {}
        self.shared: Dict[str, SharedFile] = {}
        self.received_manifests: Dict[str, List[SharedFileEntry]] = {}
        self.failed_downloads: Dict[str, str] = {}
        self.completed_downloads: Dict[str, str] = {}

        self._initiated: Set[str] = set()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._send_tasks: Dict[str, Set[asyncio.Task]] = {}
        self._pending = 0

        self.transport.on_connection = self._on_inbound_channel
        logger.info(f"Session created for {self.local_peer_id} as {self.name!r}")

    # Observable state

    @property
    def local_peer_id(self) -> str:
        return self.transport.local_peer_id

    def connection_status(self, peer_id: str) -> Optional[ConnectionStatus]:
        fsm = self.connections.get(peer_id)
        return fsm.get_state() if fsm else None

    @property
    def shared_files(self) -> List[SharedFileEntry]:
        return [shared.entry for shared in self.shared.values()]

    @property
    def download_progress(self) -> Dict[str, float]:
        return dict(self.engine.progress)

    @property
    def connected_peers(self) -> List[Dict[str, Any]]:
        """Peers with a live session, with name and verification state."""
        peers = []
        for peer_id, fsm in self.connections.items():
            if fsm.is_terminal():
                continue
            session = self.registry.get(peer_id)
            peers.append(
                {
                    "peer_id": peer_id,
                    "name": session.name if session else None,
                    "verified": bool(session and session.is_verified),
                    "status": fsm.get_state().value,
                }
            )
        return peers

    def is_idle(self) -> bool:
        """True when no channel events or file sends are in flight."""
        return self._pending == 0 and not any(self._send_tasks.values())

    # Public operations

    def begin_sharing(self, paths: Iterable[Path]) -> List[SharedFileEntry]:
        """
        Add files to the local manifest and announce it to connected peers.

        Raises:
            FileTransferError: If any path is not a readable file within the
                size limit (nothing is added in that case)
        """
        max_size = self.config.get("transfer", "max_file_size")
        added = [SharedFile.from_path(Path(path), max_size) for path in paths]

        for shared in added:
            self.shared[shared.id] = shared
            logger.info(f"Sharing {shared.entry.name} ({shared.entry.size} bytes) as {shared.id}")

        if added:
            self._broadcast_manifest()
        return [shared.entry for shared in added]

    def remove_file(self, file_id: str) -> bool:
        """Stop sharing a file. Returns False if it was not shared."""
        shared = self.shared.pop(file_id, None)
        if shared is None:
            logger.warning(f"Cannot remove unknown shared file {file_id}")
            return False

        logger.info(f"Stopped sharing {shared.entry.name}")
        self._broadcast_manifest()
        return True

    def connect_to_peer(self, peer_id: str) -> None:
        """
        Open a channel to a peer. The handshake starts once it opens.

        Raises:
            ChannelError: If the peer is ourselves or cannot be reached
        """
        if peer_id == self.local_peer_id:
            raise ChannelError(
                ErrorCode.E002_INVALID_ARGUMENT, "Cannot connect to ourselves", {"peer_id": peer_id}
            )

        fsm = self.connections.get(peer_id)
        if fsm is not None and not fsm.is_terminal():
            logger.warning(f"Already have a session with {peer_id} ({fsm.get_state().value})")
            return

        channel = self.transport.connect(peer_id)
        self._initiated.add(peer_id)
        self._attach(channel)
        logger.info(f"Connecting to {peer_id}")

    def request_file(self, file_id: str) -> bool:
        """
        Ask the peer whose manifest lists ``file_id`` to send it.

        Returns:
            False if no connected peer offers the file
        """
        for peer_id, manifest in self.received_manifests.items():
            if not any(entry.id == file_id for entry in manifest):
                continue
            if self.connection_status(peer_id) != ConnectionStatus.CONNECTED:
                continue

            self.failed_downloads.pop(file_id, None)
            if self._send(peer_id, RequestFile(file_id=file_id)):
                logger.info(f"Requested {file_id} from {peer_id}")
                return True

        logger.warning(f"No connected peer offers file {file_id}")
        return False

    async def remove_peer(self, peer_id: str) -> None:
        """
        End the session with a peer.

        The peer is told first, then given a grace period before the channel
        is closed and all state for it is discarded.
        """
        if peer_id not in self.channels:
            logger.debug(f"No channel to {peer_id}, nothing to remove")
            return

        self._send(peer_id, Disconnected())
        await asyncio.sleep(self.config.get("session", "disconnect_grace_period"))

        channel = self.channels.get(peer_id)
        if channel is None:
            return

        queue = self._enqueue(channel, EVENT_REMOVE, None)
        await queue.join()

    async def shutdown(self) -> None:
        """Remove every peer and release the transport."""
        await asyncio.gather(*(self.remove_peer(peer_id) for peer_id in list(self.channels)))

        for worker in list(self._workers.values()):
            worker.cancel()
        self._workers.clear()
        self._queues.clear()
        self.transport.close()
        logger.info(f"Session {self.local_peer_id} shut down")

    # Channel plumbing

    def _on_inbound_channel(self, channel: Channel) -> None:
        fsm = self.connections.get(channel.peer_id)
        if fsm is not None and not fsm.is_terminal():
            logger.warning(f"Rejecting second channel from {channel.peer_id}")
            channel.close()
            return

        logger.info(f"Incoming connection from {channel.peer_id}")
        self._attach(channel)

    def _attach(self, channel: Channel) -> None:
        peer_id = channel.peer_id
        fsm = ConnectionStateMachine(peer_id)
        fsm.on_state_change = lambda old, new: self._on_state_change(peer_id, new)
        self.connections[peer_id] = fsm
        self.channels[peer_id] = channel

        channel.bind(
            on_open=lambda ch: self._enqueue(ch, EVENT_OPEN, None),
            on_message=lambda ch, data: self._enqueue(ch, EVENT_MESSAGE, data),
            on_close=lambda ch: self._enqueue(ch, EVENT_CLOSE, None),
            on_error=lambda ch, error: self._enqueue(ch, EVENT_ERROR, error),
        )

    def _enqueue(self, channel: Channel, kind: str, payload: Any) -> asyncio.Queue:
        peer_id = channel.peer_id
        queue = self._queues.get(peer_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[peer_id] = queue
            self._workers[peer_id] = asyncio.ensure_future(self._peer_worker(peer_id, queue))

        self._pending += 1
        queue.put_nowait((channel, kind, payload))
        return queue

    async def _peer_worker(self, peer_id: str, queue: asyncio.Queue) -> None:
        """Process one peer's events in arrival order."""
        while True:
            channel, kind, payload = await queue.get()
            try:
                if self.channels.get(peer_id) is not channel:
                    logger.debug(f"Dropping {kind} event from stale channel to {peer_id}")
                else:
                    self._dispatch(peer_id, kind, payload)
            except Exception as e:
                logger.error(f"Error handling {kind} event from {peer_id}: {e}", exc_info=True)
            finally:
                self._pending -= 1
                queue.task_done()

            if peer_id not in self.channels and queue.empty():
                if self._queues.get(peer_id) is queue:
                    del self._queues[peer_id]
                    del self._workers[peer_id]
                logger.debug(f"Event worker for {peer_id} finished")
                return

    def _dispatch(self, peer_id: str, kind: str, payload: Any) -> None:
        if kind == EVENT_OPEN:
            self._fsm_event(peer_id, ConnectionEvent.CHANNEL_OPENED)
            if peer_id in self._initiated:
                self.handshake.start(peer_id, self.name)
        elif kind == EVENT_MESSAGE:
            self._handle_data(peer_id, payload)
        elif kind == EVENT_CLOSE:
            logger.info(f"Channel to {peer_id} closed")
            self._disconnect(peer_id, "Peer disconnected")
        elif kind == EVENT_ERROR:
            logger.warning(f"Channel to {peer_id} failed: {payload}")
            self._disconnect(peer_id, f"Channel error: {payload.message}")
        elif kind == EVENT_REMOVE:
            logger.info(f"Removing peer {peer_id}")
            self._disconnect(peer_id, "Peer removed", close_channel=True)

    def _send(self, peer_id: str, message: Message) -> bool:
        channel = self.channels.get(peer_id)
        if channel is None or not channel.is_open:
            logger.debug(f"No open channel to {peer_id}, dropping {type(message).__name__}")
            return False

        try:
            channel.send(Protocol.pack_message(message))
        except ProtocolError as e:
            logger.error(f"Cannot encode {type(message).__name__} for {peer_id}: {e.message}")
            return False
        except ChannelError as e:
            logger.warning(f"Send to {peer_id} failed: {e.message}")
            return False
        return True

    # Message routing

    def _handle_data(self, peer_id: str, data: bytes) -> None:
        fsm = self.connections.get(peer_id)
        if fsm is None or fsm.is_terminal():
            logger.debug(f"Ignoring message from {peer_id} in terminal state")
            return

        try:
            message = Protocol.unpack_message(data)
        except ProtocolError as e:
            logger.warning(f"Dropping undecodable message from {peer_id}: {e.message}")
            return

        try:
            if self.handshake.handle_message(peer_id, message):
                return
        except HandshakeError as e:
            self._fail_peer(peer_id, e)
            return

        if isinstance(message, Disconnected):
            logger.info(f"{peer_id} announced it is leaving")
            self._disconnect(peer_id, "Peer disconnected", close_channel=True)
            return

        # File exchange only with peers that completed the handshake
        if self.connection_status(peer_id) != ConnectionStatus.CONNECTED:
            logger.warning(
                f"Ignoring {type(message).__name__} from unverified peer {peer_id}"
            )
            return

        if isinstance(message, FilesUpdate):
            self._handle_files_update(peer_id, message)
        elif isinstance(message, RequestFile):
            self._handle_request_file(peer_id, message)
        elif isinstance(message, FileMetadata):
            self.engine.handle_metadata(peer_id, message)
        elif isinstance(message, FileChunk):
            self.engine.handle_chunk(peer_id, message)

    def _handle_files_update(self, peer_id: str, message: FilesUpdate) -> None:
        self.received_manifests[peer_id] = list(message.files)
        logger.info(f"Manifest from {peer_id}: {len(message.files)} files")

    def _handle_request_file(self, peer_id: str, message: RequestFile) -> None:
        shared = self.shared.get(message.file_id)
        if shared is None:
            logger.debug(f"{peer_id} requested unknown file {message.file_id}, ignoring")
            return

        task = asyncio.ensure_future(self.engine.send_file(peer_id, shared))
        tasks = self._send_tasks.setdefault(peer_id, set())
        tasks.add(task)
        task.add_done_callback(lambda t: self._on_send_done(peer_id, shared, t))

    def _on_send_done(self, peer_id: str, shared: SharedFile, task: asyncio.Task) -> None:
        self._send_tasks.get(peer_id, set()).discard(task)
        if task.cancelled():
            logger.info(f"Transfer of {shared.entry.name} to {peer_id} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Transfer of {shared.entry.name} to {peer_id} failed: {error}")

    # Status and teardown

    def _fsm_event(self, peer_id: str, event: ConnectionEvent, error_msg: Optional[str] = None):
        fsm = self.connections.get(peer_id)
        if fsm is not None:
            fsm.transition(event, error_msg)

    def _on_handshake_event(
        self, peer_id: str, event: ConnectionEvent, error_msg: Optional[str]
    ) -> None:
        self._fsm_event(peer_id, event, error_msg)

    def _on_state_change(self, peer_id: str, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.CONNECTED and self.shared:
            self._send(peer_id, self._manifest())

        if self.on_status_change:
            self.on_status_change(peer_id, status)

    def _fail_peer(self, peer_id: str, error: HandshakeError) -> None:
        logger.error(f"Handshake with {peer_id} failed: {error.message}")
        self._fsm_event(peer_id, ConnectionEvent.HANDSHAKE_FAILED, error.message)
        self._teardown(peer_id, f"Handshake failed: {error.message}")

    def _disconnect(self, peer_id: str, reason: str, close_channel: bool = False) -> None:
        self._fsm_event(peer_id, ConnectionEvent.DISCONNECTED)
        self._teardown(peer_id, reason)

        channel = self.channels.pop(peer_id, None)
        if channel is not None and close_channel:
            channel.close()

    def _teardown(self, peer_id: str, reason: str) -> None:
        """Discard every piece of session state held for a peer."""
        for task in self._send_tasks.pop(peer_id, set()):
            task.cancel()

        for file_id in self.engine.discard_peer(peer_id):
            self._on_transfer_failed(
                peer_id,
                file_id,
                FileTransferError(
                    ErrorCode.E605_TRANSFER_CANCELLED,
                    f"Download incomplete: {reason}",
                    {"peer_id": peer_id},
                ),
            )

        self.received_manifests.pop(peer_id, None)
        self.registry.remove(peer_id)
        self._initiated.discard(peer_id)

    # Manifest and download callbacks

    def _manifest(self) -> FilesUpdate:
        return FilesUpdate(files=tuple(self.shared_files))

    def _broadcast_manifest(self) -> None:
        manifest = self._manifest()
        for peer_id, fsm in list(self.connections.items()):
            if fsm.is_connected():
                self._send(peer_id, manifest)

    def _on_file_complete(self, peer_id: str, file_id: str, name: str, data: bytes) -> None:
        if self.on_file_received:
            self.on_file_received(peer_id, name, data)
            self.completed_downloads[file_id] = name
            return

        try:
            path = save_received_file(self.config.get("transfer", "download_dir"), name, data)
        except FileTransferError as e:
            self._on_transfer_failed(peer_id, file_id, e)
            return
        self.completed_downloads[file_id] = str(path)

    def _on_transfer_failed(self, peer_id: str, file_id: str, error: DropshareError) -> None:
        self.failed_downloads[file_id] = error.message
        logger.warning(f"Download {file_id} from {peer_id} failed: {error.message}")
        if self.on_transfer_failed:
            self.on_transfer_failed(peer_id, file_id, error)

    def __repr__(self) -> str:
        return (
            f"SessionManager(peer={self.local_peer_id}, name={self.name!r}, "
            f"peers={len(self.connected_peers)}, shared={len(self.shared)})"
        )
