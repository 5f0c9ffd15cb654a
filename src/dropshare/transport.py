"""
Dropshare - Message channel abstraction.

Created by orpheus497

A Channel is a bidirectional, ordered, reliable, message-oriented pipe to
one peer. It reports four events to the listener bound to it: open, message,
close and error. A Transport opens channels to peers by id and announces
channels opened by others.

LoopbackNetwork wires transports together inside one event loop. Every
delivery is scheduled with ``loop.call_soon`` so events arrive in send order
and never re-enter the sender.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from .errors import ChannelError, ErrorCode

logger = logging.getLogger(__name__)

OpenHandler = Callable[["Channel"], None]
MessageHandler = Callable[["Channel", bytes], None]
CloseHandler = Callable[["Channel"], None]
ErrorHandler = Callable[["Channel", ChannelError], None]


class Channel(ABC):
    """Message channel to a single remote peer.

    Attributes:
        peer_id: Identity of the remote peer
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.on_open: Optional[OpenHandler] = None
        self.on_message: Optional[MessageHandler] = None
        self.on_close: Optional[CloseHandler] = None
        self.on_error: Optional[ErrorHandler] = None

    def bind(
        self,
        on_open: Optional[OpenHandler] = None,
        on_message: Optional[MessageHandler] = None,
        on_close: Optional[CloseHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        """Attach the listener that receives this channel's events."""
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.on_error = on_error

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether messages can currently be sent."""

    @abstractmethod
    def send(self, data: bytes) -> None:
        """
        Queue one message for delivery.

        Raises:
            ChannelError: If the channel is not open
        """

    @abstractmethod
    def close(self) -> None:
        """Close the channel. The remote side receives a close event."""

    # Event dispatch for implementations

    def _emit_open(self) -> None:
        if self.on_open:
            self.on_open(self)

    def _emit_message(self, data: bytes) -> None:
        if self.on_message:
            self.on_message(self, data)

    def _emit_close(self) -> None:
        if self.on_close:
            self.on_close(self)

    def _emit_error(self, error: ChannelError) -> None:
        if self.on_error:
            self.on_error(self, error)


class Transport(ABC):
    """Opens channels to peers and announces inbound ones.

    Attributes:
        on_connection: Called with each channel opened by a remote peer,
            before its open event fires
    """

    def __init__(self):
        self.on_connection: Optional[Callable[[Channel], None]] = None

    @property
    @abstractmethod
    def local_peer_id(self) -> str:
        """This node's identity as seen by other peers."""

    @abstractmethod
    def connect(self, peer_id: str) -> Channel:
        """
        Open a channel to a peer. The open event fires later.

        Raises:
            ChannelError: If the peer cannot be reached
        """

    def close(self) -> None:
        """Release transport resources."""


class LoopbackChannel(Channel):
    """One end of an in-process channel pair."""

    def __init__(self, peer_id: str, loop: asyncio.AbstractEventLoop):
        super().__init__(peer_id)
        self._loop = loop
        self._remote: Optional["LoopbackChannel"] = None
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    def _connect(self, remote: "LoopbackChannel") -> None:
        self._remote = remote

    def _mark_open(self) -> None:
        if self._closed:
            return
        self._open = True
        self._emit_open()

    def _deliver(self, data: bytes) -> None:
        if self._closed:
            return
        self._emit_message(data)

    def _remote_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._emit_close()

    def _failed(self, error: ChannelError) -> None:
        if self._closed:
            return
        self._closed = True
        self._emit_error(error)

    def send(self, data: bytes) -> None:
        if not self.is_open:
            raise ChannelError(
                ErrorCode.E204_SEND_FAILED,
                f"Channel to {self.peer_id} is not open",
                {"peer_id": self.peer_id},
            )
        self._loop.call_soon(self._remote._deliver, bytes(data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Closing loopback channel to {self.peer_id}")
        if self._remote is not None:
            self._loop.call_soon(self._remote._remote_closed)

    def fail(self, reason: str = "Channel failure") -> None:
        """Simulate a transport failure: both ends receive an error event."""
        if self._closed:
            return
        error = ChannelError(ErrorCode.E203_CONNECTION_CLOSED, reason)
        self._loop.call_soon(self._failed, error)
        if self._remote is not None:
            self._loop.call_soon(self._remote._failed, error)


class LoopbackTransport(Transport):
    """Transport attached to a LoopbackNetwork."""

    def __init__(self, network: "LoopbackNetwork", peer_id: str):
        super().__init__()
        self._network = network
        self._peer_id = peer_id
        self.channels: Dict[str, LoopbackChannel] = {}

    @property
    def local_peer_id(self) -> str:
        return self._peer_id

    def connect(self, peer_id: str) -> Channel:
        return self._network.open_channel(self._peer_id, peer_id)

    def close(self) -> None:
        for channel in list(self.channels.values()):
            channel.close()
        self.channels.clear()
        self._network.detach(self._peer_id)


class LoopbackNetwork:
    """In-process network of transports sharing one event loop."""

    def __init__(self):
        self.transports: Dict[str, LoopbackTransport] = {}

    def create_transport(self, peer_id: Optional[str] = None) -> LoopbackTransport:
        """
        Attach a new transport to the network.

        Args:
            peer_id: Identity to use (generated if omitted)

        Raises:
            ChannelError: If the identity is already taken
        """
        peer_id = peer_id or uuid.uuid4().hex[:12]
        if peer_id in self.transports:
            raise ChannelError(
                ErrorCode.E200_NETWORK_ERROR,
                f"Peer id already in use: {peer_id}",
                {"peer_id": peer_id},
            )
        transport = LoopbackTransport(self, peer_id)
        self.transports[peer_id] = transport
        logger.debug(f"Loopback transport attached: {peer_id}")
        return transport

    def detach(self, peer_id: str) -> None:
        self.transports.pop(peer_id, None)

    def open_channel(self, from_id: str, to_id: str) -> LoopbackChannel:
        """
        Create a channel pair between two attached transports.

        The acceptor is announced first so it can bind before either side
        sees the open event.

        Raises:
            ChannelError: If the target is not attached
        """
        acceptor = self.transports.get(to_id)
        connector = self.transports.get(from_id)
        if acceptor is None or connector is None:
            raise ChannelError(
                ErrorCode.E200_NETWORK_ERROR,
                f"Peer not reachable: {to_id}",
                {"peer_id": to_id},
            )

        loop = asyncio.get_running_loop()
        outbound = LoopbackChannel(to_id, loop)
        inbound = LoopbackChannel(from_id, loop)
        outbound._connect(inbound)
        inbound._connect(outbound)
        connector.channels[to_id] = outbound
        acceptor.channels[from_id] = inbound

        def establish():
            if acceptor.on_connection:
                acceptor.on_connection(inbound)
            inbound._mark_open()
            outbound._mark_open()

        loop.call_soon(establish)
        return outbound
