"""
Dropshare - Handshake state machine.

Created by orpheus497

Drives the per-peer authentication sequence:

1. The connector sends HELLO once its channel is open; the acceptor
   registers the peer and answers with KEY_EXCHANGE.
2. The receiver of KEY_EXCHANGE records the keys, derives the shared key and
   answers with KEY_EXCHANGE_REPLY. A reply is never answered, so keys are
   exchanged exactly once in each direction.
3. The side that derives its key after having already sent its own keys
   issues a CHALLENGE.
4. The challenged side signs it and answers with CHALLENGE_RESPONSE.
5. The challenger verifies the signature; on success it sends
   VERIFICATION_COMPLETE, otherwise the peer is failed.
6. VERIFICATION_COMPLETE is accepted only from a peer whose challenge we
   answered. A side that challenged the peer itself still needs a valid
   response before it reports the session connected.

By default only the responder is authenticated. With mutual authentication
enabled each side also challenges the other, and a side reports the session
connected only once it has verified the peer and has been confirmed by it.
"""

import logging
from typing import Callable, Optional

from . import crypto
from .connection_fsm import ConnectionEvent
from .constants import CHALLENGE_SIZE
from .crypto import KeyPair
from .errors import CryptoError, ErrorCode, HandshakeError
from .protocol import (
    Challenge,
    ChallengeResponse,
    Hello,
    KeyExchange,
    KeyExchangeReply,
    Message,
    VerificationComplete,
)
from .registry import PeerRegistry

logger = logging.getLogger(__name__)


class Handshake:
    """
    Handshake protocol for all peers of one local session.

    The handshake owns no transport: it sends through ``send`` and reports
    status changes through ``on_status``. It is driven one message at a time
    per peer by the session manager.

    Attributes:
        registry: Shared peer registry
        dh_keys: Local key agreement pair
        signing_keys: Local signing pair
        mutual_authentication: Whether both sides challenge each other
    """

    def __init__(
        self,
        registry: PeerRegistry,
        dh_keys: KeyPair,
        signing_keys: KeyPair,
        send: Callable[[str, Message], None],
        on_status: Callable[[str, ConnectionEvent, Optional[str]], None],
        mutual_authentication: bool = False,
    ):
        self.registry = registry
        self.dh_keys = dh_keys
        self.signing_keys = signing_keys
        self.mutual_authentication = mutual_authentication
        self._send = send
        self._on_status = on_status

    def _key_offer(self, reply: bool = False) -> KeyExchange:
        cls = KeyExchangeReply if reply else KeyExchange
        return cls(
            dh_public_key=self.dh_keys.public_key,
            signing_public_key=self.signing_keys.public_key,
        )

    def start(self, peer_id: str, name: str) -> None:
        """Connector side: greet the acceptor once the channel is open."""
        self.registry.register(peer_id)
        self._on_status(peer_id, ConnectionEvent.CHANNEL_OPENED, None)
        self._send(peer_id, Hello(name=name))
        logger.debug(f"Sent HELLO to {peer_id} as {name!r}")

    def handle_message(self, peer_id: str, message: Message) -> bool:
        """
        Process a handshake message.

        Returns:
            True if the message belonged to the handshake

        Raises:
            HandshakeError: If the peer's keys or signature are unacceptable
        """
        if isinstance(message, Hello):
            self._handle_hello(peer_id, message)
        elif isinstance(message, KeyExchange):
            self._handle_key_exchange(peer_id, message)
        elif isinstance(message, Challenge):
            self._handle_challenge(peer_id, message)
        elif isinstance(message, ChallengeResponse):
            self._handle_challenge_response(peer_id, message)
        elif isinstance(message, VerificationComplete):
            self._handle_verification_complete(peer_id)
        else:
            return False
        return True

    def _handle_hello(self, peer_id: str, message: Hello) -> None:
        session = self.registry.register(peer_id, name=message.name)
        self._on_status(peer_id, ConnectionEvent.CHANNEL_OPENED, None)
        logger.info(f"HELLO from {peer_id} ({message.name!r})")

        if session.keys_sent:
            logger.debug(f"Keys already sent to {peer_id}, ignoring repeated HELLO")
            return

        self._send(peer_id, self._key_offer())
        session.keys_sent = True

    def _handle_key_exchange(self, peer_id: str, message: KeyExchange) -> None:
        session = self.registry.register(peer_id)
        self.registry.record_peer_public_keys(
            peer_id, message.dh_public_key, message.signing_public_key
        )
        self.registry.derive_and_store_shared_key(peer_id, self.dh_keys.private_key)

        if session.keys_sent or isinstance(message, KeyExchangeReply):
            # The peer answered our offer: we drive the challenge
            self._send_challenge(peer_id)
            return

        self._send(peer_id, self._key_offer(reply=True))
        session.keys_sent = True

        if self.mutual_authentication:
            self._send_challenge(peer_id)

    def _send_challenge(self, peer_id: str) -> None:
        challenge = self.registry.issue_challenge(peer_id)
        self._send(peer_id, Challenge(challenge=challenge))
        logger.debug(f"Sent challenge to {peer_id}")

    def _handle_challenge(self, peer_id: str, message: Challenge) -> None:
        if peer_id not in self.registry:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Challenge from unregistered peer {peer_id}",
                {"peer_id": peer_id},
            )

        if len(message.challenge) != CHALLENGE_SIZE:
            raise HandshakeError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                f"Challenge must be {CHALLENGE_SIZE} bytes",
                {"peer_id": peer_id, "length": len(message.challenge)},
            )

        try:
            signature = crypto.sign(message.challenge, self.signing_keys.private_key)
        except CryptoError as e:
            raise HandshakeError(
                ErrorCode.E105_SIGNATURE_FAILED,
                f"Signing challenge for {peer_id} failed: {e.message}",
                {"peer_id": peer_id},
            )

        self.registry.get(peer_id).challenge_answered = True
        self._send(peer_id, ChallengeResponse(signature=signature))
        logger.debug(f"Answered challenge from {peer_id}")

    def _handle_challenge_response(self, peer_id: str, message: ChallengeResponse) -> None:
        challenge = self.registry.consume_challenge(peer_id)
        if challenge is None:
            logger.warning(f"Unsolicited challenge response from {peer_id}, ignoring")
            return

        session = self.registry.get(peer_id)
        if session is None or session.signing_public_key is None:
            raise HandshakeError(
                ErrorCode.E106_VERIFICATION_FAILED,
                f"No signing key recorded for {peer_id}",
                {"peer_id": peer_id},
            )

        if not crypto.verify(challenge, message.signature, session.signing_public_key):
            raise HandshakeError(
                ErrorCode.E106_VERIFICATION_FAILED,
                f"Challenge signature from {peer_id} did not verify",
                {"peer_id": peer_id},
            )

        self.registry.mark_verified(peer_id)
        self._send(peer_id, VerificationComplete())

        if not self.mutual_authentication or session.remote_confirmed:
            self._on_status(peer_id, ConnectionEvent.VERIFICATION_SUCCEEDED, None)

    def _handle_verification_complete(self, peer_id: str) -> None:
        session = self.registry.get(peer_id)
        if session is None or session.shared_key is None:
            logger.warning(f"VERIFICATION_COMPLETE from {peer_id} before key exchange, ignoring")
            return

        # Confirms our answer to the peer's challenge, nothing else
        if not session.challenge_answered:
            logger.warning(f"VERIFICATION_COMPLETE from {peer_id} without a challenge, ignoring")
            return

        session.remote_confirmed = True
        if (self.mutual_authentication or session.challenge_issued) and not session.is_verified:
            logger.debug(f"{peer_id} confirmed us, still waiting for its own response")
            return

        self._on_status(peer_id, ConnectionEvent.VERIFICATION_SUCCEEDED, None)
